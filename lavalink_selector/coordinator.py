from __future__ import annotations

import asyncio
import logging
import shlex
import subprocess
import time
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from .config import load_config
from .errors import SourceUnavailable
from .models import NodeDescriptor, ProbeResult, RankedSelection
from .persister import SelectionPersister
from .policy import SelectionPolicy
from .probe import build_probe
from .ranking import filter_major_version, rank
from .scheduler import ProbeScheduler
from .server_list import ServerListSource


class Coordinator:
    def __init__(
        self,
        config_overrides: Optional[Dict[str, Any]] = None,
        *,
        cli_overrides: Optional[Dict[str, Any]] = None,
        input_func: Callable[[str], str] = input,
        output_func: Callable[[str], None] = print,
        configure_logging: bool = True,
    ) -> None:
        self.config = load_config(config_overrides, cli_overrides)
        self.logger = logging.getLogger(__name__ + ".Coordinator")
        if configure_logging:
            self._configure_logging()

        source_cfg = self.config["source"]
        self.source = ServerListSource(
            str(source_cfg["path"]),
            request_timeout=float(source_cfg.get("request_timeout", 15)),
        )
        self.probe = self._build_probe(str(self.config["probe"]["strategy"]))
        self.scheduler = ProbeScheduler(
            self.probe,
            batch_size=int(self.config["scheduler"]["batch_size"]),
        )
        selection_cfg = self.config["selection"]
        self.require_major_version = selection_cfg.get("require_major_version")
        self.policy = SelectionPolicy(
            top_count=int(selection_cfg["top_count"]),
            input_func=input_func,
            output_func=output_func,
        )
        persister_cfg = self.config["persister"]
        self.env_path = Path(persister_cfg["env_path"])
        self.persister = SelectionPersister(
            connection_keys=persister_cfg.get("keys"),
            canonical_order=persister_cfg.get("canonical_order"),
        )
        self.restart_command: Optional[str] = self.config["runner"].get("restart_command")

    def _build_probe(self, strategy: str):
        probe_cfg = self.config["probe"]
        return build_probe(
            strategy,
            timeout_ms=float(probe_cfg["timeout_ms"]),
            samples=int(probe_cfg["samples"]),
            sample_interval_ms=float(probe_cfg["sample_interval_ms"]),
            verify_tls=bool(probe_cfg.get("verify_tls", True)),
            fetch_stats=bool(probe_cfg.get("fetch_stats", True)),
            user_agent=str(probe_cfg.get("user_agent") or ""),
        )

    def _configure_logging(self) -> None:
        logging_cfg = self.config.get("logging", {})
        level_name = str(logging_cfg.get("level", "INFO")).upper()
        level = getattr(logging, level_name, logging.INFO)
        formatter = logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")

        root_logger = logging.getLogger()
        root_logger.setLevel(level)

        if not any(isinstance(handler, logging.StreamHandler) and not isinstance(handler, logging.FileHandler) for handler in root_logger.handlers):
            stream_handler = logging.StreamHandler()
            stream_handler.setLevel(level)
            stream_handler.setFormatter(formatter)
            root_logger.addHandler(stream_handler)

        log_dir = Path(logging_cfg.get("directory", "logs"))
        log_file = log_dir / logging_cfg.get("filename", "selector.log")
        max_bytes = int(logging_cfg.get("max_bytes", 2 * 1024 * 1024))
        backup_count = int(logging_cfg.get("backup_count", 5))

        has_file_handler = any(
            isinstance(handler, RotatingFileHandler) and Path(getattr(handler, "baseFilename", "")) == log_file.resolve()
            for handler in root_logger.handlers
        )
        if has_file_handler:
            return
        try:
            log_dir.mkdir(parents=True, exist_ok=True)
            file_handler = RotatingFileHandler(log_file, maxBytes=max_bytes, backupCount=backup_count)
        except OSError as exc:
            self.logger.warning("File logging disabled, cannot write to %s: %s", log_file, exc)
            return
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

    def _report_result(self, result: ProbeResult) -> None:
        if result.reachable:
            version = f" [{result.detected_version} detected]" if result.detected_version else ""
            self.logger.info(
                "%s: %.2fms (%d%% success)%s",
                result.display_name,
                result.latency_ms,
                result.success_rate,
                version,
            )
        else:
            self.logger.info(
                "%s: unreachable (%s%s)",
                result.display_name,
                result.error_kind.value,
                f": {result.error}" if result.error else "",
            )

    def _narrow_selection(self, selection: RankedSelection) -> RankedSelection:
        if not self.require_major_version:
            return selection
        narrowed = filter_major_version(selection, self.require_major_version)
        self.logger.info(
            "Filtered to %d servers matching Lavalink %s (%d excluded)",
            len(narrowed),
            self.require_major_version,
            len(selection) - len(narrowed),
        )
        return narrowed

    def _log_selection(self, chosen: ProbeResult) -> None:
        self.logger.info(
            "Best server selected | name=%s | host=%s | latency=%sms | secure=%s | region=%s",
            chosen.display_name,
            chosen.node.address,
            chosen.latency_ms,
            "true" if chosen.secure else "false",
            chosen.region or "Unknown",
        )
        if chosen.stats is not None and chosen.stats.players is not None:
            self.logger.info(
                "Node load | players=%s | playing=%s | cores=%s",
                chosen.stats.players,
                chosen.stats.playing_players,
                chosen.stats.cpu_cores,
            )

    def _run_restart_command(self) -> bool:
        if not self.restart_command:
            return True
        self.logger.info("Running restart command: %s", self.restart_command)
        try:
            completed = subprocess.run(shlex.split(self.restart_command), check=False)
        except OSError as exc:
            self.logger.error("Failed to run restart command %r: %s", self.restart_command, exc)
            return False
        if completed.returncode != 0:
            self.logger.error("Restart command exited with code %d", completed.returncode)
            return False
        return True

    async def select_node(self, *, interactive: bool = False) -> ProbeResult:
        descriptors = self.source.load()
        summary = await self.scheduler.scan(descriptors, progress_callback=self._report_result)
        selection = self._narrow_selection(rank(summary.results))
        return await self.policy.select(selection, interactive=interactive)

    def run(self, *, interactive: bool = False, dry_run: bool = False) -> ProbeResult:
        start_time = time.monotonic()
        self.logger.info("Auto-selecting best Lavalink server from %s", self.source.source)
        chosen = asyncio.run(self.select_node(interactive=interactive))
        self._log_selection(chosen)

        if dry_run:
            self.logger.info("Dry run mode - not updating %s or restarting", self.env_path)
        else:
            self.persister.persist(chosen, self.env_path)
            self._run_restart_command()

        self.logger.info("Selection finished in %.2fs", time.monotonic() - start_time)
        return chosen

    def current_node(self) -> NodeDescriptor:
        keys = self.persister.connection_keys
        values = self.persister.load(self.env_path)
        host = (values.get(keys["host"]) or "").strip()
        port_text = (values.get(keys["port"]) or "").strip()
        password = values.get(keys["password"]) or ""
        if not host or not port_text.isdigit() or not password:
            raise SourceUnavailable(
                f"Lavalink configuration missing in {self.env_path} "
                f"(need {keys['host']}, {keys['port']}, {keys['password']})"
            )
        secure = (values.get(keys["secure"]) or "").strip().lower() == "true"
        return NodeDescriptor(name="Current", host=host, port=int(port_text), password=password, secure=secure)

    def check_current(self) -> ProbeResult:
        node = self.current_node()
        self.logger.info("Testing current Lavalink server %s (secure=%s)", node.address, node.secure)
        result = asyncio.run(self._build_probe("http").probe(node))
        self._report_result(result)
        return result


__all__ = ["Coordinator"]
