from __future__ import annotations

import logging
import os
import tempfile
import unittest
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Dict, Optional
from unittest.mock import Mock, patch

from lavalink_selector.coordinator import Coordinator
from lavalink_selector.errors import NoCandidates, NoReachableNodes, SourceUnavailable
from lavalink_selector.models import NodeDescriptor, ProbeErrorKind, ProbeResult
from lavalink_selector.probe import NodeProbe


SERVER_LIST = """
{ name: "Slow", host: "slow.example", port: 2333, password: "a", secure: false }
{ name: "Fast", host: "fast.example", port: 443, password: "b", secure: true, region: "EU" }
{ name: "Down", host: "down.example", port: 2333, password: "c", secure: false }
"""

EXISTING_ENV = "DISCORD_TOKEN=token\nPREFIX=!\nCUSTOM=keep\n"


class FakeProbe(NodeProbe):
    strategy = "fake"

    def __init__(self, latencies: Dict[str, Optional[float]]) -> None:
        super().__init__(samples=1)
        self.latencies = latencies
        self.probed = []

    async def probe(self, descriptor: NodeDescriptor) -> ProbeResult:
        self.probed.append(descriptor.host)
        latency = self.latencies.get(descriptor.host)
        if latency is None:
            return ProbeResult(
                node=descriptor,
                latency_ms=None,
                reachable=False,
                error_kind=ProbeErrorKind.CONNECTION_REFUSED,
                sampled_at=datetime.now(timezone.utc),
                samples_total=1,
            )
        return ProbeResult(
            node=descriptor,
            latency_ms=latency,
            reachable=True,
            error_kind=ProbeErrorKind.NONE,
            sampled_at=datetime.now(timezone.utc),
            samples_ok=1,
            samples_total=1,
        )


@patch.dict(os.environ, {}, clear=True)
class CoordinatorTest(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.base_path = Path(self.temp_dir.name)
        self.list_path = self.base_path / "servers.txt"
        self.list_path.write_text(SERVER_LIST, encoding="utf-8")
        self.env_path = self.base_path / ".env"
        self.env_path.write_text(EXISTING_ENV, encoding="utf-8")
        self.probe = FakeProbe({"slow.example": 120.0, "fast.example": 80.0})

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def _coordinator(self, **overrides) -> Coordinator:
        config = {
            "source": {"path": str(self.list_path)},
            "persister": {"env_path": str(self.env_path)},
        }
        config.update(overrides)
        coordinator = Coordinator(config, configure_logging=False, output_func=lambda line: None)
        coordinator.scheduler.probe = self.probe
        return coordinator

    def test_run_persists_lowest_latency_node(self) -> None:
        chosen = self._coordinator().run()

        self.assertEqual(chosen.name, "Fast")
        self.assertEqual(chosen.latency_ms, 80.0)
        self.assertEqual(self.probe.probed, ["slow.example", "fast.example", "down.example"])
        self.assertEqual(
            self.env_path.read_text(encoding="utf-8"),
            "DISCORD_TOKEN=token\n"
            "LAVALINK_HOST=fast.example\n"
            "LAVALINK_PORT=443\n"
            "LAVALINK_PASSWORD=b\n"
            "LAVALINK_SECURE=true\n"
            "PREFIX=!\n"
            "CUSTOM=keep\n",
        )

    def test_dry_run_leaves_env_untouched(self) -> None:
        chosen = self._coordinator().run(dry_run=True)

        self.assertEqual(chosen.name, "Fast")
        self.assertEqual(self.env_path.read_text(encoding="utf-8"), EXISTING_ENV)

    def test_interactive_choice_is_persisted(self) -> None:
        coordinator = Coordinator(
            {"source": {"path": str(self.list_path)}, "persister": {"env_path": str(self.env_path)}},
            configure_logging=False,
            input_func=lambda prompt: "2",
            output_func=lambda line: None,
        )
        coordinator.scheduler.probe = self.probe

        chosen = coordinator.run(interactive=True)

        self.assertEqual(chosen.name, "Slow")
        self.assertIn("LAVALINK_HOST=slow.example\n", self.env_path.read_text(encoding="utf-8"))

    def test_all_nodes_down(self) -> None:
        self.probe.latencies = {}

        with self.assertRaises(NoReachableNodes):
            self._coordinator().run()
        self.assertEqual(self.env_path.read_text(encoding="utf-8"), EXISTING_ENV)

    def test_empty_server_list(self) -> None:
        self.list_path.write_text("nothing to see here", encoding="utf-8")

        with self.assertRaises(NoCandidates):
            self._coordinator().run()
        self.assertEqual(self.probe.probed, [])

    def test_missing_server_list(self) -> None:
        self.list_path.unlink()

        with self.assertRaises(SourceUnavailable):
            self._coordinator().run()

    def test_version_requirement_narrows_choice(self) -> None:
        self.list_path.write_text(
            '{ name: "Old", host: "slow.example", port: 2333, password: "a", secure: false, version: "v3" }\n'
            '{ name: "New", host: "fast.example", port: 443, password: "b", secure: true, version: "v4" }\n'
            '{ name: "Newer", host: "other.example", port: 443, password: "c", secure: true, version: "v4" }\n',
            encoding="utf-8",
        )
        self.probe.latencies = {"slow.example": 10.0, "fast.example": 90.0, "other.example": 50.0}

        chosen = self._coordinator(selection={"require_major_version": "v4"}).run(dry_run=True)

        self.assertEqual(chosen.name, "Newer")

    @patch("lavalink_selector.coordinator.subprocess.run")
    def test_restart_command_runs_after_persist(self, mock_run) -> None:
        mock_run.return_value = Mock(returncode=0)

        self._coordinator(runner={"restart_command": "pm2 restart 'music bot'"}).run()

        mock_run.assert_called_once_with(["pm2", "restart", "music bot"], check=False)
        self.assertIn("LAVALINK_HOST=fast.example\n", self.env_path.read_text(encoding="utf-8"))

    @patch("lavalink_selector.coordinator.subprocess.run")
    def test_restart_failure_is_logged_not_raised(self, mock_run) -> None:
        mock_run.side_effect = FileNotFoundError("pm2")

        with self.assertLogs("lavalink_selector.coordinator", level="ERROR"):
            chosen = self._coordinator(runner={"restart_command": "pm2 restart bot"}).run()

        self.assertEqual(chosen.name, "Fast")

    @patch("lavalink_selector.coordinator.subprocess.run")
    def test_dry_run_skips_restart(self, mock_run) -> None:
        self._coordinator(runner={"restart_command": "pm2 restart bot"}).run(dry_run=True)

        mock_run.assert_not_called()

    def test_unusable_log_directory_falls_back_to_console(self) -> None:
        blocker = self.base_path / "not-a-directory"
        blocker.write_text("", encoding="utf-8")
        config = {
            "source": {"path": str(self.list_path)},
            "persister": {"env_path": str(self.env_path)},
            "logging": {"directory": str(blocker / "logs")},
        }

        with self.assertLogs(level="WARNING") as captured:
            coordinator = Coordinator(config, output_func=lambda line: None)
            coordinator.scheduler.probe = self.probe
            chosen = coordinator.run(dry_run=True)
            file_handlers = [handler for handler in logging.getLogger().handlers if isinstance(handler, RotatingFileHandler)]

        self.assertEqual(chosen.name, "Fast")
        self.assertTrue(any("File logging disabled" in line for line in captured.output))
        self.assertEqual(file_handlers, [])

    def test_current_node_reads_env(self) -> None:
        self.env_path.write_text(
            "LAVALINK_HOST=fast.example\nLAVALINK_PORT=443\nLAVALINK_PASSWORD=b\nLAVALINK_SECURE=true\n",
            encoding="utf-8",
        )

        node = self._coordinator().current_node()

        self.assertEqual((node.host, node.port, node.password, node.secure), ("fast.example", 443, "b", True))

    def test_current_node_requires_connection_keys(self) -> None:
        with self.assertRaises(SourceUnavailable):
            self._coordinator().current_node()

    def test_check_current_probes_configured_node(self) -> None:
        self.env_path.write_text(
            "LAVALINK_HOST=fast.example\nLAVALINK_PORT=443\nLAVALINK_PASSWORD=b\nLAVALINK_SECURE=true\n",
            encoding="utf-8",
        )
        coordinator = self._coordinator()

        with patch.object(coordinator, "_build_probe", return_value=self.probe):
            result = coordinator.check_current()

        self.assertTrue(result.reachable)
        self.assertEqual(self.probe.probed, ["fast.example"])


if __name__ == "__main__":
    unittest.main()
