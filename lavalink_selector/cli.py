from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from dotenv import find_dotenv, load_dotenv

from .coordinator import Coordinator
from .errors import SelectorError
from .probe import PROBE_STRATEGIES

EPILOG = """examples:
  lavalink-selector                         pick the lowest-latency server
  lavalink-selector --choose                choose from the top 5
  lavalink-selector --restart-command "pm2 restart bot" -c
  lavalink-selector --dry-run               test only, leave .env alone
"""


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Test Lavalink servers and write the best one into the bot's .env",
        epilog=EPILOG,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--config",
        type=Path,
        help="Path to a JSON configuration file overriding defaults",
    )
    parser.add_argument("--list", dest="source", help="Server list file or http(s) URL")
    parser.add_argument("--env-file", type=Path, help="Env file to update (default: .env)")
    parser.add_argument(
        "-c",
        "--choose",
        action="store_true",
        help="Show the top servers and let you choose",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Only test servers, don't update the env file or restart",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Show detailed output")
    parser.add_argument("--strategy", choices=PROBE_STRATEGIES, help="Probe with a TCP connect or the /version endpoint")
    parser.add_argument("--samples", type=int, help="Measurements per server")
    parser.add_argument("--timeout", type=int, help="Per-measurement timeout in milliseconds")
    parser.add_argument("--batch-size", type=int, help="Servers probed concurrently")
    parser.add_argument("--top", type=int, help="How many servers to offer with --choose")
    parser.add_argument("--v4-only", action="store_true", help="Only select Lavalink v4 servers")
    parser.add_argument("--restart-command", help="Command to run after the env file is updated")
    parser.add_argument(
        "--check-current",
        action="store_true",
        help="Test the server currently configured in the env file and exit",
    )
    return parser.parse_args(argv)


def load_overrides(path: Optional[Path]) -> Optional[Dict[str, Any]]:
    if not path:
        return None
    if not path.exists():
        logging.error("Configuration file %s does not exist", path)
        return None
    try:
        with path.open("r", encoding="utf-8") as handle:
            return json.load(handle)
    except json.JSONDecodeError as exc:
        logging.error("Unable to parse configuration file %s: %s", path, exc)
    return None


def overrides_from_args(args: argparse.Namespace) -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}

    def _set(section: str, key: str, value: Any) -> None:
        if value is not None:
            overrides.setdefault(section, {})[key] = value

    _set("source", "path", args.source)
    _set("persister", "env_path", str(args.env_file) if args.env_file else None)
    _set("probe", "strategy", args.strategy)
    _set("probe", "samples", args.samples)
    _set("probe", "timeout_ms", args.timeout)
    _set("scheduler", "batch_size", args.batch_size)
    _set("selection", "top_count", args.top)
    _set("selection", "require_major_version", "v4" if args.v4_only else None)
    _set("runner", "restart_command", args.restart_command)
    _set("logging", "level", "DEBUG" if args.verbose else None)
    return overrides


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    load_dotenv(find_dotenv(usecwd=True), override=False)

    overrides = load_overrides(args.config)

    try:
        coordinator = Coordinator(config_overrides=overrides, cli_overrides=overrides_from_args(args))
        if args.check_current:
            result = coordinator.check_current()
            return 0 if result.reachable else 1
        coordinator.run(interactive=args.choose, dry_run=args.dry_run)
    except SelectorError as exc:
        logging.error("Fatal error: %s", exc)
        return 1
    except (EOFError, KeyboardInterrupt):
        logging.error("Selection aborted")
        return 1
    return 0


__all__ = [
    "main",
    "parse_args",
    "load_overrides",
    "overrides_from_args",
]
