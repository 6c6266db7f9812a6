from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path
from typing import Dict, Mapping, Optional, Sequence, Union

from .errors import PersistError
from .models import ProbeResult

DEFAULT_CONNECTION_KEYS: Dict[str, str] = {
    "host": "LAVALINK_HOST",
    "port": "LAVALINK_PORT",
    "password": "LAVALINK_PASSWORD",
    "secure": "LAVALINK_SECURE",
}
DEFAULT_CANONICAL_ORDER = (
    "DISCORD_TOKEN",
    "CLIENT_ID",
    "OWNER_ID",
    "LAVALINK_HOST",
    "LAVALINK_PORT",
    "LAVALINK_PASSWORD",
    "LAVALINK_SECURE",
    "PREFIX",
    "BOT_ACTIVITY",
    "BOT_STATUS",
    "GENIUS_CLIENT_ID",
    "API_PORT",
)

PathLike = Union[str, Path]


def parse_env_text(text: str) -> Dict[str, str]:
    """Read ``KEY=value`` lines, keeping each value exactly as written.

    Blank lines, ``#`` comments and lines without ``=`` are skipped. A key
    that appears twice keeps its first position and its last value.
    """
    values: Dict[str, str] = {}
    for line in text.splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue
        key, separator, value = line.partition("=")
        key = key.strip()
        if not separator or not key:
            continue
        values[key] = value
    return values


class SelectionPersister:
    def __init__(
        self,
        *,
        connection_keys: Optional[Mapping[str, str]] = None,
        canonical_order: Optional[Sequence[str]] = None,
    ) -> None:
        keys = dict(DEFAULT_CONNECTION_KEYS)
        if connection_keys:
            keys.update(connection_keys)
        self.connection_keys = keys
        # renamed connection keys take the slot of the name they replace
        renamed = {DEFAULT_CONNECTION_KEYS[role]: name for role, name in keys.items() if role in DEFAULT_CONNECTION_KEYS}
        order = [renamed.get(key, key) for key in (canonical_order or DEFAULT_CANONICAL_ORDER)]
        self.canonical_order = tuple(dict.fromkeys(order))
        self.logger = logging.getLogger(__name__ + ".SelectionPersister")

    def load(self, path: PathLike) -> Dict[str, str]:
        env_path = Path(path)
        if not env_path.exists():
            return {}
        try:
            text = env_path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            self.logger.warning("Unable to read %s, starting from an empty configuration: %s", env_path, exc)
            return {}
        return parse_env_text(text)

    def apply(self, existing: Mapping[str, str], chosen: ProbeResult) -> Dict[str, str]:
        updated = dict(existing)
        updated[self.connection_keys["host"]] = chosen.host
        updated[self.connection_keys["port"]] = str(chosen.port)
        updated[self.connection_keys["password"]] = chosen.password
        updated[self.connection_keys["secure"]] = "true" if chosen.secure else "false"
        return updated

    def render(self, config: Mapping[str, str]) -> str:
        remaining = dict(config)
        lines = []
        for key in self.canonical_order:
            if key in remaining:
                lines.append(f"{key}={remaining.pop(key)}\n")
        for key, value in remaining.items():
            lines.append(f"{key}={value}\n")
        return "".join(lines)

    def write(self, config: Mapping[str, str], destination: PathLike) -> Path:
        """Replace ``destination`` with the rendered configuration.

        The new content goes to a temporary file next to the destination and
        is swapped in with ``os.replace``, so a failure leaves the old file as
        it was.
        """
        target = Path(destination)
        content = self.render(config)
        directory = target.parent
        temp_name: Optional[str] = None
        try:
            fd, temp_name = tempfile.mkstemp(prefix=f".{target.name}.", suffix=".tmp", dir=str(directory))
            with os.fdopen(fd, "w", encoding="utf-8", newline="\n") as handle:
                handle.write(content)
                handle.flush()
                os.fsync(handle.fileno())
            if target.exists():
                os.chmod(temp_name, target.stat().st_mode & 0o777)
            os.replace(temp_name, target)
        except OSError as exc:
            if temp_name and os.path.exists(temp_name):
                try:
                    os.unlink(temp_name)
                except OSError as cleanup_exc:
                    self.logger.warning("Unable to remove temporary file %s: %s", temp_name, cleanup_exc)
            raise PersistError(f"Failed to write {target}: {exc}") from exc
        return target

    def persist(self, chosen: ProbeResult, destination: PathLike) -> Dict[str, str]:
        existing = self.load(destination)
        updated = self.apply(existing, chosen)
        path = self.write(updated, destination)
        self.logger.info("Updated %s with Lavalink node %s", path, chosen.node.address)
        return updated


__all__ = [
    "DEFAULT_CANONICAL_ORDER",
    "DEFAULT_CONNECTION_KEYS",
    "SelectionPersister",
    "parse_env_text",
]
