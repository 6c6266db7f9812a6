from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Any, Dict, List, Optional, Set, Tuple

import requests
from requests.exceptions import RequestException

from .errors import SourceUnavailable
from .models import UNKNOWN_NAME, NodeDescriptor

LOGGER_NAME = __name__ + ".ServerListSource"
REQUIRED_FIELDS = ("host", "port", "password", "secure")
OPTIONAL_FIELDS = ("name", "region", "version")
VALUE_PATTERN = (
    r'(?:"(?P<dq>(?:[^"\\]|\\.)*)"'
    r"|'(?P<sq>(?:[^'\\]|\\.)*)'"
    r"|(?P<bool>true|false)\b"
    r"|(?P<int>-?\d+)(?![\w.])"
    r"|(?P<bare>[A-Za-z0-9_][\w.\-]*))"
)
ESCAPE_PATTERN = re.compile(r"\\(.)", re.DOTALL)
QUOTES = ("\"", "'")
MIN_PORT = 1
MAX_PORT = 65535


def _field_patterns(field_name: str) -> List[re.Pattern]:
    key = re.escape(field_name)
    return [
        re.compile(rf"""["']{key}["']\s*[:=]\s*{VALUE_PATTERN}""", re.IGNORECASE | re.DOTALL),
        re.compile(rf"""(?<![\w"']){key}\s*[:=]\s*{VALUE_PATTERN}""", re.IGNORECASE | re.DOTALL),
    ]


FIELD_PATTERNS: Dict[str, List[re.Pattern]] = {
    field_name: _field_patterns(field_name) for field_name in REQUIRED_FIELDS + OPTIONAL_FIELDS
}


def _scan_blocks(text: str, start: int) -> Dict[int, Optional[int]]:
    """Map each brace counted while scanning from ``start`` to its closing index.

    Scanning stops once the block opened at ``start`` closes. Braces still
    open at the end of the text map to None.
    """
    closes: Dict[int, Optional[int]] = {}
    open_braces: List[int] = []
    quote: Optional[str] = None
    escaped = False
    for index in range(start, len(text)):
        char = text[index]
        if quote:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == quote:
                quote = None
        elif char in QUOTES:
            quote = char
        elif char == "{":
            open_braces.append(index)
        elif char == "}":
            closes[open_braces.pop()] = index
            if not open_braces:
                return closes
    for position in open_braces:
        closes[position] = None
    return closes


def extract_fragments(text: str) -> List[str]:
    """Return every top-level ``{...}`` block in source order.

    Braces inside single- or double-quoted strings of a block do not count.
    When a block is never closed, scanning resumes just after its opening
    brace so later complete blocks are still found. Closing positions found
    by an earlier scan are reused on a rescan.
    """
    fragments: List[str] = []
    known: Dict[int, Optional[int]] = {}
    start = text.find("{")
    while start != -1:
        if start not in known:
            known.update(_scan_blocks(text, start))
        end = known[start]
        if end is None:
            start = text.find("{", start + 1)
            continue
        fragments.append(text[start : end + 1])
        start = text.find("{", end + 1)
    return fragments


def _unescape(value: str) -> str:
    return ESCAPE_PATTERN.sub(r"\1", value)


def _extract_raw(fragment: str, field_name: str) -> Optional[Any]:
    for pattern in FIELD_PATTERNS[field_name]:
        match = pattern.search(fragment)
        if not match:
            continue
        if match.group("dq") is not None:
            return _unescape(match.group("dq"))
        if match.group("sq") is not None:
            return _unescape(match.group("sq"))
        if match.group("bool") is not None:
            return match.group("bool").lower() == "true"
        if match.group("int") is not None:
            return int(match.group("int"))
        return match.group("bare")
    return None


def _coerce_text(value: Any) -> Optional[str]:
    if value is None or isinstance(value, bool):
        return None
    text = str(value).strip()
    return text or None


def _coerce_port(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, str):
        value = value.strip()
        if not value.isdigit():
            return None
        value = int(value)
    if not isinstance(value, int):
        return None
    if MIN_PORT <= value <= MAX_PORT:
        return value
    return None


def _coerce_secure(value: Any) -> Optional[bool]:
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in {"true", "false"}:
        return value.strip().lower() == "true"
    return None


def parse_fragment(fragment: str) -> Optional[NodeDescriptor]:
    host = _coerce_text(_extract_raw(fragment, "host"))
    port = _coerce_port(_extract_raw(fragment, "port"))
    password = _coerce_text(_extract_raw(fragment, "password"))
    secure = _coerce_secure(_extract_raw(fragment, "secure"))
    if host is None or port is None or password is None or secure is None:
        return None
    return NodeDescriptor(
        name=_coerce_text(_extract_raw(fragment, "name")) or UNKNOWN_NAME,
        host=host,
        port=port,
        password=password,
        secure=secure,
        region=_coerce_text(_extract_raw(fragment, "region")),
        version=_coerce_text(_extract_raw(fragment, "version")),
    )


def parse(raw_text: str) -> List[NodeDescriptor]:
    logger = logging.getLogger(LOGGER_NAME)
    descriptors: List[NodeDescriptor] = []
    seen: Set[Tuple[str, int]] = set()
    for fragment in extract_fragments(raw_text or ""):
        try:
            descriptor = parse_fragment(fragment)
        except ValueError as exc:
            logger.debug("Skipping unparseable server block (%s): %.80r", exc, fragment)
            continue
        if descriptor is None:
            logger.debug("Skipping server block without host/port/password/secure: %.80r", fragment)
            continue
        key = (descriptor.host.lower(), descriptor.port)
        if key in seen:
            logger.debug("Skipping duplicate server %s", descriptor.address)
            continue
        seen.add(key)
        descriptors.append(descriptor)
    return descriptors


def load_source_text(source: str, timeout: float = 15) -> str:
    if source.startswith("http://") or source.startswith("https://"):
        try:
            response = requests.get(source, timeout=timeout)
            response.raise_for_status()
        except RequestException as exc:
            raise SourceUnavailable(f"Failed to download server list {source}: {exc}") from exc
        return response.text
    path = Path(source)
    try:
        return path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        raise SourceUnavailable(f"Failed to read server list {path}: {exc}") from exc


class ServerListSource:
    def __init__(self, source: str, *, request_timeout: float = 15) -> None:
        self.source = source
        self.request_timeout = request_timeout
        self.logger = logging.getLogger(LOGGER_NAME)

    def load(self) -> List[NodeDescriptor]:
        raw_text = load_source_text(self.source, timeout=self.request_timeout)
        descriptors = parse(raw_text)
        self.logger.info("Found %d servers in %s", len(descriptors), self.source)
        return descriptors


__all__ = [
    "ServerListSource",
    "extract_fragments",
    "load_source_text",
    "parse",
    "parse_fragment",
]
