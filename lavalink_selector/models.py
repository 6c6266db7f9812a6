from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Iterator, List, Optional, Tuple

UNKNOWN_NAME = "Unknown"


class ProbeErrorKind(str, Enum):
    NONE = "none"
    TIMEOUT = "timeout"
    CONNECTION_REFUSED = "connection_refused"
    DNS_FAILURE = "dns_failure"
    PROTOCOL_ERROR = "protocol_error"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class NodeDescriptor:
    host: str
    port: int
    password: str
    secure: bool
    name: str = UNKNOWN_NAME
    region: Optional[str] = None
    version: Optional[str] = None

    @property
    def scheme(self) -> str:
        return "https" if self.secure else "http"

    @property
    def base_url(self) -> str:
        return f"{self.scheme}://{self.host}:{self.port}"

    @property
    def address(self) -> str:
        return f"{self.host}:{self.port}"

    @property
    def display_name(self) -> str:
        if self.name and self.name != UNKNOWN_NAME:
            return self.name
        return self.address


@dataclass(frozen=True)
class NodeStats:
    players: Optional[int] = None
    playing_players: Optional[int] = None
    uptime_ms: Optional[int] = None
    memory_used: Optional[int] = None
    memory_allocated: Optional[int] = None
    cpu_cores: Optional[int] = None
    system_load: Optional[float] = None
    lavalink_load: Optional[float] = None


@dataclass(frozen=True)
class ProbeResult:
    """Outcome of measuring one node.

    ``reachable`` and ``latency_ms`` always agree: a reachable node has a
    latency and no error kind, an unreachable one has neither latency nor
    ``ProbeErrorKind.NONE``.
    """

    node: NodeDescriptor
    latency_ms: Optional[float]
    reachable: bool
    error_kind: ProbeErrorKind
    sampled_at: datetime
    error: Optional[str] = None
    samples_ok: int = 0
    samples_total: int = 0
    detected_version: Optional[str] = None
    stats: Optional[NodeStats] = None

    def __post_init__(self) -> None:
        if self.reachable != (self.latency_ms is not None):
            raise ValueError("reachable must be True exactly when latency_ms is set")
        if self.reachable != (self.error_kind is ProbeErrorKind.NONE):
            raise ValueError("error_kind must be NONE exactly when the node is reachable")

    @property
    def name(self) -> str:
        return self.node.name

    @property
    def host(self) -> str:
        return self.node.host

    @property
    def port(self) -> int:
        return self.node.port

    @property
    def password(self) -> str:
        return self.node.password

    @property
    def secure(self) -> bool:
        return self.node.secure

    @property
    def region(self) -> Optional[str]:
        return self.node.region

    @property
    def version(self) -> Optional[str]:
        return self.node.version

    @property
    def display_name(self) -> str:
        return self.node.display_name

    @property
    def success_rate(self) -> int:
        if not self.samples_total:
            return 0
        return round(self.samples_ok * 100 / self.samples_total)


@dataclass(frozen=True)
class RankedSelection:
    """Reachable probe results, lowest latency first.

    ``candidate_count`` is the number of descriptors that were probed, which
    separates "every node is down" from "nothing was parsed".
    """

    results: Tuple[ProbeResult, ...] = ()
    candidate_count: int = 0

    def __len__(self) -> int:
        return len(self.results)

    def __iter__(self) -> Iterator[ProbeResult]:
        return iter(self.results)

    def __getitem__(self, index: int) -> ProbeResult:
        return self.results[index]

    @property
    def is_empty(self) -> bool:
        return not self.results

    @property
    def best(self) -> Optional[ProbeResult]:
        return self.results[0] if self.results else None


@dataclass
class ProbeScanSummary:
    results: List[ProbeResult] = field(default_factory=list)
    error_counts: Counter = field(default_factory=Counter)
    version_counts: Counter = field(default_factory=Counter)

    def record(self, result: ProbeResult) -> None:
        self.results.append(result)
        if not result.reachable:
            self.error_counts[result.error_kind.value] += 1
        if result.detected_version:
            self.version_counts[result.detected_version] += 1

    @property
    def reachable_count(self) -> int:
        return sum(1 for result in self.results if result.reachable)

    @property
    def unreachable_count(self) -> int:
        return len(self.results) - self.reachable_count
