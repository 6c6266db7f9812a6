from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import re
import socket
import ssl
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

import aiohttp

from .models import NodeDescriptor, NodeStats, ProbeErrorKind, ProbeResult

LOGGER_NAME = __name__ + ".NodeProbe"
VERSION_PATH = "/version"
STATS_PATH = "/v4/stats"
USER_AGENT = "Lavalink-Selector/1.0"
VERSION_PAIR_PATTERN = re.compile(r"(\d+)\.(\d+)")
VERSION_MAJOR_PATTERN = re.compile(r"(\d+)\.")
PROBE_STRATEGIES = ("tcp", "http")


class ProbeFailure(Exception):
    def __init__(self, kind: ProbeErrorKind, message: str) -> None:
        super().__init__(message)
        self.kind = kind


@dataclass
class _SampleOutcome:
    total: int
    latencies: List[float] = field(default_factory=list)
    last_kind: ProbeErrorKind = ProbeErrorKind.UNKNOWN
    last_error: Optional[str] = None


def classify_exception(exc: BaseException) -> ProbeErrorKind:
    if isinstance(exc, ProbeFailure):
        return exc.kind
    if isinstance(exc, asyncio.TimeoutError):
        return ProbeErrorKind.TIMEOUT
    if isinstance(exc, (aiohttp.ClientSSLError, aiohttp.ClientConnectorCertificateError, ssl.SSLError)):
        return ProbeErrorKind.PROTOCOL_ERROR
    if isinstance(exc, aiohttp.ClientConnectorError):
        return classify_exception(exc.os_error)
    if isinstance(exc, socket.gaierror):
        return ProbeErrorKind.DNS_FAILURE
    if isinstance(exc, ConnectionRefusedError):
        return ProbeErrorKind.CONNECTION_REFUSED
    if isinstance(
        exc,
        (aiohttp.ClientResponseError, aiohttp.ClientPayloadError, aiohttp.ServerDisconnectedError),
    ):
        return ProbeErrorKind.PROTOCOL_ERROR
    return ProbeErrorKind.UNKNOWN


def detect_major_version(body: Optional[str]) -> Optional[str]:
    """Guess the Lavalink major version from a ``/version`` response body."""
    if not body:
        return None
    try:
        data = json.loads(body)
    except ValueError:
        data = None
    if isinstance(data, dict):
        major = data.get("major")
        if isinstance(major, int) and major > 0:
            return f"v{major}"
        version_text = data.get("version") or data.get("semver")
        if isinstance(version_text, str):
            match = VERSION_MAJOR_PATTERN.search(version_text)
            if match:
                return f"v{int(match.group(1))}"
        if data:
            return "v4"
        return None
    match = VERSION_PAIR_PATTERN.search(body)
    if match:
        major_value = int(match.group(1))
        return f"v{major_value}" if major_value > 0 else None
    if body.strip():
        if "{" in body or "build" in body or "git" in body:
            return "v4"
        return "v3"
    return None


def _as_int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value)
    return None


def _as_float(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    return None


def parse_stats(payload: Any) -> Optional[NodeStats]:
    if not isinstance(payload, dict):
        return None
    players = payload.get("players")
    # some forks nest active/total counts under "players"
    if isinstance(players, dict):
        playing = _as_int(players.get("active"))
        players = players.get("total")
    else:
        playing = _as_int(payload.get("playingPlayers"))
    memory = payload.get("memory") if isinstance(payload.get("memory"), dict) else {}
    cpu = payload.get("cpu") if isinstance(payload.get("cpu"), dict) else {}
    return NodeStats(
        players=_as_int(players),
        playing_players=playing,
        uptime_ms=_as_int(payload.get("uptime")),
        memory_used=_as_int(memory.get("used")),
        memory_allocated=_as_int(memory.get("allocated")),
        cpu_cores=_as_int(cpu.get("cores")),
        system_load=_as_float(cpu.get("systemLoad")),
        lavalink_load=_as_float(cpu.get("lavalinkLoad")),
    )


class NodeProbe:
    """Measure one node, repeating the measurement ``samples`` times."""

    strategy = "base"

    def __init__(
        self,
        *,
        timeout_ms: float = 5000,
        samples: int = 1,
        sample_interval_ms: float = 100,
    ) -> None:
        self.timeout_ms = max(1.0, float(timeout_ms))
        self.samples = max(1, int(samples))
        self.sample_interval_ms = max(0.0, float(sample_interval_ms))
        self.logger = logging.getLogger(LOGGER_NAME)

    @property
    def timeout_seconds(self) -> float:
        return self.timeout_ms / 1000.0

    async def probe(self, descriptor: NodeDescriptor) -> ProbeResult:
        outcome = await self._collect_samples(descriptor, lambda: self._sample(descriptor))
        return self._build_result(descriptor, outcome)

    async def _sample(self, descriptor: NodeDescriptor) -> float:
        raise NotImplementedError

    async def _collect_samples(
        self,
        descriptor: NodeDescriptor,
        sampler: Callable[[], Awaitable[float]],
    ) -> _SampleOutcome:
        outcome = _SampleOutcome(total=self.samples)
        for index in range(self.samples):
            try:
                latency = await asyncio.wait_for(sampler(), timeout=self.timeout_seconds)
            except asyncio.TimeoutError:
                outcome.last_kind = ProbeErrorKind.TIMEOUT
                outcome.last_error = f"no answer within {self.timeout_ms:.0f}ms"
                self.logger.debug("%s sample %d timed out", descriptor.address, index + 1)
            except (ProbeFailure, OSError, aiohttp.ClientError) as exc:
                outcome.last_kind = classify_exception(exc)
                outcome.last_error = str(exc) or exc.__class__.__name__
                self.logger.debug(
                    "%s sample %d failed (%s): %s",
                    descriptor.address,
                    index + 1,
                    outcome.last_kind.value,
                    outcome.last_error,
                )
            else:
                outcome.latencies.append(latency)
            if index < self.samples - 1 and self.sample_interval_ms:
                await asyncio.sleep(self.sample_interval_ms / 1000.0)
        return outcome

    def _build_result(
        self,
        descriptor: NodeDescriptor,
        outcome: _SampleOutcome,
        *,
        detected_version: Optional[str] = None,
        stats: Optional[NodeStats] = None,
    ) -> ProbeResult:
        sampled_at = datetime.now(timezone.utc)
        if not outcome.latencies:
            return ProbeResult(
                node=descriptor,
                latency_ms=None,
                reachable=False,
                error_kind=outcome.last_kind,
                sampled_at=sampled_at,
                error=outcome.last_error,
                samples_ok=0,
                samples_total=outcome.total,
            )
        average = sum(outcome.latencies) / len(outcome.latencies)
        return ProbeResult(
            node=descriptor,
            latency_ms=round(average, 2),
            reachable=True,
            error_kind=ProbeErrorKind.NONE,
            sampled_at=sampled_at,
            samples_ok=len(outcome.latencies),
            samples_total=outcome.total,
            detected_version=detected_version,
            stats=stats,
        )


class TcpConnectProbe(NodeProbe):
    """Time how long it takes to open a TCP connection to the node."""

    strategy = "tcp"

    async def _sample(self, descriptor: NodeDescriptor) -> float:
        start = time.perf_counter()
        _reader, writer = await asyncio.open_connection(descriptor.host, descriptor.port)
        latency = (time.perf_counter() - start) * 1000.0
        writer.close()
        with contextlib.suppress(OSError):
            await writer.wait_closed()
        return latency


class EndpointProbe(NodeProbe):
    """Time an authenticated ``GET /version`` against the node's REST API.

    Connections are never reused, so every sample pays the connect and TLS
    cost the bot itself pays. After a successful measurement the node's
    ``/v4/stats`` are fetched once (untimed) when ``fetch_stats`` is set.
    """

    strategy = "http"

    def __init__(
        self,
        *,
        timeout_ms: float = 5000,
        samples: int = 1,
        sample_interval_ms: float = 100,
        verify_tls: bool = True,
        fetch_stats: bool = True,
        user_agent: str = USER_AGENT,
    ) -> None:
        super().__init__(timeout_ms=timeout_ms, samples=samples, sample_interval_ms=sample_interval_ms)
        self.verify_tls = verify_tls
        self.fetch_stats = fetch_stats
        self.user_agent = user_agent or USER_AGENT

    def _headers(self, descriptor: NodeDescriptor) -> Dict[str, str]:
        return {"Authorization": descriptor.password, "User-Agent": self.user_agent}

    def _open_session(self) -> aiohttp.ClientSession:
        connector = aiohttp.TCPConnector(force_close=True, ssl=self.verify_tls)
        timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)
        return aiohttp.ClientSession(connector=connector, timeout=timeout)

    async def probe(self, descriptor: NodeDescriptor) -> ProbeResult:
        bodies: List[str] = []
        async with self._open_session() as session:

            async def sampler() -> float:
                latency, body = await self._fetch_version(session, descriptor)
                if not bodies:
                    bodies.append(body)
                return latency

            outcome = await self._collect_samples(descriptor, sampler)
            stats = None
            if outcome.latencies and self.fetch_stats:
                stats = await self._fetch_stats(session, descriptor)
        detected = detect_major_version(bodies[0]) if bodies else None
        return self._build_result(descriptor, outcome, detected_version=detected, stats=stats)

    async def _fetch_version(self, session: aiohttp.ClientSession, descriptor: NodeDescriptor):
        url = f"{descriptor.base_url}{VERSION_PATH}"
        start = time.perf_counter()
        async with session.get(url, headers=self._headers(descriptor)) as response:
            body = await response.text()
            latency = (time.perf_counter() - start) * 1000.0
            if not 200 <= response.status < 300:
                raise ProbeFailure(ProbeErrorKind.PROTOCOL_ERROR, f"HTTP {response.status}")
        return latency, body

    async def _fetch_stats(self, session: aiohttp.ClientSession, descriptor: NodeDescriptor) -> Optional[NodeStats]:
        url = f"{descriptor.base_url}{STATS_PATH}"
        try:
            async with session.get(url, headers=self._headers(descriptor)) as response:
                if response.status != 200:
                    self.logger.debug("Stats unavailable for %s (HTTP %d)", descriptor.address, response.status)
                    return None
                payload = await response.json(content_type=None)
        except (asyncio.TimeoutError, OSError, aiohttp.ClientError, ValueError) as exc:
            self.logger.debug("Stats lookup failed for %s: %s", descriptor.address, exc)
            return None
        return parse_stats(payload)


def build_probe(
    strategy: str,
    *,
    timeout_ms: float = 5000,
    samples: int = 1,
    sample_interval_ms: float = 100,
    verify_tls: bool = True,
    fetch_stats: bool = True,
    user_agent: str = USER_AGENT,
) -> NodeProbe:
    normalized = (strategy or "").strip().lower()
    if normalized == "tcp":
        return TcpConnectProbe(
            timeout_ms=timeout_ms,
            samples=samples,
            sample_interval_ms=sample_interval_ms,
        )
    if normalized == "http":
        return EndpointProbe(
            timeout_ms=timeout_ms,
            samples=samples,
            sample_interval_ms=sample_interval_ms,
            verify_tls=verify_tls,
            fetch_stats=fetch_stats,
            user_agent=user_agent,
        )
    raise ValueError(f"Unsupported probe strategy: {strategy}")


__all__ = [
    "EndpointProbe",
    "NodeProbe",
    "PROBE_STRATEGIES",
    "ProbeFailure",
    "TcpConnectProbe",
    "build_probe",
    "classify_exception",
    "detect_major_version",
    "parse_stats",
]
