from __future__ import annotations

import re
from typing import Iterable, Optional, Tuple, Union

from .models import ProbeResult, RankedSelection

MAJOR_VERSION_PATTERN = re.compile(r"^\s*v?(\d+)")


def rank(results: Iterable[ProbeResult]) -> RankedSelection:
    """Keep reachable results, lowest latency first.

    ``sorted`` is stable, so equal latencies keep their input order.
    """
    result_list = list(results)
    reachable = [result for result in result_list if result.reachable]
    ordered = sorted(reachable, key=lambda result: result.latency_ms)
    return RankedSelection(results=tuple(ordered), candidate_count=len(result_list))


def top_k(selection: RankedSelection, k: int) -> Tuple[ProbeResult, ...]:
    if k <= 0:
        return ()
    return selection.results[:k]


def _major_of(value: Optional[str]) -> Optional[int]:
    if not value:
        return None
    match = MAJOR_VERSION_PATTERN.match(value)
    if not match:
        return None
    return int(match.group(1))


def matches_major_version(result: ProbeResult, major: int) -> bool:
    if result.detected_version:
        return _major_of(result.detected_version) == major
    return _major_of(result.version) == major


def filter_major_version(selection: RankedSelection, major: Union[int, str]) -> RankedSelection:
    """Narrow a selection to one Lavalink major version.

    A node's detected version wins; the version listed in the server list is
    only consulted when nothing was detected.
    """
    wanted = major if isinstance(major, int) else _major_of(str(major))
    if wanted is None:
        raise ValueError(f"Invalid major version: {major!r}")
    kept = tuple(result for result in selection if matches_major_version(result, wanted))
    return RankedSelection(results=kept, candidate_count=selection.candidate_count)


__all__ = [
    "filter_major_version",
    "matches_major_version",
    "rank",
    "top_k",
]
