from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Callable, Iterable, List, Optional, Sequence

from .models import NodeDescriptor, ProbeErrorKind, ProbeResult, ProbeScanSummary
from .probe import NodeProbe

LOGGER_NAME = __name__ + ".ProbeScheduler"
DEFAULT_BATCH_SIZE = 5


def _batched(items: Sequence[NodeDescriptor], batch_size: int) -> Iterable[Sequence[NodeDescriptor]]:
    for offset in range(0, len(items), batch_size):
        yield items[offset : offset + batch_size]


class ProbeScheduler:
    """Probe candidates in fixed-size batches.

    Every probe in a batch runs concurrently and the whole batch is awaited
    before the next one starts. Results always come back in input order, one
    per descriptor, whatever happened to the individual probes.
    """

    def __init__(self, probe: NodeProbe, *, batch_size: int = DEFAULT_BATCH_SIZE) -> None:
        self.probe = probe
        self.batch_size = max(1, int(batch_size))
        self.logger = logging.getLogger(LOGGER_NAME)

    async def probe_all(
        self,
        descriptors: Iterable[NodeDescriptor],
        batch_size: Optional[int] = None,
        progress_callback: Optional[Callable[[ProbeResult], None]] = None,
    ) -> List[ProbeResult]:
        candidate_list = list(descriptors)
        size = max(1, int(batch_size)) if batch_size else self.batch_size
        results: List[ProbeResult] = []
        for batch_number, batch in enumerate(_batched(candidate_list, size), start=1):
            self.logger.debug("Probing batch %d (%d nodes)", batch_number, len(batch))
            batch_results = await asyncio.gather(*(self._probe_safely(descriptor) for descriptor in batch))
            for result in batch_results:
                results.append(result)
                if progress_callback:
                    progress_callback(result)
        return results

    async def scan(
        self,
        descriptors: Iterable[NodeDescriptor],
        progress_callback: Optional[Callable[[ProbeResult], None]] = None,
    ) -> ProbeScanSummary:
        summary = ProbeScanSummary()
        candidate_list = list(descriptors)
        self.logger.info(
            "Testing %d Lavalink servers (%s probe, batches of %d)",
            len(candidate_list),
            self.probe.strategy,
            self.batch_size,
        )

        def _record(result: ProbeResult) -> None:
            summary.record(result)
            if progress_callback:
                progress_callback(result)

        await self.probe_all(candidate_list, progress_callback=_record)
        self._log_summary(summary)
        return summary

    async def _probe_safely(self, descriptor: NodeDescriptor) -> ProbeResult:
        try:
            return await self.probe.probe(descriptor)
        except Exception as exc:  # pylint: disable=broad-except
            self.logger.error("Probe task failed for %s (%s)", descriptor.address, exc)
            return ProbeResult(
                node=descriptor,
                latency_ms=None,
                reachable=False,
                error_kind=ProbeErrorKind.UNKNOWN,
                sampled_at=datetime.now(timezone.utc),
                error=exc.__class__.__name__,
                samples_total=self.probe.samples,
            )

    def _log_summary(self, summary: ProbeScanSummary) -> None:
        self.logger.info(
            "Probing completed | reachable=%d | candidates=%d",
            summary.reachable_count,
            len(summary.results),
        )
        if summary.error_counts:
            ordered = [f"{kind}={count}" for kind, count in summary.error_counts.most_common()]
            self.logger.info("Failure kinds: %s", ", ".join(ordered))
        if summary.version_counts:
            ordered = [f"{version}={count}" for version, count in summary.version_counts.items()]
            self.logger.info("Detected versions: %s", ", ".join(ordered))


__all__ = [
    "DEFAULT_BATCH_SIZE",
    "ProbeScheduler",
]
