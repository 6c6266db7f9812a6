from __future__ import annotations

import asyncio
import logging
from typing import Callable, List, Optional, Sequence

from .errors import NoCandidates, NoReachableNodes
from .models import ProbeResult, RankedSelection
from .ranking import top_k

DEFAULT_TOP_COUNT = 5


def describe_choice(index: int, result: ProbeResult) -> List[str]:
    region = f" [{result.region}]" if result.region else ""
    if result.detected_version:
        version = f" ({result.detected_version} detected)"
    elif result.version:
        version = f" ({result.version} listed)"
    else:
        version = ""
    return [
        f"  [{index}] {result.display_name}{region}{version}",
        f"      {result.node.address}",
        f"      {result.latency_ms}ms latency ({result.samples_ok}/{result.samples_total} samples)",
        f"      Secure: {'true' if result.secure else 'false'}",
    ]


def parse_choice(answer: str, option_count: int) -> Optional[int]:
    """Map an operator answer to a 0-based index, or None when it is invalid."""
    text = (answer or "").strip()
    if not text:
        return 0
    if not text.isdigit():
        return None
    number = int(text)
    if 1 <= number <= option_count:
        return number - 1
    return None


class SelectionPolicy:
    def __init__(
        self,
        *,
        top_count: int = DEFAULT_TOP_COUNT,
        input_func: Callable[[str], str] = input,
        output_func: Callable[[str], None] = print,
    ) -> None:
        self.top_count = max(1, int(top_count))
        self.input_func = input_func
        self.output_func = output_func
        self.logger = logging.getLogger(__name__ + ".SelectionPolicy")

    def _ensure_choosable(self, selection: RankedSelection) -> None:
        if selection.candidate_count == 0:
            raise NoCandidates("No valid servers found in list")
        if selection.is_empty:
            raise NoReachableNodes(f"None of the {selection.candidate_count} servers are reachable")

    def choose_automatic(self, selection: RankedSelection) -> ProbeResult:
        self._ensure_choosable(selection)
        chosen = selection[0]
        self.logger.info("Selected %s (lowest latency, %sms)", chosen.display_name, chosen.latency_ms)
        return chosen

    async def choose_interactive(self, selection: RankedSelection) -> ProbeResult:
        self._ensure_choosable(selection)
        options = top_k(selection, self.top_count)
        self._render_menu(options)
        prompt = f"Choose a server (1-{len(options)}) or press Enter for #1: "
        while True:
            answer = await asyncio.to_thread(self.input_func, prompt)
            index = parse_choice(answer, len(options))
            if index is not None:
                break
            self.output_func(f"Invalid choice. Please enter 1-{len(options)} or press Enter.")
        chosen = options[index]
        suffix = " (lowest ping)" if index == 0 else ""
        self.output_func(f"Selected: {chosen.display_name}{suffix}")
        self.logger.info("Operator selected %s (%sms)", chosen.display_name, chosen.latency_ms)
        return chosen

    async def select(self, selection: RankedSelection, *, interactive: bool = False) -> ProbeResult:
        if interactive:
            return await self.choose_interactive(selection)
        return self.choose_automatic(selection)

    def _render_menu(self, options: Sequence[ProbeResult]) -> None:
        self.output_func(f"Top {len(options)} servers by latency:")
        self.output_func("")
        for index, result in enumerate(options, start=1):
            for line in describe_choice(index, result):
                self.output_func(line)
            self.output_func("")


__all__ = [
    "DEFAULT_TOP_COUNT",
    "SelectionPolicy",
    "describe_choice",
    "parse_choice",
]
