from __future__ import annotations


class SelectorError(RuntimeError):
    """Base class for conditions that end a selection run."""


class SourceUnavailable(SelectorError):
    pass


class NoCandidates(SelectorError):
    pass


class NoReachableNodes(SelectorError):
    pass


class PersistError(SelectorError):
    pass


__all__ = [
    "SelectorError",
    "SourceUnavailable",
    "NoCandidates",
    "NoReachableNodes",
    "PersistError",
]
