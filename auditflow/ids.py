"""Identifier allocation for audits, steps and templates."""

from __future__ import annotations

from typing import Dict, Protocol


class IdAllocator(Protocol):
    """Source of new identifiers, keyed by entity kind (``audit``, ``step``...)."""

    async def allocate(self, kind: str) -> int:
        """Return a fresh identifier for ``kind``."""


class SequentialIdAllocator:
    """Per-instance counters starting at ``start`` for every kind."""

    def __init__(self, start: int = 1) -> None:
        self._start = start
        self._counters: Dict[str, int] = {}

    async def allocate(self, kind: str) -> int:
        value = self._counters.get(kind, self._start)
        self._counters[kind] = value + 1
        return value

    def seed(self, kind: str, last_used: int) -> None:
        """Make sure the next id for ``kind`` is greater than ``last_used``."""
        current = self._counters.get(kind, self._start)
        self._counters[kind] = max(current, last_used + 1)


class TempIdAllocator:
    """Negative placeholder ids for entities whose real id is not known yet.

    Scoped to its owner so two callers never share a counter.
    """

    def __init__(self) -> None:
        self._next = -1

    async def allocate(self, kind: str = "temp") -> int:
        value = self._next
        self._next -= 1
        return value

    @staticmethod
    def is_temporary(identifier: int) -> bool:
        return identifier < 0
