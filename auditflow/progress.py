"""Percent completion and derived audit state."""

from __future__ import annotations

from typing import TYPE_CHECKING, Iterable, Optional

if TYPE_CHECKING:
    from .contracts import AuditAggregate, Step

CLOSED = "closed"


def compute_percent(steps: Iterable["Step"]) -> int:
    """Return ``round(100 * done / total)`` with halves rounded up, 0 if empty."""
    total = 0
    done = 0
    for step in steps:
        total += 1
        if step.status == "done":
            done += 1
    if total == 0:
        return 0
    # integer half-up rounding; round() would round 12.5 down to 12
    return (200 * done + total) // (2 * total)


def derive_state(aggregate: "AuditAggregate") -> Optional[str]:
    """Gate of the current step, ``closed`` once the pointer is cleared.

    ``None`` while the audit has no steps at all.
    """
    current = aggregate.current_step
    if current is not None:
        return current.gate
    if aggregate.steps:
        return CLOSED
    return None


def recalc(aggregate: "AuditAggregate") -> bool:
    """Refresh ``percent_complete`` in place; return whether it changed."""
    percent = compute_percent(aggregate.steps)
    if percent == aggregate.header.percent_complete:
        return False
    aggregate.header.percent_complete = percent
    return True
