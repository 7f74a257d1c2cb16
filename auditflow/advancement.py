"""Advancement engine: owns the audit's current-step pointer."""

from __future__ import annotations

import logging
from typing import Optional

from .contracts import AuditAggregate, Step
from .errors import InvalidTransitionError
from .tracker import StepProgressTracker

logger = logging.getLogger(__name__)


class AdvancementEngine:
    """Moves ``current_step_id`` with two rules.

    ``advance`` completes a step and scans forward for the next step that is
    not done; it never moves the pointer to a lower ``seq``. ``advance_to``
    jumps anywhere and leaves statuses alone.
    """

    def __init__(self, tracker: StepProgressTracker | None = None) -> None:
        self._tracker = tracker or StepProgressTracker()

    def advance(
        self, aggregate: AuditAggregate, step_id: Optional[int] = None
    ) -> Optional[Step]:
        """Mark ``step_id`` (default: the current step) done and move on.

        Returns the new current step, or ``None`` when the audit closed.
        """
        if step_id is None:
            completed = aggregate.current_step
            if completed is None:
                raise InvalidTransitionError(
                    f"Audit {aggregate.audit_id} has no current step to advance",
                    field="step_id",
                )
        else:
            completed = aggregate.require_step(step_id)

        self._tracker.mark_done(aggregate, completed.step_id)
        next_step = self.next_after(aggregate, completed)
        aggregate.header.current_step_id = next_step.step_id if next_step else None

        if next_step is None:
            logger.info(
                f"Audit {aggregate.audit_id} closed after step {completed.seq}"
            )
        else:
            logger.info(
                f"Audit {aggregate.audit_id} advanced from step {completed.seq} "
                f"to step {next_step.seq}"
            )
        return next_step

    def advance_to(self, aggregate: AuditAggregate, step_id: int) -> Step:
        """Force the pointer onto ``step_id`` in either direction."""
        target = aggregate.require_step(step_id)
        aggregate.header.current_step_id = target.step_id
        logger.info(f"Audit {aggregate.audit_id} moved to step {target.seq}")
        return target

    @staticmethod
    def next_after(aggregate: AuditAggregate, completed: Step) -> Optional[Step]:
        """First not-done step after ``completed`` that is not behind the pointer.

        Earlier steps that were skipped are never revisited.
        """
        current = aggregate.current_step
        floor = current.seq if current is not None else completed.seq
        candidates = [
            s
            for s in aggregate.steps
            if s.status != "done" and s.seq > completed.seq and s.seq >= floor
        ]
        return min(candidates, key=lambda s: s.seq, default=None)
