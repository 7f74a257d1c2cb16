"""Step progress tracking: per-step status, notes and output."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from .contracts import STEP_STATUSES, AuditAggregate, Step, utcnow
from .errors import InvalidTransitionError, ValidationFailedError

logger = logging.getLogger(__name__)

# Allowed status moves on the default path. ``done`` is terminal here; only
# ``reopen`` may take a step out of it.
TRANSITIONS: Dict[str, frozenset[str]] = {
    "not_started": frozenset({"not_started", "in_progress", "done"}),
    "in_progress": frozenset({"not_started", "in_progress", "done"}),
    "done": frozenset({"done"}),
}


def implied_status(
    current: str,
    status: Optional[str],
    notes: Optional[str],
    output: Optional[Dict[str, Any]],
) -> Optional[str]:
    """Status to apply for a progress write.

    An explicit ``status`` always wins. Otherwise non-blank notes or a
    non-empty output on a ``not_started`` step count as work started.
    """
    if status is not None:
        return status
    if current == "not_started" and (bool(notes and notes.strip()) or bool(output)):
        return "in_progress"
    return None


class StepProgressTracker:
    """Mutates step status, notes and output. Never moves the current pointer."""

    def save_progress(
        self,
        aggregate: AuditAggregate,
        step_id: int,
        status: Optional[str] = None,
        notes: Optional[str] = None,
        output: Optional[Dict[str, Any]] = None,
    ) -> Step:
        """Update a step's mutable fields.

        When ``status`` is omitted and the step has not been started, writing
        notes (or output) promotes it to ``in_progress``. An explicit status
        is applied exactly as requested, subject to ``TRANSITIONS``.
        """
        step = aggregate.require_step(step_id)
        if status is not None and status not in STEP_STATUSES:
            raise ValidationFailedError(
                {"status": f"Unknown status {status!r}; expected one of {STEP_STATUSES}"}
            )
        requested = status
        status = implied_status(step.status, status, notes, output)
        if requested is None and status is not None:
            logger.debug(
                f"Step {step_id} of audit {aggregate.audit_id} implicitly started"
            )
        if status is not None:
            self._transition(step, status)
        if notes is not None:
            step.notes = notes
        if output is not None:
            step.output = output
        step.updated_utc = utcnow()
        return step

    def mark_done(self, aggregate: AuditAggregate, step_id: int) -> Step:
        step = aggregate.require_step(step_id)
        self._transition(step, "done")
        step.updated_utc = utcnow()
        return step

    def reopen(self, aggregate: AuditAggregate, step_id: int) -> Step:
        """Explicitly move a ``done`` step back to ``in_progress``."""
        step = aggregate.require_step(step_id)
        if step.status != "done":
            logger.debug(f"Step {step_id} is {step.status}; nothing to reopen")
            return step
        step.status = "in_progress"
        step.updated_utc = utcnow()
        return step

    @staticmethod
    def _transition(step: Step, status: str) -> None:
        if status not in TRANSITIONS[step.status]:
            raise InvalidTransitionError(
                f"Step {step.step_id} is {step.status}; cannot move to {status} "
                "(use reopen first)"
            )
        step.status = status
