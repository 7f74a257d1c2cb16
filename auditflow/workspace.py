"""Client-side audit workspace with optimistic, rollback-safe commands."""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from .contracts import AuditView, StepView
from .errors import StepNotFoundError
from .manager import AuditInstanceManager
from .tracker import implied_status

logger = logging.getLogger(__name__)


class OptimisticCommand:
    """Apply a change locally, commit it remotely, roll back on failure.

    ``apply_local`` mutates the workspace's cached view in place;
    ``commit_remote`` returns the authoritative view. If the commit raises,
    the cached view is restored to the snapshot taken before the local
    change and the error propagates.
    """

    def __init__(
        self,
        name: str,
        apply_local: Callable[[AuditView], None],
        commit_remote: Callable[[], Awaitable[AuditView]],
    ) -> None:
        self.name = name
        self.apply_local = apply_local
        self.commit_remote = commit_remote

    async def execute(self, workspace: "AuditWorkspace") -> AuditView:
        snapshot = workspace.view.model_copy(deep=True)
        self.apply_local(workspace.view)
        try:
            committed = await self.commit_remote()
        except BaseException as exc:
            logger.warning(f"{self.name} failed, rolling back local change: {exc}")
            workspace.view = snapshot
            raise
        workspace.view = committed
        return committed


class AuditWorkspace:
    """Cached view of one audit, as held by an interactive caller.

    Reads go through ``refresh``; writes are optimistic commands so the
    cached view always shows either the local intent or the committed
    state, never a half-applied mix.
    """

    def __init__(self, manager: AuditInstanceManager, view: AuditView) -> None:
        self._manager = manager
        self.view = view

    @classmethod
    async def open(
        cls, manager: AuditInstanceManager, audit_id: int
    ) -> "AuditWorkspace":
        workspace = cls(manager, await manager.get_audit(audit_id))
        if workspace.view.header.path_id is not None and not workspace.view.steps:
            await workspace.refresh()
        return workspace

    @property
    def audit_id(self) -> int:
        return self.view.header.audit_id

    async def refresh(self) -> AuditView:
        """Re-fetch, self-healing an audit that has a path but no steps."""
        view = await self._manager.get_audit(self.audit_id)
        if view.header.path_id is not None and not view.steps:
            view = (await self._manager.heal_path(self.audit_id)).audit
        self.view = view
        return view

    def step(self, step_id: int) -> StepView:
        for step in self.view.steps:
            if step.step_id == step_id:
                return step
        raise StepNotFoundError(step_id, audit_id=self.audit_id)

    def default_selection(self) -> Optional[StepView]:
        """Current step, else the first in-progress step, else the first step."""
        current = self.view.current_step
        if current is not None:
            return current
        in_progress = next(
            (s for s in self.view.steps if s.status == "in_progress"), None
        )
        return in_progress or (self.view.steps[0] if self.view.steps else None)

    def edit_notes(self, step_id: int, notes: str) -> StepView:
        """Local-only draft edit; mirrors the implicit ``in_progress`` rule."""
        step = self.step(step_id)
        status = implied_status(step.status, None, notes, None)
        if status is not None:
            step.status = status
        step.notes = notes
        return step

    async def save_progress(
        self,
        step_id: int,
        status: Optional[str] = None,
        notes: Optional[str] = None,
        output: Optional[Dict[str, Any]] = None,
    ) -> AuditView:
        self.step(step_id)

        def apply(view: AuditView) -> None:
            step = next(s for s in view.steps if s.step_id == step_id)
            new_status = implied_status(step.status, status, notes, output)
            if new_status is not None:
                step.status = new_status
            if notes is not None:
                step.notes = notes
            if output is not None:
                step.output = output

        command = OptimisticCommand(
            "save_progress",
            apply,
            lambda: self._manager.save_progress(
                self.audit_id, step_id, status, notes, output
            ),
        )
        return await command.execute(self)

    async def toggle_done(self, step_id: int) -> AuditView:
        """Flip a step between ``done`` and ``in_progress`` without moving the pointer."""
        reopening = self.step(step_id).status == "done"

        def apply(view: AuditView) -> None:
            step = next(s for s in view.steps if s.step_id == step_id)
            step.status = "in_progress" if reopening else "done"

        if reopening:
            commit = lambda: self._manager.reopen(self.audit_id, step_id)  # noqa: E731
        else:
            commit = lambda: self._manager.mark_done(self.audit_id, step_id)  # noqa: E731
        return await OptimisticCommand("toggle_done", apply, commit).execute(self)

    async def mark_done_and_advance(self, step_id: Optional[int] = None) -> AuditView:
        target = step_id
        if target is None:
            current = self.view.current_step
            target = current.step_id if current else None

        def apply(view: AuditView) -> None:
            for step in view.steps:
                if step.step_id == target:
                    step.status = "done"

        command = OptimisticCommand(
            "mark_done_and_advance",
            apply,
            lambda: self._manager.advance(self.audit_id, step_id),
        )
        return await command.execute(self)
