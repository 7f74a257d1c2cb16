"""Audit instance manager: the engine's public surface."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, Literal, Mapping, Optional

from pydantic import BaseModel

from . import progress
from .advancement import AdvancementEngine
from .catalog import TemplateCatalog
from .config import AuditflowConfig, load_config
from .contracts import (
    Audit,
    AuditAggregate,
    AuditSummary,
    AuditView,
    Step,
    Template,
)
from .errors import (
    AuditNotFoundError,
    TemplateNotFoundError,
    TransactionError,
    ValidationFailedError,
)
from .ids import IdAllocator
from .ingest import AuditCreateRequest, StepProgressRequest, parse_request
from .persistence import get_repository
from .persistence.repository import AuditRepository, TemplateRepository
from .tracker import StepProgressTracker
from .utils.retry import RetryPolicy

logger = logging.getLogger(__name__)

HealOutcome = Literal[
    "seeded", "already_seeded", "no_path", "empty_template", "unresolved"
]


class HealResult(BaseModel):
    """Result of a bounded self-heal of an audit's seeded steps."""

    outcome: HealOutcome
    attempts: int = 0
    audit: AuditView


class AuditInstanceManager:
    """Creates, seeds, mutates and deletes audits.

    Every mutating call loads the ``(Audit, Step[])`` aggregate, changes a
    private copy, recalculates the percentage and saves it back in one
    transaction. A failed save leaves the stored aggregate untouched, so
    the call can simply be retried.
    """

    def __init__(
        self,
        audits: AuditRepository,
        templates: TemplateRepository,
        ids: IdAllocator,
        config: Optional[AuditflowConfig] = None,
        tracker: Optional[StepProgressTracker] = None,
        advancement: Optional[AdvancementEngine] = None,
        seed_policy: Optional[RetryPolicy] = None,
    ) -> None:
        self._audits = audits
        self._templates = templates
        self._ids = ids
        self._config = config or AuditflowConfig()
        self._tracker = tracker or StepProgressTracker()
        self._advancement = advancement or AdvancementEngine(self._tracker)
        self._seed_policy = seed_policy or self._config.retry.seed_policy()

    # ------------------------------------------------------------------
    # Helpers
    async def _load(self, audit_id: int) -> AuditAggregate:
        aggregate = await self._audits.load(audit_id)
        if aggregate is None:
            raise AuditNotFoundError(audit_id)
        return aggregate

    async def _commit(self, aggregate: AuditAggregate) -> AuditView:
        progress.recalc(aggregate)
        aggregate.touch()
        await self._audits.save(aggregate)
        return aggregate.to_view()

    async def _template_for(self, path_id: int) -> Template:
        template = await self._templates.get_template(path_id)
        if template is None:
            raise TemplateNotFoundError(path_id)
        if self._config.audits.require_published_templates and not template.published:
            raise ValidationFailedError(
                {"path_id": f"Template {path_id} is not published"}
            )
        return template

    async def _seed(self, aggregate: AuditAggregate, template: Template) -> bool:
        """Create one step per definition; no-op when steps already exist."""
        if aggregate.steps:
            return False
        steps = []
        for definition in sorted(template.steps, key=lambda d: d.seq):
            steps.append(
                Step(
                    step_id=await self._ids.allocate("step"),
                    audit_id=aggregate.audit_id,
                    seq=definition.seq,
                    title=definition.title,
                    gate=definition.gate,
                    required=definition.required,
                    definition=list(definition.definition_of_done),
                )
            )
        aggregate.steps = steps
        aggregate.header.path_id = template.path_id
        aggregate.header.current_step_id = steps[0].step_id if steps else None
        if not aggregate.header.audit_type:
            aggregate.header.audit_type = template.name
        logger.info(
            f"Seeded {len(steps)} steps for audit {aggregate.audit_id} "
            f"from template {template.path_id}"
        )
        return True

    # ------------------------------------------------------------------
    # Creation and deletion
    async def create_audit(
        self,
        title: str,
        engagement_id: int,
        domain: Optional[str] = None,
        audit_type: Optional[str] = None,
        owner_contact_id: Optional[int] = None,
        path_id: Optional[int] = None,
        notes: Optional[str] = None,
        client_id: Optional[int] = None,
        start_utc: Optional[datetime] = None,
    ) -> AuditView:
        """Create an audit, seeding its steps when ``path_id`` is given."""
        fields = {
            "title": title,
            "engagement_id": engagement_id,
            "domain": domain,
            "audit_type": audit_type,
            "owner_contact_id": owner_contact_id,
            "path_id": path_id,
            "notes": notes,
            "client_id": client_id,
            "start_utc": start_utc,
        }
        return await self.create_audit_from_payload(fields)

    async def create_audit_from_payload(self, payload: Mapping[str, Any]) -> AuditView:
        """Create an audit from an external payload using any accepted spelling."""
        request: AuditCreateRequest = parse_request(
            AuditCreateRequest,
            {k: v for k, v in payload.items() if v is not None},
            rules=self._config.audits,
        )
        template = None
        if request.path_id is not None:
            template = await self._template_for(request.path_id)

        header = Audit(
            audit_id=await self._ids.allocate("audit"),
            **request.model_dump(),
        )
        aggregate = AuditAggregate(header=header)
        if template is not None:
            await self._seed(aggregate, template)
        view = await self._commit(aggregate)
        logger.info(f"Created audit {header.audit_id} ({header.title})")
        return view

    async def delete_audit(self, audit_id: int) -> None:
        """Delete an audit and its steps; unknown ids raise ``AuditNotFoundError``."""
        if not await self._audits.delete(audit_id):
            raise AuditNotFoundError(audit_id)
        logger.info(f"Deleted audit {audit_id}")

    # ------------------------------------------------------------------
    # Paths
    async def set_path(self, audit_id: int, path_id: int) -> AuditView:
        """Assign a template and seed steps. No-op once steps exist."""
        aggregate = await self._load(audit_id)
        if aggregate.steps:
            logger.debug(
                f"Audit {audit_id} already has {len(aggregate.steps)} steps; "
                f"set_path({path_id}) ignored"
            )
            return aggregate.to_view()
        template = await self._template_for(path_id)
        aggregate.header.path_id = path_id
        await self._seed(aggregate, template)
        return await self._commit(aggregate)

    async def heal_path(
        self, audit_id: int, policy: Optional[RetryPolicy] = None
    ) -> HealResult:
        """Re-seed an audit that has a path but no steps, within a bounded policy.

        Gives up with outcome ``unresolved`` and leaves the audit
        pathless-but-assigned for manual remediation. A template without
        steps yields ``empty_template`` and nothing is saved.
        """
        policy = policy or self._seed_policy
        aggregate = await self._load(audit_id)
        if aggregate.header.path_id is None:
            return HealResult(outcome="no_path", audit=aggregate.to_view())
        if aggregate.steps:
            return HealResult(outcome="already_seeded", audit=aggregate.to_view())

        path_id = aggregate.header.path_id
        template = await self._templates.get_template(path_id)
        if template is not None and not template.steps:
            logger.info(
                f"Template {path_id} has no steps; nothing to seed for audit {audit_id}"
            )
            return HealResult(outcome="empty_template", audit=aggregate.to_view())
        attempts = 0

        async def attempt() -> Optional[AuditView]:
            nonlocal attempts
            attempts += 1
            try:
                view = await self.set_path(audit_id, path_id)
            except TransactionError as exc:
                logger.warning(f"Seeding audit {audit_id} failed: {exc}")
                return None
            return view if view.steps else None

        try:
            view = await policy.poll(attempt)
        except TemplateNotFoundError:
            logger.warning(f"Audit {audit_id} references missing template {path_id}")
            view = None
        if view is not None:
            return HealResult(outcome="seeded", attempts=attempts, audit=view)

        logger.warning(
            f"Audit {audit_id} still has no steps for template {path_id} "
            f"after {attempts} attempts"
        )
        current = await self._load(audit_id)
        return HealResult(outcome="unresolved", attempts=attempts, audit=current.to_view())

    # ------------------------------------------------------------------
    # Progress
    async def save_progress(
        self,
        audit_id: int,
        step_id: int,
        status: Optional[str] = None,
        notes: Optional[str] = None,
        output: Optional[Dict[str, Any]] = None,
    ) -> AuditView:
        aggregate = await self._load(audit_id)
        self._tracker.save_progress(aggregate, step_id, status, notes, output)
        return await self._commit(aggregate)

    async def save_progress_from_payload(
        self, audit_id: int, payload: Mapping[str, Any]
    ) -> AuditView:
        """``save_progress`` for external payloads (``output_json``, ``stepId``...)."""
        request: StepProgressRequest = parse_request(StepProgressRequest, payload)
        return await self.save_progress(
            audit_id, request.step_id, request.status, request.notes, request.output
        )

    async def mark_done(self, audit_id: int, step_id: int) -> AuditView:
        aggregate = await self._load(audit_id)
        self._tracker.mark_done(aggregate, step_id)
        return await self._commit(aggregate)

    async def reopen(self, audit_id: int, step_id: int) -> AuditView:
        aggregate = await self._load(audit_id)
        self._tracker.reopen(aggregate, step_id)
        return await self._commit(aggregate)

    # ------------------------------------------------------------------
    # Advancement
    async def advance(self, audit_id: int, step_id: Optional[int] = None) -> AuditView:
        """Mark a step done and move the pointer forward (mark done & advance)."""
        aggregate = await self._load(audit_id)
        self._advancement.advance(aggregate, step_id)
        return await self._commit(aggregate)

    async def advance_to(self, audit_id: int, step_id: int) -> AuditView:
        aggregate = await self._load(audit_id)
        self._advancement.advance_to(aggregate, step_id)
        return await self._commit(aggregate)

    async def recalc(self, audit_id: int) -> AuditView:
        """Repair ``percent_complete`` drift; saves only when it changed."""
        aggregate = await self._load(audit_id)
        if not progress.recalc(aggregate):
            return aggregate.to_view()
        logger.info(
            f"Audit {audit_id} percent repaired to {aggregate.header.percent_complete}"
        )
        aggregate.touch()
        await self._audits.save(aggregate)
        return aggregate.to_view()

    # ------------------------------------------------------------------
    # Reads
    async def get_audit(self, audit_id: int) -> AuditView:
        return (await self._load(audit_id)).to_view()

    async def list_audits(self, path_id: Optional[int] = None) -> list[AuditSummary]:
        aggregates = await self._audits.list_audits(path_id=path_id)
        return [AuditSummary.from_aggregate(a) for a in aggregates]


def build_services(
    repository: Any = None, config: Optional[AuditflowConfig] = None
) -> tuple[AuditInstanceManager, TemplateCatalog]:
    """Wire a manager and catalog over one repository.

    The repository must implement ``AuditRepository``, ``TemplateRepository``
    and ``allocate``; defaults to ``persistence.get_repository()``.
    """
    config = config or load_config()
    if repository is None:
        repository = get_repository()
    manager = AuditInstanceManager(repository, repository, repository, config=config)
    catalog = TemplateCatalog(
        repository,
        repository,
        repository,
        visibility_policy=config.retry.visibility_policy(),
    )
    return manager, catalog
