"""Template catalog: reusable, versioned audit paths."""

from __future__ import annotations

import logging
from collections import Counter
from typing import Any, Iterable, List, Optional, Sequence

from pydantic import ValidationError

from .contracts import AuditSummary, StepDefinition, Template, TemplateUsage
from .errors import (
    PublishConflictError,
    TemplateFrozenError,
    TemplateNotFoundError,
    ValidationFailedError,
)
from .ids import IdAllocator, TempIdAllocator
from .ingest import StepDefinitionRequest, normalize_payload, parse_request
from .persistence.repository import AuditRepository, TemplateRepository
from .utils.retry import RetryPolicy

logger = logging.getLogger(__name__)

_EDITABLE_FIELDS = ("name", "description", "domain_tags", "notes")


def _renumbered(steps: Iterable[StepDefinition]) -> List[StepDefinition]:
    return [s.model_copy(update={"seq": i}) for i, s in enumerate(steps, start=1)]


def _definitions(steps: Iterable[StepDefinition | dict]) -> List[StepDefinition]:
    """Build step definitions in ``seq`` order when seqs are supplied.

    Supplied seqs must cover 1..N exactly; steps without one keep list order.
    """
    definitions: List[StepDefinition] = []
    supplied: List[int] = []
    for s in steps:
        if isinstance(s, StepDefinition):
            definitions.append(s)
            supplied.append(s.seq)
            continue
        payload = normalize_payload(s)
        given = payload.get("seq") is not None
        if not given:
            payload["seq"] = 1
        definition = StepDefinition(**payload)
        definitions.append(definition)
        if given:
            supplied.append(definition.seq)
    if not supplied:
        return definitions
    expected = list(range(1, len(definitions) + 1))
    if len(supplied) != len(definitions) or sorted(supplied) != expected:
        raise ValidationFailedError(
            {"steps": "Step seq values must be unique and contiguous starting at 1"}
        )
    return sorted(definitions, key=lambda d: d.seq)


def _with_steps(template: Template, steps: Sequence[StepDefinition]) -> Template:
    """Rebuild ``template`` so the sequence validator runs on the new steps."""
    data = template.model_dump(exclude={"steps"})
    return Template(**data, steps=[s.model_dump() for s in steps])


class TemplateCatalog:
    """Stores templates and enforces publish/clone rules.

    Step definitions of a published template are frozen; edits go through
    ``clone``. Metadata (name, description, tags, notes) stays editable.
    """

    def __init__(
        self,
        templates: TemplateRepository,
        audits: AuditRepository,
        ids: IdAllocator,
        visibility_policy: Optional[RetryPolicy] = None,
        temp_ids: Optional[TempIdAllocator] = None,
    ) -> None:
        self._templates = templates
        self._audits = audits
        self._ids = ids
        self._visibility = visibility_policy or RetryPolicy("template-visibility")
        self._temp_ids = temp_ids or TempIdAllocator()

    # ------------------------------------------------------------------
    # Reads
    async def list(self) -> list[Template]:
        return await self._templates.list_templates()

    async def get(self, path_id: int) -> Template:
        template = await self._templates.get_template(path_id)
        if template is None:
            raise TemplateNotFoundError(path_id)
        return template

    async def get_usage(self, path_id: int) -> TemplateUsage:
        """Audits referencing ``path_id`` plus aggregate stats."""
        await self.get(path_id)
        aggregates = await self._audits.list_audits(path_id=path_id)
        usage = TemplateUsage(path_id=path_id, audit_count=len(aggregates))
        if not aggregates:
            return usage
        usage.audits = [AuditSummary.from_aggregate(a) for a in aggregates]
        usage.closed_count = sum(1 for a in aggregates if a.is_closed)
        usage.complete_count = sum(1 for a in aggregates if a.is_fully_complete)
        usage.average_percent = round(
            sum(a.header.percent_complete for a in aggregates) / len(aggregates), 1
        )
        usage.by_state = dict(Counter(a.state or "unseeded" for a in aggregates))
        return usage

    # ------------------------------------------------------------------
    # Creation
    async def create(
        self,
        name: str,
        description: Optional[str] = None,
        domain_tags: Optional[List[str]] = None,
        notes: Optional[str] = None,
        steps: Optional[Iterable[StepDefinition | dict]] = None,
    ) -> Template:
        """Create a draft template and wait for it to become visible.

        If it is still not visible once the visibility policy is exhausted, a
        provisional copy with a temporary negative id is returned; pass it to
        ``resolve`` later to obtain the persisted template.
        """
        try:
            definitions = _definitions(steps or [])
            draft = Template(
                path_id=0,
                name=(name or "").strip(),
                description=description,
                domain_tags=domain_tags or [],
                notes=notes,
            )
        except ValidationError as exc:
            raise ValidationFailedError.from_pydantic(exc) from exc

        path_id = await self._ids.allocate("template")
        template = _with_steps(
            draft.model_copy(update={"path_id": path_id}), _renumbered(definitions)
        )
        await self._templates.save_template(template)

        visible = await self._templates.get_template(path_id)
        if visible is None:
            visible = await self._visibility.poll(
                lambda: self._templates.get_template(path_id)
            )
        if visible is not None:
            logger.info(f"Created template {path_id} ({name})")
            return visible

        placeholder_id = await self._temp_ids.allocate("template")
        logger.warning(
            f"Template {name!r} not visible yet; returning provisional id {placeholder_id}"
        )
        return template.model_copy(
            update={
                "path_id": placeholder_id,
                "provisional": True,
                "pending_path_id": path_id,
            }
        )

    async def resolve(self, template: Template) -> Optional[Template]:
        """Swap a provisional template for its persisted counterpart, if visible.

        Looks the template up by the id it was saved under; a placeholder
        without one is matched by name.
        """
        if not template.provisional:
            return template
        pending_id = template.pending_path_id
        target = template.name.strip().lower()

        async def find() -> Optional[Template]:
            if pending_id is not None:
                return await self._templates.get_template(pending_id)
            for candidate in await self._templates.list_templates():
                if candidate.name.strip().lower() == target:
                    return candidate
            return None

        return await self._visibility.poll(find)

    async def clone(self, path_id: int) -> int:
        """Copy ``path_id`` into a new, unpublished template; return its id."""
        source = await self.get(path_id)
        new_id = await self._ids.allocate("template")
        copy = source.model_copy(
            deep=True,
            update={
                "path_id": new_id,
                "name": f"{source.name} (copy)",
                "version": None,
                "published": False,
                "provisional": False,
            },
        )
        await self._templates.save_template(copy)
        logger.info(f"Cloned template {path_id} into {new_id}")
        return new_id

    # ------------------------------------------------------------------
    # Publishing
    async def publish(self, path_id: int, version: str) -> Template:
        """Publish under ``version``; re-publishing the same version is a no-op."""
        version = (version or "").strip()
        if not version:
            raise ValidationFailedError({"version": "Version is required"})
        template = await self.get(path_id)
        if template.published:
            if template.version == version:
                logger.debug(f"Template {path_id} already published as {version}")
                return template
            raise PublishConflictError(path_id, template.version, version)
        template.published = True
        template.version = version
        await self._templates.save_template(template)
        logger.info(f"Published template {path_id} as {version}")
        return template

    # ------------------------------------------------------------------
    # Editing
    async def update(self, path_id: int, **changes: Any) -> Template:
        """Edit template metadata. Allowed on published templates."""
        unknown = sorted(set(changes) - set(_EDITABLE_FIELDS))
        if unknown:
            raise ValidationFailedError(
                {field: "Field cannot be edited" for field in unknown}
            )
        template = await self.get(path_id)
        if "name" in changes:
            changes["name"] = (changes["name"] or "").strip()
            if not changes["name"]:
                raise ValidationFailedError({"name": "Name is required"})
        try:
            updated = Template.model_validate({**template.model_dump(), **changes})
        except ValidationError as exc:
            raise ValidationFailedError.from_pydantic(exc) from exc
        await self._templates.save_template(updated)
        return updated

    async def _editable(self, path_id: int) -> Template:
        template = await self.get(path_id)
        if template.published:
            raise TemplateFrozenError(path_id)
        return template

    async def add_step(self, path_id: int, **fields: Any) -> StepDefinition:
        """Append a step definition to a draft template."""
        request = parse_request(StepDefinitionRequest, fields)
        if not request.title:
            raise ValidationFailedError({"title": "Title is required"})
        template = await self._editable(path_id)
        values = request.model_dump(exclude_none=True)
        step = StepDefinition(seq=len(template.steps) + 1, **values)
        template = _with_steps(template, [*template.steps, step])
        await self._templates.save_template(template)
        return step

    async def update_step(self, path_id: int, seq: int, **fields: Any) -> StepDefinition:
        request = parse_request(StepDefinitionRequest, fields)
        template = await self._editable(path_id)
        index = self._index_of(template, seq)
        updated = template.steps[index].model_copy(
            update=request.model_dump(exclude_unset=True, exclude_none=True)
        )
        steps = list(template.steps)
        steps[index] = updated
        await self._templates.save_template(_with_steps(template, steps))
        return updated

    async def delete_step(self, path_id: int, seq: int) -> Template:
        template = await self._editable(path_id)
        index = self._index_of(template, seq)
        steps = [s for i, s in enumerate(template.steps) if i != index]
        template = _with_steps(template, _renumbered(steps))
        await self._templates.save_template(template)
        return template

    async def reorder_steps(self, path_id: int, order: Sequence[int]) -> Template:
        """Reorder by listing the current ``seq`` values in their new order."""
        template = await self._editable(path_id)
        if sorted(order) != [s.seq for s in template.steps]:
            raise ValidationFailedError(
                {"order": "Order must list every step seq exactly once"}
            )
        by_seq = {s.seq: s for s in template.steps}
        template = _with_steps(template, _renumbered(by_seq[seq] for seq in order))
        await self._templates.save_template(template)
        return template

    @staticmethod
    def _index_of(template: Template, seq: int) -> int:
        for index, step in enumerate(template.steps):
            if step.seq == seq:
                return index
        raise ValidationFailedError(
            {"seq": f"Template {template.path_id} has no step {seq}"}
        )
