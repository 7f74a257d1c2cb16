"""In-memory implementation of the template and audit repositories."""

from __future__ import annotations

import asyncio
from typing import Dict

from ..contracts import AuditAggregate, Template
from ..errors import ConcurrentModificationError
from ..ids import SequentialIdAllocator
from .repository import AuditRepository, TemplateRepository


class InMemoryRepository(AuditRepository, TemplateRepository):
    """Store templates and audits in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. Stored objects are deep copies so
    callers never share state with the store.
    """

    def __init__(self) -> None:
        self._templates: Dict[int, Template] = {}
        self._audits: Dict[int, AuditAggregate] = {}
        self._ids = SequentialIdAllocator()
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Identifier allocation
    async def allocate(self, kind: str) -> int:
        return await self._ids.allocate(kind)

    # ------------------------------------------------------------------
    # Templates
    async def list_templates(self) -> list[Template]:
        return [
            self._templates[k].model_copy(deep=True) for k in sorted(self._templates)
        ]

    async def get_template(self, path_id: int) -> Template | None:
        template = self._templates.get(path_id)
        return template.model_copy(deep=True) if template else None

    async def save_template(self, template: Template) -> None:
        self._ids.seed("template", template.path_id)
        self._templates[template.path_id] = template.model_copy(deep=True)

    # ------------------------------------------------------------------
    # Audits
    async def load(self, audit_id: int) -> AuditAggregate | None:
        aggregate = self._audits.get(audit_id)
        return aggregate.model_copy(deep=True) if aggregate else None

    async def save(self, aggregate: AuditAggregate) -> None:
        async with self._lock:
            audit_id = aggregate.audit_id
            stored = self._audits.get(audit_id)
            stored_version = stored.header.version if stored else 0
            if stored_version != aggregate.header.version:
                raise ConcurrentModificationError(
                    audit_id, aggregate.header.version, stored_version
                )
            committed = aggregate.model_copy(deep=True)
            committed.header.version = stored_version + 1
            committed.ordered()
            self._audits[audit_id] = committed
            aggregate.header.version = committed.header.version

    async def delete(self, audit_id: int) -> bool:
        async with self._lock:
            return self._audits.pop(audit_id, None) is not None

    async def list_audits(self, path_id: int | None = None) -> list[AuditAggregate]:
        return [
            a.model_copy(deep=True)
            for k, a in sorted(self._audits.items())
            if path_id is None or a.header.path_id == path_id
        ]
