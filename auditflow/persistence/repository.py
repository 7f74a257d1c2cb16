"""Repository abstractions for templates and audit aggregates."""

from __future__ import annotations

from typing import Protocol

from ..contracts import AuditAggregate, Template


class TemplateRepository(Protocol):
    """Protocol for template storage backends."""

    async def list_templates(self) -> list[Template]:
        """Return all templates ordered by ``path_id``."""

    async def get_template(self, path_id: int) -> Template | None:
        """Retrieve a template by id."""

    async def save_template(self, template: Template) -> None:
        """Insert or replace a template together with its step definitions."""


class AuditRepository(Protocol):
    """Protocol for ``(Audit, Step[])`` aggregate persistence.

    ``load`` returns a committed snapshot the caller may mutate freely.
    ``save`` is atomic: it commits the header and the complete step list
    together or nothing at all, and rejects the write with
    ``ConcurrentModificationError`` when the stored version differs from
    ``aggregate.header.version``. On success the stored version is bumped
    and written back to ``aggregate.header.version``.
    """

    async def load(self, audit_id: int) -> AuditAggregate | None:
        """Retrieve the aggregate by audit id."""

    async def save(self, aggregate: AuditAggregate) -> None:
        """Persist the aggregate in one transaction."""

    async def delete(self, audit_id: int) -> bool:
        """Delete the audit and its steps; return whether it existed."""

    async def list_audits(self, path_id: int | None = None) -> list[AuditAggregate]:
        """Return all aggregates, optionally only those using ``path_id``."""
