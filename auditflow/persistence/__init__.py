"""Persistence layer for audits and templates."""

from __future__ import annotations

import logging
import os
from typing import Optional, Union

from ..config import AuditflowConfig, load_config
from .inmemory import InMemoryRepository
from .repository import AuditRepository, TemplateRepository
from .sqlite import SQLiteRepository

try:  # pragma: no cover - asyncpg is only needed for postgres:// URLs
    from .postgres import PostgresRepository
except ImportError:  # pragma: no cover
    PostgresRepository = None  # type: ignore

logger = logging.getLogger(__name__)

Repository = Union[InMemoryRepository, SQLiteRepository, "PostgresRepository"]

_repository_instance: Optional[Repository] = None


def _repository_for_url(url: str) -> Repository:
    scheme, _, rest = url.partition("://")
    if scheme == "sqlite":
        return SQLiteRepository(rest)
    if scheme in ("postgres", "postgresql"):
        if PostgresRepository is None:
            raise RuntimeError("asyncpg is required for PostgreSQL audit storage")
        return PostgresRepository(url)
    raise ValueError(f"Unsupported audit store URL: {url}")


def get_repository(
    database_url: Optional[str] = None, config: Optional[AuditflowConfig] = None
) -> Repository:
    """Return the audit/template store for this process.

    With no arguments the previously built store is reused. Otherwise the
    URL comes from ``database_url``, ``AUDITFLOW_DATABASE_URL``,
    ``DATABASE_URL`` or the loaded config, in that order; ``sqlite://<path>``
    and ``postgres[ql]://...`` are supported and no URL at all means an
    in-memory store. Every store also allocates identifiers.
    """

    global _repository_instance
    if database_url is None and config is None and _repository_instance is not None:
        return _repository_instance

    url = (
        database_url
        or os.getenv("AUDITFLOW_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or (config or load_config()).database_url
    )
    if url:
        _repository_instance = _repository_for_url(url)
    else:
        _repository_instance = InMemoryRepository()
    logger.debug(f"Using {type(_repository_instance).__name__} for audit storage")
    return _repository_instance


__all__ = [
    "AuditRepository",
    "TemplateRepository",
    "InMemoryRepository",
    "SQLiteRepository",
    "PostgresRepository",
    "Repository",
    "get_repository",
]
