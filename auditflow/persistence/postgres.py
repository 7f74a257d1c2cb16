"""PostgreSQL implementation of the template and audit repositories."""

from __future__ import annotations

import json
from typing import Any

import asyncpg

from ..contracts import Audit, AuditAggregate, Step, StepDefinition, Template
from ..errors import ConcurrentModificationError
from .repository import AuditRepository, TemplateRepository


def _json(value: Any) -> str | None:
    return json.dumps(value) if value is not None else None


def _loads(value: Any) -> Any:
    if value is None:
        return None
    return json.loads(value) if isinstance(value, str) else value


class PostgresRepository(AuditRepository, TemplateRepository):
    """Persist templates and audits using PostgreSQL."""

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        conn = await asyncpg.connect(self._dsn)
        if not self._initialized:
            await self._ensure_schema(conn)
            self._initialized = True
        return conn

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS path_templates (
                path_id BIGINT PRIMARY KEY,
                name TEXT NOT NULL,
                description TEXT,
                version TEXT,
                published BOOLEAN NOT NULL DEFAULT FALSE,
                domain_tags JSONB,
                notes TEXT
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS path_steps (
                path_id BIGINT NOT NULL REFERENCES path_templates (path_id) ON DELETE CASCADE,
                seq INTEGER NOT NULL,
                title TEXT NOT NULL,
                gate TEXT NOT NULL,
                required BOOLEAN NOT NULL DEFAULT FALSE,
                definition_of_done JSONB,
                agent_key TEXT,
                output_contract JSONB,
                PRIMARY KEY (path_id, seq)
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS audits (
                audit_id BIGINT PRIMARY KEY,
                engagement_id BIGINT NOT NULL,
                client_id BIGINT,
                title TEXT NOT NULL,
                domain TEXT,
                audit_type TEXT,
                owner_contact_id BIGINT,
                path_id BIGINT,
                current_step_id BIGINT,
                percent_complete INTEGER NOT NULL DEFAULT 0,
                start_utc TIMESTAMPTZ,
                notes TEXT,
                created_utc TIMESTAMPTZ NOT NULL,
                updated_utc TIMESTAMPTZ NOT NULL,
                version INTEGER NOT NULL
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS audit_steps (
                step_id BIGINT PRIMARY KEY,
                audit_id BIGINT NOT NULL REFERENCES audits (audit_id) ON DELETE CASCADE,
                seq INTEGER NOT NULL,
                title TEXT NOT NULL,
                gate TEXT NOT NULL,
                required BOOLEAN NOT NULL DEFAULT FALSE,
                definition JSONB,
                status TEXT NOT NULL,
                notes TEXT,
                output JSONB,
                updated_utc TIMESTAMPTZ,
                UNIQUE (audit_id, seq)
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS id_sequences (
                kind TEXT PRIMARY KEY,
                last_id BIGINT NOT NULL
            )
            """
        )

    # ------------------------------------------------------------------
    async def allocate(self, kind: str) -> int:
        conn = await self._connect()
        try:
            value = await conn.fetchval(
                """
                INSERT INTO id_sequences (kind, last_id) VALUES ($1, 1)
                ON CONFLICT (kind) DO UPDATE SET last_id = id_sequences.last_id + 1
                RETURNING last_id
                """,
                kind,
            )
        finally:
            await conn.close()
        return int(value)

    # ------------------------------------------------------------------
    async def _read_template(
        self, conn: asyncpg.Connection, row: asyncpg.Record
    ) -> Template:
        step_rows = await conn.fetch(
            "SELECT * FROM path_steps WHERE path_id = $1 ORDER BY seq", row["path_id"]
        )
        return Template(
            path_id=row["path_id"],
            name=row["name"],
            description=row["description"],
            version=row["version"],
            published=row["published"],
            domain_tags=_loads(row["domain_tags"]) or [],
            notes=row["notes"],
            steps=[
                StepDefinition(
                    seq=s["seq"],
                    title=s["title"],
                    gate=s["gate"],
                    required=s["required"],
                    definition_of_done=_loads(s["definition_of_done"]) or [],
                    agent_key=s["agent_key"],
                    output_contract=_loads(s["output_contract"]),
                )
                for s in step_rows
            ],
        )

    async def list_templates(self) -> list[Template]:
        conn = await self._connect()
        try:
            async with conn.transaction(isolation="repeatable_read", readonly=True):
                rows = await conn.fetch("SELECT * FROM path_templates ORDER BY path_id")
                return [await self._read_template(conn, r) for r in rows]
        finally:
            await conn.close()

    async def get_template(self, path_id: int) -> Template | None:
        conn = await self._connect()
        try:
            async with conn.transaction(isolation="repeatable_read", readonly=True):
                row = await conn.fetchrow(
                    "SELECT * FROM path_templates WHERE path_id = $1", path_id
                )
                if not row:
                    return None
                return await self._read_template(conn, row)
        finally:
            await conn.close()

    async def save_template(self, template: Template) -> None:
        conn = await self._connect()
        try:
            async with conn.transaction():
                await conn.execute(
                    """
                    INSERT INTO path_templates
                        (path_id, name, description, version, published, domain_tags, notes)
                    VALUES ($1, $2, $3, $4, $5, $6, $7)
                    ON CONFLICT (path_id) DO UPDATE SET
                        name = EXCLUDED.name,
                        description = EXCLUDED.description,
                        version = EXCLUDED.version,
                        published = EXCLUDED.published,
                        domain_tags = EXCLUDED.domain_tags,
                        notes = EXCLUDED.notes
                    """,
                    template.path_id,
                    template.name,
                    template.description,
                    template.version,
                    template.published,
                    _json(template.domain_tags),
                    template.notes,
                )
                await conn.execute(
                    "DELETE FROM path_steps WHERE path_id = $1", template.path_id
                )
                await conn.executemany(
                    """
                    INSERT INTO path_steps
                        (path_id, seq, title, gate, required, definition_of_done,
                         agent_key, output_contract)
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
                    """,
                    [
                        (
                            template.path_id,
                            s.seq,
                            s.title,
                            s.gate,
                            s.required,
                            _json(s.definition_of_done),
                            s.agent_key,
                            _json(s.output_contract),
                        )
                        for s in template.steps
                    ],
                )
                await conn.execute(
                    """
                    INSERT INTO id_sequences (kind, last_id) VALUES ('template', $1)
                    ON CONFLICT (kind) DO UPDATE
                    SET last_id = GREATEST(id_sequences.last_id, EXCLUDED.last_id)
                    """,
                    template.path_id,
                )
        finally:
            await conn.close()

    # ------------------------------------------------------------------
    async def _read_aggregate(
        self, conn: asyncpg.Connection, row: asyncpg.Record
    ) -> AuditAggregate:
        step_rows = await conn.fetch(
            "SELECT * FROM audit_steps WHERE audit_id = $1 ORDER BY seq",
            row["audit_id"],
        )
        steps = []
        for s in step_rows:
            data = dict(s)
            data["definition"] = _loads(data["definition"]) or []
            data["output"] = _loads(data["output"])
            steps.append(Step.model_validate(data))
        return AuditAggregate(header=Audit.model_validate(dict(row)), steps=steps)

    async def load(self, audit_id: int) -> AuditAggregate | None:
        conn = await self._connect()
        try:
            async with conn.transaction(isolation="repeatable_read", readonly=True):
                row = await conn.fetchrow(
                    "SELECT * FROM audits WHERE audit_id = $1", audit_id
                )
                if not row:
                    return None
                return await self._read_aggregate(conn, row)
        finally:
            await conn.close()

    async def save(self, aggregate: AuditAggregate) -> None:
        header = aggregate.header
        conn = await self._connect()
        try:
            async with conn.transaction():
                stored_version = await conn.fetchval(
                    "SELECT version FROM audits WHERE audit_id = $1 FOR UPDATE",
                    header.audit_id,
                )
                stored_version = stored_version or 0
                if stored_version != header.version:
                    raise ConcurrentModificationError(
                        header.audit_id, header.version, stored_version
                    )
                new_version = stored_version + 1
                await conn.execute(
                    """
                    INSERT INTO audits (
                        audit_id, engagement_id, client_id, title, domain, audit_type,
                        owner_contact_id, path_id, current_step_id, percent_complete,
                        start_utc, notes, created_utc, updated_utc, version
                    )
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15)
                    ON CONFLICT (audit_id) DO UPDATE SET
                        engagement_id = EXCLUDED.engagement_id,
                        client_id = EXCLUDED.client_id,
                        title = EXCLUDED.title,
                        domain = EXCLUDED.domain,
                        audit_type = EXCLUDED.audit_type,
                        owner_contact_id = EXCLUDED.owner_contact_id,
                        path_id = EXCLUDED.path_id,
                        current_step_id = EXCLUDED.current_step_id,
                        percent_complete = EXCLUDED.percent_complete,
                        start_utc = EXCLUDED.start_utc,
                        notes = EXCLUDED.notes,
                        updated_utc = EXCLUDED.updated_utc,
                        version = EXCLUDED.version
                    """,
                    header.audit_id,
                    header.engagement_id,
                    header.client_id,
                    header.title,
                    header.domain,
                    header.audit_type,
                    header.owner_contact_id,
                    header.path_id,
                    header.current_step_id,
                    header.percent_complete,
                    header.start_utc,
                    header.notes,
                    header.created_utc,
                    header.updated_utc,
                    new_version,
                )
                await conn.execute(
                    "DELETE FROM audit_steps WHERE audit_id = $1", header.audit_id
                )
                await conn.executemany(
                    """
                    INSERT INTO audit_steps (
                        step_id, audit_id, seq, title, gate, required, definition,
                        status, notes, output, updated_utc
                    )
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11)
                    """,
                    [
                        (
                            s.step_id,
                            s.audit_id,
                            s.seq,
                            s.title,
                            s.gate,
                            s.required,
                            _json(s.definition),
                            s.status,
                            s.notes,
                            _json(s.output),
                            s.updated_utc,
                        )
                        for s in aggregate.steps
                    ],
                )
        finally:
            await conn.close()
        header.version = new_version

    async def delete(self, audit_id: int) -> bool:
        conn = await self._connect()
        try:
            result = await conn.execute(
                "DELETE FROM audits WHERE audit_id = $1", audit_id
            )
        finally:
            await conn.close()
        return result.endswith(" 1")

    async def list_audits(self, path_id: int | None = None) -> list[AuditAggregate]:
        conn = await self._connect()
        try:
            async with conn.transaction(isolation="repeatable_read", readonly=True):
                if path_id is None:
                    rows = await conn.fetch("SELECT * FROM audits ORDER BY audit_id")
                else:
                    rows = await conn.fetch(
                        "SELECT * FROM audits WHERE path_id = $1 ORDER BY audit_id",
                        path_id,
                    )
                return [await self._read_aggregate(conn, r) for r in rows]
        finally:
            await conn.close()
