"""SQLite implementation of the template and audit repositories."""

from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, TypeVar

from ..contracts import Audit, AuditAggregate, Step, StepDefinition, Template
from ..errors import ConcurrentModificationError
from .repository import AuditRepository, TemplateRepository

T = TypeVar("T")

_AUDIT_COLUMNS = (
    "audit_id",
    "engagement_id",
    "client_id",
    "title",
    "domain",
    "audit_type",
    "owner_contact_id",
    "path_id",
    "current_step_id",
    "percent_complete",
    "start_utc",
    "notes",
    "created_utc",
    "updated_utc",
    "version",
)
_STEP_COLUMNS = (
    "step_id",
    "audit_id",
    "seq",
    "title",
    "gate",
    "required",
    "definition",
    "status",
    "notes",
    "output",
    "updated_utc",
)


def _ts(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _json(value: Any) -> str | None:
    return json.dumps(value) if value is not None else None


def _loads(value: str | None) -> Any:
    return json.loads(value) if value else None


class SQLiteRepository(AuditRepository, TemplateRepository):
    """Persist templates and audits using SQLite."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(
            self.db_path, check_same_thread=False, isolation_level=None
        )
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS path_templates (
                path_id INTEGER PRIMARY KEY,
                name TEXT NOT NULL,
                description TEXT,
                version TEXT,
                published INTEGER NOT NULL DEFAULT 0,
                domain_tags TEXT,
                notes TEXT
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS path_steps (
                path_id INTEGER NOT NULL,
                seq INTEGER NOT NULL,
                title TEXT NOT NULL,
                gate TEXT NOT NULL,
                required INTEGER NOT NULL DEFAULT 0,
                definition_of_done TEXT,
                agent_key TEXT,
                output_contract TEXT,
                PRIMARY KEY (path_id, seq)
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS audits (
                audit_id INTEGER PRIMARY KEY,
                engagement_id INTEGER NOT NULL,
                client_id INTEGER,
                title TEXT NOT NULL,
                domain TEXT,
                audit_type TEXT,
                owner_contact_id INTEGER,
                path_id INTEGER,
                current_step_id INTEGER,
                percent_complete INTEGER NOT NULL DEFAULT 0,
                start_utc TEXT,
                notes TEXT,
                created_utc TEXT NOT NULL,
                updated_utc TEXT NOT NULL,
                version INTEGER NOT NULL
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS audit_steps (
                step_id INTEGER PRIMARY KEY,
                audit_id INTEGER NOT NULL,
                seq INTEGER NOT NULL,
                title TEXT NOT NULL,
                gate TEXT NOT NULL,
                required INTEGER NOT NULL DEFAULT 0,
                definition TEXT,
                status TEXT NOT NULL,
                notes TEXT,
                output TEXT,
                updated_utc TEXT,
                UNIQUE (audit_id, seq)
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS id_sequences (
                kind TEXT PRIMARY KEY,
                last_id INTEGER NOT NULL
            )
            """
        )

    # ------------------------------------------------------------------
    # Helper methods
    def _transaction(self, work: Callable[[sqlite3.Cursor], T]) -> T:
        """Run ``work`` inside one write transaction; roll back on error."""
        with self._lock:
            cur = self._conn.cursor()
            cur.execute("BEGIN IMMEDIATE")
            try:
                result = work(cur)
            except BaseException:
                cur.execute("ROLLBACK")
                raise
            cur.execute("COMMIT")
            return result

    def _bump_sequence(self, cur: sqlite3.Cursor, kind: str, floor: int) -> None:
        cur.execute(
            "INSERT OR IGNORE INTO id_sequences (kind, last_id) VALUES (?, 0)", (kind,)
        )
        cur.execute(
            "UPDATE id_sequences SET last_id = MAX(last_id, ?) WHERE kind = ?",
            (floor, kind),
        )

    # ------------------------------------------------------------------
    # Identifier allocation
    async def allocate(self, kind: str) -> int:
        def work(cur: sqlite3.Cursor) -> int:
            self._bump_sequence(cur, kind, 0)
            cur.execute(
                "UPDATE id_sequences SET last_id = last_id + 1 WHERE kind = ?", (kind,)
            )
            cur.execute("SELECT last_id FROM id_sequences WHERE kind = ?", (kind,))
            return int(cur.fetchone()["last_id"])

        return await asyncio.to_thread(self._transaction, work)

    # ------------------------------------------------------------------
    # Templates
    def _read_template(self, cur: sqlite3.Cursor, row: sqlite3.Row) -> Template:
        cur.execute(
            "SELECT * FROM path_steps WHERE path_id = ? ORDER BY seq", (row["path_id"],)
        )
        steps = [
            StepDefinition(
                seq=s["seq"],
                title=s["title"],
                gate=s["gate"],
                required=bool(s["required"]),
                definition_of_done=_loads(s["definition_of_done"]) or [],
                agent_key=s["agent_key"],
                output_contract=_loads(s["output_contract"]),
            )
            for s in cur.fetchall()
        ]
        return Template(
            path_id=row["path_id"],
            name=row["name"],
            description=row["description"],
            version=row["version"],
            published=bool(row["published"]),
            domain_tags=_loads(row["domain_tags"]) or [],
            notes=row["notes"],
            steps=steps,
        )

    async def list_templates(self) -> list[Template]:
        def work(cur: sqlite3.Cursor) -> list[Template]:
            cur.execute("SELECT * FROM path_templates ORDER BY path_id")
            return [self._read_template(cur, row) for row in cur.fetchall()]

        return await asyncio.to_thread(self._transaction, work)

    async def get_template(self, path_id: int) -> Template | None:
        def work(cur: sqlite3.Cursor) -> Template | None:
            cur.execute("SELECT * FROM path_templates WHERE path_id = ?", (path_id,))
            row = cur.fetchone()
            return self._read_template(cur, row) if row else None

        return await asyncio.to_thread(self._transaction, work)

    async def save_template(self, template: Template) -> None:
        def work(cur: sqlite3.Cursor) -> None:
            cur.execute(
                """
                INSERT OR REPLACE INTO path_templates
                    (path_id, name, description, version, published, domain_tags, notes)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    template.path_id,
                    template.name,
                    template.description,
                    template.version,
                    int(template.published),
                    _json(template.domain_tags),
                    template.notes,
                ),
            )
            cur.execute("DELETE FROM path_steps WHERE path_id = ?", (template.path_id,))
            cur.executemany(
                """
                INSERT INTO path_steps
                    (path_id, seq, title, gate, required, definition_of_done,
                     agent_key, output_contract)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        template.path_id,
                        s.seq,
                        s.title,
                        s.gate,
                        int(s.required),
                        _json(s.definition_of_done),
                        s.agent_key,
                        _json(s.output_contract),
                    )
                    for s in template.steps
                ],
            )
            self._bump_sequence(cur, "template", template.path_id)

        await asyncio.to_thread(self._transaction, work)

    # ------------------------------------------------------------------
    # Audits
    def _read_aggregate(self, cur: sqlite3.Cursor, row: sqlite3.Row) -> AuditAggregate:
        header = Audit.model_validate(dict(row))
        cur.execute(
            "SELECT * FROM audit_steps WHERE audit_id = ? ORDER BY seq",
            (header.audit_id,),
        )
        steps = []
        for s in cur.fetchall():
            data = dict(s)
            data["required"] = bool(data["required"])
            data["definition"] = _loads(data["definition"]) or []
            data["output"] = _loads(data["output"])
            steps.append(Step.model_validate(data))
        return AuditAggregate(header=header, steps=steps)

    async def load(self, audit_id: int) -> AuditAggregate | None:
        def work(cur: sqlite3.Cursor) -> AuditAggregate | None:
            cur.execute("SELECT * FROM audits WHERE audit_id = ?", (audit_id,))
            row = cur.fetchone()
            return self._read_aggregate(cur, row) if row else None

        return await asyncio.to_thread(self._transaction, work)

    async def save(self, aggregate: AuditAggregate) -> None:
        header = aggregate.header

        def work(cur: sqlite3.Cursor) -> int:
            cur.execute(
                "SELECT version FROM audits WHERE audit_id = ?", (header.audit_id,)
            )
            row = cur.fetchone()
            stored_version = row["version"] if row else 0
            if stored_version != header.version:
                raise ConcurrentModificationError(
                    header.audit_id, header.version, stored_version
                )
            new_version = stored_version + 1
            values = header.model_dump()
            values["version"] = new_version
            values["start_utc"] = _ts(header.start_utc)
            values["created_utc"] = _ts(header.created_utc)
            values["updated_utc"] = _ts(header.updated_utc)
            placeholders = ", ".join("?" for _ in _AUDIT_COLUMNS)
            cur.execute(
                f"INSERT OR REPLACE INTO audits ({', '.join(_AUDIT_COLUMNS)}) "
                f"VALUES ({placeholders})",
                tuple(values[c] for c in _AUDIT_COLUMNS),
            )
            cur.execute(
                "DELETE FROM audit_steps WHERE audit_id = ?", (header.audit_id,)
            )
            placeholders = ", ".join("?" for _ in _STEP_COLUMNS)
            cur.executemany(
                f"INSERT INTO audit_steps ({', '.join(_STEP_COLUMNS)}) "
                f"VALUES ({placeholders})",
                [
                    (
                        s.step_id,
                        s.audit_id,
                        s.seq,
                        s.title,
                        s.gate,
                        int(s.required),
                        _json(s.definition),
                        s.status,
                        s.notes,
                        _json(s.output),
                        _ts(s.updated_utc),
                    )
                    for s in aggregate.steps
                ],
            )
            return new_version

        header.version = await asyncio.to_thread(self._transaction, work)

    async def delete(self, audit_id: int) -> bool:
        def work(cur: sqlite3.Cursor) -> bool:
            cur.execute("DELETE FROM audit_steps WHERE audit_id = ?", (audit_id,))
            cur.execute("DELETE FROM audits WHERE audit_id = ?", (audit_id,))
            return cur.rowcount > 0

        return await asyncio.to_thread(self._transaction, work)

    async def list_audits(self, path_id: int | None = None) -> list[AuditAggregate]:
        def work(cur: sqlite3.Cursor) -> list[AuditAggregate]:
            if path_id is None:
                cur.execute("SELECT * FROM audits ORDER BY audit_id")
            else:
                cur.execute(
                    "SELECT * FROM audits WHERE path_id = ? ORDER BY audit_id",
                    (path_id,),
                )
            rows = cur.fetchall()
            return [self._read_aggregate(cur, row) for row in rows]

        return await asyncio.to_thread(self._transaction, work)

    def close(self) -> None:
        self._conn.close()
