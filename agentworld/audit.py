"""Audit Trail — decisions and operations that need a human.

Decision reasoning is recorded for every autonomous action. Operations
that exhaust their retries, or whose external effect could not be
confirmed, are recorded with full context and stay "unresolved" until
an operator reconciles them.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import aiosqlite
import orjson
from pydantic import BaseModel, Field

from agentworld.decision.base import Decision
from agentworld.exceptions import DependencyUnavailableError
from agentworld.types import new_id


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AuditEntry(BaseModel):
    """A single audit log entry."""

    id: str = Field(default_factory=new_id)
    timestamp: datetime = Field(default_factory=_utcnow)
    agent: str = ""
    kind: str = ""  # "decision", "failure", "unconfirmed"
    operation: str = ""
    idempotency_key: str = ""
    detail: str = ""
    error_kind: str = ""
    context: dict[str, Any] = Field(default_factory=dict)
    needs_reconciliation: bool = False
    resolved: bool = False
    resolution: str = ""


class AuditTrail:
    """Append-only audit log backed by SQLite."""

    def __init__(self, db_path: str | Path) -> None:
        self._db_path = str(db_path)
        self._lock = asyncio.Lock()
        self._db: aiosqlite.Connection | None = None

    async def initialize(self) -> None:
        """Create the audit table if needed."""
        if self._db_path != ":memory:":
            Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
        self._db = await aiosqlite.connect(self._db_path)
        self._db.row_factory = aiosqlite.Row
        await self._db.execute("""
            CREATE TABLE IF NOT EXISTS audit_log (
                id TEXT PRIMARY KEY,
                timestamp TEXT NOT NULL,
                agent TEXT,
                kind TEXT NOT NULL,
                operation TEXT,
                idempotency_key TEXT,
                detail TEXT,
                error_kind TEXT,
                context TEXT,
                needs_reconciliation INTEGER DEFAULT 0,
                resolved INTEGER DEFAULT 0,
                resolution TEXT
            )
        """)
        await self._db.execute(
            "CREATE INDEX IF NOT EXISTS idx_audit_open ON audit_log (needs_reconciliation, resolved)"
        )
        await self._db.commit()

    async def close(self) -> None:
        if self._db is not None:
            await self._db.close()
            self._db = None

    def _conn(self) -> aiosqlite.Connection:
        if self._db is None:
            raise DependencyUnavailableError("Audit trail is not initialized")
        return self._db

    async def record(self, entry: AuditEntry) -> AuditEntry:
        """Record an audit entry (immutable append)."""
        async with self._lock:
            db = self._conn()
            await db.execute(
                """INSERT INTO audit_log
                   (id, timestamp, agent, kind, operation, idempotency_key,
                    detail, error_kind, context, needs_reconciliation,
                    resolved, resolution)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    entry.id,
                    entry.timestamp.isoformat(),
                    entry.agent,
                    entry.kind,
                    entry.operation,
                    entry.idempotency_key,
                    entry.detail,
                    entry.error_kind,
                    orjson.dumps(entry.context, default=str).decode(),
                    int(entry.needs_reconciliation),
                    int(entry.resolved),
                    entry.resolution,
                ),
            )
            await db.commit()
        return entry

    async def log_decision(self, agent: str, decision: Decision) -> AuditEntry:
        """Convenience: log an autonomous decision and its reasoning."""
        return await self.record(AuditEntry(
            agent=agent,
            kind="decision",
            operation=decision.action,
            detail=decision.reasoning[:1000],
            context={
                "ticket_count": decision.ticket_count,
                "confidence": decision.confidence,
                "params": decision.params,
            },
        ))

    async def log_failure(
        self,
        agent: str,
        operation: str,
        idempotency_key: str,
        error_kind: str,
        detail: str,
        context: dict[str, Any] | None = None,
    ) -> AuditEntry:
        """Convenience: log an operation that needs manual reconciliation."""
        return await self.record(AuditEntry(
            agent=agent,
            kind="unconfirmed" if error_kind == "unconfirmed_external_effect" else "failure",
            operation=operation,
            idempotency_key=idempotency_key,
            detail=detail[:1000],
            error_kind=error_kind,
            context=context or {},
            needs_reconciliation=True,
        ))

    def _row_to_entry(self, row: aiosqlite.Row) -> AuditEntry:
        return AuditEntry(
            id=row["id"],
            timestamp=datetime.fromisoformat(row["timestamp"]),
            agent=row["agent"] or "",
            kind=row["kind"],
            operation=row["operation"] or "",
            idempotency_key=row["idempotency_key"] or "",
            detail=row["detail"] or "",
            error_kind=row["error_kind"] or "",
            context=orjson.loads(row["context"] or "{}"),
            needs_reconciliation=bool(row["needs_reconciliation"]),
            resolved=bool(row["resolved"]),
            resolution=row["resolution"] or "",
        )

    async def query(
        self,
        agent: str = "",
        kind: str = "",
        limit: int = 50,
    ) -> list[AuditEntry]:
        """Query the audit log with filters, most recent first."""
        clauses, params = [], []
        if agent:
            clauses.append("agent = ?")
            params.append(agent)
        if kind:
            clauses.append("kind = ?")
            params.append(kind)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        async with self._lock:
            cursor = await self._conn().execute(
                f"SELECT * FROM audit_log {where} ORDER BY timestamp DESC LIMIT ?",
                (*params, limit),
            )
            rows = await cursor.fetchall()
        return [self._row_to_entry(r) for r in rows]

    async def unresolved(self, limit: int = 100) -> list[AuditEntry]:
        """Entries still waiting for manual reconciliation, oldest first."""
        async with self._lock:
            cursor = await self._conn().execute(
                """SELECT * FROM audit_log
                   WHERE needs_reconciliation = 1 AND resolved = 0
                   ORDER BY timestamp ASC LIMIT ?""",
                (limit,),
            )
            rows = await cursor.fetchall()
        return [self._row_to_entry(r) for r in rows]

    async def mark_resolved(self, entry_id: str, resolution: str) -> bool:
        async with self._lock:
            db = self._conn()
            cursor = await db.execute(
                """UPDATE audit_log SET resolved = 1, resolution = ?
                   WHERE id = ? AND needs_reconciliation = 1 AND resolved = 0""",
                (resolution, entry_id),
            )
            await db.commit()
        return cursor.rowcount > 0

    async def count(self) -> int:
        """Total number of audit entries."""
        async with self._lock:
            cursor = await self._conn().execute("SELECT COUNT(*) FROM audit_log")
            row = await cursor.fetchone()
        return row[0]

    def __repr__(self) -> str:
        return f"AuditTrail({self._db_path!r})"
