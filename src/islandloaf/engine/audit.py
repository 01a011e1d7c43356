"""Audit Log - append-only record of every tool invocation attempt."""

from __future__ import annotations

import json
from collections.abc import Callable
from dataclasses import asdict, dataclass
from datetime import datetime
from enum import StrEnum
from typing import Any

from islandloaf.storage.database import Database, to_iso, utcnow

SUMMARY_MAX_CHARS = 500
REDACTED_KEYS = {"password", "secret", "api_key", "token", "card_number", "cvc"}


class AuditStatus(StrEnum):
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    DENIED = "DENIED"


@dataclass
class AuditEntry:
    """One invocation attempt."""

    id: int
    agent_id: str
    tool_name: str
    status: str
    payload_summary: str | None
    result_summary: str | None
    idempotency_key: str | None
    cached: bool
    error_kind: str | None
    task_id: str | None
    timestamp: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _redact(value: Any) -> Any:
    if isinstance(value, dict):
        return {
            k: "***" if k.lower() in REDACTED_KEYS else _redact(v) for k, v in value.items()
        }
    if isinstance(value, list):
        return [_redact(v) for v in value]
    return value


def summarize(value: Any, limit: int = SUMMARY_MAX_CHARS) -> str | None:
    """Compact, redacted, length-bounded JSON rendering for the log."""
    if value is None:
        return None
    text = value if isinstance(value, str) else json.dumps(_redact(value), default=str, sort_keys=True)
    if len(text) > limit:
        return text[: limit - 3] + "..."
    return text


class AuditLog:
    """Append-only audit trail. Rows cannot be updated or deleted (enforced by triggers)."""

    def __init__(self, db: Database, clock: Callable[[], datetime] = utcnow) -> None:
        self.db = db
        self.db.ensure_tables()
        self.clock = clock

    def append(
        self,
        agent_id: str,
        tool_name: str,
        status: AuditStatus,
        payload: Any = None,
        result: Any = None,
        idempotency_key: str | None = None,
        cached: bool = False,
        error_kind: str | None = None,
        task_id: str | None = None,
    ) -> int:
        """Record one attempt. Returns the entry id."""
        return self.db.execute_insert(
            """
            INSERT INTO audit_log (
                agent_id, tool_name, status, payload_summary, result_summary,
                idempotency_key, cached, error_kind, task_id, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                agent_id,
                tool_name,
                AuditStatus(status).value,
                summarize(payload),
                summarize(result),
                idempotency_key,
                1 if cached else 0,
                error_kind,
                task_id,
                to_iso(self.clock()),
            ),
        )

    def query(
        self,
        agent_id: str | None = None,
        status: AuditStatus | str | None = None,
        tool_name: str | None = None,
        task_id: str | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[AuditEntry]:
        """List entries, newest first."""
        clauses: list[str] = []
        params: list[Any] = []
        if agent_id:
            clauses.append("agent_id = ?")
            params.append(agent_id)
        if status:
            clauses.append("status = ?")
            params.append(AuditStatus(status).value)
        if tool_name:
            clauses.append("tool_name = ?")
            params.append(tool_name)
        if task_id:
            clauses.append("task_id = ?")
            params.append(task_id)
        if since:
            clauses.append("created_at >= ?")
            params.append(to_iso(since))
        if until:
            clauses.append("created_at <= ?")
            params.append(to_iso(until))

        sql = "SELECT * FROM audit_log"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY id DESC LIMIT ? OFFSET ?"
        params.extend([limit, offset])

        return [self._row_to_entry(row) for row in self.db.execute(sql, tuple(params))]

    def count(self, **filters: Any) -> int:
        return len(self.query(limit=-1, **filters))

    def _row_to_entry(self, row: Any) -> AuditEntry:
        return AuditEntry(
            id=row["id"],
            agent_id=row["agent_id"],
            tool_name=row["tool_name"],
            status=row["status"],
            payload_summary=row["payload_summary"],
            result_summary=row["result_summary"],
            idempotency_key=row["idempotency_key"],
            cached=bool(row["cached"]),
            error_kind=row["error_kind"],
            task_id=row["task_id"],
            timestamp=row["created_at"],
        )
