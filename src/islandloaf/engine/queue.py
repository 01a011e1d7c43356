"""Task Queue - durable backlog of deferred tool invocations.

State machine (only the queue mutates task rows):

    queued --claim--> claimed --start--> running --complete--> success
      ^                  |                  |
      |                  +---(stale)--------+--fail--> failed --settle--> dead
      +------------------- backoff -------------------------+

success and dead are terminal and never change again. A queued task may be
cancelled, which moves it straight to dead.
"""

from __future__ import annotations

import hashlib
import json
import logging
import uuid
from collections.abc import Callable
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from enum import StrEnum
from typing import Any

from islandloaf.errors import ErrorKind, TaskStateError
from islandloaf.security.identity import Role
from islandloaf.storage.database import Database, to_iso, utcnow

logger = logging.getLogger(__name__)


class TaskStatus(StrEnum):
    """Task lifecycle states."""

    QUEUED = "queued"
    CLAIMED = "claimed"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    DEAD = "dead"

    @property
    def terminal(self) -> bool:
        return self in (TaskStatus.SUCCESS, TaskStatus.DEAD)


IN_FLIGHT_STATUSES = (
    TaskStatus.QUEUED,
    TaskStatus.CLAIMED,
    TaskStatus.RUNNING,
    TaskStatus.FAILED,
)


@dataclass
class Task:
    """A deferred invocation of one tool for one role."""

    id: str
    role: str
    tool_name: str
    payload: dict[str, Any]
    idempotency_key: str
    key_supplied: bool
    status: str
    priority: int
    attempts: int
    max_attempts: int
    created_at: str
    available_at: str
    updated_at: str
    last_error: str | None = None
    error_kind: str | None = None
    result: dict[str, Any] | None = None
    created_by: str | None = None
    claimed_at: str | None = None
    claim_token: str | None = None
    started_at: str | None = None
    completed_at: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data.pop("claim_token")
        return data


def default_task_key(tool_name: str, payload: dict[str, Any]) -> str:
    """Deterministic key for tasks enqueued without one."""
    canonical = json.dumps(
        {"tool": tool_name, "payload": payload}, sort_keys=True, separators=(",", ":"), default=str
    )
    return "auto-" + hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:32]


class TaskQueue:
    """
    SQLite-backed task queue.

    Features:
    - Caller-supplied idempotency keys deduplicate in-flight tasks
    - Atomic batch claim (single conditional UPDATE under the write lock)
    - Exponential backoff between retries, dead-lettering when exhausted
    - Recovery of tasks whose runner died mid-flight
    """

    DEFAULT_PRIORITY = 5
    STALE_ERROR = "claim expired"

    def __init__(
        self,
        db: Database,
        max_attempts: int = 3,
        backoff_base: timedelta = timedelta(seconds=30),
        backoff_max: timedelta = timedelta(hours=1),
        liveness_timeout: timedelta = timedelta(minutes=10),
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.db = db
        self.db.ensure_tables()
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.liveness_timeout = liveness_timeout
        self.clock = clock

    def backoff_delay(self, attempts: int) -> timedelta:
        """Delay before retry number ``attempts`` becomes eligible."""
        delay = self.backoff_base * (2 ** max(attempts - 1, 0))
        return min(delay, self.backoff_max)

    # -- producers ---------------------------------------------------------

    def enqueue(
        self,
        role: Role | str,
        tool_name: str,
        payload: dict[str, Any],
        idempotency_key: str | None = None,
        priority: int = DEFAULT_PRIORITY,
        delay_seconds: float = 0,
        max_attempts: int | None = None,
        created_by: str | None = None,
    ) -> Task:
        """
        Create a QUEUED task.

        If ``idempotency_key`` is supplied and a task with that key is still
        in flight (queued, claimed, running or awaiting retry), the existing
        task is returned and nothing new is created.
        """
        role = Role(role)
        attempts_allowed = max_attempts or self.max_attempts
        if attempts_allowed < 1:
            raise ValueError("max_attempts must be at least 1")

        key_supplied = idempotency_key is not None
        key = idempotency_key if key_supplied else default_task_key(tool_name, payload)

        now = self.clock()
        task_id = f"task-{uuid.uuid4().hex[:12]}"

        with self.db.transaction() as conn:
            if key_supplied:
                existing = conn.execute(
                    f"""
                    SELECT * FROM tasks
                    WHERE idempotency_key = ? AND key_supplied = 1
                      AND status IN ({_placeholders(IN_FLIGHT_STATUSES)})
                    """,
                    (key, *[s.value for s in IN_FLIGHT_STATUSES]),
                ).fetchone()
                if existing is not None:
                    logger.info(
                        "Task with key %s already in flight (%s); not enqueuing again",
                        key,
                        existing["id"],
                    )
                    return self._row_to_task(existing)

            conn.execute(
                """
                INSERT INTO tasks (
                    id, role, tool_name, payload, idempotency_key, key_supplied,
                    status, priority, attempts, max_attempts, created_by,
                    created_at, available_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, 0, ?, ?, ?, ?, ?)
                """,
                (
                    task_id,
                    role.value,
                    tool_name,
                    json.dumps(payload, sort_keys=True, default=str),
                    key,
                    1 if key_supplied else 0,
                    TaskStatus.QUEUED.value,
                    priority,
                    attempts_allowed,
                    created_by,
                    to_iso(now),
                    to_iso(now + timedelta(seconds=delay_seconds)),
                    to_iso(now),
                ),
            )
            row = conn.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()

        logger.info("Enqueued %s %s for %s", task_id, tool_name, role.value)
        return self._row_to_task(row)

    # -- runner transitions ------------------------------------------------

    def claim_batch(self, limit: int) -> list[Task]:
        """Atomically move up to ``limit`` due tasks from queued to claimed."""
        now_iso = to_iso(self.clock())
        token = uuid.uuid4().hex

        with self.db.transaction() as conn:
            conn.execute(
                """
                UPDATE tasks
                SET status = 'claimed', claimed_at = ?, claim_token = ?, updated_at = ?
                WHERE id IN (
                    SELECT id FROM tasks
                    WHERE status = 'queued' AND available_at <= ?
                    ORDER BY priority ASC, created_at ASC
                    LIMIT ?
                )
                AND status = 'queued'
                """,
                (now_iso, token, now_iso, now_iso, limit),
            )
            rows = conn.execute(
                "SELECT * FROM tasks WHERE claim_token = ? ORDER BY priority ASC, created_at ASC",
                (token,),
            ).fetchall()

        return [self._row_to_task(row) for row in rows]

    def start(self, task: Task) -> Task:
        """claimed -> running, only for the holder of the claim."""
        now_iso = to_iso(self.clock())
        return self._transition(
            task,
            TaskStatus.CLAIMED,
            "status = 'running', started_at = ?, updated_at = ?",
            (now_iso, now_iso),
        )

    def complete(self, task: Task, result: dict[str, Any] | None = None) -> Task:
        """running -> success."""
        now_iso = to_iso(self.clock())
        return self._transition(
            task,
            TaskStatus.RUNNING,
            """
            status = 'success', result = ?, error_kind = NULL,
            completed_at = ?, updated_at = ?
            """,
            (json.dumps(result or {}, default=str), now_iso, now_iso),
        )

    def fail(self, task: Task, error_kind: ErrorKind | str, message: str) -> Task:
        """running -> failed, counting the attempt."""
        now_iso = to_iso(self.clock())
        return self._transition(
            task,
            TaskStatus.RUNNING,
            """
            status = 'failed', attempts = attempts + 1, last_error = ?,
            error_kind = ?, updated_at = ?
            """,
            (message, ErrorKind(error_kind).value, now_iso),
        )

    def settle_failed(self) -> tuple[list[Task], list[Task]]:
        """
        Resolve every failed task.

        Retryable failures with attempts left go back to queued after an
        exponential backoff; everything else is dead-lettered.

        Returns:
            (requeued, dead)
        """
        now = self.clock()
        now_iso = to_iso(now)
        requeued_ids: list[str] = []
        dead_ids: list[str] = []

        with self.db.transaction() as conn:
            rows = conn.execute("SELECT * FROM tasks WHERE status = 'failed'").fetchall()
            for row in rows:
                if _is_retryable(row["error_kind"]) and row["attempts"] < row["max_attempts"]:
                    available = now + self.backoff_delay(row["attempts"])
                    conn.execute(
                        """
                        UPDATE tasks
                        SET status = 'queued', available_at = ?, claimed_at = NULL,
                            claim_token = NULL, started_at = NULL, updated_at = ?
                        WHERE id = ? AND status = 'failed'
                        """,
                        (to_iso(available), now_iso, row["id"]),
                    )
                    requeued_ids.append(row["id"])
                    logger.warning(
                        "Retrying %s (%s) at %s, attempt %d/%d: %s",
                        row["id"],
                        row["tool_name"],
                        to_iso(available),
                        row["attempts"] + 1,
                        row["max_attempts"],
                        row["last_error"],
                    )
                else:
                    conn.execute(
                        """
                        UPDATE tasks
                        SET status = 'dead', claim_token = NULL, completed_at = ?, updated_at = ?
                        WHERE id = ? AND status = 'failed'
                        """,
                        (now_iso, now_iso, row["id"]),
                    )
                    dead_ids.append(row["id"])
                    logger.warning(
                        "Dead-lettered %s (%s) after %d attempt(s): [%s] %s",
                        row["id"],
                        row["tool_name"],
                        row["attempts"],
                        row["error_kind"],
                        row["last_error"],
                    )

        return self._fetch(requeued_ids), self._fetch(dead_ids)

    def recover_stale(self) -> list[Task]:
        """
        Fail claimed/running tasks whose claim is older than the liveness timeout.

        The claim token is cleared, so a runner that was merely slow can no
        longer complete the task. Recovered tasks are left failed for
        settle_failed() to retry or dead-letter.
        """
        now = self.clock()
        cutoff = to_iso(now - self.liveness_timeout)
        now_iso = to_iso(now)

        with self.db.transaction() as conn:
            rows = conn.execute(
                """
                SELECT id FROM tasks
                WHERE status IN ('claimed', 'running') AND claimed_at <= ?
                """,
                (cutoff,),
            ).fetchall()
            ids = [row["id"] for row in rows]
            for task_id in ids:
                conn.execute(
                    """
                    UPDATE tasks
                    SET status = 'failed', attempts = attempts + 1, last_error = ?,
                        error_kind = ?, claim_token = NULL, updated_at = ?
                    WHERE id = ? AND status IN ('claimed', 'running')
                    """,
                    (self.STALE_ERROR, ErrorKind.RETRYABLE.value, now_iso, task_id),
                )

        for task_id in ids:
            logger.warning("Recovered stale task %s (claim older than %s)", task_id, cutoff)
        return self._fetch(ids)

    def cancel(self, task_id: str, reason: str) -> Task:
        """queued -> dead. Tasks already picked up by a runner cannot be cancelled."""
        now_iso = to_iso(self.clock())
        with self.db.transaction() as conn:
            row = conn.execute("SELECT status FROM tasks WHERE id = ?", (task_id,)).fetchone()
            if row is None:
                raise KeyError(task_id)
            if row["status"] != TaskStatus.QUEUED.value:
                raise TaskStateError(
                    f"Task {task_id} is {row['status']}; only queued tasks can be cancelled",
                    reason="not-queued",
                )
            conn.execute(
                """
                UPDATE tasks
                SET status = 'dead', last_error = ?, completed_at = ?, updated_at = ?
                WHERE id = ? AND status = 'queued'
                """,
                (f"cancelled: {reason}", now_iso, now_iso, task_id),
            )

        logger.info("Cancelled %s: %s", task_id, reason)
        task = self.get(task_id)
        if task is None:
            raise KeyError(task_id)
        return task

    # -- queries -----------------------------------------------------------

    def get(self, task_id: str) -> Task | None:
        rows = self.db.execute("SELECT * FROM tasks WHERE id = ?", (task_id,))
        return self._row_to_task(rows[0]) if rows else None

    def list(
        self,
        status: TaskStatus | str | None = None,
        role: Role | str | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[Task]:
        """List tasks, newest first, filtered by status, role and creation time."""
        clauses: list[str] = []
        params: list[Any] = []
        if status:
            clauses.append("status = ?")
            params.append(TaskStatus(str(status).lower()).value)
        if role:
            clauses.append("role = ?")
            params.append(Role(role).value)
        if since:
            clauses.append("created_at >= ?")
            params.append(to_iso(since))
        if until:
            clauses.append("created_at <= ?")
            params.append(to_iso(until))

        sql = "SELECT * FROM tasks"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY created_at DESC, id DESC LIMIT ? OFFSET ?"
        params.extend([limit, offset])

        return [self._row_to_task(row) for row in self.db.execute(sql, tuple(params))]

    def counts(self) -> dict[str, int]:
        """Number of tasks per status (every status present, zero if none)."""
        counts = {status.value: 0 for status in TaskStatus}
        for row in self.db.execute("SELECT status, COUNT(*) AS n FROM tasks GROUP BY status"):
            counts[row["status"]] = row["n"]
        return counts

    def purge_finished(self, older_than_days: int = 30) -> int:
        """Delete success/dead tasks completed before the cutoff. Returns rows removed."""
        cutoff = to_iso(self.clock() - timedelta(days=older_than_days))
        with self.db.connect() as conn:
            cursor = conn.execute(
                """
                DELETE FROM tasks
                WHERE status IN ('success', 'dead') AND completed_at <= ?
                """,
                (cutoff,),
            )
            removed = cursor.rowcount
        if removed:
            logger.info("Purged %d finished task(s) older than %d days", removed, older_than_days)
        return removed

    # -- helpers -----------------------------------------------------------

    def _transition(
        self,
        task: Task,
        expected: TaskStatus,
        assignments: str,
        params: tuple[Any, ...],
    ) -> Task:
        with self.db.connect() as conn:
            cursor = conn.execute(
                f"UPDATE tasks SET {assignments} WHERE id = ? AND status = ? AND claim_token = ?",
                (*params, task.id, expected.value, task.claim_token),
            )
            changed = cursor.rowcount
        if changed == 0:
            current = self.get(task.id)
            state = current.status if current else "missing"
            raise TaskStateError(
                f"Task {task.id} is {state}, expected {expected.value} under this claim",
                reason="lost-claim",
            )
        updated = self.get(task.id)
        if updated is None:
            raise KeyError(task.id)
        return updated

    def _fetch(self, ids: list[str]) -> list[Task]:
        return [task for task in (self.get(task_id) for task_id in ids) if task is not None]

    def _row_to_task(self, row: Any) -> Task:
        return Task(
            id=row["id"],
            role=row["role"],
            tool_name=row["tool_name"],
            payload=json.loads(row["payload"]) if row["payload"] else {},
            idempotency_key=row["idempotency_key"],
            key_supplied=bool(row["key_supplied"]),
            status=row["status"],
            priority=row["priority"],
            attempts=row["attempts"],
            max_attempts=row["max_attempts"],
            created_at=row["created_at"],
            available_at=row["available_at"],
            updated_at=row["updated_at"],
            last_error=row["last_error"],
            error_kind=row["error_kind"],
            result=json.loads(row["result"]) if row["result"] else None,
            created_by=row["created_by"],
            claimed_at=row["claimed_at"],
            claim_token=row["claim_token"],
            started_at=row["started_at"],
            completed_at=row["completed_at"],
        )


def _placeholders(values: tuple[Any, ...]) -> str:
    return ", ".join("?" for _ in values)


def _is_retryable(error_kind: str | None) -> bool:
    try:
        return ErrorKind(error_kind).retryable
    except ValueError:
        return False
