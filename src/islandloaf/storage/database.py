"""SQLite database with WAL mode for the orchestration stores."""

from __future__ import annotations

import sqlite3
from collections.abc import Generator
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

BUSY_TIMEOUT_SECONDS = 10.0


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def to_iso(moment: datetime) -> str:
    """Fixed-width ISO timestamp so stored values sort lexicographically."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value)


class Database:
    """SQLite storage layer with WAL mode for identities, ledger, tasks and audit."""

    def __init__(self, data_dir: Path | None = None) -> None:
        self.data_dir = data_dir or Path.home() / ".islandloaf"
        self.db_path = self.data_dir / "data" / "islandloaf.db"

    def _ensure_dirs(self) -> None:
        self.data_dir.mkdir(parents=True, exist_ok=True)
        (self.data_dir / "data").mkdir(exist_ok=True)
        (self.data_dir / "logs").mkdir(exist_ok=True)

    def _open(self, isolation_level: str | None = "") -> sqlite3.Connection:
        self._ensure_dirs()
        conn = sqlite3.connect(
            str(self.db_path),
            timeout=BUSY_TIMEOUT_SECONDS,
            isolation_level=isolation_level,
            check_same_thread=False,
        )
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA foreign_keys=ON")
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def connect(self) -> Generator[sqlite3.Connection, None, None]:
        """Get a database connection with WAL mode."""
        conn = self._open()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Generator[sqlite3.Connection, None, None]:
        """Connection holding the write lock (BEGIN IMMEDIATE) until exit.

        Statements issued inside the block see a consistent snapshot and no
        other writer can interleave, which is what conditional claims and
        insert-if-absent rely on.
        """
        conn = self._open(isolation_level=None)
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except Exception:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        finally:
            conn.close()

    def ensure_tables(self) -> None:
        """Create all tables if they don't exist."""
        with self.connect() as conn:
            conn.executescript(_SCHEMA)

    def execute(self, sql: str, params: tuple[Any, ...] = ()) -> list[sqlite3.Row]:
        """Execute a query and return results."""
        with self.connect() as conn:
            cursor = conn.execute(sql, params)
            return cursor.fetchall()

    def execute_insert(self, sql: str, params: tuple[Any, ...] = ()) -> int:
        """Execute an insert and return lastrowid."""
        with self.connect() as conn:
            cursor = conn.execute(sql, params)
            return cursor.lastrowid or 0


_SCHEMA = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY,
    applied_at TEXT NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS agent_identities (
    id TEXT PRIMARY KEY,
    display_name TEXT NOT NULL,
    role TEXT NOT NULL,
    credential_hash TEXT UNIQUE NOT NULL,
    is_active INTEGER NOT NULL DEFAULT 1,
    metadata TEXT NOT NULL DEFAULT '{}',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS idempotency_records (
    tool_name TEXT NOT NULL,
    idempotency_key TEXT NOT NULL,
    fingerprint TEXT NOT NULL,
    state TEXT NOT NULL DEFAULT 'pending',
    outcome TEXT,
    result_payload TEXT,
    created_at TEXT NOT NULL,
    committed_at TEXT,
    expires_at TEXT NOT NULL,
    PRIMARY KEY (tool_name, idempotency_key),
    CHECK (state IN ('pending', 'committed'))
);

CREATE INDEX IF NOT EXISTS idx_idempotency_expires
    ON idempotency_records(expires_at);

CREATE TABLE IF NOT EXISTS audit_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    agent_id TEXT NOT NULL,
    tool_name TEXT NOT NULL,
    status TEXT NOT NULL,
    payload_summary TEXT,
    result_summary TEXT,
    idempotency_key TEXT,
    cached INTEGER NOT NULL DEFAULT 0,
    error_kind TEXT,
    task_id TEXT,
    created_at TEXT NOT NULL,
    CHECK (status IN ('SUCCESS', 'FAILED', 'DENIED'))
);

CREATE INDEX IF NOT EXISTS idx_audit_agent ON audit_log(agent_id, created_at);
CREATE INDEX IF NOT EXISTS idx_audit_status ON audit_log(status, created_at);

CREATE TRIGGER IF NOT EXISTS audit_log_no_update
BEFORE UPDATE ON audit_log
BEGIN
    SELECT RAISE(ABORT, 'audit_log is append-only');
END;

CREATE TRIGGER IF NOT EXISTS audit_log_no_delete
BEFORE DELETE ON audit_log
BEGIN
    SELECT RAISE(ABORT, 'audit_log is append-only');
END;

CREATE TABLE IF NOT EXISTS tasks (
    id TEXT PRIMARY KEY,
    role TEXT NOT NULL,
    tool_name TEXT NOT NULL,
    payload TEXT NOT NULL DEFAULT '{}',
    idempotency_key TEXT NOT NULL,
    key_supplied INTEGER NOT NULL DEFAULT 0,
    status TEXT NOT NULL DEFAULT 'queued',
    priority INTEGER NOT NULL DEFAULT 5,
    attempts INTEGER NOT NULL DEFAULT 0,
    max_attempts INTEGER NOT NULL DEFAULT 3,
    last_error TEXT,
    error_kind TEXT,
    result TEXT,
    created_by TEXT,
    created_at TEXT NOT NULL,
    available_at TEXT NOT NULL,
    claimed_at TEXT,
    claim_token TEXT,
    started_at TEXT,
    completed_at TEXT,
    updated_at TEXT NOT NULL,
    CHECK (attempts >= 0),
    CHECK (max_attempts >= 1)
);

CREATE INDEX IF NOT EXISTS idx_tasks_due ON tasks(status, available_at, priority, created_at);
CREATE INDEX IF NOT EXISTS idx_tasks_role ON tasks(role, status);
CREATE INDEX IF NOT EXISTS idx_tasks_claim ON tasks(claim_token);

CREATE UNIQUE INDEX IF NOT EXISTS idx_tasks_inflight_key
    ON tasks(idempotency_key)
    WHERE key_supplied = 1 AND status IN ('queued', 'claimed', 'running', 'failed');

INSERT OR IGNORE INTO schema_version (version) VALUES (1);
"""
