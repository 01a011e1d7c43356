"""Tests for the SQLite storage layer."""

import sqlite3
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from islandloaf.storage.database import Database, from_iso, to_iso


def test_ensure_tables(tmp_path: Path) -> None:
    db = Database(data_dir=tmp_path / "loaf")
    db.ensure_tables()
    assert db.db_path.exists()
    assert (tmp_path / "loaf" / "logs").is_dir()


def test_wal_mode(db: Database) -> None:
    with db.connect() as conn:
        result = conn.execute("PRAGMA journal_mode").fetchone()
        assert result[0] == "wal"


def test_schema_version(db: Database) -> None:
    db.ensure_tables()
    rows = db.execute("SELECT version FROM schema_version")
    assert len(rows) == 1
    assert rows[0]["version"] == 1


def test_transaction_rolls_back_on_error(db: Database) -> None:
    with pytest.raises(RuntimeError):
        with db.transaction() as conn:
            conn.execute(
                """INSERT INTO agent_identities
                   (id, display_name, role, credential_hash, created_at, updated_at)
                   VALUES ('a1', 'x', 'OWNER', 'h1', 'now', 'now')"""
            )
            raise RuntimeError("boom")
    assert db.execute("SELECT * FROM agent_identities") == []


def test_credential_hash_unique(db: Database) -> None:
    sql = """INSERT INTO agent_identities
             (id, display_name, role, credential_hash, created_at, updated_at)
             VALUES (?, 'x', 'OWNER', 'same-hash', 'now', 'now')"""
    db.execute_insert(sql, ("a1",))
    with pytest.raises(sqlite3.IntegrityError):
        db.execute_insert(sql, ("a2",))


# --- Audit log is append-only ---


def _audit_row(db: Database) -> int:
    return db.execute_insert(
        """INSERT INTO audit_log (agent_id, tool_name, status, created_at)
           VALUES ('agt-1', 'bookings.create', 'SUCCESS', '2026-01-01T00:00:00.000000+00:00')"""
    )


def test_audit_rows_cannot_be_updated(db: Database) -> None:
    entry_id = _audit_row(db)
    with pytest.raises(sqlite3.DatabaseError, match="append-only"):
        db.execute("UPDATE audit_log SET status = 'FAILED' WHERE id = ?", (entry_id,))


def test_audit_rows_cannot_be_deleted(db: Database) -> None:
    entry_id = _audit_row(db)
    with pytest.raises(sqlite3.DatabaseError, match="append-only"):
        db.execute("DELETE FROM audit_log WHERE id = ?", (entry_id,))
    assert len(db.execute("SELECT * FROM audit_log")) == 1


def test_audit_status_is_constrained(db: Database) -> None:
    with pytest.raises(sqlite3.IntegrityError):
        db.execute_insert(
            """INSERT INTO audit_log (agent_id, tool_name, status, created_at)
               VALUES ('agt-1', 'x', 'MAYBE', 'now')"""
        )


# --- Tasks ---


def _task_sql() -> str:
    return """INSERT INTO tasks
              (id, role, tool_name, idempotency_key, key_supplied, status,
               created_at, available_at, updated_at)
              VALUES (?, 'BOOKING_MANAGER', 'bookings.create', 'K1', ?, ?, 'now', 'now', 'now')"""


def test_supplied_key_unique_while_in_flight(db: Database) -> None:
    db.execute_insert(_task_sql(), ("t1", 1, "queued"))
    with pytest.raises(sqlite3.IntegrityError):
        db.execute_insert(_task_sql(), ("t2", 1, "running"))


def test_supplied_key_reusable_after_terminal(db: Database) -> None:
    db.execute_insert(_task_sql(), ("t1", 1, "success"))
    db.execute_insert(_task_sql(), ("t2", 1, "queued"))
    assert len(db.execute("SELECT * FROM tasks")) == 2


def test_default_keys_not_unique(db: Database) -> None:
    db.execute_insert(_task_sql(), ("t1", 0, "queued"))
    db.execute_insert(_task_sql(), ("t2", 0, "queued"))
    assert len(db.execute("SELECT * FROM tasks")) == 2


# --- Timestamps ---


def test_to_iso_sorts_lexicographically() -> None:
    base = datetime(2026, 1, 1, tzinfo=timezone.utc)
    stamps = [to_iso(base + timedelta(microseconds=n)) for n in (0, 1, 999_999, 1_000_000)]
    assert stamps == sorted(stamps)
    assert len({len(s) for s in stamps}) == 1


def test_to_iso_naive_treated_as_utc() -> None:
    naive = datetime(2026, 1, 1, 12, 0)
    assert to_iso(naive) == "2026-01-01T12:00:00.000000+00:00"
    assert from_iso(to_iso(naive)) == naive.replace(tzinfo=timezone.utc)
    assert from_iso(None) is None
