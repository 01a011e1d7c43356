"""Idempotency Ledger - replay-safe outcomes keyed by (tool, idempotency key).

A caller reserves a key with begin(). Exactly one concurrent caller wins the
reservation (atomic insert-if-absent); the others wait for the winner to
commit and then see its cached outcome. A reservation reused with a different
payload fingerprint is a conflict, never a cache hit.

Record lifecycle:
    (absent) --begin--> pending --commit--> committed --expiry--> (purged)
                          |
                          +--release (retryable failure)--> (absent)
"""

from __future__ import annotations

import hashlib
import json
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import StrEnum
from typing import Any

from islandloaf.storage.database import Database, to_iso, utcnow

logger = logging.getLogger(__name__)


class LedgerState(StrEnum):
    FRESH = "fresh"
    CACHED = "cached"
    CONFLICT = "conflict"
    IN_FLIGHT = "in_flight"


class Outcome(StrEnum):
    SUCCESS = "success"
    FAILED = "failed"


@dataclass(frozen=True)
class LedgerOutcome:
    """Result of begin()."""

    state: LedgerState
    fingerprint: str
    result: dict[str, Any] | None = None
    outcome: Outcome | None = None


@dataclass(frozen=True)
class IdempotencyRecord:
    tool_name: str
    idempotency_key: str
    fingerprint: str
    state: str
    outcome: str | None
    result: dict[str, Any] | None
    created_at: str
    committed_at: str | None
    expires_at: str


def fingerprint(payload: dict[str, Any]) -> str:
    """SHA-256 over canonical JSON of a normalized payload."""
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class IdempotencyLedger:
    """Persistent idempotency records with a bounded TTL."""

    DEFAULT_TTL = timedelta(hours=24)

    def __init__(
        self,
        db: Database,
        ttl: timedelta | None = None,
        wait_seconds: float = 2.0,
        poll_interval: float = 0.05,
        reservation_lease: timedelta = timedelta(minutes=5),
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.db = db
        self.db.ensure_tables()
        self.ttl = ttl or self.DEFAULT_TTL
        self.wait_seconds = wait_seconds
        self.poll_interval = poll_interval
        self.reservation_lease = reservation_lease
        self.clock = clock

    def begin(self, tool_name: str, idempotency_key: str, payload: dict[str, Any]) -> LedgerOutcome:
        """
        Reserve ``(tool_name, idempotency_key)`` for ``payload``.

        Returns:
            FRESH: caller owns the reservation and must commit() or release()
            CACHED: a committed outcome for the same payload exists
            CONFLICT: the key is held for a different payload
            IN_FLIGHT: another caller holds the key and did not commit in time
        """
        digest = fingerprint(payload)
        deadline = time.monotonic() + self.wait_seconds

        while True:
            outcome = self._try_reserve(tool_name, idempotency_key, digest)
            if outcome.state is not LedgerState.IN_FLIGHT:
                return outcome
            if time.monotonic() >= deadline:
                logger.warning(
                    "Idempotency key %s for %s still in flight after %.2fs",
                    idempotency_key,
                    tool_name,
                    self.wait_seconds,
                )
                return outcome
            time.sleep(self.poll_interval)

    def _try_reserve(self, tool_name: str, idempotency_key: str, digest: str) -> LedgerOutcome:
        now = self.clock()
        now_iso = to_iso(now)

        with self.db.transaction() as conn:
            row = conn.execute(
                "SELECT * FROM idempotency_records WHERE tool_name = ? AND idempotency_key = ?",
                (tool_name, idempotency_key),
            ).fetchone()

            if row is not None:
                expired = row["expires_at"] <= now_iso
                stale_reservation = row["state"] == "pending" and (
                    row["created_at"] <= to_iso(now - self.reservation_lease)
                )
                if expired or stale_reservation:
                    conn.execute(
                        "DELETE FROM idempotency_records WHERE tool_name = ? AND idempotency_key = ?",
                        (tool_name, idempotency_key),
                    )
                    if stale_reservation and not expired:
                        logger.warning(
                            "Taking over abandoned reservation %s for %s", idempotency_key, tool_name
                        )
                    row = None

            if row is None:
                cursor = conn.execute(
                    """
                    INSERT INTO idempotency_records (
                        tool_name, idempotency_key, fingerprint, state, created_at, expires_at
                    ) VALUES (?, ?, ?, 'pending', ?, ?)
                    ON CONFLICT(tool_name, idempotency_key) DO NOTHING
                    """,
                    (tool_name, idempotency_key, digest, now_iso, to_iso(now + self.ttl)),
                )
                if cursor.rowcount == 1:
                    return LedgerOutcome(state=LedgerState.FRESH, fingerprint=digest)
                row = conn.execute(
                    "SELECT * FROM idempotency_records WHERE tool_name = ? AND idempotency_key = ?",
                    (tool_name, idempotency_key),
                ).fetchone()

        if row["fingerprint"] != digest:
            return LedgerOutcome(state=LedgerState.CONFLICT, fingerprint=digest)
        if row["state"] == "pending":
            return LedgerOutcome(state=LedgerState.IN_FLIGHT, fingerprint=digest)
        return LedgerOutcome(
            state=LedgerState.CACHED,
            fingerprint=digest,
            result=json.loads(row["result_payload"]) if row["result_payload"] else None,
            outcome=Outcome(row["outcome"]),
        )

    def commit(
        self,
        tool_name: str,
        idempotency_key: str,
        fingerprint: str,
        result: dict[str, Any],
        outcome: Outcome = Outcome.SUCCESS,
    ) -> None:
        """Persist the terminal outcome of a reserved invocation."""
        now = self.clock()
        with self.db.connect() as conn:
            cursor = conn.execute(
                """
                UPDATE idempotency_records
                SET state = 'committed', outcome = ?, result_payload = ?,
                    committed_at = ?, expires_at = ?
                WHERE tool_name = ? AND idempotency_key = ? AND fingerprint = ?
                  AND state = 'pending'
                """,
                (
                    outcome.value,
                    json.dumps(result, default=str),
                    to_iso(now),
                    to_iso(now + self.ttl),
                    tool_name,
                    idempotency_key,
                    fingerprint,
                ),
            )
            if cursor.rowcount == 0:
                # Reservation vanished (lease takeover); record the outcome anyway.
                conn.execute(
                    """
                    INSERT INTO idempotency_records (
                        tool_name, idempotency_key, fingerprint, state, outcome,
                        result_payload, created_at, committed_at, expires_at
                    ) VALUES (?, ?, ?, 'committed', ?, ?, ?, ?, ?)
                    ON CONFLICT(tool_name, idempotency_key) DO NOTHING
                    """,
                    (
                        tool_name,
                        idempotency_key,
                        fingerprint,
                        outcome.value,
                        json.dumps(result, default=str),
                        to_iso(now),
                        to_iso(now),
                        to_iso(now + self.ttl),
                    ),
                )

    def release(self, tool_name: str, idempotency_key: str, fingerprint: str) -> None:
        """Drop an uncommitted reservation so a resubmission is fresh again."""
        with self.db.connect() as conn:
            conn.execute(
                """
                DELETE FROM idempotency_records
                WHERE tool_name = ? AND idempotency_key = ? AND fingerprint = ?
                  AND state = 'pending'
                """,
                (tool_name, idempotency_key, fingerprint),
            )

    def get(self, tool_name: str, idempotency_key: str) -> IdempotencyRecord | None:
        rows = self.db.execute(
            "SELECT * FROM idempotency_records WHERE tool_name = ? AND idempotency_key = ?",
            (tool_name, idempotency_key),
        )
        if not rows:
            return None
        row = rows[0]
        return IdempotencyRecord(
            tool_name=row["tool_name"],
            idempotency_key=row["idempotency_key"],
            fingerprint=row["fingerprint"],
            state=row["state"],
            outcome=row["outcome"],
            result=json.loads(row["result_payload"]) if row["result_payload"] else None,
            created_at=row["created_at"],
            committed_at=row["committed_at"],
            expires_at=row["expires_at"],
        )

    def count(self) -> int:
        rows = self.db.execute("SELECT COUNT(*) AS n FROM idempotency_records")
        return int(rows[0]["n"])

    def purge_expired(self) -> int:
        """Delete expired records. Returns number removed."""
        with self.db.connect() as conn:
            cursor = conn.execute(
                "DELETE FROM idempotency_records WHERE expires_at <= ?",
                (to_iso(self.clock()),),
            )
            removed = cursor.rowcount
        if removed:
            logger.info("Purged %d expired idempotency record(s)", removed)
        return removed

