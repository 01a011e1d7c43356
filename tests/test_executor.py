"""Tests for the tool executor: permission, idempotency and audit around handlers."""

from __future__ import annotations

import threading
from typing import Any

import pytest

from islandloaf.engine.audit import AuditLog
from islandloaf.engine.executor import ToolExecutor
from islandloaf.engine.ledger import IdempotencyLedger
from islandloaf.errors import (
    ErrorKind,
    FatalOperationError,
    IdempotencyConflictError,
    PermissionDeniedError,
    RetryableOperationError,
)
from islandloaf.security.identity import AgentIdentity, Role
from islandloaf.security.policy import PermissionPolicy
from islandloaf.services import Services
from islandloaf.storage.database import Database
from islandloaf.tools import payloads as p
from islandloaf.tools.registry import build_registry

BOOKING = {
    "service_id": 3,
    "customer_name": "Ana Perera",
    "customer_email": "ana@example.com",
    "start_date": "2026-03-01",
    "end_date": "2026-03-04",
    "total_price": 450.0,
}
TICKET = {"subject": "Wifi down", "message": "No wifi in villa 2"}

BOOKER = AgentIdentity(id="agt-booker", display_name="Booker", role=Role.BOOKING_MANAGER)
SUPPORT = AgentIdentity(id="agt-support", display_name="Support", role=Role.SUPPORT)


def _executor(db: Database, ticket_handler: Any, timeout: float = 5.0) -> ToolExecutor:
    return ToolExecutor(
        build_registry({"tickets.create": ticket_handler}),
        PermissionPolicy(),
        IdempotencyLedger(db, wait_seconds=0.1, poll_interval=0.01),
        AuditLog(db),
        timeout_seconds=timeout,
    )


class Flaky:
    """Ticket handler failing with the given exceptions before succeeding."""

    def __init__(self, *errors: Exception) -> None:
        self.errors = list(errors)
        self.calls = 0

    def __call__(self, payload: p.ToolPayload) -> dict[str, Any]:
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return {"ticket_id": self.calls}


class TestIdempotency:
    def test_replay_returns_cached_result(self, services: Services) -> None:
        first = services.executor.invoke(BOOKER, "bookings.create", BOOKING, idempotency_key="K1")
        second = services.executor.invoke(BOOKER, "bookings.create", BOOKING, idempotency_key="K1")

        assert first.ok and not first.cached
        assert second.ok and second.cached
        assert second.data == first.data
        assert services.operations.calls["bookings.create"] == 1
        assert len(services.operations.bookings) == 1

        entries = services.audit.query(tool_name="bookings.create")
        assert [(e.status, e.cached) for e in entries] == [("SUCCESS", True), ("SUCCESS", False)]

    def test_normalized_payload_replays(self, services: Services) -> None:
        services.executor.invoke(BOOKER, "bookings.create", BOOKING, idempotency_key="K1")
        reordered = {**dict(reversed(list(BOOKING.items()))), "total_price": 450}
        again = services.executor.invoke(BOOKER, "bookings.create", reordered, idempotency_key="K1")
        assert again.cached

    def test_changed_payload_conflicts(self, services: Services) -> None:
        services.executor.invoke(BOOKER, "bookings.create", BOOKING, idempotency_key="K1")
        changed = {**BOOKING, "total_price": 999.0}
        result = services.executor.invoke(BOOKER, "bookings.create", changed, idempotency_key="K1")

        assert not result.ok
        assert result.error.kind is ErrorKind.IDEMPOTENCY_CONFLICT
        assert services.operations.calls["bookings.create"] == 1

        latest = services.audit.query(limit=1)[0]
        assert latest.status == "FAILED"
        assert latest.error_kind == "idempotency_conflict"

    def test_without_key_executes_each_time(self, services: Services) -> None:
        services.executor.invoke(SUPPORT, "tickets.create", TICKET)
        services.executor.invoke(SUPPORT, "tickets.create", TICKET)
        assert services.operations.calls["tickets.create"] == 2
        assert services.ledger.count() == 0

    def test_invalid_payload_consumes_key(self, services: Services) -> None:
        bad = {**BOOKING, "end_date": "2026-02-01"}
        first = services.executor.invoke(BOOKER, "bookings.create", bad, idempotency_key="K9")
        again = services.executor.invoke(BOOKER, "bookings.create", bad, idempotency_key="K9")
        valid = services.executor.invoke(BOOKER, "bookings.create", BOOKING, idempotency_key="K9")

        assert first.error.reason == "validation"
        assert again.cached
        assert again.error.reason == "validation"
        assert valid.error.kind is ErrorKind.IDEMPOTENCY_CONFLICT
        assert services.operations.calls["bookings.create"] == 0
        assert services.ledger.count() == 1


class TestPermission:
    def test_denied_writes_only_denied_entry(self, services: Services) -> None:
        marketer = AgentIdentity(id="agt-mkt", display_name="Mkt", role=Role.MARKETING)
        result = services.executor.invoke(marketer, "bookings.create", BOOKING, idempotency_key="K1")

        assert not result.ok
        assert result.error.kind is ErrorKind.PERMISSION
        assert result.error.reason == "role-not-permitted"
        assert services.operations.calls["bookings.create"] == 0
        assert services.ledger.count() == 0
        assert [e.status for e in services.audit.query()] == ["DENIED"]

    def test_high_risk_insufficient_tier(self, services: Services) -> None:
        finance = AgentIdentity(id="agt-fin", display_name="Fin", role=Role.FINANCE)
        refund = {"booking_id": 1, "amount": 10.0, "reason": "late checkout"}
        result = services.executor.invoke(finance, "finance.refund", refund)

        assert result.error.kind is ErrorKind.PERMISSION
        assert result.error.reason == "insufficient-risk-tier"
        assert services.operations.calls["finance.refund"] == 0

    def test_owner_may_refund(self, services: Services) -> None:
        owner = AgentIdentity(id="owner", display_name="Owner", role=Role.OWNER)
        refund = {"booking_id": 1, "amount": 10.0, "reason": "late checkout"}
        result = services.executor.invoke(owner, "finance.refund", refund, idempotency_key="R1")
        assert result.ok
        assert result.data["refund_id"].startswith("sim-refund-")

    def test_unknown_tool_denied(self, services: Services) -> None:
        owner = AgentIdentity(id="owner", display_name="Owner", role=Role.OWNER)
        result = services.executor.invoke(owner, "bookings.teleport", {})
        assert result.error.kind is ErrorKind.PERMISSION
        assert result.error.reason == "unknown-tool"


class TestFailures:
    def test_invalid_payload_is_fatal(self, services: Services) -> None:
        bad = {**BOOKING, "end_date": "2026-02-01"}
        result = services.executor.invoke(BOOKER, "bookings.create", bad, idempotency_key="K1")

        assert result.error.kind is ErrorKind.FATAL
        assert result.error.reason == "validation"
        assert services.operations.calls["bookings.create"] == 0
        assert services.audit.query()[0].status == "FAILED"

    def test_unexpected_field_rejected(self, services: Services) -> None:
        result = services.executor.invoke(SUPPORT, "tickets.create", {**TICKET, "drop": "table"})
        assert result.error.kind is ErrorKind.FATAL

    def test_fatal_failure_committed_and_replayed(self, db: Database) -> None:
        handler = Flaky(FatalOperationError("customer banned", reason="business-rule"))
        executor = _executor(db, handler)
        try:
            first = executor.invoke(SUPPORT, "tickets.create", TICKET, idempotency_key="T1")
            second = executor.invoke(SUPPORT, "tickets.create", TICKET, idempotency_key="T1")
        finally:
            executor.close()

        assert first.error.kind is ErrorKind.FATAL
        assert second.cached
        assert second.error.kind is ErrorKind.FATAL
        assert second.error.message == "customer banned"
        assert handler.calls == 1

    def test_retryable_failure_releases_key(self, db: Database) -> None:
        handler = Flaky(RetryableOperationError("gateway 502"))
        executor = _executor(db, handler)
        try:
            first = executor.invoke(SUPPORT, "tickets.create", TICKET, idempotency_key="T1")
            second = executor.invoke(SUPPORT, "tickets.create", TICKET, idempotency_key="T1")
        finally:
            executor.close()

        assert first.error.kind is ErrorKind.RETRYABLE
        assert first.error.retryable
        assert second.ok and not second.cached
        assert handler.calls == 2

    def test_unexpected_exception_is_fatal(self, db: Database) -> None:
        handler = Flaky(ZeroDivisionError("division by zero"))
        executor = _executor(db, handler)
        try:
            first = executor.invoke(SUPPORT, "tickets.create", TICKET, idempotency_key="T1")
            second = executor.invoke(SUPPORT, "tickets.create", TICKET, idempotency_key="T1")
        finally:
            executor.close()

        assert first.error.kind is ErrorKind.FATAL
        assert first.error.reason == "unexpected"
        assert "ZeroDivisionError" in first.error.message
        assert second.cached
        assert handler.calls == 1

    def test_timeout_is_retryable(self, db: Database) -> None:
        release = threading.Event()
        calls: list[int] = []

        def slow(payload: p.ToolPayload) -> dict[str, Any]:
            calls.append(1)
            release.wait(5)
            return {"ticket_id": 1}

        executor = _executor(db, slow, timeout=0.1)
        try:
            result = executor.invoke(SUPPORT, "tickets.create", TICKET, idempotency_key="T1")
        finally:
            release.set()
            executor.close()

        assert result.error.kind is ErrorKind.RETRYABLE
        assert result.error.reason == "timeout"
        ledger = IdempotencyLedger(db)
        assert ledger.get("tickets.create", "T1") is None


def test_result_to_dict(services: Services) -> None:
    result = services.executor.invoke(SUPPORT, "tickets.create", TICKET)
    data = result.to_dict()
    assert data["success"] is True
    assert data["tool"] == "tickets.create"
    assert data["error"] is None
    assert data["data"]["subject"] == "Wifi down"



def test_raise_for_error(services: Services) -> None:
    services.executor.invoke(SUPPORT, "tickets.create", TICKET).raise_for_error()

    refund = {"booking_id": 1, "amount": 5.0, "reason": "x"}
    denied = services.executor.invoke(BOOKER, "finance.refund", refund)
    with pytest.raises(PermissionDeniedError) as excinfo:
        denied.raise_for_error()
    assert excinfo.value.reason == "role-not-permitted"

    services.executor.invoke(BOOKER, "bookings.create", BOOKING, idempotency_key="K1")
    changed = {**BOOKING, "total_price": 1.0}
    conflict = services.executor.invoke(BOOKER, "bookings.create", changed, idempotency_key="K1")
    with pytest.raises(IdempotencyConflictError):
        conflict.raise_for_error()
