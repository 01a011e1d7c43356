"""Wires the orchestration components together from Settings."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta

from islandloaf.config import Settings, get_settings
from islandloaf.engine.audit import AuditLog
from islandloaf.engine.executor import ToolExecutor
from islandloaf.engine.ledger import IdempotencyLedger
from islandloaf.engine.queue import TaskQueue
from islandloaf.engine.runner import PeriodicRunner, TaskRunner
from islandloaf.leads.router import LeadRouter
from islandloaf.security.identity import IdentityStore
from islandloaf.security.policy import PermissionPolicy
from islandloaf.storage.database import Database
from islandloaf.tools.operations import SimulatedOperations
from islandloaf.tools.registry import ToolRegistry, build_registry


@dataclass
class Services:
    """Every component, sharing one database."""

    settings: Settings
    db: Database
    identities: IdentityStore
    policy: PermissionPolicy
    registry: ToolRegistry
    operations: SimulatedOperations
    ledger: IdempotencyLedger
    audit: AuditLog
    executor: ToolExecutor
    queue: TaskQueue
    runner: TaskRunner
    leads: LeadRouter

    def periodic_runner(self) -> PeriodicRunner:
        return PeriodicRunner(self.runner, self.settings.runner_interval_seconds)

    def close(self) -> None:
        self.executor.close()


def build_services(
    settings: Settings | None = None,
    operations: SimulatedOperations | None = None,
) -> Services:
    """Build the component graph. ``operations`` replaces the simulated tools in tests."""
    settings = settings or get_settings()
    db = Database(settings.data_dir)
    db.ensure_tables()

    operations = operations or SimulatedOperations()
    registry = build_registry(operations.handlers())
    policy = PermissionPolicy(require_owner_approval=settings.require_owner_approval)
    ledger = IdempotencyLedger(
        db,
        ttl=timedelta(hours=settings.idempotency_ttl_hours),
        wait_seconds=settings.ledger_wait_seconds,
        poll_interval=settings.ledger_poll_interval,
        reservation_lease=timedelta(seconds=settings.reservation_lease_seconds),
    )
    audit = AuditLog(db)
    executor = ToolExecutor(
        registry,
        policy,
        ledger,
        audit,
        timeout_seconds=settings.operation_timeout_seconds,
    )
    queue = TaskQueue(
        db,
        max_attempts=settings.task_max_attempts,
        backoff_base=timedelta(seconds=settings.backoff_base_seconds),
        backoff_max=timedelta(seconds=settings.backoff_max_seconds),
        liveness_timeout=timedelta(seconds=settings.liveness_timeout_seconds),
    )

    return Services(
        settings=settings,
        db=db,
        identities=IdentityStore(db, owner_key=settings.owner_agent_key),
        policy=policy,
        registry=registry,
        operations=operations,
        ledger=ledger,
        audit=audit,
        executor=executor,
        queue=queue,
        runner=TaskRunner(queue, executor, batch_size=settings.claim_batch_size),
        leads=LeadRouter(queue),
    )
