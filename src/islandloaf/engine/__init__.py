"""Orchestration engine: ledger, audit log, executor, queue and runner."""

from .audit import AuditEntry, AuditLog, AuditStatus
from .executor import ToolError, ToolExecutor, ToolResult
from .ledger import IdempotencyLedger, LedgerOutcome, LedgerState, Outcome
from .queue import Task, TaskQueue, TaskStatus
from .runner import PeriodicRunner, RunSummary, TaskRunner

__all__ = [
    "AuditEntry",
    "AuditLog",
    "AuditStatus",
    "IdempotencyLedger",
    "LedgerOutcome",
    "LedgerState",
    "Outcome",
    "PeriodicRunner",
    "RunSummary",
    "Task",
    "TaskQueue",
    "TaskRunner",
    "TaskStatus",
    "ToolError",
    "ToolExecutor",
    "ToolResult",
]
