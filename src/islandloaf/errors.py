"""Error taxonomy for agent tool invocation.

Handlers raise RetryableOperationError or FatalOperationError. The tool
executor turns every failure into a typed ToolResult, so callers branch on
ErrorKind rather than on exception classes.

ToolResult.raise_for_error() turns a failed result back into the exception
class registered for its kind in ERROR_CLASSES.
"""

from __future__ import annotations

from enum import StrEnum


class ErrorKind(StrEnum):
    """Failure categories carried by ToolResult and persisted on tasks."""

    AUTH = "auth"
    PERMISSION = "permission"
    IDEMPOTENCY_CONFLICT = "idempotency_conflict"
    RETRYABLE = "retryable"
    FATAL = "fatal"

    @property
    def retryable(self) -> bool:
        return self is ErrorKind.RETRYABLE


class OrchestrationError(Exception):
    """Base class for all orchestration errors."""

    kind: ErrorKind = ErrorKind.FATAL

    def __init__(self, message: str, reason: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.reason = reason


class AuthError(OrchestrationError):
    """Presented credential does not resolve to an active agent."""

    kind = ErrorKind.AUTH
    NOT_FOUND = "not-found"
    INACTIVE = "inactive"


class PermissionDeniedError(OrchestrationError):
    """Role may not invoke the tool (role-not-permitted / insufficient-risk-tier)."""

    kind = ErrorKind.PERMISSION


class IdempotencyConflictError(OrchestrationError):
    """Idempotency key reused with a different payload."""

    kind = ErrorKind.IDEMPOTENCY_CONFLICT


class RetryableOperationError(OrchestrationError):
    """Transient downstream failure; the task may be retried."""

    kind = ErrorKind.RETRYABLE


class FatalOperationError(OrchestrationError):
    """Validation or business-rule failure; never retried."""

    kind = ErrorKind.FATAL


class UnknownToolError(FatalOperationError):
    """No handler is registered for the tool name."""


class TaskStateError(OrchestrationError):
    """Requested task transition is not allowed from the current state."""


ERROR_CLASSES: dict[ErrorKind, type[OrchestrationError]] = {
    ErrorKind.AUTH: AuthError,
    ErrorKind.PERMISSION: PermissionDeniedError,
    ErrorKind.IDEMPOTENCY_CONFLICT: IdempotencyConflictError,
    ErrorKind.RETRYABLE: RetryableOperationError,
    ErrorKind.FATAL: FatalOperationError,
}
