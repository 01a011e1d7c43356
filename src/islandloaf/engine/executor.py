"""Tool Executor - the synchronous entry point for agent tool calls.

Sequence for one call:
1. authorize(role, tool) - denied calls are audited DENIED, ledger untouched
2. validate the payload against the tool's shape
3. ledger.begin() when an idempotency key is present; an invalid payload
   is recorded under the key as a failed outcome without running the handler
4. run the handler under a timeout
5. commit the outcome (success or non-retryable failure) and audit it
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from typing import Any

from islandloaf.engine.audit import AuditLog, AuditStatus
from islandloaf.engine.ledger import IdempotencyLedger, LedgerState, Outcome
from islandloaf.errors import (
    ERROR_CLASSES,
    ErrorKind,
    FatalOperationError,
    OrchestrationError,
    RetryableOperationError,
)
from islandloaf.security.identity import AgentIdentity
from islandloaf.security.policy import PermissionPolicy
from islandloaf.tools.registry import ToolRegistry, normalize_payload

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ToolError:
    """Typed failure carried in a ToolResult."""

    kind: ErrorKind
    message: str
    reason: str | None = None

    @property
    def retryable(self) -> bool:
        return self.kind.retryable

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind.value, "message": self.message, "reason": self.reason}


@dataclass(frozen=True)
class ToolResult:
    """Outcome of invoke(). Never raised, always returned."""

    tool_name: str
    ok: bool
    data: dict[str, Any] = field(default_factory=dict)
    cached: bool = False
    error: ToolError | None = None

    @classmethod
    def success(cls, tool_name: str, data: dict[str, Any], cached: bool = False) -> ToolResult:
        return cls(tool_name=tool_name, ok=True, data=data, cached=cached)

    @classmethod
    def failure(
        cls,
        tool_name: str,
        kind: ErrorKind,
        message: str,
        reason: str | None = None,
        cached: bool = False,
    ) -> ToolResult:
        return cls(
            tool_name=tool_name,
            ok=False,
            cached=cached,
            error=ToolError(kind=kind, message=message, reason=reason),
        )

    def raise_for_error(self) -> None:
        """Raise the typed exception for a failed result. Does nothing on success."""
        if self.error is None:
            return
        raise ERROR_CLASSES[self.error.kind](self.error.message, reason=self.error.reason)

    def to_dict(self) -> dict[str, Any]:
        return {
            "tool": self.tool_name,
            "success": self.ok,
            "data": self.data,
            "cached": self.cached,
            "error": self.error.to_dict() if self.error else None,
        }


def _failure_record(error: ToolError) -> dict[str, Any]:
    return {"error": error.to_dict()}


class ToolExecutor:
    """Enforces permission and idempotency around tool handlers."""

    def __init__(
        self,
        registry: ToolRegistry,
        policy: PermissionPolicy,
        ledger: IdempotencyLedger,
        audit: AuditLog,
        timeout_seconds: float = 30.0,
        max_workers: int = 8,
    ) -> None:
        self.registry = registry
        self.policy = policy
        self.ledger = ledger
        self.audit = audit
        self.timeout_seconds = timeout_seconds
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="tool")

    def close(self) -> None:
        self._pool.shutdown(wait=False, cancel_futures=True)

    def invoke(
        self,
        identity: AgentIdentity,
        tool_name: str,
        payload: Mapping[str, Any],
        idempotency_key: str | None = None,
        task_id: str | None = None,
    ) -> ToolResult:
        """Invoke ``tool_name`` on behalf of ``identity``."""
        audit_kwargs: dict[str, Any] = {
            "agent_id": identity.id,
            "tool_name": tool_name,
            "idempotency_key": idempotency_key,
            "task_id": task_id,
        }

        decision = self.policy.authorize(identity.role, tool_name)
        if not decision.allowed:
            reason = decision.reason.value if decision.reason else None
            logger.warning(
                "Denied %s for agent %s (%s): %s",
                tool_name,
                identity.id,
                identity.role,
                reason,
            )
            self.audit.append(
                status=AuditStatus.DENIED,
                payload=dict(payload),
                result={"reason": reason},
                error_kind=ErrorKind.PERMISSION.value,
                **audit_kwargs,
            )
            return ToolResult.failure(tool_name, ErrorKind.PERMISSION, decision.message, reason)

        rejected: OrchestrationError | None = None
        try:
            model = self.registry.parse(tool_name, payload)
        except OrchestrationError as exc:
            # Invalid payloads are fingerprinted as sent so the key is still consumed.
            model, rejected = None, exc
            normalized = dict(payload)
        else:
            normalized = normalize_payload(model)

        if idempotency_key is None:
            if rejected is not None:
                return self._reject(rejected, normalized, audit_kwargs)
            return self._run(model, normalized, audit_kwargs)

        begun = self.ledger.begin(tool_name, idempotency_key, normalized)

        if begun.state is LedgerState.CONFLICT:
            logger.warning(
                "Idempotency key %s reused for %s with a different payload",
                idempotency_key,
                tool_name,
            )
            return self._fail(
                ErrorKind.IDEMPOTENCY_CONFLICT,
                f"Idempotency key {idempotency_key} was already used with a different payload",
                "fingerprint-mismatch",
                normalized,
                audit_kwargs,
            )

        if begun.state is LedgerState.IN_FLIGHT:
            return self._fail(
                ErrorKind.RETRYABLE,
                f"Request with idempotency key {idempotency_key} is still in progress",
                "in-flight",
                normalized,
                audit_kwargs,
            )

        if begun.state is LedgerState.CACHED:
            return self._replay(begun.result or {}, begun.outcome, normalized, audit_kwargs)

        if rejected is not None:
            result = self._reject(rejected, normalized, audit_kwargs)
        else:
            result = self._run(model, normalized, audit_kwargs)

        if result.ok:
            self.ledger.commit(tool_name, idempotency_key, begun.fingerprint, result.data)
        elif result.error is not None and result.error.retryable:
            self.ledger.release(tool_name, idempotency_key, begun.fingerprint)
        elif result.error is not None:
            self.ledger.commit(
                tool_name,
                idempotency_key,
                begun.fingerprint,
                _failure_record(result.error),
                outcome=Outcome.FAILED,
            )
        return result

    def _run(
        self,
        model: Any,
        normalized: dict[str, Any],
        audit_kwargs: dict[str, Any],
    ) -> ToolResult:
        tool_name = audit_kwargs["tool_name"]
        try:
            spec = self.registry.get(tool_name)
            future = self._pool.submit(spec.handler, model)
            data = future.result(timeout=self.timeout_seconds)
        except FutureTimeoutError:
            future.cancel()
            logger.warning("Tool %s timed out after %.1fs", tool_name, self.timeout_seconds)
            return self._fail(
                ErrorKind.RETRYABLE,
                f"{tool_name} timed out after {self.timeout_seconds:.1f}s",
                "timeout",
                normalized,
                audit_kwargs,
            )
        except RetryableOperationError as exc:
            logger.warning("Tool %s failed transiently: %s", tool_name, exc.message)
            return self._fail(exc.kind, exc.message, exc.reason, normalized, audit_kwargs)
        except FatalOperationError as exc:
            logger.info("Tool %s rejected: %s", tool_name, exc.message)
            return self._fail(exc.kind, exc.message, exc.reason, normalized, audit_kwargs)
        except Exception as exc:
            logger.exception("Tool %s raised unexpectedly", tool_name)
            return self._fail(
                ErrorKind.FATAL, f"{type(exc).__name__}: {exc}", "unexpected", normalized, audit_kwargs
            )

        data = dict(data or {})
        self.audit.append(status=AuditStatus.SUCCESS, payload=normalized, result=data, **audit_kwargs)
        return ToolResult.success(tool_name, data)

    def _replay(
        self,
        record: dict[str, Any],
        outcome: Outcome | None,
        normalized: dict[str, Any],
        audit_kwargs: dict[str, Any],
    ) -> ToolResult:
        tool_name = audit_kwargs["tool_name"]
        if outcome is Outcome.FAILED:
            error = record.get("error", {})
            kind = ErrorKind(error.get("kind", ErrorKind.FATAL.value))
            self.audit.append(
                status=AuditStatus.FAILED,
                payload=normalized,
                result=record,
                cached=True,
                error_kind=kind.value,
                **audit_kwargs,
            )
            return ToolResult.failure(
                tool_name, kind, error.get("message", "failed"), error.get("reason"), cached=True
            )

        self.audit.append(
            status=AuditStatus.SUCCESS, payload=normalized, result=record, cached=True, **audit_kwargs
        )
        return ToolResult.success(tool_name, record, cached=True)

    def _reject(
        self, exc: OrchestrationError, payload: dict[str, Any], audit_kwargs: dict[str, Any]
    ) -> ToolResult:
        return self._fail(exc.kind, exc.message, exc.reason, payload, audit_kwargs)

    def _fail(
        self,
        kind: ErrorKind,
        message: str,
        reason: str | None,
        payload: dict[str, Any],
        audit_kwargs: dict[str, Any],
    ) -> ToolResult:
        result = ToolResult.failure(audit_kwargs["tool_name"], kind, message, reason)
        self.audit.append(
            status=AuditStatus.FAILED,
            payload=payload,
            result=_failure_record(result.error),  # type: ignore[arg-type]
            error_kind=kind.value,
            **audit_kwargs,
        )
        return result
