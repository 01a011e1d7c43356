"""FastAPI server for agent tool calls, task and audit queries, and lead intake."""

from __future__ import annotations

import hmac
import logging
import time
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any

import click
from fastapi import Body, Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from islandloaf import __version__
from islandloaf.config import get_settings
from islandloaf.engine.queue import TaskStatus
from islandloaf.errors import AuthError, ErrorKind, PermissionDeniedError, TaskStateError
from islandloaf.logging_config import setup_logging
from islandloaf.security.identity import AgentIdentity, Role
from islandloaf.security.policy import DELEGATING_ROLES
from islandloaf.services import Services, build_services

logger = logging.getLogger(__name__)

STATUS_BY_KIND = {
    ErrorKind.AUTH: 401,
    ErrorKind.PERMISSION: 403,
    ErrorKind.IDEMPOTENCY_CONFLICT: 409,
    ErrorKind.FATAL: 422,
    ErrorKind.RETRYABLE: 503,
}
OPERATOR_ROLES = DELEGATING_ROLES


class EnqueueRequest(BaseModel):
    role: Role
    tool_name: str = Field(min_length=1)
    payload: dict[str, Any] = Field(default_factory=dict)
    idempotency_key: str | None = None
    priority: int = 5
    delay_seconds: float = Field(default=0, ge=0)
    max_attempts: int | None = Field(default=None, ge=1)


class CancelRequest(BaseModel):
    reason: str = "cancelled by operator"


class IdentityCreate(BaseModel):
    display_name: str = Field(min_length=1)
    role: Role
    metadata: dict[str, Any] = Field(default_factory=dict)


class IdentityUpdate(BaseModel):
    is_active: bool | None = None
    metadata: dict[str, Any] | None = None


def get_services(request: Request) -> Services:
    services = request.app.state.services
    if services is None:
        services = build_services()
        request.app.state.services = services
    return services


def require_agent(
    services: Services = Depends(get_services),
    x_agent_key: str | None = Header(default=None),
) -> AgentIdentity:
    if not x_agent_key:
        raise HTTPException(status_code=401, detail="Missing x-agent-key header")
    try:
        return services.identities.resolve(x_agent_key)
    except AuthError as exc:
        raise HTTPException(
            status_code=401, detail={"kind": exc.kind.value, "reason": exc.reason}
        ) from exc


def require_operator(identity: AgentIdentity = Depends(require_agent)) -> AgentIdentity:
    if identity.role not in OPERATOR_ROLES:
        raise HTTPException(status_code=403, detail="Requires an OWNER or LEADER agent key")
    return identity


def require_admin(
    services: Services = Depends(get_services),
    x_admin_token: str | None = Header(default=None),
) -> None:
    expected = services.settings.admin_token
    if not expected or not x_admin_token or not hmac.compare_digest(x_admin_token, expected):
        raise HTTPException(status_code=401, detail="Invalid admin token")


def _parse_lead(body: dict[str, Any]) -> tuple[str | None, dict[str, Any]]:
    """Pull text and sender out of a Telegram update or a flat message."""
    message = body.get("edited_message") or body.get("message")
    if isinstance(message, dict):
        sender = dict(message.get("from") or {})
        sender["message_id"] = message.get("message_id")
        chat = message.get("chat") or {}
        if sender.get("id") is None and chat.get("id") is not None:
            sender["id"] = chat["id"]
        return message.get("text"), sender

    sender = {
        "id": body.get("sender_id"),
        "display_name": body.get("sender_name"),
        "username": body.get("username"),
        "message_id": body.get("message_id"),
    }
    return body.get("text"), sender


def create_app(services: Services | None = None, run_background: bool = False) -> FastAPI:
    """Build the API. Without ``services`` they are built from Settings on first use."""

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        periodic = None
        if run_background:
            svc = app.state.services or build_services()
            app.state.services = svc
            periodic = svc.periodic_runner()
            periodic.start()
        yield
        if periodic is not None:
            periodic.stop()

    app = FastAPI(
        title="IslandLoaf Agent Orchestration API",
        version=__version__,
        description="Permissioned, idempotent tool execution for agents",
        lifespan=lifespan,
    )
    app.state.services = services
    start_time = time.monotonic()

    @app.get("/api/health")
    async def health() -> dict[str, Any]:
        """Health check."""
        uptime = time.monotonic() - start_time
        return {"status": "ok", "version": __version__, "uptime_seconds": round(uptime, 1)}

    @app.post("/api/tools/{tool_name}")
    def invoke_tool(
        tool_name: str,
        payload: dict[str, Any] | None = Body(default=None),
        idempotency_key: str | None = Header(default=None),
        identity: AgentIdentity = Depends(require_agent),
        services: Services = Depends(get_services),
    ) -> JSONResponse:
        """Invoke a tool synchronously."""
        result = services.executor.invoke(
            identity, tool_name, payload or {}, idempotency_key=idempotency_key
        )
        status = 200 if result.ok else STATUS_BY_KIND[result.error.kind]  # type: ignore[union-attr]
        return JSONResponse(status_code=status, content=result.to_dict())

    @app.post("/api/tasks", status_code=201)
    def enqueue_task(
        request: EnqueueRequest,
        identity: AgentIdentity = Depends(require_agent),
        services: Services = Depends(get_services),
    ) -> dict[str, Any]:
        """Queue a tool invocation for the background runner."""
        try:
            services.policy.authorize_delegation(identity.role, request.role, request.tool_name)
        except PermissionDeniedError as exc:
            logger.warning("Agent %s may not queue %s: %s", identity.id, request.tool_name, exc)
            raise HTTPException(
                status_code=403, detail={"kind": exc.kind.value, "reason": exc.reason}
            ) from exc
        task = services.queue.enqueue(
            request.role,
            request.tool_name,
            request.payload,
            idempotency_key=request.idempotency_key,
            priority=request.priority,
            delay_seconds=request.delay_seconds,
            max_attempts=request.max_attempts,
            created_by=identity.id,
        )
        return task.to_dict()

    @app.get("/api/tasks")
    def list_tasks(
        status: TaskStatus | None = None,
        role: Role | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
        limit: int = 50,
        offset: int = 0,
        _: AgentIdentity = Depends(require_operator),
        services: Services = Depends(get_services),
    ) -> dict[str, Any]:
        """List tasks with filters."""
        tasks = services.queue.list(
            status=status, role=role, since=since, until=until, limit=limit, offset=offset
        )
        return {
            "tasks": [t.to_dict() for t in tasks],
            "count": len(tasks),
            "limit": limit,
            "offset": offset,
            "counts": services.queue.counts(),
        }

    @app.get("/api/tasks/{task_id}")
    def get_task(
        task_id: str,
        _: AgentIdentity = Depends(require_operator),
        services: Services = Depends(get_services),
    ) -> dict[str, Any]:
        task = services.queue.get(task_id)
        if task is None:
            raise HTTPException(status_code=404, detail=f"Task {task_id} not found")
        return task.to_dict()

    @app.post("/api/tasks/{task_id}/cancel")
    def cancel_task(
        task_id: str,
        request: CancelRequest | None = None,
        identity: AgentIdentity = Depends(require_operator),
        services: Services = Depends(get_services),
    ) -> dict[str, Any]:
        """Cancel a task that has not been picked up yet."""
        reason = (request or CancelRequest()).reason
        try:
            task = services.queue.cancel(task_id, f"{reason} ({identity.id})")
        except KeyError:
            raise HTTPException(status_code=404, detail=f"Task {task_id} not found") from None
        except TaskStateError as exc:
            raise HTTPException(status_code=409, detail=exc.message) from exc
        return task.to_dict()

    @app.get("/api/audit")
    def audit(
        agent_id: str | None = None,
        status: str | None = None,
        tool_name: str | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
        limit: int = 100,
        offset: int = 0,
        _: AgentIdentity = Depends(require_operator),
        services: Services = Depends(get_services),
    ) -> dict[str, Any]:
        """Read the audit trail, newest first."""
        try:
            entries = services.audit.query(
                agent_id=agent_id,
                status=status.upper() if status else None,
                tool_name=tool_name,
                since=since,
                until=until,
                limit=limit,
                offset=offset,
            )
        except ValueError as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc
        return {"entries": [e.to_dict() for e in entries], "count": len(entries)}

    @app.post("/api/runner/tick")
    def runner_tick(
        _: AgentIdentity = Depends(require_operator),
        services: Services = Depends(get_services),
    ) -> dict[str, Any]:
        """Run one batch of due tasks now."""
        return services.runner.tick().to_dict()

    @app.post("/api/leads/webhook")
    def lead_webhook(
        body: dict[str, Any] | None = Body(default=None),
        x_telegram_bot_api_secret_token: str | None = Header(default=None),
        services: Services = Depends(get_services),
    ) -> dict[str, Any]:
        """Inbound chat messages. Acknowledged with 200 whatever happens downstream."""
        secret = services.settings.webhook_secret
        if secret and not (
            x_telegram_bot_api_secret_token
            and hmac.compare_digest(x_telegram_bot_api_secret_token, secret)
        ):
            logger.warning("Lead webhook: invalid secret token")
            raise HTTPException(status_code=401, detail="Invalid secret token")

        text, sender = _parse_lead(body or {})
        if not text:
            return {"ok": True}

        try:
            receipt = services.leads.handle_message(text, sender)
        except Exception as exc:
            # The channel retries on non-200, which would redeliver forever.
            logger.exception("Lead webhook processing failed")
            return {"ok": True, "error": str(exc)}
        return {"ok": True, **receipt.to_dict()}

    @app.post("/api/admin/identities", status_code=201, dependencies=[Depends(require_admin)])
    def create_identity(
        request: IdentityCreate,
        services: Services = Depends(get_services),
    ) -> dict[str, Any]:
        """Create an agent. The secret is shown once and never stored."""
        identity, secret = services.identities.create(
            request.display_name, request.role, request.metadata
        )
        return {"identity": identity.to_dict(), "secret": secret}

    @app.get("/api/admin/identities", dependencies=[Depends(require_admin)])
    def list_identities(
        role: Role | None = None,
        active: bool | None = None,
        services: Services = Depends(get_services),
    ) -> dict[str, Any]:
        identities = services.identities.list(role=role, active=active)
        return {"identities": [i.to_dict() for i in identities], "count": len(identities)}

    @app.patch("/api/admin/identities/{agent_id}", dependencies=[Depends(require_admin)])
    def update_identity(
        agent_id: str,
        request: IdentityUpdate,
        services: Services = Depends(get_services),
    ) -> dict[str, Any]:
        """Activate/deactivate an agent or merge metadata."""
        identity = services.identities.get(agent_id)
        if identity is None:
            raise HTTPException(status_code=404, detail=f"Agent {agent_id} not found")
        if request.metadata is not None:
            identity = services.identities.update_metadata(agent_id, request.metadata)
        if request.is_active is not None:
            identity = services.identities.set_active(agent_id, request.is_active)
        return identity.to_dict()

    return app


app = create_app()


@click.command()
@click.option("--port", default=3848, help="Port to listen on")
@click.option("--host", default="127.0.0.1", help="Host to bind to")
@click.option("--runner/--no-runner", default=True, help="Run due tasks in the background")
def main(port: int, host: str, runner: bool) -> None:
    """Start the IslandLoaf API server."""
    import uvicorn

    settings = get_settings()
    setup_logging(level=settings.log_level, log_file=settings.log_file)
    uvicorn.run(create_app(build_services(settings), run_background=runner), host=host, port=port)
