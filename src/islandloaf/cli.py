"""CLI entry point for IslandLoaf agent orchestration."""

from __future__ import annotations

import json
import time
from pathlib import Path
from typing import Any

import click
from rich.console import Console
from rich.table import Table

from islandloaf import __version__
from islandloaf.config import get_settings
from islandloaf.engine.executor import ToolResult
from islandloaf.engine.queue import TaskStatus
from islandloaf.errors import AuthError, OrchestrationError, TaskStateError
from islandloaf.logging_config import setup_logging
from islandloaf.security.identity import Role
from islandloaf.services import Services, build_services

console = Console()

ROLE_CHOICE = click.Choice([r.value for r in Role], case_sensitive=False)
STATUS_COLORS = {
    "queued": "cyan",
    "claimed": "blue",
    "running": "yellow",
    "success": "green",
    "failed": "red",
    "dead": "dim",
    "SUCCESS": "green",
    "FAILED": "red",
    "DENIED": "magenta",
}


def _services(ctx: click.Context) -> Services:
    services = ctx.obj.get("services")
    if services is None:
        settings = get_settings(data_dir=ctx.obj.get("data_dir"))
        setup_logging(level=settings.log_level, log_file=settings.log_file)
        services = build_services(settings)
        ctx.obj["services"] = services
        ctx.call_on_close(services.close)
    return services


def _parse_payload(raw: str) -> dict[str, Any]:
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise click.BadParameter(f"payload is not valid JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise click.BadParameter("payload must be a JSON object")
    return payload


def _colored(status: str) -> str:
    color = STATUS_COLORS.get(status, "white")
    return f"[{color}]{status}[/{color}]"


@click.group()
@click.version_option(version=__version__, prog_name="loaf")
@click.option(
    "--data-dir",
    type=click.Path(file_okay=False, path_type=Path),
    envvar="ISLANDLOAF_DATA_DIR",
    help="Directory for the database and logs (default ~/.islandloaf)",
)
@click.pass_context
def main(ctx: click.Context, data_dir: Path | None) -> None:
    """IslandLoaf: permissioned, idempotent tool execution for agents."""
    ctx.ensure_object(dict)
    ctx.obj["data_dir"] = data_dir


@main.command()
@click.pass_context
def init(ctx: click.Context) -> None:
    """Initialize storage: create the data directory and database."""
    services = _services(ctx)
    console.print(f"[green]IslandLoaf initialized at {services.db.data_dir}[/green]")
    console.print(f"  Database: {services.db.db_path}")


# --- Agent identities ---


@main.group()
def agents() -> None:
    """Manage agent identities."""


@agents.command("create")
@click.argument("display_name")
@click.option("--role", required=True, type=ROLE_CHOICE, help="Agent role")
@click.option("--meta", "meta", multiple=True, help="Metadata as key=value (repeatable)")
@click.pass_context
def agents_create(ctx: click.Context, display_name: str, role: str, meta: tuple[str, ...]) -> None:
    """Create an agent and print its secret (shown once)."""
    metadata: dict[str, Any] = {}
    for item in meta:
        key, sep, value = item.partition("=")
        if not sep:
            raise click.BadParameter(f"expected key=value, got {item!r}", param_hint="--meta")
        metadata[key] = value

    identity, secret = _services(ctx).identities.create(display_name, role.upper(), metadata)
    console.print(f"[green]Created {identity.id}[/green] ({identity.role.value})")
    console.print(f"  Secret: [bold]{secret}[/bold]")
    console.print("  [yellow]Store it now; it cannot be shown again.[/yellow]")


@agents.command("list")
@click.option("--role", type=ROLE_CHOICE, default=None)
@click.option("--active/--inactive", default=None)
@click.pass_context
def agents_list(ctx: click.Context, role: str | None, active: bool | None) -> None:
    """List agent identities."""
    identities = _services(ctx).identities.list(role=role.upper() if role else None, active=active)
    if not identities:
        console.print("[dim]No agents.[/dim]")
        return

    table = Table(title="Agents")
    table.add_column("ID", style="cyan")
    table.add_column("Name")
    table.add_column("Role", style="green")
    table.add_column("Active")
    table.add_column("Created")
    for identity in identities:
        table.add_row(
            identity.id,
            identity.display_name,
            identity.role.value,
            "yes" if identity.is_active else "[red]no[/red]",
            str(identity.created_at)[:19],
        )
    console.print(table)


def _set_active(ctx: click.Context, agent_id: str, active: bool) -> None:
    try:
        identity = _services(ctx).identities.set_active(agent_id, active)
    except KeyError:
        console.print(f"[red]Agent {agent_id} not found[/red]")
        ctx.exit(1)
    state = "activated" if identity.is_active else "deactivated"
    console.print(f"[green]{identity.id} {state}[/green]")


@agents.command("activate")
@click.argument("agent_id")
@click.pass_context
def agents_activate(ctx: click.Context, agent_id: str) -> None:
    """Re-enable an agent."""
    _set_active(ctx, agent_id, True)


@agents.command("deactivate")
@click.argument("agent_id")
@click.pass_context
def agents_deactivate(ctx: click.Context, agent_id: str) -> None:
    """Disable an agent; its audit history is kept."""
    _set_active(ctx, agent_id, False)


# --- Invocation and tasks ---


@main.command()
@click.argument("tool_name")
@click.argument("payload", default="{}")
@click.option("--key", "agent_key", envvar="ISLANDLOAF_AGENT_KEY", required=True, help="Agent secret")
@click.option("--idempotency-key", default=None, help="Replay-safety key")
@click.pass_context
def invoke(
    ctx: click.Context,
    tool_name: str,
    payload: str,
    agent_key: str,
    idempotency_key: str | None,
) -> None:
    """Invoke a tool now as the agent owning --key."""
    services = _services(ctx)
    try:
        identity = services.identities.resolve(agent_key)
    except AuthError as exc:
        console.print(f"[red]Auth failed ({exc.reason}):[/red] {exc.message}")
        ctx.exit(1)

    result = services.executor.invoke(
        identity, tool_name, _parse_payload(payload), idempotency_key=idempotency_key
    )
    try:
        result.raise_for_error()
    except OrchestrationError as exc:
        console.print(f"[red]{tool_name}: {exc.kind.value}[/red] {exc.message}")
        if exc.reason:
            console.print(f"  Reason: {exc.reason}")
        ctx.exit(1)
    _print_result(result)


@main.command()
@click.argument("tool_name")
@click.argument("payload", default="{}")
@click.option("--role", required=True, type=ROLE_CHOICE, help="Role that will run the task")
@click.option("--idempotency-key", default=None)
@click.option("--priority", default=5, show_default=True, help="Lower runs first")
@click.option("--delay", "delay_seconds", default=0.0, help="Seconds before the task is due")
@click.option("--max-attempts", type=int, default=None)
@click.pass_context
def enqueue(
    ctx: click.Context,
    tool_name: str,
    payload: str,
    role: str,
    idempotency_key: str | None,
    priority: int,
    delay_seconds: float,
    max_attempts: int | None,
) -> None:
    """Queue a tool invocation for the runner."""
    task = _services(ctx).queue.enqueue(
        role.upper(),
        tool_name,
        _parse_payload(payload),
        idempotency_key=idempotency_key,
        priority=priority,
        delay_seconds=delay_seconds,
        max_attempts=max_attempts,
        created_by="cli",
    )
    console.print(f"[green]Queued {task.id}[/green] {task.tool_name} for {task.role}")
    console.print(f"  Status: {_colored(task.status)}  Key: {task.idempotency_key}")


@main.command()
@click.pass_context
def tick(ctx: click.Context) -> None:
    """Run one batch of due tasks."""
    summary = _services(ctx).runner.tick()
    console.print(
        f"Claimed: {summary.claimed} | "
        f"[green]Succeeded: {summary.succeeded}[/green] | "
        f"[yellow]Retried: {summary.retried}[/yellow] | "
        f"[red]Dead: {summary.dead}[/red] | "
        f"Recovered: {summary.recovered}"
    )
    for detail in summary.details:
        line = f"  {detail['task_id']} {_colored(detail['status'])}"
        if detail.get("cached"):
            line += " [dim](cached)[/dim]"
        if detail.get("error"):
            line += f" {detail['error']}"
        console.print(line)


@main.command()
@click.option("--interval", type=float, default=None, help="Seconds between ticks")
@click.pass_context
def run(ctx: click.Context, interval: float | None) -> None:
    """Run the task runner until interrupted."""
    services = _services(ctx)
    periodic = services.periodic_runner()
    if interval is not None:
        periodic.interval_seconds = interval

    console.print(f"[cyan]Runner started[/cyan] (every {periodic.interval_seconds:.0f}s, Ctrl-C to stop)")
    periodic.start()
    try:
        while periodic.running:
            time.sleep(1.0)
    except KeyboardInterrupt:
        pass
    finally:
        periodic.stop()
    console.print(f"[dim]Stopped after {periodic.ticks} tick(s).[/dim]")


@main.command()
@click.option("--status", type=click.Choice([s.value for s in TaskStatus]), default=None)
@click.option("--role", type=ROLE_CHOICE, default=None)
@click.option("--limit", default=20, help="Number of tasks to show")
@click.pass_context
def tasks(ctx: click.Context, status: str | None, role: str | None, limit: int) -> None:
    """Show tasks, newest first."""
    queue = _services(ctx).queue
    rows = queue.list(status=status, role=role.upper() if role else None, limit=limit)

    if not rows:
        console.print("[dim]No tasks.[/dim]")
        return

    table = Table(title="Tasks")
    table.add_column("Task", style="cyan")
    table.add_column("Tool")
    table.add_column("Role", style="green")
    table.add_column("Status")
    table.add_column("Attempts")
    table.add_column("Last error", max_width=40)
    table.add_column("Created")
    for task in rows:
        table.add_row(
            task.id,
            task.tool_name,
            task.role,
            _colored(task.status),
            f"{task.attempts}/{task.max_attempts}",
            (task.last_error or "")[:40],
            task.created_at[:19],
        )
    console.print(table)

    counts = queue.counts()
    console.print(" | ".join(f"{name}: {n}" for name, n in counts.items()))


@main.command()
@click.argument("task_id")
@click.option("--reason", default="cancelled by operator")
@click.pass_context
def cancel(ctx: click.Context, task_id: str, reason: str) -> None:
    """Cancel a queued task."""
    try:
        task = _services(ctx).queue.cancel(task_id, reason)
    except KeyError:
        console.print(f"[red]Task {task_id} not found[/red]")
        ctx.exit(1)
    except TaskStateError as exc:
        console.print(f"[red]{exc.message}[/red]")
        ctx.exit(1)
    console.print(f"[green]Cancelled {task.id}[/green] ({task.last_error})")


@main.command()
@click.option("--agent", "agent_id", default=None)
@click.option("--status", type=click.Choice(["SUCCESS", "FAILED", "DENIED"]), default=None)
@click.option("--tool", "tool_name", default=None)
@click.option("--limit", default=20, help="Number of entries to show")
@click.pass_context
def audit(
    ctx: click.Context,
    agent_id: str | None,
    status: str | None,
    tool_name: str | None,
    limit: int,
) -> None:
    """Show the audit trail."""
    entries = _services(ctx).audit.query(
        agent_id=agent_id, status=status, tool_name=tool_name, limit=limit
    )
    if not entries:
        console.print("[dim]No audit entries yet.[/dim]")
        return

    table = Table(title="Audit Log")
    table.add_column("#", style="dim")
    table.add_column("Time")
    table.add_column("Agent", style="cyan")
    table.add_column("Tool")
    table.add_column("Status")
    table.add_column("Key")
    table.add_column("Detail", max_width=50)
    for entry in entries:
        status_text = _colored(entry.status)
        if entry.cached:
            status_text += " [dim](cached)[/dim]"
        table.add_row(
            str(entry.id),
            entry.timestamp[:19],
            entry.agent_id,
            entry.tool_name,
            status_text,
            entry.idempotency_key or "",
            (entry.result_summary or "")[:50],
        )
    console.print(table)


# --- Leads and maintenance ---


@main.command()
@click.argument("text")
@click.option("--route", "do_route", is_flag=True, help="Also enqueue the routed task")
@click.option("--sender", default=None, help="Sender display name")
@click.pass_context
def classify(ctx: click.Context, text: str, do_route: bool, sender: str | None) -> None:
    """Classify a message and show the extracted fields."""
    from islandloaf.leads.classifier import classify as classify_text
    from islandloaf.leads.classifier import extract

    lead_type = classify_text(text)
    lead = extract(text, {"display_name": sender} if sender else None)
    console.print(f"[bold]Lead type:[/bold] {lead_type.value}")
    for name, value in lead.to_dict().items():
        if name != "raw_message":
            console.print(f"  {name}: {value}")

    router = _services(ctx).leads
    route, _ = router.plan(lead_type, lead)
    console.print(f"[bold]Route:[/bold] {route.role.value} -> {route.tool_name}")

    if do_route:
        for task in router.route(lead_type, lead):
            console.print(f"[green]Queued {task.id}[/green]")


@main.command()
@click.option("--days", default=30, show_default=True, help="Purge finished tasks older than this")
@click.pass_context
def gc(ctx: click.Context, days: int) -> None:
    """Purge expired idempotency records and old finished tasks."""
    services = _services(ctx)
    records = services.ledger.purge_expired()
    finished = services.queue.purge_finished(older_than_days=days)
    console.print(f"Purged {records} idempotency record(s) and {finished} finished task(s).")


@main.command()
@click.option("--port", default=3848, help="Port to listen on")
@click.option("--host", default="127.0.0.1", help="Host to bind to")
@click.option("--runner/--no-runner", default=True, help="Run due tasks in the background")
@click.pass_context
def serve(ctx: click.Context, port: int, host: str, runner: bool) -> None:
    """Start the HTTP API."""
    import uvicorn

    from islandloaf.api.server import create_app

    uvicorn.run(create_app(_services(ctx), run_background=runner), host=host, port=port)


def _print_result(result: ToolResult) -> None:
    """Print tool result summary."""
    label = "cached" if result.cached else "success"
    console.print(f"[green]{result.tool_name}: {label}[/green]")
    console.print_json(json.dumps(result.data, default=str))
