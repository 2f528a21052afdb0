"""Command line interface for running and inspecting the coordinator."""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, Optional

import typer

from .bus import MessageBus
from .config import AgentCoordConfig, load_config
from .constants import (
    QUERY_DEAD_LETTERS,
    QUERY_HEALTH_SUMMARY,
    QUERY_START_WORKFLOW,
    QUERY_WORKFLOW_STATUS,
)
from .coordination import history_to_wire
from .errors import CoordinationError
from .health import worker_to_wire
from .persistence import get_health_store, get_state_store
from .registry import WorkflowRegistry, register_default_workflows
from .runtime import CoordinatorRuntime
from .transports import get_transport
from .utils import utcnow

app = typer.Typer(help="CLI for the agent coordination service")

# Command groups
workflow_app = typer.Typer(help="Commands for managing workflows")
worker_app = typer.Typer(help="Commands for inspecting workers")
dlq_app = typer.Typer(help="Commands for the dead-letter queue")

app.add_typer(workflow_app, name="workflow")
app.add_typer(worker_app, name="worker")
app.add_typer(dlq_app, name="dlq")

_options: Dict[str, Any] = {"config": None}


def _config() -> AgentCoordConfig:
    return load_config(_options["config"])


def _echo_json(data: Any) -> None:
    typer.echo(json.dumps(data, indent=2, default=str))


async def _query(key: str, data: Dict[str, Any], timeout: float = 5.0) -> Dict[str, Any]:
    """Send a query to a running coordinator over the configured transport."""
    bus = MessageBus(get_transport(config=_config()), source="agentcoord-cli")
    await bus.connect()
    try:
        return await bus.request(key, data, timeout=timeout)
    finally:
        await bus.close()


def _ask(key: str, data: Dict[str, Any], timeout: float) -> Dict[str, Any]:
    try:
        reply = asyncio.run(_query(key, data, timeout))
    except CoordinationError as e:
        typer.secho(f"No answer from coordinator: {e}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    if not reply.get("success", True):
        error = reply.get("error", {})
        typer.secho(
            f"Error [{error.get('reference')}]: {error.get('message')}", fg=typer.colors.RED
        )
        raise typer.Exit(code=1)
    return reply


@app.callback()
def main(
    config: Optional[Path] = typer.Option(None, help="Path to the YAML configuration file"),
    log_level: str = typer.Option("WARNING", "--log-level", help="Logging level"),
) -> None:
    """agentcoord CLI entry point."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    _options["config"] = str(config) if config else None


@app.command("serve")
def serve(
    lifespan: Optional[float] = typer.Option(
        None, help="Stop after this many seconds (default: run until interrupted)"
    ),
) -> None:
    """
    Run the coordinator: bus, state store, registry, coordination, health and recovery.

    Example:
        agentcoord serve
        agentcoord --config config.yaml serve --lifespan 60
    """

    async def run() -> None:
        runtime = CoordinatorRuntime(_config())
        await runtime.start()
        try:
            if lifespan is None:
                await asyncio.Event().wait()
            else:
                await asyncio.sleep(lifespan)
        finally:
            await runtime.stop()

    typer.echo("Starting coordinator")
    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        typer.echo("Coordinator stopped")


@app.command("health")
def health(
    workers: bool = typer.Option(False, help="Include per-worker records"),
    timeout: float = typer.Option(5.0, help="Seconds to wait for the coordinator"),
) -> None:
    """Show the system health summary reported by a running coordinator."""
    reply = _ask(QUERY_HEALTH_SUMMARY, {"includeWorkers": workers}, timeout)
    reply.pop("success", None)
    _echo_json(reply)


# ----------------------------------------------------------------------
# Workflows


@workflow_app.command("types")
def workflow_types() -> None:
    """List registered workflow types, including those from ``workflowsPath``."""
    config = _config()
    registry = WorkflowRegistry()
    register_default_workflows(registry)
    if config.workflows_path:
        registry.load_workflows_from_yaml(config.workflows_path)
    for item in registry.list_workflows():
        states = registry.get_workflow(item["type"]).states
        typer.echo(f"{item['type']}\t{item['name']}\t{len(states)} states")


@workflow_app.command("list")
def workflow_list(
    status: str = typer.Option("active", help="active, completed, failed or archived"),
    limit: int = typer.Option(100, help="Maximum number of workflows to show"),
) -> None:
    """
    List persisted workflows with the given status.

    Example:
        agentcoord workflow list
        # Output: 18f2a...-9c1d  content-creation  content-review  active
    """

    async def fetch():
        store = get_state_store(config=_config())
        try:
            return await store.find_by_status(status, limit=limit)
        finally:
            await store.close()

    records = asyncio.run(fetch())
    if not records:
        typer.echo("No workflows found")
        return
    for record in records:
        typer.echo(
            f"{record.workflow_id}\t{record.workflow_type}\t{record.state}\t{record.status}"
        )


@workflow_app.command("show")
def workflow_show(workflow_id: str) -> None:
    """Show the persisted state, payload and transition history of a workflow."""

    async def fetch():
        store = get_state_store(config=_config())
        try:
            return await store.get(workflow_id)
        finally:
            await store.close()

    try:
        record = asyncio.run(fetch())
    except CoordinationError:
        typer.echo("Workflow not found")
        raise typer.Exit(code=1)
    typer.echo(f"Workflow {record.workflow_id} ({record.workflow_type}): {record.status}")
    typer.echo(f"State: {record.state}")
    if record.payload:
        typer.echo(f"Payload: {json.dumps(record.payload, default=str)}")
    for entry in history_to_wire(record.history):
        typer.echo(
            f"- {entry['fromState'] or '(start)'} -> {entry['toState']} "
            f"[{entry['label']}] {entry['at']}"
        )


@workflow_app.command("purge")
def workflow_purge(
    days: Optional[int] = typer.Option(
        None, help="Retention in days (default: coordination.terminalRetentionDays)"
    ),
) -> None:
    """Delete completed, failed and archived workflows older than the retention."""
    config = _config()
    retention = days if days is not None else config.coordination.terminal_retention_days

    async def purge() -> int:
        store = get_state_store(config=config)
        try:
            return await store.purge_terminal(utcnow() - timedelta(days=retention))
        finally:
            await store.close()

    typer.echo(f"Purged {asyncio.run(purge())} workflows")


@workflow_app.command("start")
def workflow_start(
    workflow_type: str,
    data: Optional[str] = typer.Option(None, help="JSON payload for the workflow"),
    timeout: float = typer.Option(5.0, help="Seconds to wait for the coordinator"),
) -> None:
    """
    Ask a running coordinator to start a workflow.

    Example:
        agentcoord workflow start content-creation --data '{"topic": "launch"}'
    """
    try:
        payload = json.loads(data) if data else {}
    except json.JSONDecodeError as e:
        typer.secho(f"Invalid JSON payload: {e}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    reply = _ask(QUERY_START_WORKFLOW, {"workflowType": workflow_type, "data": payload}, timeout)
    typer.echo(f"Workflow started: {reply['workflowId']}")
    typer.echo(f"Initial state: {reply['initialState']}")


@workflow_app.command("status")
def workflow_status(
    workflow_id: str,
    timeout: float = typer.Option(5.0, help="Seconds to wait for the coordinator"),
) -> None:
    """Show the live status of a workflow from a running coordinator."""
    reply = _ask(QUERY_WORKFLOW_STATUS, {"workflowId": workflow_id}, timeout)
    if not reply.get("exists", True):
        typer.echo("Workflow not found")
        raise typer.Exit(code=1)
    reply.pop("success", None)
    _echo_json(reply)


# ----------------------------------------------------------------------
# Workers


@worker_app.command("list")
def worker_list() -> None:
    """List workers recorded in the health store."""

    async def fetch():
        store = get_health_store(config=_config())
        try:
            return await store.list_all()
        finally:
            await store.close()

    records = asyncio.run(fetch())
    if not records:
        typer.echo("No workers found")
        return
    for record in records:
        heartbeat = record.last_heartbeat.isoformat() if record.last_heartbeat else "-"
        typer.echo(f"{record.worker_id}\t{record.status.value}\t{heartbeat}")


@worker_app.command("show")
def worker_show(worker_id: str) -> None:
    """Show the full health record of one worker."""

    async def fetch():
        store = get_health_store(config=_config())
        try:
            return await store.get(worker_id)
        finally:
            await store.close()

    record = asyncio.run(fetch())
    if record is None:
        typer.echo("Worker not found")
        raise typer.Exit(code=1)
    _echo_json(worker_to_wire(record))


# ----------------------------------------------------------------------
# Dead letters


@dlq_app.command("list")
def dlq_list(
    worker: Optional[str] = typer.Option(None, help="Only entries for this worker"),
    kind: Optional[str] = typer.Option(None, help="task or worker"),
    timeout: float = typer.Option(5.0, help="Seconds to wait for the coordinator"),
) -> None:
    """List dead-letter entries held by a running coordinator."""
    reply = _ask(QUERY_DEAD_LETTERS, {"workerId": worker, "kind": kind}, timeout)
    entries = reply.get("entries", [])
    if not entries:
        typer.echo("Dead-letter queue is empty")
        return
    for entry in entries:
        typer.echo(
            f"{entry['key']}\t{entry['kind']}\t{entry['workerId']}\t"
            f"{entry['category']}\t{entry['error']}"
        )


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
