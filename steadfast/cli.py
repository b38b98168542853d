"""Command line interface for inspecting and running steadfast executions."""

from __future__ import annotations

import asyncio
import importlib
import json
from typing import Optional

import typer

from steadfast.contracts import ExecutionStatus, HistoryEvent
from steadfast.engine import WorkflowEngine
from steadfast.persistence import get_repository
from steadfast.progress import get_broker

app = typer.Typer(help="CLI for steadfast executions")

# Command groups
execution_app = typer.Typer(help="Commands for inspecting executions")
progress_app = typer.Typer(help="Commands for reading progress streams")
worker_app = typer.Typer(help="Commands for running workers")

app.add_typer(execution_app, name="execution")
app.add_typer(progress_app, name="progress")
app.add_typer(worker_app, name="worker")


@app.callback()
def main() -> None:
    """steadfast CLI entry point."""
    pass


def _format_event(event: HistoryEvent) -> str:
    parts = [f"{event.seq:>4}", event.event_type.value]
    if event.command_id is not None:
        parts.append(f"#{event.command_id}")
    if event.activity:
        parts.append(event.activity)
    if event.idempotency_key:
        parts.append(f"key={event.idempotency_key}")
    if event.error:
        parts.append(f"error={event.error}")
    elif event.payload is not None:
        parts.append(json.dumps(event.payload, default=str))
    return "  ".join(parts)


@execution_app.command("list")
def execution_list(
    status: Optional[ExecutionStatus] = typer.Option(None, help="Only show this status"),
) -> None:
    """
    List executions with their current status.

    Example:
        steadfast execution list
        steadfast execution list --status running
        # Output: 9b2f...-41c2    running    cartoon_pipeline
    """
    repo = get_repository()
    executions = asyncio.run(repo.list_executions(status))
    if not executions:
        typer.echo("No executions found")
        return
    for record in executions:
        typer.echo(f"{record.execution_id}\t{record.status.value}\t{record.workflow_name}")


@execution_app.command("show")
def execution_show(execution_id: str) -> None:
    """
    Show an execution's status and its ordered history.

    Each history line shows the sequence number, event type, command id,
    activity name, idempotency key and the recorded payload or error.
    """
    repo = get_repository()
    record = asyncio.run(repo.get_execution(execution_id))
    if record is None:
        typer.echo("Execution not found")
        raise typer.Exit(code=1)
    typer.echo(f"Execution {record.execution_id}: {record.status.value}")
    typer.echo(f"Workflow: {record.workflow_name}")
    if record.error:
        typer.echo(f"Error: {record.error_type}: {record.error}")
    for event in record.history:
        typer.echo(_format_event(event))


@progress_app.command("show")
def progress_show(execution_id: str) -> None:
    """Print the progress events published so far for an execution."""
    broker = get_broker()
    events = asyncio.run(broker.history(execution_id))
    if not events:
        typer.echo("No progress recorded")
        return
    for event in events:
        typer.echo(f"{event.timestamp.isoformat()}\t{event.step_label}")


@worker_app.command("run")
def worker_run(
    target: str = typer.Argument(..., help="module:attribute naming a list of workflows"),
    lifespan: Optional[float] = typer.Option(None, help="Seconds to run before exiting"),
) -> None:
    """
    Register workflows and resume every running execution from history.

    Example:
        steadfast worker run guides.cartoon_pipeline:WORKFLOWS --lifespan 600
    """
    module_name, _, attr = target.partition(":")
    if not attr:
        typer.secho("Target must look like module:attribute", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    workflows = getattr(importlib.import_module(module_name), attr)
    asyncio.run(_run_worker(workflows, lifespan))


async def _run_worker(workflows, lifespan: Optional[float]) -> None:
    engine = WorkflowEngine()
    for workflow in workflows:
        engine.register(workflow)
    resumed = await engine.recover()
    typer.echo(f"Resumed {len(resumed)} execution(s)")
    try:
        if lifespan is not None:
            await asyncio.sleep(lifespan)
        else:
            await asyncio.gather(*(engine.result(eid) for eid in resumed), return_exceptions=True)
    finally:
        await engine.shutdown()


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
