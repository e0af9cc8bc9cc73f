"""Command line interface for running nurture workers and inspecting state."""

from __future__ import annotations

import asyncio
import importlib
import logging
from typing import Any, Dict, Optional

import typer

from .analytics import AnalyticsAggregator
from .collaborators import (
    HttpWebhookCaller,
    InMemoryContactStore,
    InMemoryDeliveryProvider,
    StaticTemplateRenderer,
)
from .config import NurtureConfig, load_config
from .engine import AutomationEngine
from .errors import ExecutionNotFound
from .persistence import ExecutionStatus, get_store
from .scheduler import Scheduler

logger = logging.getLogger(__name__)

app = typer.Typer(help="CLI for nurture automation workflows")

# Command groups
worker_app = typer.Typer(help="Commands for running scheduler workers")
workflow_app = typer.Typer(help="Commands for inspecting workflows")
execution_app = typer.Typer(help="Commands for inspecting and remediating executions")

app.add_typer(worker_app, name="worker")
app.add_typer(workflow_app, name="workflow")
app.add_typer(execution_app, name="execution")


def _configure(config: Optional[str] = None) -> NurtureConfig:
    settings = load_config(config)
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    return settings


def _load_collaborators(target: Optional[str]) -> Dict[str, Any]:
    """Resolve ``module:factory`` into renderer/delivery/contacts/webhooks.

    Without a target the worker runs against in-process doubles, which is
    only useful for local trials.
    """
    if not target:
        logger.warning("No collaborators configured, using in-process doubles")
        return {
            "renderer": StaticTemplateRenderer(),
            "delivery": InMemoryDeliveryProvider(),
            "contacts": InMemoryContactStore(),
            "webhooks": HttpWebhookCaller(),
        }
    module_name, _, attr = target.partition(":")
    if not attr:
        raise typer.BadParameter("Expected 'module:factory'", param_hint="--collaborators")
    factory = getattr(importlib.import_module(module_name), attr)
    return dict(factory())


@app.callback()
def main() -> None:
    """nurture CLI entry point."""
    pass


@worker_app.command("run")
def worker_run(
    lifespan: Optional[float] = None,
    collaborators: Optional[str] = typer.Option(
        None, help="Factory 'module:function' returning the engine collaborators"
    ),
    config: Optional[str] = typer.Option(None, help="Path to a YAML config file"),
) -> None:
    """
    Run a scheduler worker against the configured execution store.

    Ticks every ``scheduler.tick_interval`` seconds, advancing due executions.
    Several workers may share one store; claims keep them off each other's
    executions.

    Example:
        nurture worker run --collaborators myapp.nurture:collaborators
        nurture worker run --lifespan 300
    """
    settings = _configure(config)
    engine = AutomationEngine(
        get_store(config=settings), config=settings, **_load_collaborators(collaborators)
    )
    scheduler = Scheduler(engine)
    typer.echo(f"Starting worker: {scheduler.worker_id}")
    asyncio.run(scheduler.run(lifespan=lifespan))


@workflow_app.command("list")
def workflow_list(owner: Optional[str] = None) -> None:
    """
    List workflows with their latest version and status.

    Example:
        nurture workflow list --owner acme
        # Output: wf_1f2e...    v2    active    Welcome sequence
    """
    store = get_store(config=_configure())
    workflows = asyncio.run(store.list_workflows(owner))
    if not workflows:
        typer.echo("No workflows found")
        return
    for wf in workflows:
        typer.echo(f"{wf.id}\tv{wf.version}\t{wf.status.value}\t{wf.name}")


@workflow_app.command("show")
def workflow_show(workflow_id: str, version: Optional[int] = None) -> None:
    """Show a workflow version and its step graph."""
    store = get_store(config=_configure())
    wf = asyncio.run(store.get_workflow(workflow_id, version))
    if wf is None:
        typer.echo("Workflow not found")
        raise typer.Exit(code=1)
    typer.echo(f"Workflow {wf.id} v{wf.version}: {wf.status.value} ({wf.name})")
    typer.echo(f"Trigger: {wf.trigger.type.value}")
    for step in wf.steps:
        edges = ", ".join(
            f"{c.label or 'next'} -> {c.target_step_id}" for c in step.connections
        )
        typer.echo(f"- {step.id} [{step.kind.value}]" + (f": {edges}" if edges else ""))


@workflow_app.command("stats")
def workflow_stats(workflow_id: str) -> None:
    """
    Show entry, completion and per-step counters rebuilt from stored executions.

    Example:
        nurture workflow stats wf_1f2e
        # Output: Entered 120, completed 80 (66.7%), exited 30, failed 10
    """
    store = get_store(config=_configure())
    analytics = AnalyticsAggregator()
    if not asyncio.run(analytics.load(store, workflow_id)):
        typer.echo("No executions found")
        raise typer.Exit(code=1)
    report = analytics.report(workflow_id)
    typer.echo(
        f"Entered {report.total_entered}, completed {report.total_completed} "
        f"({report.completion_rate:.1%}), exited {report.total_exited}, "
        f"failed {report.total_failed}"
    )
    for step in report.steps:
        line = f"- {step.step_id}: entered {step.entered}, skipped {step.skipped}, failed {step.failed}"
        if step.messages_sent:
            line += f", sent {step.messages_sent}, opened {step.opened}, clicked {step.clicked}"
        typer.echo(line)


@execution_app.command("list")
def execution_list(
    workflow: Optional[str] = None,
    contact: Optional[str] = None,
    status: Optional[ExecutionStatus] = None,
) -> None:
    """
    List executions, optionally filtered by workflow, contact or status.

    Example:
        nurture execution list --workflow wf_1f2e --status failed
    """
    store = get_store(config=_configure())
    executions = asyncio.run(store.list_executions(workflow, contact, status))
    if not executions:
        typer.echo("No executions found")
        return
    for e in executions:
        typer.echo(
            f"{e.id}\t{e.workflow_id}\t{e.contact_id}\t{e.status.value}\t{e.current_step_id or '-'}"
        )


@execution_app.command("show")
def execution_show(execution_id: str) -> None:
    """
    Show status and the full log of an execution.

    The log explains every transition, including the reason a contact stopped
    advancing, and is the starting point for manual remediation.
    """
    store = get_store(config=_configure())
    e = asyncio.run(store.get(execution_id))
    if e is None:
        typer.echo("Execution not found")
        raise typer.Exit(code=1)
    typer.echo(f"Execution {e.id}: {e.status.value}")
    typer.echo(f"Workflow: {e.workflow_id} v{e.workflow_version}  Contact: {e.contact_id}")
    typer.echo(f"Current step: {e.current_step_id or '-'}")
    if e.wake_at:
        typer.echo(f"Wakes at: {e.wake_at.isoformat()}")
    for entry in e.log:
        typer.echo(
            f"- {entry.timestamp.isoformat()} {entry.step_id} {entry.action}: "
            f"{entry.outcome.value}" + (f" ({entry.detail})" if entry.detail else "")
        )


@execution_app.command("exit")
def execution_exit(execution_id: str, reason: str = "manual_exit") -> None:
    """Stop an active execution, recording ``reason`` in its log."""
    settings = _configure()
    engine = AutomationEngine(
        get_store(config=settings), config=settings, **_load_collaborators(None)
    )
    try:
        exited = asyncio.run(engine.exit_execution(execution_id, reason))
    except ExecutionNotFound:
        typer.echo("Execution not found")
        raise typer.Exit(code=1)
    typer.echo("Execution exited" if exited else "Execution already finished")


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
