import asyncio
from datetime import datetime, timezone

import pytest
from typer.testing import CliRunner

from nurture.cli import app
from nurture.contracts import WorkflowStatus
from nurture.persistence import Execution, ExecutionLogEntry, LogOutcome, SQLiteExecutionStore


@pytest.fixture
def db(tmp_path, monkeypatch):
    path = tmp_path / "cli.db"
    monkeypatch.setenv("NURTURE_DATABASE_URL", f"sqlite://{path}")
    monkeypatch.setenv("NURTURE_CONFIG", str(tmp_path / "absent.yaml"))
    store = SQLiteExecutionStore(path)
    yield store
    store.close()


def _seed(store, definition) -> Execution:
    execution = Execution(
        workflow_id=definition.id,
        workflow_version=1,
        contact_id="c1",
        current_step_id="wait",
        context={"contact": {"id": "c1"}},
    )
    entry = ExecutionLogEntry(
        timestamp=datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc),
        step_id="welcome",
        action="step_message",
        outcome=LogOutcome.SUCCESS,
        detail="Message welcome sent via email",
        idempotency_key="welcome",
    )

    async def seed():
        await store.save_workflow(definition)
        await store.set_workflow_status(definition.id, WorkflowStatus.ACTIVE)
        await store.create(execution.model_copy(update={"log": [entry]}))

    asyncio.run(seed())
    return execution


def test_workflow_list_and_show(db, welcome_definition):
    _seed(db, welcome_definition)
    runner = CliRunner()

    listed = runner.invoke(app, ["workflow", "list"])
    assert listed.exit_code == 0, listed.stdout
    assert welcome_definition.id in listed.stdout
    assert "active" in listed.stdout

    shown = runner.invoke(app, ["workflow", "show", welcome_definition.id])
    assert shown.exit_code == 0, shown.stdout
    assert "check [condition]: true -> upsell, false -> tag_cold" in shown.stdout

    missing = runner.invoke(app, ["workflow", "show", "wf_missing"])
    assert missing.exit_code == 1
    assert "Workflow not found" in missing.stdout


def test_execution_list_and_show(db, welcome_definition):
    execution = _seed(db, welcome_definition)
    runner = CliRunner()

    listed = runner.invoke(app, ["execution", "list", "--workflow", welcome_definition.id])
    assert listed.exit_code == 0, listed.stdout
    assert execution.id in listed.stdout
    assert "running" in listed.stdout

    filtered = runner.invoke(app, ["execution", "list", "--status", "failed"])
    assert "No executions found" in filtered.stdout

    shown = runner.invoke(app, ["execution", "show", execution.id])
    assert shown.exit_code == 0, shown.stdout
    assert f"Execution {execution.id}: running" in shown.stdout
    assert "welcome step_message: success (Message welcome sent via email)" in shown.stdout

    missing = runner.invoke(app, ["execution", "show", "exec_missing"])
    assert missing.exit_code == 1
    assert "Execution not found" in missing.stdout


def test_execution_exit(db, welcome_definition):
    execution = _seed(db, welcome_definition)
    runner = CliRunner()

    result = runner.invoke(app, ["execution", "exit", execution.id, "--reason", "bounced twice"])
    assert result.exit_code == 0, result.stdout
    assert "Execution exited" in result.stdout

    shown = runner.invoke(app, ["execution", "show", execution.id])
    assert "exited" in shown.stdout
    assert "bounced twice" in shown.stdout

    missing = runner.invoke(app, ["execution", "exit", "exec_missing"])
    assert missing.exit_code == 1


def test_workflow_stats_rebuilt_from_store(db, welcome_definition):
    execution = _seed(db, welcome_definition)
    sent = ExecutionLogEntry(
        timestamp=datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc),
        step_id="upsell",
        action="step_message",
        outcome=LogOutcome.SUCCESS,
        data={"delivery_id": "dlv_1"},
        idempotency_key="upsell",
    )

    async def finish():
        await db.advance(execution.id, "upsell", sent, context={"opened_upsell": True})
        await db.complete(execution.id, at=datetime(2024, 3, 1, 10, 0, tzinfo=timezone.utc))

    asyncio.run(finish())
    runner = CliRunner()

    result = runner.invoke(app, ["workflow", "stats", welcome_definition.id])
    assert result.exit_code == 0, result.stdout
    assert "Entered 1, completed 1 (100.0%), exited 0, failed 0" in result.stdout
    assert "- upsell: entered 1, skipped 0, failed 0, sent 1, opened 1, clicked 0" in result.stdout

    missing = runner.invoke(app, ["workflow", "stats", "wf_missing"])
    assert missing.exit_code == 1
    assert "No executions found" in missing.stdout
