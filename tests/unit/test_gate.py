import pytest

from nurture.collaborators import ContactSnapshot, SubscriptionStatus
from nurture.contracts import (
    FieldRef,
    FieldScope,
    Operator,
    Predicate,
    TriggerSpec,
    TriggerType,
    WorkflowSettings,
    WorkflowStatus,
)
from nurture.gate import TriggerGate
from nurture.persistence import Execution, ExecutionStatus


def _active(definition, **settings):
    return definition.model_copy(
        update={
            "status": WorkflowStatus.ACTIVE,
            "settings": WorkflowSettings(**settings),
        }
    )


async def _execution(store, workflow, contact_id, status):
    await store.create(
        Execution(
            workflow_id=workflow.id,
            workflow_version=workflow.version,
            contact_id=contact_id,
            status=status,
            current_step_id="welcome",
        )
    )


@pytest.mark.asyncio
async def test_admits_subscribed_contact(store, welcome_definition):
    decision = await TriggerGate(store).admit(
        _active(welcome_definition), ContactSnapshot(id="c1"), {}
    )
    assert decision.admitted
    assert decision.reason is None


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "status", [WorkflowStatus.DRAFT, WorkflowStatus.PAUSED, WorkflowStatus.ARCHIVED]
)
async def test_rejects_inactive_workflow(store, welcome_definition, status):
    workflow = welcome_definition.model_copy(update={"status": status})
    decision = await TriggerGate(store).admit(workflow, ContactSnapshot(id="c1"))
    assert not decision.admitted
    assert decision.reason == f"workflow_not_active:{status.value}"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "previous", [ExecutionStatus.COMPLETED, ExecutionStatus.RUNNING, ExecutionStatus.PAUSED]
)
async def test_rejects_when_max_executions_reached(store, welcome_definition, previous):
    workflow = _active(welcome_definition)
    await _execution(store, workflow, "c1", previous)
    decision = await TriggerGate(store).admit(workflow, ContactSnapshot(id="c1"))
    assert decision.reason == "max_executions_reached"


@pytest.mark.asyncio
async def test_failed_and_exited_runs_do_not_count(store, welcome_definition):
    workflow = _active(welcome_definition)
    await _execution(store, workflow, "c1", ExecutionStatus.FAILED)
    await _execution(store, workflow, "c1", ExecutionStatus.EXITED)
    decision = await TriggerGate(store).admit(workflow, ContactSnapshot(id="c1"))
    assert decision.admitted


@pytest.mark.asyncio
async def test_rejects_unsubscribed_contact(store, welcome_definition):
    contact = ContactSnapshot(id="c1", subscription_status=SubscriptionStatus.UNSUBSCRIBED)
    gate = TriggerGate(store)

    decision = await gate.admit(_active(welcome_definition), contact)
    assert decision.reason == "contact_not_subscribed:unsubscribed"

    ignoring = _active(welcome_definition, respect_unsubscribes=False)
    assert (await gate.admit(ignoring, contact)).admitted


@pytest.mark.asyncio
async def test_rejects_second_running_execution(store, welcome_definition):
    workflow = _active(welcome_definition, max_executions_per_contact=0)
    await _execution(store, workflow, "c1", ExecutionStatus.RUNNING)
    gate = TriggerGate(store)

    assert (await gate.admit(workflow, ContactSnapshot(id="c1"))).reason == "already_running"
    assert (await gate.admit(workflow, ContactSnapshot(id="c2"))).admitted

    concurrent = _active(
        welcome_definition, max_executions_per_contact=0, allow_concurrent_runs=True
    )
    assert (await gate.admit(concurrent, ContactSnapshot(id="c1"))).admitted


@pytest.mark.asyncio
async def test_trigger_conditions_evaluated_against_payload(store, welcome_definition):
    workflow = _active(welcome_definition).model_copy(
        update={
            "trigger": TriggerSpec(
                type=TriggerType.PURCHASE,
                conditions=[
                    Predicate(
                        field=FieldRef(scope=FieldScope.TRIGGER, name="order_total"),
                        operator=Operator.GREATER_THAN,
                        value=50,
                    )
                ],
            )
        }
    )
    gate = TriggerGate(store)
    contact = ContactSnapshot(id="c1")

    assert (await gate.admit(workflow, contact, {"order_total": 80})).admitted
    rejected = await gate.admit(workflow, contact, {"order_total": 20})
    assert rejected.reason == "trigger_conditions_not_met"
