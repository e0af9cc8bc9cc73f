import sqlite3
from datetime import timedelta

import pytest

from nurture.collaborators import (
    ContactSnapshot,
    DeliveryEvent,
    DeliveryEventType,
    SubscriptionStatus,
)
from nurture.contracts import (
    ActionConfig,
    ActionType,
    MessageConfig,
    Step,
    StepConnection,
    WaitConfig,
    WaitUnit,
)
from nurture.engine import AutomationEngine, StepResult
from nurture.errors import ClaimLost
from nurture.persistence import (
    ExecutionStatus,
    InMemoryExecutionStore,
    LogOutcome,
    SQLiteExecutionStore,
)
from nurture.scheduler import Scheduler


def _two_hour_wait(definition):
    return definition.model_copy(
        update={
            "steps": [
                Step(
                    id="welcome",
                    config=MessageConfig(template_id="welcome"),
                    connections=[StepConnection(target_step_id="wait")],
                ),
                Step(
                    id="wait",
                    config=WaitConfig(amount=2, unit=WaitUnit.HOURS),
                    connections=[StepConnection(target_step_id="tag")],
                ),
                Step(id="tag", config=ActionConfig(action=ActionType.ADD_TAG, tag="waited")),
            ]
        }
    )


async def _start(engine, definition, *contact_ids):
    await engine.create_workflow(definition)
    await engine.activate_workflow(definition.id)
    return [(await engine.trigger(definition.id, c)).execution for c in contact_ids]


@pytest.mark.asyncio
async def test_tick_runs_synchronous_steps_in_same_pass(engine, welcome_definition, delivery):
    (execution,) = await _start(engine, welcome_definition, "c1")

    report = await Scheduler(engine).tick()

    stored = await engine.get_execution(execution.id)
    assert report.claimed == 1
    assert report.results == {"advanced": 1, "parked": 1}
    assert stored.current_step_id == "wait"
    assert stored.wake_at is not None
    assert stored.claimed_by is None
    assert len(delivery.sent) == 1


@pytest.mark.asyncio
async def test_parked_execution_waits_until_due(engine, welcome_definition, clock):
    (execution,) = await _start(engine, _two_hour_wait(welcome_definition), "c1")
    scheduler = Scheduler(engine)
    await scheduler.tick()
    parked_at = clock()

    clock.now = parked_at + timedelta(hours=1, minutes=59, seconds=59)
    early = await scheduler.tick()
    assert early.loaded == 0
    assert (await engine.get_execution(execution.id)).current_step_id == "wait"

    clock.now = parked_at + timedelta(hours=2)
    due = await scheduler.tick()
    stored = await engine.get_execution(execution.id)
    assert due.results == {"woken": 1, "completed": 1}
    assert stored.status is ExecutionStatus.COMPLETED
    assert [e.step_id for e in stored.log] == ["welcome", "wait", "tag"]


@pytest.mark.asyncio
async def test_tick_drains_at_most_batch_size(engine, welcome_definition, contacts, config):
    ids = [f"bulk{i}" for i in range(15)]
    for contact_id in ids:
        contacts.add(ContactSnapshot(id=contact_id, email=f"{contact_id}@example.com"))
    await _start(engine, welcome_definition, *ids)
    scheduler = Scheduler(engine)

    first = await scheduler.tick()
    second = await scheduler.tick()

    assert config.scheduler.batch_size == 10
    assert first.loaded == 10
    assert second.loaded == 5
    parked = await engine.list_executions(workflow_id=welcome_definition.id)
    assert all(e.current_step_id == "wait" for e in parked)


@pytest.mark.asyncio
async def test_claimed_execution_is_skipped_until_lease_expires(engine, welcome_definition, clock):
    (execution,) = await _start(engine, welcome_definition, "c1")
    await engine.store.claim(execution.id, "crashed-worker", clock(), clock() + timedelta(seconds=60))
    scheduler = Scheduler(engine)

    assert (await scheduler.tick()).loaded == 0

    clock.advance(seconds=60)
    report = await scheduler.tick()
    assert report.claimed == 1
    assert (await engine.get_execution(execution.id)).current_step_id == "wait"


@pytest.mark.asyncio
async def test_restart_resumes_from_durable_store(
    tmp_path, welcome_definition, renderer, delivery, contacts, webhooks, config, clock
):
    def build(store):
        return AutomationEngine(
            store,
            renderer=renderer,
            delivery=delivery,
            contacts=contacts,
            webhooks=webhooks,
            config=config,
            clock=clock,
        )

    path = tmp_path / "nurture.db"
    store = SQLiteExecutionStore(path)
    (execution,) = await _start(build(store), welcome_definition, "c1")
    await Scheduler(build(store)).tick()
    store.close()

    # new process: nothing survives but the database file
    clock.advance(days=1)
    restarted = SQLiteExecutionStore(path)
    engine = build(restarted)
    report = await Scheduler(engine).tick()

    stored = await engine.get_execution(execution.id)
    assert report.loaded == 1
    assert stored.status is ExecutionStatus.COMPLETED
    assert [e.step_id for e in stored.log] == ["welcome", "wait", "check", "tag_cold"]
    assert len(delivery.sent) == 1
    restarted.close()


@pytest.mark.asyncio
async def test_run_stops_after_lifespan(engine, welcome_definition, config):
    (execution,) = await _start(engine, welcome_definition, "c1")
    config.scheduler.tick_interval = 0.01

    await Scheduler(engine).run(lifespan=0.05)

    assert (await engine.get_execution(execution.id)).current_step_id == "wait"


class _FlakyStore(InMemoryExecutionStore):
    """Raises a database error whenever ``broken`` executions are advanced."""

    def __init__(self) -> None:
        super().__init__()
        self.broken: set[str] = set()
        self.fail_loads = 0

    async def advance(self, execution_id, *args, **kwargs):
        if execution_id in self.broken:
            raise sqlite3.OperationalError("database is locked")
        return await super().advance(execution_id, *args, **kwargs)

    async def load_due(self, now, limit=None):
        if self.fail_loads:
            self.fail_loads -= 1
            raise sqlite3.OperationalError("unable to open database file")
        return await super().load_due(now, limit)


@pytest.fixture
def flaky_engine(renderer, delivery, contacts, webhooks, config, clock):
    return AutomationEngine(
        _FlakyStore(),
        renderer=renderer,
        delivery=delivery,
        contacts=contacts,
        webhooks=webhooks,
        config=config,
        clock=clock,
    )


@pytest.mark.asyncio
async def test_store_error_on_one_execution_does_not_stop_the_tick(flaky_engine, welcome_definition):
    broken, healthy = await _start(flaky_engine, welcome_definition, "c1", "c2")
    flaky_engine.store.broken.add(broken.id)

    report = await Scheduler(flaky_engine).tick()

    assert report.errors == 1
    assert (await flaky_engine.get_execution(healthy.id)).current_step_id == "wait"
    stuck = await flaky_engine.get_execution(broken.id)
    assert stuck.current_step_id == "welcome"
    assert stuck.claimed_by is None


@pytest.mark.asyncio
async def test_run_survives_failing_ticks(flaky_engine, welcome_definition, config):
    (execution,) = await _start(flaky_engine, welcome_definition, "c1")
    flaky_engine.store.fail_loads = 2
    config.scheduler.tick_interval = 0.01

    await Scheduler(flaky_engine).run(lifespan=0.1)

    assert flaky_engine.store.fail_loads == 0
    assert (await flaky_engine.get_execution(execution.id)).current_step_id == "wait"


@pytest.mark.asyncio
async def test_writes_after_losing_the_claim_are_rejected(engine, welcome_definition, clock, delivery):
    (execution,) = await _start(engine, welcome_definition, "c1")
    claimed = await engine.store.claim(execution.id, "w1", clock(), clock() + timedelta(seconds=60))

    # w1 stalls past its lease and w2 takes the execution over
    clock.advance(seconds=61)
    assert await engine.store.claim(execution.id, "w2", clock(), clock() + timedelta(seconds=60))

    with pytest.raises(ClaimLost):
        await engine.run_step(claimed, worker_id="w1")

    stored = await engine.get_execution(execution.id)
    assert stored.current_step_id == "welcome"
    assert stored.log == []
    assert stored.claimed_by == "w2"

    # the new holder finishes the step without a second send
    assert await engine.run_step(stored, worker_id="w2") is StepResult.ADVANCED
    assert len(delivery.sent) == 1


async def _opened_welcome(engine, definition):
    (execution,) = await _start(engine, definition, "c1")
    await Scheduler(engine).tick()
    sent = await engine.get_execution(execution.id)
    await engine.handle_delivery_event(
        DeliveryEvent(
            delivery_id=sent.log[0].data["delivery_id"],
            event=DeliveryEventType.OPENED,
            execution_id=execution.id,
            workflow_id=definition.id,
            step_id="welcome",
        )
    )
    return sent


@pytest.mark.asyncio
async def test_contact_unsubscribed_in_store_gets_no_followup(
    engine, welcome_definition, clock, contacts, delivery
):
    execution = await _opened_welcome(engine, welcome_definition)
    contacts.add(
        ContactSnapshot(
            id="c1",
            email="ada@example.com",
            first_name="Ada",
            subscription_status=SubscriptionStatus.UNSUBSCRIBED,
        )
    )

    clock.advance(days=1)
    await Scheduler(engine).tick()

    stored = await engine.get_execution(execution.id)
    assert stored.status is ExecutionStatus.COMPLETED
    assert [e.step_id for e in stored.log] == ["welcome", "wait", "check", "upsell"]
    assert stored.log[-1].outcome is LogOutcome.SKIPPED
    assert stored.log[-1].data["skip_reason"] == "contact_not_subscribed"
    assert delivery.by_recipient["c1"] == [f"{execution.id}:welcome"]


@pytest.mark.asyncio
async def test_unsubscribe_callback_suppresses_followup(
    engine, welcome_definition, clock, delivery
):
    execution = await _opened_welcome(engine, welcome_definition)
    # the provider reports the unsubscribe before the contact store is updated
    await engine.handle_delivery_event(
        DeliveryEvent(
            delivery_id=execution.log[0].data["delivery_id"],
            event=DeliveryEventType.UNSUBSCRIBED,
            execution_id=execution.id,
            workflow_id=welcome_definition.id,
            step_id="welcome",
        )
    )

    clock.advance(days=1)
    await Scheduler(engine).tick()

    stored = await engine.get_execution(execution.id)
    assert stored.context["contact"]["subscription_status"] == "unsubscribed"
    assert stored.log[-1].step_id == "upsell"
    assert stored.log[-1].data["skip_reason"] == "contact_not_subscribed"
    assert delivery.by_recipient["c1"] == [f"{execution.id}:welcome"]
