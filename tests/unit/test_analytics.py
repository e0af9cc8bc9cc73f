from datetime import datetime, timedelta, timezone

import pytest

from nurture.analytics import AnalyticsAggregator
from nurture.collaborators import DeliveryEvent, DeliveryEventType
from nurture.persistence import Execution, ExecutionLogEntry, ExecutionStatus, LogOutcome
from nurture.scheduler import Scheduler

START = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)


def _execution(contact_id: str) -> Execution:
    return Execution(workflow_id="wf_1", workflow_version=1, contact_id=contact_id, started_at=START)


def _entry(step_id, outcome=LogOutcome.SUCCESS, **data):
    return ExecutionLogEntry(
        step_id=step_id, action="step", outcome=outcome, data=data or None, idempotency_key=step_id
    )


def _event(delivery_id: str, event: DeliveryEventType) -> DeliveryEvent:
    return DeliveryEvent(
        delivery_id=delivery_id,
        event=event,
        execution_id="exec_1",
        workflow_id="wf_1",
        step_id="welcome",
    )


def test_workflow_counters_and_completion_rate():
    analytics = AnalyticsAggregator()
    first, second = _execution("c1"), _execution("c2")
    for execution in (first, second, first):
        analytics.record_entered(execution)

    analytics.record_finished("wf_1", first.id, ExecutionStatus.COMPLETED, START, START + timedelta(minutes=30))
    analytics.record_finished("wf_1", first.id, ExecutionStatus.COMPLETED, START, START + timedelta(hours=5))
    analytics.record_finished("wf_1", second.id, ExecutionStatus.EXITED, START, START)

    report = analytics.report("wf_1")
    assert report.total_entered == 2
    assert report.total_completed == 1
    assert report.total_exited == 1
    assert report.completion_rate == 0.5
    assert report.average_minutes_to_complete == 30.0


def test_step_counters_are_idempotent_per_log_entry():
    analytics = AnalyticsAggregator()
    sent = _entry("welcome", delivery_id="dlv_1")
    analytics.record_transition("wf_1", "exec_1", sent)
    analytics.record_transition("wf_1", "exec_1", sent)
    analytics.record_transition("wf_1", "exec_2", _entry("welcome", LogOutcome.SKIPPED))
    analytics.record_transition("wf_1", "exec_3", _entry("welcome", LogOutcome.FAILURE))

    (step,) = analytics.report("wf_1").steps
    assert step.entered == 3
    assert step.completed == 2
    assert step.skipped == 1
    assert step.failed == 1
    assert step.messages_sent == 1


def test_delivery_events_tolerate_duplicates_and_reordering():
    analytics = AnalyticsAggregator()
    analytics.record_transition("wf_1", "exec_1", _entry("welcome", delivery_id="dlv_1"))

    assert analytics.record_delivery_event(_event("dlv_1", DeliveryEventType.CLICKED))
    assert analytics.record_delivery_event(_event("dlv_1", DeliveryEventType.OPENED))
    assert not analytics.record_delivery_event(_event("dlv_1", DeliveryEventType.OPENED))
    assert analytics.record_delivery_event(_event("dlv_2", DeliveryEventType.OPENED))

    (step,) = analytics.report("wf_1").steps
    assert step.opened == 2
    assert step.clicked == 1
    assert step.open_rate == 2.0


def test_report_for_unknown_workflow_is_empty():
    report = AnalyticsAggregator().report("wf_unknown")
    assert report.total_entered == 0
    assert report.completion_rate == 0.0
    assert report.steps == []


def test_remembered_keys_are_bounded():
    analytics = AnalyticsAggregator(max_tracked=2)
    analytics.record_transition("wf_1", "exec_1", _entry("welcome"))
    analytics.record_transition("wf_1", "exec_2", _entry("welcome"))
    # a repeat refreshes exec_1, so exec_2 is the one forgotten
    analytics.record_transition("wf_1", "exec_1", _entry("welcome"))
    analytics.record_transition("wf_1", "exec_3", _entry("welcome"))

    assert len(analytics._seen) == 2
    analytics.record_transition("wf_1", "exec_1", _entry("welcome"))
    assert analytics.report("wf_1").steps[0].entered == 3
    analytics.record_transition("wf_1", "exec_2", _entry("welcome"))
    assert analytics.report("wf_1").steps[0].entered == 4


def _by_step(report):
    return {s.step_id: s for s in report.steps}, report.model_dump(exclude={"steps"})


@pytest.mark.asyncio
async def test_load_rebuilds_counters_after_restart(engine, welcome_definition, clock):
    await engine.create_workflow(welcome_definition)
    await engine.activate_workflow(welcome_definition.id)
    opened = (await engine.trigger(welcome_definition.id, "c1")).execution
    await engine.trigger(welcome_definition.id, "c2")
    await Scheduler(engine).tick()
    sent = await engine.get_execution(opened.id)
    await engine.handle_delivery_event(
        DeliveryEvent(
            delivery_id=sent.log[0].data["delivery_id"],
            event=DeliveryEventType.OPENED,
            execution_id=opened.id,
            workflow_id=welcome_definition.id,
            step_id="welcome",
        )
    )
    clock.advance(days=1)
    await Scheduler(engine).tick()

    restarted = AnalyticsAggregator()
    assert await restarted.load(engine.store, welcome_definition.id) == 2
    # loading twice counts nothing new
    await restarted.load(engine.store)

    live = engine.analytics.report(welcome_definition.id)
    rebuilt = restarted.report(welcome_definition.id)
    assert _by_step(rebuilt) == _by_step(live)
    assert rebuilt.total_completed == 2
    assert _by_step(rebuilt)[0]["welcome"].opened == 1
    assert _by_step(rebuilt)[0]["upsell"].messages_sent == 1
