"""Shared fixtures: a controllable clock, in-process collaborators and workflows."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from nurture.collaborators import (
    ContactSnapshot,
    InMemoryContactStore,
    InMemoryDeliveryProvider,
    RecordingWebhookCaller,
    StaticTemplateRenderer,
)
from nurture.config import NurtureConfig
from nurture.contracts import (
    ActionConfig,
    ActionType,
    ConditionConfig,
    FieldRef,
    FieldScope,
    MessageConfig,
    Operator,
    Predicate,
    RetryPolicy,
    Step,
    StepConnection,
    WaitConfig,
    WaitUnit,
    WorkflowDefinition,
)
from nurture.engine import AutomationEngine
from nurture.persistence import InMemoryExecutionStore


class FakeClock:
    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> datetime:
        self.now += timedelta(**delta)
        return self.now


def welcome_sequence(owner: str = "acme") -> WorkflowDefinition:
    """Message(welcome) -> Wait(1 day) -> Condition(opened_welcome)
    -> true: Message(upsell) / false: Action(add_tag cold)."""
    no_backoff = RetryPolicy(base_delay=0)
    return WorkflowDefinition(
        owner=owner,
        name="Welcome sequence",
        steps=[
            Step(
                id="welcome",
                config=MessageConfig(template_id="welcome", retry=no_backoff),
                connections=[StepConnection(target_step_id="wait")],
            ),
            Step(
                id="wait",
                config=WaitConfig(amount=1, unit=WaitUnit.DAYS),
                connections=[StepConnection(target_step_id="check")],
            ),
            Step(
                id="check",
                config=ConditionConfig(
                    predicates=[
                        Predicate(
                            field=FieldRef(scope=FieldScope.CONTEXT, name="opened_welcome"),
                            operator=Operator.EQUALS,
                            value=True,
                        )
                    ]
                ),
                connections=[
                    StepConnection(target_step_id="upsell", label="true"),
                    StepConnection(target_step_id="tag_cold", label="false"),
                ],
            ),
            Step(
                id="upsell",
                config=MessageConfig(template_id="upsell", retry=no_backoff),
            ),
            Step(
                id="tag_cold",
                config=ActionConfig(action=ActionType.ADD_TAG, tag="cold"),
            ),
        ],
    )


@pytest.fixture
def clock():
    return FakeClock(datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def contacts():
    return InMemoryContactStore(
        [
            ContactSnapshot(id="c1", email="ada@example.com", first_name="Ada"),
            ContactSnapshot(id="c2", email="bob@example.com", first_name="Bob"),
        ]
    )


@pytest.fixture
def renderer():
    renderer = StaticTemplateRenderer()
    renderer.register("welcome", "Welcome {first_name}", "Hi {first_name}!")
    renderer.register("upsell", "Upgrade today", "Hello again {first_name}")
    renderer.register("variant_a", "A", "Variant A")
    renderer.register("variant_b", "B", "Variant B")
    return renderer


@pytest.fixture
def delivery():
    return InMemoryDeliveryProvider()


@pytest.fixture
def webhooks():
    return RecordingWebhookCaller()


@pytest.fixture
def store():
    return InMemoryExecutionStore()


@pytest.fixture
def config():
    return NurtureConfig()


@pytest.fixture
def engine(store, renderer, delivery, contacts, webhooks, config, clock, sleeps):
    async def record_sleep(delay: float) -> None:
        sleeps.append(delay)

    return AutomationEngine(
        store,
        renderer=renderer,
        delivery=delivery,
        contacts=contacts,
        webhooks=webhooks,
        config=config,
        clock=clock,
        sleep=record_sleep,
    )


@pytest.fixture
def welcome_definition():
    return welcome_sequence()
