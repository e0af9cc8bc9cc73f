"""Welcome sequence: message, wait a day, then upsell openers or tag the rest."""

import asyncio
from datetime import datetime, timedelta, timezone

from nurture import AutomationEngine, NurtureConfig, Scheduler, WorkflowDefinition
from nurture.collaborators import (
    ContactSnapshot,
    InMemoryContactStore,
    InMemoryDeliveryProvider,
    RecordingWebhookCaller,
    StaticTemplateRenderer,
)
from nurture.contracts import (
    ActionConfig,
    ActionType,
    ConditionConfig,
    FieldRef,
    FieldScope,
    MessageConfig,
    Operator,
    Predicate,
    Step,
    StepConnection,
    TriggerSpec,
    TriggerType,
    WaitConfig,
)
from nurture.persistence import get_store


class Clock:
    """Lets the example skip ahead instead of sleeping for a day."""

    def __init__(self):
        self.now = datetime.now(timezone.utc)

    def __call__(self):
        return self.now


def welcome_sequence() -> WorkflowDefinition:
    return WorkflowDefinition(
        owner="acme",
        name="Welcome sequence",
        trigger=TriggerSpec(type=TriggerType.SIGNUP),
        steps=[
            Step(
                id="welcome",
                config=MessageConfig(template_id="welcome", from_name="Acme"),
                connections=[StepConnection(target_step_id="wait")],
            ),
            Step(
                id="wait",
                config=WaitConfig(amount=1),
                connections=[StepConnection(target_step_id="opened")],
            ),
            Step(
                id="opened",
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
            Step(id="upsell", config=MessageConfig(template_id="upsell")),
            Step(id="tag_cold", config=ActionConfig(action=ActionType.ADD_TAG, tag="cold")),
        ],
    )


async def main():
    renderer = StaticTemplateRenderer()
    renderer.register("welcome", "Welcome aboard, {first_name}", "Glad to have you.")
    renderer.register("upsell", "{first_name}, ready for Pro?", "Upgrade today.")
    contacts = InMemoryContactStore(
        [ContactSnapshot(id="contact-1", email="ada@example.com", first_name="Ada")]
    )
    clock = Clock()

    engine = AutomationEngine(
        get_store(),
        renderer=renderer,
        delivery=InMemoryDeliveryProvider(),
        contacts=contacts,
        webhooks=RecordingWebhookCaller(),
        config=NurtureConfig(),
        clock=clock,
    )
    scheduler = Scheduler(engine)

    workflow = await engine.create_workflow(welcome_sequence())
    await engine.activate_workflow(workflow.id)
    result = await engine.trigger(workflow.id, "contact-1", {"source": "landing-page"})
    print(f"Admitted: {result.admitted}, execution {result.execution.id}")

    await scheduler.tick()
    clock.now += timedelta(days=1)
    await scheduler.tick()

    execution = await engine.get_execution(result.execution.id)
    print(f"Status: {execution.status.value}")
    for entry in execution.log:
        print(f"- {entry.step_id}: {entry.outcome.value} ({entry.detail})")
    print(f"Tags: {(await contacts.get('contact-1')).tags}")


if __name__ == "__main__":
    asyncio.run(main())
