"""Automation engine orchestrating workflows, triggers and step execution."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Optional

from pydantic import BaseModel

from .analytics import AnalyticsAggregator
from .collaborators import (
    ContactStore,
    DeliveryEvent,
    DeliveryEventType,
    DeliveryProvider,
    SubscriptionStatus,
    TemplateRenderer,
    WebhookCaller,
)
from .config import NurtureConfig, load_config
from .contracts import StepKind, WorkflowDefinition, WorkflowStatus
from .errors import AlreadyRunning, ExecutionNotFound, NurtureError, WorkflowNotFound
from .gate import Decision, TriggerGate
from .persistence import (
    Execution,
    ExecutionLogEntry,
    ExecutionStatus,
    ExecutionStore,
    Lease,
    LogOutcome,
    get_store,
)
from .processors import ProcessorServices, StepProcessor, build_processors
from .processors.base import utcnow
from .utils.retry import Sleep
from .validation import validate_definition

logger = logging.getLogger(__name__)

_SUPPRESSING_EVENTS = {
    DeliveryEventType.UNSUBSCRIBED: SubscriptionStatus.UNSUBSCRIBED,
    DeliveryEventType.BOUNCED: SubscriptionStatus.BOUNCED,
}


class StepResult(str, Enum):
    """What :meth:`AutomationEngine.run_step` did to an execution."""

    ADVANCED = "advanced"
    PARKED = "parked"
    WOKEN = "woken"
    COMPLETED = "completed"
    FAILED = "failed"
    EXITED = "exited"
    PAUSED = "paused"
    NOOP = "noop"

    @property
    def continues(self) -> bool:
        """True when the execution can run its next step right away."""
        return self in (StepResult.ADVANCED, StepResult.WOKEN)


class TriggerResult(BaseModel):
    decision: Decision
    execution: Optional[Execution] = None

    @property
    def admitted(self) -> bool:
        return self.decision.admitted


class AutomationEngine:
    """Moves contacts through workflow graphs.

    All collaborators are injected. The engine holds no queue of its own: the
    execution store's due index is the only source of pending work, and a
    :class:`~nurture.scheduler.Scheduler` drives :meth:`run_step`.
    """

    def __init__(
        self,
        store: ExecutionStore | None = None,
        *,
        renderer: TemplateRenderer,
        delivery: DeliveryProvider,
        contacts: ContactStore,
        webhooks: WebhookCaller,
        analytics: AnalyticsAggregator | None = None,
        config: NurtureConfig | None = None,
        clock: Callable[[], datetime] = utcnow,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.config = config or load_config()
        self.store = store or get_store(config=self.config)
        self.contacts = contacts
        self.analytics = analytics or AnalyticsAggregator()
        self.clock = clock
        self.gate = TriggerGate(self.store)
        self._services = ProcessorServices(
            store=self.store,
            renderer=renderer,
            delivery=delivery,
            contacts=contacts,
            webhooks=webhooks,
            clock=clock,
            sleep=sleep,
            delivery_timeout=self.config.delivery.timeout,
            links_base_url=self.config.delivery.links_base_url,
        )
        self.processors: Dict[StepKind, StepProcessor] = build_processors(self._services)

    # ------------------------------------------------------------------
    # Workflow lifecycle
    async def create_workflow(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        """Validate and store a new workflow; raises ``ValidationError``."""
        validate_definition(definition)
        await self.store.save_workflow(definition)
        logger.info(f"Workflow {definition.id} created ({definition.name})")
        return definition

    async def get_workflow(
        self, workflow_id: str, version: int | None = None
    ) -> WorkflowDefinition:
        workflow = await self.store.get_workflow(workflow_id, version)
        if workflow is None:
            suffix = f" version {version}" if version else ""
            raise WorkflowNotFound(f"Workflow {workflow_id}{suffix} not found")
        return workflow

    async def list_workflows(self, owner: str | None = None) -> list[WorkflowDefinition]:
        return await self.store.list_workflows(owner)

    async def update_workflow(
        self, workflow_id: str, definition: WorkflowDefinition
    ) -> WorkflowDefinition:
        """Store ``definition`` as the next version of ``workflow_id``.

        Running executions keep resolving steps against the version they
        started with; new entries use the new version.
        """
        current = await self.get_workflow(workflow_id)
        if current.status is WorkflowStatus.ARCHIVED:
            raise NurtureError(f"Workflow {workflow_id} is archived")
        updated = definition.model_copy(
            update={
                "id": workflow_id,
                "version": current.version + 1,
                "status": current.status,
                "created_at": current.created_at,
                "updated_at": self.clock(),
            }
        )
        validate_definition(updated)
        await self.store.save_workflow(updated)
        logger.info(f"Workflow {workflow_id} updated to version {updated.version}")
        return updated

    async def activate_workflow(self, workflow_id: str) -> WorkflowDefinition:
        return await self._set_status(workflow_id, WorkflowStatus.ACTIVE)

    async def pause_workflow(self, workflow_id: str) -> WorkflowDefinition:
        """Stop admitting contacts.

        In-flight executions keep running unless ``halt_in_flight_on_pause``
        is configured, in which case each pauses before its next step.
        """
        return await self._set_status(workflow_id, WorkflowStatus.PAUSED)

    async def resume_workflow(self, workflow_id: str) -> WorkflowDefinition:
        workflow = await self._set_status(workflow_id, WorkflowStatus.ACTIVE)
        if self.config.halt_in_flight_on_pause:
            paused = await self.store.list_executions(
                workflow_id=workflow_id, status=ExecutionStatus.PAUSED
            )
            now = self.clock()
            for execution in paused:
                await self.store.set_paused(
                    execution.id,
                    False,
                    ExecutionLogEntry(
                        timestamp=now,
                        step_id=execution.current_step_id or "",
                        action="execution_resumed",
                        outcome=LogOutcome.SUCCESS,
                        detail="Workflow resumed",
                        idempotency_key=f"resumed:{now.isoformat()}",
                    ),
                )
            logger.info(f"Resumed {len(paused)} paused executions of workflow {workflow_id}")
        return workflow

    async def archive_workflow(self, workflow_id: str) -> WorkflowDefinition:
        """Archive a workflow; its executions exit before their next step."""
        return await self._set_status(workflow_id, WorkflowStatus.ARCHIVED)

    async def _set_status(
        self, workflow_id: str, status: WorkflowStatus
    ) -> WorkflowDefinition:
        workflow = await self.get_workflow(workflow_id)
        if workflow.status is WorkflowStatus.ARCHIVED and status is not WorkflowStatus.ARCHIVED:
            raise NurtureError(f"Workflow {workflow_id} is archived")
        await self.store.set_workflow_status(workflow_id, status)
        logger.info(f"Workflow {workflow_id} is now {status.value}")
        return workflow.model_copy(update={"status": status})

    # ------------------------------------------------------------------
    # Entry
    async def trigger(
        self,
        workflow_id: str,
        contact_id: str,
        payload: dict[str, Any] | None = None,
    ) -> TriggerResult:
        """Admit ``contact_id`` into the latest version of a workflow.

        A rejection is a normal result, not an exception. The execution is
        created at the entry step and picked up by the next scheduler tick.
        """
        workflow = await self.get_workflow(workflow_id)
        payload = payload or {}
        contact = await self.contacts.get(contact_id)
        if contact is None:
            logger.warning(f"Contact {contact_id} not found for workflow {workflow_id}")
            return TriggerResult(decision=Decision.reject("contact_not_found"))

        decision = await self.gate.admit(workflow, contact, payload)
        if not decision.admitted:
            return TriggerResult(decision=decision)
        now = self.clock()
        execution = Execution(
            workflow_id=workflow.id,
            workflow_version=workflow.version,
            contact_id=contact.id,
            current_step_id=workflow.entry_step().id,
            started_at=now,
            context={
                "contact": contact.model_dump(mode="json"),
                "trigger": payload,
                "workflow_started_at": now.isoformat(),
            },
        )
        # the gate read can race other engines; the store settles it
        try:
            await self.store.create(
                execution, exclusive=not workflow.settings.allow_concurrent_runs
            )
        except AlreadyRunning as exc:
            logger.warning(f"Contact {contact_id} rejected from workflow {workflow_id}: {exc}")
            return TriggerResult(decision=Decision.reject("already_running"))

        self.analytics.record_entered(execution)
        logger.info(
            f"Contact {contact_id} admitted to workflow {workflow_id} "
            f"v{workflow.version} as execution {execution.id}"
        )
        return TriggerResult(decision=decision, execution=execution)

    # ------------------------------------------------------------------
    # Step execution
    async def run_step(
        self, execution: Execution, *, worker_id: str | None = None
    ) -> StepResult:
        """Run the current step of ``execution`` and persist the transition.

        The caller must hold the execution's claim. With ``worker_id`` every
        write is fenced on that claim and raises ``ClaimLost`` once another
        worker has taken the execution over. A parked execution that is due
        is only moved past its wait here; the next call runs the step after it.
        """
        if execution.status is not ExecutionStatus.RUNNING:
            return StepResult.NOOP
        now = self.clock()
        step_id = execution.current_step_id or ""

        workflow = await self.store.get_workflow(
            execution.workflow_id, execution.workflow_version
        )
        if workflow is None:
            return await self._fail(
                execution,
                step_id,
                "workflow_missing",
                f"Workflow {execution.workflow_id} v{execution.workflow_version} not found",
                now,
                worker_id,
            )

        if workflow.status is WorkflowStatus.ARCHIVED:
            entry = ExecutionLogEntry(
                timestamp=now,
                step_id=step_id,
                action="workflow_archived",
                outcome=LogOutcome.SKIPPED,
                detail="Workflow archived",
                idempotency_key="exit",
            )
            return await self._finish(execution, StepResult.EXITED, entry, now, worker_id)

        if workflow.status is WorkflowStatus.PAUSED and self.config.halt_in_flight_on_pause:
            entry = ExecutionLogEntry(
                timestamp=now,
                step_id=step_id,
                action="execution_paused",
                outcome=LogOutcome.SKIPPED,
                detail="Workflow paused",
                idempotency_key=f"paused:{now.isoformat()}",
            )
            if await self.store.set_paused(
                execution.id, True, entry, lease=self._lease(worker_id)
            ):
                logger.info(f"Execution {execution.id} paused with its workflow")
                return StepResult.PAUSED
            return StepResult.NOOP

        step = workflow.step(step_id)
        if step is None:
            return await self._fail(
                execution,
                step_id,
                "step_missing",
                f"Step {step_id} not in workflow",
                now,
                worker_id,
            )

        if execution.is_parked:
            if execution.wake_at > now:
                return StepResult.NOOP
            next_step_id = self.processors[StepKind.WAIT].resolve_next(step)
            if next_step_id is None:
                return await self._finish(
                    execution, StepResult.COMPLETED, None, now, worker_id
                )
            if await self.store.wake(
                execution.id, next_step_id, lease=self._lease(worker_id)
            ):
                logger.info(f"Execution {execution.id} woke up, next step {next_step_id}")
                return StepResult.WOKEN
            return StepResult.NOOP

        action = f"step_{step.kind.value}"
        try:
            outcome = await self.processors[step.kind].process(step, execution, workflow)
        except Exception as exc:
            logger.error(
                f"Step {step.id} failed for execution {execution.id}: {exc}", exc_info=True
            )
            return await self._fail(execution, step.id, action, str(exc), now, worker_id)

        if not outcome.success:
            return await self._fail(
                execution, step.id, action, outcome.detail, now, worker_id
            )

        entry = ExecutionLogEntry(
            timestamp=now,
            step_id=step.id,
            action=action,
            outcome=LogOutcome.SKIPPED if outcome.skipped else LogOutcome.SUCCESS,
            detail=outcome.detail,
            data=outcome.data or None,
            idempotency_key=step.id,
        )
        if outcome.wake_at is not None:
            changed = await self.store.park(
                execution.id,
                outcome.wake_at,
                entry,
                context=outcome.context,
                lease=self._lease(worker_id),
            )
            result = StepResult.PARKED
        elif outcome.next_step_id is not None:
            changed = await self.store.advance(
                execution.id,
                outcome.next_step_id,
                entry,
                context=outcome.context,
                lease=self._lease(worker_id),
            )
            result = StepResult.ADVANCED
        else:
            return await self._finish(
                execution,
                StepResult.COMPLETED,
                entry,
                now,
                worker_id,
                context=outcome.context,
            )

        if not changed:
            logger.warning(
                f"Transition of execution {execution.id} at step {step.id} was already applied"
            )
            return StepResult.NOOP
        self.analytics.record_transition(execution.workflow_id, execution.id, entry)
        if result is StepResult.PARKED:
            logger.info(f"Execution {execution.id} parked until {outcome.wake_at.isoformat()}")
        return result

    def _lease(self, worker_id: str | None) -> Lease | None:
        return Lease(worker_id, self.clock()) if worker_id else None

    async def _fail(
        self,
        execution: Execution,
        step_id: str,
        action: str,
        detail: str,
        now: datetime,
        worker_id: str | None = None,
    ) -> StepResult:
        entry = ExecutionLogEntry(
            timestamp=now,
            step_id=step_id,
            action=action,
            outcome=LogOutcome.FAILURE,
            detail=detail,
            idempotency_key=step_id or "failure",
        )
        return await self._finish(execution, StepResult.FAILED, entry, now, worker_id)

    async def _finish(
        self,
        execution: Execution,
        result: StepResult,
        entry: ExecutionLogEntry | None,
        now: datetime,
        worker_id: str | None = None,
        context: dict | None = None,
    ) -> StepResult:
        lease = self._lease(worker_id)
        if result is StepResult.COMPLETED:
            changed = await self.store.complete(
                execution.id, entry, context=context, at=now, lease=lease
            )
            status = ExecutionStatus.COMPLETED
        elif result is StepResult.FAILED:
            changed = await self.store.fail(execution.id, entry, at=now, lease=lease)
            status = ExecutionStatus.FAILED
        else:
            changed = await self.store.exit(execution.id, entry, at=now, lease=lease)
            status = ExecutionStatus.EXITED
        if not changed:
            return StepResult.NOOP

        if entry is not None:
            self.analytics.record_transition(execution.workflow_id, execution.id, entry)
        self.analytics.record_finished(
            execution.workflow_id, execution.id, status, execution.started_at, now
        )
        logger.info(f"Execution {execution.id} {status.value}")
        return result

    # ------------------------------------------------------------------
    # Out-of-band events and operator actions
    async def handle_delivery_event(self, event: DeliveryEvent) -> bool:
        """Record a delivery provider callback.

        The owning execution's context gains ``"<event>_<step id>": True`` so
        later Condition steps can branch on engagement. Unsubscribes and
        bounces also mark the execution's contact snapshot, so later Message
        steps skip the contact even before the contact store catches up.
        Failed deliveries are only recorded, they never fail the execution.
        Returns False for a duplicate callback.
        """
        if not self.analytics.record_delivery_event(event):
            return False
        key = f"{event.event.value}_{event.step_id}"
        updates: dict[str, Any] = {key: True}
        suppressed = _SUPPRESSING_EVENTS.get(event.event)
        if suppressed is not None:
            execution = await self.store.get(event.execution_id)
            if execution is not None and execution.context.get("contact"):
                updates["contact"] = {
                    **execution.context["contact"],
                    "subscription_status": suppressed.value,
                }
        if not await self.store.update_context(event.execution_id, updates):
            logger.debug(f"Execution {event.execution_id} already carries {key}")
        return True

    async def exit_execution(self, execution_id: str, reason: str = "manual_exit") -> bool:
        """Stop an active execution; returns False if it had already finished."""
        execution = await self.get_execution(execution_id)
        now = self.clock()
        entry = ExecutionLogEntry(
            timestamp=now,
            step_id=execution.current_step_id or "",
            action="execution_exited",
            outcome=LogOutcome.SKIPPED,
            detail=reason,
            idempotency_key="exit",
        )
        return await self._finish(execution, StepResult.EXITED, entry, now) is StepResult.EXITED

    async def get_execution(self, execution_id: str) -> Execution:
        execution = await self.store.get(execution_id)
        if execution is None:
            raise ExecutionNotFound(f"Execution {execution_id} not found")
        return execution

    async def list_executions(
        self,
        workflow_id: str | None = None,
        contact_id: str | None = None,
        status: ExecutionStatus | None = None,
    ) -> list[Execution]:
        return await self.store.list_executions(workflow_id, contact_id, status)
