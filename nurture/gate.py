"""Trigger gate deciding whether a contact may enter a workflow."""

from __future__ import annotations

import logging
from typing import Any, Optional

from pydantic import BaseModel

from .collaborators import ContactSnapshot
from .conditions import EvaluationScope, evaluate_predicates
from .contracts import WorkflowDefinition, WorkflowStatus
from .persistence import ExecutionStatus, ExecutionStore

logger = logging.getLogger(__name__)

_COUNTED_STATUSES = (
    ExecutionStatus.RUNNING,
    ExecutionStatus.PAUSED,
    ExecutionStatus.COMPLETED,
)


class Decision(BaseModel):
    """Outcome of :meth:`TriggerGate.admit`. A rejection is not an error."""

    admitted: bool
    reason: Optional[str] = None

    @classmethod
    def admit(cls) -> "Decision":
        return cls(admitted=True)

    @classmethod
    def reject(cls, reason: str) -> "Decision":
        return cls(admitted=False, reason=reason)


class TriggerGate:
    """Applies the entry rules in order; the first failing rule rejects.

    1. the workflow must be active;
    2. the contact must be under ``max_executions_per_contact`` counting
       running, paused and completed executions (0 disables the rule);
    3. with ``respect_unsubscribes`` the contact must be subscribed;
    4. unless ``allow_concurrent_runs`` the contact must not already be in a
       running or paused execution of the workflow;
    5. the trigger's own conditions must hold for the payload and contact.
    """

    def __init__(self, store: ExecutionStore) -> None:
        self._store = store

    async def admit(
        self,
        workflow: WorkflowDefinition,
        contact: ContactSnapshot,
        trigger_payload: dict[str, Any] | None = None,
    ) -> Decision:
        decision = await self._decide(workflow, contact, trigger_payload or {})
        if not decision.admitted:
            logger.warning(
                f"Contact {contact.id} rejected from workflow {workflow.id}: {decision.reason}"
            )
        return decision

    async def _decide(
        self,
        workflow: WorkflowDefinition,
        contact: ContactSnapshot,
        trigger_payload: dict[str, Any],
    ) -> Decision:
        settings = workflow.settings
        if workflow.status is not WorkflowStatus.ACTIVE:
            return Decision.reject(f"workflow_not_active:{workflow.status.value}")

        previous = await self._store.list_executions(
            workflow_id=workflow.id, contact_id=contact.id
        )
        counted = [e for e in previous if e.status in _COUNTED_STATUSES]
        if (
            settings.max_executions_per_contact
            and len(counted) >= settings.max_executions_per_contact
        ):
            return Decision.reject("max_executions_reached")

        if settings.respect_unsubscribes and not contact.is_subscribed:
            return Decision.reject(
                f"contact_not_subscribed:{contact.subscription_status.value}"
            )

        if not settings.allow_concurrent_runs and any(
            e.status in (ExecutionStatus.RUNNING, ExecutionStatus.PAUSED) for e in previous
        ):
            return Decision.reject("already_running")

        if workflow.trigger.conditions:
            scope = EvaluationScope(
                contact=contact.model_dump(mode="json"),
                context={"trigger": trigger_payload},
                trigger=trigger_payload,
            )
            if not evaluate_predicates(workflow.trigger.conditions, scope):
                return Decision.reject("trigger_conditions_not_met")

        return Decision.admit()
