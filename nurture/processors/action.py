from __future__ import annotations

import logging
from typing import Any

from ..collaborators import (
    ContactMutation,
    ContactSnapshot,
    MutationKind,
    MutationStatus,
)
from ..contracts import ActionConfig, ActionType, Step, StepKind, WorkflowDefinition
from ..errors import StepFailure, TransientDependencyError, WebhookError
from ..persistence import Execution
from ..utils.retry import retry_transient
from .base import Outcome, StepProcessor, contact_of, default_next

logger = logging.getLogger(__name__)


class ActionProcessor(StepProcessor):
    """Mutates the contact or calls a webhook.

    Contact changes are written back through the contact store before the
    execution advances, and the stored result replaces the snapshot held in
    the execution context.
    """

    kind = StepKind.ACTION

    async def process(
        self, step: Step, execution: Execution, workflow: WorkflowDefinition
    ) -> Outcome:
        config: ActionConfig = step.config
        contact = contact_of(execution)

        if config.action is ActionType.WEBHOOK:
            payload = {
                "contact": contact.model_dump(mode="json"),
                "execution_id": execution.id,
                "workflow_id": workflow.id,
                "step_id": step.id,
                "action": config.model_dump(mode="json", exclude={"retry"}),
            }
            try:
                await retry_transient(
                    lambda: self.services.webhooks.post(config.url, payload),
                    config.retry,
                    self.services.sleep,
                    label=f"Webhook {config.url}",
                )
            except TransientDependencyError as exc:
                raise StepFailure(
                    step.id,
                    f"Dependency unavailable after {config.retry.max_attempts} attempts: {exc}",
                ) from exc
            except WebhookError as exc:
                raise StepFailure(step.id, str(exc)) from exc
            logger.info(f"Action webhook {config.url} called for execution {execution.id}")
            return Outcome(
                next_step_id=default_next(step),
                detail=f"Webhook called: {config.url}",
                data={"webhook_called": config.url},
            )

        mutation = ContactMutation(
            kind=MutationKind(config.action.value),
            tag=config.tag,
            field=config.field,
            value=config.value,
            expected_version=contact.version,
        )
        updated = await self._write_back(step, contact, mutation)
        logger.info(f"Action {config.action.value} applied to contact {contact.id}")
        return Outcome(
            next_step_id=default_next(step),
            detail=f"Action {config.action.value} applied",
            data=_describe(config),
            context={**execution.context, "contact": updated.model_dump(mode="json")},
        )

    async def _write_back(
        self, step: Step, contact: ContactSnapshot, mutation: ContactMutation
    ) -> ContactSnapshot:
        contacts = self.services.contacts
        result = await contacts.apply_mutation(contact.id, mutation)
        if result.status is MutationStatus.CONFLICT:
            # the stored contact moved on; reapply once on top of it
            fresh = result.contact or await contacts.get(contact.id)
            if fresh is None:
                raise StepFailure(step.id, f"Contact {contact.id} no longer exists")
            retry = mutation.model_copy(update={"expected_version": fresh.version})
            result = await contacts.apply_mutation(contact.id, retry)
            if result.status is MutationStatus.CONFLICT:
                raise StepFailure(
                    step.id, f"Contact {contact.id} changed concurrently, mutation not applied"
                )
            contact = fresh
        return result.contact or mutation.apply(contact)


def _describe(config: ActionConfig) -> dict[str, Any]:
    if config.action is ActionType.ADD_TAG:
        return {"tag_added": config.tag}
    if config.action is ActionType.REMOVE_TAG:
        return {"tag_removed": config.tag}
    return {"field_updated": config.field, "value": config.value}
