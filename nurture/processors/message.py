from __future__ import annotations

import asyncio
import logging
from typing import Any

from ..collaborators import ContactSnapshot, Recipient, RenderedContent
from ..contracts import MessageConfig, Step, StepKind, WorkflowDefinition
from ..errors import (
    DeliveryError,
    StepFailure,
    TemplateNotFound,
    TransientDependencyError,
)
from ..persistence import Execution
from ..utils.retry import retry_transient
from .base import Outcome, StepProcessor, contact_of, default_next

logger = logging.getLogger(__name__)


def delivery_key(execution: Execution, step: Step) -> str:
    """Idempotency key shared by the send ledger and the delivery provider."""
    return f"{execution.id}:{step.id}"


class MessageProcessor(StepProcessor):
    """Renders and sends one message per step execution.

    Ineligible recipients (unsubscribed, no address, over the frequency cap)
    are skipped and the default edge is taken.
    """

    kind = StepKind.MESSAGE

    async def process(
        self, step: Step, execution: Execution, workflow: WorkflowDefinition
    ) -> Outcome:
        return await self.deliver(step, execution, workflow, step.config)

    async def deliver(
        self,
        step: Step,
        execution: Execution,
        workflow: WorkflowDefinition,
        config: MessageConfig,
    ) -> Outcome:
        snapshot = contact_of(execution)
        settings = workflow.settings
        next_step_id = default_next(step)

        # eligibility is judged on the contact as it is now, not at trigger time
        contact = await retry_transient(
            lambda: self.services.contacts.get(snapshot.id),
            config.retry,
            self.services.sleep,
            label=f"Contact lookup {snapshot.id}",
        )
        if contact is None:
            return self._skip(step, snapshot, next_step_id, "contact_not_found")
        if settings.respect_unsubscribes and not (
            contact.is_subscribed and snapshot.is_subscribed
        ):
            return self._skip(step, contact, next_step_id, "contact_not_subscribed")

        address = contact.email if config.channel == "email" else contact.phone
        if not address:
            return self._skip(step, contact, next_step_id, f"no_{config.channel}_address")

        key = delivery_key(execution, step)
        now = self.services.clock()
        if not await self.services.store.reserve_send(
            contact.id, key, settings.frequency_cap, now
        ):
            return self._skip(step, contact, next_step_id, "frequency_cap_reached")

        recipient = Recipient(
            contact_id=contact.id,
            address=address,
            name=" ".join(p for p in (contact.first_name, contact.last_name) if p) or None,
        )
        try:
            content = await retry_transient(
                lambda: self.services.renderer.render(
                    config.template_id, self._render_context(contact, execution, workflow)
                ),
                config.retry,
                self.services.sleep,
                label=f"Render of {config.template_id}",
            )
            receipt = await retry_transient(
                lambda: self._send(key, recipient, content),
                config.retry,
                self.services.sleep,
                label=f"Delivery {key}",
            )
        except asyncio.TimeoutError as exc:
            raise StepFailure(
                step.id, f"Delivery timed out after {self.services.delivery_timeout}s"
            ) from exc
        except TransientDependencyError as exc:
            await self.services.store.release_send(key)
            raise StepFailure(
                step.id,
                f"Dependency unavailable after {config.retry.max_attempts} attempts: {exc}",
            ) from exc
        except (TemplateNotFound, DeliveryError) as exc:
            await self.services.store.release_send(key)
            raise StepFailure(step.id, str(exc)) from exc

        logger.info(
            f"Message {config.template_id} sent to contact {contact.id} "
            f"via workflow {workflow.id} (delivery {receipt.delivery_id})"
        )
        return Outcome(
            next_step_id=next_step_id,
            detail=f"Message {config.template_id} sent via {config.channel}",
            data={
                "delivery_id": receipt.delivery_id,
                "idempotency_key": key,
                "template_id": config.template_id,
                "channel": config.channel,
            },
        )

    async def _send(self, key: str, recipient: Recipient, content: RenderedContent):
        return await asyncio.wait_for(
            self.services.delivery.send(key, recipient, content),
            timeout=self.services.delivery_timeout,
        )

    def _skip(
        self, step: Step, contact: ContactSnapshot, next_step_id: str | None, reason: str
    ) -> Outcome:
        logger.warning(f"Skipping message step {step.id} for contact {contact.id}: {reason}")
        return Outcome(
            next_step_id=next_step_id,
            skipped=True,
            detail=f"Message skipped: {reason}",
            data={"skip_reason": reason},
        )

    def _render_context(
        self, contact: ContactSnapshot, execution: Execution, workflow: WorkflowDefinition
    ) -> dict[str, Any]:
        base = self.services.links_base_url.rstrip("/")
        system: dict[str, Any] = {
            "unsubscribe_url": f"{base}/unsubscribe?token={contact.id}",
            "web_view_url": f"{base}/email/view/{execution.id}",
            "current_date": self.services.clock().date().isoformat(),
        }
        if workflow.settings.tracking_enabled:
            system["tracking_pixel_url"] = f"{base}/track/open/{execution.id}"
        return {
            "recipient": {
                "email": contact.email,
                "phone": contact.phone,
                "first_name": contact.first_name,
                "last_name": contact.last_name,
                "attributes": contact.attributes,
            },
            "owner": {"id": workflow.owner},
            "trigger": execution.context.get("trigger", {}),
            "context": execution.context,
            "system": system,
        }
