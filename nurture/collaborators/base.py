"""Contracts for the collaborators the engine calls out to."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, Protocol

from pydantic import BaseModel, Field


class SubscriptionStatus(str, Enum):
    SUBSCRIBED = "subscribed"
    UNSUBSCRIBED = "unsubscribed"
    BOUNCED = "bounced"
    COMPLAINED = "complained"


class ContactSnapshot(BaseModel):
    """Copy of a contact as seen by one execution."""

    id: str
    email: Optional[str] = None
    phone: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    subscription_status: SubscriptionStatus = SubscriptionStatus.SUBSCRIBED
    tags: list[str] = Field(default_factory=list)
    attributes: dict[str, Any] = Field(default_factory=dict)
    timezone: Optional[str] = None
    version: int = 0

    @property
    def is_subscribed(self) -> bool:
        return self.subscription_status is SubscriptionStatus.SUBSCRIBED


class MutationKind(str, Enum):
    ADD_TAG = "add_tag"
    REMOVE_TAG = "remove_tag"
    UPDATE_FIELD = "update_field"


class ContactMutation(BaseModel):
    """A single change to a contact, checked against ``expected_version``."""

    kind: MutationKind
    tag: Optional[str] = None
    field: Optional[str] = None
    value: Any = None
    expected_version: Optional[int] = None

    def apply(self, contact: ContactSnapshot) -> ContactSnapshot:
        """Return a new snapshot with this mutation applied."""
        if self.kind is MutationKind.ADD_TAG:
            tags = contact.tags if self.tag in contact.tags else [*contact.tags, self.tag]
            return contact.model_copy(update={"tags": tags})
        if self.kind is MutationKind.REMOVE_TAG:
            return contact.model_copy(
                update={"tags": [t for t in contact.tags if t != self.tag]}
            )
        return contact.model_copy(
            update={"attributes": {**contact.attributes, self.field: self.value}}
        )


class MutationStatus(str, Enum):
    OK = "ok"
    CONFLICT = "conflict"


class MutationResult(BaseModel):
    status: MutationStatus
    contact: Optional[ContactSnapshot] = None


class RenderedContent(BaseModel):
    subject: str = ""
    body: str
    html: Optional[str] = None


class Recipient(BaseModel):
    contact_id: str
    address: str
    name: Optional[str] = None


class DeliveryReceipt(BaseModel):
    delivery_id: str
    idempotency_key: str
    accepted_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class DeliveryEventType(str, Enum):
    SENT = "sent"
    DELIVERED = "delivered"
    OPENED = "opened"
    CLICKED = "clicked"
    BOUNCED = "bounced"
    UNSUBSCRIBED = "unsubscribed"
    FAILED = "failed"


class DeliveryEvent(BaseModel):
    """Out-of-band callback from the delivery provider."""

    delivery_id: str
    event: DeliveryEventType
    execution_id: str
    workflow_id: str
    step_id: str
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    data: dict[str, Any] = Field(default_factory=dict)


class TemplateRenderer(Protocol):
    async def render(self, template_id: str, context: dict[str, Any]) -> RenderedContent:
        """Render ``template_id``; raise ``TemplateNotFound`` if unknown."""


class DeliveryProvider(Protocol):
    async def send(
        self, idempotency_key: str, recipient: Recipient, content: RenderedContent
    ) -> DeliveryReceipt:
        """Deliver once per ``idempotency_key``.

        Raises ``DeliveryError`` for refusals and ``TransientDependencyError``
        when the provider is temporarily unavailable.
        """


class ContactStore(Protocol):
    async def get(self, contact_id: str) -> ContactSnapshot | None:
        """Return the current contact or None."""

    async def apply_mutation(
        self, contact_id: str, mutation: ContactMutation
    ) -> MutationResult:
        """Apply ``mutation`` unless the contact moved past ``expected_version``.

        An unknown contact is reported as a conflict without a contact.
        """


class WebhookCaller(Protocol):
    async def post(self, url: str, payload: dict[str, Any]) -> None:
        """POST ``payload`` as JSON; raise ``WebhookError`` on failure."""
