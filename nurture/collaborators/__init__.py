"""Collaborator contracts and bundled implementations."""

from .base import (
    ContactMutation,
    ContactSnapshot,
    ContactStore,
    DeliveryEvent,
    DeliveryEventType,
    DeliveryProvider,
    DeliveryReceipt,
    MutationKind,
    MutationResult,
    MutationStatus,
    Recipient,
    RenderedContent,
    SubscriptionStatus,
    TemplateRenderer,
    WebhookCaller,
)
from .http import HttpWebhookCaller
from .inmemory import (
    InMemoryContactStore,
    InMemoryDeliveryProvider,
    RecordingWebhookCaller,
    StaticTemplateRenderer,
)

__all__ = [
    "ContactMutation",
    "ContactSnapshot",
    "ContactStore",
    "DeliveryEvent",
    "DeliveryEventType",
    "DeliveryProvider",
    "DeliveryReceipt",
    "HttpWebhookCaller",
    "InMemoryContactStore",
    "InMemoryDeliveryProvider",
    "MutationKind",
    "MutationResult",
    "MutationStatus",
    "Recipient",
    "RecordingWebhookCaller",
    "RenderedContent",
    "StaticTemplateRenderer",
    "SubscriptionStatus",
    "TemplateRenderer",
    "WebhookCaller",
]
