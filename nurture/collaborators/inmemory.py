"""In-process collaborators for tests and local runs."""

from __future__ import annotations

import asyncio
import uuid
from collections import defaultdict
from typing import Any, Dict, List, Optional

from ..errors import TemplateNotFound
from .base import (
    ContactMutation,
    ContactSnapshot,
    DeliveryReceipt,
    MutationResult,
    MutationStatus,
    Recipient,
    RenderedContent,
)


class InMemoryContactStore:
    """Contacts kept in a dict, versioned on every accepted mutation."""

    def __init__(self, contacts: Optional[List[ContactSnapshot]] = None) -> None:
        self._contacts: Dict[str, ContactSnapshot] = {c.id: c for c in contacts or []}
        self._lock = asyncio.Lock()

    def add(self, contact: ContactSnapshot) -> None:
        self._contacts[contact.id] = contact

    async def get(self, contact_id: str) -> ContactSnapshot | None:
        contact = self._contacts.get(contact_id)
        return contact.model_copy(deep=True) if contact else None

    async def apply_mutation(
        self, contact_id: str, mutation: ContactMutation
    ) -> MutationResult:
        async with self._lock:
            current = self._contacts.get(contact_id)
            if current is None:
                return MutationResult(status=MutationStatus.CONFLICT)
            if (
                mutation.expected_version is not None
                and mutation.expected_version != current.version
            ):
                return MutationResult(status=MutationStatus.CONFLICT, contact=current)
            updated = mutation.apply(current)
            updated = updated.model_copy(update={"version": current.version + 1})
            self._contacts[contact_id] = updated
            return MutationResult(status=MutationStatus.OK, contact=updated)


class _Blank(dict):
    def __missing__(self, key: str) -> str:
        return ""


class StaticTemplateRenderer:
    """Renders templates registered up front with ``str.format_map``.

    Placeholders are filled from the top level of the render context and the
    ``recipient`` mapping; unknown placeholders render empty.
    """

    def __init__(self, templates: Optional[Dict[str, RenderedContent]] = None) -> None:
        self._templates: Dict[str, RenderedContent] = dict(templates or {})

    def register(self, template_id: str, subject: str, body: str) -> None:
        self._templates[template_id] = RenderedContent(subject=subject, body=body)

    async def render(self, template_id: str, context: dict[str, Any]) -> RenderedContent:
        template = self._templates.get(template_id)
        if template is None:
            raise TemplateNotFound(f"Template not found: {template_id}")
        values = _Blank({**context, **context.get("recipient", {})})
        return RenderedContent(
            subject=template.subject.format_map(values),
            body=template.body.format_map(values),
        )


class InMemoryDeliveryProvider:
    """Records deliveries and honors idempotency keys.

    ``failures`` is a queue of exceptions raised by successive ``send`` calls
    before deliveries start succeeding; ``delay`` makes every call sleep.
    """

    def __init__(
        self, failures: Optional[List[Exception]] = None, delay: float = 0.0
    ) -> None:
        self.failures = list(failures or [])
        self.delay = delay
        self.calls = 0
        self.sent: Dict[str, tuple[Recipient, RenderedContent, DeliveryReceipt]] = {}
        self.by_recipient: Dict[str, List[str]] = defaultdict(list)

    async def send(
        self, idempotency_key: str, recipient: Recipient, content: RenderedContent
    ) -> DeliveryReceipt:
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.failures:
            raise self.failures.pop(0)
        if idempotency_key in self.sent:
            return self.sent[idempotency_key][2]
        receipt = DeliveryReceipt(
            delivery_id=f"dlv_{uuid.uuid4().hex}", idempotency_key=idempotency_key
        )
        self.sent[idempotency_key] = (recipient, content, receipt)
        self.by_recipient[recipient.contact_id].append(idempotency_key)
        return receipt


class RecordingWebhookCaller:
    """Keeps every posted payload instead of calling out.

    ``failures`` is a queue of exceptions raised by successive ``post`` calls
    before posts start succeeding.
    """

    def __init__(self, failures: Optional[List[Exception]] = None) -> None:
        self.failures = list(failures or [])
        self.calls = 0
        self.posts: List[tuple[str, dict[str, Any]]] = []

    async def post(self, url: str, payload: dict[str, Any]) -> None:
        self.calls += 1
        if self.failures:
            raise self.failures.pop(0)
        self.posts.append((url, payload))
