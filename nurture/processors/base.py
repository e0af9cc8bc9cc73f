"""Shared types for step processors."""

from __future__ import annotations

import abc
import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from pydantic import BaseModel, Field

from ..collaborators import (
    ContactSnapshot,
    ContactStore,
    DeliveryProvider,
    TemplateRenderer,
    WebhookCaller,
)
from ..constants import DEFAULT_DELIVERY_TIMEOUT_SECONDS, DEFAULT_LINKS_BASE_URL
from ..contracts import Step, StepKind, WorkflowDefinition
from ..persistence import Execution, ExecutionStore
from ..utils.retry import Sleep


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Outcome(BaseModel):
    """Uniform result of running one step.

    ``skipped`` marks a business-rule skip (suppressed recipient, frequency
    cap): still a success that continues the graph. ``wake_at`` asks the
    scheduler to park the execution; ``context`` replaces the execution
    context when set.
    """

    success: bool = True
    next_step_id: Optional[str] = None
    wake_at: Optional[datetime] = None
    skipped: bool = False
    detail: str = ""
    data: dict[str, Any] = Field(default_factory=dict)
    context: Optional[dict[str, Any]] = None


@dataclass
class ProcessorServices:
    """Collaborators injected into every processor."""

    store: ExecutionStore
    renderer: TemplateRenderer
    delivery: DeliveryProvider
    contacts: ContactStore
    webhooks: WebhookCaller
    clock: Callable[[], datetime] = utcnow
    sleep: Sleep = field(default=asyncio.sleep)
    delivery_timeout: float = DEFAULT_DELIVERY_TIMEOUT_SECONDS
    links_base_url: str = DEFAULT_LINKS_BASE_URL


class StepProcessor(abc.ABC):
    """Transition function for one step kind."""

    kind: StepKind

    def __init__(self, services: ProcessorServices) -> None:
        self.services = services

    @abc.abstractmethod
    async def process(
        self, step: Step, execution: Execution, workflow: WorkflowDefinition
    ) -> Outcome:
        """Run ``step`` for ``execution``; raise to fail the step."""
        raise NotImplementedError


def contact_of(execution: Execution) -> ContactSnapshot:
    """Return the contact snapshot carried in the execution context."""
    data = execution.context.get("contact")
    if not data:
        raise ValueError(f"Execution {execution.id} carries no contact snapshot")
    return ContactSnapshot.model_validate(data)


def default_next(step: Step) -> Optional[str]:
    connection = step.default_connection()
    return connection.target_step_id if connection else None
