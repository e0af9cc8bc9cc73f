"""Exception taxonomy for the automation engine."""

from __future__ import annotations

from typing import Iterable


class NurtureError(Exception):
    """Base exception for nurture."""


class ValidationError(NurtureError):
    """A workflow definition is malformed and cannot be stored."""

    def __init__(self, problems: Iterable[str]):
        self.problems = list(problems)
        super().__init__("; ".join(self.problems) or "Invalid workflow definition")


class WorkflowNotFound(NurtureError, LookupError):
    """No workflow (or workflow version) with the given id."""


class ExecutionNotFound(NurtureError, LookupError):
    """No execution with the given id."""


class StepFailure(NurtureError):
    """Terminal failure of a single step; the execution becomes ``failed``."""

    def __init__(self, step_id: str, detail: str):
        self.step_id = step_id
        self.detail = detail
        super().__init__(f"Step {step_id} failed: {detail}")


class TransientDependencyError(NurtureError):
    """A collaborator is temporarily unavailable and the call may be retried."""


class TemplateNotFound(NurtureError):
    """The template renderer does not know the requested template."""


class DeliveryError(NurtureError):
    """The delivery provider refused the message."""


class WebhookError(NurtureError):
    """A webhook endpoint answered with an error."""


class ConcurrencyConflict(NurtureError):
    """An optimistic version or claim check failed."""


class ClaimLost(ConcurrencyConflict):
    """A worker tried to move an execution it no longer holds a live claim on."""


class AlreadyRunning(ConcurrencyConflict):
    """The contact already has an active execution of the workflow."""
