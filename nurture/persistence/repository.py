"""Execution store abstraction for workflow state persistence."""

from __future__ import annotations

import abc
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Optional, Protocol

from ..contracts import FrequencyCap, WorkflowDefinition, WorkflowStatus
from ..errors import AlreadyRunning, ClaimLost
from .models import (
    ACTIVE_STATUSES,
    Execution,
    ExecutionLogEntry,
    ExecutionStatus,
)

Mutation = Callable[[Execution], bool]


@dataclass(frozen=True)
class Lease:
    """Proof of a worker's claim, checked when a transition is written.

    ``checked_at`` is the writer's clock at the time of the write; the claim
    must still be held by ``worker_id`` and unexpired at that instant.
    """

    worker_id: str
    checked_at: datetime


class ExecutionStore(Protocol):
    """Protocol for durable workflow and execution storage backends.

    Every transition that moves an execution appends its log entry in the same
    atomic write. Transitions carrying an entry whose ``idempotency_key`` is
    already in the execution's log are no-ops and return ``False``. When a
    ``lease`` is given the transition raises ``ClaimLost`` unless the lease
    still matches the stored claim.
    """

    async def save_workflow(self, definition: WorkflowDefinition) -> None:
        """Persist a new definition version and its workflow status."""

    async def get_workflow(
        self, workflow_id: str, version: int | None = None
    ) -> WorkflowDefinition | None:
        """Return a definition version, the latest when ``version`` is None."""

    async def list_workflows(self, owner: str | None = None) -> list[WorkflowDefinition]:
        """Return the latest version of every workflow."""

    async def set_workflow_status(self, workflow_id: str, status: WorkflowStatus) -> None:
        """Change the status shared by all versions of a workflow."""

    async def create(self, execution: Execution, *, exclusive: bool = False) -> Execution:
        """Persist a new execution.

        With ``exclusive`` the insert raises ``AlreadyRunning`` when the
        contact has a running or paused execution of the same workflow,
        checked in the same transaction as the insert.
        """

    async def get(self, execution_id: str) -> Execution | None:
        """Retrieve an execution with its full log."""

    async def list_executions(
        self,
        workflow_id: str | None = None,
        contact_id: str | None = None,
        status: ExecutionStatus | None = None,
    ) -> list[Execution]:
        """Return executions matching all given filters."""

    async def claim(
        self, execution_id: str, worker_id: str, now: datetime, lease_until: datetime
    ) -> Execution | None:
        """Take or extend the exclusive right to mutate a running execution."""

    async def release(self, execution_id: str, worker_id: str) -> None:
        """Give up a claim held by ``worker_id``."""

    async def advance(
        self,
        execution_id: str,
        next_step_id: str,
        entry: ExecutionLogEntry,
        *,
        context: dict | None = None,
        lease: Lease | None = None,
    ) -> bool:
        """Move a running execution to ``next_step_id``."""

    async def park(
        self,
        execution_id: str,
        wake_at: datetime,
        entry: ExecutionLogEntry,
        *,
        context: dict | None = None,
        lease: Lease | None = None,
    ) -> bool:
        """Suspend a running execution until ``wake_at``."""

    async def wake(
        self, execution_id: str, next_step_id: str, *, lease: Lease | None = None
    ) -> bool:
        """Resume a parked execution at ``next_step_id``."""

    async def complete(
        self,
        execution_id: str,
        entry: ExecutionLogEntry | None = None,
        *,
        context: dict | None = None,
        at: datetime | None = None,
        lease: Lease | None = None,
    ) -> bool:
        """Mark the execution completed."""

    async def fail(
        self,
        execution_id: str,
        entry: ExecutionLogEntry,
        *,
        at: datetime | None = None,
        lease: Lease | None = None,
    ) -> bool:
        """Mark the execution failed."""

    async def exit(
        self,
        execution_id: str,
        entry: ExecutionLogEntry,
        *,
        at: datetime | None = None,
        lease: Lease | None = None,
    ) -> bool:
        """Mark the execution exited."""

    async def set_paused(
        self,
        execution_id: str,
        paused: bool,
        entry: ExecutionLogEntry,
        *,
        lease: Lease | None = None,
    ) -> bool:
        """Pause or unpause an execution."""

    async def update_context(self, execution_id: str, updates: dict[str, Any]) -> bool:
        """Merge ``updates`` into the execution context."""

    async def load_due(self, now: datetime, limit: int | None = None) -> list[Execution]:
        """Return unclaimed running executions ready to run at ``now``."""

    async def reserve_send(
        self, contact_id: str, key: str, cap: FrequencyCap, now: datetime
    ) -> bool:
        """Compare-and-increment the contact's send ledger."""

    async def release_send(self, key: str) -> None:
        """Return a reservation taken by a send that did not happen."""


# ----------------------------------------------------------------------
# Transition functions shared by every backend. Each mutates ``execution``
# in place and reports whether anything changed.


def _append(execution: Execution, entry: ExecutionLogEntry | None) -> bool:
    if entry is None:
        return True
    if execution.has_entry(entry.idempotency_key):
        return False
    execution.log.append(entry)
    return True


def _finish(
    execution: Execution,
    status: ExecutionStatus,
    entry: ExecutionLogEntry | None,
    at: datetime | None,
    context: dict | None = None,
) -> bool:
    if execution.status not in ACTIVE_STATUSES:
        return False
    if not _append(execution, entry):
        return False
    execution.status = status
    execution.completed_at = at or (entry.timestamp if entry else datetime.now(timezone.utc))
    execution.wake_at = None
    if context is not None:
        execution.context = context
    return True


def check_lease(execution: Execution, lease: Lease | None) -> None:
    """Raise ``ClaimLost`` unless ``lease`` matches the stored claim."""
    if lease is None:
        return
    if (
        execution.claimed_by != lease.worker_id
        or execution.claim_expires_at is None
        or execution.claim_expires_at <= lease.checked_at
    ):
        raise ClaimLost(
            f"Worker {lease.worker_id} no longer holds execution {execution.id} "
            f"(claimed by {execution.claimed_by or 'nobody'})"
        )


def _fenced(mutation: Mutation, lease: Lease | None) -> Mutation:
    if lease is None:
        return mutation

    def guarded(execution: Execution) -> bool:
        check_lease(execution, lease)
        return mutation(execution)

    return guarded


def check_exclusive(execution: Execution, active: list[Execution]) -> None:
    """Raise ``AlreadyRunning`` when ``active`` holds a run of the same contact."""
    for other in active:
        if (
            other.workflow_id == execution.workflow_id
            and other.contact_id == execution.contact_id
            and other.status in ACTIVE_STATUSES
        ):
            raise AlreadyRunning(
                f"Contact {execution.contact_id} already has execution {other.id} "
                f"in workflow {execution.workflow_id}"
            )


class BaseExecutionStore(ExecutionStore, metaclass=abc.ABCMeta):
    """Implements the transitions on top of a backend's atomic ``_mutate``."""

    @abc.abstractmethod
    async def _mutate(self, execution_id: str, mutation: Mutation) -> bool:
        """Load, apply ``mutation`` and persist atomically when it returns True.

        New log entries are the ones appended past the loaded log length.
        Exceptions raised by ``mutation`` abort the write and propagate.
        """
        raise NotImplementedError

    async def advance(
        self, execution_id, next_step_id, entry, *, context=None, lease=None
    ) -> bool:
        def mutation(execution: Execution) -> bool:
            if execution.status is not ExecutionStatus.RUNNING:
                return False
            if not _append(execution, entry):
                return False
            execution.current_step_id = next_step_id
            execution.wake_at = None
            if context is not None:
                execution.context = context
            return True

        return await self._mutate(execution_id, _fenced(mutation, lease))

    async def park(self, execution_id, wake_at, entry, *, context=None, lease=None) -> bool:
        def mutation(execution: Execution) -> bool:
            if execution.status is not ExecutionStatus.RUNNING:
                return False
            if not _append(execution, entry):
                return False
            execution.wake_at = wake_at
            if context is not None:
                execution.context = context
            return True

        return await self._mutate(execution_id, _fenced(mutation, lease))

    async def wake(self, execution_id, next_step_id, *, lease=None) -> bool:
        def mutation(execution: Execution) -> bool:
            if execution.status is not ExecutionStatus.RUNNING or not execution.is_parked:
                return False
            execution.current_step_id = next_step_id
            execution.wake_at = None
            return True

        return await self._mutate(execution_id, _fenced(mutation, lease))

    async def complete(
        self, execution_id, entry=None, *, context=None, at=None, lease=None
    ) -> bool:
        return await self._mutate(
            execution_id,
            _fenced(lambda e: _finish(e, ExecutionStatus.COMPLETED, entry, at, context), lease),
        )

    async def fail(self, execution_id, entry, *, at=None, lease=None) -> bool:
        return await self._mutate(
            execution_id,
            _fenced(lambda e: _finish(e, ExecutionStatus.FAILED, entry, at), lease),
        )

    async def exit(self, execution_id, entry, *, at=None, lease=None) -> bool:
        return await self._mutate(
            execution_id,
            _fenced(lambda e: _finish(e, ExecutionStatus.EXITED, entry, at), lease),
        )

    async def set_paused(self, execution_id, paused, entry, *, lease=None) -> bool:
        current = ExecutionStatus.RUNNING if paused else ExecutionStatus.PAUSED
        target = ExecutionStatus.PAUSED if paused else ExecutionStatus.RUNNING

        def mutation(execution: Execution) -> bool:
            if execution.status is not current:
                return False
            if not _append(execution, entry):
                return False
            execution.status = target
            return True

        return await self._mutate(execution_id, _fenced(mutation, lease))

    async def update_context(self, execution_id, updates) -> bool:
        def mutation(execution: Execution) -> bool:
            merged = {**execution.context, **updates}
            if merged == execution.context:
                return False
            execution.context = merged
            return True

        return await self._mutate(execution_id, mutation)


def claim_available(execution: Execution, worker_id: str, now: datetime) -> bool:
    """Return True when ``worker_id`` may claim ``execution`` at ``now``."""
    if execution.status is not ExecutionStatus.RUNNING:
        return False
    return (
        execution.claimed_by is None
        or execution.claimed_by == worker_id
        or execution.claim_expires_at is None
        or execution.claim_expires_at <= now
    )


def is_due(execution: Execution, now: datetime) -> bool:
    return execution.status is ExecutionStatus.RUNNING and (
        execution.wake_at is None or execution.wake_at <= now
    )


def optional_filter(value: Optional[Any], actual: Any) -> bool:
    return value is None or value == actual
