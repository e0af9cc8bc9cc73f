"""In-memory implementation of the execution store."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from typing import Dict, List, Tuple

from ..contracts import FrequencyCap, WorkflowDefinition, WorkflowStatus
from .models import Execution, ExecutionStatus
from .repository import (
    BaseExecutionStore,
    Mutation,
    check_exclusive,
    claim_available,
    is_due,
    optional_filter,
)


class InMemoryExecutionStore(BaseExecutionStore):
    """Store workflow state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts.
    """

    def __init__(self) -> None:
        self._versions: Dict[Tuple[str, int], WorkflowDefinition] = {}
        self._status: Dict[str, WorkflowStatus] = {}
        self._latest: Dict[str, int] = {}
        self._executions: Dict[str, Execution] = {}
        self._ledger: Dict[str, Tuple[str, datetime]] = {}
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Workflow definitions
    async def save_workflow(self, definition: WorkflowDefinition) -> None:
        key = (definition.id, definition.version)
        async with self._lock:
            if key in self._versions:
                raise ValueError(
                    f"Workflow {definition.id} version {definition.version} already exists"
                )
            self._versions[key] = definition
            self._status[definition.id] = definition.status
            self._latest[definition.id] = max(
                definition.version, self._latest.get(definition.id, 0)
            )

    async def get_workflow(
        self, workflow_id: str, version: int | None = None
    ) -> WorkflowDefinition | None:
        version = version or self._latest.get(workflow_id)
        definition = self._versions.get((workflow_id, version))
        if definition is None:
            return None
        return definition.model_copy(update={"status": self._status[workflow_id]})

    async def list_workflows(self, owner: str | None = None) -> list[WorkflowDefinition]:
        workflows = []
        for workflow_id in self._latest:
            definition = await self.get_workflow(workflow_id)
            if definition and optional_filter(owner, definition.owner):
                workflows.append(definition)
        return workflows

    async def set_workflow_status(self, workflow_id: str, status: WorkflowStatus) -> None:
        async with self._lock:
            if workflow_id in self._status:
                self._status[workflow_id] = status

    # ------------------------------------------------------------------
    # Executions
    async def create(self, execution: Execution, *, exclusive: bool = False) -> Execution:
        async with self._lock:
            if execution.id in self._executions:
                raise ValueError(f"Execution {execution.id} already exists")
            if exclusive:
                check_exclusive(execution, list(self._executions.values()))
            self._executions[execution.id] = execution.model_copy(deep=True)
        return execution

    async def get(self, execution_id: str) -> Execution | None:
        execution = self._executions.get(execution_id)
        return execution.model_copy(deep=True) if execution else None

    async def list_executions(self, workflow_id=None, contact_id=None, status=None):
        return [
            e.model_copy(deep=True)
            for e in self._executions.values()
            if optional_filter(workflow_id, e.workflow_id)
            and optional_filter(contact_id, e.contact_id)
            and optional_filter(status, e.status)
        ]

    async def claim(self, execution_id, worker_id, now, lease_until):
        async with self._lock:
            execution = self._executions.get(execution_id)
            if execution is None or not claim_available(execution, worker_id, now):
                return None
            execution.claimed_by = worker_id
            execution.claim_expires_at = lease_until
            execution.version += 1
            return execution.model_copy(deep=True)

    async def release(self, execution_id: str, worker_id: str) -> None:
        async with self._lock:
            execution = self._executions.get(execution_id)
            if execution and execution.claimed_by == worker_id:
                execution.claimed_by = None
                execution.claim_expires_at = None
                execution.version += 1

    async def _mutate(self, execution_id: str, mutation: Mutation) -> bool:
        async with self._lock:
            current = self._executions.get(execution_id)
            if current is None:
                return False
            candidate = current.model_copy(deep=True)
            if not mutation(candidate):
                return False
            candidate.version = current.version + 1
            self._executions[execution_id] = candidate
            return True

    async def load_due(self, now: datetime, limit: int | None = None) -> list[Execution]:
        due: List[Execution] = [
            e
            for e in self._executions.values()
            if is_due(e, now)
            and (e.claimed_by is None or (e.claim_expires_at and e.claim_expires_at <= now))
        ]
        due.sort(key=lambda e: e.wake_at or e.started_at)
        if limit is not None:
            due = due[:limit]
        return [e.model_copy(deep=True) for e in due]

    # ------------------------------------------------------------------
    # Frequency ledger
    async def reserve_send(
        self, contact_id: str, key: str, cap: FrequencyCap, now: datetime
    ) -> bool:
        async with self._lock:
            if key in self._ledger:
                return True
            if cap.enabled:
                sent = [t for c, t in self._ledger.values() if c == contact_id]
                day = sum(1 for t in sent if t > now - timedelta(days=1))
                week = sum(1 for t in sent if t > now - timedelta(days=7))
                if cap.max_per_day is not None and day >= cap.max_per_day:
                    return False
                if cap.max_per_week is not None and week >= cap.max_per_week:
                    return False
            self._ledger[key] = (contact_id, now)
            return True

    async def release_send(self, key: str) -> None:
        async with self._lock:
            self._ledger.pop(key, None)
