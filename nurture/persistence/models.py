"""Data models for persisted execution state."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class ExecutionStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    PAUSED = "paused"
    EXITED = "exited"


ACTIVE_STATUSES = (ExecutionStatus.RUNNING, ExecutionStatus.PAUSED)


class LogOutcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    SKIPPED = "skipped"


class ExecutionLogEntry(BaseModel):
    """Append-only audit record of one transition."""

    model_config = ConfigDict(frozen=True)

    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    step_id: str
    action: str
    outcome: LogOutcome
    detail: str = ""
    data: Optional[dict[str, Any]] = None
    idempotency_key: str


class Execution(BaseModel):
    """One contact's run through a specific workflow version."""

    id: str = Field(default_factory=lambda: f"exec_{uuid.uuid4().hex}")
    workflow_id: str
    workflow_version: int
    contact_id: str
    status: ExecutionStatus = ExecutionStatus.RUNNING
    current_step_id: Optional[str] = None
    started_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    completed_at: Optional[datetime] = None
    wake_at: Optional[datetime] = None
    context: dict[str, Any] = Field(default_factory=dict)
    log: list[ExecutionLogEntry] = Field(default_factory=list)
    version: int = 0
    claimed_by: Optional[str] = None
    claim_expires_at: Optional[datetime] = None

    def has_entry(self, idempotency_key: str) -> bool:
        return any(e.idempotency_key == idempotency_key for e in self.log)

    @property
    def is_parked(self) -> bool:
        return self.wake_at is not None
