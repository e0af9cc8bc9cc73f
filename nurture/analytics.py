"""Per-workflow and per-step counters fed by execution transitions."""

from __future__ import annotations

import logging
from collections import OrderedDict, defaultdict
from datetime import datetime
from typing import TYPE_CHECKING, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field

from .collaborators import DeliveryEvent, DeliveryEventType
from .constants import DEFAULT_ANALYTICS_MAX_TRACKED
from .persistence import Execution, ExecutionLogEntry, ExecutionStatus, LogOutcome

if TYPE_CHECKING:
    from .persistence import ExecutionStore

logger = logging.getLogger(__name__)


class StepPerformance(BaseModel):
    step_id: str
    entered: int = 0
    completed: int = 0
    skipped: int = 0
    failed: int = 0
    messages_sent: int = 0
    delivered: int = 0
    opened: int = 0
    clicked: int = 0
    bounced: int = 0
    unsubscribed: int = 0
    delivery_failed: int = 0

    @property
    def open_rate(self) -> float:
        return self.opened / self.messages_sent if self.messages_sent else 0.0

    @property
    def click_rate(self) -> float:
        return self.clicked / self.messages_sent if self.messages_sent else 0.0


class WorkflowAnalytics(BaseModel):
    workflow_id: str
    total_entered: int = 0
    total_completed: int = 0
    total_exited: int = 0
    total_failed: int = 0
    completion_rate: float = 0.0
    average_minutes_to_complete: float = 0.0
    steps: List[StepPerformance] = Field(default_factory=list)


_EVENT_FIELDS = {
    DeliveryEventType.DELIVERED: "delivered",
    DeliveryEventType.OPENED: "opened",
    DeliveryEventType.CLICKED: "clicked",
    DeliveryEventType.BOUNCED: "bounced",
    DeliveryEventType.UNSUBSCRIBED: "unsubscribed",
    DeliveryEventType.FAILED: "delivery_failed",
}

_FINISHED_FIELDS = {
    ExecutionStatus.COMPLETED: "completed",
    ExecutionStatus.EXITED: "exited",
    ExecutionStatus.FAILED: "failed",
}


class _WorkflowCounters:
    def __init__(self) -> None:
        self.entered = 0
        self.completed = 0
        self.exited = 0
        self.failed = 0
        self.completion_minutes: List[float] = []
        self.steps: Dict[str, StepPerformance] = {}

    def step(self, step_id: str) -> StepPerformance:
        if step_id not in self.steps:
            self.steps[step_id] = StepPerformance(step_id=step_id)
        return self.steps[step_id]


class AnalyticsAggregator:
    """Consumes transitions and delivery callbacks; never drives the engine.

    Every ``record_*`` call is idempotent. Transitions are keyed by execution
    id and log idempotency key, delivery callbacks by delivery id and event
    type, so replays and duplicated provider callbacks count once in any
    arrival order. Only the ``max_tracked`` most recent keys are remembered;
    a duplicate older than that counts again.

    Counters live in memory. ``load`` rebuilds them from the execution store
    after a restart.
    """

    def __init__(self, max_tracked: int = DEFAULT_ANALYTICS_MAX_TRACKED) -> None:
        self.max_tracked = max_tracked
        self._workflows: Dict[str, _WorkflowCounters] = defaultdict(_WorkflowCounters)
        self._seen: "OrderedDict[Tuple[str, ...], None]" = OrderedDict()

    def _first(self, *key: str) -> bool:
        if key in self._seen:
            self._seen.move_to_end(key)
            return False
        self._seen[key] = None
        while len(self._seen) > self.max_tracked:
            self._seen.popitem(last=False)
        return True

    async def load(self, store: "ExecutionStore", workflow_id: str | None = None) -> int:
        """Replay stored executions into the counters; returns how many were read.

        Delivery callbacks are recovered from the ``<event>_<step id>`` flags
        they leave in the execution context. Anything already counted is
        skipped, so loading into a live aggregator is safe.
        """
        executions = await store.list_executions(workflow_id=workflow_id)
        for execution in executions:
            self.replay(execution)
        logger.info(
            f"Analytics rebuilt from {len(executions)} executions"
            + (f" of workflow {workflow_id}" if workflow_id else "")
        )
        return len(executions)

    def replay(self, execution: Execution) -> None:
        self.record_entered(execution)
        deliveries: Dict[str, str] = {}
        for entry in execution.log:
            self.record_transition(execution.workflow_id, execution.id, entry)
            if entry.data and entry.data.get("delivery_id"):
                deliveries[entry.step_id] = entry.data["delivery_id"]
        for event in _recorded_events(execution, deliveries):
            self.record_delivery_event(event)
        if execution.status in _FINISHED_FIELDS:
            self.record_finished(
                execution.workflow_id,
                execution.id,
                execution.status,
                execution.started_at,
                execution.completed_at,
            )

    def record_entered(self, execution: Execution) -> None:
        if self._first(execution.id, "entered"):
            self._workflows[execution.workflow_id].entered += 1

    def record_transition(self, workflow_id: str, execution_id: str, entry: ExecutionLogEntry) -> None:
        if not self._first(execution_id, f"log:{entry.idempotency_key}"):
            return
        step = self._workflows[workflow_id].step(entry.step_id)
        step.entered += 1
        if entry.outcome is LogOutcome.FAILURE:
            step.failed += 1
            return
        step.completed += 1
        if entry.outcome is LogOutcome.SKIPPED:
            step.skipped += 1
        if entry.data and entry.data.get("delivery_id"):
            step.messages_sent += 1

    def record_finished(
        self,
        workflow_id: str,
        execution_id: str,
        status: ExecutionStatus,
        started_at: datetime,
        finished_at: Optional[datetime],
    ) -> None:
        attr = _FINISHED_FIELDS.get(status)
        if attr is None or not self._first(execution_id, "finished"):
            return
        counters = self._workflows[workflow_id]
        setattr(counters, attr, getattr(counters, attr) + 1)
        if status is ExecutionStatus.COMPLETED and finished_at is not None:
            counters.completion_minutes.append(
                (finished_at - started_at).total_seconds() / 60
            )

    def record_delivery_event(self, event: DeliveryEvent) -> bool:
        """Count a provider callback; returns False for a duplicate."""
        if not self._first(event.delivery_id, f"event:{event.event.value}"):
            logger.debug(
                f"Ignoring duplicate {event.event.value} event for delivery {event.delivery_id}"
            )
            return False
        attr = _EVENT_FIELDS.get(event.event)
        if attr is not None:
            step = self._workflows[event.workflow_id].step(event.step_id)
            setattr(step, attr, getattr(step, attr) + 1)
        return True

    def report(self, workflow_id: str) -> WorkflowAnalytics:
        counters = self._workflows.get(workflow_id) or _WorkflowCounters()
        minutes = counters.completion_minutes
        return WorkflowAnalytics(
            workflow_id=workflow_id,
            total_entered=counters.entered,
            total_completed=counters.completed,
            total_exited=counters.exited,
            total_failed=counters.failed,
            completion_rate=counters.completed / counters.entered if counters.entered else 0.0,
            average_minutes_to_complete=sum(minutes) / len(minutes) if minutes else 0.0,
            steps=[s.model_copy() for s in counters.steps.values()],
        )


def _recorded_events(execution: Execution, deliveries: Dict[str, str]) -> List[DeliveryEvent]:
    events = []
    for step_id, delivery_id in deliveries.items():
        for kind in DeliveryEventType:
            if execution.context.get(f"{kind.value}_{step_id}") is True:
                events.append(
                    DeliveryEvent(
                        delivery_id=delivery_id,
                        event=kind,
                        execution_id=execution.id,
                        workflow_id=execution.workflow_id,
                        step_id=step_id,
                    )
                )
    return events
