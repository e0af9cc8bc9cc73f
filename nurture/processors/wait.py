from __future__ import annotations

import logging
from typing import Optional

from ..contracts import Step, StepKind, WaitConfig, WorkflowDefinition
from ..persistence import Execution
from .base import Outcome, StepProcessor, default_next

logger = logging.getLogger(__name__)


class WaitProcessor(StepProcessor):
    """Computes a wake-up time; the scheduler parks the execution until then."""

    kind = StepKind.WAIT

    async def process(
        self, step: Step, execution: Execution, workflow: WorkflowDefinition
    ) -> Outcome:
        config: WaitConfig = step.config
        wake_at = self.services.clock() + config.duration()
        logger.info(
            f"Wait step {step.id} scheduled for {config.amount} {config.unit.value} "
            f"(execution {execution.id} wakes at {wake_at.isoformat()})"
        )
        return Outcome(
            wake_at=wake_at,
            detail=f"Waiting {config.amount} {config.unit.value}",
            data={
                "wake_at": wake_at.isoformat(),
                "wait_seconds": int(config.duration().total_seconds()),
            },
        )

    def resolve_next(self, step: Step) -> Optional[str]:
        """Outgoing edge taken once the wait is over."""
        return default_next(step)
