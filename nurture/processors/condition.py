from __future__ import annotations

import logging

from ..conditions import EvaluationScope, evaluate_predicates
from ..contracts import ConditionConfig, Step, StepKind, WorkflowDefinition
from ..errors import StepFailure
from ..persistence import Execution
from .base import Outcome, StepProcessor

logger = logging.getLogger(__name__)


class ConditionProcessor(StepProcessor):
    """Branches on the ``true``/``false`` connection matching the predicates."""

    kind = StepKind.CONDITION

    async def process(
        self, step: Step, execution: Execution, workflow: WorkflowDefinition
    ) -> Outcome:
        config: ConditionConfig = step.config
        result = evaluate_predicates(
            config.predicates, EvaluationScope.from_context(execution.context)
        )
        label = "true" if result else "false"
        connection = step.connection_for(label)
        if connection is None:
            raise StepFailure(step.id, f"No '{label}' connection for condition result")
        logger.info(f"Condition {step.id} evaluated to {label} for execution {execution.id}")
        return Outcome(
            next_step_id=connection.target_step_id,
            detail=f"Condition evaluated to {label}",
            data={"condition_result": result},
        )
