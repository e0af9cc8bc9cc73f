"""Step processors, one per step kind."""

from __future__ import annotations

from typing import Dict

from ..contracts import StepKind
from .action import ActionProcessor
from .base import Outcome, ProcessorServices, StepProcessor, contact_of, default_next
from .condition import ConditionProcessor
from .message import MessageProcessor, delivery_key
from .split_test import SplitTestProcessor, choose_variant, split_bucket
from .wait import WaitProcessor


def build_processors(services: ProcessorServices) -> Dict[StepKind, StepProcessor]:
    """Instantiate the processor for every step kind."""
    message = MessageProcessor(services)
    return {
        StepKind.MESSAGE: message,
        StepKind.WAIT: WaitProcessor(services),
        StepKind.CONDITION: ConditionProcessor(services),
        StepKind.ACTION: ActionProcessor(services),
        StepKind.SPLIT_TEST: SplitTestProcessor(services, message=message),
    }


__all__ = [
    "ActionProcessor",
    "ConditionProcessor",
    "MessageProcessor",
    "Outcome",
    "ProcessorServices",
    "SplitTestProcessor",
    "StepProcessor",
    "WaitProcessor",
    "build_processors",
    "choose_variant",
    "contact_of",
    "default_next",
    "delivery_key",
    "split_bucket",
]
