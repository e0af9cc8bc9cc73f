"""nurture: durable marketing-automation workflows."""

from .analytics import AnalyticsAggregator, WorkflowAnalytics
from .config import NurtureConfig, load_config
from .contracts import Step, StepConnection, WorkflowDefinition, WorkflowStatus
from .engine import AutomationEngine, StepResult, TriggerResult
from .gate import Decision, TriggerGate
from .persistence import Execution, ExecutionStatus, get_store
from .scheduler import Scheduler
from .validation import validate_definition

__version__ = "0.1.0"
__all__ = [
    "AnalyticsAggregator",
    "AutomationEngine",
    "Decision",
    "Execution",
    "ExecutionStatus",
    "NurtureConfig",
    "Scheduler",
    "Step",
    "StepConnection",
    "StepResult",
    "TriggerGate",
    "TriggerResult",
    "WorkflowAnalytics",
    "WorkflowDefinition",
    "WorkflowStatus",
    "get_store",
    "load_config",
    "validate_definition",
]
