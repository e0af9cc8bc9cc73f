"""Workflow definition contracts for nurture automations."""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Annotated, Any, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WorkflowStatus(str, Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    PAUSED = "paused"
    ARCHIVED = "archived"


class StepKind(str, Enum):
    MESSAGE = "message"
    WAIT = "wait"
    CONDITION = "condition"
    ACTION = "action"
    SPLIT_TEST = "split_test"


class FieldScope(str, Enum):
    """Where a condition field is read from."""

    CONTACT = "contact"  # standard contact attributes (email, tags, ...)
    ATTRIBUTE = "attribute"  # contact custom attributes
    CONTEXT = "context"  # execution context map
    TRIGGER = "trigger"  # trigger payload


class FieldRef(BaseModel):
    """Typed reference to a value visible to a condition.

    ``name`` may be a dotted path into nested mappings of the chosen scope.
    """

    model_config = ConfigDict(frozen=True)

    scope: FieldScope = FieldScope.ATTRIBUTE
    name: str


class Operator(str, Enum):
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    CONTAINS = "contains"
    NOT_CONTAINS = "not_contains"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    EXISTS = "exists"
    NOT_EXISTS = "not_exists"


class LogicalOperator(str, Enum):
    AND = "AND"
    OR = "OR"


class Predicate(BaseModel):
    """One ``{field, operator, value, logicalOperator}`` test."""

    model_config = ConfigDict(frozen=True)

    field: FieldRef
    operator: Operator
    value: Any = None
    logical_operator: LogicalOperator = LogicalOperator.AND


class RetryPolicy(BaseModel):
    """Bounded exponential backoff for transient collaborator errors."""

    model_config = ConfigDict(frozen=True)

    max_attempts: int = Field(default=3, ge=1)
    base_delay: float = Field(default=1.0, ge=0)
    max_delay: float = Field(default=30.0, ge=0)
    multiplier: float = Field(default=2.0, ge=1)


class MessageConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["message"] = "message"
    template_id: str
    channel: Literal["email", "sms"] = "email"
    from_name: Optional[str] = None
    from_email: Optional[str] = None
    reply_to: Optional[str] = None
    retry: RetryPolicy = RetryPolicy()


class WaitUnit(str, Enum):
    MINUTES = "minutes"
    HOURS = "hours"
    DAYS = "days"
    WEEKS = "weeks"


class WaitConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["wait"] = "wait"
    amount: int = Field(gt=0)
    unit: WaitUnit = WaitUnit.DAYS

    def duration(self) -> timedelta:
        return timedelta(**{self.unit.value: self.amount})


class ConditionConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["condition"] = "condition"
    predicates: List[Predicate] = Field(default_factory=list)


class ActionType(str, Enum):
    ADD_TAG = "add_tag"
    REMOVE_TAG = "remove_tag"
    UPDATE_FIELD = "update_field"
    WEBHOOK = "webhook"


class ActionConfig(BaseModel):
    """Mutation applied by an Action step.

    ``tag`` is used by the tag actions, ``field``/``value`` by update_field and
    ``url`` by webhook. ``retry`` applies to webhook calls that fail with a
    transient error; refusals fail the step at once.
    """

    model_config = ConfigDict(frozen=True)

    kind: Literal["action"] = "action"
    action: ActionType
    tag: Optional[str] = None
    field: Optional[str] = None
    value: Any = None
    url: Optional[str] = None
    retry: RetryPolicy = RetryPolicy()


class SplitVariant(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    percentage: int = Field(ge=0, le=100)
    template_id: str


class SplitTestConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["split_test"] = "split_test"
    variants: List[SplitVariant]
    channel: Literal["email", "sms"] = "email"
    from_name: Optional[str] = None
    from_email: Optional[str] = None
    reply_to: Optional[str] = None
    retry: RetryPolicy = RetryPolicy()


StepConfig = Annotated[
    Union[MessageConfig, WaitConfig, ConditionConfig, ActionConfig, SplitTestConfig],
    Field(discriminator="kind"),
]


class StepConnection(BaseModel):
    """Edge to another step, optionally guarded by a label."""

    model_config = ConfigDict(frozen=True)

    target_step_id: str
    label: Optional[str] = None


class Step(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str = ""
    config: StepConfig
    connections: List[StepConnection] = Field(default_factory=list)

    @property
    def kind(self) -> StepKind:
        return StepKind(self.config.kind)

    def connection_for(self, label: str) -> Optional[StepConnection]:
        """Return the outgoing connection carrying ``label`` if any."""
        for connection in self.connections:
            if connection.label == label:
                return connection
        return None

    def default_connection(self) -> Optional[StepConnection]:
        """Return the edge followed when no specific branch applies."""
        for connection in self.connections:
            if connection.label in (None, "success"):
                return connection
        return self.connections[0] if self.connections else None


class FrequencyCap(BaseModel):
    model_config = ConfigDict(frozen=True)

    enabled: bool = False
    max_per_day: Optional[int] = Field(default=None, ge=0)
    max_per_week: Optional[int] = Field(default=None, ge=0)


class WorkflowSettings(BaseModel):
    """Per-workflow behavior switches.

    ``max_executions_per_contact`` of ``0`` means unlimited.
    """

    model_config = ConfigDict(frozen=True)

    max_executions_per_contact: int = Field(default=1, ge=0)
    respect_unsubscribes: bool = True
    allow_concurrent_runs: bool = False
    tracking_enabled: bool = True
    frequency_cap: FrequencyCap = FrequencyCap()


class TriggerType(str, Enum):
    SIGNUP = "signup"
    PURCHASE = "purchase"
    ABANDONED_CART = "abandoned_cart"
    DATE_BASED = "date_based"
    BEHAVIOR = "behavior"
    API = "api"
    TAG_ADDED = "tag_added"
    CUSTOM_FIELD_CHANGED = "custom_field_changed"


class TriggerSpec(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: TriggerType = TriggerType.API
    conditions: List[Predicate] = Field(default_factory=list)


class WorkflowDefinition(BaseModel):
    """Immutable graph of steps plus settings.

    A new ``version`` is produced for every content edit; only ``status`` is
    shared between versions of the same workflow id.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: f"wf_{uuid.uuid4().hex}")
    version: int = 1
    owner: str
    name: str
    description: str = ""
    status: WorkflowStatus = WorkflowStatus.DRAFT
    trigger: TriggerSpec = TriggerSpec()
    steps: List[Step] = Field(default_factory=list)
    settings: WorkflowSettings = WorkflowSettings()
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    def step(self, step_id: str) -> Optional[Step]:
        for step in self.steps:
            if step.id == step_id:
                return step
        return None

    def entry_step(self) -> Step:
        """Return the unique step without incoming connections."""
        targets = {c.target_step_id for s in self.steps for c in s.connections}
        entries = [s for s in self.steps if s.id not in targets]
        if len(entries) != 1:
            raise ValueError(
                f"Workflow {self.id} has {len(entries)} entry steps, expected 1"
            )
        return entries[0]
