"""Records handled by the engine: workflows, triggers, actions and executions.

Action configuration is a tagged variant: every action `type` carries its own
config model, so a workflow with a missing required key is rejected when it is
created rather than when it first runs.
"""

from __future__ import annotations

import math
import uuid
from datetime import UTC, datetime
from enum import Enum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


def new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


class WorkflowStatus(str, Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    PAUSED = "paused"
    ARCHIVED = "archived"


class ExecutionStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self not in (ExecutionStatus.PENDING, ExecutionStatus.RUNNING)


class StepStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


class TriggerType(str, Enum):
    MANUAL = "manual"
    SCHEDULED = "scheduled"
    EVENT = "event"


# ---------------------------------------------------------------------------
# Action configs


class _ActionConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")


class RunCommandConfig(_ActionConfig):
    command: str = Field(
        min_length=1,
        description="Command line; the first word names the external operation",
    )
    args: list[str] = Field(default_factory=list, description="Extra arguments appended as-is")
    working_directory: str | None = Field(default=None)
    capture_output: bool = Field(default=True)
    transient_exit_codes: list[int] = Field(
        default_factory=lambda: [75],
        description="Exit codes treated as retryable (75 = EX_TEMPFAIL)",
    )


class NotificationConfig(_ActionConfig):
    level: Literal["info", "success", "warning", "error"] = "info"
    title: str = Field(min_length=1)
    message: str = Field(min_length=1)
    channel: Literal["app", "push", "both"] = "app"
    target_users: str = Field(default="all", description="Comma-separated user ids or 'all'")


class HttpRequestConfig(_ActionConfig):
    method: Literal["GET", "POST", "PUT", "PATCH", "DELETE"] = "GET"
    url: str = Field(min_length=1)
    headers: dict[str, str] = Field(default_factory=dict)
    body: dict[str, Any] | str | None = None


class DelayConfig(_ActionConfig):
    duration: float | str = Field(description="Number, or a {{variable}} resolving to one")
    unit: Literal["ms", "s", "m", "h"] = "ms"

    @field_validator("duration")
    @classmethod
    def _check_duration(cls, value: float | str) -> float | str:
        if isinstance(value, str):
            if "{{" not in value:
                try:
                    value = float(value)
                except ValueError as e:
                    raise ValueError("duration must be a number or a {{variable}}") from e
            else:
                return value
        if not math.isfinite(value):
            raise ValueError("duration must be a finite number")
        if value < 0:
            raise ValueError("duration must not be negative")
        return value


class SetVariableConfig(_ActionConfig):
    name: str = Field(pattern=r"^[A-Za-z_][A-Za-z0-9_]*$")
    value: str | int | float | bool
    value_type: Literal["string", "number", "boolean", "json"] = "string"


class EmailConfig(_ActionConfig):
    to: str = Field(min_length=1, description="Comma-separated recipient addresses")
    cc: str = ""
    bcc: str = ""
    subject: str = Field(min_length=1)
    body: str = Field(min_length=1)
    is_html: bool = False


ComparisonOperator = Literal["eq", "ne", "gt", "gte", "lt", "lte", "contains", "truthy"]


class ConditionConfig(_ActionConfig):
    """`left <operator> right`; both sides usually carry `{{path}}` tokens."""

    left: str
    operator: ComparisonOperator = "eq"
    right: str | int | float | bool | None = None
    true_label: str = "yes"
    false_label: str = "no"
    output_variable: str | None = Field(default=None, pattern=r"^[A-Za-z_][A-Za-z0-9_]*$")

    @model_validator(mode="after")
    def _check_right(self) -> ConditionConfig:
        if self.operator != "truthy" and self.right is None:
            raise ValueError(f"operator {self.operator!r} needs a right-hand value")
        return self


class TransformDataConfig(_ActionConfig):
    transform_type: Literal["map", "filter", "sort", "unique", "count", "sum"] = "map"
    source: str = Field(
        pattern=r"^[A-Za-z0-9_\-]+(\.[A-Za-z0-9_\-]+)*$",
        description="Dotted path to a list, e.g. steps.0.body.items (no braces)",
    )
    field: str | None = Field(default=None, description="Dotted path inside each item")
    operator: ComparisonOperator = "eq"
    value: str | int | float | bool | None = None
    descending: bool = False
    output_key: str = Field(default="transformed_data", pattern=r"^[A-Za-z_][A-Za-z0-9_]*$")

    @model_validator(mode="after")
    def _check_field(self) -> TransformDataConfig:
        if self.transform_type == "map" and not self.field:
            raise ValueError("map needs a field")
        if self.transform_type == "filter" and self.operator != "truthy" and self.value is None:
            raise ValueError(f"filter with operator {self.operator!r} needs a value")
        return self


class RetryOverride(BaseModel):
    """Per-action override of the engine's transient retry policy."""

    max_attempts: int | None = Field(default=None, ge=1, le=20)
    initial_delay_seconds: float | None = Field(default=None, ge=0)
    backoff_multiplier: float | None = Field(default=None, ge=1.0)


# ---------------------------------------------------------------------------
# Actions


class _ActionBase(BaseModel):
    name: str | None = None
    position: int | None = Field(default=None, ge=0)
    timeout_seconds: float | None = Field(default=None, gt=0)
    retry: RetryOverride | None = None


class RunCommandAction(_ActionBase):
    type: Literal["run_command"] = "run_command"
    config: RunCommandConfig


class NotificationAction(_ActionBase):
    type: Literal["notification"] = "notification"
    config: NotificationConfig


class HttpRequestAction(_ActionBase):
    type: Literal["http_request"] = "http_request"
    config: HttpRequestConfig


class DelayAction(_ActionBase):
    type: Literal["delay"] = "delay"
    config: DelayConfig


class SetVariableAction(_ActionBase):
    type: Literal["set_variable"] = "set_variable"
    config: SetVariableConfig


class EmailAction(_ActionBase):
    type: Literal["email"] = "email"
    config: EmailConfig


class ConditionAction(_ActionBase):
    type: Literal["condition"] = "condition"
    config: ConditionConfig


class TransformDataAction(_ActionBase):
    type: Literal["transform_data"] = "transform_data"
    config: TransformDataConfig


WorkflowAction = Annotated[
    RunCommandAction
    | NotificationAction
    | EmailAction
    | HttpRequestAction
    | DelayAction
    | SetVariableAction
    | ConditionAction
    | TransformDataAction,
    Field(discriminator="type"),
]


def _normalise_positions(actions: list[Any]) -> list[Any]:
    if all(a.position is None for a in actions):
        return [a.model_copy(update={"position": idx}) for idx, a in enumerate(actions)]
    if any(a.position is None for a in actions):
        raise ValueError("either every action or no action may declare a position")
    ordered = sorted(actions, key=lambda a: a.position)
    if [a.position for a in ordered] != list(range(len(ordered))):
        raise ValueError("action positions must be 0-based and contiguous")
    return ordered


# ---------------------------------------------------------------------------
# Triggers


class Trigger(BaseModel):
    id: str = Field(default_factory=lambda: new_id("tr"))
    type: TriggerType
    name: str | None = None
    enabled: bool = True

    schedule: str | None = Field(default=None, description="Cron expression (scheduled only)")
    timezone: str = Field(default="UTC", description="IANA zone the schedule is read in")
    next_fire_at: datetime | None = None

    event: str | None = Field(default=None, description="Event name filter (event only)")

    @model_validator(mode="after")
    def _check_type_fields(self) -> Trigger:
        if self.type is TriggerType.SCHEDULED and not (self.schedule or "").strip():
            raise ValueError("scheduled triggers require a schedule expression")
        if self.type is TriggerType.EVENT and not (self.event or "").strip():
            raise ValueError("event triggers require an event name")
        return self


# ---------------------------------------------------------------------------
# Workflow


class Workflow(BaseModel):
    id: str = ""
    name: str = Field(min_length=1)
    description: str = ""
    status: WorkflowStatus = WorkflowStatus.DRAFT
    version: int = Field(default=1, ge=1)

    actions: list[WorkflowAction] = Field(default_factory=list)
    triggers: list[Trigger] = Field(default_factory=list)

    created_by: str = "system"
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @field_validator("actions")
    @classmethod
    def _check_positions(cls, actions: list[Any]) -> list[Any]:
        return _normalise_positions(actions)

    @field_validator("triggers")
    @classmethod
    def _check_trigger_ids(cls, triggers: list[Trigger]) -> list[Trigger]:
        ids = [t.id for t in triggers]
        if len(ids) != len(set(ids)):
            raise ValueError("trigger ids must be unique within a workflow")
        return triggers


# ---------------------------------------------------------------------------
# Executions


class TriggeredBy(BaseModel):
    type: TriggerType = TriggerType.MANUAL
    actor: str
    trigger_id: str | None = None
    event: str | None = None


class StepError(BaseModel):
    kind: str
    message: str


class WorkflowExecutionStep(BaseModel):
    action_index: int
    action_type: str
    action_name: str | None = None
    status: StepStatus
    output: dict[str, Any] | None = None
    error: StepError | None = None
    attempts: int = 1
    started_at: datetime
    finished_at: datetime


class WorkflowExecution(BaseModel):
    id: str = ""
    workflow_id: str
    workflow_version: int = 1
    status: ExecutionStatus = ExecutionStatus.PENDING
    triggered_by: TriggeredBy

    input: dict[str, Any] = Field(default_factory=dict)
    variables: dict[str, Any] = Field(default_factory=dict)

    # Snapshot taken at creation; edits to the workflow never reach an in-flight run.
    actions: list[WorkflowAction] = Field(default_factory=list)
    steps: list[WorkflowExecutionStep] = Field(default_factory=list)

    cancel_requested: bool = False
    cancel_requested_by: str | None = None
    error: StepError | None = None

    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    started_at: datetime | None = None
    finished_at: datetime | None = None
    duration_ms: int | None = None
