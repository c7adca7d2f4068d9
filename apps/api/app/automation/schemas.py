from __future__ import annotations

from datetime import datetime, time
from typing import Annotated, Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_serializer, field_validator, model_validator

ConditionOperator = Literal["eq", "gt", "lt", "gte", "lte", "is_empty", "is_not_empty", "changed_to"]
ActionType = Literal["send_email", "send_sms", "notify", "update_field", "create_task", "wait"]
ActionStatus = Literal["executed", "skipped", "failed"]
ConditionStatus = Literal["passed", "failed", "not_evaluated"]
ExecutionOutcome = Literal["successful", "suppressed", "failed"]

_VALUELESS_OPERATORS = {"is_empty", "is_not_empty"}
_TRIGGER_EVENT_PATTERN = r"^[a-z][a-z0-9_]*\.[a-z0-9_]+$"


class Condition(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    field: str = Field(min_length=1)
    operator: ConditionOperator
    value: Any = None

    @model_validator(mode="after")
    def validate_value(self) -> "Condition":
        if self.operator not in _VALUELESS_OPERATORS and self.value is None:
            raise ValueError(f"value is required for operator {self.operator}")
        if self.operator in {"gt", "gte", "lt", "lte"} and isinstance(self.value, (bool, dict, list)):
            raise ValueError(f"operator {self.operator} requires a scalar value")
        return self


class _ActionConfig(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class SendEmailConfig(_ActionConfig):
    to: str = Field(min_length=1)
    template: str = Field(min_length=1)
    vars: dict[str, Any] = Field(default_factory=dict)


class SendSmsConfig(_ActionConfig):
    to: str = Field(min_length=1)
    template: str = Field(min_length=1)
    vars: dict[str, Any] = Field(default_factory=dict)


class NotifyConfig(_ActionConfig):
    channel: str = Field(min_length=1)
    message: str = Field(min_length=1)


class UpdateFieldConfig(_ActionConfig):
    field: str = Field(min_length=1)
    value: Any = None
    entity_type: str | None = None


class CreateTaskConfig(_ActionConfig):
    assignee: str = Field(min_length=1)
    title: str = Field(min_length=1)
    due_in_minutes: int = Field(default=0, ge=0)


class WaitConfig(_ActionConfig):
    pass


class _ActionBase(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    delay_minutes: int = Field(default=0, ge=0)


class SendEmailAction(_ActionBase):
    type: Literal["send_email"]
    config: SendEmailConfig


class SendSmsAction(_ActionBase):
    type: Literal["send_sms"]
    config: SendSmsConfig


class NotifyAction(_ActionBase):
    type: Literal["notify"]
    config: NotifyConfig


class UpdateFieldAction(_ActionBase):
    type: Literal["update_field"]
    config: UpdateFieldConfig


class CreateTaskAction(_ActionBase):
    type: Literal["create_task"]
    config: CreateTaskConfig


class WaitAction(_ActionBase):
    type: Literal["wait"]
    config: WaitConfig = Field(default_factory=WaitConfig)
    delay_minutes: int = Field(ge=1)


ActionSpec = Annotated[
    SendEmailAction | SendSmsAction | NotifyAction | UpdateFieldAction | CreateTaskAction | WaitAction,
    Field(discriminator="type"),
]

action_list_adapter = TypeAdapter(list[ActionSpec])
condition_list_adapter = TypeAdapter(list[Condition])


class Constraints(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    cooldown_minutes: int | None = Field(default=None, ge=1)
    quiet_hours_start: time | None = None
    quiet_hours_end: time | None = None
    max_fires_per_entity: int | None = Field(default=None, ge=1)
    business_days_only: bool = False

    @field_validator("quiet_hours_start", "quiet_hours_end", mode="before")
    @classmethod
    def parse_clock_time(cls, value: Any) -> Any:
        if isinstance(value, str):
            try:
                return datetime.strptime(value.strip(), "%H:%M").time()
            except ValueError as exc:
                raise ValueError("quiet hours must use HH:MM") from exc
        return value

    @model_validator(mode="after")
    def validate_quiet_hours(self) -> "Constraints":
        if (self.quiet_hours_start is None) != (self.quiet_hours_end is None):
            raise ValueError("quiet_hours_start and quiet_hours_end must be set together")
        return self

    @field_serializer("quiet_hours_start", "quiet_hours_end")
    def serialize_clock_time(self, value: time | None) -> str | None:
        return value.strftime("%H:%M") if value is not None else None


class RuleSnapshot(BaseModel):
    """Immutable view of a rule as of event arrival."""

    model_config = ConfigDict(frozen=True)

    id: UUID
    tenant_id: str
    name: str
    description: str | None = None
    is_active: bool
    is_test_mode: bool
    trigger_event: str
    conditions: tuple[Condition, ...] = ()
    actions: tuple[ActionSpec, ...]
    constraints: Constraints = Field(default_factory=Constraints)
    created_at: datetime | None = None
    updated_at: datetime | None = None


class AutomationRuleCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    description: str | None = None
    is_active: bool = True
    is_test_mode: bool = False
    trigger_event: str = Field(pattern=_TRIGGER_EVENT_PATTERN)
    conditions: list[Condition] = Field(default_factory=list)
    actions: list[ActionSpec] = Field(min_length=1)
    constraints: Constraints = Field(default_factory=Constraints)


class AutomationRuleUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=255)
    description: str | None = None
    is_active: bool | None = None
    is_test_mode: bool | None = None
    trigger_event: str | None = Field(default=None, pattern=_TRIGGER_EVENT_PATTERN)
    conditions: list[Condition] | None = None
    actions: list[ActionSpec] | None = Field(default=None, min_length=1)
    constraints: Constraints | None = None


class ToggleRequest(BaseModel):
    enabled: bool


class ConditionResult(BaseModel):
    field: str
    operator: ConditionOperator
    status: ConditionStatus
    detail: str | None = None


class ActionResult(BaseModel):
    type: ActionType
    status: ActionStatus
    detail: str
    executed_at: datetime | None = None


class ExecutionRecordRead(BaseModel):
    id: UUID
    tenant_id: str
    rule_id: UUID
    event_id: str
    event_name: str
    entity_type: str
    entity_id: str
    timestamp: datetime
    conditions_passed: bool
    condition_results: list[ConditionResult] = Field(default_factory=list)
    suppression_reason: str | None = None
    error: str | None = None
    action_results: list[ActionResult] = Field(default_factory=list)
    is_test_mode: bool
    outcome: ExecutionOutcome
    pending_actions: int = 0


class RuleExecutionCount(BaseModel):
    rule_id: UUID
    rule_name: str
    count: int


class ExecutionStats(BaseModel):
    total_executions: int
    conditions_passed: int
    conditions_failed: int
    successful: int
    suppressed: int
    failed: int
    test_mode: int
    by_rule: list[RuleExecutionCount] = Field(default_factory=list)


class LedgerEntryRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    tenant_id: str
    rule_id: UUID
    entity_id: str
    last_fired_at: datetime
    fire_count: int


class EventIngestResponse(BaseModel):
    event_id: str
    status: Literal["evaluated", "queued"]
    executions: list[ExecutionRecordRead] = Field(default_factory=list)


class AutomationRuleRead(BaseModel):
    id: UUID
    tenant_id: str
    name: str
    description: str | None = None
    is_active: bool
    is_test_mode: bool
    trigger_event: str
    conditions: list[Condition] = Field(default_factory=list)
    actions: list[ActionSpec] = Field(default_factory=list)
    constraints: Constraints = Field(default_factory=Constraints)
    created_at: datetime
    updated_at: datetime


class EventIngestRequest(BaseModel):
    event_id: str | None = None
    event_type: str | None = None
    entity_type: str | None = None
    entity_id: str | None = None
    occurred_at: datetime | None = None
    timezone: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)
    previous: dict[str, Any] = Field(default_factory=dict)


FollowUpChannel = Literal["email", "text", "call_task"]
SequenceStatus = Literal["active", "paused", "completed", "cancelled"]


class FollowUpStep(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    delay_hours: float = Field(ge=0)
    channel: FollowUpChannel
    template_id: str | None = Field(default=None, min_length=1)
    message: str | None = Field(default=None, min_length=1)

    @model_validator(mode="after")
    def validate_content(self) -> "FollowUpStep":
        if self.channel in {"email", "text"} and self.template_id is None and self.message is None:
            raise ValueError(f"{self.channel} steps need a template_id or a message")
        return self


class FollowUpStepRead(BaseModel):
    delay_hours: float
    channel: FollowUpChannel
    template_id: str | None = None
    message: str | None = None
    executed_at: datetime | None = None
    status: ActionStatus | None = None
    detail: str | None = None


class FollowUpSequenceCreate(BaseModel):
    lead_id: str = Field(min_length=1, max_length=128)
    steps: list[FollowUpStep] = Field(min_length=1)
    fields: dict[str, Any] = Field(default_factory=dict)


class FollowUpSequenceRead(BaseModel):
    id: UUID
    tenant_id: str
    lead_id: str
    status: SequenceStatus
    current_step: int
    steps: list[FollowUpStepRead]
    next_step_at: datetime | None = None
    started_at: datetime
    paused_at: datetime | None = None
    completed_at: datetime | None = None
