from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from app.crm.rules import RuleOperator, normalize_rule_value


Module = Literal["leads", "opportunities"]
AssignmentType = Literal["round_robin", "specific_user", "team_lead", "weighted"]
AccessLevel = Literal["read", "write"]
SettingKey = Literal["general", "stages", "conversion", "duplicateDetection", "ownership"]


class PipelineCreate(BaseModel):
    module: Module
    name: str = Field(min_length=1)
    is_default: bool = False


class PipelineUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1)
    is_default: bool | None = None


class PipelineRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    module: Module
    name: str
    is_default: bool
    created_at: datetime
    updated_at: datetime
    row_version: int


class StageCreate(BaseModel):
    pipeline_id: UUID
    name: str = Field(min_length=1)
    color: str | None = Field(default=None, max_length=16)
    probability: int | None = Field(default=None, ge=0, le=100)
    is_system: bool = False
    is_won: bool = False
    is_lost: bool = False
    lock_previous_fields: bool = False

    @model_validator(mode="after")
    def validate_terminal_flags(self) -> "StageCreate":
        if self.is_won and self.is_lost:
            raise ValueError("a stage cannot be both won and lost")
        return self


class StageUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1)
    color: str | None = Field(default=None, max_length=16)
    probability: int | None = Field(default=None, ge=0, le=100)
    is_won: bool | None = None
    is_lost: bool | None = None
    lock_previous_fields: bool | None = None


class StageRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    pipeline_id: UUID
    module: Module
    name: str
    slug: str
    color: str
    sort_order: int
    probability: int | None
    is_system: bool
    is_won: bool
    is_lost: bool
    lock_previous_fields: bool
    row_version: int


class StageReorderRequest(BaseModel):
    ordered_ids: list[UUID] = Field(min_length=1)

    @field_validator("ordered_ids")
    @classmethod
    def validate_unique(cls, value: list[UUID]) -> list[UUID]:
        if len(set(value)) != len(value):
            raise ValueError("ordered_ids must not contain duplicates")
        return value


class StageFieldRequirementInput(BaseModel):
    field_key: str = Field(min_length=1, max_length=255)
    field_label: str | None = None
    is_required: bool = True


class StageFieldsReplace(BaseModel):
    fields: list[StageFieldRequirementInput] = Field(default_factory=list)


class StageFieldRequirementRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    stage_id: UUID
    field_key: str
    field_label: str
    is_required: bool
    display_order: int


class ScoringRuleCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    category: str | None = Field(default=None, max_length=64)
    field_key: str = Field(min_length=1, max_length=255)
    operator: RuleOperator
    value: Any = None
    score_delta: int
    is_active: bool = True
    sort_order: int = 0

    @model_validator(mode="after")
    def validate_value(self) -> "ScoringRuleCreate":
        self.value = normalize_rule_value(self.operator, self.value)
        return self


class ScoringRuleUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=255)
    category: str | None = Field(default=None, max_length=64)
    field_key: str | None = Field(default=None, min_length=1, max_length=255)
    operator: RuleOperator | None = None
    value: Any = None
    score_delta: int | None = None
    is_active: bool | None = None
    sort_order: int | None = None


class ScoringRuleRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    template_id: UUID
    name: str
    category: str | None
    field_key: str
    operator: str
    value: Any
    score_delta: int
    is_active: bool
    sort_order: int


class ScoringTemplateCreate(BaseModel):
    name: str = Field(min_length=1)
    module: Module = "leads"
    max_score: int = Field(default=100, ge=1)
    is_active: bool = True
    is_default: bool = False


class ScoringTemplateUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1)
    max_score: int | None = Field(default=None, ge=1)
    is_active: bool | None = None
    is_default: bool | None = None


class ScoringTemplateRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    module: Module
    name: str
    max_score: int
    is_active: bool
    is_default: bool
    rules: list[ScoringRuleRead] = Field(default_factory=list)


class ScoreRead(BaseModel):
    template_id: UUID | None
    total: int
    max_score: int | None
    breakdown: dict[str, int] = Field(default_factory=dict)


class PriorityCreate(BaseModel):
    module: Module
    name: str = Field(min_length=1, max_length=128)
    color: str = Field(default="#9CA3AF", max_length=16)
    icon: str | None = Field(default=None, max_length=64)
    score_min: int | None = None
    score_max: int | None = None
    sort_order: int = 0
    is_default: bool = False
    is_active: bool = True

    @model_validator(mode="after")
    def validate_range(self) -> "PriorityCreate":
        if self.score_min is not None and self.score_max is not None and self.score_min > self.score_max:
            raise ValueError("score_min must not exceed score_max")
        return self


class PriorityUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=128)
    color: str | None = Field(default=None, max_length=16)
    icon: str | None = Field(default=None, max_length=64)
    score_min: int | None = None
    score_max: int | None = None
    sort_order: int | None = None
    is_default: bool | None = None
    is_active: bool | None = None


class PriorityRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    module: Module
    name: str
    color: str
    icon: str | None
    score_min: int | None
    score_max: int | None
    sort_order: int
    is_default: bool
    is_active: bool


class RoutingCondition(BaseModel):
    field: str = Field(min_length=1, max_length=255)
    operator: RuleOperator
    value: Any = None

    @model_validator(mode="after")
    def validate_value(self) -> "RoutingCondition":
        self.value = normalize_rule_value(self.operator, self.value)
        return self


class RoutingAssignee(BaseModel):
    id: UUID
    weight: int = Field(default=1, ge=1)


class RoutingRuleCreate(BaseModel):
    module: Module = "leads"
    name: str = Field(min_length=1, max_length=255)
    priority: int = 0
    conditions: list[RoutingCondition] = Field(default_factory=list)
    assignment_type: AssignmentType
    assigned_to: list[RoutingAssignee] = Field(min_length=1)
    is_active: bool = True


class RoutingRuleUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=255)
    priority: int | None = None
    conditions: list[RoutingCondition] | None = None
    assignment_type: AssignmentType | None = None
    assigned_to: list[RoutingAssignee] | None = Field(default=None, min_length=1)
    is_active: bool | None = None


class RoutingRuleRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    module: Module
    name: str
    priority: int
    conditions: list[dict[str, Any]]
    assignment_type: AssignmentType
    assigned_to: list[dict[str, Any]]
    round_robin_index: int
    is_active: bool


class LeadCreate(BaseModel):
    first_name: str | None = None
    last_name: str | None = None
    email: str | None = None
    phone: str | None = None
    company: str | None = None
    job_title: str | None = None
    website: str | None = None
    country: str | None = None
    source: str | None = None
    owner_user_id: UUID | None = None
    pipeline_id: UUID | None = None
    stage_id: UUID | None = None
    qualification: dict[str, Any] = Field(default_factory=dict)
    custom_fields: dict[str, Any] = Field(default_factory=dict)


class OpportunityCreate(BaseModel):
    name: str = Field(min_length=1)
    amount: Decimal | None = Field(default=None, ge=0)
    currency_code: str | None = Field(default=None, min_length=3, max_length=3)
    expected_close_date: date | None = None
    source: str | None = None
    next_step: str | None = None
    owner_user_id: UUID | None = None
    pipeline_id: UUID | None = None
    stage_id: UUID | None = None
    qualification: dict[str, Any] = Field(default_factory=dict)
    custom_fields: dict[str, Any] = Field(default_factory=dict)


class RecordUpdate(BaseModel):
    row_version: int
    fields: dict[str, Any] = Field(default_factory=dict)
    owner_user_id: UUID | None = None


class LeadRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    pipeline_id: UUID
    stage_id: UUID
    first_name: str | None
    last_name: str | None
    email: str | None
    phone: str | None
    company: str | None
    job_title: str | None
    website: str | None
    country: str | None
    source: str | None
    score: int
    score_breakdown: dict[str, int]
    priority_id: UUID | None
    owner_user_id: UUID
    created_by_user_id: UUID
    qualification: dict[str, Any]
    custom_fields: dict[str, Any]
    stage_entered_at: datetime
    last_activity_at: datetime | None
    converted_at: datetime | None
    disqualified_at: datetime | None
    created_at: datetime
    updated_at: datetime
    row_version: int


class OpportunityRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    pipeline_id: UUID
    stage_id: UUID
    name: str
    amount: Decimal | None
    currency_code: str | None
    expected_close_date: date | None
    probability: int | None
    source: str | None
    next_step: str | None
    score: int
    score_breakdown: dict[str, int]
    priority_id: UUID | None
    owner_user_id: UUID
    created_by_user_id: UUID
    qualification: dict[str, Any]
    custom_fields: dict[str, Any]
    stage_entered_at: datetime
    last_activity_at: datetime | None
    won_at: datetime | None
    lost_at: datetime | None
    created_at: datetime
    updated_at: datetime
    row_version: int


class StageChangeRequest(BaseModel):
    stage_id: UUID
    fields: dict[str, Any] | None = None
    unlock_reason: str | None = None
    row_version: int | None = None
    new_owner_id: UUID | None = None


class RecordResult(BaseModel):
    record: LeadRead | OpportunityRead
    score: ScoreRead | None = None


class StageHistoryRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    entity_type: str
    entity_id: UUID
    from_stage_id: UUID | None
    to_stage_id: UUID
    changed_by_user_id: UUID
    unlock_reason: str | None
    time_in_stage_seconds: int | None
    changed_at: datetime


class RecordTeamMemberRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    entity_type: str
    entity_id: UUID
    user_id: UUID
    role_name: str
    access_level: AccessLevel


class AuditRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    entity_type: str
    entity_id: str
    action: str
    actor_id: str
    before: dict[str, Any] | None
    after: dict[str, Any] | None
    reason: str | None
    correlation_id: str | None
    created_at: datetime


class _SettingsSection(BaseModel):
    """Typed view over a stored settings document; unknown keys pass through."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")


class GeneralSettings(_SettingsSection):
    auto_scoring: bool = True
    auto_priority_from_score: bool = True


class StageSettings(_SettingsSection):
    lock_previous_stages: bool = False
    require_unlock_reason: bool = False
    show_upcoming_stages: bool = True


class ConversionSettings(_SettingsSection):
    make_read_only: bool = True


class DuplicateDetectionSettings(_SettingsSection):
    enabled: bool = False


class OwnershipSettings(_SettingsSection):
    add_previous_owner_to_team: bool = True
    previous_owner_role: str = "Lead Generator"
    previous_owner_access: AccessLevel = "read"


SETTINGS_SECTIONS: dict[str, type[_SettingsSection]] = {
    "general": GeneralSettings,
    "stages": StageSettings,
    "conversion": ConversionSettings,
    "duplicateDetection": DuplicateDetectionSettings,
    "ownership": OwnershipSettings,
}
