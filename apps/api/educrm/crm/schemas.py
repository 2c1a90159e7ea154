from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field, model_validator


PipelineType = Literal["lead", "application"]
BulkLeadOperation = Literal["update", "assign", "deactivate"]


class StageDef(BaseModel):
    id: str = Field(min_length=1, max_length=64)
    name: str = Field(min_length=1, max_length=255)
    order: int = Field(ge=0)
    color: str = Field(pattern=r"^#[0-9A-Fa-f]{6}$")
    description: str | None = None


def _check_stage_list(stages: list[StageDef]) -> None:
    ids = [stage.id for stage in stages]
    if len(set(ids)) != len(ids):
        raise ValueError("stage ids must be unique")
    orders = [stage.order for stage in stages]
    if len(set(orders)) != len(orders):
        raise ValueError("stage orders must be unique")


class PipelineCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    type: PipelineType
    stages: list[StageDef] = Field(min_length=1)
    sub_account_id: UUID | None = None
    is_default: bool = False

    @model_validator(mode="after")
    def validate_stages(self) -> PipelineCreate:
        _check_stage_list(self.stages)
        return self


class PipelineUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=255)
    stages: list[StageDef] | None = Field(default=None, min_length=1)
    row_version: int | None = None

    @model_validator(mode="after")
    def validate_stages(self) -> PipelineUpdate:
        if self.stages is not None:
            _check_stage_list(self.stages)
        return self


class PipelineRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    tenant_id: UUID
    sub_account_id: UUID | None
    name: str
    type: PipelineType
    stages: list[StageDef]
    is_default: bool
    created_at: datetime
    updated_at: datetime
    row_version: int


class DefaultPipelineCreate(BaseModel):
    type: PipelineType
    tenant_id: UUID | None = None
    sub_account_id: UUID | None = None


class PipelineItemRead(BaseModel):
    id: UUID
    item_type: PipelineType
    title: str
    status: str
    sub_account_id: UUID | None
    assigned_agent_id: UUID | None
    score: int | None = None
    updated_at: datetime
    row_version: int


class StageBucket(BaseModel):
    stage: StageDef
    count: int
    items: list[PipelineItemRead]


class PipelineItemsRead(BaseModel):
    pipeline_id: UUID
    type: PipelineType
    stages: list[StageBucket]


class MoveItemRequest(BaseModel):
    from_stage: str = Field(min_length=1)
    to_stage: str = Field(min_length=1)
    notes: str | None = None


class MoveItemResult(BaseModel):
    pipeline_id: UUID
    from_stage: str
    to_stage: str
    moved: bool
    item: PipelineItemRead


class BulkMoveRequest(BaseModel):
    item_ids: list[UUID] = Field(min_length=1)
    to_stage: str = Field(min_length=1)


class BulkItemResult(BaseModel):
    id: UUID
    success: bool
    error: str | None = None
    code: str | None = None


class BulkMoveResult(BaseModel):
    results: list[BulkItemResult]
    succeeded: int
    failed: int


class StageAnalytics(BaseModel):
    stage_id: str
    name: str
    color: str
    count: int
    percentage: float


class PipelineAnalytics(BaseModel):
    pipeline_id: UUID
    stages: list[StageAnalytics]
    total_items: int
    conversion_rate: float


class LeadCreate(BaseModel):
    first_name: str = Field(min_length=1, max_length=255)
    last_name: str = Field(min_length=1, max_length=255)
    email: EmailStr
    phone: str | None = Field(default=None, max_length=64)
    source: str | None = Field(default=None, max_length=255)
    status: str | None = Field(default=None, min_length=1, max_length=64)
    program_interest: str | None = None
    target_country: str | None = Field(default=None, max_length=128)
    budget: Decimal | None = Field(default=None, ge=0)
    notes: str | None = None
    assigned_agent_id: UUID | None = None
    sub_account_id: UUID | None = None
    custom_fields: dict[str, Any] = Field(default_factory=dict)


class LeadPatch(BaseModel):
    model_config = ConfigDict(extra="forbid")

    first_name: str | None = Field(default=None, min_length=1, max_length=255)
    last_name: str | None = Field(default=None, min_length=1, max_length=255)
    email: EmailStr | None = None
    phone: str | None = Field(default=None, max_length=64)
    source: str | None = Field(default=None, max_length=255)
    program_interest: str | None = None
    target_country: str | None = Field(default=None, max_length=128)
    budget: Decimal | None = Field(default=None, ge=0)
    notes: str | None = None
    assigned_agent_id: UUID | None = None
    status: str | None = Field(default=None, min_length=1, max_length=64)
    custom_fields: dict[str, Any] | None = None


class LeadUpdate(LeadPatch):
    row_version: int


class LeadRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    tenant_id: UUID
    sub_account_id: UUID | None
    assigned_agent_id: UUID | None
    first_name: str
    last_name: str
    email: str
    phone: str | None
    source: str | None
    status: str
    score: int
    program_interest: str | None
    target_country: str | None
    budget: Decimal | None
    notes: str | None
    custom_fields: dict[str, Any]
    engagement_history: list[dict[str, Any]]
    is_active: bool
    created_at: datetime
    updated_at: datetime
    row_version: int


class LeadFilters(BaseModel):
    q: str | None = None
    status: str | None = None
    source: str | None = None
    assigned_agent_id: UUID | None = None
    min_score: int | None = Field(default=None, ge=0, le=100)
    max_score: int | None = Field(default=None, ge=0, le=100)
    target_country: str | None = None
    program_interest: str | None = None
    date_from: datetime | None = None
    date_to: datetime | None = None
    include_inactive: bool = False
    page: int = Field(default=1, ge=1)
    limit: int = Field(default=20, ge=1, le=200)


class LeadPage(BaseModel):
    items: list[LeadRead]
    page: int
    limit: int
    total: int
    pages: int


class EngagementCreate(BaseModel):
    type: str = Field(min_length=1, max_length=64)
    details: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class MergeDuplicatesRequest(BaseModel):
    primary_lead_id: UUID
    duplicate_lead_ids: list[UUID] = Field(min_length=1)


class MergeItemResult(BaseModel):
    duplicate_id: UUID
    success: bool
    error: str | None = None


class MergeDuplicatesResult(BaseModel):
    primary_lead: LeadRead
    results: list[MergeItemResult]


class BulkLeadRequest(BaseModel):
    operation: BulkLeadOperation
    lead_ids: list[UUID] = Field(min_length=1)
    data: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def validate_assign(self) -> BulkLeadRequest:
        if self.operation == "assign" and not self.data.get("assigned_agent_id"):
            raise ValueError("assign requires data.assigned_agent_id")
        return self


class BulkLeadResult(BaseModel):
    results: list[BulkItemResult]
    succeeded: int
    failed: int


class LeadImportRequest(BaseModel):
    leads: list[dict[str, Any]] = Field(min_length=1, max_length=1000)


class LeadImportRowError(BaseModel):
    row_number: int
    code: str
    message: str
    field: str | None = None


class LeadImportResult(BaseModel):
    successful: int
    failed: int
    duplicates: int
    errors: list[LeadImportRowError]
    created_ids: list[UUID]


class LeadAnalytics(BaseModel):
    total: int
    by_status: dict[str, int]
    by_source: dict[str, int]
    by_score: dict[str, int]
    by_month: dict[str, int]
    conversion_rates: dict[str, float]
    top_sources: list[dict[str, Any]]
    average_score: float


class ApplicationCreate(BaseModel):
    lead_id: UUID
    program_id: str = Field(min_length=1, max_length=255)
    assigned_agent_id: UUID | None = None
    notes: str | None = None


class ApplicationRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    tenant_id: UUID
    sub_account_id: UUID | None
    lead_id: UUID
    program_id: str
    assigned_agent_id: UUID | None
    status: str
    submitted_at: datetime | None
    decision_date: datetime | None
    decision_type: str | None
    notes: str | None
    timeline: list[dict[str, Any]]
    created_at: datetime
    updated_at: datetime
    row_version: int


class SubAccountCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    description: str | None = None
    settings: dict[str, Any] = Field(default_factory=dict)


class SubAccountUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=255)
    description: str | None = None
    settings: dict[str, Any] | None = None


class SubAccountRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    tenant_id: UUID
    name: str
    description: str | None
    settings: dict[str, Any]
    created_at: datetime
    updated_at: datetime


class ContextRead(BaseModel):
    tenant_id: UUID
    tenant_name: str
    user_id: UUID
    role: str
    sub_account_id: UUID | None
    scope_sub_account_id: UUID | None


class UserRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    tenant_id: UUID
    sub_account_id: UUID | None
    email: str
    first_name: str | None
    last_name: str | None
    role: str
    is_active: bool


class SubAccountUserAssign(BaseModel):
    user_id: UUID
