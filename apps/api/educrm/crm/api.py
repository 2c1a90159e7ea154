from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Query, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from educrm.context import get_correlation_id
from educrm.core.auth import get_principal
from educrm.core.database import get_db
from educrm.crm.pipelines import PipelineService
from educrm.crm.schemas import (
    ApplicationCreate,
    ApplicationRead,
    BulkLeadRequest,
    BulkLeadResult,
    BulkMoveRequest,
    BulkMoveResult,
    DefaultPipelineCreate,
    EngagementCreate,
    LeadAnalytics,
    LeadCreate,
    LeadFilters,
    LeadImportRequest,
    LeadImportResult,
    LeadPage,
    LeadRead,
    LeadUpdate,
    MergeDuplicatesRequest,
    MergeDuplicatesResult,
    MoveItemRequest,
    MoveItemResult,
    PipelineAnalytics,
    PipelineCreate,
    PipelineItemsRead,
    PipelineRead,
    PipelineType,
    PipelineUpdate,
    SubAccountCreate,
    SubAccountRead,
    SubAccountUpdate,
    SubAccountUserAssign,
    UserRead,
)
from educrm.crm.service import ApplicationService, LeadService, SubAccountService
from educrm.tenancy.context import Principal, TenantContext
from educrm.tenancy.errors import CRMError
from educrm.tenancy.guard import require_authenticated
from educrm.tenancy.resolver import build_tenant_context

leads_router = APIRouter(prefix="/api/crm", tags=["crm.leads"])
applications_router = APIRouter(prefix="/api/crm", tags=["crm.applications"])
pipelines_router = APIRouter(prefix="/api/crm", tags=["crm.pipelines"])
sub_accounts_router = APIRouter(prefix="/api/crm", tags=["crm.sub_accounts"])
lead_service = LeadService()
application_service = ApplicationService()
pipeline_service = PipelineService()
sub_account_service = SubAccountService()


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    correlation_id = get_correlation_id() or getattr(request.state, "correlation_id", None)
    payload = ErrorEnvelope(
        code=code,
        message=message,
        details=details,
        correlation_id=correlation_id,
    )
    return JSONResponse(status_code=status_code, content=payload.__dict__)


async def crm_error_handler(request: Request, exc: CRMError) -> JSONResponse:
    return error_response(
        request,
        status_code=exc.status_code,
        code=exc.code,
        message=exc.message,
        details=exc.details,
    )


async def request_validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return error_response(
        request,
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        code="validation_error",
        message="request validation failed",
        details=[
            {"loc": list(error.get("loc", ())), "msg": error.get("msg"), "type": error.get("type")}
            for error in exc.errors()
        ],
    )


def get_tenant_context(
    request: Request,
    principal: Principal | None = Depends(get_principal),
    db: Session = Depends(get_db),
) -> TenantContext:
    principal = require_authenticated(principal)
    return build_tenant_context(
        db,
        principal,
        correlation_id=get_correlation_id() or getattr(request.state, "correlation_id", None),
    )


@leads_router.post("/leads", response_model=LeadRead, status_code=status.HTTP_201_CREATED)
def create_lead(
    dto: LeadCreate,
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
) -> LeadRead:
    return lead_service.create_lead(db, ctx, dto)


@leads_router.get("/leads", response_model=LeadPage)
def list_leads(
    q: str | None = Query(default=None),
    status_filter: str | None = Query(default=None, alias="status"),
    source: str | None = Query(default=None),
    assigned_agent_id: uuid.UUID | None = Query(default=None),
    min_score: int | None = Query(default=None, ge=0, le=100),
    max_score: int | None = Query(default=None, ge=0, le=100),
    target_country: str | None = Query(default=None),
    program_interest: str | None = Query(default=None),
    date_from: datetime | None = Query(default=None),
    date_to: datetime | None = Query(default=None),
    include_inactive: bool = Query(default=False),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=200),
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
) -> LeadPage:
    filters = LeadFilters(
        q=q,
        status=status_filter,
        source=source,
        assigned_agent_id=assigned_agent_id,
        min_score=min_score,
        max_score=max_score,
        target_country=target_country,
        program_interest=program_interest,
        date_from=date_from,
        date_to=date_to,
        include_inactive=include_inactive,
        page=page,
        limit=limit,
    )
    return lead_service.list_leads(db, ctx, filters)


@leads_router.get("/leads/analytics", response_model=LeadAnalytics)
def lead_analytics(
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
) -> LeadAnalytics:
    return lead_service.lead_analytics(db, ctx)


@leads_router.post("/leads/bulk", response_model=BulkLeadResult)
def bulk_update_leads(
    dto: BulkLeadRequest,
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
) -> BulkLeadResult:
    return lead_service.bulk_update(db, ctx, dto)


@leads_router.post("/leads/import", response_model=LeadImportResult)
def import_leads(
    dto: LeadImportRequest,
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
) -> LeadImportResult:
    return lead_service.import_leads(db, ctx, dto)


@leads_router.post("/leads/merge-duplicates", response_model=MergeDuplicatesResult)
def merge_duplicate_leads(
    dto: MergeDuplicatesRequest,
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
) -> MergeDuplicatesResult:
    return lead_service.merge_duplicates(db, ctx, dto)


@leads_router.get("/leads/{lead_id}", response_model=LeadRead)
def get_lead(
    lead_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
) -> LeadRead:
    return lead_service.get_lead(db, ctx, lead_id)


@leads_router.put("/leads/{lead_id}", response_model=LeadRead)
def update_lead(
    lead_id: uuid.UUID,
    dto: LeadUpdate,
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
) -> LeadRead:
    return lead_service.update_lead(db, ctx, lead_id, dto)


@leads_router.delete("/leads/{lead_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_lead(
    lead_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
) -> Response:
    lead_service.delete_lead(db, ctx, lead_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@leads_router.post("/leads/{lead_id}/engagement", response_model=LeadRead)
def record_engagement(
    lead_id: uuid.UUID,
    dto: EngagementCreate,
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
) -> LeadRead:
    return lead_service.record_engagement(db, ctx, lead_id, dto)


@applications_router.post("/applications", response_model=ApplicationRead, status_code=status.HTTP_201_CREATED)
def create_application(
    dto: ApplicationCreate,
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
) -> ApplicationRead:
    return application_service.create_application(db, ctx, dto)


@applications_router.get("/applications", response_model=list[ApplicationRead])
def list_applications(
    status_filter: str | None = Query(default=None, alias="status"),
    lead_id: uuid.UUID | None = Query(default=None),
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
) -> list[ApplicationRead]:
    return application_service.list_applications(db, ctx, status=status_filter, lead_id=lead_id)


@applications_router.get("/applications/{application_id}", response_model=ApplicationRead)
def get_application(
    application_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
) -> ApplicationRead:
    return application_service.get_application(db, ctx, application_id)


@pipelines_router.get("/pipelines", response_model=list[PipelineRead])
def list_pipelines(
    pipeline_type: PipelineType | None = Query(default=None, alias="type"),
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
) -> list[PipelineRead]:
    return pipeline_service.list_pipelines(db, ctx, pipeline_type)


@pipelines_router.post("/pipelines", response_model=PipelineRead, status_code=status.HTTP_201_CREATED)
def create_pipeline(
    dto: PipelineCreate,
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
) -> PipelineRead:
    return pipeline_service.create_pipeline(db, ctx, dto)


@pipelines_router.post(
    "/pipelines/create-default",
    response_model=PipelineRead,
    status_code=status.HTTP_201_CREATED,
)
def create_default_pipeline(
    dto: DefaultPipelineCreate,
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
) -> PipelineRead:
    return pipeline_service.create_default_pipeline(db, ctx, dto)


@pipelines_router.get("/pipelines/{pipeline_id}", response_model=PipelineRead)
def get_pipeline(
    pipeline_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
) -> PipelineRead:
    return pipeline_service.get_pipeline(db, ctx, pipeline_id)


@pipelines_router.put("/pipelines/{pipeline_id}", response_model=PipelineRead)
def update_pipeline(
    pipeline_id: uuid.UUID,
    dto: PipelineUpdate,
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
) -> PipelineRead:
    return pipeline_service.update_pipeline(db, ctx, pipeline_id, dto)


@pipelines_router.delete("/pipelines/{pipeline_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_pipeline(
    pipeline_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
) -> Response:
    pipeline_service.delete_pipeline(db, ctx, pipeline_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@pipelines_router.get("/pipelines/{pipeline_id}/items", response_model=PipelineItemsRead)
def get_pipeline_items(
    pipeline_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
) -> PipelineItemsRead:
    return pipeline_service.get_items(db, ctx, pipeline_id)


@pipelines_router.put("/pipelines/{pipeline_id}/items/{item_id}/move", response_model=MoveItemResult)
def move_pipeline_item(
    pipeline_id: uuid.UUID,
    item_id: uuid.UUID,
    dto: MoveItemRequest,
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
) -> MoveItemResult:
    return pipeline_service.move_item(db, ctx, pipeline_id, item_id, dto.from_stage, dto.to_stage, dto.notes)


@pipelines_router.post("/pipelines/{pipeline_id}/items/bulk-move", response_model=BulkMoveResult)
def bulk_move_pipeline_items(
    pipeline_id: uuid.UUID,
    dto: BulkMoveRequest,
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
) -> BulkMoveResult:
    return pipeline_service.bulk_move(db, ctx, pipeline_id, dto.item_ids, dto.to_stage)


@pipelines_router.get("/pipelines/{pipeline_id}/analytics", response_model=PipelineAnalytics)
def get_pipeline_analytics(
    pipeline_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
) -> PipelineAnalytics:
    return pipeline_service.get_analytics(db, ctx, pipeline_id)


@sub_accounts_router.get("/sub-accounts", response_model=list[SubAccountRead])
def list_sub_accounts(
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
) -> list[SubAccountRead]:
    return sub_account_service.list_sub_accounts(db, ctx)


@sub_accounts_router.post("/sub-accounts", response_model=SubAccountRead, status_code=status.HTTP_201_CREATED)
def create_sub_account(
    dto: SubAccountCreate,
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
) -> SubAccountRead:
    return sub_account_service.create_sub_account(db, ctx, dto)


@sub_accounts_router.get("/sub-accounts/{sub_account_id}", response_model=SubAccountRead)
def get_sub_account(
    sub_account_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
) -> SubAccountRead:
    return sub_account_service.get_sub_account(db, ctx, sub_account_id)


@sub_accounts_router.put("/sub-accounts/{sub_account_id}", response_model=SubAccountRead)
def update_sub_account(
    sub_account_id: uuid.UUID,
    dto: SubAccountUpdate,
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
) -> SubAccountRead:
    return sub_account_service.update_sub_account(db, ctx, sub_account_id, dto)


@sub_accounts_router.delete("/sub-accounts/{sub_account_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_sub_account(
    sub_account_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
) -> Response:
    sub_account_service.delete_sub_account(db, ctx, sub_account_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@sub_accounts_router.get("/sub-accounts/{sub_account_id}/users", response_model=list[UserRead])
def list_sub_account_users(
    sub_account_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
) -> list[UserRead]:
    return sub_account_service.list_users(db, ctx, sub_account_id)


@sub_accounts_router.post("/sub-accounts/{sub_account_id}/users", response_model=UserRead)
def assign_sub_account_user(
    sub_account_id: uuid.UUID,
    dto: SubAccountUserAssign,
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
) -> UserRead:
    return sub_account_service.assign_user(db, ctx, sub_account_id, dto.user_id)


@sub_accounts_router.delete(
    "/sub-accounts/{sub_account_id}/users/{user_id}",
    status_code=status.HTTP_204_NO_CONTENT,
)
def remove_sub_account_user(
    sub_account_id: uuid.UUID,
    user_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
) -> Response:
    sub_account_service.remove_user(db, ctx, sub_account_id, user_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
