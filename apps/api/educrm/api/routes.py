from fastapi import APIRouter, Depends
from fastapi.responses import Response

from educrm.core.config import get_settings
from educrm.crm.api import (
    applications_router,
    get_tenant_context,
    leads_router,
    pipelines_router,
    sub_accounts_router,
)
from educrm.crm.schemas import ContextRead
from educrm.metrics import generate_metrics_payload, metrics_content_type
from educrm.tenancy.context import TenantContext
from educrm.tenancy.errors import NotFoundError
from educrm.tenancy.guard import require_role
from educrm.tenancy.roles import Role

router = APIRouter()
router.include_router(leads_router)
router.include_router(applications_router)
router.include_router(pipelines_router)
router.include_router(sub_accounts_router)


@router.get("/health", tags=["system"])
def health() -> dict[str, str]:
    settings = get_settings()
    return {
        "status": "ok",
        "service": settings.app_name,
        "environment": settings.app_env,
    }


@router.get("/api/me", response_model=ContextRead, tags=["auth"])
def me(ctx: TenantContext = Depends(get_tenant_context)) -> ContextRead:
    return ContextRead(
        tenant_id=ctx.tenant_id,
        tenant_name=ctx.tenant.name,
        user_id=ctx.user_id,
        role=ctx.user_role.value,
        sub_account_id=ctx.sub_account_id,
        scope_sub_account_id=ctx.scope().sub_account_id,
    )


@router.get("/metrics", tags=["system"])
def metrics(ctx: TenantContext = Depends(get_tenant_context)) -> Response:
    settings = get_settings()
    if not settings.metrics_enabled:
        raise NotFoundError("not found")
    require_role(ctx, Role.TENANT_ADMIN)
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())
