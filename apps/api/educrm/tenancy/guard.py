from __future__ import annotations

import logging
import uuid
from typing import Any, Protocol

from educrm.metrics import observe_tenant_scope_denial
from educrm.tenancy.context import Principal, Scope, TenantContext
from educrm.tenancy.errors import ForbiddenError, NotFoundError, UnauthorizedError
from educrm.tenancy.roles import Role, has_at_least


logger = logging.getLogger("educrm.tenancy")


class TenantOwned(Protocol):
    tenant_id: uuid.UUID
    sub_account_id: uuid.UUID | None


def require_authenticated(principal: Principal | None) -> Principal:
    if principal is None:
        raise UnauthorizedError("authentication required")
    return principal


def require_tenant_scope(ctx: TenantContext) -> Scope:
    """Narrow, never deny: returns the filter every storage call must apply."""

    return ctx.scope()


def require_role(ctx: TenantContext, at_least: Role) -> None:
    if has_at_least(ctx.user_role, at_least):
        return
    _deny(ctx, resource="role", reason="insufficient_role")
    raise ForbiddenError(f"{at_least.value} access required")


def require_ownership(ctx: TenantContext, resource: TenantOwned | None, resource_type: str) -> Any:
    """Verify ``resource`` is reachable from ``ctx``.

    Absent and cross-tenant resources both raise ``NotFoundError`` so that existence is
    never leaked across tenants. Confined roles additionally need a sub-account match.
    """

    if resource is None:
        raise NotFoundError(f"{resource_type} not found")

    if resource.tenant_id != ctx.tenant_id:
        _deny(ctx, resource=resource_type, reason="cross_tenant")
        raise NotFoundError(f"{resource_type} not found")

    require_sub_account_member(ctx, resource.sub_account_id, resource_type)
    return resource


def can_access(ctx: TenantContext, resource: TenantOwned) -> bool:
    if resource.tenant_id != ctx.tenant_id:
        return False
    return not ctx.is_confined or resource.sub_account_id == ctx.sub_account_id


def _deny(ctx: TenantContext, *, resource: str, reason: str) -> None:
    observe_tenant_scope_denial(resource=resource, reason=reason)
    logger.info(
        "tenancy.denied",
        extra={
            "user_id": ctx.actor_id,
            "role": ctx.user_role.value,
            "sub_account_id": str(ctx.sub_account_id) if ctx.sub_account_id else None,
            "resource": resource,
            "reason": reason,
        },
    )


def require_sub_account_member(ctx: TenantContext, sub_account_id: uuid.UUID | None, resource_type: str) -> None:
    if ctx.is_confined and sub_account_id != ctx.sub_account_id:
        _deny(ctx, resource=resource_type, reason="sub_account_mismatch")
        raise ForbiddenError("access denied")
