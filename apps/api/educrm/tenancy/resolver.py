from __future__ import annotations

import logging

from sqlalchemy import and_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from educrm.core.config import get_settings
from educrm.tenancy.context import Principal, SubAccountInfo, TenantContext, TenantInfo
from educrm.tenancy.errors import NotFoundError, StorageError
from educrm.tenancy.models import SubAccount, Tenant


logger = logging.getLogger("educrm.tenancy")


def build_tenant_context(
    session: Session,
    principal: Principal,
    *,
    correlation_id: str | None = None,
    strict_sub_account: bool | None = None,
) -> TenantContext:
    """Load the tenant and sub-account referenced by ``principal``.

    A missing tenant invalidates the session. A missing (or foreign) sub-account is
    logged and, unless strict mode is on, the context continues without one, which
    leaves the user tenant-wide but still limited by role.
    """

    if strict_sub_account is None:
        strict_sub_account = get_settings().tenancy_strict_sub_account

    try:
        tenant = session.get(Tenant, principal.tenant_id)
        if tenant is None:
            raise NotFoundError("tenant not found")

        sub_account: SubAccount | None = None
        if principal.sub_account_id is not None:
            sub_account = session.scalar(
                select(SubAccount).where(
                    and_(
                        SubAccount.id == principal.sub_account_id,
                        SubAccount.tenant_id == tenant.id,
                        SubAccount.deleted_at.is_(None),
                    )
                )
            )
    except SQLAlchemyError as exc:
        raise StorageError("tenant lookup failed") from exc

    if principal.sub_account_id is not None and sub_account is None:
        logger.warning(
            "tenancy.sub_account_missing",
            extra={
                "user_id": str(principal.user_id),
                "sub_account_id": str(principal.sub_account_id),
                "reason": "strict" if strict_sub_account else "promoted_to_tenant_scope",
            },
        )
        if strict_sub_account:
            raise NotFoundError("sub-account not found")

    return TenantContext(
        tenant_id=tenant.id,
        user_id=principal.user_id,
        user_role=principal.role,
        tenant=TenantInfo(
            id=tenant.id,
            name=tenant.name,
            domain=tenant.domain,
            settings=dict(tenant.settings or {}),
        ),
        sub_account_id=sub_account.id if sub_account is not None else None,
        sub_account=(
            SubAccountInfo(
                id=sub_account.id,
                tenant_id=sub_account.tenant_id,
                name=sub_account.name,
                settings=dict(sub_account.settings or {}),
            )
            if sub_account is not None
            else None
        ),
        correlation_id=correlation_id,
    )
