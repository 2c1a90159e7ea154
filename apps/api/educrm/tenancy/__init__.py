from educrm.tenancy.context import Principal, Scope, SubAccountInfo, TenantContext, TenantInfo
from educrm.tenancy.errors import (
    ConflictError,
    CRMError,
    ForbiddenError,
    NotFoundError,
    StorageError,
    UnauthorizedError,
    ValidationError,
)
from educrm.tenancy.guard import (
    can_access,
    require_authenticated,
    require_ownership,
    require_role,
    require_sub_account_member,
    require_tenant_scope,
)
from educrm.tenancy.repository import ScopedRepository, apply_scope_filter
from educrm.tenancy.resolver import build_tenant_context
from educrm.tenancy.roles import Role, has_at_least, parse_role

__all__ = [
    "Principal",
    "Scope",
    "SubAccountInfo",
    "TenantContext",
    "TenantInfo",
    "CRMError",
    "ConflictError",
    "ForbiddenError",
    "NotFoundError",
    "StorageError",
    "UnauthorizedError",
    "ValidationError",
    "can_access",
    "require_authenticated",
    "require_ownership",
    "require_role",
    "require_sub_account_member",
    "require_tenant_scope",
    "ScopedRepository",
    "apply_scope_filter",
    "build_tenant_context",
    "Role",
    "has_at_least",
    "parse_role",
]
