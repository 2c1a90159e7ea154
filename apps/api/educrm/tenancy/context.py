from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import Any

from educrm.tenancy.roles import Role, is_tenant_wide


@dataclass(frozen=True, slots=True)
class Principal:
    """Authenticated actor as resolved from the bearer token."""

    user_id: uuid.UUID
    tenant_id: uuid.UUID
    role: Role
    sub_account_id: uuid.UUID | None = None


@dataclass(frozen=True, slots=True)
class TenantInfo:
    id: uuid.UUID
    name: str
    domain: str | None
    settings: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class SubAccountInfo:
    id: uuid.UUID
    tenant_id: uuid.UUID
    name: str
    settings: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class Scope:
    """Explicit storage filter threaded into every scoped query.

    ``sub_account_id`` of ``None`` means tenant-wide.
    """

    tenant_id: uuid.UUID
    sub_account_id: uuid.UUID | None = None

    @property
    def is_tenant_wide(self) -> bool:
        return self.sub_account_id is None


@dataclass(frozen=True, slots=True)
class TenantContext:
    """Resolved scope for one request. Never shared across requests."""

    tenant_id: uuid.UUID
    user_id: uuid.UUID
    user_role: Role
    tenant: TenantInfo
    sub_account_id: uuid.UUID | None = None
    sub_account: SubAccountInfo | None = None
    correlation_id: str | None = None

    @property
    def actor_id(self) -> str:
        return str(self.user_id)

    @property
    def is_confined(self) -> bool:
        return not is_tenant_wide(self.user_role) and self.sub_account_id is not None

    def scope(self) -> Scope:
        if self.is_confined:
            return Scope(tenant_id=self.tenant_id, sub_account_id=self.sub_account_id)
        return Scope(tenant_id=self.tenant_id)
