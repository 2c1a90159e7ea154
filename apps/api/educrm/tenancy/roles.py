from __future__ import annotations

from enum import StrEnum


class Role(StrEnum):
    STUDENT = "student"
    AGENT = "agent"
    SUB_ACCOUNT_ADMIN = "sub_account_admin"
    TENANT_ADMIN = "tenant_admin"


ROLE_RANK: dict[Role, int] = {
    Role.STUDENT: 0,
    Role.AGENT: 1,
    Role.SUB_ACCOUNT_ADMIN: 2,
    Role.TENANT_ADMIN: 3,
}


def has_at_least(role: Role, required: Role) -> bool:
    return ROLE_RANK[role] >= ROLE_RANK[required]


def is_tenant_wide(role: Role) -> bool:
    """Only tenant admins see across sub-accounts; every other role is confined."""

    return role is Role.TENANT_ADMIN


def parse_role(value: str) -> Role:
    try:
        return Role(value.strip().lower())
    except ValueError as exc:
        raise ValueError(f"unknown role '{value}'") from exc
