from __future__ import annotations

import logging
import uuid
from collections.abc import Generator
from types import SimpleNamespace

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from educrm.core.auth import decode_principal, encode_principal
from educrm.core.database import Base
from educrm.crm.models import Lead
from educrm.tenancy import (
    ForbiddenError,
    NotFoundError,
    Principal,
    Role,
    Scope,
    TenantContext,
    TenantInfo,
    UnauthorizedError,
    apply_scope_filter,
    build_tenant_context,
    can_access,
    has_at_least,
    parse_role,
    require_authenticated,
    require_ownership,
    require_role,
    require_tenant_scope,
)
from educrm.tenancy.models import SubAccount, Tenant


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


def _ctx(role: Role, *, tenant_id: uuid.UUID | None = None, sub_account_id: uuid.UUID | None = None) -> TenantContext:
    tenant_id = tenant_id or uuid.uuid4()
    return TenantContext(
        tenant_id=tenant_id,
        user_id=uuid.uuid4(),
        user_role=role,
        tenant=TenantInfo(id=tenant_id, name="T", domain=None),
        sub_account_id=sub_account_id,
    )


def test_roles_are_totally_ordered() -> None:
    ordered = [Role.STUDENT, Role.AGENT, Role.SUB_ACCOUNT_ADMIN, Role.TENANT_ADMIN]
    for lower_index, lower in enumerate(ordered):
        for higher in ordered[lower_index:]:
            assert has_at_least(higher, lower)
        for higher in ordered[lower_index + 1 :]:
            assert not has_at_least(lower, higher)


def test_parse_role_rejects_unknown_values() -> None:
    assert parse_role(" Tenant_Admin ") is Role.TENANT_ADMIN
    with pytest.raises(ValueError):
        parse_role("super_admin")


def test_require_authenticated_rejects_missing_principal() -> None:
    with pytest.raises(UnauthorizedError):
        require_authenticated(None)


def test_require_role_denies_lower_roles(caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)
    require_role(_ctx(Role.TENANT_ADMIN), Role.AGENT)
    with pytest.raises(ForbiddenError):
        require_role(_ctx(Role.STUDENT), Role.AGENT)

    denials = [record for record in caplog.records if record.getMessage() == "tenancy.denied"]
    assert denials and getattr(denials[-1], "reason", None) == "insufficient_role"


def test_scope_is_tenant_wide_for_admins_even_with_sub_account() -> None:
    sub_account_id = uuid.uuid4()
    admin = _ctx(Role.TENANT_ADMIN, sub_account_id=sub_account_id)
    agent = _ctx(Role.AGENT, sub_account_id=sub_account_id)
    unassigned = _ctx(Role.AGENT)

    assert require_tenant_scope(admin).is_tenant_wide
    assert require_tenant_scope(agent) == Scope(tenant_id=agent.tenant_id, sub_account_id=sub_account_id)
    assert require_tenant_scope(unassigned).is_tenant_wide


def test_require_ownership_hides_other_tenants() -> None:
    ctx = _ctx(Role.TENANT_ADMIN)
    foreign = SimpleNamespace(tenant_id=uuid.uuid4(), sub_account_id=None)

    with pytest.raises(NotFoundError):
        require_ownership(ctx, foreign, "lead")
    with pytest.raises(NotFoundError):
        require_ownership(ctx, None, "lead")
    assert not can_access(ctx, foreign)


def test_require_ownership_forbids_other_sub_account() -> None:
    tenant_id = uuid.uuid4()
    own = uuid.uuid4()
    ctx = _ctx(Role.AGENT, tenant_id=tenant_id, sub_account_id=own)

    mine = SimpleNamespace(tenant_id=tenant_id, sub_account_id=own)
    theirs = SimpleNamespace(tenant_id=tenant_id, sub_account_id=uuid.uuid4())
    tenant_level = SimpleNamespace(tenant_id=tenant_id, sub_account_id=None)

    assert require_ownership(ctx, mine, "lead") is mine
    with pytest.raises(ForbiddenError):
        require_ownership(ctx, theirs, "lead")
    with pytest.raises(ForbiddenError):
        require_ownership(ctx, tenant_level, "pipeline")


def test_build_tenant_context_resolves_sub_account(db_session: Session) -> None:
    tenant = Tenant(name="Acme Education", settings={"allow_sub_accounts": True})
    db_session.add(tenant)
    db_session.flush()
    branch = SubAccount(tenant_id=tenant.id, name="Lagos", settings={})
    db_session.add(branch)
    db_session.commit()

    principal = Principal(user_id=uuid.uuid4(), tenant_id=tenant.id, role=Role.AGENT, sub_account_id=branch.id)
    ctx = build_tenant_context(db_session, principal, correlation_id="corr-1")

    assert ctx.tenant.name == "Acme Education"
    assert ctx.sub_account is not None and ctx.sub_account.name == "Lagos"
    assert ctx.is_confined
    assert ctx.correlation_id == "corr-1"


def test_build_tenant_context_unknown_tenant(db_session: Session) -> None:
    principal = Principal(user_id=uuid.uuid4(), tenant_id=uuid.uuid4(), role=Role.AGENT)
    with pytest.raises(NotFoundError):
        build_tenant_context(db_session, principal)


def test_missing_sub_account_falls_back_to_tenant_scope(
    db_session: Session,
    caplog: pytest.LogCaptureFixture,
) -> None:
    tenant = Tenant(name="Acme", settings={})
    db_session.add(tenant)
    db_session.commit()
    principal = Principal(user_id=uuid.uuid4(), tenant_id=tenant.id, role=Role.AGENT, sub_account_id=uuid.uuid4())

    caplog.set_level(logging.WARNING)
    ctx = build_tenant_context(db_session, principal, strict_sub_account=False)
    assert ctx.sub_account_id is None
    assert not ctx.is_confined
    assert any(record.getMessage() == "tenancy.sub_account_missing" for record in caplog.records)

    with pytest.raises(NotFoundError):
        build_tenant_context(db_session, principal, strict_sub_account=True)


def test_sub_account_of_another_tenant_is_treated_as_missing(db_session: Session) -> None:
    tenant_a = Tenant(name="A", settings={})
    tenant_b = Tenant(name="B", settings={})
    db_session.add_all([tenant_a, tenant_b])
    db_session.flush()
    foreign_branch = SubAccount(tenant_id=tenant_b.id, name="B branch", settings={})
    db_session.add(foreign_branch)
    db_session.commit()

    principal = Principal(
        user_id=uuid.uuid4(),
        tenant_id=tenant_a.id,
        role=Role.AGENT,
        sub_account_id=foreign_branch.id,
    )
    ctx = build_tenant_context(db_session, principal, strict_sub_account=False)
    assert ctx.sub_account_id is None


def test_scope_filter_never_leaks_across_tenants_or_sub_accounts(db_session: Session) -> None:
    tenant_a = Tenant(name="A", settings={})
    tenant_b = Tenant(name="B", settings={})
    db_session.add_all([tenant_a, tenant_b])
    db_session.flush()
    branch_1 = SubAccount(tenant_id=tenant_a.id, name="1", settings={})
    branch_2 = SubAccount(tenant_id=tenant_a.id, name="2", settings={})
    db_session.add_all([branch_1, branch_2])
    db_session.flush()

    def lead(tenant_id: uuid.UUID, sub_account_id: uuid.UUID | None, email: str) -> Lead:
        return Lead(
            tenant_id=tenant_id,
            sub_account_id=sub_account_id,
            first_name="X",
            last_name="Y",
            email=email,
            custom_fields={},
            engagement_history=[],
        )

    db_session.add_all(
        [
            lead(tenant_a.id, branch_1.id, "a1@x.org"),
            lead(tenant_a.id, branch_2.id, "a2@x.org"),
            lead(tenant_a.id, None, "a0@x.org"),
            lead(tenant_b.id, None, "b0@x.org"),
        ]
    )
    db_session.commit()

    def emails(scope: Scope) -> set[str]:
        return {row.email for row in db_session.scalars(apply_scope_filter(select(Lead), scope))}

    assert emails(Scope(tenant_id=tenant_a.id)) == {"a1@x.org", "a2@x.org", "a0@x.org"}
    assert emails(Scope(tenant_id=tenant_a.id, sub_account_id=branch_1.id)) == {"a1@x.org"}
    assert emails(Scope(tenant_id=tenant_b.id)) == {"b0@x.org"}


def test_token_round_trip_and_bad_claims() -> None:
    principal = Principal(
        user_id=uuid.uuid4(),
        tenant_id=uuid.uuid4(),
        role=Role.SUB_ACCOUNT_ADMIN,
        sub_account_id=uuid.uuid4(),
    )
    assert decode_principal(encode_principal(principal)) == principal

    unknown_role = Principal(user_id=uuid.uuid4(), tenant_id=uuid.uuid4(), role=Role.AGENT)
    token = encode_principal(unknown_role, role="owner")
    assert decode_principal(token) is None
    assert decode_principal("not-a-token") is None
