from __future__ import annotations

import uuid
from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from educrm.core.auth import encode_principal
from educrm.core.config import get_settings
from educrm.core.database import Base, get_db
from educrm.main import app
from educrm.tenancy.context import Principal
from educrm.tenancy.models import SubAccount, Tenant, User
from educrm.tenancy.roles import Role


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


@pytest.fixture(autouse=True)
def setup_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "true")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def tenant(db_session: Session) -> Tenant:
    row = Tenant(name="Horizon Education", settings={"max_sub_accounts": 2})
    db_session.add(row)
    db_session.commit()
    return row


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _auth(tenant_id: uuid.UUID, role: Role, sub_account_id: uuid.UUID | None = None) -> dict[str, str]:
    principal = Principal(user_id=uuid.uuid4(), tenant_id=tenant_id, role=role, sub_account_id=sub_account_id)
    return {"Authorization": f"Bearer {encode_principal(principal)}"}


def test_tenant_admin_manages_sub_accounts(client: TestClient, tenant: Tenant) -> None:
    admin = _auth(tenant.id, Role.TENANT_ADMIN)

    created = client.post("/api/crm/sub-accounts", json={"name": "  Mumbai Office "}, headers=admin)
    assert created.status_code == 201
    assert created.json()["name"] == "Mumbai Office"
    sub_account_id = created.json()["id"]

    updated = client.put(
        f"/api/crm/sub-accounts/{sub_account_id}",
        json={"description": "West region"},
        headers=admin,
    )
    assert updated.status_code == 200
    assert updated.json()["description"] == "West region"

    listing = client.get("/api/crm/sub-accounts", headers=admin)
    assert [item["id"] for item in listing.json()] == [sub_account_id]

    deleted = client.delete(f"/api/crm/sub-accounts/{sub_account_id}", headers=admin)
    assert deleted.status_code == 204
    assert client.get(f"/api/crm/sub-accounts/{sub_account_id}", headers=admin).status_code == 404


def test_sub_account_limit_is_enforced(client: TestClient, tenant: Tenant) -> None:
    admin = _auth(tenant.id, Role.TENANT_ADMIN)
    assert client.post("/api/crm/sub-accounts", json={"name": "One"}, headers=admin).status_code == 201
    assert client.post("/api/crm/sub-accounts", json={"name": "Two"}, headers=admin).status_code == 201

    third = client.post("/api/crm/sub-accounts", json={"name": "Three"}, headers=admin)
    assert third.status_code == 409


def test_sub_accounts_disabled_for_tenant(client: TestClient, db_session: Session) -> None:
    locked = Tenant(name="Solo Consultant", settings={"allow_sub_accounts": False})
    db_session.add(locked)
    db_session.commit()

    response = client.post(
        "/api/crm/sub-accounts",
        json={"name": "Nope"},
        headers=_auth(locked.id, Role.TENANT_ADMIN),
    )
    assert response.status_code == 422


def test_only_tenant_admin_creates_sub_accounts(client: TestClient, tenant: Tenant) -> None:
    response = client.post("/api/crm/sub-accounts", json={"name": "Rogue"}, headers=_auth(tenant.id, Role.AGENT))
    assert response.status_code == 403


def test_confined_user_sees_only_own_sub_account(client: TestClient, db_session: Session, tenant: Tenant) -> None:
    own = SubAccount(tenant_id=tenant.id, name="Delhi", settings={})
    other = SubAccount(tenant_id=tenant.id, name="Pune", settings={})
    db_session.add_all([own, other])
    db_session.commit()

    agent = _auth(tenant.id, Role.AGENT, own.id)
    listing = client.get("/api/crm/sub-accounts", headers=agent)
    assert [item["id"] for item in listing.json()] == [str(own.id)]
    assert client.get(f"/api/crm/sub-accounts/{other.id}", headers=agent).status_code == 403


def test_assign_and_remove_users(client: TestClient, db_session: Session, tenant: Tenant) -> None:
    branch = SubAccount(tenant_id=tenant.id, name="Chennai", settings={})
    user = User(tenant_id=tenant.id, email="counsellor@horizon.edu", role="agent")
    db_session.add_all([branch, user])
    db_session.commit()
    admin = _auth(tenant.id, Role.TENANT_ADMIN)

    assigned = client.post(f"/api/crm/sub-accounts/{branch.id}/users", json={"user_id": str(user.id)}, headers=admin)
    assert assigned.status_code == 200
    assert assigned.json()["sub_account_id"] == str(branch.id)

    members = client.get(f"/api/crm/sub-accounts/{branch.id}/users", headers=admin)
    assert [item["email"] for item in members.json()] == ["counsellor@horizon.edu"]

    blocked = client.delete(f"/api/crm/sub-accounts/{branch.id}", headers=admin)
    assert blocked.status_code == 409

    removed = client.delete(f"/api/crm/sub-accounts/{branch.id}/users/{user.id}", headers=admin)
    assert removed.status_code == 204
    assert client.get(f"/api/crm/sub-accounts/{branch.id}/users", headers=admin).json() == []


def test_context_endpoint_reports_effective_scope(client: TestClient, db_session: Session, tenant: Tenant) -> None:
    branch = SubAccount(tenant_id=tenant.id, name="Kochi", settings={})
    db_session.add(branch)
    db_session.commit()

    confined = client.get("/api/me", headers=_auth(tenant.id, Role.AGENT, branch.id))
    assert confined.status_code == 200
    assert confined.json()["scope_sub_account_id"] == str(branch.id)
    assert confined.json()["tenant_name"] == "Horizon Education"

    admin = client.get("/api/me", headers=_auth(tenant.id, Role.TENANT_ADMIN, branch.id))
    assert admin.json()["scope_sub_account_id"] is None


def test_sub_account_lookup_failure_maps_to_storage_error(
    client: TestClient,
    db_session: Session,
    tenant: Tenant,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    branch = SubAccount(tenant_id=tenant.id, name="Jaipur", settings={})
    db_session.add(branch)
    db_session.commit()
    admin = _auth(tenant.id, Role.TENANT_ADMIN)
    original_get = db_session.get

    def failing_get(entity, ident, **kwargs):
        if entity is SubAccount:
            raise OperationalError("SELECT sub_accounts", {}, Exception("connection lost"))
        return original_get(entity, ident, **kwargs)

    monkeypatch.setattr(db_session, "get", failing_get)

    for response in (
        client.get(f"/api/crm/sub-accounts/{branch.id}", headers=admin),
        client.get(f"/api/crm/sub-accounts/{branch.id}/users", headers=admin),
        client.delete(f"/api/crm/sub-accounts/{branch.id}", headers=admin),
    ):
        assert response.status_code == 503
        assert response.json()["code"] == "storage_error"
        assert response.json()["message"] == "sub-account lookup failed"
