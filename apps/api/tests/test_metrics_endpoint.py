from __future__ import annotations

import uuid
from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from educrm.core.auth import encode_principal
from educrm.core.config import get_settings
from educrm.core.database import Base, get_db
from educrm.main import app
from educrm.tenancy.context import Principal
from educrm.tenancy.models import SubAccount, Tenant
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
def configure_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("METRICS_ENABLED", "true")
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "true")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def tenant(db_session: Session) -> dict[str, uuid.UUID]:
    row = Tenant(name="Metrics Tenant", settings={})
    db_session.add(row)
    db_session.flush()
    branch_1 = SubAccount(tenant_id=row.id, name="One", settings={})
    branch_2 = SubAccount(tenant_id=row.id, name="Two", settings={})
    db_session.add_all([branch_1, branch_2])
    db_session.commit()
    return {"id": row.id, "s1": branch_1.id, "s2": branch_2.id}


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


def test_metrics_endpoint_exposes_http_and_crm_metrics(client: TestClient, tenant: dict[str, uuid.UUID]) -> None:
    admin = _auth(tenant["id"], Role.TENANT_ADMIN)
    assert client.get("/health").status_code == 200

    pipeline = client.post("/api/crm/pipelines/create-default", json={"type": "lead"}, headers=admin).json()
    lead = client.post(
        "/api/crm/leads",
        json={"first_name": "Metric", "last_name": "Lead", "email": "metric@example.org", "sub_account_id": str(tenant["s1"])},
        headers=admin,
    ).json()
    assert (
        client.post(
            "/api/crm/leads",
            json={"first_name": "Metric", "last_name": "Lead", "email": "metric@example.org"},
            headers=admin,
        ).status_code
        == 409
    )
    moved = client.put(
        f"/api/crm/pipelines/{pipeline['id']}/items/{lead['id']}/move",
        json={"from_stage": "new", "to_stage": "contacted"},
        headers=admin,
    )
    assert moved.status_code == 200

    denied = client.get(f"/api/crm/leads/{lead['id']}", headers=_auth(tenant["id"], Role.AGENT, tenant["s2"]))
    assert denied.status_code == 403

    metrics = client.get("/metrics", headers=admin)
    assert metrics.status_code == 200
    body = metrics.text

    assert "http_requests_total" in body
    assert "http_request_duration_seconds" in body
    assert 'path="/health"' in body
    assert 'pipeline_item_moves_total{pipeline_type="lead",outcome="moved"}' in body
    assert "lead_duplicates_rejected_total" in body
    assert 'tenant_scope_denials_total{resource="lead",reason="sub_account_mismatch"}' in body
    assert 'lead_enrichment_total{outcome="scored"}' in body


def test_metrics_require_tenant_admin(client: TestClient, tenant: dict[str, uuid.UUID]) -> None:
    response = client.get("/metrics", headers=_auth(tenant["id"], Role.SUB_ACCOUNT_ADMIN))
    assert response.status_code == 403


def test_metrics_hidden_when_disabled(
    client: TestClient,
    tenant: dict[str, uuid.UUID],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("METRICS_ENABLED", "false")
    get_settings.cache_clear()

    response = client.get("/metrics", headers=_auth(tenant["id"], Role.TENANT_ADMIN))
    assert response.status_code == 404
