from __future__ import annotations

import uuid
from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from educrm import events
from educrm.core.auth import encode_principal
from educrm.core.config import get_settings
from educrm.core.database import Base, get_db
from educrm.crm.models import Activity
from educrm.main import app
from educrm.tenancy.context import Principal
from educrm.tenancy.models import Tenant
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
def clear_stubs(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "true")
    events.published_events.clear()
    get_settings.cache_clear()
    yield
    events.published_events.clear()
    get_settings.cache_clear()


@pytest.fixture()
def headers(db_session: Session) -> dict[str, str]:
    tenant = Tenant(name="Corr Tenant", settings={})
    db_session.add(tenant)
    db_session.commit()
    principal = Principal(user_id=uuid.uuid4(), tenant_id=tenant.id, role=Role.TENANT_ADMIN)
    return {"Authorization": f"Bearer {encode_principal(principal)}"}


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def test_generated_correlation_id_returned_in_header_and_error_envelope(
    client: TestClient,
    headers: dict[str, str],
) -> None:
    response = client.get(f"/api/crm/leads/{uuid.uuid4()}", headers=headers)
    assert response.status_code == 404
    header_value = response.headers.get("x-correlation-id")
    assert header_value
    body = response.json()
    assert body["correlation_id"] == header_value
    assert body["code"] == "not_found"


def test_correlation_id_respected_when_provided(client: TestClient, headers: dict[str, str]) -> None:
    response = client.get(
        f"/api/crm/leads/{uuid.uuid4()}",
        headers={**headers, "X-Correlation-Id": "abc-123"},
    )
    assert response.status_code == 404
    assert response.headers.get("x-correlation-id") == "abc-123"
    assert response.json()["correlation_id"] == "abc-123"


def test_activity_and_event_carry_request_correlation_id(
    client: TestClient,
    db_session: Session,
    headers: dict[str, str],
) -> None:
    response = client.post(
        "/api/crm/leads",
        json={"first_name": "Corr", "last_name": "Lead", "email": "corr@example.org"},
        headers={**headers, "X-Correlation-Id": "corr-event-1"},
    )
    assert response.status_code == 201

    activity = db_session.scalar(select(Activity).where(Activity.activity_type == "lead_added"))
    assert activity is not None
    assert activity.details["correlation_id"] == "corr-event-1"

    created_events = [item for item in events.published_events if item.get("event_type") == "crm.lead.created"]
    assert created_events
    assert created_events[-1].get("correlation_id") == "corr-event-1"


def test_request_validation_errors_use_the_envelope(client: TestClient, headers: dict[str, str]) -> None:
    response = client.post(
        "/api/crm/leads",
        json={"first_name": "", "last_name": "Lead", "email": "not-an-email"},
        headers={**headers, "X-Correlation-Id": "corr-invalid"},
    )
    assert response.status_code == 422
    body = response.json()
    assert body["code"] == "validation_error"
    assert body["correlation_id"] == "corr-invalid"
    assert {tuple(item["loc"]) for item in body["details"]} >= {("body", "email"), ("body", "first_name")}


def test_request_id_header_is_accepted_and_malformed_ids_replaced(client: TestClient, headers: dict[str, str]) -> None:
    from_request_id = client.get("/api/crm/leads", headers={**headers, "X-Request-Id": "req-42"})
    assert from_request_id.headers["x-correlation-id"] == "req-42"

    malformed = client.get("/api/crm/leads", headers={**headers, "X-Correlation-Id": "bad id with spaces"})
    generated = malformed.headers["x-correlation-id"]
    assert generated != "bad id with spaces"
    assert uuid.UUID(generated)
