from __future__ import annotations

import uuid
from collections.abc import Generator

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import audit, events
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.crm.api import get_current_user as crm_get_current_user
from app.crm.seed import ensure_catalog
from app.crm.service import ActorUser
from app.main import app


ALL_PERMISSIONS = {
    "crm.leads.read",
    "crm.leads.create",
    "crm.leads.close",
}


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
    ensure_catalog(session)
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def clear_stubs() -> Generator[None, None, None]:
    audit.audit_entries.clear()
    events.published_events.clear()
    get_settings.cache_clear()
    yield
    audit.audit_entries.clear()
    events.published_events.clear()
    get_settings.cache_clear()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user(request: Request) -> ActorUser:
        return ActorUser(
            user_id="user-1",
            permissions=ALL_PERMISSIONS,
            correlation_id=getattr(request.state, "correlation_id", None),
        )

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[crm_get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _create_lead(client: TestClient, correlation_id: str) -> dict:
    response = client.post(
        "/api/crm/leads",
        json={
            "company_name": "Corr Lead",
            "contact_name": "Corr Contact",
            "email": "corr@example.com",
            "service_type": "otro",
        },
        headers={"X-Correlation-Id": correlation_id},
    )
    assert response.status_code == 201
    return response.json()["lead"]


def test_generated_correlation_id_returned_in_header_and_error_envelope(client: TestClient) -> None:
    response = client.get(f"/api/crm/leads/{uuid.uuid4()}")
    assert response.status_code == 404
    header_value = response.headers.get("x-correlation-id")
    assert header_value
    body = response.json()
    assert body["correlation_id"] == header_value


def test_correlation_id_respected_when_provided(client: TestClient) -> None:
    response = client.get(f"/api/crm/leads/{uuid.uuid4()}", headers={"X-Correlation-Id": "abc-123"})
    assert response.status_code == 404
    assert response.headers.get("x-correlation-id") == "abc-123"
    assert response.json()["correlation_id"] == "abc-123"


def test_oversized_correlation_id_is_replaced(client: TestClient) -> None:
    response = client.get("/health", headers={"X-Correlation-Id": "x" * 200})
    assert response.status_code == 200
    header_value = response.headers.get("x-correlation-id")
    assert header_value
    assert header_value != "x" * 200


def test_audit_uses_request_correlation_id(client: TestClient) -> None:
    lead = _create_lead(client, "corr-audit-1")

    lead_audits = [entry for entry in audit.audit_entries if entry.get("entity_id") == lead["id"]]
    assert lead_audits
    assert lead_audits[-1]["correlation_id"] == "corr-audit-1"


def test_event_envelope_includes_correlation_id(client: TestClient) -> None:
    lead = _create_lead(client, "corr-event-1")

    won = client.post(
        f"/api/crm/leads/{lead['id']}/mark-won",
        json={"client_action": "create"},
        headers={"X-Correlation-Id": "corr-event-2"},
    )
    assert won.status_code == 200

    created_events = [item for item in events.published_events if item.get("event_type") == "crm.lead.created"]
    won_events = [item for item in events.published_events if item.get("event_type") == "crm.lead.won"]
    assert created_events[-1].get("correlation_id") == "corr-event-1"
    assert won_events[-1].get("correlation_id") == "corr-event-2"
