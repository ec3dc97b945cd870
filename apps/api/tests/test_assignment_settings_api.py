from __future__ import annotations

import uuid
from collections.abc import Callable, Generator
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, update
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import audit, events
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.crm.api import get_current_user
from app.crm.models import CRMLead
from app.crm.seed import ensure_catalog
from app.crm.service import ActorUser
from app.main import app


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
def client(db_session: Session) -> Generator[tuple[TestClient, Callable[[str], None]], None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    actors = {
        "admin": ActorUser(
            user_id="admin-1",
            permissions={"crm.leads.read", "crm.leads.create", "crm.settings.manage"},
            correlation_id="corr-settings",
        ),
        "seller": ActorUser(
            user_id="seller-1",
            permissions={"crm.leads.read", "crm.leads.create"},
            correlation_id="corr-settings",
        ),
    }
    state = {"current": "admin"}

    def override_get_current_user() -> ActorUser:
        return actors[state["current"]]

    def set_actor(name: str) -> None:
        state["current"] = name

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client, set_actor
    app.dependency_overrides.clear()


def _create_lead(client: TestClient, service_type: str, **overrides: object) -> dict:
    payload: dict[str, object] = {
        "company_name": "Hospital Regional Norte",
        "contact_name": "Carmen Ruiz",
        "phone": "944 333 222",
        "service_type": service_type,
        "source": "phone",
    }
    payload.update(overrides)
    response = client.post("/api/crm/leads", json=payload)
    assert response.status_code == 201
    return response.json()["lead"]


def test_assignment_rule_routes_new_leads(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client

    created = test_client.post(
        "/api/crm/assignment-rules",
        json={"service_type": "deteccion_metales", "user_id": "tecnico-7", "description": "Escáner Ferroscan"},
    )
    assert created.status_code == 201
    rule = created.json()
    assert rule["priority"] == 1
    assert rule["is_active"] is True

    duplicate = test_client.post(
        "/api/crm/assignment-rules",
        json={"service_type": "deteccion_metales", "user_id": "tecnico-8"},
    )
    assert duplicate.status_code == 409
    assert duplicate.json()["code"] == "crm_assignment_rule_create_failed"

    resolved = test_client.get("/api/crm/assignment-rules/resolve", params={"service_type": "deteccion_metales"})
    assert resolved.status_code == 200
    assert resolved.json() == {"service_type": "deteccion_metales", "user_id": "tecnico-7", "rule_id": rule["id"]}

    routed = _create_lead(test_client, "deteccion_metales")
    assert routed["assigned_user_id"] == "tecnico-7"

    explicit = _create_lead(test_client, "deteccion_metales", assigned_user_id="gerente-1", phone="911 000 111")
    assert explicit["assigned_user_id"] == "gerente-1"

    unrouted = _create_lead(test_client, "anclajes_quimicos", phone="922 000 222")
    assert unrouted["assigned_user_id"] is None


def test_inactive_rule_leaves_lead_unassigned(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    rule = test_client.post(
        "/api/crm/assignment-rules",
        json={"service_type": "pruebas_anclaje", "user_id": "tecnico-3"},
    ).json()

    deactivated = test_client.patch(f"/api/crm/assignment-rules/{rule['id']}", json={"is_active": False})
    assert deactivated.status_code == 200
    assert deactivated.json()["is_active"] is False

    resolved = test_client.get("/api/crm/assignment-rules/resolve", params={"service_type": "pruebas_anclaje"})
    assert resolved.json()["user_id"] is None
    assert _create_lead(test_client, "pruebas_anclaje")["assigned_user_id"] is None

    listed = test_client.get("/api/crm/assignment-rules")
    assert [item["id"] for item in listed.json()] == [rule["id"]]

    deleted = test_client.delete(f"/api/crm/assignment-rules/{rule['id']}")
    assert deleted.status_code == 200
    assert test_client.get("/api/crm/assignment-rules").json() == []
    assert test_client.delete(f"/api/crm/assignment-rules/{rule['id']}").status_code == 404


def test_rule_management_requires_settings_permission(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, set_actor = client
    set_actor("seller")

    response = test_client.post(
        "/api/crm/assignment-rules",
        json={"service_type": "otro", "user_id": "seller-1"},
    )
    assert response.status_code == 403
    assert test_client.patch("/api/crm/alert-settings/stalled_days", json={"value": 3}).status_code == 403
    assert test_client.get("/api/crm/alert-settings").status_code == 200


def test_alert_settings_are_seeded_in_order(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client

    response = test_client.get("/api/crm/alert-settings")
    assert response.status_code == 200
    assert [(item["setting_key"], item["value"], item["unit"]) for item in response.json()] == [
        ("no_contact_hours", 48, "hours"),
        ("quotation_no_response_days", 5, "days"),
        ("stalled_days", 14, "days"),
    ]


def test_alert_settings_drive_lead_alerts(
    client: tuple[TestClient, Callable[[str], None]],
    db_session: Session,
) -> None:
    test_client, _ = client
    lead = _create_lead(test_client, "otro")
    two_hours_ago = datetime.now(timezone.utc) - timedelta(hours=2)
    db_session.execute(
        update(CRMLead)
        .where(CRMLead.id == uuid.UUID(lead["id"]))
        .values(created_at=two_hours_ago, stage_changed_at=two_hours_ago)
    )
    db_session.commit()

    assert test_client.get(f"/api/crm/leads/{lead['id']}/alerts").json()["alerts"] == []

    tightened = test_client.patch("/api/crm/alert-settings/no_contact_hours", json={"value": 1})
    assert tightened.status_code == 200
    assert tightened.json()["value"] == 1
    assert test_client.get(f"/api/crm/leads/{lead['id']}/alerts").json()["alerts"] == ["no_contact"]

    disabled = test_client.patch("/api/crm/alert-settings/no_contact_hours", json={"is_enabled": False})
    assert disabled.json()["is_enabled"] is False
    assert disabled.json()["value"] == 1
    assert test_client.get(f"/api/crm/leads/{lead['id']}/alerts").json()["alerts"] == []


def test_alert_setting_validation(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client

    assert test_client.patch("/api/crm/alert-settings/unknown_key", json={"value": 3}).status_code == 404
    assert test_client.patch("/api/crm/alert-settings/stalled_days", json={"value": 0}).status_code == 422
