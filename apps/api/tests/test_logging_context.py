from __future__ import annotations

import json
import logging
import uuid
from collections.abc import Generator

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.config import get_settings
from app.core.database import Base, get_db
from app.crm.api import get_current_user as crm_get_current_user
from app.crm.seed import ensure_catalog
from app.crm.service import ActorUser
from app.logging import JsonLogFormatter
from app.main import app


ALL_PERMISSIONS = {
    "crm.leads.read",
    "crm.leads.create",
    "crm.leads.change_stage",
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
def setup_env() -> Generator[None, None, None]:
    get_settings.cache_clear()
    yield
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


def test_logs_include_correlation_id_for_http(client: TestClient, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)

    lead_id = uuid.uuid4()
    response = client.get(f"/api/crm/leads/{lead_id}", headers={"X-Correlation-Id": "abc-123"})
    assert response.status_code == 404

    records = [record for record in caplog.records if record.name == "app.request" and record.getMessage() == "http.request"]
    assert records
    assert any(
        getattr(record, "correlation_id", None) == "abc-123"
        and getattr(record, "method", None) == "GET"
        and getattr(record, "path", None) == "/api/crm/leads/{id}"
        and getattr(record, "status_code", None) == 404
        and isinstance(getattr(record, "duration_ms", None), float)
        for record in records
    )


def test_lead_transition_logs_carry_lead_context(client: TestClient, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)

    created = client.post(
        "/api/crm/leads",
        json={"company_name": "Log Lead", "contact_name": "Log Contact", "service_type": "otro"},
        headers={"X-Correlation-Id": "log-corr-1"},
    )
    assert created.status_code == 201
    lead = created.json()["lead"]
    stages = {stage["name"]: stage["id"] for stage in client.get("/api/crm/stages").json()}

    moved = client.post(
        f"/api/crm/leads/{lead['id']}/change-stage",
        json={"stage_id": stages["contacted"]},
        headers={"X-Correlation-Id": "log-corr-2"},
    )
    assert moved.status_code == 200

    pipeline_records = [record for record in caplog.records if record.name == "app.crm.pipeline"]
    assert any(
        record.getMessage() == "lead.created"
        and getattr(record, "lead_id", None) == lead["id"]
        and getattr(record, "correlation_id", None) == "log-corr-1"
        for record in pipeline_records
    )
    assert any(
        record.getMessage() == "lead.stage_changed"
        and getattr(record, "to_stage_id", None) == stages["contacted"]
        and getattr(record, "correlation_id", None) == "log-corr-2"
        for record in pipeline_records
    )


def test_json_formatter_keeps_known_fields_only() -> None:
    record = logging.LogRecord("app.crm.pipeline", logging.INFO, __file__, 1, "lead.won", None, None)
    record.correlation_id = "fmt-1"
    record.lead_id = "lead-1"
    record.client_action = "create"
    record.secret_token = "hidden"
    record.error = "x" * 600

    payload = json.loads(JsonLogFormatter().format(record))

    assert payload["msg"] == "lead.won"
    assert payload["correlation_id"] == "fmt-1"
    assert payload["fields"]["lead_id"] == "lead-1"
    assert payload["fields"]["client_action"] == "create"
    assert "secret_token" not in payload["fields"]
    assert len(payload["fields"]["error"]) == 500


def test_json_formatter_passes_template_id_and_skips_unset_fields() -> None:
    record = logging.LogRecord("app.crm.pipeline", logging.INFO, __file__, 1, "email_template.rendered", None, None)
    record.template_id = "tpl-9"
    record.lead_id = None

    payload = json.loads(JsonLogFormatter().format(record))

    assert payload["fields"] == {"template_id": "tpl-9", "lead_id": None}
    assert "method" not in payload["fields"]
