from __future__ import annotations

from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from pydantic import ValidationError
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.config import Settings, get_settings
from app.core.database import Base, get_db
from app.crm.models import CRMAlertSetting, CRMLeadStage, CRMLostReason
from app.crm.repositories import lead_repository
from app.crm.seed import DEFAULT_LOST_REASONS, DEFAULT_STAGES, ensure_catalog
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
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def setup_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("ALERT_STALLED_DAYS", "21")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


def test_ensure_catalog_is_idempotent(db_session: Session) -> None:
    first = ensure_catalog(db_session)
    assert first == {
        "stages": len(DEFAULT_STAGES),
        "lost_reasons": len(DEFAULT_LOST_REASONS),
        "alert_settings": 3,
    }

    stage = db_session.scalar(select(CRMLeadStage).where(CRMLeadStage.name == "proposal"))
    assert stage is not None
    stage.probability = 55
    db_session.commit()

    second = ensure_catalog(db_session)
    assert second == {"stages": 0, "lost_reasons": 0, "alert_settings": 0}
    assert db_session.scalar(select(func.count()).select_from(CRMLeadStage)) == len(DEFAULT_STAGES)
    assert db_session.scalar(select(func.count()).select_from(CRMLostReason)) == len(DEFAULT_LOST_REASONS)
    assert db_session.scalar(select(CRMLeadStage.probability).where(CRMLeadStage.name == "proposal")) == 55


def test_alert_defaults_come_from_settings(db_session: Session) -> None:
    ensure_catalog(db_session)

    stalled = db_session.scalar(select(CRMAlertSetting).where(CRMAlertSetting.setting_key == "stalled_days"))
    assert stalled is not None
    assert stalled.value == 21
    assert stalled.unit == "days"


def test_next_code_starts_at_one(db_session: Session) -> None:
    assert lead_repository.next_code(db_session, "LEAD", 2026) == "LEAD-2026-0001"


def test_settings_normalize_prefix_and_reject_zero_thresholds() -> None:
    assert Settings(lead_code_prefix=" lead ").lead_code_prefix == "LEAD"
    with pytest.raises(ValidationError):
        Settings(alert_stalled_days=0)


def test_settings_carry_no_unused_server_fields() -> None:
    assert {"app_debug", "api_port"}.isdisjoint(Settings.model_fields)
    assert Settings().email_default_responsible == "Equipo AMAROT"


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def test_readiness_requires_seeded_catalog(client: TestClient, db_session: Session) -> None:
    not_ready = client.get("/health/ready")
    assert not_ready.status_code == 503
    assert not_ready.json() == {"status": "not_ready", "checks": {"stages": False, "won_stage": False}}

    ensure_catalog(db_session)

    ready = client.get("/health/ready")
    assert ready.status_code == 200
    assert ready.json()["status"] == "ready"
