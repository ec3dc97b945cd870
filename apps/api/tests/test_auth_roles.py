from __future__ import annotations

from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.auth import ROLE_BUNDLES, decode_bearer_token, expand_roles
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.crm.seed import ensure_catalog
from app.main import app


@pytest.fixture(autouse=True)
def jwt_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("JWT_SECRET", "test-secret")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


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


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _token(sub: str, roles: list[str]) -> str:
    return jwt.encode({"sub": sub, "roles": roles, "name": "Ana"}, "test-secret", algorithm="HS256")


def test_expand_roles_merges_bundles_and_literal_permissions() -> None:
    permissions = expand_roles(["crm.seller", "system.metrics.read"])
    assert "crm.leads.close" in permissions
    assert "system.metrics.read" in permissions
    assert "crm.leads.delete" not in permissions
    assert "crm.leads.merge" in permissions
    assert ROLE_BUNDLES["crm.viewer"] <= ROLE_BUNDLES["crm.seller"] <= ROLE_BUNDLES["crm.manager"]


def test_decode_bearer_token_reads_claims() -> None:
    user = decode_bearer_token(_token("seller-7", ["crm.seller"]))
    assert user.sub == "seller-7"
    assert user.roles == ["crm.seller"]
    assert user.name == "Ana"


def test_bearer_role_bundle_grants_pipeline_access(client: TestClient) -> None:
    headers = {"Authorization": f"Bearer {_token('seller-7', ['crm.seller'])}"}
    created = client.post(
        "/api/crm/leads",
        json={"company_name": "Bundle SA", "contact_name": "Rosa", "service_type": "otro"},
        headers=headers,
    )
    assert created.status_code == 201
    lead_id = created.json()["lead"]["id"]

    deleted = client.delete(f"/api/crm/leads/{lead_id}", headers=headers)
    assert deleted.status_code == 403
    assert deleted.json()["message"] == "Missing permission: crm.leads.delete"


def test_missing_or_invalid_token_is_guest(client: TestClient) -> None:
    assert client.get("/api/crm/leads").status_code == 403
    response = client.get("/api/crm/leads", headers={"Authorization": "Bearer not-a-jwt"})
    assert response.status_code == 403
    assert response.json()["code"]
