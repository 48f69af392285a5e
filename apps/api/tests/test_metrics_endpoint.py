from __future__ import annotations

from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.auth import issue_access_token
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.main import app
from app.middleware.rate_limit import reset_rate_limiter
from app.users.models import User


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
    monkeypatch.setenv("METRICS_ENABLED", "true")
    get_settings.cache_clear()
    reset_rate_limiter()
    yield
    reset_rate_limiter()
    get_settings.cache_clear()


@pytest.fixture()
def tokens(db_session: Session) -> dict[str, str]:
    admin = User(name="Admin", email="admin@example.com", password_hash="x", role="admin")
    rep = User(name="Rep", email="rep@example.com", password_hash="x", role="rep")
    db_session.add_all([admin, rep])
    db_session.commit()
    return {
        "admin": issue_access_token(str(admin.id), "admin"),
        "rep": issue_access_token(str(rep.id), "rep"),
    }


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def test_metrics_endpoint_exposes_http_authz_and_conversion_metrics(client: TestClient, tokens: dict[str, str]) -> None:
    rep_headers = {"Authorization": f"Bearer {tokens['rep']}"}
    health = client.get("/health")
    assert health.status_code == 200

    lead = client.post("/api/leads", json={"name": "Metric Lead", "email": "metric@example.com"}, headers=rep_headers)
    assert lead.status_code == 201
    converted = client.post(
        f"/api/leads/{lead.json()['id']}/convert",
        json={"title": "Metric deal", "value": 5},
        headers=rep_headers,
    )
    assert converted.status_code == 201

    metrics = client.get("/metrics", headers={"Authorization": f"Bearer {tokens['admin']}"})
    assert metrics.status_code == 200
    body = metrics.text

    assert "http_requests_total" in body
    assert "http_request_duration_seconds" in body
    assert 'path="/health"' in body
    assert 'path="/api/leads/{id}/convert"' in body
    assert 'authz_decisions_total{operation="convert",decision="allow"}' in body
    assert 'crm_lead_conversions_total{outcome="converted"}' in body


def test_metrics_require_admin(client: TestClient, tokens: dict[str, str]) -> None:
    response = client.get("/metrics", headers={"Authorization": f"Bearer {tokens['rep']}"})
    assert response.status_code == 403

    anonymous = client.get("/metrics")
    assert anonymous.status_code == 401


def test_metrics_disabled_returns_not_found(
    client: TestClient,
    tokens: dict[str, str],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("METRICS_ENABLED", "false")
    get_settings.cache_clear()

    response = client.get("/metrics", headers={"Authorization": f"Bearer {tokens['admin']}"})
    assert response.status_code == 404
