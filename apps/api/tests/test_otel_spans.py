from __future__ import annotations

import uuid
from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.auth import AuthUser, get_current_user
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.otel import setup_inmemory_otel
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
    reset_rate_limiter()
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()
    reset_rate_limiter()


@pytest.fixture()
def span_exporter() -> InMemorySpanExporter:
    exporter = setup_inmemory_otel("pipeline-api")
    exporter.clear()
    return exporter


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    rep = User(name="Rep", email="rep@example.com", password_hash="x", role="rep")
    db_session.add(rep)
    db_session.commit()
    identity = AuthUser(sub=str(rep.id), role="rep")

    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = lambda: identity
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def test_request_span_contains_correlation_id(client: TestClient, span_exporter: InMemorySpanExporter) -> None:
    response = client.get(f"/api/leads/{uuid.uuid4()}", headers={"X-Correlation-Id": "otel-corr-1"})
    assert response.status_code == 404

    spans = span_exporter.get_finished_spans()
    assert spans
    assert any(span.attributes.get("correlation_id") == "otel-corr-1" for span in spans)


def test_conversion_span_records_lead_and_opportunity(client: TestClient, span_exporter: InMemorySpanExporter) -> None:
    lead = client.post("/api/leads", json={"name": "Span Lead", "email": "span@example.com"}).json()
    converted = client.post(
        f"/api/leads/{lead['id']}/convert",
        json={"title": "Span deal", "value": 1},
        headers={"X-Correlation-Id": "otel-convert-1"},
    )
    assert converted.status_code == 201
    again = client.post(f"/api/leads/{lead['id']}/convert", json={"title": "Again", "value": 1})
    assert again.status_code == 409

    convert_spans = [span for span in span_exporter.get_finished_spans() if span.name == "crm.lead.convert"]
    assert len(convert_spans) == 2
    succeeded, failed = convert_spans
    assert succeeded.attributes.get("lead_id") == lead["id"]
    assert succeeded.attributes.get("opportunity_id") == converted.json()["id"]
    assert succeeded.attributes.get("correlation_id") == "otel-convert-1"
    assert not failed.status.is_ok
