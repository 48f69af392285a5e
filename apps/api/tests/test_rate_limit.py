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
def configure_rate_limiter_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "false")
    monkeypatch.setenv("RATE_LIMIT_MUTATIONS_PER_MINUTE", "3")
    get_settings.cache_clear()
    reset_rate_limiter()
    yield
    reset_rate_limiter()
    get_settings.cache_clear()


@pytest.fixture()
def tokens(db_session: Session) -> dict[str, str]:
    first = User(name="First", email="first@example.com", password_hash="x", role="rep")
    second = User(name="Second", email="second@example.com", password_hash="x", role="rep")
    db_session.add_all([first, second])
    db_session.commit()
    return {
        "first": issue_access_token(str(first.id), "rep"),
        "second": issue_access_token(str(second.id), "rep"),
    }


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _create_lead(client: TestClient, token: str, index: int):  # type: ignore[no-untyped-def]
    return client.post(
        "/api/leads",
        json={"name": f"Rate Limit Lead {index}", "email": f"lead{index}@example.com"},
        headers={"Authorization": f"Bearer {token}"},
    )


def test_mutating_endpoints_are_rate_limited(client: TestClient, tokens: dict[str, str]) -> None:
    responses = [_create_lead(client, tokens["first"], index) for index in range(5)]

    limited = [response for response in responses if response.status_code == 429]
    assert len(limited) == 2

    first_limited = limited[0]
    body = first_limited.json()
    assert body["code"] == "rate_limited"
    assert body["message"] == "Too many requests"
    assert body["retryable"] is True
    assert body["correlation_id"] is not None
    assert first_limited.headers.get("Retry-After") is not None


def test_buckets_are_per_user(client: TestClient, tokens: dict[str, str]) -> None:
    for index in range(3):
        assert _create_lead(client, tokens["first"], index).status_code == 201
    assert _create_lead(client, tokens["first"], 3).status_code == 429

    assert _create_lead(client, tokens["second"], 4).status_code == 201


def test_get_endpoints_are_not_rate_limited(client: TestClient, tokens: dict[str, str]) -> None:
    headers = {"Authorization": f"Bearer {tokens['first']}"}
    responses = [client.get("/api/leads", headers=headers) for _ in range(10)]
    assert all(response.status_code == 200 for response in responses)


def test_auth_endpoints_are_not_rate_limited(client: TestClient) -> None:
    logins = [
        client.post("/api/auth/login", json={"email": f"nobody{index}@example.com", "password": "secret123"})
        for index in range(5)
    ]
    assert [response.status_code for response in logins] == [401] * 5

    registrations = [
        client.post(
            "/api/auth/register",
            json={"name": f"User {index}", "email": f"user{index}@example.com", "password": "secret123", "role": "rep"},
        )
        for index in range(5)
    ]
    assert [response.status_code for response in registrations] == [201] * 5


def test_conversions_use_their_own_bucket(client: TestClient, tokens: dict[str, str]) -> None:
    leads = [_create_lead(client, tokens["first"], index).json() for index in range(3)]
    assert _create_lead(client, tokens["first"], 3).status_code == 429

    converted = client.post(
        f"/api/leads/{leads[0]['id']}/convert",
        json={"title": "Deal", "value": 10},
        headers={"Authorization": f"Bearer {tokens['first']}"},
    )

    assert converted.status_code == 201
