from __future__ import annotations

import uuid
from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from mariacrm import audit
from mariacrm.core.config import get_settings
from mariacrm.core.database import Base, get_db
from mariacrm.main import app
from mariacrm.middleware.rate_limit import reset_rate_limiter


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
    audit.audit_entries.clear()
    reset_rate_limiter()
    get_settings.cache_clear()
    yield
    audit.audit_entries.clear()
    reset_rate_limiter()
    get_settings.cache_clear()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture()
def headers(client: TestClient) -> dict[str, str]:
    response = client.post(
        "/api/auth/register",
        json={
            "email": "owner@acme.example.com",
            "password": "s3cret-pass",
            "tenantName": "Acme",
            "tenantSlug": "acme",
        },
    )
    assert response.status_code == 201
    client.cookies.clear()
    return {"Authorization": f"Bearer {response.json()['token']}"}


def _create_lead(client: TestClient, headers: dict[str, str], correlation_id: str, name: str = "Ana") -> dict:
    response = client.post(
        "/api/leads",
        json={"name": name, "phone": "61234567", "status": "new", "source": "website"},
        headers={**headers, "X-Correlation-Id": correlation_id},
    )
    assert response.status_code == 201
    return response.json()["lead"]


def test_generated_correlation_id_returned_in_header_and_error_envelope(
    client: TestClient,
    headers: dict[str, str],
) -> None:
    response = client.get(f"/api/leads/{uuid.uuid4()}", headers=headers)
    assert response.status_code == 404
    header_value = response.headers.get("x-correlation-id")
    assert header_value
    body = response.json()
    assert body["correlation_id"] == header_value
    assert response.headers.get("x-request-id") == header_value


def test_correlation_id_respected_when_provided(client: TestClient, headers: dict[str, str]) -> None:
    response = client.get(f"/api/leads/{uuid.uuid4()}", headers={**headers, "X-Correlation-Id": "abc-123"})
    assert response.status_code == 404
    assert response.headers.get("x-correlation-id") == "abc-123"
    assert response.json()["correlation_id"] == "abc-123"


def test_request_id_header_is_accepted_as_correlation_id(client: TestClient) -> None:
    response = client.get("/api/leads", headers={"X-Request-Id": "req-777"})
    assert response.status_code == 401
    assert response.headers.get("x-correlation-id") == "req-777"
    assert response.json()["correlation_id"] == "req-777"


def test_audit_uses_request_correlation_id(client: TestClient, headers: dict[str, str]) -> None:
    _create_lead(client, headers, "corr-audit-1")

    lead_audits = [entry for entry in audit.audit_entries if entry.get("entity_type") == "crm.lead"]
    assert lead_audits
    assert lead_audits[-1]["correlation_id"] == "corr-audit-1"


def test_rate_limited_response_includes_correlation_id(
    client: TestClient,
    headers: dict[str, str],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "false")
    monkeypatch.setenv("RATE_LIMIT_MUTATIONS_PER_MINUTE", "1")
    get_settings.cache_clear()
    reset_rate_limiter()

    _create_lead(client, headers, "corr-rate-1", name="Ana")

    second = client.post(
        "/api/leads",
        json={"name": "Luis", "phone": "61234568", "status": "new", "source": "website"},
        headers={**headers, "X-Correlation-Id": "corr-rate-1"},
    )
    assert second.status_code == 429
    payload = second.json()
    assert payload["correlation_id"] == "corr-rate-1"
    assert second.headers.get("x-correlation-id") == "corr-rate-1"
