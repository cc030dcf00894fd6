from __future__ import annotations

import uuid
from collections.abc import Generator
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from mariacrm import audit
from mariacrm.core.config import get_settings
from mariacrm.core.database import Base, get_db
from mariacrm.main import app
from mariacrm.middleware.rate_limit import reset_rate_limiter
from mariacrm.tenancy.models import ApiKey


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
    get_settings.cache_clear()
    reset_rate_limiter()
    audit.audit_entries.clear()
    yield
    get_settings.cache_clear()
    reset_rate_limiter()
    audit.audit_entries.clear()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture()
def owner(client: TestClient) -> dict:
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
    return response.json()


def _auth(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def _create_key(client: TestClient, owner: dict, **overrides) -> dict:
    payload = {"name": "Website form", **overrides}
    response = client.post("/api/admin/api-keys", json=payload, headers=_auth(owner["token"]))
    assert response.status_code == 201
    return response.json()


def _lead_payload(**overrides) -> dict:
    return {
        "name": "Ana Pérez",
        "phone": "61234567",
        "status": "new",
        "source": "website",
        **overrides,
    }


def test_created_key_is_shown_once_and_listed_by_prefix(client: TestClient, owner: dict) -> None:
    created = _create_key(client, owner)
    raw_key = created["apiKey"]
    assert raw_key.startswith("sk_")
    assert created["key"]["keyPrefix"] == raw_key[:10]
    assert created["key"]["permissions"] == ["leads:create", "leads:read"]
    assert created["key"]["rateLimit"] == 100

    listed = client.get("/api/admin/api-keys", headers=_auth(owner["token"]))
    assert listed.status_code == 200
    keys = listed.json()["keys"]
    assert [item["id"] for item in keys] == [created["key"]["id"]]
    assert raw_key not in listed.text


def test_api_key_creates_lead_in_key_scope(client: TestClient, owner: dict) -> None:
    raw_key = _create_key(client, owner)["apiKey"]

    response = client.post("/api/leads/admin/create", json=_lead_payload(), headers={"X-API-Key": raw_key})
    assert response.status_code == 201
    lead = response.json()["lead"]
    assert lead["tenantId"] == owner["tenant"]["id"]
    assert lead["organizationId"] == owner["organization"]["id"]
    assert response.headers["X-RateLimit-Remaining"] == "99"
    assert response.headers.get("X-RateLimit-Reset")

    lead_audits = [entry for entry in audit.audit_entries if entry["entity_type"] == "crm.lead"]
    assert lead_audits[-1]["after"]["principal"] == "api_key"


def test_api_key_accepted_as_bearer_on_read_routes(client: TestClient, owner: dict) -> None:
    raw_key = _create_key(client, owner)["apiKey"]
    client.post("/api/leads/admin/create", json=_lead_payload(), headers={"X-API-Key": raw_key})

    response = client.get("/api/leads", headers=_auth(raw_key))
    assert response.status_code == 200
    assert len(response.json()["data"]) == 1


def test_missing_or_unknown_key_is_unauthorized(client: TestClient, owner: dict) -> None:
    missing = client.post("/api/leads/admin/create", json=_lead_payload())
    assert missing.status_code == 401
    assert missing.json()["error"] == "API key required"
    assert missing.headers["X-RateLimit-Remaining"] == "0"

    unknown = client.post(
        "/api/leads/admin/create",
        json=_lead_payload(),
        headers={"X-API-Key": "sk_" + "0" * 64},
    )
    assert unknown.status_code == 401
    assert unknown.json()["error"] == "Invalid API key"


def test_key_without_permission_is_forbidden(client: TestClient, owner: dict) -> None:
    raw_key = _create_key(client, owner, permissions=["leads:read"])["apiKey"]

    response = client.post("/api/leads/admin/create", json=_lead_payload(), headers={"X-API-Key": raw_key})
    assert response.status_code == 403
    assert response.json()["error"] == "Missing permission: leads:create"
    assert response.headers.get("X-RateLimit-Remaining") is not None


def test_key_cannot_write_into_another_tenant(client: TestClient, owner: dict) -> None:
    raw_key = _create_key(client, owner)["apiKey"]

    response = client.post(
        "/api/leads/admin/create",
        json=_lead_payload(tenantId=str(uuid.uuid4())),
        headers={"X-API-Key": raw_key},
    )
    assert response.status_code == 403
    assert response.json()["error"] == "Tenant/organization mismatch"

    denied = [entry for entry in audit.audit_entries if entry["action"] == "scope.denied"]
    assert denied
    assert denied[-1]["after"]["principal"] == "api_key"


def test_per_key_rate_limit(client: TestClient, owner: dict) -> None:
    raw_key = _create_key(client, owner, rateLimit=2)["apiKey"]
    headers = {"X-API-Key": raw_key}

    first = client.post("/api/leads/admin/create", json=_lead_payload(name="Uno"), headers=headers)
    second = client.post("/api/leads/admin/create", json=_lead_payload(name="Dos"), headers=headers)
    third = client.post("/api/leads/admin/create", json=_lead_payload(name="Tres"), headers=headers)

    assert first.status_code == 201
    assert first.headers["X-RateLimit-Remaining"] == "1"
    assert second.status_code == 201
    assert second.headers["X-RateLimit-Remaining"] == "0"
    assert third.status_code == 429
    assert third.json()["error"] == "Rate limit exceeded"
    assert int(third.headers["Retry-After"]) >= 1


def test_revoked_key_is_rejected(client: TestClient, owner: dict) -> None:
    created = _create_key(client, owner)

    revoked = client.delete(f"/api/admin/api-keys/{created['key']['id']}", headers=_auth(owner["token"]))
    assert revoked.status_code == 200
    assert revoked.json()["key"]["isActive"] is False

    response = client.post(
        "/api/leads/admin/create",
        json=_lead_payload(),
        headers={"X-API-Key": created["apiKey"]},
    )
    assert response.status_code == 401
    assert response.json()["error"] == "Invalid API key"


def test_expired_key_is_rejected(client: TestClient, db_session: Session, owner: dict) -> None:
    created = _create_key(client, owner, expiresInDays=1)
    key = db_session.scalar(select(ApiKey).where(ApiKey.id == uuid.UUID(created["key"]["id"])))
    assert key is not None
    key.expires_at = datetime.now(timezone.utc) - timedelta(minutes=1)
    db_session.commit()

    response = client.post(
        "/api/leads/admin/create",
        json=_lead_payload(),
        headers={"X-API-Key": created["apiKey"]},
    )
    assert response.status_code == 401
    assert response.json()["error"] == "API key expired"


def test_revoking_unknown_key_is_not_found(client: TestClient, owner: dict) -> None:
    response = client.delete(f"/api/admin/api-keys/{uuid.uuid4()}", headers=_auth(owner["token"]))
    assert response.status_code == 404
    assert response.json()["error"] == "API key not found"
