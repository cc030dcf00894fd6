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
from mariacrm.documents.store import DocumentStore
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


@pytest.fixture()
def headers(owner: dict) -> dict[str, str]:
    return {"Authorization": f"Bearer {owner['token']}"}


def _create_client(client: TestClient, headers: dict[str, str], **overrides) -> dict:
    payload = {"name": "Juan Herrera", "phone": "+50761112222", "debt": 1500, **overrides}
    response = client.post("/api/clients", json=payload, headers=headers)
    assert response.status_code == 201, response.text
    return response.json()["client"]


def test_create_client_applies_defaults(client: TestClient, headers: dict[str, str]) -> None:
    created = _create_client(client, headers, email="juan@example.com")

    assert created["debt"] == 1500.0
    assert created["country"] == "Panamá"
    assert created["status"] == "current"
    assert created["tags"] == []
    assert created["payments"] == []


def test_create_client_requires_name_and_phone(client: TestClient, headers: dict[str, str]) -> None:
    response = client.post("/api/clients", json={"name": "Sin teléfono"}, headers=headers)
    assert response.status_code == 400
    assert response.json()["error"] == "Campos requeridos faltantes: phone"

    negative = client.post("/api/clients", json={"name": "X", "phone": "1", "debt": -5}, headers=headers)
    assert negative.status_code == 400


def test_new_client_gets_interaction_document(client: TestClient, headers: dict[str, str], owner: dict) -> None:
    created = _create_client(client, headers)

    response = client.get(f"/api/clients/{created['id']}/interactions", headers=headers)
    assert response.status_code == 200
    body = response.json()
    assert body["path"] == (
        f"tenants/{owner['tenant']['id']}/organizations/{owner['organization']['id']}/clients/{created['id']}"
    )
    assert body["data"]["clientId"] == created["id"]
    assert body["data"]["customerInteractions"] == {
        "callLogs": [],
        "emailRecords": [],
        "whatsappRecords": [],
        "clientAIProfiles": {},
    }


def test_payment_reduces_debt_and_floors_at_zero(client: TestClient, headers: dict[str, str]) -> None:
    created = _create_client(client, headers)

    first = client.post(
        f"/api/clients/{created['id']}/payments",
        json={"amount": 500, "method": "ach", "reference": "TX-1"},
        headers=headers,
    )
    assert first.status_code == 201
    assert first.json()["remainingDebt"] == 1000.0
    assert first.json()["payment"]["method"] == "ach"

    second = client.post(f"/api/clients/{created['id']}/payments", json={"amount": 5000}, headers=headers)
    assert second.json()["remainingDebt"] == 0.0

    detail = client.get(f"/api/clients/{created['id']}", headers=headers).json()["client"]
    assert detail["debt"] == 0.0
    assert len(detail["payments"]) == 2

    zero = client.post(f"/api/clients/{created['id']}/payments", json={"amount": 0}, headers=headers)
    assert zero.status_code == 400


def test_list_and_search_clients(client: TestClient, headers: dict[str, str]) -> None:
    _create_client(client, headers, name="Juan Herrera")
    _create_client(client, headers, name="Lucía Campos", status="overdue")

    everyone = client.get("/api/clients", headers=headers)
    assert len(everyone.json()["data"]) == 2

    overdue = client.get("/api/clients", params={"status": "overdue"}, headers=headers)
    assert [item["name"] for item in overdue.json()["data"]] == ["Lucía Campos"]

    searched = client.get("/api/clients", params={"q": "herrera"}, headers=headers)
    assert [item["name"] for item in searched.json()["data"]] == ["Juan Herrera"]


def test_patch_client(client: TestClient, headers: dict[str, str]) -> None:
    created = _create_client(client, headers)

    response = client.patch(
        f"/api/clients/{created['id']}",
        json={"city": "David", "riskCategory": "prime", "tags": ["recuperado"]},
        headers=headers,
    )
    assert response.status_code == 200
    updated = response.json()["client"]
    assert updated["city"] == "David"
    assert updated["riskCategory"] == "prime"
    assert updated["tags"] == ["recuperado"]

    blank = client.patch(f"/api/clients/{created['id']}", json={"phone": ""}, headers=headers)
    assert blank.status_code == 400


def test_ai_profile_merges_into_interactions(client: TestClient, headers: dict[str, str]) -> None:
    created = _create_client(client, headers)

    response = client.post(
        "/api/clients/ai-profile/update",
        json={
            "clientId": created["id"],
            "aiProfileUpdates": {"preferredChannel": "whatsapp", "sentiment": "positive"},
        },
        headers=headers,
    )
    assert response.status_code == 200
    body = response.json()
    assert body["message"] == "Perfil de IA actualizado exitosamente"
    assert body["data"]["updatedFields"] == ["preferredChannel", "sentiment"]

    document = client.get(f"/api/clients/{created['id']}/interactions", headers=headers).json()["data"]
    profile = document["customerInteractions"]["clientAIProfiles"]
    assert profile["preferredChannel"] == "whatsapp"
    assert profile["clientId"] == created["id"]
    assert profile["lastUpdatedByAI"]
    assert document["customerInteractions"]["callLogs"] == []


def test_ai_profile_for_unknown_client(client: TestClient, headers: dict[str, str]) -> None:
    unknown = str(uuid.uuid4())
    response = client.post(
        "/api/clients/ai-profile/update",
        json={"clientId": unknown, "aiProfileUpdates": {"sentiment": "neutral"}},
        headers=headers,
    )
    assert response.status_code == 404
    assert response.json()["error"] == f"Cliente con ID '{unknown}' no encontrado"

    created = _create_client(client, headers)
    empty = client.post(
        "/api/clients/ai-profile/update",
        json={"clientId": created["id"], "aiProfileUpdates": {}},
        headers=headers,
    )
    assert empty.status_code == 400


def test_delete_client_removes_document(client: TestClient, headers: dict[str, str], db_session: Session, owner: dict) -> None:
    created = _create_client(client, headers)
    path = f"tenants/{owner['tenant']['id']}/organizations/{owner['organization']['id']}/clients/{created['id']}"

    response = client.delete(f"/api/clients/{created['id']}", headers=headers)
    assert response.status_code == 200
    assert response.json() == {"success": True, "clientId": created["id"]}
    assert DocumentStore(db_session).get(path) is None

    missing = client.get(f"/api/clients/{created['id']}", headers=headers)
    assert missing.status_code == 404
    assert missing.json()["error"] == "Cliente no encontrado"


def test_bulk_delete_clients(client: TestClient, headers: dict[str, str]) -> None:
    first = _create_client(client, headers, name="Uno")
    unknown = str(uuid.uuid4())

    response = client.request(
        "DELETE",
        "/api/clients/admin/bulk-delete",
        json={"clientIds": [first["id"], unknown]},
        headers=headers,
    )
    assert response.status_code == 200
    body = response.json()
    assert body["summary"]["successful"] == 1
    assert body["summary"]["failed"] == 1
    failed = [item for item in body["results"] if not item["success"]]
    assert failed == [{"clientId": unknown, "success": False, "error": "Cliente no encontrado"}]

    empty = client.request("DELETE", "/api/clients/admin/bulk-delete", json={"clientIds": []}, headers=headers)
    assert empty.status_code == 400
    assert empty.json()["error"] == "clientIds must be a non-empty array"


def test_clients_are_scoped_to_organization(client: TestClient, headers: dict[str, str]) -> None:
    created = _create_client(client, headers)
    other = client.post(
        "/api/auth/register",
        json={
            "email": "owner@globex.example.com",
            "password": "s3cret-pass",
            "tenantName": "Globex",
            "tenantSlug": "globex",
        },
    ).json()
    client.cookies.clear()
    other_headers = {"Authorization": f"Bearer {other['token']}"}

    assert client.get(f"/api/clients/{created['id']}", headers=other_headers).status_code == 404
    assert client.get(f"/api/clients/{created['id']}/interactions", headers=other_headers).status_code == 404
    assert client.get("/api/clients", headers=other_headers).json()["data"] == []
