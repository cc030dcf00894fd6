from __future__ import annotations

import uuid
from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from mariacrm import audit
from mariacrm.core.config import get_settings
from mariacrm.core.database import Base, get_db
from mariacrm.crm.models import Client
from mariacrm.documents.models import Document
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


def _register(client: TestClient, slug: str, email: str | None = None) -> dict:
    response = client.post(
        "/api/auth/register",
        json={
            "email": email or f"owner@{slug}.example.com",
            "password": "s3cret-pass",
            "tenantName": slug.title(),
            "tenantSlug": slug,
        },
    )
    assert response.status_code == 201
    client.cookies.clear()
    return response.json()


@pytest.fixture()
def owner(client: TestClient) -> dict:
    return _register(client, "acme")


@pytest.fixture()
def headers(owner: dict) -> dict[str, str]:
    return {"Authorization": f"Bearer {owner['token']}"}


def _create_lead(client: TestClient, headers: dict[str, str], **overrides) -> dict:
    payload = {
        "name": "Ana Pérez",
        "phone": "61234567",
        "status": "new",
        "source": "website",
        **overrides,
    }
    response = client.post("/api/leads", json=payload, headers=headers)
    assert response.status_code == 201, response.text
    return response.json()["lead"]


def _create_campaign(client: TestClient, headers: dict[str, str], name: str = "Préstamos Q4") -> dict:
    response = client.post("/api/campaigns", json={"name": name, "status": "active"}, headers=headers)
    assert response.status_code == 201
    return response.json()["campaign"]


def test_create_lead_scores_and_applies_defaults(client: TestClient, headers: dict[str, str], owner: dict) -> None:
    lead = _create_lead(
        client,
        headers,
        email="ana@example.com",
        company="Banco Istmo",
        position="Gerente",
        interestLevel=3,
        priority="high",
        source="referral",
    )

    assert lead["qualificationScore"] == 100
    assert lead["isQualified"] is True
    assert lead["country"] == "Panamá"
    assert lead["contactAttempts"] == 0
    assert lead["convertedToClient"] is False
    assert lead["tenantId"] == owner["tenant"]["id"]
    assert lead["organizationId"] == owner["organization"]["id"]

    minimal = _create_lead(client, headers, name="Luis")
    assert minimal["qualificationScore"] == 30
    assert minimal["priority"] == "medium"
    assert minimal["isQualified"] is False


def test_create_lead_validates_required_fields_and_enums(client: TestClient, headers: dict[str, str]) -> None:
    missing = client.post("/api/leads", json={"name": "Sin teléfono", "status": "new", "source": "website"}, headers=headers)
    assert missing.status_code == 400
    assert missing.json()["error"] == "Campos requeridos faltantes: phone"

    bad_status = client.post(
        "/api/leads",
        json={"name": "Ana", "phone": "6000", "status": "bogus", "source": "website"},
        headers=headers,
    )
    assert bad_status.status_code == 400
    assert bad_status.json()["error"].startswith("Estado de lead inválido: bogus")

    bad_interest = client.post(
        "/api/leads",
        json={"name": "Ana", "phone": "6000", "status": "new", "source": "website", "interestLevel": 9},
        headers=headers,
    )
    assert bad_interest.status_code == 400
    assert bad_interest.json()["code"] == "validation_error"

    unknown_campaign = client.post(
        "/api/leads",
        json={"name": "Ana", "phone": "6000", "status": "new", "source": "website", "campaignId": str(uuid.uuid4())},
        headers=headers,
    )
    assert unknown_campaign.status_code == 400
    assert unknown_campaign.json()["error"] == "Campaign not found"


def test_body_scope_mismatch_is_forbidden_and_audited(client: TestClient, headers: dict[str, str]) -> None:
    response = client.post(
        "/api/leads",
        json={
            "name": "Ana",
            "phone": "6000",
            "status": "new",
            "source": "website",
            "organizationId": str(uuid.uuid4()),
        },
        headers=headers,
    )
    assert response.status_code == 403
    assert response.json()["error"] == "Tenant/organization mismatch"

    denied = [entry for entry in audit.audit_entries if entry["action"] == "scope.denied"]
    assert denied
    assert "organizationId" in denied[-1]["after"]["requested"]


def test_lead_map_is_keyed_by_id(client: TestClient, headers: dict[str, str], owner: dict) -> None:
    first = _create_lead(client, headers, name="Uno")
    second = _create_lead(client, headers, name="Dos")

    response = client.post(
        "/api/leads/get",
        json={"tenantId": owner["tenant"]["id"], "organizationId": owner["organization"]["id"]},
        headers=headers,
    )
    assert response.status_code == 200
    body = response.json()
    assert set(body["data"]) == {first["id"], second["id"]}
    assert body["path"] == f"tenants/{owner['tenant']['id']}/organizations/{owner['organization']['id']}/leads"


def test_lead_map_is_empty_for_new_organization(client: TestClient, headers: dict[str, str], owner: dict) -> None:
    response = client.post(
        "/api/leads/get",
        json={"tenantId": owner["tenant"]["id"], "organizationId": owner["organization"]["id"]},
        headers=headers,
    )

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["data"] == {}


def test_leads_are_isolated_between_tenants(client: TestClient, headers: dict[str, str]) -> None:
    lead = _create_lead(client, headers)
    other = _register(client, "globex")
    other_headers = {"Authorization": f"Bearer {other['token']}"}

    fetched = client.get(f"/api/leads/{lead['id']}", headers=other_headers)
    assert fetched.status_code == 404
    assert fetched.json()["error"] == "Lead no encontrado"

    listed = client.get("/api/leads", headers=other_headers)
    assert listed.json()["data"] == []

    patched = client.patch(f"/api/leads/{lead['id']}", json={"priority": "urgent"}, headers=other_headers)
    assert patched.status_code == 404

    status_update = client.put(
        "/api/leads/status/update",
        json={"leadId": lead["id"], "newStatus": "contacted"},
        headers=other_headers,
    )
    assert status_update.status_code == 404


def test_list_filters_and_cursor(client: TestClient, headers: dict[str, str]) -> None:
    _create_lead(client, headers, name="Carlos Ruiz", status="new")
    _create_lead(client, headers, name="Marta Díaz", status="contacted", company="Copa")
    _create_lead(client, headers, name="Pedro Gómez", status="contacted")

    contacted = client.get("/api/leads", params={"status": "contacted"}, headers=headers)
    assert {item["name"] for item in contacted.json()["data"]} == {"Marta Díaz", "Pedro Gómez"}

    searched = client.get("/api/leads", params={"q": "copa"}, headers=headers)
    assert [item["name"] for item in searched.json()["data"]] == ["Marta Díaz"]

    page = client.get("/api/leads", params={"limit": 2}, headers=headers)
    assert len(page.json()["data"]) == 2
    assert page.json()["nextCursor"] == "2"

    rest = client.get("/api/leads", params={"limit": 2, "cursor": "2"}, headers=headers)
    assert len(rest.json()["data"]) == 1
    assert rest.json()["nextCursor"] is None


def test_status_workflow_side_effects(client: TestClient, headers: dict[str, str]) -> None:
    lead = _create_lead(client, headers)

    contacted = client.put(
        "/api/leads/status/update",
        json={"leadId": lead["id"], "newStatus": "contacted", "notes": "Primera llamada"},
        headers=headers,
    )
    assert contacted.status_code == 200
    body = contacted.json()
    assert body["message"] == 'Status actualizado de "new" a "contacted"'
    assert body["statusChange"]["from"] == "new"
    assert body["statusChange"]["to"] == "contacted"
    assert body["data"]["contactAttempts"] == 1
    assert body["data"]["lastContactDate"] is not None
    assert "Primera llamada" in body["data"]["notes"]

    unchanged = client.put(
        "/api/leads/status/update",
        json={"leadId": lead["id"], "newStatus": "contacted"},
        headers=headers,
    )
    assert unchanged.status_code == 200
    assert unchanged.json()["message"] == 'El lead ya tiene el estado "contacted"'
    assert unchanged.json()["statusChange"] is None
    assert unchanged.json()["data"]["contactAttempts"] == 1

    qualified = client.put(
        "/api/leads/status/update",
        json={"leadId": lead["id"], "newStatus": "qualified", "notes": "Tiene presupuesto"},
        headers=headers,
    ).json()["data"]
    assert qualified["isQualified"] is True
    assert qualified["qualificationScore"] >= 60
    assert qualified["qualificationNotes"] == "Tiene presupuesto"

    proposal = client.put(
        "/api/leads/status/update",
        json={"leadId": lead["id"], "newStatus": "proposal"},
        headers=headers,
    ).json()["data"]
    assert proposal["nextFollowUpDate"] is not None

    lost_for_good = client.put(
        "/api/leads/status/update",
        json={"leadId": lead["id"], "newStatus": "lost", "notes": "Rechazo definitivo"},
        headers=headers,
    ).json()["data"]
    assert lost_for_good["nextFollowUpDate"] is None

    status_audits = [entry for entry in audit.audit_entries if entry["action"] == "status_change"]
    assert [entry["after"]["status"] for entry in status_audits] == ["contacted", "qualified", "proposal", "lost"]


def test_status_update_rejects_unknown_status(client: TestClient, headers: dict[str, str]) -> None:
    lead = _create_lead(client, headers)

    response = client.put(
        "/api/leads/status/update",
        json={"leadId": lead["id"], "newStatus": "archived"},
        headers=headers,
    )
    assert response.status_code == 400
    assert response.json()["error"].startswith("Estado de lead inválido: archived")


def test_lead_stats(client: TestClient, headers: dict[str, str]) -> None:
    _create_lead(client, headers, name="A", status="new")
    _create_lead(client, headers, name="B", status="qualified", source="referral")
    _create_lead(client, headers, name="C", status="won")

    response = client.get("/api/leads/stats", headers=headers)
    assert response.status_code == 200
    stats = response.json()["stats"]
    assert stats["total"] == 3
    assert stats["byStatus"]["new"] == 1
    assert stats["byStatus"]["cold"] == 0
    assert len(stats["byStatus"]) == 11
    assert stats["bySource"] == {"website": 2, "referral": 1}
    assert stats["qualified"] == 2


def test_bulk_update_reports_per_item_outcomes(client: TestClient, headers: dict[str, str]) -> None:
    first = _create_lead(client, headers, name="Uno")
    second = _create_lead(client, headers, name="Dos")
    missing_id = str(uuid.uuid4())

    response = client.put(
        "/api/leads/admin/bulk-update",
        json={
            "leadIds": [first["id"], missing_id, second["id"], "not-a-uuid"],
            "updates": {"status": "contacted", "priority": "high", "notes": "Campaña de llamadas"},
        },
        headers=headers,
    )
    assert response.status_code == 200
    body = response.json()
    assert body["summary"]["total"] == 4
    assert body["summary"]["successful"] == 2
    assert body["summary"]["failed"] == 2
    assert body["summary"]["successfulLeads"] == [first["id"], second["id"]]
    errors = {item["leadId"]: item.get("error") for item in body["results"]}
    assert errors[missing_id] == "Lead no encontrado"
    assert errors["not-a-uuid"] == "ID inválido"

    updated = client.get(f"/api/leads/{first['id']}", headers=headers).json()["lead"]
    assert updated["status"] == "contacted"
    assert updated["priority"] == "high"
    assert updated["contactAttempts"] == 1
    assert "Campaña de llamadas" in updated["notes"]


def test_bulk_operations_validate_input(
    client: TestClient,
    headers: dict[str, str],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    empty = client.put(
        "/api/leads/admin/bulk-update",
        json={"leadIds": [], "updates": {"status": "contacted"}},
        headers=headers,
    )
    assert empty.status_code == 400
    assert empty.json()["error"] == "leadIds must be a non-empty array"

    lead = _create_lead(client, headers)
    no_updates = client.put(
        "/api/leads/admin/bulk-update",
        json={"leadIds": [lead["id"]], "updates": {}},
        headers=headers,
    )
    assert no_updates.status_code == 400

    monkeypatch.setenv("BULK_MAX_ITEMS", "2")
    get_settings.cache_clear()
    too_many = client.request(
        "DELETE",
        "/api/leads/admin/bulk-delete",
        json={"leadIds": [str(uuid.uuid4()) for _ in range(3)]},
        headers=headers,
    )
    assert too_many.status_code == 400
    assert too_many.json()["error"] == "Maximum 2 items allowed per bulk operation"


def test_bulk_delete(client: TestClient, headers: dict[str, str]) -> None:
    first = _create_lead(client, headers, name="Uno")
    second = _create_lead(client, headers, name="Dos")

    response = client.request(
        "DELETE",
        "/api/leads/admin/bulk-delete",
        json={"leadIds": [first["id"], second["id"]]},
        headers=headers,
    )
    assert response.status_code == 200
    assert response.json()["summary"]["successful"] == 2
    assert client.get(f"/api/leads/{first['id']}", headers=headers).status_code == 404


def test_bulk_assign_campaign(client: TestClient, headers: dict[str, str]) -> None:
    lead = _create_lead(client, headers)

    unknown = client.post(
        "/api/leads/bulk-assign-campaign",
        json={"leadIds": [lead["id"]], "campaignId": str(uuid.uuid4())},
        headers=headers,
    )
    assert unknown.status_code == 404
    assert unknown.json()["error"] == "Campaign not found or does not belong to your organization"

    campaign = _create_campaign(client, headers)
    assigned = client.post(
        "/api/leads/bulk-assign-campaign",
        json={"leadIds": [lead["id"]], "campaignId": campaign["id"]},
        headers=headers,
    )
    assert assigned.status_code == 200
    body = assigned.json()
    assert body["updatedLeadsCount"] == 1
    assert body["campaignName"] == "Préstamos Q4"

    fetched = client.get(f"/api/leads/{lead['id']}", headers=headers).json()["lead"]
    assert fetched["campaignId"] == campaign["id"]
    assert fetched["campaign"]["name"] == "Préstamos Q4"


def test_import_keeps_valid_rows(client: TestClient, headers: dict[str, str]) -> None:
    response = client.post(
        "/api/leads/import/bulk",
        json={
            "leads": [
                {"name": "Válido", "phone": "61110000", "status": "new", "source": "event"},
                {"name": "Sin teléfono", "status": "new", "source": "event"},
                {"name": "Fuente rara", "phone": "61110001", "status": "new", "source": "carrier-pigeon"},
            ]
        },
        headers=headers,
    )
    assert response.status_code == 200
    body = response.json()
    assert body["summary"]["successful"] == 1
    assert body["summary"]["failed"] == 2
    failed = [item for item in body["results"] if not item["success"]]
    assert failed[0]["leadId"] == "row-2"
    assert failed[0]["error"] == "Campos requeridos faltantes: phone"
    assert failed[0]["leadName"] == "Sin teléfono"
    assert failed[1]["error"].startswith("Fuente de lead inválida")

    listed = client.get("/api/leads", headers=headers).json()["data"]
    assert [item["name"] for item in listed] == ["Válido"]


def test_convert_lead_creates_client_with_document(client: TestClient, headers: dict[str, str], owner: dict) -> None:
    lead = _create_lead(client, headers, email="ana@example.com", company="Banco Istmo", tags=["vip"])

    response = client.post(
        "/api/leads/convert",
        json={"leadId": lead["id"], "conversionValue": 5000, "notes": "Firmó contrato"},
        headers=headers,
    )
    assert response.status_code == 200
    body = response.json()
    assert body["message"] == "Lead convertido a cliente exitosamente"
    assert body["lead"]["status"] == "won"
    assert body["lead"]["convertedToClient"] is True
    assert body["lead"]["clientId"] == body["clientId"]

    converted = client.get(f"/api/clients/{body['clientId']}", headers=headers).json()["client"]
    assert converted["name"] == "Ana Pérez"
    assert converted["debt"] == 5000.0
    assert converted["creditLimit"] == 10000.0
    assert converted["employer"] == "Banco Istmo"
    assert converted["leadId"] == lead["id"]
    assert set(converted["tags"]) == {"vip", "convertido-desde-lead"}

    interactions = client.get(f"/api/clients/{body['clientId']}/interactions", headers=headers)
    assert interactions.status_code == 200
    assert interactions.json()["data"]["customerInteractions"]["callLogs"] == []

    again = client.post("/api/leads/convert", json={"leadId": lead["id"]}, headers=headers)
    assert again.status_code == 400
    assert again.json()["error"] == "Este lead ya ha sido convertido a cliente"


def test_convert_without_client_record(client: TestClient, headers: dict[str, str], db_session: Session) -> None:
    lead = _create_lead(client, headers)

    response = client.post(
        "/api/leads/convert",
        json={"leadId": lead["id"], "createClientRecord": False},
        headers=headers,
    )
    assert response.status_code == 200
    assert response.json()["clientId"] is None
    assert db_session.scalars(select(Client)).all() == []


def test_failed_conversion_leaves_lead_untouched(
    client: TestClient,
    headers: dict[str, str],
    db_session: Session,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    lead = _create_lead(client, headers)

    def unavailable(self: DocumentStore, path: str, data: dict) -> dict:
        raise RuntimeError("document store unavailable")

    monkeypatch.setattr(DocumentStore, "set", unavailable)

    response = client.post("/api/leads/convert", json={"leadId": lead["id"]}, headers=headers)
    assert response.status_code == 500
    assert response.json()["error"] == "Lead conversion failed: document store unavailable"

    fetched = client.get(f"/api/leads/{lead['id']}", headers=headers).json()["lead"]
    assert fetched["status"] == "new"
    assert fetched["convertedToClient"] is False
    assert fetched["clientId"] is None
    assert db_session.scalars(select(Client)).all() == []
    assert db_session.scalars(select(Document)).all() == []


def test_patch_and_delete_lead(client: TestClient, headers: dict[str, str]) -> None:
    lead = _create_lead(client, headers)

    patched = client.patch(
        f"/api/leads/{lead['id']}",
        json={"priority": "urgent", "qualificationScore": 75},
        headers=headers,
    )
    assert patched.status_code == 200
    assert patched.json()["lead"]["priority"] == "urgent"
    assert patched.json()["lead"]["isQualified"] is True

    cleared_name = client.patch(f"/api/leads/{lead['id']}", json={"name": ""}, headers=headers)
    assert cleared_name.status_code == 400

    deleted = client.delete(f"/api/leads/{lead['id']}", headers=headers)
    assert deleted.status_code == 200
    assert deleted.json() == {"success": True, "leadId": lead["id"]}
    assert client.get(f"/api/leads/{lead['id']}", headers=headers).status_code == 404


def test_member_role_cannot_delete(client: TestClient, owner: dict, headers: dict[str, str]) -> None:
    _register(client, "globex", email="agent@example.com")
    added = client.post(
        f"/api/organizations/{owner['organization']['id']}/members",
        json={"email": "agent@example.com", "role": "member"},
        headers=headers,
    )
    assert added.status_code == 201
    login = client.post(
        "/api/auth/login",
        json={"email": "agent@example.com", "password": "s3cret-pass", "tenantIdentifier": "acme"},
    )
    client.cookies.clear()
    member_headers = {"Authorization": f"Bearer {login.json()['token']}"}

    lead = _create_lead(client, member_headers)
    assert lead["organizationId"] == owner["organization"]["id"]

    response = client.delete(f"/api/leads/{lead['id']}", headers=member_headers)
    assert response.status_code == 403
    assert response.json()["error"] == "Missing permission: leads:delete"
