from __future__ import annotations

import logging
import uuid
from collections import Counter
from collections.abc import Callable
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

from fastapi import HTTPException, status
from pydantic import ValidationError
from sqlalchemy import func, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from mariacrm import audit
from mariacrm.core.config import get_settings
from mariacrm.core.schemas import BulkItemResult, summarize
from mariacrm.crm.models import (
    CAMPAIGN_STATUSES,
    LEAD_PRIORITIES,
    LEAD_SOURCES,
    LEAD_STATUSES,
    Campaign,
    Client,
    ClientPayment,
    Lead,
    Product,
)
from mariacrm.crm.schemas import (
    BulkAssignCampaignResponse,
    BulkResponse,
    CampaignCreate,
    CampaignRead,
    CampaignUpdate,
    ClientCreate,
    ClientDetail,
    ClientRead,
    ClientUpdate,
    LeadBulkUpdates,
    LeadConvertRequest,
    LeadConvertResponse,
    LeadCreate,
    LeadMapResponse,
    LeadRead,
    LeadStats,
    LeadUpdate,
    PaymentCreate,
    PaymentRead,
    ProductCreate,
    ProductRead,
    ProductUpdate,
    StatusChange,
    StatusUpdateRequest,
    StatusUpdateResponse,
)
from mariacrm.crm.scoring import (
    append_note,
    apply_bulk_status_effects,
    apply_status_transition,
    client_fields_from_lead,
    compute_qualification_score,
    is_qualified_for,
)
from mariacrm.documents.store import DocumentStore, client_document_path, empty_client_document, leads_collection_path
from mariacrm.metrics import observe_bulk_items
from mariacrm.platform.security import AuthContext, BaseRepository


logger = logging.getLogger("mariacrm.crm")

REQUIRED_LEAD_FIELDS = ("name", "phone", "status", "source")
REQUIRED_CLIENT_FIELDS = ("name", "phone")
SCOPE_FIELDS = {"tenant_id", "organization_id"}

LEAD_NOT_FOUND = "Lead no encontrado"
CLIENT_NOT_FOUND = "Cliente no encontrado"
INVALID_ID = "ID inválido"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_uuid(value: Any) -> uuid.UUID | None:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError):
        return None


def _missing_fields(values: dict[str, Any], required: tuple[str, ...]) -> None:
    missing = [name for name in required if values.get(name) in (None, "")]
    if missing:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Campos requeridos faltantes: {', '.join(missing)}",
        )


def _validate_lead_enums(values: dict[str, Any]) -> None:
    checks = (
        ("status", LEAD_STATUSES, "Estado de lead inválido"),
        ("source", LEAD_SOURCES, "Fuente de lead inválida"),
        ("priority", LEAD_PRIORITIES, "Prioridad de lead inválida"),
    )
    for field_name, allowed, message in checks:
        value = values.get(field_name)
        if value is not None and value not in allowed:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"{message}: {value}. Valores permitidos: {', '.join(allowed)}",
            )


def _check_bulk_ids(ids: list[str], label: str) -> None:
    if not ids:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"{label} must be a non-empty array")
    limit = get_settings().bulk_max_items
    if len(ids) > limit:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Maximum {limit} items allowed per bulk operation",
        )


class LeadRepository(BaseRepository[Lead]):
    model = Lead


class ClientRepository(BaseRepository[Client]):
    model = Client


class CampaignRepository(BaseRepository[Campaign]):
    model = Campaign


class ProductRepository(BaseRepository[Product]):
    model = Product


class ClientService:
    entity_type = "crm.client"

    def __init__(self) -> None:
        self.repository = ClientRepository()

    def list_clients(
        self,
        session: Session,
        ctx: AuthContext,
        filters: dict[str, Any],
        cursor: str | None,
        limit: int,
    ) -> tuple[list[ClientRead], str | None]:
        stmt = self.repository.scoped_select(ctx)
        if filters.get("status"):
            stmt = stmt.where(Client.status == filters["status"])
        if filters.get("q"):
            pattern = f"%{filters['q']}%"
            stmt = stmt.where(
                or_(
                    Client.name.ilike(pattern),
                    Client.email.ilike(pattern),
                    Client.phone.ilike(pattern),
                    Client.national_id.ilike(pattern),
                )
            )
        offset = int(cursor) if cursor and cursor.isdigit() else 0
        rows = session.scalars(stmt.order_by(Client.created_at.desc()).offset(offset).limit(limit)).all()
        next_cursor = str(offset + limit) if len(rows) == limit else None
        return [ClientRead.model_validate(row) for row in rows], next_cursor

    def get_client(self, session: Session, ctx: AuthContext, client_id: uuid.UUID) -> ClientDetail:
        return ClientDetail.model_validate(self._get_or_404(session, ctx, client_id))

    def create_record(self, session: Session, ctx: AuthContext, fields: dict[str, Any]) -> Client:
        """Insert a client and its interaction document without committing."""

        client = Client(**fields)
        if client.tags is None:
            client.tags = []
        self.repository.stamp(client, ctx)
        session.add(client)
        session.flush()
        DocumentStore(session).set(
            client_document_path(ctx.tenant_id, ctx.organization_id, client.id),
            empty_client_document(client.id),
        )
        return client

    def create_client(self, session: Session, ctx: AuthContext, dto: ClientCreate) -> ClientDetail:
        values = dto.model_dump(exclude_unset=True, exclude=SCOPE_FIELDS)
        _missing_fields(values, REQUIRED_CLIENT_FIELDS)
        values = {key: value for key, value in values.items() if value is not None}
        client = self.create_record(session, ctx, values)
        session.commit()
        audit.record(
            actor_id=ctx.user_id,
            tenant_id=str(ctx.tenant_id),
            entity_type=self.entity_type,
            entity_id=str(client.id),
            action="create",
            before=None,
            after={"name": client.name, "phone": client.phone},
            correlation_id=ctx.correlation_id,
        )
        return ClientDetail.model_validate(client)

    def update_client(self, session: Session, ctx: AuthContext, client_id: uuid.UUID, dto: ClientUpdate) -> ClientDetail:
        client = self._get_or_404(session, ctx, client_id)
        changes = dto.model_dump(exclude_unset=True, exclude=SCOPE_FIELDS)
        for required in REQUIRED_CLIENT_FIELDS:
            if required in changes and not changes[required]:
                raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Campos requeridos faltantes: {required}")
        for non_nullable in ("debt", "country", "status", "tags"):
            if non_nullable in changes and changes[non_nullable] is None:
                changes.pop(non_nullable)
        before = {key: getattr(client, key) for key in changes}
        for key, value in changes.items():
            setattr(client, key, value)
        client.updated_at = utcnow()
        session.commit()
        audit.record(
            actor_id=ctx.user_id,
            tenant_id=str(ctx.tenant_id),
            entity_type=self.entity_type,
            entity_id=str(client.id),
            action="update",
            before={key: str(value) if value is not None else None for key, value in before.items()},
            after={key: str(value) if value is not None else None for key, value in changes.items()},
            correlation_id=ctx.correlation_id,
        )
        return ClientDetail.model_validate(client)

    def delete_client(self, session: Session, ctx: AuthContext, client_id: uuid.UUID) -> None:
        client = self._get_or_404(session, ctx, client_id)
        name = client.name
        self._delete_record(session, ctx, client)
        session.commit()
        audit.record(
            actor_id=ctx.user_id,
            tenant_id=str(ctx.tenant_id),
            entity_type=self.entity_type,
            entity_id=str(client_id),
            action="delete",
            before={"name": name},
            after=None,
            correlation_id=ctx.correlation_id,
        )

    def bulk_delete(self, session: Session, ctx: AuthContext, client_ids: list[str]) -> BulkResponse:
        _check_bulk_ids(client_ids, "clientIds")
        results: list[BulkItemResult] = []
        for raw_id in client_ids:
            client_id = parse_uuid(raw_id)
            if client_id is None:
                results.append(BulkItemResult(client_id=str(raw_id), success=False, error=INVALID_ID))
                continue
            client = self.repository.get(session, ctx, client_id)
            if client is None:
                results.append(BulkItemResult(client_id=str(client_id), success=False, error=CLIENT_NOT_FOUND))
                continue
            try:
                with session.begin_nested():
                    self._delete_record(session, ctx, client)
            except SQLAlchemyError as exc:
                logger.warning("crm.client.bulk_delete_item_failed", extra={"client_id": str(client_id), "error": str(exc)})
                results.append(BulkItemResult(client_id=str(client_id), success=False, error=str(exc)))
                continue
            results.append(BulkItemResult(client_id=str(client_id), success=True))
        session.commit()
        summary = summarize(results)
        observe_bulk_items("client_bulk_delete", summary.successful, summary.failed)
        logger.info(
            "crm.client.bulk_delete",
            extra={"total": summary.total, "successful": summary.successful, "failed": summary.failed},
        )
        return BulkResponse(results=results, summary=summary)

    def add_payment(self, session: Session, ctx: AuthContext, client_id: uuid.UUID, dto: PaymentCreate) -> tuple[PaymentRead, Decimal]:
        client = self._get_or_404(session, ctx, client_id)
        payment = ClientPayment(
            client_id=client.id,
            amount=dto.amount,
            paid_at=dto.paid_at or utcnow(),
            method=dto.method,
            reference=dto.reference,
        )
        session.add(payment)
        client.debt = max(Decimal("0"), Decimal(client.debt or 0) - dto.amount)
        client.updated_at = utcnow()
        session.commit()
        audit.record(
            actor_id=ctx.user_id,
            tenant_id=str(ctx.tenant_id),
            entity_type=self.entity_type,
            entity_id=str(client.id),
            action="payment",
            before=None,
            after={"amount": str(dto.amount), "remaining_debt": str(client.debt)},
            correlation_id=ctx.correlation_id,
        )
        return PaymentRead.model_validate(payment), Decimal(client.debt)

    def get_interactions(self, session: Session, ctx: AuthContext, client_id: uuid.UUID) -> tuple[str, dict[str, Any]]:
        self._get_or_404(session, ctx, client_id)
        path = client_document_path(ctx.tenant_id, ctx.organization_id, client_id)
        document = DocumentStore(session).get(path)
        if document is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Documento del cliente no encontrado")
        return path, document

    def update_ai_profile(
        self,
        session: Session,
        ctx: AuthContext,
        client_id: uuid.UUID,
        updates: dict[str, Any],
    ) -> dict[str, Any]:
        if not updates:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="aiProfileUpdates es requerido")
        store = DocumentStore(session)
        path = client_document_path(ctx.tenant_id, ctx.organization_id, client_id)
        document = store.get(path)
        if document is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Cliente con ID '{client_id}' no encontrado")
        if "customerInteractions" not in document:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="El cliente no tiene estructura de customerInteractions",
            )

        now = utcnow().isoformat()
        profile = {**updates, "clientId": str(client_id), "lastUpdatedByAI": now}
        store.merge(path, {"customerInteractions": {"clientAIProfiles": profile}, "updatedAt": now})
        session.commit()
        return {"clientId": str(client_id), "updatedFields": list(updates.keys()), "timestamp": now}

    def append_interaction(
        self,
        session: Session,
        ctx: AuthContext,
        client_id: uuid.UUID,
        collection: str,
        entry: dict[str, Any],
    ) -> None:
        store = DocumentStore(session)
        path = client_document_path(ctx.tenant_id, ctx.organization_id, client_id)
        document = store.get(path) or empty_client_document(client_id)
        interactions = document.setdefault("customerInteractions", {})
        interactions.setdefault(collection, []).append(entry)
        store.set(path, document)

    def _delete_record(self, session: Session, ctx: AuthContext, client: Client) -> None:
        DocumentStore(session).delete(client_document_path(ctx.tenant_id, ctx.organization_id, client.id))
        session.delete(client)
        session.flush()

    def _get_or_404(self, session: Session, ctx: AuthContext, client_id: uuid.UUID) -> Client:
        client = self.repository.get(session, ctx, client_id)
        if client is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=CLIENT_NOT_FOUND)
        return client


class LeadService:
    entity_type = "crm.lead"

    def __init__(self, client_service: ClientService | None = None) -> None:
        self.repository = LeadRepository()
        self.campaigns = CampaignRepository()
        self.client_service = client_service or ClientService()

    def get_map(self, session: Session, ctx: AuthContext) -> LeadMapResponse:
        rows = session.scalars(self.repository.scoped_select(ctx).order_by(Lead.created_at.desc())).all()
        return LeadMapResponse(
            data={str(row.id): LeadRead.model_validate(row) for row in rows},
            path=leads_collection_path(ctx.tenant_id, ctx.organization_id),
        )

    def list_leads(
        self,
        session: Session,
        ctx: AuthContext,
        filters: dict[str, Any],
        cursor: str | None,
        limit: int,
    ) -> tuple[list[LeadRead], str | None]:
        stmt = self.repository.scoped_select(ctx)
        for key, column in (("status", Lead.status), ("source", Lead.source), ("priority", Lead.priority)):
            if filters.get(key):
                stmt = stmt.where(column == filters[key])
        if filters.get("campaign_id"):
            campaign_id = parse_uuid(filters["campaign_id"])
            if campaign_id is None:
                return [], None
            stmt = stmt.where(Lead.campaign_id == campaign_id)
        if filters.get("q"):
            pattern = f"%{filters['q']}%"
            stmt = stmt.where(
                or_(
                    Lead.name.ilike(pattern),
                    Lead.email.ilike(pattern),
                    Lead.company.ilike(pattern),
                    Lead.phone.ilike(pattern),
                )
            )

        offset = int(cursor) if cursor and cursor.isdigit() else 0
        rows = session.scalars(stmt.order_by(Lead.created_at.desc()).offset(offset).limit(limit)).all()
        next_cursor = str(offset + limit) if len(rows) == limit else None
        return [LeadRead.model_validate(row) for row in rows], next_cursor

    def stats(self, session: Session, ctx: AuthContext) -> LeadStats:
        stmt = select(
            Lead.status,
            Lead.source,
            Lead.priority,
            Lead.qualification_score,
            Lead.is_qualified,
            Lead.converted_to_client,
        ).where(Lead.tenant_id == ctx.tenant_id, Lead.organization_id == ctx.organization_id)
        rows = session.execute(stmt).all()

        total = len(rows)
        by_status = Counter(row.status for row in rows)
        qualified = sum(1 for row in rows if row.is_qualified)
        converted = sum(1 for row in rows if row.converted_to_client)
        return LeadStats(
            total=total,
            by_status={name: by_status.get(name, 0) for name in LEAD_STATUSES},
            by_source=dict(Counter(row.source for row in rows)),
            by_priority=dict(Counter(row.priority for row in rows)),
            qualified=qualified,
            converted=converted,
            conversion_rate=round(converted / total * 100, 2) if total else 0.0,
            average_score=round(sum(row.qualification_score or 0 for row in rows) / total, 2) if total else 0.0,
        )

    def get_lead(self, session: Session, ctx: AuthContext, lead_id: uuid.UUID) -> LeadRead:
        return LeadRead.model_validate(self.get_record(session, ctx, lead_id))

    def get_record(self, session: Session, ctx: AuthContext, lead_id: uuid.UUID | str) -> Lead:
        parsed = parse_uuid(lead_id)
        lead = self.repository.get(session, ctx, parsed) if parsed is not None else None
        if lead is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=LEAD_NOT_FOUND)
        return lead

    def build_lead(self, session: Session, ctx: AuthContext, dto: LeadCreate) -> Lead:
        """Validate and add a lead to the session; the caller commits."""

        values = dto.model_dump(exclude_unset=True, exclude=SCOPE_FIELDS)
        _missing_fields(values, REQUIRED_LEAD_FIELDS)
        _validate_lead_enums(values)
        values = {key: value for key, value in values.items() if value is not None}
        campaign = self._resolve_campaign(session, ctx, values.pop("campaign_id", None))

        priority = values.setdefault("priority", "medium")
        values.setdefault("country", "Panamá")
        values.setdefault("tags", [])
        score = compute_qualification_score(
            email=values.get("email"),
            company=values.get("company"),
            position=values.get("position"),
            interest_level=values.get("interest_level"),
            priority=priority,
            source=values["source"],
        )
        lead = Lead(
            **values,
            campaign_id=campaign.id if campaign is not None else None,
            qualification_score=score,
            is_qualified=is_qualified_for(score, values["status"]),
            contact_attempts=0,
            converted_to_client=False,
        )
        self.repository.stamp(lead, ctx)
        session.add(lead)
        session.flush()
        return lead

    def create_lead(self, session: Session, ctx: AuthContext, dto: LeadCreate) -> LeadRead:
        lead = self.build_lead(session, ctx, dto)
        session.commit()
        audit.record(
            actor_id=ctx.user_id,
            tenant_id=str(ctx.tenant_id),
            entity_type=self.entity_type,
            entity_id=str(lead.id),
            action="create",
            before=None,
            after={"name": lead.name, "status": lead.status, "principal": ctx.principal},
            correlation_id=ctx.correlation_id,
        )
        logger.info("crm.lead.created", extra={"lead_id": str(lead.id)})
        return LeadRead.model_validate(lead)

    def update_lead(self, session: Session, ctx: AuthContext, lead_id: uuid.UUID, dto: LeadUpdate) -> LeadRead:
        lead = self.get_record(session, ctx, lead_id)
        changes = dto.model_dump(exclude_unset=True, exclude=SCOPE_FIELDS)
        for required in REQUIRED_LEAD_FIELDS:
            if required in changes and not changes[required]:
                raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Campos requeridos faltantes: {required}")
        _validate_lead_enums(changes)
        if "campaign_id" in changes:
            campaign = self._resolve_campaign(session, ctx, changes.pop("campaign_id"))
            lead.campaign_id = campaign.id if campaign is not None else None
        for non_nullable in ("priority", "country", "tags", "qualification_score", "is_qualified"):
            if non_nullable in changes and changes[non_nullable] is None:
                changes.pop(non_nullable)

        before = {"status": lead.status, "qualification_score": lead.qualification_score}
        for key, value in changes.items():
            setattr(lead, key, value)
        if "is_qualified" not in changes:
            lead.is_qualified = lead.is_qualified or is_qualified_for(lead.qualification_score or 0, lead.status)
        lead.updated_at = utcnow()
        session.commit()
        audit.record(
            actor_id=ctx.user_id,
            tenant_id=str(ctx.tenant_id),
            entity_type=self.entity_type,
            entity_id=str(lead.id),
            action="update",
            before=before,
            after={"status": lead.status, "qualification_score": lead.qualification_score},
            correlation_id=ctx.correlation_id,
        )
        return LeadRead.model_validate(lead)

    def delete_lead(self, session: Session, ctx: AuthContext, lead_id: uuid.UUID) -> None:
        lead = self.get_record(session, ctx, lead_id)
        name = lead.name
        session.delete(lead)
        session.commit()
        audit.record(
            actor_id=ctx.user_id,
            tenant_id=str(ctx.tenant_id),
            entity_type=self.entity_type,
            entity_id=str(lead_id),
            action="delete",
            before={"name": name},
            after=None,
            correlation_id=ctx.correlation_id,
        )

    def update_status(self, session: Session, ctx: AuthContext, dto: StatusUpdateRequest) -> StatusUpdateResponse:
        _validate_lead_enums({"status": dto.new_status})
        lead = self.get_record(session, ctx, dto.lead_id)
        previous = lead.status
        now = utcnow()
        if not apply_status_transition(lead, dto.new_status, dto.notes, now):
            return StatusUpdateResponse(
                data=LeadRead.model_validate(lead),
                message=f'El lead ya tiene el estado "{previous}"',
            )

        session.commit()
        audit.record(
            actor_id=ctx.user_id,
            tenant_id=str(ctx.tenant_id),
            entity_type=self.entity_type,
            entity_id=str(lead.id),
            action="status_change",
            before={"status": previous},
            after={"status": lead.status, "notes": dto.notes},
            correlation_id=ctx.correlation_id,
        )
        return StatusUpdateResponse(
            data=LeadRead.model_validate(lead),
            status_change=StatusChange(from_status=previous, to_status=lead.status, timestamp=now, notes=dto.notes),
            message=f'Status actualizado de "{previous}" a "{lead.status}"',
        )

    def bulk_delete(self, session: Session, ctx: AuthContext, lead_ids: list[str]) -> BulkResponse:
        _check_bulk_ids(lead_ids, "leadIds")

        def delete(lead: Lead) -> None:
            session.delete(lead)

        results = self._run_bulk(session, ctx, lead_ids, delete)
        return self._finish_bulk(session, ctx, "lead_bulk_delete", results)

    def bulk_update(self, session: Session, ctx: AuthContext, lead_ids: list[str], updates: LeadBulkUpdates) -> BulkResponse:
        _check_bulk_ids(lead_ids, "leadIds")
        changes = {
            key: value
            for key, value in updates.model_dump(exclude_unset=True).items()
            if value is not None or key in {"campaign_id", "assigned_agent_id", "assigned_agent_name"}
        }
        if not changes:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="updates must contain at least one field")
        _validate_lead_enums(changes)
        campaign_id: uuid.UUID | None = None
        if "campaign_id" in changes:
            campaign = self._resolve_campaign(session, ctx, changes.pop("campaign_id"))
            campaign_id = campaign.id if campaign is not None else None
            changes["campaign_id"] = campaign_id
        note = changes.pop("notes", None)
        now = utcnow()

        def update(lead: Lead) -> None:
            for key, value in changes.items():
                setattr(lead, key, value)
            if "status" in changes:
                apply_bulk_status_effects(lead, changes["status"], now)
            lead.notes = append_note(lead.notes, note, now)
            lead.updated_at = now

        results = self._run_bulk(session, ctx, lead_ids, update)
        return self._finish_bulk(session, ctx, "lead_bulk_update", results)

    def bulk_assign_campaign(
        self,
        session: Session,
        ctx: AuthContext,
        lead_ids: list[str],
        campaign_id: str,
    ) -> BulkAssignCampaignResponse:
        _check_bulk_ids(lead_ids, "leadIds")
        parsed = parse_uuid(campaign_id)
        campaign = self.campaigns.get(session, ctx, parsed) if parsed is not None else None
        if campaign is None:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail="Campaign not found or does not belong to your organization",
            )
        now = utcnow()

        def assign(lead: Lead) -> None:
            lead.campaign_id = campaign.id
            lead.updated_at = now

        results = self._run_bulk(session, ctx, lead_ids, assign)
        response = self._finish_bulk(session, ctx, "lead_bulk_assign_campaign", results)
        return BulkAssignCampaignResponse(
            results=response.results,
            summary=response.summary,
            updated_leads_count=response.summary.successful,
            campaign_id=str(campaign.id),
            campaign_name=campaign.name,
        )

    def import_leads(self, session: Session, ctx: AuthContext, items: list[dict[str, Any]]) -> BulkResponse:
        if not items:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="leads must be a non-empty array")
        limit = get_settings().bulk_max_items
        if len(items) > limit:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Maximum {limit} items allowed per bulk operation")

        results: list[BulkItemResult] = []
        for index, item in enumerate(items):
            name = item.get("name") if isinstance(item, dict) else None
            try:
                with session.begin_nested():
                    dto = LeadCreate.model_validate(item)
                    lead = self.build_lead(session, ctx, dto)
            except ValidationError as exc:
                fields = [".".join(str(part) for part in error["loc"]) for error in exc.errors()]
                results.append(
                    BulkItemResult(lead_id=f"row-{index + 1}", success=False, error=f"Datos inválidos: {', '.join(fields)}", lead_name=name)
                )
                continue
            except HTTPException as exc:
                results.append(BulkItemResult(lead_id=f"row-{index + 1}", success=False, error=str(exc.detail), lead_name=name))
                continue
            except SQLAlchemyError as exc:
                logger.warning("crm.lead.import_item_failed", extra={"error": str(exc)})
                results.append(BulkItemResult(lead_id=f"row-{index + 1}", success=False, error=str(exc), lead_name=name))
                continue
            results.append(BulkItemResult(lead_id=str(lead.id), success=True, lead_name=lead.name))
        return self._finish_bulk(session, ctx, "lead_import", results)

    def convert_lead(self, session: Session, ctx: AuthContext, dto: LeadConvertRequest) -> LeadConvertResponse:
        lead = self.get_record(session, ctx, dto.lead_id)
        if lead.converted_to_client:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Este lead ya ha sido convertido a cliente")

        lead_id = lead.id
        previous_status = lead.status
        now = utcnow()
        client_id: uuid.UUID | None = None
        try:
            lead.status = "won"
            lead.converted_to_client = True
            lead.is_qualified = True
            lead.conversion_date = now
            lead.conversion_value = dto.conversion_value
            lead.next_follow_up_date = None
            lead.notes = append_note(lead.notes, dto.notes, now)
            lead.updated_at = now
            if dto.create_client_record:
                client = self.client_service.create_record(
                    session,
                    ctx,
                    client_fields_from_lead(lead, dto.conversion_value, now),
                )
                client_id = client.id
                lead.client_id = client.id
            session.flush()
            session.commit()
        except HTTPException:
            session.rollback()
            raise
        except Exception as exc:
            session.rollback()
            logger.error("crm.lead.convert_failed", extra={"lead_id": str(lead_id), "error": str(exc)})
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail=f"Lead conversion failed: {exc}",
            ) from exc

        audit.record(
            actor_id=ctx.user_id,
            tenant_id=str(ctx.tenant_id),
            entity_type=self.entity_type,
            entity_id=str(lead_id),
            action="convert",
            before={"status": previous_status, "converted_to_client": False},
            after={"status": "won", "client_id": str(client_id) if client_id else None},
            correlation_id=ctx.correlation_id,
        )
        logger.info("crm.lead.converted", extra={"lead_id": str(lead_id), "client_id": str(client_id) if client_id else None})
        return LeadConvertResponse(
            lead=LeadRead.model_validate(lead),
            client_id=client_id,
            message="Lead convertido a cliente exitosamente",
        )

    def _resolve_campaign(self, session: Session, ctx: AuthContext, campaign_id: Any) -> Campaign | None:
        if campaign_id in (None, ""):
            return None
        parsed = parse_uuid(campaign_id)
        campaign = self.campaigns.get(session, ctx, parsed) if parsed is not None else None
        if campaign is None:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Campaign not found")
        return campaign

    def _run_bulk(
        self,
        session: Session,
        ctx: AuthContext,
        lead_ids: list[str],
        operation: Callable[[Lead], None],
    ) -> list[BulkItemResult]:
        results: list[BulkItemResult] = []
        for raw_id in lead_ids:
            lead_id = parse_uuid(raw_id)
            if lead_id is None:
                results.append(BulkItemResult(lead_id=str(raw_id), success=False, error=INVALID_ID))
                continue
            lead = self.repository.get(session, ctx, lead_id)
            if lead is None:
                results.append(BulkItemResult(lead_id=str(lead_id), success=False, error=LEAD_NOT_FOUND))
                continue
            name = lead.name
            try:
                with session.begin_nested():
                    operation(lead)
                    session.flush()
            except SQLAlchemyError as exc:
                logger.warning("crm.lead.bulk_item_failed", extra={"lead_id": str(lead_id), "error": str(exc)})
                results.append(BulkItemResult(lead_id=str(lead_id), success=False, error=str(exc), lead_name=name))
                continue
            results.append(BulkItemResult(lead_id=str(lead_id), success=True, lead_name=name))
        return results

    def _finish_bulk(self, session: Session, ctx: AuthContext, operation: str, results: list[BulkItemResult]) -> BulkResponse:
        session.commit()
        summary = summarize(results)
        observe_bulk_items(operation, summary.successful, summary.failed)
        audit.record(
            actor_id=ctx.user_id,
            tenant_id=str(ctx.tenant_id),
            entity_type=self.entity_type,
            entity_id="bulk",
            action=operation,
            before=None,
            after={"successful": summary.successful_leads, "failed": summary.failed_leads},
            correlation_id=ctx.correlation_id,
        )
        logger.info(
            f"crm.{operation}",
            extra={"operation": operation, "total": summary.total, "successful": summary.successful, "failed": summary.failed},
        )
        return BulkResponse(results=results, summary=summary)


class ProductService:
    entity_type = "crm.product"

    def __init__(self) -> None:
        self.repository = ProductRepository()

    def list_products(self, session: Session, ctx: AuthContext, active_only: bool = False) -> list[ProductRead]:
        stmt = self.repository.scoped_select(ctx)
        if active_only:
            stmt = stmt.where(Product.is_active.is_(True))
        return [ProductRead.model_validate(row) for row in session.scalars(stmt.order_by(Product.name)).all()]

    def get_product(self, session: Session, ctx: AuthContext, product_id: uuid.UUID) -> ProductRead:
        return ProductRead.model_validate(self._get_or_404(session, ctx, product_id))

    def create_product(self, session: Session, ctx: AuthContext, dto: ProductCreate) -> ProductRead:
        product = Product(**dto.model_dump(exclude=SCOPE_FIELDS))
        self.repository.stamp(product, ctx)
        session.add(product)
        session.commit()
        self._audit(ctx, product, "create")
        return ProductRead.model_validate(product)

    def update_product(self, session: Session, ctx: AuthContext, product_id: uuid.UUID, dto: ProductUpdate) -> ProductRead:
        product = self._get_or_404(session, ctx, product_id)
        for key, value in dto.model_dump(exclude_unset=True, exclude=SCOPE_FIELDS).items():
            if key == "name" and not value:
                continue
            setattr(product, key, value)
        product.updated_at = utcnow()
        session.commit()
        self._audit(ctx, product, "update")
        return ProductRead.model_validate(product)

    def delete_product(self, session: Session, ctx: AuthContext, product_id: uuid.UUID) -> None:
        product = self._get_or_404(session, ctx, product_id)
        self._audit(ctx, product, "delete")
        session.delete(product)
        session.commit()

    def resolve_many(self, session: Session, ctx: AuthContext, product_ids: list[str]) -> list[Product]:
        parsed = [parse_uuid(value) for value in product_ids]
        if any(value is None for value in parsed):
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid product id")
        unique_ids = list(dict.fromkeys(parsed))
        if not unique_ids:
            return []
        products = session.scalars(self.repository.scoped_select(ctx).where(Product.id.in_(unique_ids))).all()
        if len(products) != len(unique_ids):
            found = {product.id for product in products}
            missing = [str(value) for value in unique_ids if value not in found]
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Products not found: {', '.join(missing)}")
        return list(products)

    def _get_or_404(self, session: Session, ctx: AuthContext, product_id: uuid.UUID) -> Product:
        product = self.repository.get(session, ctx, product_id)
        if product is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Product not found")
        return product

    def _audit(self, ctx: AuthContext, product: Product, action: str) -> None:
        audit.record(
            actor_id=ctx.user_id,
            tenant_id=str(ctx.tenant_id),
            entity_type=self.entity_type,
            entity_id=str(product.id),
            action=action,
            before=None,
            after={"name": product.name},
            correlation_id=ctx.correlation_id,
        )


class CampaignService:
    entity_type = "crm.campaign"

    def __init__(self, product_service: ProductService | None = None) -> None:
        self.repository = CampaignRepository()
        self.product_service = product_service or ProductService()

    def list_campaigns(self, session: Session, ctx: AuthContext) -> list[CampaignRead]:
        campaigns = session.scalars(self.repository.scoped_select(ctx).order_by(Campaign.created_at.desc())).all()
        counts = self._lead_counts(session, ctx, [campaign.id for campaign in campaigns])
        return [self._to_read(campaign, counts.get(campaign.id, 0)) for campaign in campaigns]

    def get_campaign(self, session: Session, ctx: AuthContext, campaign_id: uuid.UUID) -> CampaignRead:
        campaign = self.get_record(session, ctx, campaign_id)
        return self._to_read(campaign, self._lead_counts(session, ctx, [campaign.id]).get(campaign.id, 0))

    def get_record(self, session: Session, ctx: AuthContext, campaign_id: uuid.UUID) -> Campaign:
        campaign = self.repository.get(session, ctx, campaign_id)
        if campaign is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Campaign not found")
        return campaign

    def create_campaign(self, session: Session, ctx: AuthContext, dto: CampaignCreate) -> CampaignRead:
        self._validate_status(dto.status)
        self._validate_dates(dto.start_date, dto.end_date)
        products = self.product_service.resolve_many(session, ctx, dto.product_ids)
        campaign = Campaign(**dto.model_dump(exclude=SCOPE_FIELDS | {"product_ids"}))
        campaign.products = products
        self.repository.stamp(campaign, ctx)
        session.add(campaign)
        session.commit()
        self._audit(ctx, campaign, "create")
        return self._to_read(campaign, 0)

    def update_campaign(self, session: Session, ctx: AuthContext, campaign_id: uuid.UUID, dto: CampaignUpdate) -> CampaignRead:
        campaign = self.get_record(session, ctx, campaign_id)
        changes = dto.model_dump(exclude_unset=True, exclude=SCOPE_FIELDS)
        if changes.get("status") is not None:
            self._validate_status(changes["status"])
        product_ids = changes.pop("product_ids", None)
        if product_ids is not None:
            campaign.products = self.product_service.resolve_many(session, ctx, product_ids)
        for key, value in changes.items():
            if key in {"name", "status"} and not value:
                continue
            setattr(campaign, key, value)
        self._validate_dates(campaign.start_date, campaign.end_date)
        campaign.updated_at = utcnow()
        session.commit()
        self._audit(ctx, campaign, "update")
        return self.get_campaign(session, ctx, campaign.id)

    def delete_campaign(self, session: Session, ctx: AuthContext, campaign_id: uuid.UUID) -> int:
        campaign = self.get_record(session, ctx, campaign_id)
        leads = session.scalars(
            self.repository.apply_scope_query(select(Lead), ctx).where(Lead.campaign_id == campaign.id)
        ).all()
        for lead in leads:
            lead.campaign_id = None
        self._audit(ctx, campaign, "delete")
        session.delete(campaign)
        session.commit()
        return len(leads)

    def _lead_counts(self, session: Session, ctx: AuthContext, campaign_ids: list[uuid.UUID]) -> dict[uuid.UUID, int]:
        if not campaign_ids:
            return {}
        rows = session.execute(
            select(Lead.campaign_id, func.count(Lead.id))
            .where(
                Lead.tenant_id == ctx.tenant_id,
                Lead.organization_id == ctx.organization_id,
                Lead.campaign_id.in_(campaign_ids),
            )
            .group_by(Lead.campaign_id)
        ).all()
        return {campaign_id: count for campaign_id, count in rows}

    def _to_read(self, campaign: Campaign, lead_count: int) -> CampaignRead:
        read = CampaignRead.model_validate(campaign)
        return read.model_copy(update={"lead_count": lead_count})

    def _validate_status(self, value: str) -> None:
        if value not in CAMPAIGN_STATUSES:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"Estado de campaña inválido: {value}. Valores permitidos: {', '.join(CAMPAIGN_STATUSES)}",
            )

    def _validate_dates(self, start: Any, end: Any) -> None:
        if start is not None and end is not None and end < start:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="endDate must be on or after startDate")

    def _audit(self, ctx: AuthContext, campaign: Campaign, action: str) -> None:
        audit.record(
            actor_id=ctx.user_id,
            tenant_id=str(ctx.tenant_id),
            entity_type=self.entity_type,
            entity_id=str(campaign.id),
            action=action,
            before=None,
            after={"name": campaign.name, "status": campaign.status},
            correlation_id=ctx.correlation_id,
        )
