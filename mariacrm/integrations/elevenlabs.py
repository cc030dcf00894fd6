from __future__ import annotations

import json
import logging
import re
import time
import uuid
from collections.abc import Iterator
from datetime import datetime, timezone
from typing import Any

import httpx
from fastapi import HTTPException, status
from sqlalchemy import select
from sqlalchemy.orm import Session

from mariacrm import audit
from mariacrm.core.config import Settings, get_settings
from mariacrm.core.schemas import BulkItemResult, summarize
from mariacrm.crm.models import Lead, LeadCallLog
from mariacrm.crm.service import LEAD_NOT_FOUND, LeadService
from mariacrm.integrations.errors import ProviderError, ProviderErrorKind
from mariacrm.integrations.schemas import (
    BulkLeadCallRequest,
    BulkLeadCallResponse,
    CallLogRead,
    LeadCallRequest,
    LeadCallResponse,
    Transcript,
    TranscriptMessage,
)
from mariacrm.integrations.transport import build_http_client, missing_credential, request_json
from mariacrm.metrics import observe_bulk_items
from mariacrm.platform.security import AuthContext
from mariacrm.tenancy.models import Organization


logger = logging.getLogger("mariacrm.integrations.elevenlabs")

NO_CAMPAIGN_MESSAGE = "No se puede realizar llamada sin campaña asignada"
BULK_CALL_MAX_LEADS = 50

RECOMMENDED_CALL_TYPES = {
    "new": "prospecting",
    "contacted": "qualification",
    "interested": "follow_up",
    "qualified": "follow_up",
    "follow_up": "follow_up",
    "proposal": "closing",
    "negotiation": "closing",
    "cold": "recovery",
}


class LeadsWithoutCampaignError(Exception):
    """Raised before a bulk call when any requested lead has no campaign."""

    message = "Algunos leads no tienen campaña asignada"

    def __init__(self, leads: list[Lead]) -> None:
        self.leads = leads
        super().__init__(self.message)

    @property
    def details(self) -> dict[str, Any]:
        names = ", ".join(lead.name for lead in self.leads)
        return {
            "summary": f"{len(self.leads)} leads sin campaña: {names}",
            "leads": [{"id": str(lead.id), "name": lead.name} for lead in self.leads],
        }


def recommended_call_type(lead_status: str | None) -> str:
    return RECOMMENDED_CALL_TYPES.get(lead_status or "", "prospecting")


def normalize_transcript(raw: Any) -> Transcript:
    """Convert an ElevenLabs conversation transcript into the agent/lead form."""

    if not isinstance(raw, list) or not raw:
        return Transcript(messages=[], duration=0, total_words=0, participant_count=0)

    messages = [
        TranscriptMessage(
            role="agent" if item.get("role") == "agent" else "lead",
            content=item.get("message") or item.get("text") or "",
            timestamp=item.get("time_in_call_secs") or 0,
        )
        for item in raw
        if isinstance(item, dict)
    ]
    return Transcript(
        messages=messages,
        duration=max((message.timestamp for message in messages), default=0),
        total_words=sum(len(message.content.split(" ")) for message in messages if message.content),
        participant_count=2 if messages else 0,
    )


def format_phone(phone: str) -> str:
    """E.164 for the dialer; bare 8-digit numbers are Panamanian."""

    digits = re.sub(r"\D", "", phone)
    if len(digits) == 8 and not digits.startswith("507"):
        return f"+507{digits}"
    return f"+{digits}"


class ElevenLabsClient:
    provider = "elevenlabs"

    def __init__(
        self,
        api_key: str | None,
        base_url: str = "https://api.elevenlabs.io",
        agent_id: str | None = None,
        phone_number_id: str | None = None,
        http_client: httpx.Client | None = None,
    ) -> None:
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.agent_id = agent_id
        self.phone_number_id = phone_number_id
        self.http_client = http_client or build_http_client()

    def _headers(self) -> dict[str, str]:
        if not self.api_key:
            raise missing_credential(self.provider)
        return {"xi-api-key": self.api_key, "Content-Type": "application/json"}

    def get_conversation(self, conversation_id: str) -> Transcript:
        payload = request_json(
            self.http_client,
            self.provider,
            "get_conversation",
            "GET",
            f"{self.base_url}/v1/convai/conversations/{conversation_id}",
            headers=self._headers(),
        )
        return normalize_transcript(payload.get("transcript") if isinstance(payload, dict) else None)

    def get_agent(self, agent_id: str) -> dict[str, Any]:
        return request_json(
            self.http_client,
            self.provider,
            "get_agent",
            "GET",
            f"{self.base_url}/v1/convai/agents/{agent_id}",
            headers=self._headers(),
        )

    def submit_batch_call(self, call_name: str, phone_number: str, dynamic_variables: dict[str, str]) -> dict[str, Any]:
        if not self.agent_id or not self.phone_number_id:
            raise ProviderError(
                ProviderErrorKind.INVALID_CREDENTIAL,
                self.provider,
                "agent id or phone number id is not configured",
            )
        body = {
            "call_name": call_name,
            "agent_id": self.agent_id,
            "agent_phone_number_id": self.phone_number_id,
            "scheduled_time_unix": 1,
            "recipients": [
                {
                    "phone_number": phone_number,
                    "conversation_initiation_client_data": {"dynamic_variables": dynamic_variables},
                }
            ],
        }
        payload = request_json(
            self.http_client,
            self.provider,
            "submit_batch_call",
            "POST",
            f"{self.base_url}/v1/convai/batch-calling/submit",
            json=body,
            headers=self._headers(),
        )
        if not isinstance(payload, dict):
            raise ProviderError(ProviderErrorKind.GENERIC, self.provider, "batch call response is not an object")
        return payload


def build_elevenlabs_client(settings: Settings | None = None, http_client: httpx.Client | None = None) -> ElevenLabsClient:
    settings = settings or get_settings()
    return ElevenLabsClient(
        settings.elevenlabs_api_key,
        base_url=settings.elevenlabs_api_url,
        agent_id=settings.elevenlabs_agent_id,
        phone_number_id=settings.elevenlabs_phone_number_id,
        http_client=http_client,
    )


def get_elevenlabs_client() -> Iterator[ElevenLabsClient]:
    http_client = build_http_client()
    try:
        yield build_elevenlabs_client(http_client=http_client)
    finally:
        http_client.close()


def call_variables(lead: Lead, organization: Organization | None, call_type: str, notes: str | None) -> dict[str, str]:
    campaign = lead.campaign
    products = list(campaign.products) if campaign is not None else []
    detailed = " | ".join(
        f"{product.name}"
        f"{f' (${product.price})' if product.price else ''}"
        f"{f' - {product.description}' if product.description else ''}"
        for product in products
    )
    return {
        "name": lead.name or "Cliente",
        "email": lead.email or "",
        "phone": lead.phone or "",
        "lead_company": lead.company or "",
        "lead_source": lead.source or "",
        "lead_status": lead.status or "new",
        "lead_priority": lead.priority or "medium",
        "lead_address": lead.address or "",
        "lead_city": lead.city or "",
        "lead_country": lead.country or "",
        "lead_position": lead.position or "",
        "my_company_name": organization.name if organization is not None else "Mi Empresa",
        "my_company_description": (organization.description or "") if organization is not None else "",
        "notes": notes or "Sin notas adicionales",
        "today_date": datetime.now(timezone.utc).date().isoformat(),
        "campaign_name": campaign.name if campaign is not None else "Sin campaña específica",
        "campaign_description": (campaign.description or "") if campaign is not None else "",
        "campaign_budget": f"${campaign.budget}" if campaign is not None and campaign.budget else "",
        "campaign_status": campaign.status if campaign is not None else "N/A",
        "campaign_products": ", ".join(product.name for product in products) or "Productos generales",
        "campaign_products_count": str(len(products)),
        "campaign_products_detailed": detailed or "Sin productos específicos",
        "has_specific_campaign": "true" if campaign is not None else "false",
        "campaign_focus_intro": f'Sobre la campaña "{campaign.name}" que te interesó'
        if campaign is not None
        else "Sobre nuestros servicios",
        "call_type": call_type,
    }


class LeadCallService:
    entity_type = "crm.lead_call"

    def __init__(self, lead_service: LeadService | None = None) -> None:
        self.lead_service = lead_service or LeadService()

    def initiate(
        self,
        session: Session,
        ctx: AuthContext,
        lead_id: str,
        dto: LeadCallRequest,
        client: ElevenLabsClient,
    ) -> LeadCallResponse:
        lead = self.lead_service.get_record(session, ctx, lead_id)
        if not lead.phone:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="El lead no tiene número de teléfono")
        if lead.campaign_id is None:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=NO_CAMPAIGN_MESSAGE)

        organization = session.get(Organization, ctx.organization_id)
        variables = call_variables(lead, organization, dto.call_type, dto.notes)
        call_name = re.sub(r"\s+", "_", f"Lead_{lead.name or 'Unknown'}_{int(time.time() * 1000)}")
        result = client.submit_batch_call(call_name, format_phone(lead.phone), variables)

        variables_note = f"Variables dinámicas: {json.dumps(variables, ensure_ascii=False, indent=2)}"
        call_log = LeadCallLog(
            id=uuid.uuid4(),
            tenant_id=ctx.tenant_id,
            organization_id=ctx.organization_id,
            lead_id=lead.id,
            batch_id=result.get("id"),
            agent_id=result.get("agent_id") or client.agent_id,
            call_type=dto.call_type,
            status="initiating",
            notes=f"{dto.notes}\n\n{variables_note}" if dto.notes else variables_note,
        )
        session.add(call_log)
        lead.contact_attempts = (lead.contact_attempts or 0) + 1
        lead.last_contact_date = datetime.now(timezone.utc)
        session.commit()
        session.refresh(call_log)

        audit.record(
            actor_id=ctx.user_id,
            tenant_id=str(ctx.tenant_id),
            entity_type=self.entity_type,
            entity_id=str(call_log.id),
            action="lead_call.initiated",
            before=None,
            after={"leadId": str(lead.id), "batchId": call_log.batch_id, "callType": call_log.call_type},
            correlation_id=ctx.correlation_id,
        )
        logger.info(
            "lead_call.initiated",
            extra={"tenant_id": str(ctx.tenant_id), "lead_id": str(lead.id), "provider": client.provider},
        )
        return LeadCallResponse(
            call_log=CallLogRead.model_validate(call_log),
            batch_id=call_log.batch_id,
            dynamic_variables=variables,
            message="Llamada iniciada exitosamente",
        )

    def bulk_initiate(
        self,
        session: Session,
        ctx: AuthContext,
        dto: BulkLeadCallRequest,
        client: ElevenLabsClient,
    ) -> BulkLeadCallResponse:
        if not dto.lead_ids:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="leadIds es requerido y debe ser un array con al menos un ID",
            )
        if len(dto.lead_ids) > BULK_CALL_MAX_LEADS:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"Máximo {BULK_CALL_MAX_LEADS} leads permitidos por solicitud masiva",
            )

        leads: dict[str, Lead] = {}
        for lead_id in dto.lead_ids:
            try:
                leads[lead_id] = self.lead_service.get_record(session, ctx, lead_id)
            except HTTPException:
                continue
        without_campaign = [lead for lead in leads.values() if lead.campaign_id is None]
        if without_campaign:
            raise LeadsWithoutCampaignError(without_campaign)

        results: list[BulkItemResult] = []
        call_logs: list[CallLogRead] = []
        for lead_id in dto.lead_ids:
            lead = leads.get(lead_id)
            if lead is None:
                results.append(BulkItemResult(lead_id=lead_id, success=False, error=LEAD_NOT_FOUND))
                continue
            call_request = LeadCallRequest(call_type=dto.call_type or recommended_call_type(lead.status), notes=dto.notes)
            try:
                response = self.initiate(session, ctx, lead_id, call_request, client)
            except HTTPException as exc:
                results.append(BulkItemResult(lead_id=lead_id, lead_name=lead.name, success=False, error=str(exc.detail)))
                continue
            except ProviderError as exc:
                logger.warning(
                    "lead_call.bulk_item_failed",
                    extra={"provider": exc.provider, "lead_id": lead_id, "error_kind": exc.kind.value},
                )
                results.append(
                    BulkItemResult(
                        lead_id=lead_id,
                        lead_name=lead.name,
                        success=False,
                        error=f"Error en llamada: {exc.user_message}",
                    )
                )
                continue
            call_logs.append(response.call_log)
            results.append(BulkItemResult(lead_id=lead_id, lead_name=lead.name, success=True))

        summary = summarize(results)
        observe_bulk_items("bulk_call", summary.successful, summary.failed)
        logger.info(
            "lead_call.bulk_completed",
            extra={
                "tenant_id": str(ctx.tenant_id),
                "total": summary.total,
                "successful": summary.successful,
                "failed": summary.failed,
            },
        )
        return BulkLeadCallResponse(results=results, summary=summary, call_logs=call_logs)

    def list_calls(self, session: Session, ctx: AuthContext, lead_id: str) -> list[CallLogRead]:
        lead = self.lead_service.get_record(session, ctx, lead_id)
        rows = session.scalars(
            select(LeadCallLog)
            .where(
                LeadCallLog.tenant_id == ctx.tenant_id,
                LeadCallLog.organization_id == ctx.organization_id,
                LeadCallLog.lead_id == lead.id,
            )
            .order_by(LeadCallLog.created_at.desc())
        ).all()
        return [CallLogRead.model_validate(row) for row in rows]
