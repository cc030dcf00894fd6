from __future__ import annotations

import logging
from collections.abc import Iterator
from datetime import datetime, timezone
from typing import Any

import httpx
from fastapi import HTTPException, status
from pydantic import ValidationError
from sqlalchemy.orm import Session

from mariacrm import audit
from mariacrm.core.config import Settings, get_settings
from mariacrm.crm.models import Client
from mariacrm.crm.service import CLIENT_NOT_FOUND, ClientService, parse_uuid
from mariacrm.integrations.errors import ProviderError, ProviderErrorKind
from mariacrm.integrations.schemas import WhatsAppStartRequest, WhatsAppStartResponse, WhatsAppStartResult
from mariacrm.integrations.transport import build_http_client, request_json
from mariacrm.platform.security import AuthContext


logger = logging.getLogger("mariacrm.integrations.whatsapp")


def _number(value: Any, fallback: float = 0) -> float:
    return float(value) if value is not None else fallback


def _date(value: datetime | None) -> str:
    return (value or datetime.now(timezone.utc)).date().isoformat()


def format_client_payload(client: Client, selected_action: str | None = None) -> dict[str, Any]:
    """Client record in the shape the WhatsApp conversation service expects."""

    last_payment = max(client.payments, key=lambda payment: payment.paid_at, default=None)
    payload: dict[str, Any] = {
        "name": client.name or "Unknown Client",
        "phone": client.phone or "",
        "national_id": client.national_id or "",
        "debt": _number(client.debt),
        "status": client.status or "unknown",
        "loan_letter": client.loan_letter or "",
        "email": client.email or "",
        "address": client.address or "",
        "city": client.city or "",
        "country": client.country or "Colombia",
        "last_payment_amount": _number(last_payment.amount if last_payment is not None else None),
        "last_payment_date": _date(last_payment.paid_at if last_payment is not None else None),
        "credit_score": int(client.credit_score) if client.credit_score is not None else 600,
        "credit_limit": _number(client.credit_limit),
        "available_credit": _number(client.available_credit),
        "recovery_probability": round(_number(client.recovery_probability, 50)),
        "employer": client.employer or "",
        "position": client.position or "",
        "risk_category": client.risk_category or "unknown",
        "preferred_contact_method": "whatsapp",
        "notes": client.notes or "",
        "internal_notes": client.internal_notes or "",
        "tags": list(client.tags or []),
    }
    if selected_action:
        payload["selected_action"] = selected_action
    return payload


class WhatsAppClient:
    provider = "whatsapp"

    def __init__(self, base_url: str, http_client: httpx.Client | None = None) -> None:
        self.base_url = base_url.rstrip("/")
        self.http_client = http_client or build_http_client()

    def start_conversation(self, client_id: str, payload: dict[str, Any]) -> WhatsAppStartResult:
        data = request_json(
            self.http_client,
            self.provider,
            "start_conversation",
            "POST",
            f"{self.base_url}/start-conversation/{client_id}",
            json=payload,
        )
        try:
            result = WhatsAppStartResult.model_validate(data)
        except ValidationError as exc:
            raise ProviderError(ProviderErrorKind.GENERIC, self.provider, "unexpected start-conversation response") from exc
        if not result.success:
            raise ProviderError(
                ProviderErrorKind.GENERIC,
                self.provider,
                result.message or "conversation was not started",
            )
        return result


def build_whatsapp_client(settings: Settings | None = None, http_client: httpx.Client | None = None) -> WhatsAppClient:
    settings = settings or get_settings()
    return WhatsAppClient(settings.whatsapp_mcp_url, http_client=http_client)


def get_whatsapp_client() -> Iterator[WhatsAppClient]:
    http_client = build_http_client()
    try:
        yield build_whatsapp_client(http_client=http_client)
    finally:
        http_client.close()


class WhatsAppBridge:
    entity_type = "crm.client_whatsapp"

    def __init__(self, client_service: ClientService | None = None) -> None:
        self.client_service = client_service or ClientService()

    def start_conversation(
        self,
        session: Session,
        ctx: AuthContext,
        dto: WhatsAppStartRequest,
        whatsapp: WhatsAppClient,
    ) -> WhatsAppStartResponse:
        client_id = parse_uuid(dto.client_id)
        client = self.client_service.repository.get(session, ctx, client_id) if client_id is not None else None
        if client is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=CLIENT_NOT_FOUND)

        result = whatsapp.start_conversation(str(client.id), format_client_payload(client, dto.selected_action))
        self.client_service.append_interaction(
            session,
            ctx,
            client.id,
            "whatsappRecords",
            {
                "conversationId": result.conversation_id,
                "selectedAction": dto.selected_action,
                "message": result.message,
                "startedBy": ctx.user_id,
                "startedAt": datetime.now(timezone.utc).isoformat(),
            },
        )
        session.commit()

        audit.record(
            actor_id=ctx.user_id,
            tenant_id=str(ctx.tenant_id),
            entity_type=self.entity_type,
            entity_id=str(client.id),
            action="whatsapp.conversation_started",
            before=None,
            after={"conversationId": result.conversation_id, "selectedAction": dto.selected_action},
            correlation_id=ctx.correlation_id,
        )
        logger.info(
            "whatsapp.conversation_started",
            extra={"tenant_id": str(ctx.tenant_id), "provider": whatsapp.provider},
        )
        return WhatsAppStartResponse(
            conversation_id=result.conversation_id,
            client_id=str(client.id),
            message=result.message,
        )
