from __future__ import annotations

import json
import logging
import re
import time
import uuid
from datetime import datetime, timezone
from typing import Any

from fastapi import HTTPException, status
from pydantic import ValidationError
from sqlalchemy.orm import Session

from mariacrm.core.schemas import BulkItemResult, summarize
from mariacrm.crm.models import Lead
from mariacrm.crm.service import LeadService
from mariacrm.integrations.errors import ProviderError, ProviderErrorKind
from mariacrm.integrations.llm import ChatClient
from mariacrm.integrations.schemas import (
    BulkPersonalizeRequest,
    BulkPersonalizeResponse,
    CallObjective,
    GeneratedScript,
    PersonalizationMetadata,
    PersonalizationStrategy,
    PersonalizeResponse,
    PersonalizedScript,
)
from mariacrm.metrics import observe_bulk_items
from mariacrm.platform.security import AuthContext


logger = logging.getLogger("mariacrm.integrations.personalization")

TEMPERATURE = 0.3
MAX_TOKENS = 1500
BULK_MAX_LEADS = 50

STRATEGY_DESCRIPTIONS = {
    PersonalizationStrategy.CONSULTATIVE: "Enfoque consultivo: hacer preguntas y descubrir necesidades",
    PersonalizationStrategy.DIRECT: "Enfoque directo: ir al grano con una propuesta clara",
    PersonalizationStrategy.EDUCATIONAL: "Enfoque educativo: explicar el valor y educar sobre el problema",
    PersonalizationStrategy.RELATIONSHIP: "Enfoque relacional: construir una relación personal",
    PersonalizationStrategy.URGENCY: "Enfoque de urgencia: crear sentido de urgencia",
    PersonalizationStrategy.SOCIAL_PROOF: "Enfoque de prueba social: casos de éxito similares",
}

OBJECTIVE_DESCRIPTIONS = {
    CallObjective.PROSPECTING: "Llamada de prospección inicial",
    CallObjective.QUALIFICATION: "Calificar al lead",
    CallObjective.DEMO_SCHEDULING: "Programar una demostración",
    CallObjective.FOLLOW_UP: "Seguimiento general",
    CallObjective.CLOSING: "Cerrar la venta",
    CallObjective.REACTIVATION: "Reactivar un lead frío",
    CallObjective.OBJECTION_HANDLING: "Manejar objeciones",
    CallObjective.NURTURING: "Mantener la relación",
}

_DEFAULT_STRATEGY_BY_STATUS = {
    "new": PersonalizationStrategy.CONSULTATIVE,
    "contacted": PersonalizationStrategy.EDUCATIONAL,
    "interested": PersonalizationStrategy.SOCIAL_PROOF,
    "qualified": PersonalizationStrategy.DIRECT,
    "proposal": PersonalizationStrategy.DIRECT,
    "negotiation": PersonalizationStrategy.URGENCY,
    "nurturing": PersonalizationStrategy.RELATIONSHIP,
    "cold": PersonalizationStrategy.RELATIONSHIP,
}

SYSTEM_PROMPT = """Eres un experto en ventas consultivas y generación de scripts personalizados.
Genera un script de llamada personalizado que use los datos reales del lead, de su campaña
y de los productos asociados. Responde SOLO con JSON válido con esta estructura:
{
  "opening": {"title": "Apertura", "content": "...", "keyPoints": [], "estimatedDuration": 45, "personalizedElements": []},
  "discovery": {"title": "Descubrimiento", "content": "...", "keyPoints": [], "estimatedDuration": 180, "personalizedElements": []},
  "presentation": {"title": "Presentación de Valor", "content": "...", "keyPoints": [], "estimatedDuration": 240, "personalizedElements": []},
  "objectionHandling": {"title": "Manejo de Objeciones", "content": "...", "keyPoints": [], "estimatedDuration": 120, "personalizedElements": []},
  "closing": {"title": "Cierre", "content": "...", "keyPoints": [], "estimatedDuration": 90, "personalizedElements": []},
  "confidence": 88,
  "estimatedTotalDuration": 11,
  "keyPersonalizationFactors": ["factor1", "factor2"],
  "suggestedToneOfVoice": "Profesional y consultivo"
}"""

_JSON_OBJECT = re.compile(r"\{[\s\S]*\}")


def parse_json_object(provider: str, content: str) -> dict[str, Any]:
    """Extract the outermost JSON object from model output (code fences tolerated)."""

    match = _JSON_OBJECT.search(content or "")
    if match is None:
        raise ProviderError(ProviderErrorKind.GENERIC, provider, "no JSON object in model output")
    try:
        data = json.loads(match.group(0))
    except json.JSONDecodeError as exc:
        raise ProviderError(ProviderErrorKind.GENERIC, provider, f"model output is not valid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise ProviderError(ProviderErrorKind.GENERIC, provider, "model output is not a JSON object")
    return data


def _format_price(value: Any) -> str:
    return f" (${float(value):.2f})" if value is not None else ""


def dynamic_variables_for(lead: Lead) -> dict[str, str]:
    campaign = lead.campaign
    products = list(campaign.products) if campaign is not None else []
    return {
        "lead_name": lead.name,
        "company_name": lead.company or "su empresa",
        "position": lead.position or "su posición",
        "current_status": lead.status,
        "qualification_score": str(lead.qualification_score) if lead.qualification_score is not None else "N/A",
        "campaign_name": campaign.name if campaign is not None else "sin campaña específica",
        "campaign_description": (campaign.description or "") if campaign is not None else "",
        "campaign_products": ", ".join(product.name for product in products) if products else "productos generales",
        "product_list": ", ".join(f"{product.name}{_format_price(product.price)}" for product in products)
        if products
        else "nuestros servicios",
    }


def build_script_prompt(
    lead: Lead,
    objective: CallObjective,
    strategy: PersonalizationStrategy,
    custom_instructions: str | None,
) -> str:
    campaign = lead.campaign
    products = list(campaign.products) if campaign is not None else []
    product_lines = (
        "\n  ".join(
            f"{product.name}{_format_price(product.price)}{f' - {product.description}' if product.description else ''}"
            for product in products
        )
        if products
        else "No hay productos específicos"
    )
    last_contact = lead.last_contact_date.isoformat() if lead.last_contact_date else "Primera llamada"
    return f"""GENERAR SCRIPT PERSONALIZADO PARA LLAMADA:

=== OBJETIVO DE LA LLAMADA ===
Objetivo: {OBJECTIVE_DESCRIPTIONS[objective]}
Estrategia: {STRATEGY_DESCRIPTIONS[strategy]}

=== PERFIL DEL LEAD ===
Nombre: {lead.name}
Empresa: {lead.company or 'No especificada'}
Posición: {lead.position or 'No especificada'}
Ciudad: {lead.city or 'No especificada'}, {lead.country}
Fuente: {lead.source}
Prioridad: {lead.priority}

=== INFORMACIÓN DE CAMPAÑA ===
Campaña origen: {campaign.name if campaign is not None else 'Sin campaña específica'}
Descripción: {(campaign.description or 'N/A') if campaign is not None else 'N/A'}
Productos a ofrecer: {product_lines}

=== CONTEXTO PREVIO ===
Estado actual: {lead.status}
Score de calificación: {lead.qualification_score}
Nivel de interés: {lead.interest_level if lead.interest_level is not None else 'No disponible'}
Intentos de contacto: {lead.contact_attempts}
Última interacción: {last_contact}
Notas: {lead.notes or 'Ninguna'}

=== INSTRUCCIONES ESPECIALES ===
{custom_instructions or 'Ninguna'}

Genera un script conversacional y natural que use el nombre del lead, referencie su empresa,
mencione la campaña y sus productos (con precios si están disponibles) y siga el enfoque indicado."""


def recommendations_for(lead: Lead, script: GeneratedScript) -> list[str]:
    recommendations: list[str] = []
    if script.confidence < 80:
        recommendations.append("Script generado con confianza media - revisa y personaliza más")
    if lead.qualification_score < 40:
        recommendations.append("Lead con score bajo - prioriza preguntas de descubrimiento")
    if lead.campaign_id is None:
        recommendations.append("Lead sin campaña asignada - el script usa mensajes genéricos")
    return recommendations


def warnings_for(script: GeneratedScript) -> list[str]:
    warnings: list[str] = []
    if script.estimated_total_duration > 20:
        warnings.append("Script largo - considera acortarlo para mantener atención")
    if script.objection_handling is None:
        warnings.append("El script no incluye manejo de objeciones")
    return warnings


class CallPersonalizer:
    def __init__(self, llm: ChatClient) -> None:
        self.llm = llm

    def personalize(
        self,
        lead: Lead,
        objective: CallObjective,
        preferred_strategy: PersonalizationStrategy | None = None,
        custom_instructions: str | None = None,
    ) -> PersonalizeResponse:
        started = time.perf_counter()
        strategy = preferred_strategy or _DEFAULT_STRATEGY_BY_STATUS.get(lead.status, PersonalizationStrategy.CONSULTATIVE)
        completion = self.llm.complete(
            system=SYSTEM_PROMPT + f"\nIMPORTANTE: usa un enfoque {strategy.value}.",
            prompt=build_script_prompt(lead, objective, strategy, custom_instructions),
            temperature=TEMPERATURE,
            max_tokens=MAX_TOKENS,
        )
        data = parse_json_object(self.llm.provider, completion.content)
        try:
            generated = GeneratedScript.model_validate(data)
        except ValidationError as exc:
            logger.warning(
                "personalization.invalid_script",
                extra={"provider": self.llm.provider, "lead_id": str(lead.id), "error": str(exc)},
            )
            raise ProviderError(
                ProviderErrorKind.GENERIC,
                self.llm.provider,
                "model output does not match the script schema",
            ) from exc

        script = PersonalizedScript(
            id=f"script_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}",
            lead_id=lead.id,
            strategy=strategy,
            objective=objective,
            opening=generated.opening,
            discovery=generated.discovery,
            presentation=generated.presentation,
            objection_handling=generated.objection_handling,
            closing=generated.closing,
            confidence=generated.confidence,
            estimated_duration=generated.estimated_total_duration,
            key_personalization_factors=generated.key_personalization_factors,
            suggested_tone_of_voice=generated.suggested_tone_of_voice,
            dynamic_variables=dynamic_variables_for(lead),
            created_at=datetime.now(timezone.utc),
            generated_by_model=completion.model,
        )
        processing_ms = int((time.perf_counter() - started) * 1000)
        logger.info(
            "personalization.generated",
            extra={"provider": self.llm.provider, "lead_id": str(lead.id), "duration_ms": processing_ms},
        )
        return PersonalizeResponse(
            script=script,
            metadata=PersonalizationMetadata(
                processing_time=processing_ms,
                tokens_used=completion.tokens_used,
                confidence=generated.confidence,
                model=completion.model,
                strategy=strategy,
            ),
            recommendations=recommendations_for(lead, generated),
            warnings=warnings_for(generated),
        )


class BulkCallPersonalizer:
    """Generate scripts for a batch of leads, one lead at a time.

    A lead that cannot be found or whose generation fails is reported in the
    per-item results; the remaining leads are still processed.
    """

    def __init__(self, lead_service: LeadService | None = None) -> None:
        self.lead_service = lead_service or LeadService()

    def personalize(
        self,
        session: Session,
        ctx: AuthContext,
        llm: ChatClient,
        dto: BulkPersonalizeRequest,
    ) -> BulkPersonalizeResponse:
        if not dto.lead_ids:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="leadIds must contain at least one lead")
        if len(dto.lead_ids) > BULK_MAX_LEADS:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"Maximum {BULK_MAX_LEADS} leads allowed per bulk request",
            )

        started = time.perf_counter()
        personalizer = CallPersonalizer(llm)
        results: list[BulkItemResult] = []
        scripts: list[PersonalizedScript] = []
        for lead_id in dto.lead_ids:
            try:
                lead = self.lead_service.get_record(session, ctx, lead_id)
            except HTTPException as exc:
                results.append(BulkItemResult(lead_id=lead_id, success=False, error=str(exc.detail)))
                continue
            try:
                generated = personalizer.personalize(
                    lead,
                    dto.call_objective,
                    dto.preferred_strategy,
                    dto.custom_instructions,
                )
            except ProviderError as exc:
                logger.warning(
                    "personalization.bulk_item_failed",
                    extra={"provider": exc.provider, "lead_id": lead_id, "error_kind": exc.kind.value},
                )
                results.append(
                    BulkItemResult(lead_id=lead_id, lead_name=lead.name, success=False, error=exc.user_message)
                )
                continue
            scripts.append(generated.script)
            results.append(BulkItemResult(lead_id=lead_id, lead_name=lead.name, success=True))

        summary = summarize(results)
        observe_bulk_items("bulk_personalize", summary.successful, summary.failed)
        average_confidence = sum(script.confidence for script in scripts) / len(scripts) if scripts else 0.0
        processing_ms = int((time.perf_counter() - started) * 1000)
        logger.info(
            "personalization.bulk_completed",
            extra={
                "tenant_id": str(ctx.tenant_id),
                "total": summary.total,
                "successful": summary.successful,
                "failed": summary.failed,
                "duration_ms": processing_ms,
            },
        )
        return BulkPersonalizeResponse(
            results=results,
            summary=summary,
            scripts=scripts,
            average_confidence=round(average_confidence, 2),
            total_processing_time=processing_ms,
        )
