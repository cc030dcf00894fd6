from __future__ import annotations

import logging
import math
import time
import uuid
from typing import Any

from fastapi import HTTPException, status
from pydantic import BaseModel, ValidationError
from sqlalchemy import select
from sqlalchemy.orm import Session

from mariacrm import audit
from mariacrm.crm.models import ConversationAnalysis, Lead
from mariacrm.crm.service import LeadService
from mariacrm.integrations.errors import ProviderError, ProviderErrorKind
from mariacrm.integrations.llm import ChatClient, ChatCompletion
from mariacrm.integrations.personalization import parse_json_object
from mariacrm.integrations.schemas import (
    AnalysisResponse,
    CompleteAnalysis,
    CompleteAnalysisPayload,
    MetricsAnalysis,
    NextStepsAnalysis,
    QualityAnalysis,
    SentimentAnalysis,
    StoredAnalysis,
    Transcript,
    TranscriptMetrics,
)
from mariacrm.platform.security import AuthContext


logger = logging.getLogger("mariacrm.integrations.analysis")

TEMPERATURE = 0.3
MAX_TOKENS = 2000

# URL segment -> stored kind
ANALYSIS_KINDS = {
    "complete": "complete",
    "sentiment": "sentiment",
    "quality": "quality",
    "next-steps": "next_steps",
    "metrics": "metrics",
}

SYSTEM_PROMPT = (
    "Eres un analista experto en conversaciones de ventas telefónicas. "
    "Analizas transcripciones entre un agente de IA y un lead. "
    "Responde SOLO con JSON válido siguiendo exactamente la estructura pedida."
)

COMPLETE_INSTRUCTIONS = """Analiza la conversación completa y devuelve:
{
  "sentiment": {"overall": "positive|negative|neutral|mixed", "score": -1.0 a 1.0, "confidence": 0.0 a 1.0},
  "quality": {"overall": 0-100, "agentPerformance": 0-100, "flow": "excellent|good|fair|poor"},
  "insights": {"keyTopics": [], "painPoints": [], "buyingSignals": [], "objections": [], "competitors": [],
               "actionItems": [], "followUpSuggestions": [], "priceDiscussion": "texto o null"},
  "engagement": {"interestLevel": 1-10, "score": 0-100, "responseQuality": "texto"},
  "predictions": {"conversionLikelihood": 0-100, "recommendedAction": "texto",
                  "urgency": "low|medium|high|critical", "followUpTimeline": "texto", "suggestedApproach": "texto"},
  "metrics": {"interruptions": número de interrupciones},
  "confidence": 0-100
}"""

SENTIMENT_INSTRUCTIONS = """Analiza el sentimiento del lead a lo largo de la conversación y devuelve:
{
  "overall": "positive|negative|neutral|mixed",
  "score": -1.0 a 1.0,
  "confidence": 0.0 a 1.0,
  "reasoning": "texto",
  "emotions": [],
  "sentimentProgression": "texto",
  "keyMoments": [{"timestamp": 0, "description": "texto", "impact": "positive|negative"}],
  "messageAnalysis": [],
  "summary": {}
}"""

QUALITY_INSTRUCTIONS = """Evalúa la calidad de la llamada y el desempeño del agente y devuelve:
{
  "overall": 0-100,
  "agentPerformance": 0-100,
  "flow": "excellent|good|fair|poor",
  "reasoning": "texto",
  "strengths": [],
  "improvements": [],
  "salesTechniques": {}
}"""

NEXT_STEPS_INSTRUCTIONS = """Detecta las intenciones del lead y recomienda los siguientes pasos. Devuelve:
{
  "totalIntentions": número,
  "highPriority": número,
  "nextStepsSummary": "texto",
  "detectedIntentions": [{"intention": "texto", "confidence": "texto", "evidence": "texto", "urgency": "texto",
                          "priority": "high|medium|low", "recommendedAction": "texto", "reasoning": "texto"}],
  "conversationContext": {},
  "recommendedSequence": []
}"""


def _percent(part: int, total: int) -> int:
    return math.floor(part / total * 100 + 0.5)


def _word_count(content: str) -> int:
    return len(content.split(" ")) if content else 0


def compute_transcript_metrics(transcript: Transcript) -> TranscriptMetrics:
    """Per-role word, message and question counts plus talk-time ratios.

    Any role other than ``agent`` counts as the lead; ratios are whole percents
    and fall back to 50/50 when nobody said anything.
    """

    agent_messages = [message for message in transcript.messages if message.role == "agent"]
    lead_messages = [message for message in transcript.messages if message.role != "agent"]
    agent_words = sum(_word_count(message.content) for message in agent_messages)
    lead_words = sum(_word_count(message.content) for message in lead_messages)
    total_words = agent_words + lead_words

    agent_questions = sum(1 for message in agent_messages if "?" in message.content)
    lead_questions = sum(1 for message in transcript.messages if message.role == "lead" and "?" in message.content)

    return TranscriptMetrics(
        agent_time_ratio=_percent(agent_words, total_words) if total_words else 50,
        lead_time_ratio=_percent(lead_words, total_words) if total_words else 50,
        agent_messages=len(agent_messages),
        lead_messages=len(lead_messages),
        agent_word_count=agent_words,
        lead_word_count=lead_words,
        agent_questions=agent_questions,
        lead_questions=lead_questions,
        total_questions=agent_questions + lead_questions,
    )


def format_transcript(transcript: Transcript) -> str:
    lines = []
    for message in transcript.messages:
        speaker = "AGENTE" if message.role == "agent" else "LEAD"
        lines.append(f"[{message.timestamp:.0f}s] {speaker}: {message.content}")
    return "\n".join(lines)


def _lead_context(lead: Lead) -> str:
    campaign = lead.campaign.name if lead.campaign is not None else "Sin campaña"
    return (
        f"Lead: {lead.name} | Empresa: {lead.company or 'N/A'} | Estado: {lead.status} | "
        f"Score: {lead.qualification_score} | Campaña: {campaign}"
    )


class ConversationAnalyzer:
    def __init__(self, llm: ChatClient) -> None:
        self.llm = llm

    def _ask(self, instructions: str, lead: Lead, transcript: Transcript) -> tuple[dict[str, Any], ChatCompletion]:
        if not transcript.messages:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="La transcripción está vacía")
        prompt = (
            f"{instructions}\n\n=== CONTEXTO ===\n{_lead_context(lead)}\n"
            f"Duración: {transcript.duration:.0f}s\n\n=== TRANSCRIPCIÓN ===\n{format_transcript(transcript)}"
        )
        completion = self.llm.complete(
            system=SYSTEM_PROMPT,
            prompt=prompt,
            temperature=TEMPERATURE,
            max_tokens=MAX_TOKENS,
        )
        return parse_json_object(self.llm.provider, completion.content), completion

    def _validate(self, model: type[BaseModel], data: dict[str, Any]) -> Any:
        try:
            return model.model_validate(data)
        except ValidationError as exc:
            logger.warning(
                "analysis.invalid_output",
                extra={"provider": self.llm.provider, "error": str(exc)},
            )
            raise ProviderError(
                ProviderErrorKind.GENERIC,
                self.llm.provider,
                f"model output does not match the {model.__name__} schema",
            ) from exc

    def complete(self, lead: Lead, transcript: Transcript) -> tuple[CompleteAnalysis, ChatCompletion]:
        data, completion = self._ask(COMPLETE_INSTRUCTIONS, lead, transcript)
        payload: CompleteAnalysisPayload = self._validate(CompleteAnalysisPayload, data)
        interruptions = payload.metrics.get("interruptions") or 0
        analysis = CompleteAnalysis(
            sentiment=payload.sentiment,
            quality=payload.quality,
            insights=payload.insights,
            engagement=payload.engagement,
            predictions=payload.predictions,
            metrics=compute_transcript_metrics(transcript),
            interruption_count=int(interruptions) if isinstance(interruptions, (int, float)) else 0,
            confidence=payload.confidence,
            full_analysis=data,
        )
        return analysis, completion

    def sentiment(self, lead: Lead, transcript: Transcript) -> tuple[SentimentAnalysis, ChatCompletion]:
        data, completion = self._ask(SENTIMENT_INSTRUCTIONS, lead, transcript)
        return self._validate(SentimentAnalysis, {**data, "kind": "sentiment"}), completion

    def quality(self, lead: Lead, transcript: Transcript) -> tuple[QualityAnalysis, ChatCompletion]:
        data, completion = self._ask(QUALITY_INSTRUCTIONS, lead, transcript)
        return self._validate(QualityAnalysis, {**data, "kind": "quality"}), completion

    def next_steps(self, lead: Lead, transcript: Transcript) -> tuple[NextStepsAnalysis, ChatCompletion]:
        data, completion = self._ask(NEXT_STEPS_INSTRUCTIONS, lead, transcript)
        return self._validate(NextStepsAnalysis, {**data, "kind": "next_steps"}), completion


def metrics_analysis(transcript: Transcript) -> MetricsAnalysis:
    metrics = compute_transcript_metrics(transcript)
    return MetricsAnalysis(
        metrics=metrics,
        duration_seconds=transcript.duration,
        talk_time_ratio={"agent": metrics.agent_time_ratio, "lead": metrics.lead_time_ratio},
    )


class AnalysisService:
    entity_type = "crm.conversation_analysis"

    def __init__(self, lead_service: LeadService | None = None) -> None:
        self.lead_service = lead_service or LeadService()

    def load_lead(self, session: Session, ctx: AuthContext, lead_id: str) -> Lead:
        return self.lead_service.get_record(session, ctx, lead_id)

    def run(
        self,
        session: Session,
        ctx: AuthContext,
        lead: Lead,
        conversation_id: str,
        kind: str,
        transcript: Transcript,
        analyzer: ConversationAnalyzer | None,
    ) -> AnalysisResponse:
        started = time.perf_counter()
        completion: ChatCompletion | None = None
        if kind == "metrics":
            result: Any = metrics_analysis(transcript)
        else:
            if analyzer is None:
                raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Analyzer not configured")
            runner = {
                "complete": analyzer.complete,
                "sentiment": analyzer.sentiment,
                "quality": analyzer.quality,
                "next_steps": analyzer.next_steps,
            }[kind]
            result, completion = runner(lead, transcript)

        record = ConversationAnalysis(
            id=uuid.uuid4(),
            tenant_id=ctx.tenant_id,
            organization_id=ctx.organization_id,
            lead_id=lead.id,
            conversation_id=conversation_id,
            kind=kind,
            payload=result.model_dump(mode="json", by_alias=True),
            model=completion.model if completion is not None else None,
        )
        session.add(record)
        session.commit()
        session.refresh(record)

        processing_ms = int((time.perf_counter() - started) * 1000)
        audit.record(
            actor_id=ctx.user_id,
            tenant_id=str(ctx.tenant_id),
            entity_type=self.entity_type,
            entity_id=str(record.id),
            action=f"analysis.{kind}",
            before=None,
            after={"leadId": str(lead.id), "conversationId": conversation_id},
            correlation_id=ctx.correlation_id,
        )
        logger.info(
            "analysis.stored",
            extra={"tenant_id": str(ctx.tenant_id), "lead_id": str(lead.id), "duration_ms": processing_ms},
        )
        return AnalysisResponse(
            analysis=self._to_stored(record),
            tokens_used=completion.tokens_used if completion is not None else 0,
            processing_time=processing_ms,
        )

    def latest(
        self,
        session: Session,
        ctx: AuthContext,
        lead_id: str,
        conversation_id: str,
        kind: str | None = None,
    ) -> StoredAnalysis:
        lead = self.load_lead(session, ctx, lead_id)
        stmt = select(ConversationAnalysis).where(
            ConversationAnalysis.tenant_id == ctx.tenant_id,
            ConversationAnalysis.organization_id == ctx.organization_id,
            ConversationAnalysis.lead_id == lead.id,
            ConversationAnalysis.conversation_id == conversation_id,
        )
        if kind is not None:
            stmt = stmt.where(ConversationAnalysis.kind == kind)
        record = session.scalars(stmt.order_by(ConversationAnalysis.created_at.desc()).limit(1)).first()
        if record is None:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail="No hay análisis para esta conversación",
            )
        return self._to_stored(record)

    @staticmethod
    def _to_stored(record: ConversationAnalysis) -> StoredAnalysis:
        return StoredAnalysis(
            id=record.id,
            lead_id=record.lead_id,
            conversation_id=record.conversation_id,
            kind=record.kind,
            model=record.model,
            created_at=record.created_at,
            result=record.payload,
        )
