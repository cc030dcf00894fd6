from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import ConfigDict, Field

from mariacrm.core.schemas import ApiModel, BulkItemResult, BulkSummary


class PersonalizationStrategy(str, Enum):
    CONSULTATIVE = "consultative"
    DIRECT = "direct"
    EDUCATIONAL = "educational"
    RELATIONSHIP = "relationship"
    URGENCY = "urgency"
    SOCIAL_PROOF = "social_proof"


class CallObjective(str, Enum):
    PROSPECTING = "prospecting"
    QUALIFICATION = "qualification"
    DEMO_SCHEDULING = "demo_scheduling"
    FOLLOW_UP = "follow_up"
    CLOSING = "closing"
    REACTIVATION = "reactivation"
    OBJECTION_HANDLING = "objection_handling"
    NURTURING = "nurturing"


class LLMPayload(ApiModel):
    """Provider output: unknown keys are tolerated, declared ones are checked."""

    model_config = ConfigDict(alias_generator=None, populate_by_name=True, extra="ignore")


class PersonalizedElement(LLMPayload):
    type: str
    placeholder: str | None = None
    actual_value: str | None = Field(default=None, alias="actualValue")
    confidence: float | None = None
    source: str | None = None


class ScriptSection(LLMPayload):
    title: str
    content: str
    key_points: list[str] = Field(default_factory=list, alias="keyPoints")
    estimated_duration: int = Field(default=0, alias="estimatedDuration")
    personalized_elements: list[PersonalizedElement] = Field(default_factory=list, alias="personalizedElements")


class GeneratedScript(LLMPayload):
    opening: ScriptSection
    discovery: ScriptSection
    presentation: ScriptSection
    objection_handling: ScriptSection | None = Field(default=None, alias="objectionHandling")
    closing: ScriptSection
    confidence: float = Field(ge=0, le=100)
    estimated_total_duration: int = Field(default=0, alias="estimatedTotalDuration")
    key_personalization_factors: list[str] = Field(default_factory=list, alias="keyPersonalizationFactors")
    suggested_tone_of_voice: str = Field(default="Profesional y consultivo", alias="suggestedToneOfVoice")


class PersonalizedScript(ApiModel):
    id: str
    lead_id: uuid.UUID
    strategy: PersonalizationStrategy
    objective: CallObjective
    opening: ScriptSection
    discovery: ScriptSection
    presentation: ScriptSection
    objection_handling: ScriptSection | None = None
    closing: ScriptSection
    confidence: float
    estimated_duration: int
    key_personalization_factors: list[str]
    suggested_tone_of_voice: str
    dynamic_variables: dict[str, str]
    created_at: datetime
    generated_by_model: str


class PersonalizeRequest(ApiModel):
    lead_id: str
    call_objective: CallObjective
    preferred_strategy: PersonalizationStrategy | None = None
    custom_instructions: str | None = None
    tenant_id: str | None = None
    organization_id: str | None = None


class PersonalizationMetadata(ApiModel):
    processing_time: int
    tokens_used: int
    confidence: float
    model: str
    strategy: PersonalizationStrategy


class PersonalizeResponse(ApiModel):
    success: bool = True
    script: PersonalizedScript
    metadata: PersonalizationMetadata
    recommendations: list[str]
    warnings: list[str]


class BulkPersonalizeRequest(ApiModel):
    lead_ids: list[str]
    call_objective: CallObjective
    preferred_strategy: PersonalizationStrategy | None = None
    custom_instructions: str | None = None
    tenant_id: str | None = None
    organization_id: str | None = None


class BulkPersonalizeResponse(ApiModel):
    success: bool = True
    results: list[BulkItemResult]
    summary: BulkSummary
    scripts: list[PersonalizedScript]
    average_confidence: float
    total_processing_time: int


class TranscriptMessage(ApiModel):
    role: str
    content: str = ""
    timestamp: float = 0


class Transcript(ApiModel):
    messages: list[TranscriptMessage] = Field(default_factory=list)
    duration: float = 0
    total_words: int = 0
    participant_count: int = 2


class AnalysisRequest(ApiModel):
    transcript: Transcript | None = None


class TranscriptMetrics(ApiModel):
    agent_time_ratio: int
    lead_time_ratio: int
    agent_messages: int
    lead_messages: int
    agent_word_count: int
    lead_word_count: int
    agent_questions: int
    lead_questions: int
    total_questions: int


class SentimentAnalysis(LLMPayload):
    kind: Literal["sentiment"] = "sentiment"
    overall: Literal["positive", "negative", "neutral", "mixed"]
    score: float = Field(ge=-1, le=1)
    confidence: float = Field(default=0.0, ge=0, le=1)
    reasoning: str | None = None
    emotions: list[str] = Field(default_factory=list)
    sentiment_progression: str | None = Field(default=None, alias="sentimentProgression")
    key_moments: list[dict[str, Any]] = Field(default_factory=list, alias="keyMoments")
    message_analysis: list[dict[str, Any]] = Field(default_factory=list, alias="messageAnalysis")
    summary: dict[str, Any] | None = None


class QualityAnalysis(LLMPayload):
    kind: Literal["quality"] = "quality"
    overall: float = Field(ge=0, le=100)
    agent_performance: float = Field(ge=0, le=100, alias="agentPerformance")
    flow: Literal["excellent", "good", "fair", "poor"]
    reasoning: str | None = None
    strengths: list[str] = Field(default_factory=list)
    improvements: list[str] = Field(default_factory=list)
    sales_techniques: dict[str, Any] = Field(default_factory=dict, alias="salesTechniques")


class DetectedIntention(LLMPayload):
    intention: str
    confidence: str | None = None
    evidence: str | None = None
    urgency: str | None = None
    priority: Literal["high", "medium", "low"] = "medium"
    recommended_action: str | None = Field(default=None, alias="recommendedAction")
    reasoning: str | None = None


class NextStepsAnalysis(LLMPayload):
    kind: Literal["next_steps"] = "next_steps"
    total_intentions: int = Field(default=0, alias="totalIntentions")
    high_priority: int = Field(default=0, alias="highPriority")
    next_steps_summary: str = Field(default="", alias="nextStepsSummary")
    detected_intentions: list[DetectedIntention] = Field(default_factory=list, alias="detectedIntentions")
    conversation_context: dict[str, Any] = Field(default_factory=dict, alias="conversationContext")
    recommended_sequence: list[dict[str, Any]] = Field(default_factory=list, alias="recommendedSequence")


class InsightsBlock(LLMPayload):
    key_topics: list[str] = Field(default_factory=list, alias="keyTopics")
    pain_points: list[str] = Field(default_factory=list, alias="painPoints")
    buying_signals: list[str] = Field(default_factory=list, alias="buyingSignals")
    objections: list[str] = Field(default_factory=list)
    competitors: list[str] = Field(default_factory=list)
    action_items: list[str] = Field(default_factory=list, alias="actionItems")
    follow_up_suggestions: list[str] = Field(default_factory=list, alias="followUpSuggestions")
    price_discussion: str | None = Field(default=None, alias="priceDiscussion")


class EngagementBlock(LLMPayload):
    interest_level: int = Field(ge=1, le=10, alias="interestLevel")
    score: float = Field(ge=0, le=100)
    response_quality: str | None = Field(default=None, alias="responseQuality")


class PredictionsBlock(LLMPayload):
    conversion_likelihood: float = Field(ge=0, le=100, alias="conversionLikelihood")
    recommended_action: str = Field(alias="recommendedAction")
    urgency: Literal["low", "medium", "high", "critical"] = "medium"
    follow_up_timeline: str | None = Field(default=None, alias="followUpTimeline")
    suggested_approach: str = Field(
        default="Seguimiento estándar basado en el interés mostrado",
        alias="suggestedApproach",
    )


class SentimentBlock(LLMPayload):
    overall: Literal["positive", "negative", "neutral", "mixed"]
    score: float = Field(ge=-1, le=1)
    confidence: float = Field(default=0.0, ge=0, le=1)


class QualityBlock(LLMPayload):
    overall: float = Field(ge=0, le=100)
    agent_performance: float = Field(ge=0, le=100, alias="agentPerformance")
    flow: Literal["excellent", "good", "fair", "poor"]


class CompleteAnalysisPayload(LLMPayload):
    sentiment: SentimentBlock
    quality: QualityBlock
    insights: InsightsBlock = Field(default_factory=InsightsBlock)
    engagement: EngagementBlock
    predictions: PredictionsBlock
    metrics: dict[str, Any] = Field(default_factory=dict)
    confidence: float = Field(default=0.0, ge=0, le=100)
    full_analysis: dict[str, Any] = Field(default_factory=dict, alias="fullAnalysis")


class CompleteAnalysis(LLMPayload):
    kind: Literal["complete"] = "complete"
    sentiment: SentimentBlock
    quality: QualityBlock
    insights: InsightsBlock
    engagement: EngagementBlock
    predictions: PredictionsBlock
    metrics: TranscriptMetrics
    interruption_count: int = Field(default=0, alias="interruptionCount")
    confidence: float
    full_analysis: dict[str, Any] = Field(default_factory=dict, alias="fullAnalysis")


class MetricsAnalysis(LLMPayload):
    kind: Literal["metrics"] = "metrics"
    metrics: TranscriptMetrics
    duration_seconds: float = Field(default=0, alias="durationSeconds")
    talk_time_ratio: dict[str, float] = Field(default_factory=dict, alias="talkTimeRatio")


AnalysisResult = Annotated[
    Union[CompleteAnalysis, SentimentAnalysis, QualityAnalysis, NextStepsAnalysis, MetricsAnalysis],
    Field(discriminator="kind"),
]


class StoredAnalysis(ApiModel):
    id: uuid.UUID
    lead_id: uuid.UUID
    conversation_id: str
    kind: str
    model: str | None
    created_at: datetime
    result: AnalysisResult


class AnalysisResponse(ApiModel):
    success: bool = True
    analysis: StoredAnalysis
    tokens_used: int = 0
    processing_time: int = 0


class LeadCallRequest(ApiModel):
    call_type: str = "prospecting"
    notes: str | None = None


class CallLogRead(ApiModel):
    id: uuid.UUID
    lead_id: uuid.UUID
    batch_id: str | None
    conversation_id: str | None
    agent_id: str | None
    call_type: str
    status: str
    notes: str | None
    created_at: datetime


class LeadCallResponse(ApiModel):
    success: bool = True
    call_log: CallLogRead
    batch_id: str | None
    dynamic_variables: dict[str, str]
    message: str


class BulkLeadCallRequest(ApiModel):
    lead_ids: list[str]
    call_type: str | None = None
    notes: str | None = None
    tenant_id: str | None = None
    organization_id: str | None = None


class BulkLeadCallResponse(ApiModel):
    success: bool = True
    results: list[BulkItemResult]
    summary: BulkSummary
    call_logs: list[CallLogRead]


class CallLogListResponse(ApiModel):
    success: bool = True
    data: list[CallLogRead]


class AgentCreate(ApiModel):
    eleven_labs_agent_id: str | None = Field(default=None, alias="elevenLabsAgentId")
    name: str | None = None
    description: str | None = None
    usage: dict[str, Any] | None = None
    is_active: bool = True


class AgentListResponse(ApiModel):
    success: bool = True
    data: dict[str, dict[str, Any]]
    path: str


class AgentResponse(ApiModel):
    success: bool = True
    agent_id: str
    data: dict[str, Any]


class WhatsAppStartRequest(ApiModel):
    client_id: str
    selected_action: str | None = None
    tenant_id: str | None = None
    organization_id: str | None = None


class WhatsAppStartResult(LLMPayload):
    success: bool
    conversation_id: str | None = None
    client_id: str | None = None
    message: str | None = None


class WhatsAppStartResponse(ApiModel):
    success: bool = True
    conversation_id: str | None
    client_id: str
    message: str | None
