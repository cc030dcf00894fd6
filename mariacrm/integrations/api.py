from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from mariacrm.api.errors import error_response, http_error, provider_error
from mariacrm.core.auth import get_principal
from mariacrm.core.database import get_db
from mariacrm.crm.api import client_service, lead_service
from mariacrm.integrations.agents import AgentConfigService
from mariacrm.integrations.analysis import ANALYSIS_KINDS, AnalysisService, ConversationAnalyzer
from mariacrm.integrations.elevenlabs import (
    ElevenLabsClient,
    LeadCallService,
    LeadsWithoutCampaignError,
    get_elevenlabs_client,
)
from mariacrm.integrations.errors import ProviderError
from mariacrm.integrations.llm import ChatClient, get_llm_client
from mariacrm.integrations.personalization import BulkCallPersonalizer, CallPersonalizer
from mariacrm.integrations.schemas import (
    AgentCreate,
    AgentListResponse,
    AgentResponse,
    AnalysisRequest,
    AnalysisResponse,
    BulkLeadCallRequest,
    BulkLeadCallResponse,
    BulkPersonalizeRequest,
    BulkPersonalizeResponse,
    CallLogListResponse,
    LeadCallRequest,
    LeadCallResponse,
    PersonalizeRequest,
    PersonalizeResponse,
    WhatsAppStartRequest,
    WhatsAppStartResponse,
)
from mariacrm.integrations.whatsapp import WhatsAppBridge, WhatsAppClient, get_whatsapp_client
from mariacrm.platform.security import AuthContext, require_permission, validate_body_scope

calls_router = APIRouter(prefix="/api/calls", tags=["integrations.calls"])
lead_integrations_router = APIRouter(prefix="/api/leads", tags=["integrations.leads"])
agents_router = APIRouter(prefix="/api/tenant/agents/elevenlabs", tags=["integrations.agents"])
whatsapp_router = APIRouter(prefix="/api/client/whatsapp", tags=["integrations.whatsapp"])
analysis_service = AnalysisService(lead_service)
call_service = LeadCallService(lead_service)
bulk_personalizer = BulkCallPersonalizer(lead_service)
agent_service = AgentConfigService()
whatsapp_bridge = WhatsAppBridge(client_service)


@calls_router.post("/personalize", response_model=PersonalizeResponse)
def personalize_call(
    request: Request,
    dto: PersonalizeRequest,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_principal),
    llm: ChatClient = Depends(get_llm_client),
) -> PersonalizeResponse | JSONResponse:
    try:
        require_permission(ctx, "calls:personalize")
        validate_body_scope(ctx, dto.tenant_id, dto.organization_id)
        lead = lead_service.get_record(db, ctx, dto.lead_id)
        return CallPersonalizer(llm).personalize(
            lead,
            dto.call_objective,
            dto.preferred_strategy,
            dto.custom_instructions,
        )
    except HTTPException as exc:
        return http_error(request, exc, "call_personalize_failed")
    except ProviderError as exc:
        return provider_error(request, exc, "call_personalize_failed")


@calls_router.post("/bulk-personalize", response_model=BulkPersonalizeResponse, response_model_exclude_none=True)
def bulk_personalize_calls(
    request: Request,
    dto: BulkPersonalizeRequest,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_principal),
    llm: ChatClient = Depends(get_llm_client),
) -> BulkPersonalizeResponse | JSONResponse:
    try:
        require_permission(ctx, "calls:personalize")
        validate_body_scope(ctx, dto.tenant_id, dto.organization_id)
        return bulk_personalizer.personalize(db, ctx, llm, dto)
    except HTTPException as exc:
        return http_error(request, exc, "call_bulk_personalize_failed")


def _run_analysis(
    request: Request,
    kind: str,
    lead_id: str,
    conversation_id: str,
    body: AnalysisRequest | None,
    db: Session,
    ctx: AuthContext,
    llm: ChatClient,
    voice: ElevenLabsClient,
) -> AnalysisResponse | JSONResponse:
    code = f"conversation_analysis_{kind}_failed"
    try:
        require_permission(ctx, "analysis:run")
        lead = analysis_service.load_lead(db, ctx, lead_id)
        transcript = body.transcript if body is not None and body.transcript is not None else None
        if transcript is None:
            transcript = voice.get_conversation(conversation_id)
        return analysis_service.run(db, ctx, lead, conversation_id, kind, transcript, ConversationAnalyzer(llm))
    except HTTPException as exc:
        return http_error(request, exc, code)
    except ProviderError as exc:
        return provider_error(request, exc, code)


@lead_integrations_router.post(
    "/{lead_id}/conversations/{conversation_id}/analysis",
    response_model=AnalysisResponse,
)
def analyze_conversation(
    request: Request,
    lead_id: str,
    conversation_id: str,
    body: AnalysisRequest | None = None,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_principal),
    llm: ChatClient = Depends(get_llm_client),
    voice: ElevenLabsClient = Depends(get_elevenlabs_client),
) -> AnalysisResponse | JSONResponse:
    return _run_analysis(request, "complete", lead_id, conversation_id, body, db, ctx, llm, voice)


@lead_integrations_router.get("/{lead_id}/conversations/{conversation_id}/analysis", response_model=None)
def get_conversation_analysis(
    request: Request,
    lead_id: str,
    conversation_id: str,
    kind: str | None = None,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_principal),
) -> dict | JSONResponse:
    try:
        require_permission(ctx, "leads:read")
        stored_kind = ANALYSIS_KINDS.get(kind) if kind else None
        if kind and stored_kind is None:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Tipo de análisis no soportado: {kind}")
        analysis = analysis_service.latest(db, ctx, lead_id, conversation_id, stored_kind)
    except HTTPException as exc:
        return http_error(request, exc, "conversation_analysis_get_failed")
    return {"success": True, "analysis": analysis.model_dump(mode="json", by_alias=True)}


@lead_integrations_router.post(
    "/{lead_id}/conversations/{conversation_id}/analysis/{kind}",
    response_model=AnalysisResponse,
)
def analyze_conversation_kind(
    request: Request,
    lead_id: str,
    conversation_id: str,
    kind: str,
    body: AnalysisRequest | None = None,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_principal),
    llm: ChatClient = Depends(get_llm_client),
    voice: ElevenLabsClient = Depends(get_elevenlabs_client),
) -> AnalysisResponse | JSONResponse:
    stored_kind = ANALYSIS_KINDS.get(kind)
    if stored_kind is None or stored_kind == "complete":
        return http_error(
            request,
            HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Tipo de análisis no soportado: {kind}"),
            "conversation_analysis_failed",
        )
    return _run_analysis(request, stored_kind, lead_id, conversation_id, body, db, ctx, llm, voice)


@lead_integrations_router.post("/{lead_id}/call", response_model=LeadCallResponse, status_code=status.HTTP_201_CREATED)
def call_lead(
    request: Request,
    lead_id: str,
    dto: LeadCallRequest | None = None,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_principal),
    voice: ElevenLabsClient = Depends(get_elevenlabs_client),
) -> LeadCallResponse | JSONResponse:
    try:
        require_permission(ctx, "calls:initiate")
        return call_service.initiate(db, ctx, lead_id, dto or LeadCallRequest(), voice)
    except HTTPException as exc:
        return http_error(request, exc, "lead_call_failed")
    except ProviderError as exc:
        return provider_error(request, exc, "lead_call_failed")


@lead_integrations_router.post("/bulk-call", response_model=BulkLeadCallResponse, response_model_exclude_none=True)
def bulk_call_leads(
    request: Request,
    dto: BulkLeadCallRequest,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_principal),
    voice: ElevenLabsClient = Depends(get_elevenlabs_client),
) -> BulkLeadCallResponse | JSONResponse:
    try:
        require_permission(ctx, "calls:initiate")
        validate_body_scope(ctx, dto.tenant_id, dto.organization_id)
        return call_service.bulk_initiate(db, ctx, dto, voice)
    except LeadsWithoutCampaignError as exc:
        return error_response(
            request,
            status_code=status.HTTP_400_BAD_REQUEST,
            code="lead_bulk_call_failed",
            message=exc.message,
            details=exc.details,
        )
    except HTTPException as exc:
        return http_error(request, exc, "lead_bulk_call_failed")


@lead_integrations_router.get("/{lead_id}/calls", response_model=CallLogListResponse)
def list_lead_calls(
    request: Request,
    lead_id: str,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_principal),
) -> CallLogListResponse | JSONResponse:
    try:
        require_permission(ctx, "leads:read")
        return CallLogListResponse(data=call_service.list_calls(db, ctx, lead_id))
    except HTTPException as exc:
        return http_error(request, exc, "lead_calls_failed")


@agents_router.get("", response_model=AgentListResponse)
def list_voice_agents(
    request: Request,
    is_active: bool | None = Query(default=None, alias="isActive"),
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_principal),
) -> AgentListResponse | JSONResponse:
    try:
        require_permission(ctx, "agents:read")
        path, agents = agent_service.list_agents(db, ctx, is_active)
        return AgentListResponse(data=agents, path=path)
    except HTTPException as exc:
        return http_error(request, exc, "agent_list_failed")


@agents_router.post("", response_model=AgentResponse, status_code=status.HTTP_201_CREATED)
def create_voice_agent(
    request: Request,
    dto: AgentCreate,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_principal),
) -> AgentResponse | JSONResponse:
    try:
        require_permission(ctx, "agents:manage")
        agent_id, data = agent_service.create_agent(db, ctx, dto)
        return AgentResponse(agent_id=agent_id, data=data)
    except HTTPException as exc:
        return http_error(request, exc, "agent_create_failed")


@agents_router.get("/{agent_id}", response_model=AgentResponse)
def get_voice_agent(
    request: Request,
    agent_id: str,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_principal),
) -> AgentResponse | JSONResponse:
    try:
        require_permission(ctx, "agents:read")
        return AgentResponse(agent_id=agent_id, data=agent_service.get_agent(db, ctx, agent_id))
    except HTTPException as exc:
        return http_error(request, exc, "agent_get_failed")


@agents_router.delete("/{agent_id}", response_model=None)
def delete_voice_agent(
    request: Request,
    agent_id: str,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_principal),
) -> dict | JSONResponse:
    try:
        require_permission(ctx, "agents:manage")
        agent_service.delete_agent(db, ctx, agent_id)
    except HTTPException as exc:
        return http_error(request, exc, "agent_delete_failed")
    return {"success": True, "agentId": agent_id, "message": "Agente eliminado exitosamente"}


@whatsapp_router.post("/start-conversation", response_model=WhatsAppStartResponse)
def start_whatsapp_conversation(
    request: Request,
    dto: WhatsAppStartRequest,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_principal),
    whatsapp: WhatsAppClient = Depends(get_whatsapp_client),
) -> WhatsAppStartResponse | JSONResponse:
    try:
        require_permission(ctx, "clients:update")
        validate_body_scope(ctx, dto.tenant_id, dto.organization_id)
        return whatsapp_bridge.start_conversation(db, ctx, dto, whatsapp)
    except HTTPException as exc:
        return http_error(request, exc, "whatsapp_start_failed")
    except ProviderError as exc:
        return provider_error(request, exc, "whatsapp_start_failed")
