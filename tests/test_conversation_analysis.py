from __future__ import annotations

import json
from collections.abc import Generator

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from mariacrm import audit
from mariacrm.core.config import get_settings
from mariacrm.core.database import Base, get_db
from mariacrm.integrations.analysis import compute_transcript_metrics
from mariacrm.integrations.elevenlabs import ElevenLabsClient, format_phone, get_elevenlabs_client, normalize_transcript
from mariacrm.integrations.llm import ChatCompletion, get_llm_client
from mariacrm.integrations.schemas import Transcript, TranscriptMessage
from mariacrm.main import app
from mariacrm.middleware.rate_limit import reset_rate_limiter


TRANSCRIPT = {
    "messages": [
        {"role": "agent", "content": "Hola, ¿le interesa un préstamo?", "timestamp": 0},
        {"role": "lead", "content": "Sí, cuánto es la tasa?", "timestamp": 4},
        {"role": "agent", "content": "La tasa es 1%", "timestamp": 9},
    ],
    "duration": 12,
}

COMPLETE_OUTPUT = {
    "sentiment": {"overall": "positive", "score": 0.6, "confidence": 0.8},
    "quality": {"overall": 82, "agentPerformance": 78, "flow": "good"},
    "insights": {"keyTopics": ["tasa"], "buyingSignals": ["pregunta por la tasa"]},
    "engagement": {"interestLevel": 7, "score": 70},
    "predictions": {"conversionLikelihood": 65, "recommendedAction": "Enviar propuesta", "urgency": "high"},
    "metrics": {"interruptions": 2},
    "confidence": 85,
}

NEXT_STEPS_OUTPUT = {
    "totalIntentions": 1,
    "highPriority": 1,
    "nextStepsSummary": "Enviar la propuesta hoy",
    "detectedIntentions": [{"intention": "solicitar_cotizacion", "priority": "high", "recommendedAction": "Enviar"}],
}


class ScriptedChatClient:
    provider = "openai"
    model = "gpt-test"

    def __init__(self, *outputs: dict | str) -> None:
        self.outputs = list(outputs)
        self.prompts: list[str] = []

    def complete(
        self,
        *,
        system: str,
        prompt: str,
        temperature: float,
        max_tokens: int,
        json_mode: bool = True,
    ) -> ChatCompletion:
        self.prompts.append(prompt)
        output = self.outputs.pop(0)
        content = output if isinstance(output, str) else json.dumps(output)
        return ChatCompletion(content=content, model=self.model, tokens_used=150)


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
def headers(client: TestClient) -> dict[str, str]:
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
    return {"Authorization": f"Bearer {response.json()['token']}"}


@pytest.fixture()
def lead_id(client: TestClient, headers: dict[str, str]) -> str:
    response = client.post(
        "/api/leads",
        json={"name": "Ana Pérez", "phone": "61234567", "status": "contacted", "source": "website"},
        headers=headers,
    )
    assert response.status_code == 201
    return response.json()["lead"]["id"]


def _use_llm(fake: ScriptedChatClient) -> None:
    app.dependency_overrides[get_llm_client] = lambda: fake


def test_transcript_metrics() -> None:
    metrics = compute_transcript_metrics(Transcript.model_validate(TRANSCRIPT))

    assert metrics.agent_word_count == 9
    assert metrics.lead_word_count == 5
    assert metrics.agent_time_ratio == 64
    assert metrics.lead_time_ratio == 36
    assert metrics.agent_messages == 2
    assert metrics.lead_messages == 1
    assert metrics.agent_questions == 1
    assert metrics.lead_questions == 1
    assert metrics.total_questions == 2


def test_metrics_fall_back_to_even_split() -> None:
    metrics = compute_transcript_metrics(Transcript(messages=[TranscriptMessage(role="agent", content="")]))

    assert metrics.agent_time_ratio == 50
    assert metrics.lead_time_ratio == 50
    assert metrics.agent_messages == 1


def test_normalize_elevenlabs_transcript() -> None:
    transcript = normalize_transcript(
        [
            {"role": "agent", "message": "Hola", "time_in_call_secs": 0},
            {"role": "user", "text": "Buenas tardes", "time_in_call_secs": 3.5},
            "ruido",
        ]
    )

    assert [message.role for message in transcript.messages] == ["agent", "lead"]
    assert transcript.messages[1].content == "Buenas tardes"
    assert transcript.duration == 3.5
    assert transcript.total_words == 3
    assert transcript.participant_count == 2

    empty = normalize_transcript(None)
    assert empty.messages == []
    assert empty.participant_count == 0


def test_format_phone() -> None:
    assert format_phone("6123-4567") == "+50761234567"
    assert format_phone("+507 6123 4567") == "+50761234567"
    assert format_phone("(300) 123 4567") == "+3001234567"


def test_complete_analysis_is_stored_and_readable(client: TestClient, headers: dict[str, str], lead_id: str) -> None:
    fake = ScriptedChatClient(COMPLETE_OUTPUT)
    _use_llm(fake)
    url = f"/api/leads/{lead_id}/conversations/conv-1/analysis"

    missing = client.get(url, headers=headers)
    assert missing.status_code == 404
    assert missing.json()["error"] == "No hay análisis para esta conversación"

    response = client.post(url, json={"transcript": TRANSCRIPT}, headers=headers)
    assert response.status_code == 200, response.text
    body = response.json()
    assert body["tokensUsed"] == 150
    analysis = body["analysis"]
    assert analysis["kind"] == "complete"
    assert analysis["leadId"] == lead_id
    assert analysis["conversationId"] == "conv-1"
    assert analysis["model"] == "gpt-test"
    result = analysis["result"]
    assert result["sentiment"]["overall"] == "positive"
    assert result["metrics"]["agentTimeRatio"] == 64
    assert result["interruptionCount"] == 2
    assert result["predictions"]["suggestedApproach"] == "Seguimiento estándar basado en el interés mostrado"
    assert "AGENTE: Hola" in fake.prompts[0]
    assert "Ana Pérez" in fake.prompts[0]

    latest = client.get(url, headers=headers)
    assert latest.status_code == 200
    assert latest.json()["success"] is True
    assert latest.json()["analysis"]["id"] == analysis["id"]
    assert latest.json()["analysis"]["result"]["quality"]["flow"] == "good"

    audited = [entry for entry in audit.audit_entries if entry["action"] == "analysis.complete"]
    assert audited


def test_next_steps_analysis(client: TestClient, headers: dict[str, str], lead_id: str) -> None:
    _use_llm(ScriptedChatClient(NEXT_STEPS_OUTPUT))
    base = f"/api/leads/{lead_id}/conversations/conv-2/analysis"

    response = client.post(f"{base}/next-steps", json={"transcript": TRANSCRIPT}, headers=headers)
    assert response.status_code == 200, response.text
    result = response.json()["analysis"]["result"]
    assert response.json()["analysis"]["kind"] == "next_steps"
    assert result["detectedIntentions"][0]["intention"] == "solicitar_cotizacion"
    assert result["highPriority"] == 1

    stored = client.get(base, params={"kind": "next-steps"}, headers=headers)
    assert stored.status_code == 200
    assert stored.json()["analysis"]["kind"] == "next_steps"

    other_kind = client.get(base, params={"kind": "quality"}, headers=headers)
    assert other_kind.status_code == 404


def test_unknown_analysis_kind_is_not_found(client: TestClient, headers: dict[str, str], lead_id: str) -> None:
    _use_llm(ScriptedChatClient())
    base = f"/api/leads/{lead_id}/conversations/conv-3/analysis"

    unknown = client.post(f"{base}/horoscope", json={"transcript": TRANSCRIPT}, headers=headers)
    assert unknown.status_code == 404

    complete_via_kind = client.post(f"{base}/complete", json={"transcript": TRANSCRIPT}, headers=headers)
    assert complete_via_kind.status_code == 404

    bad_filter = client.get(base, params={"kind": "horoscope"}, headers=headers)
    assert bad_filter.status_code == 400


def test_invalid_model_output_is_a_provider_error(client: TestClient, headers: dict[str, str], lead_id: str) -> None:
    _use_llm(ScriptedChatClient({"score": 0.2}))

    response = client.post(
        f"/api/leads/{lead_id}/conversations/conv-4/analysis/sentiment",
        json={"transcript": TRANSCRIPT},
        headers=headers,
    )

    assert response.status_code == 500
    body = response.json()
    assert body["code"] == "conversation_analysis_sentiment_failed"
    assert body["details"]["kind"] == "generic"


def test_empty_transcript_is_rejected(client: TestClient, headers: dict[str, str], lead_id: str) -> None:
    _use_llm(ScriptedChatClient(COMPLETE_OUTPUT))

    response = client.post(
        f"/api/leads/{lead_id}/conversations/conv-5/analysis",
        json={"transcript": {"messages": []}},
        headers=headers,
    )

    assert response.status_code == 400
    assert response.json()["error"] == "La transcripción está vacía"


def test_transcript_is_fetched_from_elevenlabs_when_missing(
    client: TestClient,
    headers: dict[str, str],
    lead_id: str,
) -> None:
    requested: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requested.append(request.url.path)
        assert request.headers["xi-api-key"] == "xi-test"
        return httpx.Response(
            200,
            json={
                "transcript": [
                    {"role": "agent", "message": "Hola Ana", "time_in_call_secs": 0},
                    {"role": "user", "message": "Hola", "time_in_call_secs": 2},
                ]
            },
        )

    http_client = httpx.Client(transport=httpx.MockTransport(handler))
    voice = ElevenLabsClient("xi-test", base_url="https://elevenlabs.test", http_client=http_client)
    app.dependency_overrides[get_elevenlabs_client] = lambda: voice
    _use_llm(ScriptedChatClient())

    response = client.post(f"/api/leads/{lead_id}/conversations/conv-el/analysis/metrics", headers=headers)
    http_client.close()

    assert response.status_code == 200, response.text
    assert requested == ["/v1/convai/conversations/conv-el"]
    result = response.json()["analysis"]["result"]
    assert result["kind"] == "metrics"
    assert result["metrics"]["agentWordCount"] == 2
    assert result["metrics"]["leadWordCount"] == 1
    assert result["durationSeconds"] == 2
    assert response.json()["analysis"]["model"] is None
