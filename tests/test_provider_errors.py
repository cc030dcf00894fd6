from __future__ import annotations

import json

import httpx
import pytest

from mariacrm.integrations.errors import ProviderError, ProviderErrorKind, classify_provider_error
from mariacrm.integrations.llm import GeminiChatClient, OpenAIChatClient
from mariacrm.integrations.transport import request_json


@pytest.mark.parametrize(
    ("status_code", "text", "expected"),
    [
        (429, '{"error": {"code": "insufficient_quota"}}', ProviderErrorKind.QUOTA_EXCEEDED),
        (429, "slow down", ProviderErrorKind.RATE_LIMITED),
        (400, "Rate limit reached for requests", ProviderErrorKind.RATE_LIMITED),
        (402, "", ProviderErrorKind.QUOTA_EXCEEDED),
        (400, "Your credits are exhausted", ProviderErrorKind.QUOTA_EXCEEDED),
        (401, "", ProviderErrorKind.INVALID_CREDENTIAL),
        (400, "API key not valid. Please pass a valid API key.", ProviderErrorKind.INVALID_CREDENTIAL),
        (500, "upstream exploded", ProviderErrorKind.GENERIC),
        (None, None, ProviderErrorKind.GENERIC),
    ],
)
def test_classify_provider_error(status_code: int | None, text: str | None, expected: ProviderErrorKind) -> None:
    assert classify_provider_error(status_code, text) is expected


def test_error_kinds_map_to_http_statuses() -> None:
    statuses = {kind: ProviderError(kind, "openai", "x").http_status for kind in ProviderErrorKind}
    assert statuses == {
        ProviderErrorKind.QUOTA_EXCEEDED: 402,
        ProviderErrorKind.RATE_LIMITED: 429,
        ProviderErrorKind.INVALID_CREDENTIAL: 401,
        ProviderErrorKind.GENERIC: 500,
    }


def test_request_json_raises_classified_error() -> None:
    transport = httpx.MockTransport(lambda request: httpx.Response(429, json={"error": "Too Many Requests"}))
    with httpx.Client(transport=transport) as client:
        with pytest.raises(ProviderError) as excinfo:
            request_json(client, "elevenlabs", "get_conversation", "GET", "https://api.example.test/v1/x")

    assert excinfo.value.kind is ProviderErrorKind.RATE_LIMITED
    assert excinfo.value.status_code == 429
    assert excinfo.value.provider == "elevenlabs"


def test_request_json_wraps_transport_failures() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with httpx.Client(transport=httpx.MockTransport(handler)) as client:
        with pytest.raises(ProviderError) as excinfo:
            request_json(client, "whatsapp", "start_conversation", "POST", "https://mcp.example.test/x")

    assert excinfo.value.kind is ProviderErrorKind.GENERIC
    assert "connection refused" in excinfo.value.message


def test_request_json_rejects_non_json_body() -> None:
    transport = httpx.MockTransport(lambda request: httpx.Response(200, text="<html>ok</html>"))
    with httpx.Client(transport=transport) as client:
        with pytest.raises(ProviderError) as excinfo:
            request_json(client, "openai", "chat_completion", "POST", "https://api.example.test/x")

    assert excinfo.value.kind is ProviderErrorKind.GENERIC


def test_openai_client_sends_json_mode_request() -> None:
    captured: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["url"] = str(request.url)
        captured["auth"] = request.headers["Authorization"]
        captured["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json={
                "model": "gpt-4o-mini-2024",
                "choices": [{"message": {"role": "assistant", "content": '{"ok": true}'}}],
                "usage": {"total_tokens": 42},
            },
        )

    with httpx.Client(transport=httpx.MockTransport(handler)) as http_client:
        llm = OpenAIChatClient("sk-test", base_url="https://openai.test/v1/", http_client=http_client)
        completion = llm.complete(system="sys", prompt="hola", temperature=0.3, max_tokens=200)

    assert captured["url"] == "https://openai.test/v1/chat/completions"
    assert captured["auth"] == "Bearer sk-test"
    assert captured["body"]["response_format"] == {"type": "json_object"}
    assert captured["body"]["messages"][1] == {"role": "user", "content": "hola"}
    assert completion.content == '{"ok": true}'
    assert completion.model == "gpt-4o-mini-2024"
    assert completion.tokens_used == 42


def test_openai_quota_error_surfaces_as_quota() -> None:
    transport = httpx.MockTransport(
        lambda request: httpx.Response(429, json={"error": {"type": "insufficient_quota", "message": "quota"}})
    )
    with httpx.Client(transport=transport) as http_client:
        llm = OpenAIChatClient("sk-test", http_client=http_client)
        with pytest.raises(ProviderError) as excinfo:
            llm.complete(system="s", prompt="p", temperature=0.1, max_tokens=10)

    assert excinfo.value.kind is ProviderErrorKind.QUOTA_EXCEEDED
    assert excinfo.value.http_status == 402


def test_missing_key_is_invalid_credential() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no request expected")

    with httpx.Client(transport=httpx.MockTransport(handler)) as http_client:
        llm = OpenAIChatClient(None, http_client=http_client)
        with pytest.raises(ProviderError) as excinfo:
            llm.complete(system="s", prompt="p", temperature=0.1, max_tokens=10)

    assert excinfo.value.kind is ProviderErrorKind.INVALID_CREDENTIAL


def test_gemini_client_joins_candidate_parts() -> None:
    captured: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["path"] = request.url.path
        captured["key"] = request.url.params["key"]
        captured["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json={
                "candidates": [{"content": {"parts": [{"text": '{"a": '}, {"text": "1}"}]}}],
                "usageMetadata": {"totalTokenCount": 17},
            },
        )

    with httpx.Client(transport=httpx.MockTransport(handler)) as http_client:
        llm = GeminiChatClient("g-key", base_url="https://gemini.test/v1beta", http_client=http_client)
        completion = llm.complete(system="sys", prompt="hola", temperature=0.2, max_tokens=100)

    assert captured["path"] == "/v1beta/models/gemini-1.5-flash:generateContent"
    assert captured["key"] == "g-key"
    assert captured["body"]["generationConfig"]["responseMimeType"] == "application/json"
    assert completion.content == '{"a": 1}'
    assert completion.tokens_used == 17
