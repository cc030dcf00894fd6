from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass
from typing import Any, Protocol

import httpx

from mariacrm.core.config import Settings, get_settings
from mariacrm.integrations.errors import ProviderError, ProviderErrorKind
from mariacrm.integrations.transport import build_http_client, missing_credential, request_json


@dataclass
class ChatCompletion:
    content: str
    model: str
    tokens_used: int


class ChatClient(Protocol):
    provider: str
    model: str

    def complete(
        self,
        *,
        system: str,
        prompt: str,
        temperature: float,
        max_tokens: int,
        json_mode: bool = True,
    ) -> ChatCompletion: ...


class OpenAIChatClient:
    provider = "openai"

    def __init__(
        self,
        api_key: str | None,
        model: str = "gpt-4o-mini",
        base_url: str = "https://api.openai.com/v1",
        http_client: httpx.Client | None = None,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.http_client = http_client or build_http_client()

    def complete(
        self,
        *,
        system: str,
        prompt: str,
        temperature: float,
        max_tokens: int,
        json_mode: bool = True,
    ) -> ChatCompletion:
        if not self.api_key:
            raise missing_credential(self.provider)
        body: dict[str, Any] = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": system},
                {"role": "user", "content": prompt},
            ],
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        if json_mode:
            body["response_format"] = {"type": "json_object"}

        payload = request_json(
            self.http_client,
            self.provider,
            "chat_completion",
            "POST",
            f"{self.base_url}/chat/completions",
            json=body,
            headers={"Authorization": f"Bearer {self.api_key}"},
        )
        try:
            content = payload["choices"][0]["message"]["content"] or ""
        except (KeyError, IndexError, TypeError) as exc:
            raise ProviderError(ProviderErrorKind.GENERIC, self.provider, "completion has no message content") from exc
        usage = payload.get("usage") or {}
        return ChatCompletion(
            content=content,
            model=payload.get("model") or self.model,
            tokens_used=int(usage.get("total_tokens") or 0),
        )


class GeminiChatClient:
    provider = "gemini"

    def __init__(
        self,
        api_key: str | None,
        model: str = "gemini-1.5-flash",
        base_url: str = "https://generativelanguage.googleapis.com/v1beta",
        http_client: httpx.Client | None = None,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.http_client = http_client or build_http_client()

    def complete(
        self,
        *,
        system: str,
        prompt: str,
        temperature: float,
        max_tokens: int,
        json_mode: bool = True,
    ) -> ChatCompletion:
        if not self.api_key:
            raise missing_credential(self.provider)
        generation_config: dict[str, Any] = {"temperature": temperature, "maxOutputTokens": max_tokens}
        if json_mode:
            generation_config["responseMimeType"] = "application/json"

        payload = request_json(
            self.http_client,
            self.provider,
            "generate_content",
            "POST",
            f"{self.base_url}/models/{self.model}:generateContent",
            params={"key": self.api_key},
            json={
                "systemInstruction": {"parts": [{"text": system}]},
                "contents": [{"role": "user", "parts": [{"text": prompt}]}],
                "generationConfig": generation_config,
            },
        )
        try:
            parts = payload["candidates"][0]["content"]["parts"]
        except (KeyError, IndexError, TypeError) as exc:
            raise ProviderError(ProviderErrorKind.GENERIC, self.provider, "response has no candidates") from exc
        usage = payload.get("usageMetadata") or {}
        return ChatCompletion(
            content="".join(part.get("text", "") for part in parts),
            model=self.model,
            tokens_used=int(usage.get("totalTokenCount") or 0),
        )


def build_llm_client(settings: Settings | None = None, http_client: httpx.Client | None = None) -> ChatClient:
    settings = settings or get_settings()
    if settings.ai_provider.lower() == "gemini":
        return GeminiChatClient(
            settings.gemini_api_key,
            model=settings.gemini_model,
            base_url=settings.gemini_base_url,
            http_client=http_client,
        )
    return OpenAIChatClient(
        settings.openai_api_key,
        model=settings.openai_model,
        base_url=settings.openai_base_url,
        http_client=http_client,
    )


def get_llm_client() -> Iterator[ChatClient]:
    http_client = build_http_client()
    try:
        yield build_llm_client(http_client=http_client)
    finally:
        http_client.close()
