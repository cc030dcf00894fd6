from __future__ import annotations

import enum


class ProviderErrorKind(str, enum.Enum):
    QUOTA_EXCEEDED = "quota_exceeded"
    RATE_LIMITED = "rate_limited"
    INVALID_CREDENTIAL = "invalid_credential"
    GENERIC = "generic"


_HTTP_STATUS = {
    ProviderErrorKind.QUOTA_EXCEEDED: 402,
    ProviderErrorKind.RATE_LIMITED: 429,
    ProviderErrorKind.INVALID_CREDENTIAL: 401,
    ProviderErrorKind.GENERIC: 500,
}

_USER_MESSAGES = {
    ProviderErrorKind.QUOTA_EXCEEDED: "Créditos del proveedor de IA agotados",
    ProviderErrorKind.RATE_LIMITED: "Límite de solicitudes del proveedor alcanzado, intenta más tarde",
    ProviderErrorKind.INVALID_CREDENTIAL: "Credenciales del proveedor inválidas",
    ProviderErrorKind.GENERIC: "Error del proveedor externo",
}


class ProviderError(Exception):
    """Typed failure of an external provider call."""

    def __init__(
        self,
        kind: ProviderErrorKind,
        provider: str,
        message: str,
        status_code: int | None = None,
    ) -> None:
        self.kind = kind
        self.provider = provider
        self.message = message
        self.status_code = status_code
        super().__init__(f"{provider}: {kind.value}: {message}")

    @property
    def http_status(self) -> int:
        return _HTTP_STATUS[self.kind]

    @property
    def user_message(self) -> str:
        return _USER_MESSAGES[self.kind]


def classify_provider_error(status_code: int | None, text: str | None) -> ProviderErrorKind:
    """Map a provider status code and error text to a failure kind.

    Checks run in order: explicit quota codes, rate limiting, quota/billing,
    credentials. Anything else, including 5xx responses, is a generic failure.
    OpenAI reports exhausted credit as a 429 carrying ``insufficient_quota``.
    """

    lowered = (text or "").lower()
    if "insufficient_quota" in lowered:
        return ProviderErrorKind.QUOTA_EXCEEDED
    if status_code == 429 or "too many requests" in lowered or "rate limit" in lowered or "rate_limit" in lowered:
        return ProviderErrorKind.RATE_LIMITED
    if status_code == 402 or "billing" in lowered or "credits" in lowered or "quota" in lowered:
        return ProviderErrorKind.QUOTA_EXCEEDED
    if (
        status_code in (401, 403)
        or "invalid_api_key" in lowered
        or "incorrect api key" in lowered
        or "api key not valid" in lowered
    ):
        return ProviderErrorKind.INVALID_CREDENTIAL
    return ProviderErrorKind.GENERIC


def provider_error_from_response(provider: str, status_code: int, text: str) -> ProviderError:
    return ProviderError(classify_provider_error(status_code, text), provider, text[:500], status_code)
