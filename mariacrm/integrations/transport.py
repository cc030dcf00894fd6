from __future__ import annotations

import logging
import time
from typing import Any

import httpx

from mariacrm.context import get_correlation_id
from mariacrm.core.config import get_settings
from mariacrm.integrations.errors import ProviderError, ProviderErrorKind, provider_error_from_response
from mariacrm.metrics import observe_provider_call
from mariacrm.otel import get_tracer


logger = logging.getLogger("mariacrm.integrations")
tracer = get_tracer("mariacrm.integrations")


def build_http_client(timeout: float | None = None) -> httpx.Client:
    return httpx.Client(timeout=timeout if timeout is not None else get_settings().provider_timeout_seconds)


def request_json(
    client: httpx.Client,
    provider: str,
    operation: str,
    method: str,
    url: str,
    **kwargs: Any,
) -> Any:
    """Single request/response exchange with a provider, no retries.

    Non-2xx responses and transport failures surface as ``ProviderError``.
    """

    started = time.perf_counter()
    with tracer.start_as_current_span(f"provider.{provider}.{operation}") as span:
        span.set_attribute("provider", provider)
        span.set_attribute("correlation_id", get_correlation_id() or "")
        try:
            response = client.request(method, url, **kwargs)
        except httpx.HTTPError as exc:
            observe_provider_call(provider, ProviderErrorKind.GENERIC.value, time.perf_counter() - started)
            logger.warning(
                "provider.transport_error",
                extra={"provider": provider, "operation": operation, "error": str(exc)},
            )
            raise ProviderError(ProviderErrorKind.GENERIC, provider, f"transport error: {exc}") from exc

        span.set_attribute("http.status_code", response.status_code)
        if response.status_code >= 400:
            error = provider_error_from_response(provider, response.status_code, response.text)
            observe_provider_call(provider, error.kind.value, time.perf_counter() - started)
            logger.warning(
                "provider.call_failed",
                extra={
                    "provider": provider,
                    "operation": operation,
                    "status_code": response.status_code,
                    "error_kind": error.kind.value,
                },
            )
            raise error

        try:
            payload = response.json()
        except ValueError as exc:
            observe_provider_call(provider, ProviderErrorKind.GENERIC.value, time.perf_counter() - started)
            raise ProviderError(
                ProviderErrorKind.GENERIC,
                provider,
                "response body is not valid JSON",
                response.status_code,
            ) from exc

        observe_provider_call(provider, "success", time.perf_counter() - started)
        return payload


def missing_credential(provider: str) -> ProviderError:
    return ProviderError(ProviderErrorKind.INVALID_CREDENTIAL, provider, "API key is not configured")
