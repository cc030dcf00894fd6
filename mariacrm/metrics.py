from __future__ import annotations

import re

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from starlette.requests import Request


http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
)

auth_failures_total = Counter(
    "auth_failures_total",
    "Authentication and authorization failures by reason",
    ["reason"],
)

context_cache_hits_total = Counter(
    "context_cache_hits_total",
    "Resolved user context cache hits",
)

context_cache_misses_total = Counter(
    "context_cache_misses_total",
    "Resolved user context cache misses",
)

bulk_items_total = Counter(
    "bulk_items_total",
    "Bulk operation items by operation and outcome",
    ["operation", "outcome"],
)

provider_calls_total = Counter(
    "provider_calls_total",
    "External provider calls by provider and outcome",
    ["provider", "outcome"],
)

provider_call_duration_seconds = Histogram(
    "provider_call_duration_seconds",
    "External provider call duration in seconds",
    ["provider"],
)

api_key_rate_limited_total = Counter(
    "api_key_rate_limited_total",
    "Requests rejected by the per-key rate limiter",
)


_UUID_RE = re.compile(
    r"\b[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[1-5][0-9a-fA-F]{3}-[89abAB][0-9a-fA-F]{3}-[0-9a-fA-F]{12}\b"
)
_INT_RE = re.compile(r"/\d+\b")
_PATH_PARAM_RE = re.compile(r"\{[^{}]+\}")


def _sanitize_path(path: str) -> str:
    without_uuids = _UUID_RE.sub("{id}", path)
    return _INT_RE.sub("/{id}", without_uuids)


def resolve_http_path_label(request: Request) -> str:
    route = request.scope.get("route")
    if route is not None:
        path_format = getattr(route, "path_format", None) or getattr(route, "path", None)
        if isinstance(path_format, str) and path_format:
            return _PATH_PARAM_RE.sub("{id}", path_format)
    return _sanitize_path(request.url.path)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    http_requests_total.labels(method=method, path=path, status=str(status)).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_auth_failure(reason: str) -> None:
    auth_failures_total.labels(reason=reason).inc()


def observe_context_cache(hit: bool) -> None:
    if hit:
        context_cache_hits_total.inc()
    else:
        context_cache_misses_total.inc()


def observe_bulk_items(operation: str, successful: int, failed: int) -> None:
    if successful > 0:
        bulk_items_total.labels(operation=operation, outcome="success").inc(successful)
    if failed > 0:
        bulk_items_total.labels(operation=operation, outcome="failure").inc(failed)


def observe_provider_call(provider: str, outcome: str, duration: float) -> None:
    provider_calls_total.labels(provider=provider, outcome=outcome).inc()
    provider_call_duration_seconds.labels(provider=provider).observe(duration)


def observe_api_key_rate_limited() -> None:
    api_key_rate_limited_total.inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
