from __future__ import annotations

import math
import threading
import time
import uuid
from dataclasses import dataclass
from typing import Any

from fastapi.responses import JSONResponse
from jose import JWTError, jwt
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from mariacrm.context import get_correlation_id
from mariacrm.core.config import get_settings
from mariacrm.core.security import API_KEY_PREFIX


@dataclass
class _BucketState:
    tokens: float
    last_refill: float


@dataclass(frozen=True)
class RateDecision:
    allowed: bool
    remaining: int
    retry_after: int
    reset_at: int


class TokenBucketLimiter:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._buckets: dict[tuple[str, str], _BucketState] = {}

    def take(self, subject: str, route_group: str, capacity: int, window_seconds: int) -> RateDecision:
        now = time.monotonic()
        wall_now = int(time.time())
        if capacity <= 0:
            return RateDecision(allowed=False, remaining=0, retry_after=window_seconds, reset_at=wall_now + window_seconds)

        refill_rate = capacity / float(window_seconds)
        key = (subject, route_group)

        with self._lock:
            current = self._buckets.get(key)
            if current is None:
                current = _BucketState(tokens=float(capacity), last_refill=now)
                self._buckets[key] = current

            elapsed = max(0.0, now - current.last_refill)
            current.tokens = min(float(capacity), current.tokens + (elapsed * refill_rate))
            current.last_refill = now

            if current.tokens < 1.0:
                retry_after = max(1, math.ceil((1.0 - current.tokens) / refill_rate))
                return RateDecision(allowed=False, remaining=0, retry_after=retry_after, reset_at=wall_now + retry_after)

            current.tokens -= 1.0
            until_full = math.ceil((float(capacity) - current.tokens) / refill_rate)
            return RateDecision(
                allowed=True,
                remaining=int(current.tokens),
                retry_after=0,
                reset_at=wall_now + until_full,
            )

    def clear(self) -> None:
        with self._lock:
            self._buckets.clear()


_limiter = TokenBucketLimiter()


def get_rate_limiter() -> TokenBucketLimiter:
    return _limiter


class MutationRateLimitMiddleware(BaseHTTPMiddleware):
    mutating_methods = {"POST", "PUT", "PATCH", "DELETE"}
    exempt_prefixes = ("/api/auth/",)

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        settings = get_settings()
        if settings.rate_limit_disabled:
            return await call_next(request)

        path = request.url.path
        if (
            not path.startswith("/api/")
            or path.startswith(self.exempt_prefixes)
            or request.method.upper() not in self.mutating_methods
        ):
            return await call_next(request)

        decision = _limiter.take(
            subject=_resolve_subject(request),
            route_group=resolve_route_group(path),
            capacity=settings.rate_limit_mutations_per_minute,
            window_seconds=60,
        )
        if decision.allowed:
            return await call_next(request)

        correlation_id = (
            get_correlation_id()
            or getattr(request.state, "correlation_id", None)
            or request.headers.get("x-correlation-id")
            or str(uuid.uuid4())
        )
        response = JSONResponse(
            status_code=429,
            content={
                "success": False,
                "error": "Too many requests",
                "code": "RATE_LIMITED",
                "details": None,
                "correlation_id": correlation_id,
            },
        )
        response.headers["Retry-After"] = str(decision.retry_after)
        response.headers["X-Correlation-Id"] = correlation_id
        return response


def resolve_route_group(path: str) -> str:
    parts = [part for part in path.split("/") if part]
    if len(parts) < 2:
        return "api"
    return parts[1]


def _resolve_subject(request: Request) -> str:
    api_key = request.headers.get("x-api-key")
    if api_key:
        return f"key:{api_key[:12]}"

    settings = get_settings()
    auth_header = request.headers.get("authorization", "")
    if auth_header.startswith("Bearer "):
        token = auth_header[7:].strip()
    else:
        token = request.cookies.get(settings.auth_cookie_name, "").strip()
    if not token:
        return "anonymous"
    if token.startswith(API_KEY_PREFIX):
        return f"key:{token[:12]}"

    try:
        payload: dict[str, Any] = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return "anonymous"

    user_id = payload.get("userId") or payload.get("sub")
    if user_id is None:
        return "anonymous"
    return str(user_id)


def reset_rate_limiter() -> None:
    _limiter.clear()
