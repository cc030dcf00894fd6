from __future__ import annotations

import logging
import time
from collections.abc import Callable

from fastapi import Depends, HTTPException, Response, status
from sqlalchemy.orm import Session
from starlette.requests import Request

from mariacrm.context import get_correlation_id, set_tenant_scope
from mariacrm.core.cache import UserContextCache, get_context_cache
from mariacrm.core.config import get_settings
from mariacrm.core.database import get_db
from mariacrm.core.security import API_KEY_PREFIX, TokenError, decode_context_token
from mariacrm.metrics import observe_auth_failure
from mariacrm.platform.security import AuthContext, has_permission, permissions_for_roles
from mariacrm.tenancy.service import ApiKeyService, AuthService, rate_limit_headers


logger = logging.getLogger("mariacrm.auth")
auth_service = AuthService()
api_key_service = ApiKeyService()


def extract_bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get("authorization", "")
    if auth_header.startswith("Bearer "):
        token = auth_header[7:].strip()
        return token or None
    cookie_token = request.cookies.get(get_settings().auth_cookie_name)
    return cookie_token or None


def extract_api_key(request: Request) -> str | None:
    header_key = request.headers.get("x-api-key")
    if header_key:
        return header_key.strip()
    auth_header = request.headers.get("authorization", "")
    if auth_header.startswith(f"Bearer {API_KEY_PREFIX}"):
        return auth_header[7:].strip()
    return None


def _bind_request_context(request: Request, ctx: AuthContext) -> None:
    context = getattr(request.state, "context", None)
    if context is not None:
        context.user_id = ctx.user_id
        context.tenant_id = str(ctx.tenant_id)
        context.organization_id = str(ctx.organization_id)
        context.principal = ctx.principal
    set_tenant_scope(str(ctx.tenant_id), str(ctx.organization_id))


def get_auth_context(
    request: Request,
    db: Session = Depends(get_db),
    cache: UserContextCache = Depends(get_context_cache),
) -> AuthContext:
    token = extract_bearer_token(request)
    if not token:
        observe_auth_failure("missing_token")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="No authorization header")

    try:
        claims = decode_context_token(token)
    except TokenError:
        observe_auth_failure("invalid_token")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid or expired token")

    resolved = auth_service.resolve_context(db, claims, cache)
    request.state.resolved_context = resolved
    ctx = AuthContext(
        user_id=str(resolved.user.id),
        tenant_id=resolved.tenant.id,
        organization_id=resolved.organization.id,
        email=resolved.user.email,
        roles=resolved.roles,
        permissions=permissions_for_roles(resolved.roles),
        principal="user",
        correlation_id=get_correlation_id() or getattr(request.state, "correlation_id", None),
    )
    _bind_request_context(request, ctx)
    return ctx


def get_api_key_context(
    request: Request,
    response: Response,
    db: Session = Depends(get_db),
) -> AuthContext:
    raw_key = extract_api_key(request)
    window = get_settings().api_key_rate_limit_window_seconds
    if not raw_key:
        observe_auth_failure("missing_api_key")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="API key required",
            headers={"X-RateLimit-Remaining": "0", "X-RateLimit-Reset": str(int(time.time()) + window)},
        )

    try:
        authentication = api_key_service.authenticate(db, raw_key)
    except HTTPException as exc:
        if exc.status_code == status.HTTP_401_UNAUTHORIZED:
            raise HTTPException(
                status_code=exc.status_code,
                detail=exc.detail,
                headers={"X-RateLimit-Remaining": "0", "X-RateLimit-Reset": str(int(time.time()) + window)},
            ) from exc
        raise

    key = authentication.key
    headers = rate_limit_headers(authentication.decision)
    request.state.rate_limit_headers = headers
    response.headers.update(headers)

    ctx = AuthContext(
        user_id=f"api_key:{key.id}",
        tenant_id=key.tenant_id,
        organization_id=key.organization_id,
        roles=["api_key"],
        permissions=set(key.permissions or []),
        principal="api_key",
        api_key_id=key.id,
        correlation_id=get_correlation_id() or getattr(request.state, "correlation_id", None),
    )
    _bind_request_context(request, ctx)
    return ctx


def get_principal(
    request: Request,
    response: Response,
    db: Session = Depends(get_db),
    cache: UserContextCache = Depends(get_context_cache),
) -> AuthContext:
    """Bearer context token for people, scoped API key for server-to-server callers."""

    if extract_api_key(request) is not None:
        return get_api_key_context(request, response, db)
    return get_auth_context(request, db, cache)


def require_api_key_permission(permission: str) -> Callable[..., AuthContext]:
    def checker(request: Request, ctx: AuthContext = Depends(get_api_key_context)) -> AuthContext:
        if not has_permission(ctx.permissions, permission):
            observe_auth_failure("missing_permission")
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Missing permission: {permission}",
                headers=getattr(request.state, "rate_limit_headers", None),
            )
        return ctx

    return checker
