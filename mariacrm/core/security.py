from __future__ import annotations

import hashlib
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any

from jose import JWTError, jwt
from passlib.context import CryptContext

from mariacrm.core.config import get_settings


pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")

API_KEY_PREFIX = "sk_"
REQUIRED_CLAIMS = ("userId", "tenantId", "organizationId")


class TokenError(Exception):
    """Raised when a context token cannot be verified."""


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: str | None) -> bool:
    if not hashed_password:
        return False
    try:
        return pwd_context.verify(plain_password, hashed_password)
    except ValueError:
        return False


def create_context_token(
    *,
    user_id: str,
    email: str,
    tenant_id: str,
    organization_id: str,
    roles: list[str],
    issued_at: datetime | None = None,
) -> str:
    """Mint a signed context token carrying the caller's tenant/organization scope."""

    settings = get_settings()
    now = issued_at or datetime.now(timezone.utc)
    payload: dict[str, Any] = {
        "sub": user_id,
        "userId": user_id,
        "email": email,
        "tenantId": tenant_id,
        "organizationId": organization_id,
        "roles": list(roles),
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(hours=settings.token_ttl_hours)).timestamp()),
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_context_token(token: str) -> dict[str, Any]:
    settings = get_settings()
    try:
        return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError as exc:
        raise TokenError(str(exc)) from exc


def has_required_claims(claims: dict[str, Any]) -> bool:
    return all(isinstance(claims.get(name), str) and claims.get(name) for name in REQUIRED_CLAIMS)


def generate_api_key() -> str:
    return f"{API_KEY_PREFIX}{secrets.token_hex(32)}"


def hash_api_key(raw_key: str) -> str:
    return hashlib.sha256(raw_key.encode("utf-8")).hexdigest()
