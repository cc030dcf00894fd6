from __future__ import annotations

import uuid
from dataclasses import dataclass, field


@dataclass(slots=True)
class AuthContext:
    """Resolved principal for one request, scoped to a single tenant/organization pair."""

    user_id: str
    tenant_id: uuid.UUID
    organization_id: uuid.UUID
    email: str | None = None
    roles: list[str] = field(default_factory=list)
    permissions: set[str] = field(default_factory=set)
    principal: str = "user"
    api_key_id: uuid.UUID | None = None
    correlation_id: str | None = None

    @property
    def is_api_key(self) -> bool:
        return self.principal == "api_key"
