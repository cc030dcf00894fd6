from __future__ import annotations

from collections.abc import Iterable

from fastapi import HTTPException, status

from mariacrm.metrics import observe_auth_failure
from mariacrm.platform.security.context import AuthContext


WILDCARD_PERMISSIONS = frozenset({"*", "admin:all"})

MEMBER_PERMISSIONS = frozenset(
    {
        "leads:read",
        "leads:create",
        "leads:update",
        "leads:import",
        "clients:read",
        "campaigns:read",
        "products:read",
        "calls:personalize",
        "calls:initiate",
        "analysis:run",
    }
)

ROLE_PERMISSIONS: dict[str, frozenset[str]] = {
    "owner": frozenset({"*"}),
    "admin": frozenset({"*"}),
    "member": MEMBER_PERMISSIONS,
}

DEFAULT_API_KEY_PERMISSIONS = ["leads:create", "leads:read"]


def permissions_for_roles(roles: Iterable[str]) -> set[str]:
    granted: set[str] = set()
    for role in roles:
        granted.update(ROLE_PERMISSIONS.get(str(role).lower(), frozenset()))
    return granted


def has_permission(granted: Iterable[str], permission: str) -> bool:
    granted_set = set(granted)
    if granted_set & WILDCARD_PERMISSIONS:
        return True
    return permission in granted_set


def require_permission(ctx: AuthContext, permission: str) -> None:
    if not has_permission(ctx.permissions, permission):
        observe_auth_failure("missing_permission")
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"Missing permission: {permission}")
