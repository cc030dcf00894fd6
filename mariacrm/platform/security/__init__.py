from mariacrm.platform.security.context import AuthContext
from mariacrm.platform.security.permissions import (
    DEFAULT_API_KEY_PERMISSIONS,
    has_permission,
    permissions_for_roles,
    require_permission,
)
from mariacrm.platform.security.repository import BaseRepository
from mariacrm.platform.security.scope import apply_tenant_scope, is_in_scope, validate_body_scope

__all__ = [
    "AuthContext",
    "BaseRepository",
    "DEFAULT_API_KEY_PERMISSIONS",
    "apply_tenant_scope",
    "has_permission",
    "is_in_scope",
    "permissions_for_roles",
    "require_permission",
    "validate_body_scope",
]
