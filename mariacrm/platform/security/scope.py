from __future__ import annotations

from typing import Any

from fastapi import HTTPException, status
from sqlalchemy.sql import Select

from mariacrm import audit
from mariacrm.metrics import observe_auth_failure
from mariacrm.platform.security.context import AuthContext


SCOPE_MISMATCH_MESSAGE = "Tenant/organization mismatch"


def apply_tenant_scope(query: Select[Any], ctx: AuthContext, *, organization: bool = True) -> Select[Any]:
    """Restrict a select to rows of the caller's tenant (and organization)."""

    for description in query.column_descriptions:
        model = description.get("entity")
        if model is None:
            continue
        if hasattr(model, "tenant_id"):
            query = query.where(getattr(model, "tenant_id") == ctx.tenant_id)
        if organization and hasattr(model, "organization_id"):
            query = query.where(getattr(model, "organization_id") == ctx.organization_id)
    return query


def is_in_scope(record: Any, ctx: AuthContext) -> bool:
    return (
        record is not None
        and getattr(record, "tenant_id", None) == ctx.tenant_id
        and getattr(record, "organization_id", ctx.organization_id) == ctx.organization_id
    )


def validate_body_scope(ctx: AuthContext, tenant_id: str | None, organization_id: str | None) -> None:
    """Reject body-supplied tenant/organization ids that differ from the resolved context."""

    mismatched: dict[str, str] = {}
    if tenant_id and str(tenant_id) != str(ctx.tenant_id):
        mismatched["tenantId"] = str(tenant_id)
    if organization_id and str(organization_id) != str(ctx.organization_id):
        mismatched["organizationId"] = str(organization_id)
    if not mismatched:
        return

    observe_auth_failure("scope_mismatch")
    audit.record(
        actor_id=ctx.user_id,
        tenant_id=str(ctx.tenant_id),
        entity_type="security.scope",
        entity_id="request",
        action="scope.denied",
        before=None,
        after={"requested": mismatched, "principal": ctx.principal},
        correlation_id=ctx.correlation_id,
    )
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=SCOPE_MISMATCH_MESSAGE)
