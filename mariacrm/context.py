from __future__ import annotations

from contextvars import ContextVar, Token

correlation_id_var: ContextVar[str | None] = ContextVar("correlation_id", default=None)
tenant_id_var: ContextVar[str | None] = ContextVar("tenant_id", default=None)
organization_id_var: ContextVar[str | None] = ContextVar("organization_id", default=None)


def set_correlation_id(value: str | None) -> Token[str | None]:
    return correlation_id_var.set(value)


def reset_correlation_id(token: Token[str | None]) -> None:
    correlation_id_var.reset(token)


def get_correlation_id() -> str | None:
    return correlation_id_var.get()


def set_tenant_scope(tenant_id: str | None, organization_id: str | None) -> None:
    tenant_id_var.set(tenant_id)
    organization_id_var.set(organization_id)


def get_log_context() -> dict[str, str | None]:
    return {
        "correlation_id": get_correlation_id(),
        "tenant_id": tenant_id_var.get(),
        "organization_id": organization_id_var.get(),
    }
