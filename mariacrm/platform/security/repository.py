from __future__ import annotations

import uuid
from typing import Any, Generic, TypeVar

from sqlalchemy import select
from sqlalchemy.orm import Session
from sqlalchemy.sql import Select

from mariacrm.platform.security.context import AuthContext
from mariacrm.platform.security.scope import apply_tenant_scope


ModelT = TypeVar("ModelT")


class BaseRepository(Generic[ModelT]):
    """Tenant-scoped data access; every query passes through ``apply_scope_query``."""

    model: type[ModelT]

    def apply_scope_query(self, query: Select[Any], ctx: AuthContext) -> Select[Any]:
        return apply_tenant_scope(query, ctx)

    def scoped_select(self, ctx: AuthContext) -> Select[Any]:
        return self.apply_scope_query(select(self.model), ctx)

    def get(self, session: Session, ctx: AuthContext, record_id: uuid.UUID) -> ModelT | None:
        query = self.scoped_select(ctx).where(getattr(self.model, "id") == record_id)
        return session.scalar(query)

    def stamp(self, record: ModelT, ctx: AuthContext) -> ModelT:
        setattr(record, "tenant_id", ctx.tenant_id)
        if hasattr(record, "organization_id"):
            setattr(record, "organization_id", ctx.organization_id)
        return record
