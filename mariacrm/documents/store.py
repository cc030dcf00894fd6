from __future__ import annotations

import copy
import uuid
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from mariacrm.documents.models import Document, utcnow


def client_document_path(tenant_id: uuid.UUID | str, organization_id: uuid.UUID | str, client_id: uuid.UUID | str) -> str:
    return f"tenants/{tenant_id}/organizations/{organization_id}/clients/{client_id}"


def agents_collection_path(tenant_id: uuid.UUID | str) -> str:
    return f"tenants/{tenant_id}/agents/elevenlabs"


def agent_document_path(tenant_id: uuid.UUID | str, agent_id: str) -> str:
    return f"{agents_collection_path(tenant_id)}/{agent_id}"


def leads_collection_path(tenant_id: uuid.UUID | str, organization_id: uuid.UUID | str) -> str:
    return f"tenants/{tenant_id}/organizations/{organization_id}/leads"


def empty_client_document(client_id: uuid.UUID | str) -> dict[str, Any]:
    return {
        "clientId": str(client_id),
        "customerInteractions": {
            "callLogs": [],
            "emailRecords": [],
            "whatsappRecords": [],
            "clientAIProfiles": {},
        },
    }


def deep_merge(base: dict[str, Any], updates: dict[str, Any]) -> dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in updates.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def _parent_of(path: str) -> str:
    normalized = path.strip("/")
    if "/" not in normalized:
        return ""
    return normalized.rsplit("/", 1)[0]


class DocumentStore:
    """Path-keyed JSON documents living in the caller's session.

    Writes are flushed but never committed here; the owning service decides
    when the unit of work ends, so document writes roll back with the rows
    they describe.
    """

    def __init__(self, session: Session) -> None:
        self.session = session

    def _row(self, path: str) -> Document | None:
        return self.session.scalar(select(Document).where(Document.path == path.strip("/")))

    def get(self, path: str) -> dict[str, Any] | None:
        row = self._row(path)
        if row is None:
            return None
        return copy.deepcopy(row.data)

    def exists(self, path: str) -> bool:
        return self._row(path) is not None

    def set(self, path: str, data: dict[str, Any]) -> dict[str, Any]:
        normalized = path.strip("/")
        row = self._row(normalized)
        if row is None:
            row = Document(path=normalized, parent=_parent_of(normalized), data=copy.deepcopy(data))
            self.session.add(row)
        else:
            row.data = copy.deepcopy(data)
            row.updated_at = utcnow()
        self.session.flush()
        return copy.deepcopy(row.data)

    def merge(self, path: str, data: dict[str, Any]) -> dict[str, Any]:
        current = self.get(path) or {}
        return self.set(path, deep_merge(current, data))

    def delete(self, path: str) -> bool:
        row = self._row(path)
        if row is None:
            return False
        self.session.delete(row)
        self.session.flush()
        return True

    def list(self, prefix: str) -> dict[str, dict[str, Any]]:
        """Direct children of ``prefix`` keyed by their last path segment."""

        parent = prefix.strip("/")
        rows = self.session.scalars(select(Document).where(Document.parent == parent).order_by(Document.created_at)).all()
        return {row.path.rsplit("/", 1)[-1]: copy.deepcopy(row.data) for row in rows}
