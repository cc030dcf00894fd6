from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Any

from fastapi import HTTPException, status
from sqlalchemy.orm import Session

from mariacrm import audit
from mariacrm.documents.store import DocumentStore, agent_document_path, agents_collection_path
from mariacrm.integrations.schemas import AgentCreate
from mariacrm.platform.security import AuthContext


logger = logging.getLogger("mariacrm.integrations.agents")

AGENT_NOT_FOUND = "Agente no encontrado"


class AgentConfigService:
    """Tenant-level references to ElevenLabs voice agents plus local usage rules."""

    entity_type = "tenant.voice_agent"

    def list_agents(self, session: Session, ctx: AuthContext, is_active: bool | None = None) -> tuple[str, dict[str, dict[str, Any]]]:
        path = agents_collection_path(ctx.tenant_id)
        agents = DocumentStore(session).list(path)
        if is_active is not None:
            agents = {
                agent_id: data
                for agent_id, data in agents.items()
                if bool(data.get("metadata", {}).get("isActive", True)) is is_active
            }
        return path, agents

    def get_agent(self, session: Session, ctx: AuthContext, agent_id: str) -> dict[str, Any]:
        data = DocumentStore(session).get(agent_document_path(ctx.tenant_id, agent_id))
        if data is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=AGENT_NOT_FOUND)
        return data

    def create_agent(self, session: Session, ctx: AuthContext, dto: AgentCreate) -> tuple[str, dict[str, Any]]:
        if not dto.eleven_labs_agent_id:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="elevenLabsAgentId es requerido")
        if not dto.usage:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="usage rules son requeridas")

        store = DocumentStore(session)
        existing = store.list(agents_collection_path(ctx.tenant_id))
        if any(item.get("elevenLabsConfig", {}).get("agentId") == dto.eleven_labs_agent_id for item in existing.values()):
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail=f'Ya existe una referencia para el agente ElevenLabs "{dto.eleven_labs_agent_id}"',
            )

        now = datetime.now(timezone.utc).isoformat()
        agent_id = f"agent-{dto.eleven_labs_agent_id[-8:]}-{int(time.time() * 1000)}"
        data = store.set(
            agent_document_path(ctx.tenant_id, agent_id),
            {
                "id": agent_id,
                "tenantId": str(ctx.tenant_id),
                "name": dto.name,
                "description": dto.description,
                "elevenLabsConfig": {"agentId": dto.eleven_labs_agent_id},
                "usage": dto.usage,
                "metadata": {
                    "isActive": dto.is_active,
                    "createdAt": now,
                    "updatedAt": now,
                    "createdBy": ctx.user_id,
                    "version": "1.0.0",
                },
                "stats": {"totalCalls": 0, "successfulCalls": 0, "averageDuration": 0, "lastUsed": None},
            },
        )
        session.commit()

        audit.record(
            actor_id=ctx.user_id,
            tenant_id=str(ctx.tenant_id),
            entity_type=self.entity_type,
            entity_id=agent_id,
            action="agent.created",
            before=None,
            after={"elevenLabsAgentId": dto.eleven_labs_agent_id},
            correlation_id=ctx.correlation_id,
        )
        logger.info("agent.created", extra={"tenant_id": str(ctx.tenant_id), "provider": "elevenlabs"})
        return agent_id, data

    def delete_agent(self, session: Session, ctx: AuthContext, agent_id: str) -> None:
        if not DocumentStore(session).delete(agent_document_path(ctx.tenant_id, agent_id)):
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=AGENT_NOT_FOUND)
        session.commit()
        audit.record(
            actor_id=ctx.user_id,
            tenant_id=str(ctx.tenant_id),
            entity_type=self.entity_type,
            entity_id=agent_id,
            action="agent.deleted",
            before=None,
            after=None,
            correlation_id=ctx.correlation_id,
        )
