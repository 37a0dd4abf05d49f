"""REST API endpoints for agent CRUD.

Agents belong to the authenticated user; every per-agent endpoint checks
ownership (404 when the agent does not exist, 403 when it is someone else's).
Partial updates write only the fields present in the request body.
"""

from __future__ import annotations

from typing import Any

import structlog
from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from src.app.api.deps import get_current_user_id, get_platform_repository, http_error
from src.app.platform.exceptions import AccessDeniedError, NotFoundError
from src.app.platform.schemas import AgentCreate, AgentRead, AgentUpdate

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/agents", tags=["agents"])


# ── Request Schemas ──────────────────────────────────────────────────────────


class CreateAgentRequest(BaseModel):
    """Request body for creating an agent."""

    name: str
    is_active: bool = False
    model: str = "Google Gemini 2.5 Flash"
    system_instructions: str | None = None
    pipeline_settings: dict[str, Any] | None = None
    channel_settings: dict[str, Any] | None = None
    kb_settings: dict[str, Any] | None = None


class UpdateAgentRequest(BaseModel):
    """Request body for updating an agent (all fields optional)."""

    name: str | None = None
    is_active: bool | None = None
    model: str | None = None
    system_instructions: str | None = None
    pipeline_settings: dict[str, Any] | None = None
    channel_settings: dict[str, Any] | None = None
    kb_settings: dict[str, Any] | None = None


# ── Endpoints ────────────────────────────────────────────────────────────────


@router.get("", response_model=list[AgentRead])
async def list_agents(
    request: Request,
    user_id: str = Depends(get_current_user_id),
) -> list[AgentRead]:
    """List the caller's agents, newest first."""
    repo = get_platform_repository(request)
    return await repo.agents.find_many(
        where={"user_id": user_id},
        order_by={"created_at": "desc"},
    )


@router.post("", response_model=AgentRead, status_code=201)
async def create_agent(
    body: CreateAgentRequest,
    request: Request,
    user_id: str = Depends(get_current_user_id),
) -> AgentRead:
    """Create an agent owned by the caller."""
    repo = get_platform_repository(request)
    agent = await repo.agents.create(AgentCreate(user_id=user_id, **body.model_dump()))
    logger.info("agents.created", agent_id=agent.id, user_id=user_id)
    return agent


@router.get("/{agent_id}", response_model=AgentRead)
async def get_agent(
    agent_id: str,
    request: Request,
    user_id: str = Depends(get_current_user_id),
) -> AgentRead:
    """Get one of the caller's agents."""
    repo = get_platform_repository(request)
    try:
        return await repo.get_owned_agent(agent_id, user_id)
    except (NotFoundError, AccessDeniedError) as exc:
        raise http_error(exc) from exc


@router.patch("/{agent_id}", response_model=AgentRead)
async def update_agent(
    agent_id: str,
    body: UpdateAgentRequest,
    request: Request,
    user_id: str = Depends(get_current_user_id),
) -> AgentRead:
    """Update the fields present in the body; others are left untouched."""
    repo = get_platform_repository(request)
    try:
        await repo.get_owned_agent(agent_id, user_id)
        return await repo.agents.update(
            {"id": agent_id},
            AgentUpdate(**body.model_dump(exclude_unset=True)),
        )
    except (NotFoundError, AccessDeniedError) as exc:
        raise http_error(exc) from exc


@router.delete("/{agent_id}")
async def delete_agent(
    agent_id: str,
    request: Request,
    user_id: str = Depends(get_current_user_id),
) -> dict[str, Any]:
    """Delete an agent together with its integrations, triggers and chains."""
    repo = get_platform_repository(request)
    try:
        await repo.get_owned_agent(agent_id, user_id)
        deleted_id = await repo.agents.delete({"id": agent_id})
    except (NotFoundError, AccessDeniedError) as exc:
        raise http_error(exc) from exc
    logger.info("agents.deleted", agent_id=deleted_id, user_id=user_id)
    return {"success": True, "id": deleted_id}
