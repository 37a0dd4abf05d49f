"""REST API endpoints for an agent's integrations and the Kommo sync.

Provides:
- POST /api/agents/{agent_id}/integrations/kommo/sync -- full Kommo sync
- GET  /api/agents/{agent_id}/integrations/kommo/stats -- dashboard counters
- GET  /api/agents/{agent_id}/integrations -- list the agent's integrations
- POST /api/agents/{agent_id}/integrations -- upsert one integration by type

All endpoints require authentication and ownership of the agent. Domain
errors map to 404/403/400/409; a sync that fails upstream or while saving
answers ``500 {success: false, message}``.
"""

from __future__ import annotations

from typing import Any

import httpx
import structlog
from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError

from src.app.api.deps import (
    get_current_user_id,
    get_platform_repository,
    get_sync_engine,
    http_error,
)
from src.app.platform.exceptions import (
    AccessDeniedError,
    NotFoundError,
    PlatformError,
    PreconditionFailedError,
    SyncInProgressError,
)

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/agents", tags=["integrations"])


# ── Request / Response Schemas ───────────────────────────────────────────────


class IntegrationUpsertRequest(BaseModel):
    """Request body for creating or updating an integration."""

    integration_type: str
    is_active: bool | None = None
    is_connected: bool | None = None
    settings: dict[str, Any] | None = None


class IntegrationResponse(BaseModel):
    """Response for integration data, serializes datetimes to ISO strings."""

    id: str
    agent_id: str
    integration_type: str
    is_active: bool
    is_connected: bool
    connected_at: str | None = None
    last_synced: str | None = None
    settings: dict[str, Any] | None = None
    sync_status: str
    created_at: str | None = None
    updated_at: str | None = None


def _integration_to_response(integration: Any) -> IntegrationResponse:
    """Convert IntegrationRead to IntegrationResponse."""
    return IntegrationResponse(
        id=integration.id,
        agent_id=integration.agent_id,
        integration_type=integration.integration_type,
        is_active=integration.is_active,
        is_connected=integration.is_connected,
        connected_at=integration.connected_at.isoformat() if integration.connected_at else None,
        last_synced=integration.last_synced.isoformat() if integration.last_synced else None,
        settings=integration.settings,
        sync_status=integration.sync_status,
        created_at=integration.created_at.isoformat() if integration.created_at else None,
        updated_at=integration.updated_at.isoformat() if integration.updated_at else None,
    )


# ── Kommo Sync ───────────────────────────────────────────────────────────────


@router.post("/{agent_id}/integrations/kommo/sync")
async def sync_kommo(
    agent_id: str,
    request: Request,
    user_id: str = Depends(get_current_user_id),
) -> Any:
    """Pull pipelines, fields, users, actions, channels and salesbots from Kommo.

    Returns ``{success, message, lastSynced, stats}`` on success.
    """
    engine = get_sync_engine(request)
    try:
        result = await engine.sync(agent_id, user_id)
    except (NotFoundError, AccessDeniedError, PreconditionFailedError, SyncInProgressError) as exc:
        raise http_error(exc) from exc
    except (PlatformError, SQLAlchemyError, httpx.HTTPError, ValueError) as exc:
        logger.error("api.kommo_sync_failed", agent_id=agent_id, error=str(exc))
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"success": False, "message": f"Kommo sync failed: {exc}"},
        )
    return result.model_dump(mode="json", by_alias=True)


@router.get("/{agent_id}/integrations/kommo/stats")
async def get_kommo_stats(
    agent_id: str,
    request: Request,
    user_id: str = Depends(get_current_user_id),
) -> Any:
    """Counters for the Kommo integration card on the agent dashboard."""
    engine = get_sync_engine(request)
    try:
        stats = await engine.get_stats(agent_id, user_id)
    except (NotFoundError, AccessDeniedError) as exc:
        raise http_error(exc) from exc
    return stats.model_dump(mode="json", by_alias=True)


# ── Integrations ─────────────────────────────────────────────────────────────


@router.get("/{agent_id}/integrations", response_model=list[IntegrationResponse])
async def list_integrations(
    agent_id: str,
    request: Request,
    user_id: str = Depends(get_current_user_id),
) -> list[IntegrationResponse]:
    """List the agent's integrations, oldest first."""
    repo = get_platform_repository(request)
    try:
        await repo.get_owned_agent(agent_id, user_id)
    except (NotFoundError, AccessDeniedError) as exc:
        raise http_error(exc) from exc

    integrations = await repo.integrations.find_many(
        where={"agent_id": agent_id},
        order_by=[("created_at", "asc")],
    )
    return [_integration_to_response(i) for i in integrations]


@router.post("/{agent_id}/integrations", response_model=IntegrationResponse)
async def upsert_integration(
    agent_id: str,
    body: IntegrationUpsertRequest,
    request: Request,
    user_id: str = Depends(get_current_user_id),
) -> IntegrationResponse:
    """Create or update the agent's integration of ``integration_type``."""
    repo = get_platform_repository(request)
    try:
        await repo.get_owned_agent(agent_id, user_id)
    except (NotFoundError, AccessDeniedError) as exc:
        raise http_error(exc) from exc

    integration = await repo.upsert_integration(
        agent_id,
        body.integration_type,
        is_active=body.is_active,
        is_connected=body.is_connected,
        settings=body.settings,
    )
    logger.info(
        "integrations.upserted",
        agent_id=agent_id,
        integration_type=body.integration_type,
        is_connected=integration.is_connected,
    )
    return _integration_to_response(integration)
