"""Kommo OAuth and webhook endpoints.

Provides:
- GET  /api/kommo/auth -- authorization URL for an integration (auth required)
- GET  /api/kommo/callback -- OAuth redirect target; stores the token pair
- POST /api/kommo/connect-with-token -- connect with a long-lived token
- POST /api/kommo/webhook -- acknowledge Kommo webhooks (no auth)

The OAuth ``state`` parameter carries the integration id through the
Kommo consent screen.
"""

from __future__ import annotations

import html
import json
from datetime import datetime, timezone
from typing import Any

import httpx
import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import HTMLResponse
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel
from sqlalchemy.exc import SQLAlchemyError

from src.app.api.deps import (
    get_current_user_id,
    get_oauth_client,
    get_platform_repository,
    get_token_store,
    http_error,
)
from src.app.config import get_settings
from src.app.platform.crm.webhooks import parse_webhook_payload
from src.app.platform.exceptions import (
    AccessDeniedError,
    NotFoundError,
    PlatformError,
    PreconditionFailedError,
)
from src.app.platform.schemas import IntegrationRead, IntegrationUpdate

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/kommo", tags=["kommo"])


# ── Request Schemas ──────────────────────────────────────────────────────────


class ConnectWithTokenRequest(BaseModel):
    """Request body for connecting with a long-lived token."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    integration_id: str
    access_token: str


# ── Helpers ──────────────────────────────────────────────────────────────────


async def _get_owned_integration(repo: Any, integration_id: str, user_id: str) -> IntegrationRead:
    integration = await repo.integrations.find_first({"id": integration_id})
    if integration is None:
        raise NotFoundError("integration", integration_id)
    await repo.get_owned_agent(integration.agent_id, user_id)
    return integration


async def _mark_connected(repo: Any, integration_id: str) -> IntegrationRead:
    now = datetime.now(timezone.utc)
    return await repo.integrations.update(
        {"id": integration_id},
        IntegrationUpdate(is_connected=True, connected_at=now, last_synced=now),
    )


def _result_page(title: str, message: str, success: bool) -> str:
    # Posts the outcome to the opener when the consent screen ran in a popup
    event = json.dumps({"type": "kommo_oauth_success" if success else "kommo_oauth_error"})
    return (
        "<!DOCTYPE html><html><head>"
        f"<title>{title}</title></head><body>"
        f"<h1>{html.escape(title)}</h1><p>{html.escape(message)}</p>"
        "<script>if (window.opener) {"
        f"window.opener.postMessage({event}, '*'); setTimeout(() => window.close(), 2000);"
        "}</script></body></html>"
    )


# ── OAuth ────────────────────────────────────────────────────────────────────


@router.get("/auth")
async def initiate_oauth(
    request: Request,
    integration_id: str = Query(..., alias="integrationId"),
    user_id: str = Depends(get_current_user_id),
) -> dict[str, Any]:
    """Return the Kommo authorization URL for the caller's integration."""
    settings = get_settings()
    if not settings.KOMMO_DOMAIN:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="KOMMO_DOMAIN is not configured",
        )

    repo = get_platform_repository(request)
    oauth = get_oauth_client(request)
    try:
        await _get_owned_integration(repo, integration_id, user_id)
    except (NotFoundError, AccessDeniedError) as exc:
        raise http_error(exc) from exc

    return {
        "success": True,
        "authUrl": oauth.authorization_url(settings.KOMMO_DOMAIN, state=integration_id),
        "message": "Redirect user to this URL to authorize",
    }


@router.get("/callback", response_class=HTMLResponse)
async def oauth_callback(
    request: Request,
    code: str | None = None,
    state: str | None = None,
    referer: str | None = None,
) -> HTMLResponse:
    """Exchange the authorization code and mark the integration connected."""
    if not code or not state or not referer:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="code, state, and referer are required",
        )

    repo = get_platform_repository(request)
    oauth = get_oauth_client(request)
    token_store = get_token_store(request)
    integration_id = state

    if await repo.integrations.find_first({"id": integration_id}) is None:
        logger.warning("kommo.oauth_unknown_integration", integration_id=integration_id)
        return HTMLResponse(
            _result_page("Connection Failed", "Unknown integration", success=False),
            status_code=status.HTTP_404_NOT_FOUND,
        )

    try:
        token_data = await oauth.exchange_code(code, referer)
        await token_store.store_tokens(
            integration_id,
            token_data["access_token"],
            token_data["refresh_token"],
            token_data["expires_in"],
            token_data["base_domain"],
        )
        await _mark_connected(repo, integration_id)
    except (PlatformError, SQLAlchemyError, httpx.HTTPError) as exc:
        logger.error("kommo.oauth_callback_failed", integration_id=integration_id, error=str(exc))
        return HTMLResponse(
            _result_page("Connection Failed", str(exc), success=False),
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        )

    logger.info("kommo.oauth_connected", integration_id=integration_id)
    return HTMLResponse(
        _result_page(
            "Kommo Successfully Connected!",
            "Your Kommo CRM has been connected to your AI agent. "
            "You can now close this window and return to the app.",
            success=True,
        )
    )


@router.post("/connect-with-token")
async def connect_with_token(
    body: ConnectWithTokenRequest,
    request: Request,
    user_id: str = Depends(get_current_user_id),
) -> dict[str, Any]:
    """Connect Kommo with a long-lived token from the integration settings."""
    repo = get_platform_repository(request)
    token_store = get_token_store(request)
    try:
        await _get_owned_integration(repo, body.integration_id, user_id)
        await token_store.store_long_lived_token(
            body.integration_id,
            body.access_token,
            fallback_domain=get_settings().KOMMO_DOMAIN,
        )
    except (NotFoundError, AccessDeniedError, PreconditionFailedError) as exc:
        raise http_error(exc) from exc

    integration = await _mark_connected(repo, body.integration_id)
    return {
        "success": True,
        "message": "Kommo connected successfully with long-lived token",
        "integration": {
            "id": integration.id,
            "isConnected": integration.is_connected,
            "connectedAt": integration.connected_at.isoformat()
            if integration.connected_at
            else None,
        },
    }


# ── Webhooks ─────────────────────────────────────────────────────────────────


@router.post("/webhook")
async def handle_webhook(request: Request) -> dict[str, Any]:
    """Acknowledge a Kommo webhook and log the events it carries."""
    body = await request.body()
    try:
        events = parse_webhook_payload(body, request.headers.get("content-type"))
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid webhook payload: {exc}",
        ) from exc

    logger.info(
        "kommo.webhook_received",
        events={event: len(items) for event, items in events.items()},
    )
    for event, items in events.items():
        logger.debug("kommo.webhook_event", webhook_event=event, ids=[i.get("id") for i in items])

    return {"success": True, "message": "Webhook received"}
