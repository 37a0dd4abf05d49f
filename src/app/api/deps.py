"""FastAPI dependency injection for authentication and shared services.

``get_current_user_id`` authenticates the caller from a Bearer JWT. The
``get_*`` service helpers read singletons that the application lifespan
placed on ``app.state`` and answer 503 when one was never initialized.
"""

from __future__ import annotations

from typing import Any

from fastapi import HTTPException, Request, status

from src.app.core.security import verify_token
from src.app.platform.exceptions import (
    AccessDeniedError,
    NotFoundError,
    PlatformError,
    PreconditionFailedError,
    SyncInProgressError,
)


async def get_current_user_id(request: Request) -> str:
    """Extract and validate the current user id from a Bearer JWT.

    Raises:
        HTTPException(401): If no valid authentication is provided.
    """
    auth_header = request.headers.get("Authorization")
    if auth_header and auth_header.startswith("Bearer "):
        payload = verify_token(auth_header[7:], token_type="access")
        return payload["sub"]

    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Not authenticated",
        headers={"WWW-Authenticate": "Bearer"},
    )


def _from_state(request: Request, name: str, label: str) -> Any:
    service = getattr(request.app.state, name, None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"{label} not initialized",
        )
    return service


def get_platform_repository(request: Request) -> Any:
    """Retrieve PlatformRepository from app.state, 503 if not available."""
    return _from_state(request, "platform_repository", "Platform repository")


def get_sync_engine(request: Request) -> Any:
    """Retrieve KommoSyncEngine from app.state, 503 if not available."""
    return _from_state(request, "kommo_sync_engine", "Kommo sync")


def get_token_store(request: Request) -> Any:
    """Retrieve KommoTokenStore from app.state, 503 if not available."""
    return _from_state(request, "kommo_token_store", "Kommo token store")


def get_oauth_client(request: Request) -> Any:
    """Retrieve KommoOAuthClient from app.state, 503 if not available."""
    return _from_state(request, "kommo_oauth", "Kommo OAuth")


# ── Error Translation ────────────────────────────────────────────────────────

_STATUS_BY_ERROR: tuple[tuple[type[PlatformError], int], ...] = (
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (AccessDeniedError, status.HTTP_403_FORBIDDEN),
    (PreconditionFailedError, status.HTTP_400_BAD_REQUEST),
    (SyncInProgressError, status.HTTP_409_CONFLICT),
)


def http_error(exc: PlatformError) -> HTTPException:
    """Translate a domain error into the HTTPException routers raise."""
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return HTTPException(status_code=status_code, detail=str(exc))
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail=str(exc),
    )
