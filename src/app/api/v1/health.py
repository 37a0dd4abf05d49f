"""Health check endpoints.

Provides liveness (/health) and readiness (/health/ready) checks. The
readiness probe verifies database connectivity and that the Kommo sync
services were initialized by the application lifespan.
"""

from __future__ import annotations

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from src.app.config import get_settings
from src.app.core.database import get_engine

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check():
    """Basic liveness check.

    No external dependencies are checked -- just that the server is running.
    """
    settings = get_settings()
    return {"status": "ok", "environment": settings.ENVIRONMENT.value}


async def _check_dependencies(request: Request) -> dict:
    """Check database connectivity and service wiring. Returns check results dict."""
    checks: dict = {"database": "ok", "kommo_sync": "ok"}

    try:
        engine = get_engine()
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except (SQLAlchemyError, OSError) as e:
        checks["database"] = "error"
        checks["database_error"] = str(e)

    if getattr(request.app.state, "kommo_sync_engine", None) is None:
        checks["kommo_sync"] = "not_initialized"

    return checks


@router.get("/health/ready")
async def readiness_check(request: Request):
    """Readiness check: verifies DB connectivity and Kommo sync wiring.

    Returns 200 if all pass, 503 if any dependency fails.
    """
    checks = await _check_dependencies(request)
    all_healthy = checks["database"] == "ok" and checks["kommo_sync"] == "ok"

    return JSONResponse(
        status_code=status.HTTP_200_OK if all_healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={
            "status": "ready" if all_healthy else "degraded",
            "checks": checks,
        },
    )
