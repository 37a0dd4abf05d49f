"""V1 API router -- aggregates all endpoint routers."""

from __future__ import annotations

from fastapi import APIRouter

from src.app.api.v1 import agents, health, integrations, kommo, notifications

router = APIRouter()

router.include_router(health.router)
router.include_router(agents.router)
router.include_router(integrations.router)
router.include_router(kommo.router)
router.include_router(notifications.router)
