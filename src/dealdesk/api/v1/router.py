"""V1 API router -- aggregates all v1 endpoint routers."""

from __future__ import annotations

from fastapi import APIRouter

from src.dealdesk.api.v1 import health, notifications, rate_limit, realtime

router = APIRouter()

router.include_router(health.router)
router.include_router(notifications.router, prefix="/v1")
router.include_router(rate_limit.router, prefix="/v1")
router.include_router(realtime.router, prefix="/v1")
