"""API v1 routers, mounted under /api/v1 by ``platform_operator.main``."""
from __future__ import annotations

from fastapi import APIRouter

from platform_operator.routers import events, resources

router = APIRouter(tags=["v1"])
router.include_router(resources.router)
router.include_router(events.router)
