"""API v1 routes."""

from fastapi import APIRouter

from schemaguard.api.v1 import audit, health

router = APIRouter()
router.include_router(health.router, prefix="/health", tags=["health"])
router.include_router(audit.router, prefix="/audit", tags=["audit"])
