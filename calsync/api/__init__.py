"""API endpoints module."""

from fastapi import APIRouter

from calsync.api.connection import router as connection_router
from calsync.api.cron import router as cron_router
from calsync.api.sync import router as sync_router
from calsync.api.webhooks import router as webhooks_router

api_router = APIRouter(prefix="/api")

api_router.include_router(connection_router)
api_router.include_router(sync_router)
api_router.include_router(webhooks_router)
api_router.include_router(cron_router)

__all__ = ["api_router"]
