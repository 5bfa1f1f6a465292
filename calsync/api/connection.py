"""Calendar connection management endpoints."""

import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel

from calsync.auth.session import AdminSession, get_current_admin
from calsync.sync.connections import (
    Connection,
    ConnectionNotFoundError,
    deactivate_connection,
    delete_connection,
    get_active_connection,
)
from calsync.sync.pause import pause_auto_sync, resume_auto_sync
from calsync.sync.webhook_registration import (
    ensure_webhook,
    get_webhook_renewal_status,
    has_active_webhook,
    stop_webhook,
)

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/connection", tags=["connection"])


class ConnectionStatusResponse(BaseModel):
    """Connection status for the calendar settings page."""
    connected: bool
    connection_id: Optional[int] = None
    calendar_email: Optional[str] = None
    calendar_id: Optional[str] = None
    last_sync_at: Optional[datetime] = None
    auto_sync_paused: bool = False
    pause_reason: Optional[str] = None
    consecutive_failures: int = 0
    webhook_active: bool = False
    webhook_expiration: Optional[datetime] = None


class PauseRequest(BaseModel):
    reason: Optional[str] = None


def _status_response(connection: Optional[Connection]) -> ConnectionStatusResponse:
    if connection is None:
        return ConnectionStatusResponse(connected=False)
    return ConnectionStatusResponse(
        connected=True,
        connection_id=connection.id,
        calendar_email=connection.calendar_email,
        calendar_id=connection.calendar_id,
        last_sync_at=connection.last_sync_at,
        auto_sync_paused=connection.pause.is_paused,
        pause_reason=connection.pause.reason,
        consecutive_failures=connection.consecutive_failures,
        webhook_active=has_active_webhook(connection),
        webhook_expiration=connection.webhook.expiration,
    )


async def _require_connection(admin: AdminSession) -> Connection:
    connection = await get_active_connection(admin.admin_id)
    if connection is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="No active calendar connection"
        )
    return connection


@router.get("", response_model=ConnectionStatusResponse)
async def get_connection_status(admin: AdminSession = Depends(get_current_admin)):
    return _status_response(await get_active_connection(admin.admin_id))


@router.delete("")
async def disconnect_calendar(admin: AdminSession = Depends(get_current_admin)):
    """Stop the webhook, revoke tokens and delete the connection with its mappings."""
    connection = await _require_connection(admin)

    if connection.webhook.channel_id:
        try:
            await stop_webhook(connection)
        except Exception as e:
            logger.warning(f"Failed to stop webhook for connection {connection.id}: {e}")

    try:
        await delete_connection(connection.id)
    except ConnectionNotFoundError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Connection not found"
        )

    logger.info(f"Admin {admin.admin_id} disconnected calendar connection {connection.id}")
    return {"status": "ok", "message": "Calendar disconnected"}


@router.post("/deactivate")
async def deactivate_calendar(admin: AdminSession = Depends(get_current_admin)):
    """Disable sync but keep history and mappings."""
    connection = await _require_connection(admin)
    await deactivate_connection(connection.id)
    return {"status": "ok", "message": "Calendar sync deactivated"}


@router.post("/pause")
async def pause_sync(
    request: PauseRequest,
    admin: AdminSession = Depends(get_current_admin),
):
    connection = await _require_connection(admin)
    paused = await pause_auto_sync(connection.id, request.reason or "Paused by admin")
    if not paused:
        return {"status": "ok", "message": "Auto-sync already paused"}
    return {"status": "ok", "message": "Auto-sync paused"}


@router.post("/resume")
async def resume_sync(admin: AdminSession = Depends(get_current_admin)):
    connection = await _require_connection(admin)
    await resume_auto_sync(connection.id)
    return {"status": "ok", "message": "Auto-sync resumed"}


@router.post("/webhook")
async def ensure_connection_webhook(admin: AdminSession = Depends(get_current_admin)):
    """Register a webhook channel if none is active."""
    connection = await _require_connection(admin)
    try:
        webhook = await ensure_webhook(connection.id)
    except Exception as e:
        logger.error(f"Failed to ensure webhook for connection {connection.id}: {e}")
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Failed to register webhook with Google Calendar"
        )
    return {
        "status": "ok",
        "channel_id": webhook.channel_id,
        "expiration": webhook.expiration.isoformat() if webhook.expiration else None,
    }


@router.get("/webhook/status")
async def webhook_status(admin: AdminSession = Depends(get_current_admin)):
    statuses = await get_webhook_renewal_status()
    return [entry for entry in statuses if entry["admin_id"] == admin.admin_id]
