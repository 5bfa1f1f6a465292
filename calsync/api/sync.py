"""Sync status and control API endpoints."""

import logging
from datetime import datetime, timedelta
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel

from calsync.auth.session import AdminSession, get_current_admin
from calsync.sync.bulk import BulkSyncResult, bulk_sync_appointments
from calsync.sync.connections import Connection, get_active_connection
from calsync.sync.criteria import (
    SyncSettings,
    get_sync_criteria_summary,
    get_sync_settings,
    update_sync_settings,
    validate_sync_settings,
)
from calsync.sync.importer import ImportOptions, ImportPreview, ImportResult, confirm_import, preview_import
from calsync.sync.outbox import AppointmentEventType, publish_appointment_event
from calsync.sync.pause import get_paused_connections
from calsync.sync.push import push_appointment_by_id, resync_appointment
from calsync.sync.quota import get_quota_history, get_quota_status
from calsync.sync.results import SyncResult
from calsync.sync.retry_queue import get_queue_stats, queue_if_retryable
from calsync.sync.sync_log import (
    SyncStatus,
    count_sync_logs,
    get_appointment_sync_history,
    get_recent_sync_logs,
    get_sync_stats,
)

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/sync", tags=["sync"])


class PushRequest(BaseModel):
    force: bool = False


class BulkSyncRequest(BaseModel):
    date_from: str
    date_to: str
    force: bool = False


class PublishRequest(BaseModel):
    event_type: AppointmentEventType


class ImportPreviewRequest(BaseModel):
    date_from: datetime
    date_to: datetime


class ImportConfirmRequest(BaseModel):
    event_ids: list[str]
    options: ImportOptions = ImportOptions()


class SyncLogResponse(BaseModel):
    """Paged sync log."""
    entries: list[dict]
    total: int
    page: int
    page_size: int


class SettingsResponse(BaseModel):
    settings: SyncSettings
    summary: list[str]


async def _active_connection(admin: AdminSession) -> Connection:
    connection = await get_active_connection(admin.admin_id)
    if connection is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="No active calendar connection"
        )
    return connection


async def _connection_id(admin: AdminSession) -> int:
    return (await _active_connection(admin)).id


@router.post("/appointments/{appointment_id}", response_model=SyncResult)
async def push_single_appointment(
    appointment_id: str,
    request: PushRequest = PushRequest(),
    admin: AdminSession = Depends(get_current_admin),
):
    """Push one appointment now. Failures are returned in the result, not raised.

    Transient failures are also put on the retry queue.
    """
    result = await push_appointment_by_id(admin.admin_id, appointment_id, force=request.force)
    await queue_if_retryable(admin.admin_id, result)
    return result


@router.post("/appointments/{appointment_id}/resync", response_model=SyncResult)
async def resync_single_appointment(
    appointment_id: str,
    admin: AdminSession = Depends(get_current_admin),
):
    """Delete the calendar event and push the appointment again."""
    result = await resync_appointment(admin.admin_id, appointment_id)
    await queue_if_retryable(admin.admin_id, result)
    return result


@router.get("/appointments/{appointment_id}/history")
async def appointment_history(
    appointment_id: str,
    admin: AdminSession = Depends(get_current_admin),
):
    return await get_appointment_sync_history(appointment_id)


@router.post("/appointments/{appointment_id}/events", status_code=status.HTTP_202_ACCEPTED)
async def publish_event(
    appointment_id: str,
    request: PublishRequest,
    admin: AdminSession = Depends(get_current_admin),
):
    """Record an appointment change for the outbox job."""
    event_id = await publish_appointment_event(admin.admin_id, appointment_id, request.event_type)
    return {"status": "queued", "event_id": event_id}


@router.post("/bulk", response_model=BulkSyncResult)
async def bulk_sync(
    request: BulkSyncRequest,
    admin: AdminSession = Depends(get_current_admin),
):
    if request.date_from > request.date_to:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="date_from must not be after date_to"
        )
    await _connection_id(admin)

    logger.info(f"Bulk sync requested by admin {admin.admin_id}: {request.date_from} to {request.date_to}")
    return await bulk_sync_appointments(
        admin.admin_id,
        request.date_from,
        request.date_to,
        force=request.force,
    )


@router.get("/logs", response_model=SyncLogResponse)
async def get_sync_logs(
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=200),
    status_filter: Optional[SyncStatus] = Query(None, alias="status"),
    admin: AdminSession = Depends(get_current_admin),
):
    connection_id = await _connection_id(admin)
    entries = await get_recent_sync_logs(
        connection_id=connection_id,
        limit=page_size,
        offset=(page - 1) * page_size,
        status=status_filter,
    )
    return SyncLogResponse(
        entries=entries,
        total=await count_sync_logs(connection_id),
        page=page,
        page_size=page_size,
    )


@router.get("/stats")
async def get_stats(
    days: int = Query(7, ge=1, le=90),
    admin: AdminSession = Depends(get_current_admin),
):
    connection_id = await _connection_id(admin)
    since = datetime.utcnow() - timedelta(days=days)
    return {
        "sync": await get_sync_stats(connection_id, since),
        "retry_queue": (await get_queue_stats()).model_dump(),
        "quota": (await get_quota_status()).model_dump(),
    }


@router.get("/settings", response_model=SettingsResponse)
async def read_settings(admin: AdminSession = Depends(get_current_admin)):
    settings = await get_sync_settings()
    return SettingsResponse(settings=settings, summary=get_sync_criteria_summary(settings))


@router.put("/settings", response_model=SettingsResponse)
async def write_settings(
    payload: dict,
    admin: AdminSession = Depends(get_current_admin),
):
    errors = validate_sync_settings(payload)
    if errors:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"message": "Invalid sync settings", "errors": errors},
        )
    settings = await update_sync_settings(SyncSettings.model_validate(payload))
    return SettingsResponse(settings=settings, summary=get_sync_criteria_summary(settings))


@router.get("/retry-queue")
async def retry_queue_stats(admin: AdminSession = Depends(get_current_admin)):
    return await get_queue_stats()


@router.get("/quota")
async def quota_status(
    days: int = Query(7, ge=1, le=30),
    admin: AdminSession = Depends(get_current_admin),
):
    return {
        "today": await get_quota_status(),
        "history": await get_quota_history(days),
    }


@router.get("/paused")
async def paused_connections(admin: AdminSession = Depends(get_current_admin)):
    return [
        entry for entry in await get_paused_connections()
        if entry["admin_id"] == admin.admin_id
    ]


@router.post("/import/preview", response_model=ImportPreview)
async def import_preview(
    request: ImportPreviewRequest,
    admin: AdminSession = Depends(get_current_admin),
):
    """List calendar events that could be imported as appointments."""
    if request.date_from >= request.date_to:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="date_from must be before date_to"
        )
    connection = await _active_connection(admin)
    return await preview_import(connection, request.date_from, request.date_to)


@router.post("/import/confirm", response_model=ImportResult)
async def import_confirm(
    request: ImportConfirmRequest,
    admin: AdminSession = Depends(get_current_admin),
):
    if not request.event_ids:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="No events selected"
        )
    connection = await _active_connection(admin)

    logger.info(f"Calendar import of {len(request.event_ids)} events requested by admin {admin.admin_id}")
    return await confirm_import(connection, request.event_ids, request.options)
