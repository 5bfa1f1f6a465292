"""Remove calendar events for cancelled or deleted appointments."""

import asyncio
import logging
import time
from typing import Optional

from calsync.appointments import get_existing_appointment_ids
from calsync.sync.connections import Connection, get_active_connection
from calsync.sync.errors import ConnectionInvalidError, ErrorType, SyncErrorCode, classify_error
from calsync.sync.google_calendar import get_client_for_connection
from calsync.sync.mappings import (
    delete_mapping_by_appointment,
    get_appointment_lock,
    get_mapping_by_appointment,
    is_appointment_synced,
    list_mappings_for_connection,
)
from calsync.sync.pause import track_sync_failure, track_sync_success
from calsync.sync.results import SyncError, SyncResult, elapsed_ms
from calsync.sync.sync_log import SyncOperation, SyncType, log_sync_result

logger = logging.getLogger(__name__)

BATCH_DELETE_DELAY = 0.1


async def handle_appointment_deletion(
    admin_id: str,
    appointment_id: str,
    connection: Optional[Connection] = None,
) -> SyncResult:
    """Delete the appointment's calendar event and its mapping.

    An appointment without a mapping is a successful no-op. A remote event that
    is already gone counts as deleted.
    """
    started = time.monotonic()

    if await get_mapping_by_appointment(appointment_id) is None:
        return SyncResult(
            success=True,
            operation=SyncOperation.DELETE,
            appointment_id=appointment_id,
            duration_ms=elapsed_ms(started),
            details={"message": "No event mapping found, nothing to delete"},
        )

    if connection is None:
        connection = await get_active_connection(admin_id)
    if connection is None:
        return SyncResult(
            success=False,
            operation=SyncOperation.DELETE,
            appointment_id=appointment_id,
            error=SyncError(
                code=SyncErrorCode.NO_CONNECTION.value,
                message="No active calendar connection found",
            ),
            duration_ms=elapsed_ms(started),
        )

    if connection.pause.is_paused:
        return SyncResult(
            success=False,
            operation=SyncOperation.DELETE,
            appointment_id=appointment_id,
            error=SyncError(
                code=SyncErrorCode.AUTO_SYNC_PAUSED.value,
                message=f"Auto-sync is paused: {connection.pause.reason}",
            ),
            duration_ms=elapsed_ms(started),
        )

    lock = await get_appointment_lock(appointment_id)
    async with lock:
        mapping = await get_mapping_by_appointment(appointment_id)
        if mapping is None:
            return SyncResult(
                success=True,
                operation=SyncOperation.DELETE,
                appointment_id=appointment_id,
                duration_ms=elapsed_ms(started),
                details={"message": "Mapping removed concurrently, nothing to delete"},
            )

        if mapping.connection_id != connection.id:
            # Event lives on a calendar this tenant no longer has access to
            await delete_mapping_by_appointment(appointment_id)
            logger.info(
                f"Dropped stale mapping for appointment {appointment_id} "
                f"(connection {mapping.connection_id})"
            )
            return SyncResult(
                success=True,
                operation=SyncOperation.DELETE,
                appointment_id=appointment_id,
                google_event_id=mapping.google_event_id,
                duration_ms=elapsed_ms(started),
                details={"message": "Stale mapping from a previous connection removed"},
            )

        try:
            client = await get_client_for_connection(connection)
            await client.delete_event(mapping.google_event_id)
        except Exception as e:
            classified = classify_error(e, operation="delete")
            if classified.type != ErrorType.NOT_FOUND:
                code = (
                    SyncErrorCode.CONNECTION_INVALID
                    if isinstance(e, ConnectionInvalidError)
                    else SyncErrorCode.DELETE_FAILED
                )
                result = SyncResult(
                    success=False,
                    operation=SyncOperation.DELETE,
                    appointment_id=appointment_id,
                    google_event_id=mapping.google_event_id,
                    error=SyncError.from_classified(code, classified),
                    duration_ms=elapsed_ms(started),
                )
                logger.error(f"Failed to delete event for appointment {appointment_id}: {classified.message}")
                await log_sync_result(connection.id, SyncType.PUSH, result)
                if classified.type != ErrorType.AUTH:
                    await track_sync_failure(connection.id, classified.message)
                return result

        await delete_mapping_by_appointment(appointment_id)

    result = SyncResult(
        success=True,
        operation=SyncOperation.DELETE,
        appointment_id=appointment_id,
        google_event_id=mapping.google_event_id,
        duration_ms=elapsed_ms(started),
    )
    await log_sync_result(connection.id, SyncType.PUSH, result)
    await track_sync_success(connection.id)
    return result


async def batch_delete_appointments(admin_id: str, appointment_ids: list[str]) -> list[SyncResult]:
    results = []
    for index, appointment_id in enumerate(appointment_ids):
        results.append(await handle_appointment_deletion(admin_id, appointment_id))
        if index < len(appointment_ids) - 1:
            await asyncio.sleep(BATCH_DELETE_DELAY)
    return results


async def has_calendar_event(appointment_id: str) -> bool:
    return await is_appointment_synced(appointment_id)


async def cleanup_orphaned_mappings(admin_id: str) -> int:
    """Remove events and mappings whose appointment no longer exists.

    Returns the number of mappings removed.
    """
    connection = await get_active_connection(admin_id)
    if connection is None:
        return 0

    mappings = await list_mappings_for_connection(connection.id)
    existing = await get_existing_appointment_ids([m.appointment_id for m in mappings])
    orphaned = [m for m in mappings if m.appointment_id not in existing]
    if not orphaned:
        return 0

    logger.info(f"Found {len(orphaned)} orphaned mappings for connection {connection.id}")

    client = await get_client_for_connection(connection)
    removed = 0
    for mapping in orphaned:
        try:
            await client.delete_event(mapping.google_event_id)
        except Exception as e:
            logger.warning(f"Failed to delete orphaned event {mapping.google_event_id}: {e}")
            continue

        await delete_mapping_by_appointment(mapping.appointment_id)
        removed += 1
        await asyncio.sleep(BATCH_DELETE_DELAY)

    logger.info(f"Cleaned up {removed}/{len(orphaned)} orphaned mappings")
    return removed
