"""Push orchestrator: propagate a local appointment to Google Calendar.

Every remote mutation for an appointment runs under its in-process lock and
finishes with a compare-and-swap on the event mapping, so a webhook and a
retry racing on the same appointment never create two remote events.
"""

import asyncio
import logging
import time
from typing import Optional

from calsync.appointments import Appointment, get_appointment
from calsync.sync.connections import Connection, get_active_connection
from calsync.sync.criteria import get_sync_settings, should_sync_appointment
from calsync.sync.delete_handler import handle_appointment_deletion
from calsync.sync.errors import (
    ConnectionInvalidError,
    ErrorType,
    MappingConflictError,
    RemoteCalendarError,
    SyncErrorCode,
    classify_error,
)
from calsync.sync.google_calendar import GoogleCalendarClient, get_client_for_connection
from calsync.sync.mapper import map_appointment_to_event, should_delete_event, validate_appointment_for_sync
from calsync.sync.mappings import (
    EventMapping,
    SyncDirection,
    create_event_mapping,
    delete_mapping_by_appointment,
    get_appointment_lock,
    get_mapping_by_appointment,
    update_last_synced,
)
from calsync.sync.pause import track_sync_failure, track_sync_success
from calsync.sync.results import SyncError, SyncResult, elapsed_ms
from calsync.sync.sync_log import SyncOperation, SyncType, log_sync_result

logger = logging.getLogger(__name__)

PUSH_BATCH_DELAY = 0.1


def _appointment_details(appointment: Appointment) -> dict:
    return {
        "customer_name": f"{appointment.customer.first_name} {appointment.customer.last_name}",
        "pet_name": appointment.pet.name,
        "service_name": appointment.service.name,
        "scheduled_at": appointment.scheduled_at,
    }


def _rejected(
    appointment_id: str,
    code: SyncErrorCode,
    message: str,
    started: float,
    error_type: ErrorType = ErrorType.PERMANENT,
    details: Optional[dict] = None,
) -> SyncResult:
    return SyncResult(
        success=False,
        appointment_id=appointment_id,
        error=SyncError(code=code.value, message=message, type=error_type),
        duration_ms=elapsed_ms(started),
        details=details or {},
    )


async def _create_event(
    client: GoogleCalendarClient,
    connection: Connection,
    appointment: Appointment,
    event: dict,
) -> EventMapping:
    created = await client.create_event(event)
    try:
        return await create_event_mapping(appointment.id, connection.id, created["id"])
    except MappingConflictError:
        # Another writer mapped the appointment first; drop our duplicate
        logger.warning(
            f"Appointment {appointment.id} was mapped concurrently, "
            f"removing duplicate event {created['id']}"
        )
        try:
            await client.delete_event(created["id"])
        except RemoteCalendarError as e:
            logger.error(f"Failed to remove duplicate event {created['id']}: {e.code}")
        raise


async def _update_event(
    client: GoogleCalendarClient,
    mapping: EventMapping,
    event: dict,
) -> EventMapping:
    try:
        await client.update_event(mapping.google_event_id, event)
    except RemoteCalendarError as e:
        if not e.is_gone:
            raise
        # Removed on the calendar side; a deleted event id cannot be reused
        created = await client.create_event(event)
        logger.info(
            f"Event {mapping.google_event_id} was gone, recreated as {created['id']} "
            f"for appointment {mapping.appointment_id}"
        )
        return await update_last_synced(mapping, SyncDirection.PUSH, google_event_id=created["id"])

    return await update_last_synced(mapping, SyncDirection.PUSH)


async def push_appointment(admin_id: str, appointment: Appointment, force: bool = False) -> SyncResult:
    """Create, update or delete the calendar event for an appointment."""
    started = time.monotonic()

    validation_errors = validate_appointment_for_sync(appointment)
    if validation_errors:
        return _rejected(
            appointment.id,
            SyncErrorCode.VALIDATION_ERROR,
            f"Invalid appointment data: {', '.join(validation_errors)}",
            started,
            error_type=ErrorType.VALIDATION,
            details={"validation_errors": validation_errors},
        )

    connection = await get_active_connection(admin_id)
    if connection is None:
        return _rejected(
            appointment.id,
            SyncErrorCode.NO_CONNECTION,
            "No active calendar connection found",
            started,
        )

    if connection.pause.is_paused:
        return _rejected(
            appointment.id,
            SyncErrorCode.AUTO_SYNC_PAUSED,
            f"Auto-sync is paused: {connection.pause.reason}",
            started,
        )

    settings = await get_sync_settings()
    decision = should_sync_appointment(appointment, settings, force)
    if not decision.should_sync:
        return SyncResult(
            success=True,
            skipped=True,
            appointment_id=appointment.id,
            duration_ms=elapsed_ms(started),
            details={"reason": decision.reason},
        )

    if should_delete_event(appointment):
        return await handle_appointment_deletion(admin_id, appointment.id, connection=connection)

    event = map_appointment_to_event(appointment)
    operation = SyncOperation.CREATE
    google_event_id = None

    lock = await get_appointment_lock(appointment.id)
    async with lock:
        try:
            mapping = await get_mapping_by_appointment(appointment.id)
            if mapping is not None and mapping.connection_id != connection.id:
                logger.info(f"Replacing stale mapping for appointment {appointment.id}")
                await delete_mapping_by_appointment(appointment.id)
                mapping = None

            client = await get_client_for_connection(connection)

            if mapping is not None:
                operation = SyncOperation.UPDATE
                google_event_id = mapping.google_event_id
                mapping = await _update_event(client, mapping, event)
            else:
                try:
                    mapping = await _create_event(client, connection, appointment, event)
                except MappingConflictError:
                    operation = SyncOperation.UPDATE
                    mapping = await get_mapping_by_appointment(appointment.id)
                    if mapping is None:
                        raise
                    google_event_id = mapping.google_event_id
                    mapping = await _update_event(client, mapping, event)
            google_event_id = mapping.google_event_id
        except Exception as e:
            result = _failed_push(e, appointment.id, operation, google_event_id, started)
            logger.error(
                f"Push {operation.value} failed for appointment {appointment.id}: "
                f"{result.error.code} {result.error.message}"
            )
            await log_sync_result(connection.id, SyncType.PUSH, result)
            if result.error.type not in (ErrorType.AUTH, ErrorType.VALIDATION):
                await track_sync_failure(connection.id, result.error.message)
            return result

    result = SyncResult(
        success=True,
        operation=operation,
        appointment_id=appointment.id,
        google_event_id=google_event_id,
        duration_ms=elapsed_ms(started),
        details=_appointment_details(appointment),
    )
    await log_sync_result(connection.id, SyncType.PUSH, result)
    await track_sync_success(connection.id)
    return result


def _failed_push(error: Exception, appointment_id: str, operation: SyncOperation, google_event_id, started) -> SyncResult:
    if isinstance(error, MappingConflictError):
        sync_error = SyncError(
            code=SyncErrorCode.MAPPING_CONFLICT.value,
            message=str(error),
            type=ErrorType.TRANSIENT,
        )
    else:
        classified = classify_error(error, operation=operation.value)
        if isinstance(error, ConnectionInvalidError):
            code = SyncErrorCode.CONNECTION_INVALID
        elif operation == SyncOperation.UPDATE:
            code = SyncErrorCode.UPDATE_FAILED
        else:
            code = SyncErrorCode.CREATE_FAILED
        sync_error = SyncError.from_classified(code, classified)

    return SyncResult(
        success=False,
        operation=operation,
        appointment_id=appointment_id,
        google_event_id=google_event_id,
        error=sync_error,
        duration_ms=elapsed_ms(started),
    )


async def push_appointment_by_id(admin_id: str, appointment_id: str, force: bool = False) -> SyncResult:
    appointment = await get_appointment(appointment_id)
    if appointment is None:
        return SyncResult(
            success=False,
            appointment_id=appointment_id,
            error=SyncError(
                code=SyncErrorCode.APPOINTMENT_NOT_FOUND.value,
                message=f"Appointment {appointment_id} not found",
            ),
        )
    return await push_appointment(admin_id, appointment, force=force)


async def resync_appointment(admin_id: str, appointment_id: str) -> SyncResult:
    """Drop the appointment's event and mapping, then push it again from scratch."""
    appointment = await get_appointment(appointment_id)
    if appointment is None:
        return SyncResult(
            success=False,
            appointment_id=appointment_id,
            error=SyncError(
                code=SyncErrorCode.APPOINTMENT_NOT_FOUND.value,
                message=f"Appointment {appointment_id} not found",
            ),
        )

    deletion = await handle_appointment_deletion(admin_id, appointment_id)
    if not deletion.success:
        return deletion

    return await push_appointment(admin_id, appointment, force=True)
