"""Reconcile remote calendar changes after a push notification.

Google only tells us that something changed, so each notification re-reads
the events updated inside the channel's lifetime and compares each mapped
event with its local appointment. Local data is authoritative: remote-only
edits are discarded and recorded, never imported.
"""

import logging
import time
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

from pydantic import BaseModel

from calsync.appointments import get_appointment
from calsync.sync.connections import Connection, ConnectionNotFoundError, get_connection_by_id, update_last_sync
from calsync.sync.errors import MappingConflictError, SyncErrorCode
from calsync.sync.google_calendar import GoogleCalendarClient, get_client_for_connection
from calsync.sync.mapper import ensure_valid_for_sync, map_appointment_to_event, should_delete_event
from calsync.sync.mappings import (
    EventMapping,
    SyncDirection,
    delete_mapping_by_event,
    get_appointment_lock,
    get_mapping_by_event,
    update_last_synced,
)
from calsync.sync.pause import track_sync_failure, track_sync_success
from calsync.sync.results import elapsed_ms
from calsync.sync.sync_log import SyncOperation, SyncStatus, SyncType, log_sync
from calsync.utils.timestamps import parse_utc

logger = logging.getLogger(__name__)

# Matches the channel lifetime, so nothing changed while a channel was live is missed
LOOKBACK_WINDOW = timedelta(days=7)


class EventOutcome(str, Enum):
    SKIPPED = "skipped"
    DELETED = "deleted"
    RECREATED = "recreated"
    CONFLICT_RESOLVED = "conflict_resolved"
    FAILED = "failed"


class EventChangeResult(BaseModel):
    success: bool
    outcome: EventOutcome
    event_id: str
    appointment_id: Optional[str] = None
    new_event_id: Optional[str] = None
    reason: Optional[str] = None
    error: Optional[str] = None


class WebhookProcessingResult(BaseModel):
    connection_id: int
    resource_state: Optional[str] = None
    results: list[EventChangeResult] = []
    successful: int = 0
    failed: int = 0
    duration_ms: int = 0
    error_code: Optional[str] = None

    @property
    def status(self) -> SyncStatus:
        if self.failed == 0:
            return SyncStatus.SUCCESS
        if self.successful == 0:
            return SyncStatus.FAILED
        return SyncStatus.PARTIAL


def _skipped(event_id: str, reason: str, appointment_id: Optional[str] = None) -> EventChangeResult:
    return EventChangeResult(
        success=True,
        outcome=EventOutcome.SKIPPED,
        event_id=event_id,
        appointment_id=appointment_id,
        reason=reason,
    )


async def _delete_orphaned_event(
    connection: Connection,
    client: GoogleCalendarClient,
    event: dict,
    mapping: EventMapping,
) -> EventChangeResult:
    if event.get("status") != "cancelled":
        await client.delete_event(event["id"])
    await delete_mapping_by_event(connection.id, event["id"])
    logger.info(f"Deleted event {event['id']}: appointment {mapping.appointment_id} no longer exists")
    return EventChangeResult(
        success=True,
        outcome=EventOutcome.DELETED,
        event_id=event["id"],
        appointment_id=mapping.appointment_id,
        reason="appointment_deleted",
    )


async def _recreate_event(
    connection: Connection,
    client: GoogleCalendarClient,
    event: dict,
    mapping: EventMapping,
    appointment,
) -> EventChangeResult:
    ensure_valid_for_sync(appointment)
    created = await client.create_event(map_appointment_to_event(appointment))
    try:
        await update_last_synced(mapping, SyncDirection.PUSH, google_event_id=created["id"])
    except MappingConflictError:
        await client.delete_event(created["id"])
        raise

    logger.info(
        f"Recreated cancelled event {event['id']} as {created['id']} "
        f"for appointment {appointment.id}"
    )
    await log_sync(
        connection.id,
        SyncType.WEBHOOK,
        SyncStatus.SUCCESS,
        operation=SyncOperation.CREATE,
        appointment_id=appointment.id,
        google_event_id=created["id"],
        details={"recreated": True, "old_event_id": event["id"]},
    )
    return EventChangeResult(
        success=True,
        outcome=EventOutcome.RECREATED,
        event_id=event["id"],
        appointment_id=appointment.id,
        new_event_id=created["id"],
        reason="cancelled_remotely",
    )


async def _resolve_conflict(
    connection: Connection,
    client: GoogleCalendarClient,
    event: dict,
    mapping: EventMapping,
    appointment,
    remote_updated: datetime,
    local_updated: datetime,
) -> EventChangeResult:
    details = {
        "conflict_reason": "Both calendar and appointment modified since last sync",
        "calendar_updated": remote_updated.isoformat(),
        "appointment_updated": local_updated.isoformat(),
        "last_synced_at": mapping.last_synced_at,
    }
    try:
        ensure_valid_for_sync(appointment)
        await client.update_event(event["id"], map_appointment_to_event(appointment))
        await update_last_synced(mapping, SyncDirection.PUSH)
    except MappingConflictError:
        raise
    except Exception as e:
        logger.error(f"Failed to resolve conflict for event {event['id']}: {e}")
        await log_sync(
            connection.id,
            SyncType.WEBHOOK,
            SyncStatus.FAILED,
            operation=SyncOperation.UPDATE,
            appointment_id=appointment.id,
            google_event_id=event["id"],
            error_message=str(e),
            error_code=SyncErrorCode.CONFLICT_RESOLUTION_FAILED.value,
            details={"conflict_detected": True, **details},
        )
        return EventChangeResult(
            success=False,
            outcome=EventOutcome.FAILED,
            event_id=event["id"],
            appointment_id=appointment.id,
            reason="conflict",
            error=str(e),
        )

    logger.info(f"Conflict resolved: local data overwrote calendar event {event['id']}")
    await log_sync(
        connection.id,
        SyncType.WEBHOOK,
        SyncStatus.SUCCESS,
        operation=SyncOperation.UPDATE,
        appointment_id=appointment.id,
        google_event_id=event["id"],
        details={
            "conflict_resolved": True,
            "resolution": "Appointment data overwrote calendar changes",
            **details,
        },
    )
    return EventChangeResult(
        success=True,
        outcome=EventOutcome.CONFLICT_RESOLVED,
        event_id=event["id"],
        appointment_id=appointment.id,
        reason="conflict",
    )


async def handle_event_change(
    connection: Connection,
    client: GoogleCalendarClient,
    event: dict,
) -> EventChangeResult:
    """Reconcile one remote event with its mapped appointment."""
    event_id = event["id"]

    mapping = await get_mapping_by_event(connection.id, event_id)
    if mapping is None:
        return _skipped(event_id, "unmapped")

    lock = await get_appointment_lock(mapping.appointment_id)
    async with lock:
        # Re-read under the lock; a concurrent push may have moved the mapping
        mapping = await get_mapping_by_event(connection.id, event_id)
        if mapping is None:
            return _skipped(event_id, "mapping_removed")

        appointment = await get_appointment(mapping.appointment_id)
        if appointment is None:
            return await _delete_orphaned_event(connection, client, event, mapping)

        if event.get("status") == "cancelled":
            if should_delete_event(appointment):
                await delete_mapping_by_event(connection.id, event_id)
                return EventChangeResult(
                    success=True,
                    outcome=EventOutcome.DELETED,
                    event_id=event_id,
                    appointment_id=appointment.id,
                    reason="cancelled_on_both_sides",
                )
            return await _recreate_event(connection, client, event, mapping, appointment)

        last_synced = mapping.last_synced
        remote_updated = parse_utc(event.get("updated"))
        local_updated = parse_utc(appointment.updated_at)

        if remote_updated is None or remote_updated <= last_synced:
            return _skipped(event_id, "no_remote_change", appointment.id)

        if local_updated is not None and local_updated > last_synced:
            try:
                return await _resolve_conflict(
                    connection, client, event, mapping, appointment, remote_updated, local_updated
                )
            except MappingConflictError:
                return _skipped(event_id, "concurrent_update", appointment.id)

        logger.info(
            f"Discarding calendar-only change to event {event_id} "
            f"(appointment {appointment.id} is authoritative)"
        )
        return _skipped(event_id, "remote_only_change", appointment.id)


async def process_webhook_notification(
    connection_id: int,
    resource_state: Optional[str] = None,
) -> WebhookProcessingResult:
    """Process one push notification for a connection."""
    started = time.monotonic()

    connection = await get_connection_by_id(connection_id)
    if connection is None or not connection.is_active:
        raise ConnectionNotFoundError(f"Active calendar connection {connection_id} not found")

    summary = WebhookProcessingResult(connection_id=connection_id, resource_state=resource_state)

    if connection.pause.is_paused:
        logger.info(f"Ignoring webhook for paused connection {connection_id}")
        summary.error_code = SyncErrorCode.AUTO_SYNC_PAUSED.value
        return summary

    try:
        client = await get_client_for_connection(connection)
        events = await client.list_events(
            updated_min=datetime.utcnow() - LOOKBACK_WINDOW,
            show_deleted=True,
            order_by="updated",
        )
    except Exception as e:
        logger.error(f"Webhook processing failed for connection {connection_id}: {e}")
        await log_sync(
            connection_id,
            SyncType.WEBHOOK,
            SyncStatus.FAILED,
            operation=SyncOperation.UPDATE,
            error_message=str(e),
            error_code=SyncErrorCode.WEBHOOK_PROCESSING_ERROR.value,
            details={"resource_state": resource_state},
            duration_ms=elapsed_ms(started),
        )
        await update_last_sync(connection_id)
        await track_sync_failure(connection_id, str(e))
        raise

    logger.info(f"Processing {len(events)} changed events for connection {connection_id}")

    for event in events:
        try:
            result = await handle_event_change(connection, client, event)
        except Exception as e:
            logger.error(f"Error processing event {event.get('id')}: {e}")
            result = EventChangeResult(
                success=False,
                outcome=EventOutcome.FAILED,
                event_id=event.get("id", ""),
                error=str(e),
            )
        summary.results.append(result)

    summary.successful = sum(1 for r in summary.results if r.success)
    summary.failed = len(summary.results) - summary.successful
    summary.duration_ms = elapsed_ms(started)

    await update_last_sync(connection_id)

    outcomes: dict[str, int] = {}
    for result in summary.results:
        key = result.reason if result.outcome == EventOutcome.SKIPPED else result.outcome.value
        outcomes[key] = outcomes.get(key, 0) + 1

    await log_sync(
        connection_id,
        SyncType.WEBHOOK,
        summary.status,
        operation=SyncOperation.UPDATE,
        details={
            "resource_state": resource_state,
            "events_processed": len(summary.results),
            "successful": summary.successful,
            "failed": summary.failed,
            "outcomes": outcomes,
            "results": [r.model_dump(mode="json", exclude_none=True) for r in summary.results],
        },
        duration_ms=summary.duration_ms,
    )

    if summary.failed:
        for result in summary.results:
            if not result.success:
                await track_sync_failure(connection_id, result.error or "Webhook event failed")
    elif summary.results:
        await track_sync_success(connection_id)

    logger.info(
        f"Webhook processing completed for connection {connection_id}: "
        f"{summary.successful} succeeded, {summary.failed} failed"
    )
    return summary
