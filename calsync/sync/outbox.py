"""Outbound appointment change events.

The booking write path records a row here instead of syncing inline. The
outbox job drains pending rows into pushes or deletes; transient failures are
handed to the retry queue.
"""

import logging
from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel

from calsync.appointments import get_appointments
from calsync.database import get_database
from calsync.sync.delete_handler import handle_appointment_deletion
from calsync.sync.errors import SyncErrorCode
from calsync.sync.mapper import should_delete_event
from calsync.sync.push import push_appointment
from calsync.sync.results import SyncResult
from calsync.sync.retry_queue import enqueue_retry
from calsync.sync.sync_log import SyncOperation

logger = logging.getLogger(__name__)

OUTBOX_BATCH_SIZE = 50


class AppointmentEventType(str, Enum):
    UPSERTED = "upserted"
    DELETED = "deleted"


class OutboxStatus(str, Enum):
    PENDING = "pending"
    PROCESSED = "processed"
    FAILED = "failed"


class OutboxEvent(BaseModel):
    id: int
    admin_id: str
    appointment_id: str
    event_type: AppointmentEventType
    status: OutboxStatus
    attempts: int = 0
    last_error: Optional[str] = None
    created_at: Optional[str] = None
    processed_at: Optional[str] = None


class OutboxStats(BaseModel):
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    queued_for_retry: int = 0
    superseded: int = 0
    skipped: int = 0


async def publish_appointment_event(
    admin_id: str,
    appointment_id: str,
    event_type: AppointmentEventType,
) -> int:
    """Record that an appointment changed. Returns the outbox row id."""
    event_type = AppointmentEventType(event_type)
    db = await get_database()
    cursor = await db.execute(
        """INSERT INTO calendar_sync_outbox (admin_id, appointment_id, event_type, status, created_at)
           VALUES (?, ?, ?, 'pending', ?)
           RETURNING id""",
        (admin_id, appointment_id, event_type.value, datetime.utcnow().isoformat()),
    )
    row = await cursor.fetchone()
    await db.commit()
    logger.debug(f"Published {event_type.value} event for appointment {appointment_id}")
    return row["id"]


async def get_pending_events(limit: int = OUTBOX_BATCH_SIZE) -> list[OutboxEvent]:
    db = await get_database()
    cursor = await db.execute(
        """SELECT * FROM calendar_sync_outbox
           WHERE status = 'pending'
           ORDER BY created_at ASC, id ASC
           LIMIT ?""",
        (limit,),
    )
    return [OutboxEvent(**dict(row)) for row in await cursor.fetchall()]


async def _mark(event_id: int, status: OutboxStatus, error: Optional[str] = None) -> None:
    db = await get_database()
    await db.execute(
        """UPDATE calendar_sync_outbox
           SET status = ?, attempts = attempts + 1, last_error = ?, processed_at = ?
           WHERE id = ?""",
        (status.value, error, datetime.utcnow().isoformat(), event_id),
    )
    await db.commit()


async def process_outbox(limit: int = OUTBOX_BATCH_SIZE) -> OutboxStats:
    """Drain pending events. Only the newest event per appointment is synced."""
    stats = OutboxStats()

    events = await get_pending_events(limit)
    if not events:
        return stats

    latest: dict[str, int] = {}
    for event in events:
        latest[event.appointment_id] = event.id

    appointments = await get_appointments(
        event.appointment_id for event in events
        if event.event_type == AppointmentEventType.UPSERTED
    )

    for event in events:
        stats.processed += 1

        if latest[event.appointment_id] != event.id:
            await _mark(event.id, OutboxStatus.PROCESSED, "superseded")
            stats.superseded += 1
            continue

        try:
            appointment = appointments.get(event.appointment_id)
            if (
                event.event_type == AppointmentEventType.DELETED
                or appointment is None
                or should_delete_event(appointment)
            ):
                result: SyncResult = await handle_appointment_deletion(event.admin_id, event.appointment_id)
            else:
                result = await push_appointment(event.admin_id, appointment)
        except Exception as e:
            logger.error(f"Outbox event {event.id} failed: {e}")
            await _mark(event.id, OutboxStatus.FAILED, str(e))
            stats.failed += 1
            continue

        if result.success:
            await _mark(event.id, OutboxStatus.PROCESSED)
            stats.succeeded += 1
            continue

        error = result.error
        if error and (error.retryable or error.code == SyncErrorCode.AUTO_SYNC_PAUSED.value):
            await enqueue_retry(
                event.admin_id,
                event.appointment_id,
                result.operation or SyncOperation.CREATE,
                error.model_dump(mode="json"),
            )
            await _mark(event.id, OutboxStatus.PROCESSED, f"queued for retry: {error.code}")
            stats.queued_for_retry += 1
        elif error and error.code == SyncErrorCode.NO_CONNECTION.value:
            await _mark(event.id, OutboxStatus.PROCESSED, error.code)
            stats.skipped += 1
        else:
            await _mark(event.id, OutboxStatus.FAILED, error.message if error else "Unknown error")
            stats.failed += 1

    logger.info(
        f"Outbox drained: processed={stats.processed} succeeded={stats.succeeded} "
        f"failed={stats.failed} retry={stats.queued_for_retry} superseded={stats.superseded}"
    )
    return stats
