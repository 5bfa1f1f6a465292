"""Retry queue for pushes that failed with a transient error.

Backoff is fixed by retry count (1, 5, then 15 minutes). The fourth failure
is escalated to a permanent-failure log entry and the entry is dropped.
"""

import asyncio
import json
import logging
from datetime import datetime, timedelta
from typing import Optional

from pydantic import BaseModel

from calsync.appointments import get_appointments
from calsync.database import get_database
from calsync.sync.connections import get_active_connection
from calsync.sync.delete_handler import handle_appointment_deletion
from calsync.sync.errors import SyncErrorCode
from calsync.sync.push import push_appointment
from calsync.sync.results import SyncResult
from calsync.sync.sync_log import SyncOperation, SyncStatus, SyncType, log_sync

logger = logging.getLogger(__name__)

MAX_RETRIES = 3
RETRY_BACKOFF_SECONDS = {0: 60, 1: 300, 2: 900}
BATCH_SIZE = 50
RETRY_DELAY = 0.2


class RetryQueueEntry(BaseModel):
    id: int
    admin_id: str
    appointment_id: str
    operation: SyncOperation
    retry_count: int = 0
    next_retry_at: str
    last_retry_at: Optional[str] = None
    error_details: dict = {}
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @classmethod
    def from_row(cls, row) -> "RetryQueueEntry":
        data = dict(row)
        data["error_details"] = json.loads(data["error_details"]) if data.get("error_details") else {}
        return cls(**data)


class RetryStats(BaseModel):
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    permanently_failed: int = 0


class QueueStats(BaseModel):
    pending: int
    next_retry_time: Optional[str] = None
    total_in_queue: int
    exceeded_limit: int


def get_retry_backoff(retry_count: int) -> Optional[timedelta]:
    """Delay before the next attempt, or None once the limit is reached."""
    if retry_count >= MAX_RETRIES:
        return None
    return timedelta(seconds=RETRY_BACKOFF_SECONDS[retry_count])


async def enqueue_retry(
    admin_id: str,
    appointment_id: str,
    operation: SyncOperation,
    error_details: dict,
) -> int:
    """Queue an appointment for retry and return the entry id.

    An appointment already in the queue keeps its retry count; only the
    operation and error details are replaced.
    """
    db = await get_database()
    now = datetime.utcnow()
    operation = SyncOperation(operation)

    cursor = await db.execute(
        "SELECT id FROM calendar_sync_retry_queue WHERE appointment_id = ?",
        (appointment_id,),
    )
    existing = await cursor.fetchone()
    if existing:
        await db.execute(
            """UPDATE calendar_sync_retry_queue
               SET admin_id = ?, operation = ?, error_details = ?, updated_at = ?
               WHERE id = ?""",
            (
                admin_id,
                operation.value,
                json.dumps(error_details, default=str),
                now.isoformat(),
                existing["id"],
            ),
        )
        await db.commit()
        logger.info(f"Appointment {appointment_id} already queued, updated to {operation.value}")
        return existing["id"]

    next_retry_at = now + get_retry_backoff(0)
    cursor = await db.execute(
        """INSERT INTO calendar_sync_retry_queue
           (admin_id, appointment_id, operation, retry_count, next_retry_at,
            error_details, created_at, updated_at)
           VALUES (?, ?, ?, 0, ?, ?, ?, ?)
           RETURNING id""",
        (
            admin_id,
            appointment_id,
            operation.value,
            next_retry_at.isoformat(),
            json.dumps(error_details, default=str),
            now.isoformat(),
            now.isoformat(),
        ),
    )
    row = await cursor.fetchone()
    await db.commit()

    logger.info(
        f"Queued appointment {appointment_id} for retry "
        f"(operation: {operation.value}, next retry: {next_retry_at.isoformat()})"
    )
    return row["id"]


async def queue_if_retryable(admin_id: str, result: SyncResult) -> bool:
    """Queue a failed push whose error is transient. Returns True when queued."""
    error = result.error
    if result.success or error is None or not error.retryable:
        return False

    await enqueue_retry(
        admin_id,
        result.appointment_id,
        result.operation or SyncOperation.CREATE,
        error.model_dump(mode="json"),
    )
    result.details = {**result.details, "queued_for_retry": True, "message": "Sync failed, will retry"}
    return True


async def get_due_entries(limit: int = BATCH_SIZE) -> list[RetryQueueEntry]:
    db = await get_database()
    cursor = await db.execute(
        """SELECT * FROM calendar_sync_retry_queue
           WHERE next_retry_at <= ? AND retry_count < ?
           ORDER BY next_retry_at ASC
           LIMIT ?""",
        (datetime.utcnow().isoformat(), MAX_RETRIES, limit),
    )
    return [RetryQueueEntry.from_row(row) for row in await cursor.fetchall()]


async def remove_from_queue(appointment_id: str) -> None:
    db = await get_database()
    await db.execute(
        "DELETE FROM calendar_sync_retry_queue WHERE appointment_id = ?",
        (appointment_id,),
    )
    await db.commit()
    logger.debug(f"Removed appointment {appointment_id} from retry queue")


async def _reschedule(entry: RetryQueueEntry, retry_count: int, result: SyncResult) -> datetime:
    now = datetime.utcnow()
    next_retry_at = now + get_retry_backoff(retry_count)
    error = result.error.model_dump(mode="json") if result.error else None
    details = dict(entry.error_details)
    details["last_error"] = error
    details["retry_history"] = [
        *details.get("retry_history", []),
        {"attempt": retry_count, "timestamp": now.isoformat(), "error": error},
    ]

    db = await get_database()
    await db.execute(
        """UPDATE calendar_sync_retry_queue
           SET retry_count = ?, last_retry_at = ?, next_retry_at = ?,
               error_details = ?, updated_at = ?
           WHERE id = ?""",
        (
            retry_count,
            now.isoformat(),
            next_retry_at.isoformat(),
            json.dumps(details, default=str),
            now.isoformat(),
            entry.id,
        ),
    )
    await db.commit()
    return next_retry_at


async def _handle_permanent_failure(entry: RetryQueueEntry, result: SyncResult) -> None:
    connection = await get_active_connection(entry.admin_id)
    message = f"Permanent failure after {MAX_RETRIES} retry attempts"
    if result.error and not result.error.retryable:
        message = f"Permanent failure: {result.error.message}"

    await log_sync(
        connection.id if connection else None,
        SyncType.PUSH,
        SyncStatus.FAILED,
        operation=entry.operation,
        appointment_id=entry.appointment_id,
        error_message=message,
        error_code=SyncErrorCode.RETRY_LIMIT_EXCEEDED.value,
        details={
            "retry_count": entry.retry_count,
            "last_error": result.error.model_dump(mode="json") if result.error else None,
            "error_history": entry.error_details,
        },
    )

    from calsync.alerts.email import queue_alert
    try:
        await queue_alert(
            alert_type="retry_limit_exceeded",
            connection_id=connection.id if connection else None,
            details=f"Appointment {entry.appointment_id}: {message}",
        )
    except Exception as e:
        logger.error(f"Failed to queue retry_limit_exceeded alert: {e}")

    await remove_from_queue(entry.appointment_id)


async def _retry_entry(entry: RetryQueueEntry, appointment) -> SyncResult:
    if appointment is None:
        # Appointment was deleted locally; its event must go too
        return await handle_appointment_deletion(entry.admin_id, entry.appointment_id)
    return await push_appointment(entry.admin_id, appointment, force=True)


async def process_retry_queue() -> RetryStats:
    """Re-push every due entry once."""
    stats = RetryStats()

    entries = await get_due_entries()
    if not entries:
        logger.debug("No retry queue entries due")
        return stats

    logger.info(f"Processing {len(entries)} retry queue entries")
    appointments = await get_appointments([entry.appointment_id for entry in entries])

    for index, entry in enumerate(entries):
        stats.processed += 1
        try:
            result = await _retry_entry(entry, appointments.get(entry.appointment_id))

            if result.success:
                await remove_from_queue(entry.appointment_id)
                stats.succeeded += 1
                logger.info(
                    f"Synced appointment {entry.appointment_id} after {entry.retry_count + 1} retries"
                )
            elif result.error and result.error.code == SyncErrorCode.AUTO_SYNC_PAUSED.value:
                # Paused connections keep their place without spending an attempt
                await _reschedule(entry, entry.retry_count, result)
                stats.failed += 1
            else:
                new_count = entry.retry_count + 1
                if new_count >= MAX_RETRIES or not result.error or not result.error.retryable:
                    await _handle_permanent_failure(entry, result)
                    stats.permanently_failed += 1
                    logger.error(
                        f"Appointment {entry.appointment_id} permanently failed after "
                        f"{new_count} attempts"
                    )
                else:
                    next_retry_at = await _reschedule(entry, new_count, result)
                    stats.failed += 1
                    logger.warning(
                        f"Appointment {entry.appointment_id} failed retry {new_count}/{MAX_RETRIES}, "
                        f"next retry at {next_retry_at.isoformat()}"
                    )
        except Exception as e:
            logger.error(f"Error processing retry for appointment {entry.appointment_id}: {e}")
            stats.failed += 1

        if index < len(entries) - 1:
            await asyncio.sleep(RETRY_DELAY)

    logger.info(
        f"Retry queue complete: processed={stats.processed} succeeded={stats.succeeded} "
        f"failed={stats.failed} permanently_failed={stats.permanently_failed}"
    )
    return stats


async def get_queue_stats() -> QueueStats:
    db = await get_database()
    cursor = await db.execute(
        """SELECT
               COUNT(*) AS total,
               SUM(CASE WHEN retry_count < ? THEN 1 ELSE 0 END) AS pending,
               SUM(CASE WHEN retry_count >= ? THEN 1 ELSE 0 END) AS exceeded,
               MIN(CASE WHEN retry_count < ? THEN next_retry_at END) AS next_retry_at
           FROM calendar_sync_retry_queue""",
        (MAX_RETRIES, MAX_RETRIES, MAX_RETRIES),
    )
    row = await cursor.fetchone()
    return QueueStats(
        pending=row["pending"] or 0,
        next_retry_time=row["next_retry_at"],
        total_in_queue=row["total"] or 0,
        exceeded_limit=row["exceeded"] or 0,
    )
