"""Bulk push of appointments in a date range."""

import asyncio
import logging
import math
import time
from typing import Awaitable, Callable, Optional, Union

from pydantic import BaseModel

from calsync.appointments import list_appointments_between
from calsync.sync.connections import get_active_connection
from calsync.sync.criteria import filter_appointments_for_sync, get_sync_settings
from calsync.sync.push import push_appointment
from calsync.sync.results import elapsed_ms
from calsync.sync.retry_queue import enqueue_retry
from calsync.sync.sync_log import SyncOperation, SyncStatus, SyncType, log_sync

logger = logging.getLogger(__name__)

BATCH_SIZE = 10
BATCH_DELAY = 1.0
SYNC_DELAY = 0.2


class BulkSyncError(BaseModel):
    appointment_id: str
    error: str
    code: Optional[str] = None


class BulkSyncProgress(BaseModel):
    processed: int
    total: int
    successful: int
    failed: int
    current_appointment_id: Optional[str] = None


class BulkSyncResult(BaseModel):
    total: int = 0
    successful: int = 0
    failed: int = 0
    skipped: int = 0
    queued_for_retry: int = 0
    duration_ms: int = 0
    errors: list[BulkSyncError] = []


ProgressCallback = Callable[[BulkSyncProgress], Union[None, Awaitable[None]]]


def estimate_bulk_sync_duration(appointment_count: int) -> float:
    """Rough lower bound in seconds, from the fixed delays alone."""
    if appointment_count <= 0:
        return 0.0
    batch_count = math.ceil(appointment_count / BATCH_SIZE)
    return appointment_count * SYNC_DELAY + (batch_count - 1) * BATCH_DELAY


async def _report(callback: Optional[ProgressCallback], progress: BulkSyncProgress) -> None:
    if callback is None:
        return
    try:
        outcome = callback(progress)
        if asyncio.iscoroutine(outcome):
            await outcome
    except Exception as e:
        logger.warning(f"Bulk sync progress callback failed: {e}")


async def bulk_sync_appointments(
    admin_id: str,
    date_from: str,
    date_to: str,
    force: bool = False,
    progress_callback: Optional[ProgressCallback] = None,
) -> BulkSyncResult:
    """Push every eligible appointment between two dates.

    Appointments are pushed one at a time in batches of ten. Transient
    failures are queued for retry.
    """
    started = time.monotonic()
    result = BulkSyncResult()

    connection = await get_active_connection(admin_id)
    if connection is None:
        result.errors.append(
            BulkSyncError(appointment_id="N/A", error="No active calendar connection found", code="NO_CONNECTION")
        )
        return result

    appointments = await list_appointments_between(date_from, date_to)
    result.total = len(appointments)
    if not appointments:
        result.duration_ms = elapsed_ms(started)
        return result

    if force:
        to_sync = appointments
    else:
        to_sync = filter_appointments_for_sync(appointments, await get_sync_settings())
    result.skipped = len(appointments) - len(to_sync)

    batch_count = math.ceil(len(to_sync) / BATCH_SIZE)
    logger.info(
        f"Bulk sync for admin {admin_id}: {len(to_sync)} of {len(appointments)} appointments "
        f"in {batch_count} batches"
    )

    processed = 0
    for batch_start in range(0, len(to_sync), BATCH_SIZE):
        batch = to_sync[batch_start:batch_start + BATCH_SIZE]
        logger.debug(f"Processing batch {batch_start // BATCH_SIZE + 1}/{batch_count}")

        for appointment in batch:
            try:
                push_result = await push_appointment(admin_id, appointment, force=force)
            except Exception as e:
                logger.error(f"Bulk sync failed for appointment {appointment.id}: {e}")
                result.failed += 1
                result.errors.append(BulkSyncError(appointment_id=appointment.id, error=str(e)))
            else:
                if push_result.success:
                    result.successful += 1
                else:
                    result.failed += 1
                    error = push_result.error
                    result.errors.append(
                        BulkSyncError(
                            appointment_id=appointment.id,
                            error=error.message if error else "Unknown error",
                            code=error.code if error else None,
                        )
                    )
                    if error and error.retryable:
                        await enqueue_retry(
                            admin_id,
                            appointment.id,
                            push_result.operation or SyncOperation.CREATE,
                            error.model_dump(mode="json"),
                        )
                        result.queued_for_retry += 1

            processed += 1
            await _report(
                progress_callback,
                BulkSyncProgress(
                    processed=processed,
                    total=len(to_sync),
                    successful=result.successful,
                    failed=result.failed,
                    current_appointment_id=appointment.id,
                ),
            )
            await asyncio.sleep(SYNC_DELAY)

        if batch_start + BATCH_SIZE < len(to_sync):
            await asyncio.sleep(BATCH_DELAY)

    result.duration_ms = elapsed_ms(started)

    if result.failed == 0:
        status = SyncStatus.SUCCESS
    elif result.successful == 0:
        status = SyncStatus.FAILED
    else:
        status = SyncStatus.PARTIAL

    await log_sync(
        connection.id,
        SyncType.BULK,
        status,
        details={
            "date_from": date_from,
            "date_to": date_to,
            "force": force,
            "total": result.total,
            "successful": result.successful,
            "failed": result.failed,
            "skipped": result.skipped,
            "queued_for_retry": result.queued_for_retry,
        },
        duration_ms=result.duration_ms,
    )

    logger.info(
        f"Bulk sync completed: {result.successful} successful, {result.failed} failed, "
        f"{result.skipped} skipped ({result.duration_ms}ms)"
    )
    return result
