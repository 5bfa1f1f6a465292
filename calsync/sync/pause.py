"""Per-connection failure circuit breaker (auto-pause)."""

import logging
from datetime import datetime

from calsync.database import get_database
from calsync.sync.connections import PauseState, get_connection_by_id
from calsync.sync.errors import SyncErrorCode
from calsync.sync.sync_log import SyncOperation, SyncStatus, SyncType, log_sync

logger = logging.getLogger(__name__)

CONSECUTIVE_FAILURE_THRESHOLD = 10


async def track_sync_failure(connection_id: int, error_message: str) -> None:
    """Count a failed sync and pause the connection at the threshold.

    Paused connections are not counted. Never raises.
    """
    try:
        db = await get_database()
        cursor = await db.execute(
            """UPDATE calendar_connections
               SET consecutive_failures = consecutive_failures + 1, updated_at = ?
               WHERE id = ? AND auto_sync_paused = FALSE
               RETURNING consecutive_failures""",
            (datetime.utcnow().isoformat(), connection_id),
        )
        row = await cursor.fetchone()
        await db.commit()

        if row is None:
            logger.debug(f"Connection {connection_id} is paused or missing, failure not tracked")
            return

        failures = row["consecutive_failures"]
        logger.info(
            f"Connection {connection_id} consecutive failures: "
            f"{failures}/{CONSECUTIVE_FAILURE_THRESHOLD}"
        )

        if failures >= CONSECUTIVE_FAILURE_THRESHOLD:
            await pause_auto_sync(
                connection_id,
                f"Auto-paused after {CONSECUTIVE_FAILURE_THRESHOLD} consecutive sync failures: "
                f"{error_message}",
            )
    except Exception as e:
        logger.error(f"Failed to track sync failure for connection {connection_id}: {e}")


async def track_sync_success(connection_id: int) -> None:
    """Reset the failure counter. Never raises."""
    try:
        db = await get_database()
        await db.execute(
            """UPDATE calendar_connections
               SET consecutive_failures = 0, updated_at = ?
               WHERE id = ? AND consecutive_failures != 0""",
            (datetime.utcnow().isoformat(), connection_id),
        )
        await db.commit()
    except Exception as e:
        logger.error(f"Failed to reset failure count for connection {connection_id}: {e}")


async def pause_auto_sync(connection_id: int, reason: str) -> bool:
    """Pause a connection. Returns False if it was already paused."""
    db = await get_database()
    now = datetime.utcnow().isoformat()
    cursor = await db.execute(
        """UPDATE calendar_connections
           SET auto_sync_paused = TRUE, paused_at = ?, pause_reason = ?, updated_at = ?
           WHERE id = ? AND auto_sync_paused = FALSE""",
        (now, reason, now, connection_id),
    )
    await db.commit()

    if cursor.rowcount == 0:
        return False

    logger.warning(f"Auto-sync PAUSED for connection {connection_id}: {reason}")

    await log_sync(
        connection_id,
        SyncType.PUSH,
        SyncStatus.FAILED,
        operation=SyncOperation.UPDATE,
        error_message=f"Auto-sync paused: {reason}",
        error_code=SyncErrorCode.AUTO_SYNC_PAUSED.value,
        details={"pause_reason": reason, "paused_at": now},
    )

    from calsync.alerts.email import queue_alert
    try:
        await queue_alert(
            alert_type="auto_sync_paused",
            connection_id=connection_id,
            details=reason,
        )
    except Exception as e:
        logger.error(f"Failed to queue auto_sync_paused alert: {e}")

    return True


async def resume_auto_sync(connection_id: int) -> None:
    """Clear the pause and reset the failure counter."""
    db = await get_database()
    now = datetime.utcnow().isoformat()
    await db.execute(
        """UPDATE calendar_connections
           SET auto_sync_paused = FALSE, paused_at = NULL, pause_reason = NULL,
               consecutive_failures = 0, updated_at = ?
           WHERE id = ?""",
        (now, connection_id),
    )
    await db.commit()

    logger.info(f"Auto-sync RESUMED for connection {connection_id}")

    await log_sync(
        connection_id,
        SyncType.PUSH,
        SyncStatus.SUCCESS,
        operation=SyncOperation.UPDATE,
        details={"event": "auto_sync_resumed", "resumed_at": now},
    )


async def check_pause_status(connection_id: int) -> dict:
    connection = await get_connection_by_id(connection_id)
    if connection is None:
        raise ValueError(f"Connection not found: {connection_id}")

    pause: PauseState = connection.pause
    return {
        "is_paused": pause.is_paused,
        "paused_at": pause.since.isoformat() if pause.since else None,
        "pause_reason": pause.reason,
        "consecutive_failures": connection.consecutive_failures,
    }


async def get_paused_connections() -> list[dict]:
    db = await get_database()
    cursor = await db.execute(
        """SELECT id, admin_id, calendar_email, paused_at, pause_reason, consecutive_failures
           FROM calendar_connections
           WHERE auto_sync_paused = TRUE
           ORDER BY paused_at DESC"""
    )
    return [dict(row) for row in await cursor.fetchall()]
