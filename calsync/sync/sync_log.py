"""Append-only audit log of sync operations."""

import json
import logging
from datetime import datetime
from enum import Enum
from typing import Optional

from calsync.database import get_database

logger = logging.getLogger(__name__)


class SyncType(str, Enum):
    PUSH = "push"
    PULL = "pull"
    BULK = "bulk"
    WEBHOOK = "webhook"


class SyncOperation(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    IMPORT = "import"


class SyncStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    PARTIAL = "partial"


def _value(item):
    return item.value if isinstance(item, Enum) else item


async def log_sync(
    connection_id: Optional[int],
    sync_type: SyncType,
    status: SyncStatus,
    operation: Optional[SyncOperation] = None,
    appointment_id: Optional[str] = None,
    google_event_id: Optional[str] = None,
    error_message: Optional[str] = None,
    error_code: Optional[str] = None,
    details: Optional[dict] = None,
    duration_ms: Optional[int] = None,
) -> Optional[int]:
    """Write a log row and return its id.

    Logging failures are swallowed so they never break a sync.
    """
    try:
        db = await get_database()
        cursor = await db.execute(
            """INSERT INTO calendar_sync_log
               (connection_id, sync_type, operation, appointment_id, google_event_id,
                status, error_message, error_code, details, duration_ms, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
               RETURNING id""",
            (
                connection_id,
                _value(sync_type),
                _value(operation),
                appointment_id,
                google_event_id,
                _value(status),
                error_message,
                error_code,
                json.dumps(details, default=str) if details is not None else None,
                duration_ms,
                datetime.utcnow().isoformat(),
            ),
        )
        row = await cursor.fetchone()
        await db.commit()
        return row["id"]
    except Exception as e:
        logger.error(f"Failed to write sync log entry: {e}")
        return None


async def log_sync_result(connection_id: Optional[int], sync_type: SyncType, result) -> Optional[int]:
    """Log a push SyncResult."""
    if result.success:
        return await log_sync(
            connection_id,
            sync_type,
            SyncStatus.SUCCESS,
            operation=result.operation,
            appointment_id=result.appointment_id,
            google_event_id=result.google_event_id,
            details=result.details or None,
            duration_ms=result.duration_ms,
        )

    error = result.error
    return await log_sync(
        connection_id,
        sync_type,
        SyncStatus.FAILED,
        operation=result.operation,
        appointment_id=result.appointment_id,
        google_event_id=result.google_event_id,
        error_message=error.message if error else "Unknown error",
        error_code=error.code if error else "UNKNOWN_ERROR",
        details=result.details or None,
        duration_ms=result.duration_ms,
    )


def _row_to_entry(row) -> dict:
    entry = dict(row)
    if entry.get("details"):
        try:
            entry["details"] = json.loads(entry["details"])
        except ValueError:
            pass
    return entry


async def get_recent_sync_logs(
    connection_id: Optional[int] = None,
    limit: int = 50,
    offset: int = 0,
    status: Optional[SyncStatus] = None,
) -> list[dict]:
    """Newest log entries, optionally filtered by connection and status."""
    conditions = []
    params: list = []
    if connection_id is not None:
        conditions.append("connection_id = ?")
        params.append(connection_id)
    if status is not None:
        conditions.append("status = ?")
        params.append(_value(status))

    query = "SELECT * FROM calendar_sync_log"
    if conditions:
        query += " WHERE " + " AND ".join(conditions)
    query += " ORDER BY created_at DESC, id DESC LIMIT ? OFFSET ?"
    params.extend([limit, offset])

    db = await get_database()
    cursor = await db.execute(query, tuple(params))
    return [_row_to_entry(row) for row in await cursor.fetchall()]


async def count_sync_logs(connection_id: Optional[int] = None) -> int:
    db = await get_database()
    if connection_id is None:
        cursor = await db.execute("SELECT COUNT(*) FROM calendar_sync_log")
    else:
        cursor = await db.execute(
            "SELECT COUNT(*) FROM calendar_sync_log WHERE connection_id = ?",
            (connection_id,),
        )
    return (await cursor.fetchone())[0]


async def get_appointment_sync_history(appointment_id: str, limit: int = 20) -> list[dict]:
    db = await get_database()
    cursor = await db.execute(
        """SELECT * FROM calendar_sync_log
           WHERE appointment_id = ?
           ORDER BY created_at DESC, id DESC LIMIT ?""",
        (appointment_id, limit),
    )
    return [_row_to_entry(row) for row in await cursor.fetchall()]


async def get_sync_stats(connection_id: int, since: Optional[datetime] = None) -> dict:
    """Counts by status for a connection, optionally since a point in time."""
    query = """SELECT status, COUNT(*) AS count FROM calendar_sync_log
               WHERE connection_id = ?"""
    params: list = [connection_id]
    if since is not None:
        query += " AND created_at >= ?"
        params.append(since.isoformat())
    query += " GROUP BY status"

    db = await get_database()
    cursor = await db.execute(query, tuple(params))
    stats = {"total": 0, "success": 0, "failed": 0, "partial": 0}
    for row in await cursor.fetchall():
        stats[row["status"]] = row["count"]
        stats["total"] += row["count"]
    return stats
