"""Event mapping store: appointment id <-> Google event id.

Writers that change a mapping after a remote call go through
``update_last_synced``, a compare-and-swap on the row's ``last_synced_at``.
A writer that lost the race gets ``MappingConflictError`` instead of silently
overwriting the winner.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

import aiosqlite
from pydantic import BaseModel

from calsync.database import get_database
from calsync.sync.errors import MappingConflictError
from calsync.utils.timestamps import parse_utc

logger = logging.getLogger(__name__)

# Per-appointment locks so one process never runs two remote mutations for
# the same appointment at once (webhook + retry overlap).
_appointment_locks: dict[str, asyncio.Lock] = {}
_appointment_locks_guard = asyncio.Lock()


class SyncDirection(str, Enum):
    PUSH = "push"
    PULL = "pull"


class EventMapping(BaseModel):
    id: int
    appointment_id: str
    connection_id: int
    google_event_id: str
    sync_direction: SyncDirection
    last_synced_at: str
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @property
    def last_synced(self) -> Optional[datetime]:
        return parse_utc(self.last_synced_at)

    @classmethod
    def from_row(cls, row) -> "EventMapping":
        return cls(**dict(row))


async def get_appointment_lock(appointment_id: str) -> asyncio.Lock:
    """Get or create the in-process lock for an appointment."""
    async with _appointment_locks_guard:
        if appointment_id not in _appointment_locks:
            _appointment_locks[appointment_id] = asyncio.Lock()
        return _appointment_locks[appointment_id]


def _next_sync_stamp(previous: Optional[str] = None) -> str:
    stamp = datetime.utcnow().isoformat()
    if previous is not None and stamp == previous:
        stamp = (datetime.fromisoformat(previous) + timedelta(microseconds=1)).isoformat()
    return stamp


async def _fetch_one(query: str, params: tuple) -> Optional[EventMapping]:
    db = await get_database()
    cursor = await db.execute(query, params)
    row = await cursor.fetchone()
    if row:
        return EventMapping.from_row(row)
    return None


async def create_event_mapping(
    appointment_id: str,
    connection_id: int,
    google_event_id: str,
    direction: SyncDirection = SyncDirection.PUSH,
) -> EventMapping:
    """Insert a mapping. Raises MappingConflictError if one already exists."""
    db = await get_database()
    now = _next_sync_stamp()
    try:
        cursor = await db.execute(
            """INSERT INTO calendar_event_mapping
               (appointment_id, connection_id, google_event_id, sync_direction,
                last_synced_at, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?)
               RETURNING *""",
            (appointment_id, connection_id, google_event_id, direction.value, now, now, now),
        )
        row = await cursor.fetchone()
        await db.commit()
    except aiosqlite.IntegrityError:
        await db.rollback()
        raise MappingConflictError(
            f"Appointment {appointment_id} already has an event mapping"
        ) from None

    return EventMapping.from_row(row)


async def get_mapping_by_appointment(appointment_id: str) -> Optional[EventMapping]:
    return await _fetch_one(
        "SELECT * FROM calendar_event_mapping WHERE appointment_id = ?",
        (appointment_id,),
    )


async def get_mapping_by_event(connection_id: int, google_event_id: str) -> Optional[EventMapping]:
    return await _fetch_one(
        """SELECT * FROM calendar_event_mapping
           WHERE connection_id = ? AND google_event_id = ?""",
        (connection_id, google_event_id),
    )


async def update_last_synced(
    mapping: EventMapping,
    direction: SyncDirection = SyncDirection.PUSH,
    google_event_id: Optional[str] = None,
) -> EventMapping:
    """Compare-and-swap the mapping's sync stamp (and optionally its event id).

    Succeeds only if ``last_synced_at`` still equals the value read into
    ``mapping``.
    """
    db = await get_database()
    new_stamp = _next_sync_stamp(mapping.last_synced_at)
    event_id = google_event_id or mapping.google_event_id

    try:
        cursor = await db.execute(
            """UPDATE calendar_event_mapping
               SET last_synced_at = ?, sync_direction = ?, google_event_id = ?, updated_at = ?
               WHERE id = ? AND last_synced_at = ?""",
            (new_stamp, direction.value, event_id, new_stamp, mapping.id, mapping.last_synced_at),
        )
        await db.commit()
    except aiosqlite.IntegrityError:
        await db.rollback()
        raise MappingConflictError(
            f"Event {event_id} is already mapped to another appointment"
        ) from None

    if cursor.rowcount == 0:
        logger.warning(
            f"Mapping for appointment {mapping.appointment_id} changed concurrently, "
            f"expected last_synced_at={mapping.last_synced_at}"
        )
        raise MappingConflictError(
            f"Mapping for appointment {mapping.appointment_id} was modified concurrently"
        )

    return mapping.model_copy(
        update={
            "last_synced_at": new_stamp,
            "sync_direction": direction,
            "google_event_id": event_id,
            "updated_at": new_stamp,
        }
    )


async def delete_mapping_by_appointment(appointment_id: str) -> bool:
    db = await get_database()
    cursor = await db.execute(
        "DELETE FROM calendar_event_mapping WHERE appointment_id = ?",
        (appointment_id,),
    )
    await db.commit()
    return cursor.rowcount > 0


async def delete_mapping_by_event(connection_id: int, google_event_id: str) -> bool:
    db = await get_database()
    cursor = await db.execute(
        """DELETE FROM calendar_event_mapping
           WHERE connection_id = ? AND google_event_id = ?""",
        (connection_id, google_event_id),
    )
    await db.commit()
    return cursor.rowcount > 0


async def list_mappings_for_connection(
    connection_id: int,
    limit: Optional[int] = None,
    offset: int = 0,
) -> list[EventMapping]:
    """Mappings for a connection, most recently synced first."""
    db = await get_database()
    query = """SELECT * FROM calendar_event_mapping
               WHERE connection_id = ?
               ORDER BY last_synced_at DESC"""
    params: tuple = (connection_id,)
    if limit is not None:
        query += " LIMIT ? OFFSET ?"
        params = (connection_id, limit, offset)
    cursor = await db.execute(query, params)
    return [EventMapping.from_row(row) for row in await cursor.fetchall()]


async def is_appointment_synced(appointment_id: str) -> bool:
    return await get_mapping_by_appointment(appointment_id) is not None
