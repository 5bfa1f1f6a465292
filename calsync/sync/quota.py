"""Daily Google Calendar API quota tracking."""

import logging
from datetime import datetime, timedelta
from typing import Optional

from pydantic import BaseModel

from calsync.database import get_database

logger = logging.getLogger(__name__)

DAILY_QUOTA_LIMIT = 1_000_000
QUOTA_WARNING_THRESHOLD = 0.95


class QuotaStatus(BaseModel):
    date: str
    request_count: int
    limit: int = DAILY_QUOTA_LIMIT
    percentage: float
    is_near_limit: bool
    is_exceeded: bool
    reset_at: str


def _today() -> str:
    return datetime.utcnow().date().isoformat()


def _build_status(date: str, count: int) -> QuotaStatus:
    percentage = count / DAILY_QUOTA_LIMIT * 100
    reset_at = datetime.fromisoformat(date) + timedelta(days=1)
    return QuotaStatus(
        date=date,
        request_count=count,
        percentage=round(percentage, 4),
        is_near_limit=percentage >= QUOTA_WARNING_THRESHOLD * 100,
        is_exceeded=count >= DAILY_QUOTA_LIMIT,
        reset_at=reset_at.isoformat(),
    )


async def record_api_request(count: int = 1) -> None:
    """Count remote API requests for today. Never raises."""
    try:
        db = await get_database()
        cursor = await db.execute(
            """INSERT INTO calendar_api_quota (date, request_count, last_updated)
               VALUES (?, ?, ?)
               ON CONFLICT(date) DO UPDATE SET
               request_count = request_count + excluded.request_count,
               last_updated = excluded.last_updated
               RETURNING request_count""",
            (_today(), count, datetime.utcnow().isoformat()),
        )
        row = await cursor.fetchone()
        await db.commit()
    except Exception as e:
        logger.error(f"Failed to record API quota usage: {e}")
        return

    threshold = int(DAILY_QUOTA_LIMIT * QUOTA_WARNING_THRESHOLD)
    if row and row[0] - count < threshold <= row[0]:
        logger.warning(
            f"Google Calendar API usage reached {QUOTA_WARNING_THRESHOLD:.0%} "
            f"of the daily quota ({row[0]}/{DAILY_QUOTA_LIMIT})"
        )


async def get_quota_status(date: Optional[str] = None) -> QuotaStatus:
    date = date or _today()
    db = await get_database()
    cursor = await db.execute(
        "SELECT request_count FROM calendar_api_quota WHERE date = ?",
        (date,),
    )
    row = await cursor.fetchone()
    return _build_status(date, row["request_count"] if row else 0)


async def get_quota_history(days: int = 7) -> list[QuotaStatus]:
    """Per-day usage for the last ``days`` days, newest first."""
    start = (datetime.utcnow().date() - timedelta(days=days - 1)).isoformat()
    db = await get_database()
    cursor = await db.execute(
        """SELECT date, request_count FROM calendar_api_quota
           WHERE date >= ? ORDER BY date DESC""",
        (start,),
    )
    return [_build_status(row["date"], row["request_count"]) for row in await cursor.fetchall()]
