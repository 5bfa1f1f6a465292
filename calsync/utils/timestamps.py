"""Timestamp helpers.

Stored timestamps are naive UTC ISO strings, matching ``datetime.utcnow()``.
"""

from datetime import datetime, timezone
from typing import Optional


def parse_utc(value) -> Optional[datetime]:
    """Parse a stored or provider timestamp into a naive UTC datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def to_rfc3339(value: datetime) -> str:
    """Format a naive UTC datetime the way the Calendar API expects."""
    return value.replace(microsecond=0).isoformat() + "Z"


def from_epoch_ms(value) -> Optional[datetime]:
    """Convert a millisecond epoch (int or numeric string) to naive UTC."""
    if value in (None, ""):
        return None
    return datetime.utcfromtimestamp(int(value) / 1000)
