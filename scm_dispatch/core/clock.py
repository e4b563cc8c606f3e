"""UTC time helpers.

SQLite hands back naive datetimes for ``DateTime(timezone=True)`` columns,
so anything read from the database goes through ``as_utc`` before it is
compared with an aware timestamp.
"""
from datetime import datetime, timezone
from typing import Optional


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes, convert aware ones to UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
