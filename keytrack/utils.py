"""
Small helpers for ids and UTC timestamps.

SQLite drops tzinfo on the way back out, so every comparison goes through
as_utc() to keep naive and aware datetimes from meeting.
"""
import math
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

ONE_DAY = timedelta(days=1)


def new_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def isoformat(value: Optional[datetime]) -> str:
    """ISO 8601 in UTC, empty string for None."""
    if value is None:
        return ""
    return as_utc(value).isoformat()


def whole_days_between(start: datetime, end: datetime) -> int:
    """floor((end - start) / 1 day). Negative when end is before start."""
    return math.floor((as_utc(end) - as_utc(start)) / ONE_DAY)


def days_until(target: datetime, now: datetime) -> int:
    """ceil((target - now) / 1 day)."""
    return math.ceil((as_utc(target) - as_utc(now)) / ONE_DAY)
