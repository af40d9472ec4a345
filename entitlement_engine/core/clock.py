"""UTC time helpers shared by the meter, state machine and reconciler."""

import calendar
from datetime import datetime, timezone
from typing import Optional


def utc_now() -> datetime:
    """Timezone-aware UTC now."""
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize a datetime to aware UTC.

    SQLite hands back naive datetimes; everything the engine stores is UTC,
    so a naive value is interpreted as UTC.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def normalize_now(now: Optional[datetime]) -> datetime:
    return as_utc(now) if now is not None else utc_now()


def add_months(value: datetime, months: int) -> datetime:
    """Calendar-month arithmetic, clamping the day to the target month's end."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def period_key_for(moment: datetime) -> str:
    """Calendar-month bucket (`YYYY-MM`) of a UTC instant."""
    moment = as_utc(moment)
    return f"{moment.year:04d}-{moment.month:02d}"
