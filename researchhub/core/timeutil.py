"""UTC datetime helpers. All persisted timestamps are timezone-aware UTC."""

from datetime import datetime, timezone
from typing import Optional


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes (e.g. read back from SQLite) as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def normalize_now(now: Optional[datetime]) -> datetime:
    if now is None:
        return utc_now()
    return as_utc(now)


def month_start(now: Optional[datetime] = None) -> datetime:
    """First instant of the calendar month (UTC) containing `now`."""
    current = normalize_now(now)
    return current.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
