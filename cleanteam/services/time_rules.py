"""
Time helpers shared by sync, lifecycle and billing.
Handles the reservation window, UTC normalisation and duration labels.
"""
from datetime import date, datetime, timedelta, timezone
from typing import Optional, Tuple

import pytz

from ..config import settings


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """
    Make a datetime timezone-aware in UTC.

    Naive values are read back from databases that drop tzinfo and are
    treated as UTC.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=pytz.UTC)
    return value.astimezone(pytz.UTC)


def local_today(timezone_str: Optional[str] = None) -> date:
    """Today's date in the team's timezone (default from settings)."""
    try:
        tz = pytz.timezone(timezone_str or settings.tz_default)
    except pytz.UnknownTimeZoneError:
        tz = pytz.UTC
    return datetime.now(tz).date()


def reservation_window(
    today: date,
    days_past: Optional[int] = None,
    days_ahead: Optional[int] = None,
) -> Tuple[date, date]:
    """
    Date window fetched from the reservation feed.

    Args:
        today: Reference date
        days_past: Days before today (default from settings)
        days_ahead: Days after today (default from settings)

    Returns:
        (from, to) both inclusive
    """
    if days_past is None:
        days_past = settings.sync_days_past
    if days_ahead is None:
        days_ahead = settings.sync_days_ahead
    return today - timedelta(days=days_past), today + timedelta(days=days_ahead)


def hours_between(start: Optional[datetime], end: Optional[datetime]) -> Optional[float]:
    """Elapsed hours, or None when either timestamp is missing. May be negative."""
    start = ensure_utc(start)
    end = ensure_utc(end)
    if start is None or end is None:
        return None
    return (end - start).total_seconds() / 3600


def format_duration(start: Optional[datetime], end: Optional[datetime]) -> str:
    """`Xh Ym` rounded to the minute; `-` when missing or not positive."""
    hours = hours_between(start, end)
    if hours is None or hours <= 0:
        return "-"
    minutes = round(hours * 60)
    return f"{minutes // 60}h {minutes % 60}m"
