"""Day, week and month boundary helpers. Everything is UTC.

SQLite hands back naive datetimes, so every comparison goes through
ensure_utc() first.
"""

from __future__ import annotations

import calendar
from datetime import date, datetime, time, timedelta, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime) -> datetime:
    """Attach UTC to naive datetimes, convert aware ones to UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def normalize_to_day(value: date | datetime) -> date:
    """Drop the time-of-day component (UTC for aware datetimes)."""
    if isinstance(value, datetime):
        return ensure_utc(value).date()
    return value


def start_of_day(d: date) -> datetime:
    return datetime.combine(d, time.min, tzinfo=timezone.utc)


def end_of_day(d: date) -> datetime:
    return datetime.combine(d, time(23, 59, 59), tzinfo=timezone.utc)


def get_monday(dt: datetime | date) -> date:
    """Get the Monday of the ISO week containing dt."""
    d = normalize_to_day(dt)
    return d - timedelta(days=d.weekday())


def get_most_recent_sunday(dt: datetime | date) -> date:
    """Sunday on or before dt. Challenge 'week' windows open here."""
    d = normalize_to_day(dt)
    return d - timedelta(days=(d.weekday() + 1) % 7)


def get_week_iso(dt: datetime | date) -> str:
    """Get ISO week string e.g. '2026-W43'. Uses %G-W%V (ISO year + ISO week)."""
    return normalize_to_day(dt).strftime("%G-W%V")


def get_week_boundaries(dt: datetime | date) -> tuple[datetime, datetime]:
    """Get (Monday 00:00 UTC, Sunday 23:59:59 UTC) for the ISO week containing dt."""
    monday = get_monday(dt)
    return start_of_day(monday), end_of_day(monday + timedelta(days=6))


def get_month_boundaries(dt: datetime | date) -> tuple[datetime, datetime]:
    """Get (1st 00:00 UTC, last day 23:59:59 UTC) for the month containing dt."""
    d = normalize_to_day(dt)
    last_day = calendar.monthrange(d.year, d.month)[1]
    return start_of_day(d.replace(day=1)), end_of_day(d.replace(day=last_day))


def get_day_boundaries(dt: datetime | date) -> tuple[datetime, datetime]:
    d = normalize_to_day(dt)
    return start_of_day(d), end_of_day(d)
