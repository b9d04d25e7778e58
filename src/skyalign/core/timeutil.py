# src/skyalign/core/timeutil.py
from __future__ import annotations

from datetime import date, datetime, timedelta, timezone, tzinfo
from typing import Iterator, Tuple

UTC = timezone.utc


def as_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        raise ValueError("datetime must be timezone-aware")
    return dt.astimezone(UTC)


def local_day_bounds_utc(day: date, tz: tzinfo) -> Tuple[datetime, datetime]:
    """[00:00, next 00:00) of a local calendar day, as UTC instants."""
    start_local = datetime(day.year, day.month, day.day, tzinfo=tz)
    end_local = datetime.combine(day + timedelta(days=1), datetime.min.time(), tzinfo=tz)
    return start_local.astimezone(UTC), end_local.astimezone(UTC)


def iter_dates(start: date, end: date) -> Iterator[date]:
    """Inclusive."""
    cur = start
    while cur <= end:
        yield cur
        cur = cur + timedelta(days=1)
