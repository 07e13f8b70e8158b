from datetime import date, datetime, time, timezone
from typing import Callable
from zoneinfo import ZoneInfo

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    """Naive UTC now, matching how timestamps are stored."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_utc_naive(dt: datetime) -> datetime:
    """Convert to the stored representation; naive input is taken as UTC already."""
    if dt.tzinfo is None:
        return dt
    return dt.astimezone(timezone.utc).replace(tzinfo=None)


def venue_now(clock: Clock, tz_name: str) -> datetime:
    """Venue-local naive wall clock for a naive-UTC clock reading."""
    return clock().replace(tzinfo=timezone.utc).astimezone(ZoneInfo(tz_name)).replace(tzinfo=None)


def venue_today(clock: Clock, tz_name: str) -> date:
    return venue_now(clock, tz_name).date()


def slot_start(slot_date: date, start_time: str) -> datetime:
    """Venue-local naive start of a slot."""
    return datetime.combine(slot_date, time.fromisoformat(start_time))
