"""Wall-clock helpers for slot windows.

Slot times are venue-local strings. Everything here works on "HH:MM:SS"
after `normalize_time`, so plain minute arithmetic is enough.
"""

import re
from typing import Iterable, Sequence

from .errors import ValidationError

_TIME_RE = re.compile(r"^([01]?\d|2[0-3]):([0-5]\d)(?::([0-5]\d))?$")

MIN_SLOT_MINUTES = 15
MAX_SLOT_MINUTES = 480


def normalize_time(value: str) -> str:
    """Accept HH:MM or HH:MM:SS and return zero-padded HH:MM:SS."""
    if not value or not value.strip():
        raise ValidationError("time is required")
    match = _TIME_RE.match(value.strip())
    if match is None:
        raise ValidationError(f"time must be in format HH:MM or HH:MM:SS, got {value!r}")
    hours, minutes, seconds = match.group(1), match.group(2), match.group(3) or "00"
    return f"{int(hours):02d}:{minutes}:{seconds}"


def to_minutes(value: str) -> int:
    hours, minutes = (int(part) for part in value.split(":")[:2])
    return hours * 60 + minutes


def from_minutes(total: int) -> str:
    return f"{total // 60:02d}:{total % 60:02d}:00"


def window_minutes(start_time: str, end_time: str) -> int:
    """Validate an ordered window and return its length in minutes."""
    start = normalize_time(start_time)
    end = normalize_time(end_time)
    if start >= end:
        raise ValidationError("start time must be before end time")
    duration = to_minutes(end) - to_minutes(start)
    if duration < MIN_SLOT_MINUTES or duration > MAX_SLOT_MINUTES:
        raise ValidationError(
            f"slot duration must be between {MIN_SLOT_MINUTES} and {MAX_SLOT_MINUTES} minutes"
        )
    return duration


def windows_overlap(a_start: str, a_end: str, b_start: str, b_end: str) -> bool:
    """Half-open [start, end) intersection; touching endpoints do not overlap."""
    return a_start < b_end and b_start < a_end


def find_overlap(
    start_time: str,
    end_time: str,
    others: Iterable[tuple[str, str]],
) -> tuple[str, str] | None:
    for other_start, other_end in others:
        if windows_overlap(start_time, end_time, other_start, other_end):
            return other_start, other_end
    return None


def day_slot_starts(
    day_start: str,
    day_end: str,
    duration: int,
    vacant_ranges: Sequence[tuple[str, str]] = (),
) -> list[str]:
    """Back-to-back slot starts for one day, skipping starts inside a vacant range."""
    current = to_minutes(day_start)
    end = to_minutes(day_end)
    starts: list[str] = []
    while current + duration <= end:
        start = from_minutes(current)
        if not any(range_start <= start < range_end for range_start, range_end in vacant_ranges):
            starts.append(start)
        current += duration
    return starts
