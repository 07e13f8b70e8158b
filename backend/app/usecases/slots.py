import calendar
import logging
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Any, Mapping, Sequence

from ..domain.errors import ConflictError, NotFoundError, ValidationError
from ..domain.repositories import BookingRepository, SlotFilters, SlotRepository
from ..domain.services import OFF_TIMELINE_STATUSES, ensure_slot_transition, validate_capacity_value
from ..domain.timeslots import (
    MAX_SLOT_MINUTES,
    MIN_SLOT_MINUTES,
    day_slot_starts,
    find_overlap,
    from_minutes,
    normalize_time,
    to_minutes,
    window_minutes,
)
from ..models import SlotStatus, VisitSlot
from ..utils.time import Clock, slot_start, utc_now, venue_now, venue_today
from .capacity import reconcile_slot

logger = logging.getLogger(__name__)

CREATABLE_STATUSES = frozenset({SlotStatus.AVAILABLE, SlotStatus.MAINTENANCE})
UPDATABLE_FIELDS = frozenset({"date", "start_time", "end_time", "capacity", "status", "description"})


@dataclass(frozen=True)
class ExpiryResult:
    expired_count: int
    cutoff_date: date
    slot_ids: list[int] = field(default_factory=list)


@dataclass(frozen=True)
class ScheduleGeneration:
    created: list[VisitSlot]
    skipped_dates: list[date]

    @property
    def skipped(self) -> int:
        return len(self.skipped_dates)


async def create_slot(
    slot_repo: SlotRepository,
    *,
    slot_date: date,
    start_time: str,
    end_time: str,
    capacity: int,
    created_by: int | None,
    tz_name: str,
    description: str | None = None,
    status: SlotStatus = SlotStatus.AVAILABLE,
    clock: Clock = utc_now,
) -> VisitSlot:
    if slot_date < venue_today(clock, tz_name):
        raise ValidationError("cannot create slots in the past")
    start = normalize_time(start_time)
    end = normalize_time(end_time)
    duration = window_minutes(start, end)
    validate_capacity_value(capacity)
    if status not in CREATABLE_STATUSES:
        raise ValidationError(f"slots cannot be created with status {status}")

    peers = await slot_repo.list_on_date_for_update(slot_date)
    _ensure_no_overlap(start, end, peers)

    now = clock()
    slot = await slot_repo.create(
        date=slot_date,
        start_time=start,
        end_time=end,
        duration_minutes=duration,
        capacity=capacity,
        booked_count=0,
        status=status,
        description=description,
        created_by=created_by,
        created_at=now,
        updated_at=now,
    )
    logger.info("slot %s created for %s %s-%s", slot.id, slot_date, start, end)
    return slot


async def update_slot(
    slot_repo: SlotRepository,
    booking_repo: BookingRepository,
    *,
    slot_id: int,
    changes: Mapping[str, Any],
    tz_name: str,
    clock: Clock = utc_now,
) -> VisitSlot:
    unknown = set(changes) - UPDATABLE_FIELDS
    if unknown:
        raise ValidationError(f"fields cannot be updated: {', '.join(sorted(unknown))}")
    if not changes:
        raise ValidationError("no valid fields to update")

    slot = await slot_repo.get_for_update(slot_id)
    if slot is None:
        raise NotFoundError("slot not found")

    new_date = changes.get("date") or slot.date
    if "date" in changes and new_date < venue_today(clock, tz_name):
        raise ValidationError("cannot move slot to a past date")
    start = normalize_time(changes.get("start_time") or slot.start_time)
    end = normalize_time(changes.get("end_time") or slot.end_time)
    duration = window_minutes(start, end)

    capacity = changes.get("capacity")
    if capacity is not None:
        validate_capacity_value(capacity)
        reserved = await booking_repo.sum_active(slot.id)
        if capacity < reserved:
            raise ValidationError(f"cannot reduce capacity to {capacity}: {reserved} places already booked")
        slot.capacity = capacity

    status = changes.get("status")
    rejoins_timeline = False
    if status is not None and status != slot.status:
        ensure_slot_transition(slot.status, status)
        rejoins_timeline = slot.status in OFF_TIMELINE_STATUSES and status not in OFF_TIMELINE_STATUSES

    if rejoins_timeline or (new_date, start, end) != (slot.date, slot.start_time, slot.end_time):
        peers = await slot_repo.list_on_date_for_update(new_date, exclude_slot_id=slot.id)
        _ensure_no_overlap(start, end, peers)

    if status is not None:
        slot.status = status
    slot.date = new_date
    slot.start_time = start
    slot.end_time = end
    slot.duration_minutes = duration
    if "description" in changes:
        slot.description = changes["description"]
    slot.updated_at = clock()
    await slot_repo.save(slot)
    await reconcile_slot(slot_repo, booking_repo, slot)
    return slot


async def delete_slot(
    slot_repo: SlotRepository,
    booking_repo: BookingRepository,
    *,
    slot_id: int,
) -> VisitSlot:
    slot = await slot_repo.get_for_update(slot_id)
    if slot is None:
        raise NotFoundError("slot not found")
    active = await booking_repo.count_active(slot.id)
    if active > 0:
        raise ValidationError(f"cannot delete slot with {active} active bookings")
    await booking_repo.delete_for_slot(slot.id)
    await slot_repo.delete(slot)
    return slot


async def get_slot(slot_repo: SlotRepository, *, slot_id: int) -> VisitSlot:
    slot = await slot_repo.get(slot_id)
    if slot is None:
        raise NotFoundError("slot not found")
    return slot


async def list_slots(
    slot_repo: SlotRepository,
    *,
    filters: SlotFilters,
    page: int = 1,
    limit: int = 20,
) -> tuple[list[VisitSlot], int]:
    if page < 1 or limit < 1:
        raise ValidationError("page and limit must be >= 1")
    if filters.date_from and filters.date_to and filters.date_to < filters.date_from:
        raise ValidationError("date range is inverted")
    return await slot_repo.list(filters, page=page, limit=limit)


async def get_public_available_slots(
    slot_repo: SlotRepository,
    *,
    tz_name: str,
    date_from: date | None = None,
    date_to: date | None = None,
    clock: Clock = utc_now,
) -> list[VisitSlot]:
    """Open slots with spare capacity whose start is still ahead."""
    today = venue_today(clock, tz_name)
    start_day = max(date_from or today, today)
    if date_to is not None and date_to < start_day:
        return []
    now = venue_now(clock, tz_name)
    rows = await slot_repo.list_bookable(start_day, date_to)
    return [
        slot
        for slot in rows
        if slot.status == SlotStatus.AVAILABLE
        and slot.booked_count < slot.capacity
        and slot_start(slot.date, slot.start_time) > now
    ]


async def expire_past_unbooked_slots(
    slot_repo: SlotRepository,
    *,
    tz_name: str,
    target: SlotStatus = SlotStatus.EXPIRED,
    reference_date: date | None = None,
    clock: Clock = utc_now,
) -> ExpiryResult:
    """Move slots dated strictly before the cutoff and holding no active bookings to `target`."""
    cutoff = reference_date or venue_today(clock, tz_name)
    slot_ids = await slot_repo.expire_unbooked_before(cutoff, target=target, now=clock())
    if slot_ids:
        logger.info("expired %s slots dated before %s", len(slot_ids), cutoff.isoformat())
    return ExpiryResult(expired_count=len(slot_ids), cutoff_date=cutoff, slot_ids=slot_ids)


async def generate_schedules(
    slot_repo: SlotRepository,
    *,
    month: int,
    year: int,
    day_start_time: str,
    day_end_time: str,
    slot_duration: int,
    capacity: int,
    created_by: int | None,
    tz_name: str,
    excluded_days: Sequence[int] = (),
    vacant_ranges: Sequence[tuple[str, str]] = (),
    clock: Clock = utc_now,
) -> ScheduleGeneration:
    """
    Fill a month with back-to-back slots.

    `excluded_days` uses 0 for Sunday through 6 for Saturday. A slot whose
    start falls inside a vacant range is left out. Past days are skipped
    and reported; any target day that already has slots aborts the run.
    """
    if month < 1 or month > 12:
        raise ValidationError("invalid month")
    if year < 2020 or year > 2100:
        raise ValidationError("invalid year")
    if slot_duration < MIN_SLOT_MINUTES or slot_duration > MAX_SLOT_MINUTES:
        raise ValidationError(f"slot duration must be between {MIN_SLOT_MINUTES} and {MAX_SLOT_MINUTES} minutes")
    validate_capacity_value(capacity)
    day_start = normalize_time(day_start_time)
    day_end = normalize_time(day_end_time)
    if day_start >= day_end:
        raise ValidationError("day end time must be after day start time")
    ranges = _validate_vacant_ranges(vacant_ranges, day_start, day_end)

    starts = day_slot_starts(day_start, day_end, slot_duration, ranges)
    if not starts:
        raise ValidationError("no time slots can be generated with the current configuration")

    today = venue_today(clock, tz_name)
    first = date(year, month, 1)
    last = date(year, month, calendar.monthrange(year, month)[1])
    skipped: list[date] = []
    target_days: list[date] = []
    day = first
    while day <= last:
        # date.weekday() is Monday=0; the request counts from Sunday=0.
        if (day.weekday() + 1) % 7 not in excluded_days:
            if day < today:
                skipped.append(day)
            else:
                target_days.append(day)
        day += timedelta(days=1)

    taken = await slot_repo.dates_with_slots(first, last)
    clashes = sorted(d for d in target_days if d in taken)
    if clashes:
        listed = ", ".join(d.isoformat() for d in clashes[:10])
        more = f" and {len(clashes) - 10} more" if len(clashes) > 10 else ""
        raise ConflictError(f"{len(clashes)} date(s) in {month}/{year} already have visit slots: {listed}{more}")

    now = clock()
    rows = [
        {
            "date": target,
            "start_time": start,
            "end_time": from_minutes(to_minutes(start) + slot_duration),
            "duration_minutes": slot_duration,
            "capacity": capacity,
            "booked_count": 0,
            "status": SlotStatus.AVAILABLE,
            "description": None,
            "created_by": created_by,
            "created_at": now,
            "updated_at": now,
        }
        for target in target_days
        for start in starts
    ]
    created = await slot_repo.create_many(rows) if rows else []
    logger.info("generated %s slots for %s/%s, skipped %s days", len(created), month, year, len(skipped))
    return ScheduleGeneration(created=created, skipped_dates=skipped)


def _ensure_no_overlap(start: str, end: str, peers: Sequence[VisitSlot]) -> None:
    clash = find_overlap(start, end, ((p.start_time, p.end_time) for p in peers))
    if clash is not None:
        raise ConflictError(f"time slot conflicts with existing slot {clash[0]}-{clash[1]}")


def _validate_vacant_ranges(
    vacant_ranges: Sequence[tuple[str, str]],
    day_start: str,
    day_end: str,
) -> list[tuple[str, str]]:
    ranges: list[tuple[str, str]] = []
    for raw_start, raw_end in vacant_ranges:
        start, end = normalize_time(raw_start), normalize_time(raw_end)
        if start >= end:
            raise ValidationError(f"invalid vacant range: {raw_start} - {raw_end}")
        if start < day_start or end > day_end:
            raise ValidationError(f"vacant range {raw_start} - {raw_end} is outside the day window")
        clash = find_overlap(start, end, ranges)
        if clash is not None:
            raise ValidationError(f"vacant ranges overlap: {clash[0]}-{clash[1]} and {start}-{end}")
        ranges.append((start, end))
    return ranges
