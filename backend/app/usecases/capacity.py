"""Slot capacity accounting.

The live sum of active group sizes is the only source of truth for a
capacity decision. `VisitSlot.booked_count` is a read cache that
`reconcile_booked_count` rewrites inside the same transaction as any
booking mutation. Callers that go on to write must hold the slot row lock
(`SlotRepository.get_for_update`) for the whole check-then-act sequence.
"""

from dataclasses import dataclass

from ..domain.errors import NotFoundError, ValidationError
from ..domain.repositories import BookingRepository, SlotRepository
from ..domain.services import MIN_GROUP_SIZE, SlotSnapshot
from ..models import SlotStatus, VisitSlot


@dataclass(frozen=True)
class CapacitySummary:
    capacity: int
    booked: int
    available: int


@dataclass(frozen=True)
class AvailabilityCheck:
    slot_id: int
    slot_status: SlotStatus
    is_available: bool
    capacity: int
    available: int
    requested: int
    conflicting_bookings: int


async def snapshot_slot(
    booking_repo: BookingRepository,
    slot: VisitSlot,
    *,
    exclude_booking_id: int | None = None,
) -> SlotSnapshot:
    reserved = await booking_repo.sum_active(slot.id, exclude_booking_id=exclude_booking_id)
    return SlotSnapshot(status=slot.status, capacity=slot.capacity, reserved=reserved)


async def compute_available_capacity(
    slot_repo: SlotRepository,
    booking_repo: BookingRepository,
    *,
    slot_id: int,
) -> CapacitySummary:
    slot = await slot_repo.get(slot_id)
    if slot is None:
        raise NotFoundError("slot not found")
    snapshot = await snapshot_slot(booking_repo, slot)
    return CapacitySummary(capacity=slot.capacity, booked=snapshot.reserved, available=snapshot.available)


async def check_availability(
    slot_repo: SlotRepository,
    booking_repo: BookingRepository,
    *,
    slot_id: int,
    group_size: int,
    exclude_booking_id: int | None = None,
) -> AvailabilityCheck:
    """Answer whether `group_size` more people can book now, optionally ignoring one booking's own seats.

    Only an `available` slot accepts bookings, so any other status reports
    `is_available=False` while still returning the capacity figures.
    """
    if group_size < MIN_GROUP_SIZE:
        raise ValidationError("requested group size must be at least 1")
    slot = await slot_repo.get(slot_id)
    if slot is None:
        raise NotFoundError("slot not found")
    snapshot = await snapshot_slot(booking_repo, slot, exclude_booking_id=exclude_booking_id)
    conflicting = await booking_repo.count_active(slot_id, exclude_booking_id=exclude_booking_id)
    return AvailabilityCheck(
        slot_id=slot_id,
        slot_status=slot.status,
        is_available=slot.status == SlotStatus.AVAILABLE and group_size <= snapshot.available,
        capacity=slot.capacity,
        available=snapshot.available,
        requested=group_size,
        conflicting_bookings=conflicting,
    )


async def reconcile_booked_count(
    slot_repo: SlotRepository,
    booking_repo: BookingRepository,
    *,
    slot_id: int,
) -> int:
    """Recompute and persist the cached booked count under the slot lock. Idempotent."""
    slot = await slot_repo.get_for_update(slot_id)
    if slot is None:
        raise NotFoundError("slot not found")
    return await reconcile_slot(slot_repo, booking_repo, slot)


async def reconcile_slot(slot_repo: SlotRepository, booking_repo: BookingRepository, slot: VisitSlot) -> int:
    booked = await booking_repo.sum_active(slot.id)
    if slot.booked_count != booked:
        slot.booked_count = booked
        await slot_repo.save(slot)
    return booked
