from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Mapping

from ..models import BookingStatus, SlotStatus
from .errors import CapacityExceededError, InvalidStateError, ValidationError

# Bookings in these states hold seats; completed and no_show release them.
ACTIVE_BOOKING_STATUSES: frozenset[BookingStatus] = frozenset(
    {BookingStatus.TENTATIVE, BookingStatus.CONFIRMED}
)

MIN_GROUP_SIZE = 1
MAX_GROUP_SIZE = 50
MIN_SLOT_CAPACITY = 1
MAX_SLOT_CAPACITY = 1000

BOOKING_TRANSITIONS: Mapping[BookingStatus, frozenset[BookingStatus]] = {
    BookingStatus.TENTATIVE: frozenset(
        {BookingStatus.CONFIRMED, BookingStatus.CANCELLED, BookingStatus.NO_SHOW}
    ),
    BookingStatus.CONFIRMED: frozenset(
        {BookingStatus.CANCELLED, BookingStatus.COMPLETED, BookingStatus.NO_SHOW}
    ),
    BookingStatus.CANCELLED: frozenset(),
    BookingStatus.COMPLETED: frozenset(),
    BookingStatus.NO_SHOW: frozenset(),
}

# Slots in these states do not block other slots from their time window.
OFF_TIMELINE_STATUSES: frozenset[SlotStatus] = frozenset({SlotStatus.CANCELLED, SlotStatus.EXPIRED})

# EXPIRED is only ever written by the expiry sweep.
SLOT_TRANSITIONS: Mapping[SlotStatus, frozenset[SlotStatus]] = {
    SlotStatus.AVAILABLE: frozenset({SlotStatus.BOOKED, SlotStatus.MAINTENANCE, SlotStatus.CANCELLED}),
    SlotStatus.BOOKED: frozenset({SlotStatus.AVAILABLE, SlotStatus.MAINTENANCE, SlotStatus.CANCELLED}),
    SlotStatus.MAINTENANCE: frozenset({SlotStatus.AVAILABLE, SlotStatus.CANCELLED}),
    SlotStatus.CANCELLED: frozenset({SlotStatus.AVAILABLE}),
    SlotStatus.EXPIRED: frozenset(),
}


@dataclass(frozen=True)
class SlotSnapshot:
    status: SlotStatus
    capacity: int
    reserved: int

    @property
    def available(self) -> int:
        return max(self.capacity - self.reserved, 0)


def is_active(status: BookingStatus) -> bool:
    return status in ACTIVE_BOOKING_STATUSES


def validate_group_size(group_size: int) -> None:
    if group_size < MIN_GROUP_SIZE or group_size > MAX_GROUP_SIZE:
        raise ValidationError(f"group size must be between {MIN_GROUP_SIZE} and {MAX_GROUP_SIZE}")


def validate_capacity_value(capacity: int) -> None:
    if capacity < MIN_SLOT_CAPACITY or capacity > MAX_SLOT_CAPACITY:
        raise ValidationError(f"capacity must be between {MIN_SLOT_CAPACITY} and {MAX_SLOT_CAPACITY}")


def ensure_fits(snapshot: SlotSnapshot, *, group_size: int) -> int:
    """
    Pure capacity check against a snapshot taken under the slot lock.
    Returns remaining capacity after the group is seated.
    """
    if group_size > snapshot.available:
        raise CapacityExceededError(
            f"not enough capacity: available {snapshot.available}, requested {group_size}",
            available=snapshot.available,
            requested=group_size,
        )
    return snapshot.available - group_size


def validate_new_booking(snapshot: SlotSnapshot, *, group_size: int) -> int:
    validate_group_size(group_size)
    if snapshot.status != SlotStatus.AVAILABLE:
        raise ValidationError(f"slot is not available for booking (status: {snapshot.status})")
    return ensure_fits(snapshot, group_size=group_size)


def ensure_booking_transition(current: BookingStatus, target: BookingStatus) -> None:
    if target not in BOOKING_TRANSITIONS[current]:
        raise InvalidStateError(f"booking cannot move from {current} to {target}")


def ensure_slot_transition(current: SlotStatus, target: SlotStatus) -> None:
    if target not in SLOT_TRANSITIONS[current]:
        raise InvalidStateError(f"slot cannot move from {current} to {target}")


def require_reason(reason: str | None) -> str:
    if reason is None or not reason.strip():
        raise ValidationError("cancellation reason is required")
    return reason.strip()


def calculate_booking_total(
    *,
    base_price: Decimal,
    group_size: int,
    discount_percentage: Decimal = Decimal("0"),
    min_group_size: int | None = None,
) -> Decimal:
    total = base_price * group_size
    if min_group_size and group_size >= min_group_size:
        total = total * (Decimal("1") - discount_percentage / Decimal("100"))
    return total.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
