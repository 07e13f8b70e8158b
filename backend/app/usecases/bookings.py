import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Any, Mapping

from ..domain.errors import InvalidStateError, NotFoundError, ValidationError
from ..domain.notifications import BookingEvent, BookingNotifier
from ..domain.repositories import (
    BookingFilters,
    BookingRepository,
    BookingStatistics,
    PricingRuleRepository,
    SlotRepository,
    VisitorRepository,
)
from ..domain.services import (
    calculate_booking_total,
    ensure_booking_transition,
    ensure_fits,
    is_active,
    require_reason,
    validate_group_size,
    validate_new_booking,
)
from ..models import Booking, BookingStatus, PaymentMethod, PaymentStatus, Visitor, VisitSlot
from ..utils.time import Clock, utc_now, venue_today
from .capacity import reconcile_slot, snapshot_slot

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = frozenset(
    {
        "status",
        "group_size",
        "total_amount",
        "payment_status",
        "payment_method",
        "notes",
        "special_requests",
        "cancellation_reason",
        "confirmed_at",
    }
)
REQUIRED_FIELDS = frozenset({"status", "group_size", "total_amount", "payment_status"})


@dataclass(frozen=True)
class ReminderRun:
    day: date
    sent: int
    failed: int


async def create_booking(
    slot_repo: SlotRepository,
    booking_repo: BookingRepository,
    visitor_repo: VisitorRepository,
    pricing_repo: PricingRuleRepository,
    *,
    slot_id: int,
    visitor_id: int,
    group_size: int,
    created_by: int | None,
    default_price: Decimal,
    special_requests: str | None = None,
    notes: str | None = None,
    payment_method: PaymentMethod | None = None,
    payment_status: PaymentStatus | None = None,
    total_amount: Decimal | None = None,
    clock: Clock = utc_now,
) -> tuple[Booking, VisitSlot]:
    validate_group_size(group_size)
    slot = await slot_repo.get_for_update(slot_id)
    if slot is None:
        raise NotFoundError("slot not found")
    visitor = await visitor_repo.get(visitor_id)
    if visitor is None:
        raise NotFoundError("visitor not found")

    snapshot = await snapshot_slot(booking_repo, slot)
    validate_new_booking(snapshot, group_size=group_size)

    if total_amount is None:
        total_amount = await quote_booking_total(
            pricing_repo,
            visitor=visitor,
            slot_date=slot.date,
            group_size=group_size,
            default_price=default_price,
        )
    elif total_amount < 0:
        raise ValidationError("total amount must not be negative")

    now = clock()
    booking = await booking_repo.create(
        slot_id=slot.id,
        visitor_id=visitor.id,
        group_size=group_size,
        status=BookingStatus.TENTATIVE,
        total_amount=total_amount,
        payment_status=payment_status or PaymentStatus.PENDING,
        payment_method=payment_method,
        notes=notes,
        special_requests=special_requests,
        created_by=created_by,
        created_at=now,
        updated_at=now,
    )
    await reconcile_slot(slot_repo, booking_repo, slot)
    logger.info("booking %s created on slot %s for %s people", booking.id, slot.id, group_size)
    return booking, slot


async def quote_booking_total(
    pricing_repo: PricingRuleRepository,
    *,
    visitor: Visitor,
    slot_date: date,
    group_size: int,
    default_price: Decimal,
) -> Decimal:
    rule = await pricing_repo.find_applicable(visitor.visitor_type, slot_date)
    if rule is None:
        return calculate_booking_total(base_price=default_price, group_size=group_size)
    return calculate_booking_total(
        base_price=rule.base_price,
        group_size=group_size,
        discount_percentage=rule.group_discount_percentage,
        min_group_size=rule.min_group_size,
    )


async def update_booking(
    slot_repo: SlotRepository,
    booking_repo: BookingRepository,
    *,
    booking_id: int,
    changes: Mapping[str, Any],
    clock: Clock = utc_now,
) -> tuple[Booking, VisitSlot, BookingStatus]:
    unknown = set(changes) - UPDATABLE_FIELDS
    if unknown:
        raise ValidationError(f"fields cannot be updated: {', '.join(sorted(unknown))}")
    if not changes:
        raise ValidationError("no valid fields to update")
    nulled = sorted(name for name in REQUIRED_FIELDS if name in changes and changes[name] is None)
    if nulled:
        raise ValidationError(f"fields cannot be null: {', '.join(nulled)}")

    booking, slot = await _lock_booking(slot_repo, booking_repo, booking_id)
    status_from = booking.status
    target = changes.get("status") or booking.status
    if target != booking.status:
        ensure_booking_transition(booking.status, target)

    new_size = changes.get("group_size")
    if new_size is not None:
        validate_group_size(new_size)
        if is_active(target) and new_size != booking.group_size:
            # The booking's own seats are released before re-checking.
            snapshot = await snapshot_slot(booking_repo, slot, exclude_booking_id=booking.id)
            ensure_fits(snapshot, group_size=new_size)
        booking.group_size = new_size

    total_amount = changes.get("total_amount")
    if total_amount is not None:
        if total_amount < 0:
            raise ValidationError("total amount must not be negative")
        booking.total_amount = total_amount

    for name in ("payment_status", "payment_method", "notes", "special_requests"):
        if name in changes:
            setattr(booking, name, changes[name])

    now = clock()
    if target != booking.status:
        if target == BookingStatus.CANCELLED:
            booking.cancellation_reason = require_reason(changes.get("cancellation_reason"))
            booking.cancelled_at = now
        elif target == BookingStatus.CONFIRMED:
            booking.confirmed_at = changes.get("confirmed_at") or now
        booking.status = target
    elif "cancellation_reason" in changes:
        booking.cancellation_reason = changes["cancellation_reason"]

    booking.updated_at = now
    await booking_repo.save(booking)
    await reconcile_slot(slot_repo, booking_repo, slot)
    return booking, slot, status_from


async def confirm_booking(
    slot_repo: SlotRepository,
    booking_repo: BookingRepository,
    *,
    booking_id: int,
    confirmed_at: datetime | None = None,
    clock: Clock = utc_now,
) -> tuple[Booking, VisitSlot, BookingStatus]:
    booking, slot = await _lock_booking(slot_repo, booking_repo, booking_id)
    status_from = booking.status
    if booking.status != BookingStatus.TENTATIVE:
        raise InvalidStateError(f"only tentative bookings can be confirmed (status: {booking.status})")

    now = clock()
    booking.status = BookingStatus.CONFIRMED
    booking.confirmed_at = confirmed_at or now
    booking.updated_at = now
    await booking_repo.save(booking)
    await reconcile_slot(slot_repo, booking_repo, slot)
    return booking, slot, status_from


async def cancel_booking(
    slot_repo: SlotRepository,
    booking_repo: BookingRepository,
    *,
    booking_id: int,
    reason: str | None,
    cancelled_at: datetime | None = None,
    clock: Clock = utc_now,
) -> tuple[Booking, VisitSlot, BookingStatus]:
    reason = require_reason(reason)
    booking, slot = await _lock_booking(slot_repo, booking_repo, booking_id)
    status_from = booking.status
    # Idempotent: already cancelled returns as-is
    if booking.status == BookingStatus.CANCELLED:
        return booking, slot, status_from
    ensure_booking_transition(booking.status, BookingStatus.CANCELLED)

    now = clock()
    booking.status = BookingStatus.CANCELLED
    booking.cancellation_reason = reason
    booking.cancelled_at = cancelled_at or now
    booking.updated_at = now
    await booking_repo.save(booking)
    await reconcile_slot(slot_repo, booking_repo, slot)
    return booking, slot, status_from


async def delete_booking(
    slot_repo: SlotRepository,
    booking_repo: BookingRepository,
    *,
    booking_id: int,
) -> tuple[Booking, VisitSlot]:
    booking, slot = await _lock_booking(slot_repo, booking_repo, booking_id)
    await booking_repo.delete(booking)
    await reconcile_slot(slot_repo, booking_repo, slot)
    return booking, slot


async def update_booking_payment(
    booking_repo: BookingRepository,
    *,
    booking_id: int,
    payment_status: PaymentStatus,
    payment_method: PaymentMethod | None = None,
    total_amount: Decimal | None = None,
    clock: Clock = utc_now,
) -> Booking:
    booking = await booking_repo.get_for_update(booking_id)
    if booking is None:
        raise NotFoundError("booking not found")
    if total_amount is not None and total_amount < 0:
        raise ValidationError("total amount must not be negative")

    booking.payment_status = payment_status
    if payment_method is not None:
        booking.payment_method = payment_method
    if total_amount is not None:
        booking.total_amount = total_amount
    booking.updated_at = clock()
    return await booking_repo.save(booking)


async def get_booking(booking_repo: BookingRepository, *, booking_id: int) -> Booking:
    booking = await booking_repo.get(booking_id)
    if booking is None:
        raise NotFoundError("booking not found")
    return booking


async def list_bookings(
    booking_repo: BookingRepository,
    *,
    filters: BookingFilters,
    page: int = 1,
    limit: int = 20,
) -> tuple[list[Booking], int]:
    if page < 1 or limit < 1:
        raise ValidationError("page and limit must be >= 1")
    _validate_ranges(filters)
    # A slot's bookings are shown in queue order.
    return await booking_repo.list(filters, page=page, limit=limit, oldest_first=filters.slot_id is not None)


async def list_visitor_bookings(booking_repo: BookingRepository, *, visitor_id: int) -> list[Booking]:
    rows, _ = await booking_repo.list(BookingFilters(visitor_id=visitor_id), page=1, limit=None)
    return rows


async def list_slot_bookings(booking_repo: BookingRepository, *, slot_id: int) -> list[Booking]:
    rows, _ = await booking_repo.list(BookingFilters(slot_id=slot_id), page=1, limit=None, oldest_first=True)
    return rows


async def booking_statistics(
    booking_repo: BookingRepository,
    *,
    days: int = 30,
    top_methods: int = 5,
    clock: Clock = utc_now,
) -> BookingStatistics:
    if days < 1:
        raise ValidationError("days must be >= 1")
    since = clock() - timedelta(days=days)
    return await booking_repo.statistics(since=since, top_methods=top_methods)


async def send_booking_reminders(
    booking_repo: BookingRepository,
    notifier: BookingNotifier,
    *,
    lead_days: int,
    tz_name: str,
    clock: Clock = utc_now,
) -> ReminderRun:
    day = venue_today(clock, tz_name) + timedelta(days=lead_days)
    sent = failed = 0
    for booking in await booking_repo.list_confirmed_on(day):
        if await notifier.notify_booking_event(booking.id, BookingEvent.REMINDER):
            sent += 1
        else:
            failed += 1
    logger.info("booking reminders for %s: sent=%s failed=%s", day, sent, failed)
    return ReminderRun(day=day, sent=sent, failed=failed)


async def _lock_booking(
    slot_repo: SlotRepository,
    booking_repo: BookingRepository,
    booking_id: int,
) -> tuple[Booking, VisitSlot]:
    """Lock the owning slot, then the booking, always in that order."""
    existing = await booking_repo.get(booking_id)
    if existing is None:
        raise NotFoundError("booking not found")
    slot = await slot_repo.get_for_update(existing.slot_id)
    if slot is None:
        raise NotFoundError("slot not found")
    booking = await booking_repo.get_for_update(booking_id)
    if booking is None:
        raise NotFoundError("booking not found")
    return booking, slot


def _validate_ranges(filters: BookingFilters) -> None:
    pairs = (
        (filters.date_from, filters.date_to, "date"),
        (filters.group_size_min, filters.group_size_max, "group size"),
        (filters.total_amount_min, filters.total_amount_max, "total amount"),
    )
    for low, high, label in pairs:
        if low is not None and high is not None and high < low:
            raise ValidationError(f"{label} range is inverted")
