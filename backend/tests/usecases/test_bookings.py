import asyncio
from datetime import date, datetime
from decimal import Decimal

import pytest
from app.domain.errors import CapacityExceededError, InvalidStateError, NotFoundError, ValidationError
from app.domain.repositories import BookingFilters
from app.models import BookingStatus, PaymentMethod, PaymentStatus, SlotStatus, VisitorType
from app.usecases import bookings as uc

from tests.fakes import NOW, SLOT_DAY, RecordingNotifier, Repos, fixed_clock, make_repos

DEFAULT_PRICE = Decimal("15.00")


async def _create(repos: Repos, *, slot_id: int, visitor_id: int, group_size: int, **kwargs):
    async with repos.store.transaction():
        return await uc.create_booking(
            repos.slots,
            repos.bookings,
            repos.visitors,
            repos.pricing,
            slot_id=slot_id,
            visitor_id=visitor_id,
            group_size=group_size,
            created_by=1,
            default_price=DEFAULT_PRICE,
            clock=fixed_clock(),
            **kwargs,
        )


async def _cancel(repos: Repos, booking_id: int, reason: str | None = "visitor request"):
    async with repos.store.transaction():
        return await uc.cancel_booking(
            repos.slots,
            repos.bookings,
            booking_id=booking_id,
            reason=reason,
            clock=fixed_clock(),
        )


async def _update(repos: Repos, booking_id: int, **changes):
    async with repos.store.transaction():
        return await uc.update_booking(
            repos.slots,
            repos.bookings,
            booking_id=booking_id,
            changes=changes,
            clock=fixed_clock(),
        )


@pytest.mark.asyncio
async def test_create_booking_is_tentative_and_reconciles_slot() -> None:
    repos = make_repos()
    slot = repos.store.add_slot(capacity=10)
    visitor = repos.store.add_visitor()

    booking, returned_slot = await _create(repos, slot_id=slot.id, visitor_id=visitor.id, group_size=4)

    assert booking.status == BookingStatus.TENTATIVE
    assert booking.payment_status == PaymentStatus.PENDING
    assert booking.total_amount == Decimal("60.00")
    assert returned_slot is slot
    assert slot.booked_count == 4


@pytest.mark.asyncio
async def test_create_booking_missing_slot_or_visitor() -> None:
    repos = make_repos()
    slot = repos.store.add_slot()
    visitor = repos.store.add_visitor()

    with pytest.raises(NotFoundError):
        await _create(repos, slot_id=999, visitor_id=visitor.id, group_size=1)
    with pytest.raises(NotFoundError):
        await _create(repos, slot_id=slot.id, visitor_id=999, group_size=1)


@pytest.mark.asyncio
async def test_create_booking_rejects_unavailable_slot() -> None:
    repos = make_repos()
    slot = repos.store.add_slot(status=SlotStatus.MAINTENANCE)
    visitor = repos.store.add_visitor()

    with pytest.raises(ValidationError):
        await _create(repos, slot_id=slot.id, visitor_id=visitor.id, group_size=1)


@pytest.mark.asyncio
async def test_create_booking_rejects_group_over_limit() -> None:
    repos = make_repos()
    slot = repos.store.add_slot(capacity=100)
    visitor = repos.store.add_visitor()

    with pytest.raises(ValidationError):
        await _create(repos, slot_id=slot.id, visitor_id=visitor.id, group_size=51)


@pytest.mark.asyncio
async def test_create_booking_applies_group_discount_rule() -> None:
    repos = make_repos()
    slot = repos.store.add_slot(capacity=40)
    visitor = repos.store.add_visitor(visitor_type=VisitorType.SCHOOL)
    repos.store.add_pricing_rule(
        visitor_type=VisitorType.SCHOOL,
        base_price=Decimal("10.00"),
        group_discount_percentage=Decimal("12.5"),
        min_group_size=10,
    )

    booking, _ = await _create(repos, slot_id=slot.id, visitor_id=visitor.id, group_size=20)

    assert booking.total_amount == Decimal("175.00")


@pytest.mark.asyncio
async def test_create_booking_keeps_explicit_total_and_payment() -> None:
    repos = make_repos()
    slot = repos.store.add_slot()
    visitor = repos.store.add_visitor()

    booking, _ = await _create(
        repos,
        slot_id=slot.id,
        visitor_id=visitor.id,
        group_size=2,
        total_amount=Decimal("0.00"),
        payment_method=PaymentMethod.CASH,
        payment_status=PaymentStatus.PAID,
        special_requests="wheelchair access",
    )

    assert booking.total_amount == Decimal("0.00")
    assert booking.payment_method == PaymentMethod.CASH
    assert booking.payment_status == PaymentStatus.PAID
    assert booking.special_requests == "wheelchair access"


@pytest.mark.asyncio
async def test_concurrent_bookings_cannot_overfill_slot() -> None:
    repos = make_repos()
    slot = repos.store.add_slot(capacity=10)
    first = repos.store.add_visitor()
    second = repos.store.add_visitor(email="grace@example.com")

    results = await asyncio.gather(
        _create(repos, slot_id=slot.id, visitor_id=first.id, group_size=6),
        _create(repos, slot_id=slot.id, visitor_id=second.id, group_size=6),
        return_exceptions=True,
    )

    successes = [r for r in results if not isinstance(r, BaseException)]
    failures = [r for r in results if isinstance(r, CapacityExceededError)]
    assert len(successes) == 1
    assert len(failures) == 1
    assert slot.booked_count == 6
    assert repos.store.active_sum(slot.id) == 6


@pytest.mark.asyncio
async def test_cancellation_releases_capacity() -> None:
    repos = make_repos()
    slot = repos.store.add_slot(capacity=5)
    visitor = repos.store.add_visitor()

    first, _ = await _create(repos, slot_id=slot.id, visitor_id=visitor.id, group_size=5)
    with pytest.raises(CapacityExceededError) as excinfo:
        await _create(repos, slot_id=slot.id, visitor_id=visitor.id, group_size=1)
    assert excinfo.value.available == 0
    assert excinfo.value.requested == 1

    await _cancel(repos, first.id)
    second, _ = await _create(repos, slot_id=slot.id, visitor_id=visitor.id, group_size=1)

    assert second.status == BookingStatus.TENTATIVE
    assert slot.booked_count == 1


@pytest.mark.asyncio
async def test_update_group_size_rechecks_without_own_seats() -> None:
    repos = make_repos()
    slot = repos.store.add_slot(capacity=10)
    repos.store.add_booking(slot, group_size=5)
    mine = repos.store.add_booking(slot, group_size=3)
    slot.booked_count = 8

    with pytest.raises(CapacityExceededError):
        await _update(repos, mine.id, group_size=6)
    assert mine.group_size == 3

    booking, _, _ = await _update(repos, mine.id, group_size=4)

    assert booking.group_size == 4
    assert slot.booked_count == 9


@pytest.mark.asyncio
async def test_update_to_cancelled_requires_reason() -> None:
    repos = make_repos()
    slot = repos.store.add_slot()
    booking = repos.store.add_booking(slot, group_size=2)

    with pytest.raises(ValidationError):
        await _update(repos, booking.id, status=BookingStatus.CANCELLED)

    updated, _, status_from = await _update(
        repos,
        booking.id,
        status=BookingStatus.CANCELLED,
        cancellation_reason="weather",
    )
    assert status_from == BookingStatus.TENTATIVE
    assert updated.cancelled_at == NOW
    assert updated.cancellation_reason == "weather"
    assert slot.booked_count == 0


@pytest.mark.asyncio
async def test_update_to_confirmed_sets_confirmed_at() -> None:
    repos = make_repos()
    slot = repos.store.add_slot()
    booking = repos.store.add_booking(slot)
    chosen = datetime(2029, 12, 31, 8, 0, 0)

    updated, _, _ = await _update(repos, booking.id, status=BookingStatus.CONFIRMED, confirmed_at=chosen)

    assert updated.status == BookingStatus.CONFIRMED
    assert updated.confirmed_at == chosen


@pytest.mark.asyncio
async def test_update_rejects_unknown_or_empty_changes() -> None:
    repos = make_repos()
    slot = repos.store.add_slot()
    booking = repos.store.add_booking(slot)

    with pytest.raises(ValidationError):
        await _update(repos, booking.id)
    with pytest.raises(ValidationError):
        await _update(repos, booking.id, slot_id=3)


@pytest.mark.parametrize("field", ["payment_status", "group_size", "total_amount", "status"])
@pytest.mark.asyncio
async def test_update_rejects_null_for_required_fields(field: str) -> None:
    repos = make_repos()
    slot = repos.store.add_slot()
    booking = repos.store.add_booking(slot, payment_status=PaymentStatus.PAID)

    with pytest.raises(ValidationError):
        await _update(repos, booking.id, **{field: None})
    assert booking.payment_status == PaymentStatus.PAID


@pytest.mark.asyncio
async def test_update_clears_optional_notes() -> None:
    repos = make_repos()
    slot = repos.store.add_slot()
    booking = repos.store.add_booking(slot, notes="wheelchair access")

    updated, _, _ = await _update(repos, booking.id, notes=None)
    assert updated.notes is None


@pytest.mark.asyncio
async def test_update_rejects_transition_out_of_terminal_state() -> None:
    repos = make_repos()
    slot = repos.store.add_slot()
    booking = repos.store.add_booking(slot, status=BookingStatus.CANCELLED)

    with pytest.raises(InvalidStateError):
        await _update(repos, booking.id, status=BookingStatus.TENTATIVE)


@pytest.mark.asyncio
async def test_update_group_size_on_cancelled_booking_skips_capacity_check() -> None:
    repos = make_repos()
    slot = repos.store.add_slot(capacity=2)
    repos.store.add_booking(slot, group_size=2)
    cancelled = repos.store.add_booking(slot, group_size=1, status=BookingStatus.CANCELLED)

    booking, _, _ = await _update(repos, cancelled.id, group_size=5)

    assert booking.group_size == 5
    assert slot.booked_count == 2


@pytest.mark.asyncio
async def test_confirm_booking_only_from_tentative() -> None:
    repos = make_repos()
    slot = repos.store.add_slot()
    booking = repos.store.add_booking(slot)

    async with repos.store.transaction():
        confirmed, _, status_from = await uc.confirm_booking(
            repos.slots, repos.bookings, booking_id=booking.id, clock=fixed_clock()
        )
    assert status_from == BookingStatus.TENTATIVE
    assert confirmed.confirmed_at == NOW

    async with repos.store.transaction():
        with pytest.raises(InvalidStateError):
            await uc.confirm_booking(repos.slots, repos.bookings, booking_id=booking.id, clock=fixed_clock())


@pytest.mark.asyncio
async def test_confirm_cancelled_booking_is_invalid_state() -> None:
    repos = make_repos()
    slot = repos.store.add_slot()
    booking = repos.store.add_booking(slot, status=BookingStatus.CANCELLED)

    async with repos.store.transaction():
        with pytest.raises(InvalidStateError):
            await uc.confirm_booking(repos.slots, repos.bookings, booking_id=booking.id)


@pytest.mark.asyncio
async def test_cancel_requires_non_blank_reason() -> None:
    repos = make_repos()
    slot = repos.store.add_slot()
    booking = repos.store.add_booking(slot, group_size=3)

    with pytest.raises(ValidationError):
        await _cancel(repos, booking.id, reason=None)
    with pytest.raises(ValidationError):
        await _cancel(repos, booking.id, reason="   ")
    assert booking.status == BookingStatus.TENTATIVE

    cancelled, _, _ = await _cancel(repos, booking.id, reason="  sick  ")
    assert cancelled.status == BookingStatus.CANCELLED
    assert cancelled.cancellation_reason == "sick"
    assert cancelled.cancelled_at == NOW


@pytest.mark.asyncio
async def test_cancel_is_idempotent() -> None:
    repos = make_repos()
    slot = repos.store.add_slot()
    booking = repos.store.add_booking(slot, status=BookingStatus.CANCELLED, cancellation_reason="first")

    again, _, status_from = await _cancel(repos, booking.id, reason="second")

    assert status_from == BookingStatus.CANCELLED
    assert again.cancellation_reason == "first"


@pytest.mark.asyncio
async def test_cancel_completed_booking_is_invalid_state() -> None:
    repos = make_repos()
    slot = repos.store.add_slot()
    booking = repos.store.add_booking(slot, status=BookingStatus.COMPLETED)

    with pytest.raises(InvalidStateError):
        await _cancel(repos, booking.id)


@pytest.mark.asyncio
async def test_delete_booking_reconciles_slot() -> None:
    repos = make_repos()
    slot = repos.store.add_slot()
    booking = repos.store.add_booking(slot, group_size=4)
    slot.booked_count = 4

    async with repos.store.transaction():
        await uc.delete_booking(repos.slots, repos.bookings, booking_id=booking.id)

    assert booking.id not in repos.store.bookings
    assert slot.booked_count == 0


@pytest.mark.asyncio
async def test_update_booking_payment() -> None:
    repos = make_repos()
    slot = repos.store.add_slot()
    booking = repos.store.add_booking(slot, group_size=2)

    updated = await uc.update_booking_payment(
        repos.bookings,
        booking_id=booking.id,
        payment_status=PaymentStatus.PAID,
        payment_method=PaymentMethod.CREDIT_CARD,
        total_amount=Decimal("30.00"),
        clock=fixed_clock(),
    )

    assert updated.payment_status == PaymentStatus.PAID
    assert updated.payment_method == PaymentMethod.CREDIT_CARD
    assert updated.total_amount == Decimal("30.00")
    assert slot.booked_count == 0

    with pytest.raises(NotFoundError):
        await uc.update_booking_payment(repos.bookings, booking_id=999, payment_status=PaymentStatus.PAID)


@pytest.mark.asyncio
async def test_list_bookings_orders_by_slot_queue_when_filtered_by_slot() -> None:
    repos = make_repos()
    slot = repos.store.add_slot()
    early = repos.store.add_booking(slot, created_at=datetime(2029, 12, 1))
    late = repos.store.add_booking(slot, created_at=datetime(2029, 12, 2))

    by_slot, total = await uc.list_bookings(repos.bookings, filters=BookingFilters(slot_id=slot.id))
    everything, _ = await uc.list_bookings(repos.bookings, filters=BookingFilters())

    assert total == 2
    assert [b.id for b in by_slot] == [early.id, late.id]
    assert [b.id for b in everything] == [late.id, early.id]


@pytest.mark.asyncio
async def test_list_bookings_filters_and_paginates() -> None:
    repos = make_repos()
    near = repos.store.add_slot(date=SLOT_DAY)
    far = repos.store.add_slot(date=date(2030, 3, 1))
    for size in (1, 2, 3):
        repos.store.add_booking(near, group_size=size)
    repos.store.add_booking(far, group_size=4)

    rows, total = await uc.list_bookings(
        repos.bookings,
        filters=BookingFilters(date_to=date(2030, 1, 31), group_size_min=2),
        page=1,
        limit=1,
    )

    assert total == 2
    assert len(rows) == 1


@pytest.mark.asyncio
async def test_list_bookings_rejects_bad_paging_and_ranges() -> None:
    repos = make_repos()
    with pytest.raises(ValidationError):
        await uc.list_bookings(repos.bookings, filters=BookingFilters(), page=0)
    with pytest.raises(ValidationError):
        await uc.list_bookings(repos.bookings, filters=BookingFilters(group_size_min=5, group_size_max=2))


@pytest.mark.asyncio
async def test_lookup_by_visitor_and_slot() -> None:
    repos = make_repos()
    slot = repos.store.add_slot()
    other = repos.store.add_slot(start_time="11:00:00", end_time="12:00:00")
    mine = repos.store.add_booking(slot, visitor_id=7)
    repos.store.add_booking(other, visitor_id=8)

    assert [b.id for b in await uc.list_visitor_bookings(repos.bookings, visitor_id=7)] == [mine.id]
    assert [b.id for b in await uc.list_slot_bookings(repos.bookings, slot_id=slot.id)] == [mine.id]
    with pytest.raises(NotFoundError):
        await uc.get_booking(repos.bookings, booking_id=999)


@pytest.mark.asyncio
async def test_booking_statistics() -> None:
    repos = make_repos()
    slot = repos.store.add_slot(capacity=50)
    repos.store.add_booking(
        slot,
        group_size=2,
        total_amount=Decimal("30.00"),
        payment_status=PaymentStatus.PAID,
        payment_method=PaymentMethod.CASH,
    )
    repos.store.add_booking(
        slot,
        group_size=4,
        total_amount=Decimal("60.00"),
        status=BookingStatus.CONFIRMED,
        payment_method=PaymentMethod.CASH,
    )

    stats = await uc.booking_statistics(repos.bookings, days=30, clock=fixed_clock())

    assert stats.total_bookings == 2
    assert stats.total_revenue == Decimal("30.00")
    assert stats.average_group_size == 3
    assert stats.by_status[BookingStatus.CONFIRMED] == 1
    assert stats.top_payment_methods[0].count == 2

    with pytest.raises(ValidationError):
        await uc.booking_statistics(repos.bookings, days=0)


@pytest.mark.asyncio
async def test_send_booking_reminders_counts_failures() -> None:
    repos = make_repos()
    tomorrow = repos.store.add_slot(date=date(2030, 1, 2))
    later = repos.store.add_slot(date=date(2030, 1, 5))
    ok = repos.store.add_booking(tomorrow, status=BookingStatus.CONFIRMED)
    bad = repos.store.add_booking(tomorrow, status=BookingStatus.CONFIRMED)
    repos.store.add_booking(tomorrow, status=BookingStatus.TENTATIVE)
    repos.store.add_booking(later, status=BookingStatus.CONFIRMED)
    notifier = RecordingNotifier(fail_for=[bad.id])

    run = await uc.send_booking_reminders(
        repos.bookings,
        notifier,
        lead_days=1,
        tz_name="UTC",
        clock=fixed_clock(),
    )

    assert run.day == date(2030, 1, 2)
    assert (run.sent, run.failed) == (1, 1)
    assert notifier.events == [(ok.id, "reminder"), (bad.id, "reminder")]
