from datetime import date, datetime
from decimal import Decimal
from typing import Any, cast

import pytest
from app.domain.errors import CapacityExceededError, InvalidStateError
from app.models import Booking, BookingStatus, PaymentStatus, SlotStatus, VisitSlot
from app.routers import bookings as router
from app.schemas import BookingCancel, BookingCreate, BookingRead, BookingUpdate
from fastapi import HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from tests.fakes import RecordingNotifier

NOW = datetime(2030, 1, 1, 9, 0)


class DummySession:
    async def __aenter__(self) -> "DummySession":
        return self

    async def __aexit__(self, exc_type: object, exc: object, tb: object) -> bool:
        return False

    def begin(self) -> "DummySession":
        return self


def _slot() -> VisitSlot:
    return VisitSlot(
        id=1,
        date=date(2030, 1, 10),
        start_time="09:00:00",
        end_time="10:00:00",
        duration_minutes=60,
        capacity=10,
        booked_count=2,
        status=SlotStatus.AVAILABLE,
        description=None,
        created_by=1,
        created_at=NOW,
        updated_at=NOW,
    )


def _booking(status: BookingStatus = BookingStatus.TENTATIVE) -> Booking:
    return Booking(
        id=100,
        slot_id=1,
        visitor_id=200,
        group_size=2,
        status=status,
        total_amount=Decimal("30.00"),
        payment_status=PaymentStatus.PENDING,
        payment_method=None,
        notes=None,
        special_requests=None,
        cancellation_reason=None,
        confirmed_at=None,
        cancelled_at=None,
        created_by=5,
        created_at=NOW,
        updated_at=NOW,
    )


def _patch_repos(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (
        "SqlAlchemySlotRepository",
        "SqlAlchemyBookingRepository",
        "SqlAlchemyVisitorRepository",
        "SqlAlchemyPricingRuleRepository",
    ):
        monkeypatch.setattr(router, name, lambda s: s)


@pytest.mark.asyncio
async def test_create_booking_emits_audit_and_notifies(monkeypatch: pytest.MonkeyPatch) -> None:
    slot = _slot()
    booking = _booking()
    notifier = RecordingNotifier()

    async def fake_create_booking(*args: object, **kwargs: Any) -> tuple[Booking, VisitSlot]:
        assert kwargs["created_by"] == 5
        assert kwargs["default_price"] == Decimal("15.00")
        return booking, slot

    calls: list[dict[str, Any]] = []

    _patch_repos(monkeypatch)
    monkeypatch.setattr(router.booking_usecase, "create_booking", fake_create_booking)
    monkeypatch.setattr(router, "emit_audit_log", lambda **kwargs: calls.append(kwargs))

    result: BookingRead = await router.create_booking(
        payload=BookingCreate(slot_id=slot.id, visitor_id=200, group_size=2),
        session=cast(AsyncSession, DummySession()),
        user_id=5,
        notifier=notifier,
    )

    assert result.booking_id == booking.id
    assert len(calls) == 1
    assert calls[0]["action"] == "booking.created"
    assert calls[0]["booking_id"] == booking.id
    assert calls[0]["status_to"] == BookingStatus.TENTATIVE
    assert notifier.events == [(booking.id, "created")]


@pytest.mark.asyncio
async def test_create_booking_full_slot_is_400_without_notification(monkeypatch: pytest.MonkeyPatch) -> None:
    notifier = RecordingNotifier()

    async def fake_create_booking(*args: object, **kwargs: object) -> tuple[Booking, VisitSlot]:
        raise CapacityExceededError("not enough capacity", available=1, requested=2)

    calls: list[dict[str, Any]] = []
    _patch_repos(monkeypatch)
    monkeypatch.setattr(router.booking_usecase, "create_booking", fake_create_booking)
    monkeypatch.setattr(router, "emit_audit_log", lambda **kwargs: calls.append(kwargs))

    with pytest.raises(HTTPException) as excinfo:
        await router.create_booking(
            payload=BookingCreate(slot_id=1, visitor_id=200, group_size=2),
            session=cast(AsyncSession, DummySession()),
            user_id=5,
            notifier=notifier,
        )
    assert excinfo.value.status_code == 400
    assert excinfo.value.detail["code"] == "capacity_exceeded"
    assert calls == []
    assert notifier.events == []


@pytest.mark.asyncio
async def test_cancel_booking_log_failure_returns_500(monkeypatch: pytest.MonkeyPatch) -> None:
    slot = _slot()
    booking = _booking(status=BookingStatus.CANCELLED)

    async def fake_cancel(*args: object, **kwargs: object) -> tuple[Booking, VisitSlot, BookingStatus]:
        return booking, slot, BookingStatus.TENTATIVE

    def fake_emit(**kwargs: Any) -> None:
        raise RuntimeError("fail log")

    _patch_repos(monkeypatch)
    monkeypatch.setattr(router.booking_usecase, "cancel_booking", fake_cancel)
    monkeypatch.setattr(router, "emit_audit_log", fake_emit)

    with pytest.raises(HTTPException) as excinfo:
        await router.cancel_booking(
            payload=BookingCancel(reason="weather"),
            booking_id=booking.id,
            session=cast(AsyncSession, DummySession()),
            user_id=5,
            notifier=RecordingNotifier(),
        )
    assert excinfo.value.status_code == 500


@pytest.mark.asyncio
async def test_repeat_cancel_skips_audit_and_notification(monkeypatch: pytest.MonkeyPatch) -> None:
    slot = _slot()
    booking = _booking(status=BookingStatus.CANCELLED)
    notifier = RecordingNotifier()

    async def fake_cancel(*args: object, **kwargs: object) -> tuple[Booking, VisitSlot, BookingStatus]:
        return booking, slot, BookingStatus.CANCELLED

    calls: list[dict[str, Any]] = []
    _patch_repos(monkeypatch)
    monkeypatch.setattr(router.booking_usecase, "cancel_booking", fake_cancel)
    monkeypatch.setattr(router, "emit_audit_log", lambda **kwargs: calls.append(kwargs))

    result = await router.cancel_booking(
        payload=BookingCancel(reason="again"),
        booking_id=booking.id,
        session=cast(AsyncSession, DummySession()),
        user_id=5,
        notifier=notifier,
    )

    assert result.status == BookingStatus.CANCELLED
    assert calls == []
    assert notifier.events == []


@pytest.mark.asyncio
async def test_update_to_confirmed_is_audited_as_confirmation(monkeypatch: pytest.MonkeyPatch) -> None:
    slot = _slot()
    booking = _booking(status=BookingStatus.CONFIRMED)
    notifier = RecordingNotifier()

    async def fake_update(*args: object, **kwargs: Any) -> tuple[Booking, VisitSlot, BookingStatus]:
        assert kwargs["changes"] == {"status": BookingStatus.CONFIRMED}
        return booking, slot, BookingStatus.TENTATIVE

    calls: list[dict[str, Any]] = []
    _patch_repos(monkeypatch)
    monkeypatch.setattr(router.booking_usecase, "update_booking", fake_update)
    monkeypatch.setattr(router, "emit_audit_log", lambda **kwargs: calls.append(kwargs))

    await router.update_booking(
        payload=BookingUpdate(status=BookingStatus.CONFIRMED),
        booking_id=booking.id,
        session=cast(AsyncSession, DummySession()),
        user_id=5,
        notifier=notifier,
    )

    assert calls[0]["action"] == "booking.confirmed"
    assert calls[0]["status_from"] == BookingStatus.TENTATIVE
    assert notifier.events == [(booking.id, "confirmed")]


@pytest.mark.asyncio
async def test_confirm_cancelled_booking_is_409(monkeypatch: pytest.MonkeyPatch) -> None:
    async def fake_confirm(*args: object, **kwargs: object) -> tuple[Booking, VisitSlot, BookingStatus]:
        raise InvalidStateError("only tentative bookings can be confirmed (status: cancelled)")

    _patch_repos(monkeypatch)
    monkeypatch.setattr(router.booking_usecase, "confirm_booking", fake_confirm)

    with pytest.raises(HTTPException) as excinfo:
        await router.confirm_booking(
            payload=None,
            booking_id=100,
            session=cast(AsyncSession, DummySession()),
            user_id=5,
            notifier=RecordingNotifier(),
        )
    assert excinfo.value.status_code == 409


@pytest.mark.asyncio
async def test_notifier_failure_does_not_fail_request(monkeypatch: pytest.MonkeyPatch) -> None:
    slot = _slot()
    booking = _booking()

    class BrokenNotifier:
        async def notify_booking_event(self, booking_id: int, event: object) -> bool:
            raise ConnectionError("smtp down")

    async def fake_create_booking(*args: object, **kwargs: object) -> tuple[Booking, VisitSlot]:
        return booking, slot

    _patch_repos(monkeypatch)
    monkeypatch.setattr(router.booking_usecase, "create_booking", fake_create_booking)
    monkeypatch.setattr(router, "emit_audit_log", lambda **kwargs: None)

    result = await router.create_booking(
        payload=BookingCreate(slot_id=1, visitor_id=200, group_size=2),
        session=cast(AsyncSession, DummySession()),
        user_id=5,
        notifier=BrokenNotifier(),
    )
    assert result.booking_id == booking.id
