from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Protocol, Sequence

from ..models import (
    Booking,
    BookingStatus,
    PaymentMethod,
    PaymentStatus,
    PricingRule,
    SlotStatus,
    Visitor,
    VisitorType,
    VisitSlot,
)


@dataclass(frozen=True)
class BookingFilters:
    slot_id: int | None = None
    visitor_id: int | None = None
    status: BookingStatus | None = None
    payment_status: PaymentStatus | None = None
    payment_method: PaymentMethod | None = None
    created_by: int | None = None
    # Bounds on the owning slot's date.
    date_from: date | None = None
    date_to: date | None = None
    group_size_min: int | None = None
    group_size_max: int | None = None
    total_amount_min: Decimal | None = None
    total_amount_max: Decimal | None = None


@dataclass(frozen=True)
class SlotFilters:
    date_from: date | None = None
    date_to: date | None = None
    status: SlotStatus | None = None
    search: str | None = None


@dataclass(frozen=True)
class DailyBookingTotals:
    day: date
    count: int
    revenue: Decimal


@dataclass(frozen=True)
class PaymentMethodTotals:
    payment_method: PaymentMethod
    count: int
    total_amount: Decimal


@dataclass(frozen=True)
class BookingStatistics:
    total_bookings: int
    by_status: dict[BookingStatus, int]
    by_payment_status: dict[PaymentStatus, int]
    total_revenue: Decimal
    average_group_size: float
    by_day: list[DailyBookingTotals] = field(default_factory=list)
    top_payment_methods: list[PaymentMethodTotals] = field(default_factory=list)


class SlotRepository(Protocol):
    async def get(self, slot_id: int) -> VisitSlot | None: ...

    async def get_for_update(self, slot_id: int) -> VisitSlot | None: ...

    async def list_on_date_for_update(self, on_date: date, *, exclude_slot_id: int | None = None) -> list[VisitSlot]: ...

    async def dates_with_slots(self, start: date, end: date) -> set[date]: ...

    async def create(self, **fields: Any) -> VisitSlot: ...

    async def create_many(self, rows: Sequence[dict[str, Any]]) -> list[VisitSlot]: ...

    async def save(self, slot: VisitSlot) -> VisitSlot: ...

    async def delete(self, slot: VisitSlot) -> None: ...

    async def list(self, filters: SlotFilters, *, page: int, limit: int) -> tuple[list[VisitSlot], int]: ...

    async def list_bookable(self, date_from: date, date_to: date | None) -> list[VisitSlot]: ...

    async def expire_unbooked_before(self, cutoff: date, *, target: SlotStatus, now: datetime) -> list[int]: ...


class BookingRepository(Protocol):
    async def get(self, booking_id: int) -> Booking | None: ...

    async def get_for_update(self, booking_id: int) -> Booking | None: ...

    async def sum_active(self, slot_id: int, *, exclude_booking_id: int | None = None) -> int: ...

    async def count_active(self, slot_id: int, *, exclude_booking_id: int | None = None) -> int: ...

    async def create(self, **fields: Any) -> Booking: ...

    async def save(self, booking: Booking) -> Booking: ...

    async def delete(self, booking: Booking) -> None: ...

    async def delete_for_slot(self, slot_id: int) -> int: ...

    async def list(
        self,
        filters: BookingFilters,
        *,
        page: int,
        limit: int | None,
        oldest_first: bool = False,
    ) -> tuple[list[Booking], int]: ...

    async def list_confirmed_on(self, day: date) -> list[Booking]: ...

    async def statistics(self, *, since: datetime, top_methods: int) -> BookingStatistics: ...


class VisitorRepository(Protocol):
    async def get(self, visitor_id: int) -> Visitor | None: ...


class PricingRuleRepository(Protocol):
    async def find_applicable(self, visitor_type: VisitorType, on_date: date) -> PricingRule | None: ...
