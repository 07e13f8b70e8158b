from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any, List, Optional, Sequence, Tuple

from sqlalchemy import Date, Select, and_, cast, delete, exists, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..domain.repositories import (
    BookingFilters,
    BookingRepository,
    BookingStatistics,
    DailyBookingTotals,
    PaymentMethodTotals,
    PricingRuleRepository,
    SlotFilters,
    SlotRepository,
    VisitorRepository,
)
from ..domain.services import ACTIVE_BOOKING_STATUSES, OFF_TIMELINE_STATUSES
from ..models import (
    Booking,
    BookingStatus,
    PaymentStatus,
    PricingRule,
    SlotStatus,
    Visitor,
    VisitorType,
    VisitSlot,
)

_ACTIVE = tuple(ACTIVE_BOOKING_STATUSES)
# Slots that still occupy the venue's timeline.
_TIMELINE_EXCLUDED = tuple(OFF_TIMELINE_STATUSES)


class SqlAlchemySlotRepository(SlotRepository):
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, slot_id: int) -> VisitSlot | None:
        return await self.session.get(VisitSlot, slot_id)

    async def get_for_update(self, slot_id: int) -> VisitSlot | None:
        # Serialises every writer touching this slot's active-booking set.
        result = await self.session.scalar(
            select(VisitSlot).where(VisitSlot.id == slot_id).with_for_update().execution_options(populate_existing=True)
        )
        return result if isinstance(result, VisitSlot) else None

    async def list_on_date_for_update(self, on_date: date, *, exclude_slot_id: int | None = None) -> List[VisitSlot]:
        stmt = (
            select(VisitSlot)
            .where(VisitSlot.date == on_date, VisitSlot.status.not_in(_TIMELINE_EXCLUDED))
            .order_by(VisitSlot.start_time)
            .with_for_update()
        )
        if exclude_slot_id is not None:
            stmt = stmt.where(VisitSlot.id != exclude_slot_id)
        return list((await self.session.scalars(stmt)).all())

    async def dates_with_slots(self, start: date, end: date) -> set[date]:
        stmt = select(VisitSlot.date).where(VisitSlot.date >= start, VisitSlot.date <= end).distinct()
        return set((await self.session.scalars(stmt)).all())

    async def create(self, **fields: Any) -> VisitSlot:
        slot = VisitSlot(**fields)
        self.session.add(slot)
        await self.session.flush()
        return slot

    async def create_many(self, rows: Sequence[dict[str, Any]]) -> List[VisitSlot]:
        slots = [VisitSlot(**row) for row in rows]
        self.session.add_all(slots)
        await self.session.flush()
        return slots

    async def save(self, slot: VisitSlot) -> VisitSlot:
        self.session.add(slot)
        await self.session.flush()
        return slot

    async def delete(self, slot: VisitSlot) -> None:
        await self.session.delete(slot)
        await self.session.flush()

    async def list(self, filters: SlotFilters, *, page: int, limit: int) -> Tuple[List[VisitSlot], int]:
        conditions = []
        if filters.date_from is not None:
            conditions.append(VisitSlot.date >= filters.date_from)
        if filters.date_to is not None:
            conditions.append(VisitSlot.date <= filters.date_to)
        if filters.status is not None:
            conditions.append(VisitSlot.status == filters.status)
        if filters.search:
            conditions.append(VisitSlot.description.ilike(f"%{filters.search}%"))

        total = await self.session.scalar(select(func.count()).select_from(VisitSlot).where(*conditions))
        stmt = (
            select(VisitSlot)
            .where(*conditions)
            .order_by(VisitSlot.date, VisitSlot.start_time)
            .offset((page - 1) * limit)
            .limit(limit)
        )
        rows = await self.session.scalars(stmt)
        return list(rows.all()), int(total or 0)

    async def list_bookable(self, date_from: date, date_to: date | None) -> List[VisitSlot]:
        stmt = (
            select(VisitSlot)
            .where(
                VisitSlot.status == SlotStatus.AVAILABLE,
                VisitSlot.booked_count < VisitSlot.capacity,
                VisitSlot.date >= date_from,
            )
            .order_by(VisitSlot.date, VisitSlot.start_time)
        )
        if date_to is not None:
            stmt = stmt.where(VisitSlot.date <= date_to)
        return list((await self.session.scalars(stmt)).all())

    async def expire_unbooked_before(self, cutoff: date, *, target: SlotStatus, now: datetime) -> List[int]:
        has_active = exists().where(Booking.slot_id == VisitSlot.id, Booking.status.in_(_ACTIVE))
        candidates = (
            select(VisitSlot.id)
            .where(
                VisitSlot.date < cutoff,
                VisitSlot.status.in_((SlotStatus.AVAILABLE, SlotStatus.BOOKED)),
                ~has_active,
            )
            .with_for_update()
        )
        slot_ids = list((await self.session.scalars(candidates)).all())
        if slot_ids:
            await self.session.execute(
                update(VisitSlot)
                .where(VisitSlot.id.in_(slot_ids))
                .values(status=target, updated_at=now)
                .execution_options(synchronize_session=False)
            )
        return slot_ids


class SqlAlchemyBookingRepository(BookingRepository):
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, booking_id: int) -> Booking | None:
        return await self.session.get(Booking, booking_id)

    async def get_for_update(self, booking_id: int) -> Booking | None:
        result = await self.session.scalar(
            select(Booking).where(Booking.id == booking_id).with_for_update().execution_options(populate_existing=True)
        )
        return result if isinstance(result, Booking) else None

    async def sum_active(self, slot_id: int, *, exclude_booking_id: int | None = None) -> int:
        stmt = select(func.coalesce(func.sum(Booking.group_size), 0)).where(
            Booking.slot_id == slot_id,
            Booking.status.in_(_ACTIVE),
        )
        if exclude_booking_id is not None:
            stmt = stmt.where(Booking.id != exclude_booking_id)
        return int(await self.session.scalar(stmt) or 0)

    async def count_active(self, slot_id: int, *, exclude_booking_id: int | None = None) -> int:
        stmt = select(func.count(Booking.id)).where(
            Booking.slot_id == slot_id,
            Booking.status.in_(_ACTIVE),
        )
        if exclude_booking_id is not None:
            stmt = stmt.where(Booking.id != exclude_booking_id)
        return int(await self.session.scalar(stmt) or 0)

    async def create(self, **fields: Any) -> Booking:
        booking = Booking(**fields)
        self.session.add(booking)
        await self.session.flush()
        return booking

    async def save(self, booking: Booking) -> Booking:
        self.session.add(booking)
        await self.session.flush()
        return booking

    async def delete(self, booking: Booking) -> None:
        await self.session.delete(booking)
        await self.session.flush()

    async def delete_for_slot(self, slot_id: int) -> int:
        result = await self.session.execute(
            delete(Booking).where(Booking.slot_id == slot_id).execution_options(synchronize_session=False)
        )
        return int(result.rowcount or 0)

    async def list(
        self,
        filters: BookingFilters,
        *,
        page: int,
        limit: int | None,
        oldest_first: bool = False,
    ) -> Tuple[List[Booking], int]:
        stmt: Select[Tuple[Booking]] = select(Booking)
        count_stmt = select(func.count(Booking.id))
        conditions = _booking_conditions(filters)
        if filters.date_from is not None or filters.date_to is not None:
            stmt = stmt.join(VisitSlot, Booking.slot_id == VisitSlot.id)
            count_stmt = count_stmt.join(VisitSlot, Booking.slot_id == VisitSlot.id)
        stmt = stmt.where(*conditions)
        count_stmt = count_stmt.where(*conditions)

        order = Booking.created_at.asc() if oldest_first else Booking.created_at.desc()
        stmt = stmt.order_by(order, Booking.id.asc() if oldest_first else Booking.id.desc())
        if limit is not None:
            stmt = stmt.offset((page - 1) * limit).limit(limit)

        total = await self.session.scalar(count_stmt)
        rows = await self.session.scalars(stmt)
        return list(rows.all()), int(total or 0)

    async def list_confirmed_on(self, day: date) -> List[Booking]:
        stmt = (
            select(Booking)
            .join(VisitSlot, Booking.slot_id == VisitSlot.id)
            .where(VisitSlot.date == day, Booking.status == BookingStatus.CONFIRMED)
            .order_by(VisitSlot.start_time, Booking.id)
        )
        return list((await self.session.scalars(stmt)).all())

    async def statistics(self, *, since: datetime, top_methods: int) -> BookingStatistics:
        total = await self.session.scalar(select(func.count(Booking.id)))

        by_status_rows = await self.session.execute(
            select(Booking.status, func.count(Booking.id)).group_by(Booking.status)
        )
        by_payment_rows = await self.session.execute(
            select(Booking.payment_status, func.count(Booking.id)).group_by(Booking.payment_status)
        )
        revenue = await self.session.scalar(
            select(func.coalesce(func.sum(Booking.total_amount), 0)).where(
                Booking.payment_status == PaymentStatus.PAID
            )
        )
        avg_group = await self.session.scalar(select(func.avg(Booking.group_size)))

        day_col = cast(Booking.created_at, Date)
        daily_rows = await self.session.execute(
            select(day_col, func.count(Booking.id), func.coalesce(func.sum(Booking.total_amount), 0))
            .where(Booking.created_at >= since)
            .group_by(day_col)
            .order_by(day_col.desc())
        )
        method_rows = await self.session.execute(
            select(Booking.payment_method, func.count(Booking.id), func.coalesce(func.sum(Booking.total_amount), 0))
            .where(Booking.payment_method.is_not(None))
            .group_by(Booking.payment_method)
            .order_by(func.count(Booking.id).desc())
            .limit(top_methods)
        )

        return BookingStatistics(
            total_bookings=int(total or 0),
            by_status={status: int(count) for status, count in by_status_rows.all()},
            by_payment_status={status: int(count) for status, count in by_payment_rows.all()},
            total_revenue=Decimal(revenue or 0),
            average_group_size=float(avg_group or 0),
            by_day=[
                DailyBookingTotals(day=day, count=int(count), revenue=Decimal(amount or 0))
                for day, count, amount in daily_rows.all()
            ],
            top_payment_methods=[
                PaymentMethodTotals(payment_method=method, count=int(count), total_amount=Decimal(amount or 0))
                for method, count, amount in method_rows.all()
            ],
        )


class SqlAlchemyVisitorRepository(VisitorRepository):
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, visitor_id: int) -> Visitor | None:
        return await self.session.get(Visitor, visitor_id)


class SqlAlchemyPricingRuleRepository(PricingRuleRepository):
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def find_applicable(self, visitor_type: VisitorType, on_date: date) -> Optional[PricingRule]:
        stmt = (
            select(PricingRule)
            .where(
                PricingRule.visitor_type == visitor_type,
                PricingRule.is_active.is_(True),
                PricingRule.effective_date <= on_date,
                or_(PricingRule.end_date.is_(None), PricingRule.end_date >= on_date),
            )
            .order_by(PricingRule.created_at.desc())
            .limit(1)
        )
        return await self.session.scalar(stmt)


def _booking_conditions(filters: BookingFilters) -> list[Any]:
    conditions: list[Any] = []
    if filters.slot_id is not None:
        conditions.append(Booking.slot_id == filters.slot_id)
    if filters.visitor_id is not None:
        conditions.append(Booking.visitor_id == filters.visitor_id)
    if filters.status is not None:
        conditions.append(Booking.status == filters.status)
    if filters.payment_status is not None:
        conditions.append(Booking.payment_status == filters.payment_status)
    if filters.payment_method is not None:
        conditions.append(Booking.payment_method == filters.payment_method)
    if filters.created_by is not None:
        conditions.append(Booking.created_by == filters.created_by)
    if filters.date_from is not None:
        conditions.append(VisitSlot.date >= filters.date_from)
    if filters.date_to is not None:
        conditions.append(VisitSlot.date <= filters.date_to)
    if filters.group_size_min is not None:
        conditions.append(Booking.group_size >= filters.group_size_min)
    if filters.group_size_max is not None:
        conditions.append(Booking.group_size <= filters.group_size_max)
    if filters.total_amount_min is not None:
        conditions.append(Booking.total_amount >= filters.total_amount_min)
    if filters.total_amount_max is not None:
        conditions.append(Booking.total_amount <= filters.total_amount_max)
    return [and_(*conditions)] if conditions else []
