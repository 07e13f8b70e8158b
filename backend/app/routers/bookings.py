import logging
from datetime import date
from decimal import Decimal
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Path, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import get_settings
from ..deps import get_current_user_id, get_notifier, get_session
from ..domain.errors import DomainError
from ..domain.notifications import BookingEvent, BookingNotifier
from ..domain.repositories import BookingFilters
from ..infrastructure.repositories import (
    SqlAlchemyBookingRepository,
    SqlAlchemyPricingRuleRepository,
    SqlAlchemySlotRepository,
    SqlAlchemyVisitorRepository,
)
from ..infrastructure.transaction import transaction
from ..models import BookingStatus, PaymentMethod, PaymentStatus
from ..schemas import (
    BookingCancel,
    BookingConfirm,
    BookingCreate,
    BookingPayment,
    BookingRead,
    BookingStatisticsRead,
    BookingUpdate,
    PaginatedResponse,
)
from ..usecases import bookings as booking_usecase
from ..utils.audit_log import AuditAction, emit_audit_log
from ..utils.time import to_utc_naive
from .errors import audit_failure, domain_error_to_http

logger = logging.getLogger(__name__)

_UPDATE_AUDIT_ACTIONS: dict[BookingEvent, AuditAction] = {
    BookingEvent.UPDATED: "booking.updated",
    BookingEvent.CONFIRMED: "booking.confirmed",
    BookingEvent.CANCELLED: "booking.cancelled",
}

router = APIRouter(prefix="/bookings", tags=["bookings"], dependencies=[Depends(get_current_user_id)])


async def _notify(notifier: BookingNotifier, booking_id: int, event: BookingEvent) -> None:
    # Runs after commit; delivery problems never undo a committed change.
    try:
        delivered = await notifier.notify_booking_event(booking_id, event)
    except Exception:
        logger.exception("booking notification failed: booking_id=%s event=%s", booking_id, event)
        return
    if not delivered:
        logger.warning("booking notification not delivered: booking_id=%s event=%s", booking_id, event)


@router.post("", response_model=BookingRead, status_code=status.HTTP_201_CREATED)
async def create_booking(
    payload: BookingCreate,
    session: AsyncSession = Depends(get_session),
    user_id: int = Depends(get_current_user_id),
    notifier: BookingNotifier = Depends(get_notifier),
) -> BookingRead:
    settings = get_settings()
    slot_repo = SqlAlchemySlotRepository(session)
    booking_repo = SqlAlchemyBookingRepository(session)
    visitor_repo = SqlAlchemyVisitorRepository(session)
    pricing_repo = SqlAlchemyPricingRuleRepository(session)
    try:
        async with transaction(session):
            booking, slot = await booking_usecase.create_booking(
                slot_repo,
                booking_repo,
                visitor_repo,
                pricing_repo,
                slot_id=payload.slot_id,
                visitor_id=payload.visitor_id,
                group_size=payload.group_size,
                created_by=user_id,
                default_price=settings.default_ticket_price,
                special_requests=payload.special_requests,
                notes=payload.notes,
                payment_method=payload.payment_method,
                payment_status=payload.payment_status,
                total_amount=payload.total_amount,
            )
    except DomainError as exc:
        raise domain_error_to_http(exc) from exc

    try:
        emit_audit_log(
            action="booking.created",
            initiator="staff",
            booking_id=booking.id,
            slot_id=slot.id,
            visitor_id=booking.visitor_id,
            user_id=user_id,
            group_size=booking.group_size,
            status_from=None,
            status_to=booking.status,
        )
    except RuntimeError as exc:
        raise audit_failure() from exc

    await _notify(notifier, booking.id, BookingEvent.CREATED)
    return BookingRead.from_db(booking=booking)


@router.get("", response_model=PaginatedResponse[BookingRead])
async def list_bookings(
    slot_id: Optional[int] = Query(default=None, ge=1),
    visitor_id: Optional[int] = Query(default=None, ge=1),
    booking_status: Optional[BookingStatus] = Query(default=None, alias="status"),
    payment_status: Optional[PaymentStatus] = Query(default=None),
    payment_method: Optional[PaymentMethod] = Query(default=None),
    created_by: Optional[int] = Query(default=None, ge=1),
    date_from: Optional[date] = Query(default=None),
    date_to: Optional[date] = Query(default=None),
    group_size_min: Optional[int] = Query(default=None, ge=1),
    group_size_max: Optional[int] = Query(default=None, ge=1),
    total_amount_min: Optional[Decimal] = Query(default=None, ge=0),
    total_amount_max: Optional[Decimal] = Query(default=None, ge=0),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    session: AsyncSession = Depends(get_session),
) -> PaginatedResponse[BookingRead]:
    filters = BookingFilters(
        slot_id=slot_id,
        visitor_id=visitor_id,
        status=booking_status,
        payment_status=payment_status,
        payment_method=payment_method,
        created_by=created_by,
        date_from=date_from,
        date_to=date_to,
        group_size_min=group_size_min,
        group_size_max=group_size_max,
        total_amount_min=total_amount_min,
        total_amount_max=total_amount_max,
    )
    booking_repo = SqlAlchemyBookingRepository(session)
    try:
        async with transaction(session):
            rows, total = await booking_usecase.list_bookings(booking_repo, filters=filters, page=page, limit=limit)
    except DomainError as exc:
        raise domain_error_to_http(exc) from exc
    return PaginatedResponse[BookingRead](
        items=[BookingRead.from_db(booking=row) for row in rows],
        total=total,
        page=page,
        limit=limit,
    )


@router.get("/stats", response_model=BookingStatisticsRead)
async def booking_statistics(
    days: int = Query(default=30, ge=1, le=365),
    session: AsyncSession = Depends(get_session),
) -> BookingStatisticsRead:
    booking_repo = SqlAlchemyBookingRepository(session)
    try:
        async with transaction(session):
            stats = await booking_usecase.booking_statistics(booking_repo, days=days)
    except DomainError as exc:
        raise domain_error_to_http(exc) from exc
    return BookingStatisticsRead.from_stats(stats)


@router.get("/visitor/{visitor_id}", response_model=List[BookingRead])
async def list_visitor_bookings(
    visitor_id: int = Path(..., ge=1),
    session: AsyncSession = Depends(get_session),
) -> list[BookingRead]:
    booking_repo = SqlAlchemyBookingRepository(session)
    try:
        async with transaction(session):
            rows = await booking_usecase.list_visitor_bookings(booking_repo, visitor_id=visitor_id)
    except DomainError as exc:
        raise domain_error_to_http(exc) from exc
    return [BookingRead.from_db(booking=row) for row in rows]


@router.get("/slot/{slot_id}", response_model=List[BookingRead])
async def list_slot_bookings(
    slot_id: int = Path(..., ge=1),
    session: AsyncSession = Depends(get_session),
) -> list[BookingRead]:
    booking_repo = SqlAlchemyBookingRepository(session)
    try:
        async with transaction(session):
            rows = await booking_usecase.list_slot_bookings(booking_repo, slot_id=slot_id)
    except DomainError as exc:
        raise domain_error_to_http(exc) from exc
    return [BookingRead.from_db(booking=row) for row in rows]


@router.get("/{booking_id}", response_model=BookingRead)
async def get_booking(
    booking_id: int = Path(..., ge=1),
    session: AsyncSession = Depends(get_session),
) -> BookingRead:
    booking_repo = SqlAlchemyBookingRepository(session)
    try:
        async with transaction(session):
            booking = await booking_usecase.get_booking(booking_repo, booking_id=booking_id)
    except DomainError as exc:
        raise domain_error_to_http(exc) from exc
    return BookingRead.from_db(booking=booking)


@router.put("/{booking_id}", response_model=BookingRead)
async def update_booking(
    payload: BookingUpdate,
    booking_id: int = Path(..., ge=1),
    session: AsyncSession = Depends(get_session),
    user_id: int = Depends(get_current_user_id),
    notifier: BookingNotifier = Depends(get_notifier),
) -> BookingRead:
    changes = payload.model_dump(exclude_unset=True)
    if not changes:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="no fields to update")
    if changes.get("confirmed_at") is not None:
        changes["confirmed_at"] = to_utc_naive(changes["confirmed_at"])
    slot_repo = SqlAlchemySlotRepository(session)
    booking_repo = SqlAlchemyBookingRepository(session)
    try:
        async with transaction(session):
            booking, slot, status_from = await booking_usecase.update_booking(
                slot_repo,
                booking_repo,
                booking_id=booking_id,
                changes=changes,
            )
    except DomainError as exc:
        raise domain_error_to_http(exc) from exc

    event = BookingEvent.UPDATED
    if booking.status != status_from and booking.status == BookingStatus.CONFIRMED:
        event = BookingEvent.CONFIRMED
    elif booking.status != status_from and booking.status == BookingStatus.CANCELLED:
        event = BookingEvent.CANCELLED
    try:
        emit_audit_log(
            action=_UPDATE_AUDIT_ACTIONS[event],
            initiator="staff",
            booking_id=booking.id,
            slot_id=slot.id,
            visitor_id=booking.visitor_id,
            user_id=user_id,
            group_size=booking.group_size,
            status_from=status_from,
            status_to=booking.status,
            extra={"fields": sorted(changes)},
        )
    except RuntimeError as exc:
        raise audit_failure() from exc

    await _notify(notifier, booking.id, event)
    return BookingRead.from_db(booking=booking)


@router.post("/{booking_id}/confirm", response_model=BookingRead)
async def confirm_booking(
    payload: BookingConfirm | None = None,
    booking_id: int = Path(..., ge=1),
    session: AsyncSession = Depends(get_session),
    user_id: int = Depends(get_current_user_id),
    notifier: BookingNotifier = Depends(get_notifier),
) -> BookingRead:
    slot_repo = SqlAlchemySlotRepository(session)
    booking_repo = SqlAlchemyBookingRepository(session)
    try:
        async with transaction(session):
            booking, slot, status_from = await booking_usecase.confirm_booking(
                slot_repo,
                booking_repo,
                booking_id=booking_id,
                confirmed_at=to_utc_naive(payload.confirmed_at) if payload and payload.confirmed_at else None,
            )
    except DomainError as exc:
        raise domain_error_to_http(exc) from exc

    try:
        emit_audit_log(
            action="booking.confirmed",
            initiator="staff",
            booking_id=booking.id,
            slot_id=slot.id,
            visitor_id=booking.visitor_id,
            user_id=user_id,
            group_size=booking.group_size,
            status_from=status_from,
            status_to=booking.status,
        )
    except RuntimeError as exc:
        raise audit_failure() from exc

    await _notify(notifier, booking.id, BookingEvent.CONFIRMED)
    return BookingRead.from_db(booking=booking)


@router.post("/{booking_id}/cancel", response_model=BookingRead)
async def cancel_booking(
    payload: BookingCancel,
    booking_id: int = Path(..., ge=1),
    session: AsyncSession = Depends(get_session),
    user_id: int = Depends(get_current_user_id),
    notifier: BookingNotifier = Depends(get_notifier),
) -> BookingRead:
    slot_repo = SqlAlchemySlotRepository(session)
    booking_repo = SqlAlchemyBookingRepository(session)
    try:
        async with transaction(session):
            booking, slot, status_from = await booking_usecase.cancel_booking(
                slot_repo,
                booking_repo,
                booking_id=booking_id,
                reason=payload.reason,
                cancelled_at=to_utc_naive(payload.cancelled_at) if payload.cancelled_at else None,
            )
    except DomainError as exc:
        raise domain_error_to_http(exc) from exc

    # Repeated cancels are answered without a second audit record or notification.
    if status_from == BookingStatus.CANCELLED:
        return BookingRead.from_db(booking=booking)

    try:
        emit_audit_log(
            action="booking.cancelled",
            initiator="staff",
            booking_id=booking.id,
            slot_id=slot.id,
            visitor_id=booking.visitor_id,
            user_id=user_id,
            group_size=booking.group_size,
            status_from=status_from,
            status_to=booking.status,
            message=booking.cancellation_reason,
        )
    except RuntimeError as exc:
        raise audit_failure() from exc

    await _notify(notifier, booking.id, BookingEvent.CANCELLED)
    return BookingRead.from_db(booking=booking)


@router.patch("/{booking_id}/payment", response_model=BookingRead)
async def update_booking_payment(
    payload: BookingPayment,
    booking_id: int = Path(..., ge=1),
    session: AsyncSession = Depends(get_session),
    user_id: int = Depends(get_current_user_id),
) -> BookingRead:
    booking_repo = SqlAlchemyBookingRepository(session)
    try:
        async with transaction(session):
            booking = await booking_usecase.update_booking_payment(
                booking_repo,
                booking_id=booking_id,
                payment_status=payload.payment_status,
                payment_method=payload.payment_method,
                total_amount=payload.total_amount,
            )
    except DomainError as exc:
        raise domain_error_to_http(exc) from exc

    try:
        emit_audit_log(
            action="booking.payment_updated",
            initiator="staff",
            booking_id=booking.id,
            slot_id=booking.slot_id,
            visitor_id=booking.visitor_id,
            user_id=user_id,
            extra={"payment_status": str(booking.payment_status)},
        )
    except RuntimeError as exc:
        raise audit_failure() from exc
    return BookingRead.from_db(booking=booking)


@router.delete("/{booking_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_booking(
    booking_id: int = Path(..., ge=1),
    session: AsyncSession = Depends(get_session),
    user_id: int = Depends(get_current_user_id),
) -> None:
    slot_repo = SqlAlchemySlotRepository(session)
    booking_repo = SqlAlchemyBookingRepository(session)
    try:
        async with transaction(session):
            booking, slot = await booking_usecase.delete_booking(slot_repo, booking_repo, booking_id=booking_id)
    except DomainError as exc:
        raise domain_error_to_http(exc) from exc

    try:
        emit_audit_log(
            action="booking.deleted",
            initiator="staff",
            booking_id=booking_id,
            slot_id=slot.id,
            visitor_id=booking.visitor_id,
            user_id=user_id,
            group_size=booking.group_size,
            status_from=booking.status,
        )
    except RuntimeError as exc:
        raise audit_failure() from exc
