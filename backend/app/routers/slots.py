from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Path, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import get_settings
from ..deps import get_current_user_id, get_session
from ..domain.errors import DomainError
from ..domain.repositories import SlotFilters
from ..infrastructure.repositories import SqlAlchemyBookingRepository, SqlAlchemySlotRepository
from ..infrastructure.transaction import transaction
from ..models import SlotStatus
from ..schemas import (
    CapacityRead,
    ExpiryRead,
    PaginatedResponse,
    ScheduleGenerate,
    ScheduleGenerationRead,
    SlotCreate,
    SlotExpire,
    SlotRead,
    SlotUpdate,
)
from ..usecases import capacity as capacity_usecase
from ..usecases import slots as slot_usecase
from ..utils.audit_log import emit_audit_log
from .errors import audit_failure, domain_error_to_http

router = APIRouter(prefix="/slots", tags=["slots"], dependencies=[Depends(get_current_user_id)])


@router.post("", response_model=SlotRead, status_code=status.HTTP_201_CREATED)
async def create_slot(
    payload: SlotCreate,
    session: AsyncSession = Depends(get_session),
    user_id: int = Depends(get_current_user_id),
) -> SlotRead:
    settings = get_settings()
    slot_repo = SqlAlchemySlotRepository(session)
    try:
        async with transaction(session):
            slot = await slot_usecase.create_slot(
                slot_repo,
                slot_date=payload.date,
                start_time=payload.start_time,
                end_time=payload.end_time,
                capacity=payload.capacity,
                created_by=user_id,
                tz_name=settings.venue_timezone,
                description=payload.description,
                status=payload.status,
            )
    except DomainError as exc:
        raise domain_error_to_http(exc) from exc

    try:
        emit_audit_log(
            action="slot.created",
            initiator="staff",
            slot_id=slot.id,
            user_id=user_id,
            status_to=slot.status,
            extra={"date": slot.date.isoformat(), "start_time": slot.start_time, "end_time": slot.end_time},
        )
    except RuntimeError as exc:
        raise audit_failure() from exc
    return SlotRead.from_db(slot=slot)


@router.get("", response_model=PaginatedResponse[SlotRead])
async def list_slots(
    date_from: Optional[date] = Query(default=None),
    date_to: Optional[date] = Query(default=None),
    slot_status: Optional[SlotStatus] = Query(default=None, alias="status"),
    search: Optional[str] = Query(default=None, max_length=200),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    session: AsyncSession = Depends(get_session),
) -> PaginatedResponse[SlotRead]:
    filters = SlotFilters(date_from=date_from, date_to=date_to, status=slot_status, search=search)
    slot_repo = SqlAlchemySlotRepository(session)
    try:
        async with transaction(session):
            rows, total = await slot_usecase.list_slots(slot_repo, filters=filters, page=page, limit=limit)
    except DomainError as exc:
        raise domain_error_to_http(exc) from exc
    return PaginatedResponse[SlotRead](
        items=[SlotRead.from_db(slot=row) for row in rows],
        total=total,
        page=page,
        limit=limit,
    )


@router.post("/generate", response_model=ScheduleGenerationRead, status_code=status.HTTP_201_CREATED)
async def generate_schedules(
    payload: ScheduleGenerate,
    session: AsyncSession = Depends(get_session),
    user_id: int = Depends(get_current_user_id),
) -> ScheduleGenerationRead:
    settings = get_settings()
    slot_repo = SqlAlchemySlotRepository(session)
    try:
        async with transaction(session):
            result = await slot_usecase.generate_schedules(
                slot_repo,
                month=payload.month,
                year=payload.year,
                day_start_time=payload.day_start_time,
                day_end_time=payload.day_end_time,
                slot_duration=payload.slot_duration,
                capacity=payload.capacity,
                created_by=user_id,
                tz_name=settings.venue_timezone,
                excluded_days=payload.excluded_days,
                vacant_ranges=[(r.start_time, r.end_time) for r in payload.vacant_ranges],
            )
    except DomainError as exc:
        raise domain_error_to_http(exc) from exc

    try:
        emit_audit_log(
            action="slots.generated",
            initiator="staff",
            user_id=user_id,
            extra={
                "month": payload.month,
                "year": payload.year,
                "created": len(result.created),
                "skipped": result.skipped,
            },
        )
    except RuntimeError as exc:
        raise audit_failure() from exc
    return ScheduleGenerationRead.from_result(result)


@router.post("/expire", response_model=ExpiryRead)
async def expire_slots(
    payload: SlotExpire | None = None,
    session: AsyncSession = Depends(get_session),
    user_id: int = Depends(get_current_user_id),
) -> ExpiryRead:
    settings = get_settings()
    slot_repo = SqlAlchemySlotRepository(session)
    try:
        async with transaction(session):
            result = await slot_usecase.expire_past_unbooked_slots(
                slot_repo,
                tz_name=settings.venue_timezone,
                target=settings.slot_expiry_status,
                reference_date=payload.reference_date if payload else None,
            )
    except DomainError as exc:
        raise domain_error_to_http(exc) from exc

    try:
        emit_audit_log(
            action="slots.expired",
            initiator="staff",
            user_id=user_id,
            status_to=settings.slot_expiry_status,
            extra={"expired_count": result.expired_count, "cutoff_date": result.cutoff_date.isoformat()},
        )
    except RuntimeError as exc:
        raise audit_failure() from exc
    return ExpiryRead.from_result(result)


@router.get("/{slot_id}", response_model=SlotRead)
async def get_slot(
    slot_id: int = Path(..., ge=1),
    session: AsyncSession = Depends(get_session),
) -> SlotRead:
    slot_repo = SqlAlchemySlotRepository(session)
    try:
        async with transaction(session):
            slot = await slot_usecase.get_slot(slot_repo, slot_id=slot_id)
    except DomainError as exc:
        raise domain_error_to_http(exc) from exc
    return SlotRead.from_db(slot=slot)


@router.get("/{slot_id}/capacity", response_model=CapacityRead)
async def get_slot_capacity(
    slot_id: int = Path(..., ge=1),
    session: AsyncSession = Depends(get_session),
) -> CapacityRead:
    slot_repo = SqlAlchemySlotRepository(session)
    booking_repo = SqlAlchemyBookingRepository(session)
    try:
        async with transaction(session):
            summary = await capacity_usecase.compute_available_capacity(slot_repo, booking_repo, slot_id=slot_id)
    except DomainError as exc:
        raise domain_error_to_http(exc) from exc
    return CapacityRead.from_summary(slot_id=slot_id, summary=summary)


@router.post("/{slot_id}/reconcile", response_model=CapacityRead)
async def reconcile_slot_capacity(
    slot_id: int = Path(..., ge=1),
    session: AsyncSession = Depends(get_session),
) -> CapacityRead:
    slot_repo = SqlAlchemySlotRepository(session)
    booking_repo = SqlAlchemyBookingRepository(session)
    try:
        async with transaction(session):
            await capacity_usecase.reconcile_booked_count(slot_repo, booking_repo, slot_id=slot_id)
            summary = await capacity_usecase.compute_available_capacity(slot_repo, booking_repo, slot_id=slot_id)
    except DomainError as exc:
        raise domain_error_to_http(exc) from exc
    return CapacityRead.from_summary(slot_id=slot_id, summary=summary)


@router.put("/{slot_id}", response_model=SlotRead)
async def update_slot(
    payload: SlotUpdate,
    slot_id: int = Path(..., ge=1),
    session: AsyncSession = Depends(get_session),
    user_id: int = Depends(get_current_user_id),
) -> SlotRead:
    changes = payload.model_dump(exclude_unset=True)
    if not changes:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="no fields to update")
    settings = get_settings()
    slot_repo = SqlAlchemySlotRepository(session)
    booking_repo = SqlAlchemyBookingRepository(session)
    try:
        async with transaction(session):
            slot = await slot_usecase.update_slot(
                slot_repo,
                booking_repo,
                slot_id=slot_id,
                changes=changes,
                tz_name=settings.venue_timezone,
            )
    except DomainError as exc:
        raise domain_error_to_http(exc) from exc

    try:
        emit_audit_log(
            action="slot.updated",
            initiator="staff",
            slot_id=slot.id,
            user_id=user_id,
            status_to=slot.status,
            extra={"fields": sorted(changes)},
        )
    except RuntimeError as exc:
        raise audit_failure() from exc
    return SlotRead.from_db(slot=slot)


@router.delete("/{slot_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_slot(
    slot_id: int = Path(..., ge=1),
    session: AsyncSession = Depends(get_session),
    user_id: int = Depends(get_current_user_id),
) -> None:
    slot_repo = SqlAlchemySlotRepository(session)
    booking_repo = SqlAlchemyBookingRepository(session)
    try:
        async with transaction(session):
            slot = await slot_usecase.delete_slot(slot_repo, booking_repo, slot_id=slot_id)
    except DomainError as exc:
        raise domain_error_to_http(exc) from exc

    try:
        emit_audit_log(
            action="slot.deleted",
            initiator="staff",
            slot_id=slot_id,
            user_id=user_id,
            status_from=slot.status,
        )
    except RuntimeError as exc:
        raise audit_failure() from exc
