from datetime import date
from typing import List, Optional

from fastapi import APIRouter, Depends, Path, Query
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import get_settings
from ..deps import get_session
from ..domain.errors import DomainError
from ..infrastructure.repositories import SqlAlchemyBookingRepository, SqlAlchemySlotRepository
from ..infrastructure.transaction import transaction
from ..schemas import AvailabilityRead, SlotRead
from ..usecases import capacity as capacity_usecase
from ..usecases import slots as slot_usecase
from .errors import domain_error_to_http

router = APIRouter(prefix="/public", tags=["public"])


@router.get("/slots/available", response_model=List[SlotRead])
async def list_available_slots(
    date_from: Optional[date] = Query(default=None),
    date_to: Optional[date] = Query(default=None),
    session: AsyncSession = Depends(get_session),
) -> list[SlotRead]:
    settings = get_settings()
    slot_repo = SqlAlchemySlotRepository(session)
    try:
        async with transaction(session):
            rows = await slot_usecase.get_public_available_slots(
                slot_repo,
                tz_name=settings.venue_timezone,
                date_from=date_from,
                date_to=date_to,
            )
    except DomainError as exc:
        raise domain_error_to_http(exc) from exc
    return [SlotRead.from_db(slot=row) for row in rows]


@router.get("/slots/{slot_id}/availability", response_model=AvailabilityRead)
async def check_availability(
    slot_id: int = Path(..., ge=1),
    group_size: int = Query(..., ge=1, le=50),
    session: AsyncSession = Depends(get_session),
) -> AvailabilityRead:
    slot_repo = SqlAlchemySlotRepository(session)
    booking_repo = SqlAlchemyBookingRepository(session)
    try:
        async with transaction(session):
            check = await capacity_usecase.check_availability(
                slot_repo,
                booking_repo,
                slot_id=slot_id,
                group_size=group_size,
            )
    except DomainError as exc:
        raise domain_error_to_http(exc) from exc
    return AvailabilityRead.from_check(check)
