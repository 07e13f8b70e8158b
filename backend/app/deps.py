from typing import AsyncIterator

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from .config import get_settings
from .database import async_session
from .domain.notifications import BookingNotifier
from .infrastructure.notifier import LoggingBookingNotifier
from .models import User
from .utils.auth import bearer_token, decode_access_token


async def get_session() -> AsyncIterator[AsyncSession]:
    async with async_session() as session:
        yield session


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


async def get_current_user_id(
    authorization: str | None = Header(default=None),
    session: AsyncSession = Depends(get_session),
) -> int:
    settings = get_settings()
    try:
        token = bearer_token(authorization)
        user_id = decode_access_token(token, secret=settings.auth_secret, algorithms=[settings.auth_algorithm])
    except ValueError as exc:
        raise _unauthorized("invalid or expired token") from exc

    try:
        found = await session.scalar(select(User.id).where(User.id == user_id))
    except SQLAlchemyError as exc:
        await session.rollback()
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="user lookup failed",
        ) from exc
    if found is None:
        raise _unauthorized("user not found")
    return user_id


def get_notifier() -> BookingNotifier:
    return LoggingBookingNotifier()
