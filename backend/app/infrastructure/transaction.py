from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ..domain.errors import PersistenceError


@asynccontextmanager
async def transaction(session: AsyncSession) -> AsyncIterator[AsyncSession]:
    """Run a unit of work in `session.begin()`; storage failures surface as PersistenceError."""
    try:
        async with session.begin():
            yield session
    except SQLAlchemyError as exc:
        raise PersistenceError("storage operation failed") from exc
