from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from .config import get_settings

settings = get_settings()

# Slot rows are locked with SELECT ... FOR UPDATE, so every request holding a
# lock also holds a pooled connection until its transaction ends.
engine = create_async_engine(
    settings.database_url,
    echo=settings.echo_sql,
    pool_size=settings.db_pool_size,
    pool_recycle=settings.db_pool_recycle_seconds,
    pool_pre_ping=True,
)

async_session = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)
