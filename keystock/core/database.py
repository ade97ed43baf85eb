"""
Database configuration and session management

Configurable connection pooling for production vs local dev.
All timestamps are stored as UTC and read back timezone-aware.
"""
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Optional, Type

from sqlalchemy import DateTime, Enum
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.orm import declarative_base
from sqlalchemy.types import TypeDecorator

from keystock.core.config import settings
from keystock.core.utils import ensure_utc

# Use QueuePool with configured sizes for traditional deployments,
# a small pool for local development. SQLite manages its own pooling.
pool_config = {}

if settings.DATABASE_URL.startswith("sqlite"):
    pool_config = {}
elif settings.ENVIRONMENT == "production":
    pool_config = {
        "pool_size": settings.DB_POOL_SIZE,
        "max_overflow": settings.DB_MAX_OVERFLOW,
        "pool_recycle": settings.DB_POOL_RECYCLE,
        "pool_pre_ping": True,  # Verify connections before use
    }
else:
    pool_config = {
        "pool_size": 2,
        "max_overflow": 5,
        "pool_pre_ping": True,
    }

engine = create_async_engine(
    settings.DATABASE_URL,
    echo=settings.DEBUG,
    future=True,
    **pool_config,
)

AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)

Base = declarative_base()


class UTCDateTime(TypeDecorator):
    """
    DateTime column that always round-trips timezone-aware UTC values.

    PostgreSQL keeps the offset natively (timestamptz). SQLite has no
    timezone support, so values are normalised to naive UTC on the way in
    and UTC is re-attached on the way out.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: Optional[datetime], dialect) -> Optional[datetime]:
        if value is None:
            return None
        value = ensure_utc(value)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value: Optional[datetime], dialect) -> Optional[datetime]:
        if value is None:
            return None
        return ensure_utc(value)


def str_enum(enum_cls: Type, length: int = 32) -> Enum:
    """Persist a str-valued Enum by its value rather than its member name."""
    return Enum(
        enum_cls,
        native_enum=False,
        create_constraint=False,
        length=length,
        values_callable=lambda members: [m.value for m in members],
        validate_strings=True,
    )


@asynccontextmanager
async def get_db_session() -> AsyncIterator[AsyncSession]:
    """
    Context manager for database sessions outside FastAPI request context.

    Use this in:
    - Background jobs
    - CLI scripts
    - Service-to-service calls

    Usage:
        async with get_db_session() as db:
            result = await db.execute(...)
            await db.commit()
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise


@asynccontextmanager
async def transaction(db: AsyncSession) -> AsyncIterator[AsyncSession]:
    """
    Run a unit of work atomically.

    Joins the caller's transaction when one is already open (the caller
    owns commit/rollback), otherwise opens one and commits on exit.
    """
    if db.in_transaction():
        yield db
        await db.flush()
    else:
        async with db.begin():
            yield db
