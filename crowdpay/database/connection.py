"""Database engine and session factories.

Engines are created explicitly by whoever owns the process (the API lifespan,
a worker, a test fixture) and disposed by the same owner.
"""
from typing import Any, Dict

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from crowdpay.config import Settings
from crowdpay.database.models import Base


def create_engine(settings: Settings) -> AsyncEngine:
    """
    Create the async engine for settings.database_url.

    PostgreSQL gets a pre-pinged, recycled pool. SQLite gets a 30 second busy
    timeout so racing resolvers queue on the write lock.
    """
    options: Dict[str, Any] = {"echo": settings.database_echo}
    if settings.is_sqlite:
        options["connect_args"] = {"timeout": 30}
    else:
        options.update(
            pool_size=settings.database_pool_size,
            max_overflow=settings.database_max_overflow,
            pool_pre_ping=True,
            pool_recycle=3600,
        )
    return create_async_engine(settings.database_url, **options)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    # Records handed out by the store must stay readable after their session closes
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


async def init_db(engine: AsyncEngine) -> None:
    """Create missing tables."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
