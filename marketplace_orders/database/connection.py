"""
Engine and session factory for the order database.

One engine per process, created on first use from ``Settings.database_url``.
Tests and workers that need their own database build one explicitly with
``build_engine`` / ``build_session_factory``.
"""
from functools import lru_cache
from typing import Any

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from marketplace_orders.config import get_settings
from marketplace_orders.database.models import Base


def build_engine(database_url: str, **overrides: Any) -> AsyncEngine:
    """Pool sizing applies to server databases only; SQLite uses its own pool."""
    settings = get_settings()
    options: dict[str, Any] = {"echo": settings.database_echo}
    if not database_url.startswith("sqlite"):
        options.update(
            pool_size=settings.database_pool_size,
            max_overflow=settings.database_max_overflow,
            pool_pre_ping=True,
            pool_recycle=1800,
        )
    options.update(overrides)
    return create_async_engine(database_url, **options)


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    # Rows stay loaded after commit; stores map them to domain objects afterwards.
    return async_sessionmaker(engine, expire_on_commit=False, autoflush=False)


@lru_cache(maxsize=1)
def get_engine() -> AsyncEngine:
    return build_engine(get_settings().database_url)


@lru_cache(maxsize=1)
def get_session_factory() -> async_sessionmaker[AsyncSession]:
    return build_session_factory(get_engine())


async def init_db(engine: AsyncEngine | None = None) -> None:
    """Create missing tables. Existing tables are left untouched."""
    async with (engine or get_engine()).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    """Dispose of the process engine; the next ``get_engine`` call builds a new one."""
    if get_engine.cache_info().currsize:
        await get_engine().dispose()
    get_session_factory.cache_clear()
    get_engine.cache_clear()
