"""
Ledger database: async engine, sessions and table creation.

Services commit their own ledger writes; a session scope only commits
what is left and rolls back on error.
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from rentflow.config import settings

logger = logging.getLogger(__name__)


def async_database_url(raw_url: str) -> str:
    """
    postgresql://...?sslmode=require -> postgresql+asyncpg://...

    asyncpg rejects the libpq `sslmode` parameter; TLS is set through
    connect_args instead.
    """
    url = make_url(raw_url)
    if url.drivername in ("postgres", "postgresql"):
        url = url.set(drivername="postgresql+asyncpg")
    url = url.difference_update_query(["sslmode"])
    return url.render_as_string(hide_password=False)


def build_engine() -> Optional[AsyncEngine]:
    if not settings.database_url:
        logger.warning("DATABASE_URL not configured; payment ledger unavailable")
        return None

    url = async_database_url(settings.database_url)
    return create_async_engine(
        url,
        echo=settings.debug,
        pool_pre_ping=True,
        pool_size=settings.database_pool_size,
        max_overflow=settings.database_max_overflow,
        connect_args={"ssl": True} if settings.is_production else {},
    )


engine = build_engine()

async_session_maker = (
    async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    if engine
    else None
)


class Base(DeclarativeBase):
    pass


@asynccontextmanager
async def get_db_context() -> AsyncGenerator[AsyncSession, None]:
    """Session scope for workers and scripts."""
    if async_session_maker is None:
        raise RuntimeError("Payment ledger not configured. Set DATABASE_URL.")

    async with async_session_maker() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency: one session per request."""
    async with get_db_context() as session:
        yield session


async def init_db() -> None:
    """Create ledger tables that do not exist yet."""
    if engine is None:
        logger.info("Skipping table creation; DATABASE_URL not configured")
        return

    import rentflow.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Ledger tables ready")


async def close_db() -> None:
    if engine is not None:
        await engine.dispose()
