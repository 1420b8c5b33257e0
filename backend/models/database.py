"""
Database connection and session management.

Uses SQLAlchemy async with a small connection pool. The sync engine caps
its own fan-out (SYNC_CONCURRENCY) below the pool size so one run can never
starve API requests of connections.
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, AsyncEngine, async_sessionmaker
from sqlalchemy.orm import declarative_base

from config import settings

logger = logging.getLogger(__name__)

Base = declarative_base()

# Ensure URL uses asyncpg driver
_db_url = settings.DATABASE_URL
if _db_url and "+asyncpg" not in _db_url:
    _db_url = _db_url.replace("postgresql://", "postgresql+asyncpg://")

# Global singletons - created on first use, reused forever
_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker[AsyncSession]] = None


def get_engine() -> AsyncEngine:
    """Get the database engine (singleton - created once, reused)."""
    global _engine
    if _engine is None:
        _engine = create_async_engine(
            _db_url,
            echo=False,
            future=True,
            pool_size=5,        # Base connections kept warm
            max_overflow=10,    # Up to 15 total under burst load
            pool_recycle=300,   # Recycle connections every 5 min
            pool_pre_ping=True, # Verify connection is alive before checkout
        )
        logger.info("Database engine created (pool_size=5, max_overflow=10)")
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Get the async session factory (singleton - created once, reused)."""
    global _session_factory
    if _session_factory is None:
        _session_factory = async_sessionmaker(
            get_engine(),
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,  # Don't auto-flush, we control when to commit
        )
    return _session_factory


@asynccontextmanager
async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """
    Yield an async database session.

    Usage:
        async with get_session() as session:
            result = await session.execute(query)
            await session.commit()  # Explicit commit if needed

    Any uncommitted changes are rolled back on error.
    """
    factory = get_session_factory()
    session: AsyncSession = factory()
    try:
        yield session
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


async def init_db() -> None:
    """Create all tables."""
    # Import models so they register on Base.metadata
    import models  # noqa: F401

    engine = get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    """
    Close the database engine and release all pooled connections.
    Call this on application shutdown.
    """
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None
        logger.info("Database engine disposed, all connections closed")


def dispose_engine() -> None:
    """Drop engine references without awaiting (for Celery's fresh event loops)."""
    global _engine, _session_factory
    if _engine is not None:
        _engine.sync_engine.dispose(close=False)
    _engine = None
    _session_factory = None
