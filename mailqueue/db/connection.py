"""
Database connection management.
Handles async SQLAlchemy engine and session creation.
"""

import logging

from sqlalchemy import text
from sqlalchemy.exc import DBAPIError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from mailqueue.config import get_settings
from mailqueue.db.models import Base
from mailqueue.errors import StoreUnavailable

logger = logging.getLogger(__name__)

# Global engine instance
_engine: AsyncEngine | None = None
AsyncSessionLocal: async_sessionmaker[AsyncSession] | None = None


def create_engine_for_url(database_url: str, echo: bool = False) -> AsyncEngine:
    """
    Create an async engine suited to the backend behind the URL.

    SQLite gets a NullPool so every session opens its own connection;
    server databases get a sized connection pool.

    Args:
        database_url: SQLAlchemy async database URL.
        echo: Whether to log emitted SQL.

    Returns:
        AsyncEngine: The SQLAlchemy async engine instance.
    """
    if database_url.startswith("sqlite"):
        return create_async_engine(
            database_url,
            poolclass=NullPool,
            echo=echo,
            connect_args={"timeout": 30},
        )

    settings = get_settings()
    return create_async_engine(
        database_url,
        pool_size=settings.database_pool_size,
        max_overflow=settings.database_max_overflow,
        echo=echo,
        pool_pre_ping=True,
    )


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Create the session factory used by the queue store."""
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


def get_engine() -> AsyncEngine:
    """
    Get or create the async database engine.

    Returns:
        AsyncEngine: The SQLAlchemy async engine instance.
    """
    global _engine
    if _engine is None:
        settings = get_settings()
        _engine = create_engine_for_url(
            settings.database_url,
            echo=settings.log_level == "DEBUG",
        )
    return _engine


async def create_schema(engine: AsyncEngine) -> None:
    """Create all tables that do not exist yet."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def init_db(create_tables: bool = True) -> async_sessionmaker[AsyncSession]:
    """
    Initialize the database connection and session factory.
    Should be called on process startup.

    Args:
        create_tables: Create missing tables after connecting.

    Returns:
        The session factory bound to the global engine.

    Raises:
        StoreUnavailable: If the database cannot be reached.
    """
    global AsyncSessionLocal
    engine = get_engine()

    try:
        if create_tables:
            await create_schema(engine)
        else:
            async with engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
    except (OperationalError, InterfaceError, DBAPIError, OSError) as e:
        await close_db()
        raise StoreUnavailable(f"Cannot reach database: {e}") from e

    AsyncSessionLocal = create_session_factory(engine)
    logger.info("Database connection initialized")
    return AsyncSessionLocal


async def close_db() -> None:
    """
    Close the database connection.
    Should be called on process shutdown.
    """
    global _engine, AsyncSessionLocal
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        AsyncSessionLocal = None
        logger.info("Database connection closed")
