"""Async SQLAlchemy database setup.

@module database
@description Database engine, session factory, and connection management.
"""

from typing import AsyncGenerator

from sqlalchemy import event, text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import declarative_base

from orgvault.config import get_settings

settings = get_settings()


def create_engine_for_url(url: str, **kwargs) -> AsyncEngine:
    """Create an async engine, applying pool settings only where supported."""
    if url.startswith("sqlite"):
        return create_async_engine(url, echo=settings.DEBUG, **kwargs)

    engine = create_async_engine(
        url,
        pool_size=settings.DATABASE_POOL_SIZE,
        max_overflow=settings.DATABASE_MAX_OVERFLOW,
        pool_pre_ping=True,  # Health check connections before use
        pool_recycle=3600,  # Recycle connections after 1 hour
        echo=settings.DEBUG,
        **kwargs,
    )

    # Set query timeout for safety
    @event.listens_for(engine.sync_engine, "connect")
    def set_query_timeout(dbapi_connection, connection_record):
        """Set query timeout to prevent long-running queries."""
        cursor = dbapi_connection.cursor()
        cursor.execute(f"SET statement_timeout = '{settings.DATABASE_QUERY_TIMEOUT}s'")
        cursor.close()

    return engine


engine = create_engine_for_url(settings.DATABASE_URL)

# Session factory
async_session_factory = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)

# Base class for models
Base = declarative_base()


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Dependency for getting database sessions."""
    async with async_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_db() -> None:
    """Verify database connectivity on startup.

    Table creation is handled by Alembic migrations (alembic upgrade head).
    """
    async with engine.begin() as conn:
        await conn.execute(text("SELECT 1"))


async def check_db_health() -> bool:
    """Check database connectivity."""
    try:
        async with async_session_factory() as session:
            await session.execute(text("SELECT 1"))
            return True
    except Exception:
        return False


async def close_db() -> None:
    """Close database connections."""
    await engine.dispose()
