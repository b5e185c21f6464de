"""
Database Connection Management

Provides the async engine, session factory, and the FastAPI session
dependency. The exposure store opens its own short transactions from
the session factory; request handlers that only read use get_db.
"""

import logging
from typing import AsyncGenerator
from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import (
    AsyncSession,
    AsyncEngine,
    create_async_engine,
    async_sessionmaker,
)
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy import text

from .config import get_database_settings

logger = logging.getLogger(__name__)


# =============================================================================
# BASE MODEL
# =============================================================================

class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""
    pass


# =============================================================================
# ENGINE & SESSION FACTORY
# =============================================================================

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def get_engine() -> AsyncEngine:
    """
    Get or create the async database engine.
    Uses connection pooling for efficient resource usage.
    """
    global _engine

    if _engine is None:
        settings = get_database_settings()

        connect_args = {
            # Disable prepared statement cache for pgbouncer-style poolers
            "prepared_statement_cache_size": 0,
        }
        if settings.db_ssl:
            connect_args["ssl"] = True

        _engine = create_async_engine(
            settings.async_database_url,
            pool_size=settings.pool_size,
            max_overflow=settings.max_overflow,
            pool_timeout=settings.pool_timeout,
            pool_recycle=settings.pool_recycle,
            pool_pre_ping=True,
            echo=settings.echo_sql,
            connect_args=connect_args,
        )

        logger.info("Database engine created")

    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """
    Get or create the async session factory.
    """
    global _session_factory

    if _session_factory is None:
        engine = get_engine()

        _session_factory = async_sessionmaker(
            bind=engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )

        logger.info("Session factory created")

    return _session_factory


# =============================================================================
# DEPENDENCY INJECTION FOR FASTAPI
# =============================================================================

async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    FastAPI dependency that provides a database session.

    Usage:
        @router.get("/notifications")
        async def list_notifications(db: AsyncSession = Depends(get_db)):
            ...

    Commits on success, rolls back on any error.
    """
    session_factory = get_session_factory()

    async with session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


@asynccontextmanager
async def get_db_context() -> AsyncGenerator[AsyncSession, None]:
    """
    Context manager for database sessions outside of FastAPI.

    Usage:
        async with get_db_context() as db:
            entry = await crud.get_user_by_uid(db, uid)
    """
    session_factory = get_session_factory()

    async with session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


# =============================================================================
# HEALTH CHECK & LIFECYCLE
# =============================================================================

async def check_database_connection() -> bool:
    """
    Check if database connection is healthy.
    Returns True if connection works, False otherwise.
    """
    try:
        async with get_db_context() as db:
            await db.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.error(f"Database connection check failed: {e}")
        return False


async def create_tables() -> None:
    """Create any missing tables. Development convenience, not a migration tool."""
    # Registers the mapped classes on Base.metadata
    from . import models  # noqa: F401

    async with get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables ensured")


async def init_database() -> None:
    """
    Initialize database connection on application startup.
    Call this in FastAPI lifespan or startup event.
    """
    logger.info("Initializing database connection...")

    get_engine()
    get_session_factory()

    if await check_database_connection():
        logger.info("Database connection verified")
    else:
        logger.error("Database connection failed!")
        raise RuntimeError("Could not connect to database")

    if get_database_settings().create_tables:
        await create_tables()


async def close_database() -> None:
    """
    Close database connections on application shutdown.
    Call this in FastAPI lifespan or shutdown event.
    """
    global _engine, _session_factory

    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None
        logger.info("Database connections closed")
