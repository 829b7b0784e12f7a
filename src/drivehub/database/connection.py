"""
Database Connection Management

SQLAlchemy async engine, session factory, and connection pooling.
PostgreSQL (asyncpg) in production; SQLite (aiosqlite) for local runs and tests.
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from sqlalchemy import event, text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import declarative_base

from drivehub.config import get_settings

logger = structlog.get_logger()

# SQLAlchemy declarative base
Base = declarative_base()

# Global engine instance
engine: AsyncEngine | None = None
SessionLocal: async_sessionmaker[AsyncSession] | None = None


def get_database_url(url: str | None = None) -> str:
    """Normalize a database URL to its async driver form."""
    url = url or get_settings().DATABASE_URL
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    if url.startswith("sqlite://"):
        return url.replace("sqlite://", "sqlite+aiosqlite://", 1)
    return url


async def init_db(url: str | None = None, create_tables: bool = False) -> None:
    """Initialize database engine and session factory.

    Args:
        url: Database URL (defaults to settings.DATABASE_URL)
        create_tables: Create tables from metadata (local runs and tests;
            deployments use Alembic migrations)
    """
    global engine, SessionLocal

    if engine is not None:
        logger.warning("Database already initialized")
        return

    settings = get_settings()
    database_url = get_database_url(url)
    logger.info("Initializing database connection", url=database_url.split("@")[-1])  # Hide credentials

    engine_kwargs: dict = {"echo": settings.DEBUG}
    if not database_url.startswith("sqlite"):
        engine_kwargs.update(
            pool_size=settings.DATABASE_POOL_SIZE,
            max_overflow=settings.DATABASE_MAX_OVERFLOW,
            pool_timeout=settings.DATABASE_POOL_TIMEOUT,
            pool_recycle=settings.DATABASE_POOL_RECYCLE,
            pool_pre_ping=True,  # Verify connections before using
        )

    engine = create_async_engine(database_url, **engine_kwargs)

    @event.listens_for(engine.sync_engine, "connect")
    def receive_connect(dbapi_conn, connection_record):
        logger.debug("Database connection established")

    SessionLocal = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )

    if create_tables:
        # Register models on the metadata before create_all
        from drivehub.database import models  # noqa: F401

        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    logger.info("Database initialized successfully")


async def close_db() -> None:
    """Close database engine and cleanup connections."""
    global engine, SessionLocal

    if engine is None:
        return

    logger.info("Closing database connections")
    await engine.dispose()
    engine = None
    SessionLocal = None
    logger.info("Database connections closed")


@asynccontextmanager
async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """
    Get async database session.

    Commits on success, rolls back on error.

    Usage:
        async with get_session() as session:
            result = await session.execute(query)

    Raises:
        RuntimeError: If database not initialized
    """
    if SessionLocal is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")

    async with SessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def check_db_health() -> bool:
    """
    Check database connectivity.

    Returns:
        True if database is healthy, False otherwise
    """
    if engine is None:
        return False

    try:
        async with get_session() as session:
            await session.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.error("Database health check failed", error=str(e))
        return False
