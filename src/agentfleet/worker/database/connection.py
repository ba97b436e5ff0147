"""
Database Connection Management

SQLAlchemy engine, session factory, and connection pooling for PostgreSQL.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

import structlog
from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import declarative_base

from ..config import Settings, get_settings

logger = structlog.get_logger()

# SQLAlchemy declarative base
Base = declarative_base()

# Global engine instance
engine: AsyncEngine | None = None
SessionLocal: async_sessionmaker[AsyncSession] | None = None


def create_session_factory(db_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Build the session factory used by the state store."""
    return async_sessionmaker(
        db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


async def init_db(settings: Settings | None = None) -> async_sessionmaker[AsyncSession]:
    """Initialize database engine and session factory."""
    global engine, SessionLocal

    if engine is not None and SessionLocal is not None:
        logger.warning("database_already_initialized")
        return SessionLocal

    settings = settings or get_settings()
    database_url = settings.async_database_url
    logger.info("database_initializing", url=database_url.split("@")[-1])  # Hide credentials

    engine = create_async_engine(
        database_url,
        echo=settings.debug,
        pool_size=settings.database_pool_size,
        max_overflow=settings.database_max_overflow,
        pool_timeout=settings.database_pool_timeout,
        pool_recycle=settings.database_pool_recycle,
        pool_pre_ping=True,
    )
    SessionLocal = create_session_factory(engine)

    logger.info(
        "database_initialized",
        pool_size=settings.database_pool_size,
        max_overflow=settings.database_max_overflow,
    )
    return SessionLocal


async def close_db() -> None:
    """Close database engine and cleanup connections."""
    global engine, SessionLocal

    if engine is None:
        return

    await engine.dispose()
    engine = None
    SessionLocal = None
    logger.info("database_closed")


@asynccontextmanager
async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """
    Get async database session.

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
    """Check database connectivity."""
    if engine is None:
        return False

    try:
        async with get_session() as session:
            await session.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.error("database_health_check_failed", error=str(e))
        return False
