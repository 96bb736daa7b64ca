"""
Database Configuration and Session Management
============================================

This module provides the async database engine, session factory, and table
creation functionality for the treasury deposit and balance service.
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from config import Config
from models import Base

logger = logging.getLogger(__name__)


def to_async_database_url(url: str) -> str:
    """Convert a plain database URL to its asyncio driver form"""
    if not url:
        raise ValueError("DATABASE_URL environment variable is required")
    if url.startswith("postgres://"):
        url = "postgresql://" + url[len("postgres://"):]
    if url.startswith("postgresql://"):
        url = url.replace("postgresql://", "postgresql+asyncpg://", 1)
        # asyncpg uses 'ssl' instead of 'sslmode' parameter
        url = url.replace("sslmode=require", "ssl=require")
        url = url.replace("sslmode=prefer", "ssl=prefer")
        url = url.replace("sslmode=disable", "ssl=disable")
    elif url.startswith("sqlite://") and not url.startswith("sqlite+aiosqlite://"):
        url = url.replace("sqlite://", "sqlite+aiosqlite://", 1)
    return url


def build_async_engine(url: Optional[str] = None, echo: bool = False) -> AsyncEngine:
    """
    Create an async engine for the given URL.

    SQLite gets a generous busy timeout so concurrent writers queue instead of
    failing; PostgreSQL gets a pooled engine with connection health checks.
    """
    async_url = to_async_database_url(url or Config.DATABASE_URL)

    if async_url.startswith("sqlite"):
        return create_async_engine(
            async_url,
            echo=echo,
            connect_args={"timeout": 30},
        )

    return create_async_engine(
        async_url,
        pool_size=7,
        max_overflow=15,
        pool_pre_ping=True,    # Validate connections before use
        pool_recycle=3600,     # Recycle connections every hour
        pool_timeout=30,
        echo=echo,
        connect_args={
            "server_settings": {"application_name": "treasury_ledger"},
            "timeout": 10,
            "command_timeout": 30,
        },
    )


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        autoflush=False,
        expire_on_commit=False,  # Returned records stay readable after commit
    )


# Process-wide engine and session factory
async_engine = build_async_engine()
AsyncSessionLocal = build_session_factory(async_engine)


@asynccontextmanager
async def get_async_session(session_factory: Optional[async_sessionmaker] = None) -> AsyncIterator[AsyncSession]:
    """
    Async context manager for a unit of work: commits on success, rolls back on error.

    Usage:
        async with get_async_session() as session:
            result = await session.execute(select(User).where(...))
    """
    factory = session_factory or AsyncSessionLocal
    async with factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def create_tables(engine: Optional[AsyncEngine] = None) -> None:
    """Create all database tables if they don't exist"""
    target = engine or async_engine
    logger.info(f"🏗️ Creating database tables (if they don't exist): {len(Base.metadata.tables)} models")
    async with target.begin() as connection:
        await connection.run_sync(Base.metadata.create_all, checkfirst=True)
    logger.info("✅ Database schema verified")


async def check_connection(engine: Optional[AsyncEngine] = None) -> bool:
    """Test database connection"""
    target = engine or async_engine
    try:
        async with target.connect() as connection:
            await connection.execute(text("SELECT 1"))
        logger.debug("✅ Database connection test successful")
        return True
    except Exception as e:
        logger.error(f"❌ Database connection test failed: {e}")
        return False
