"""
Database Configuration and Session Management
============================================

Builds the async engine and session factory for the Mirror from an injected
Config. There is no module-level engine: the service context owns one.
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy import text, inspect
from sqlalchemy.exc import ProgrammingError
from sqlalchemy.ext.asyncio import (
    create_async_engine, AsyncEngine, AsyncSession, async_sessionmaker
)

from config import Config
from models import Base

logger = logging.getLogger(__name__)


def create_mirror_engine(config: Config) -> AsyncEngine:
    """Create the async engine for the configured database"""
    url = config.async_database_url
    if url.startswith("sqlite"):
        # SQLite has no server-side pool to tune
        return create_async_engine(url, echo=config.db_echo)

    return create_async_engine(
        url,
        pool_size=config.db_pool_size,
        max_overflow=config.db_max_overflow,
        pool_pre_ping=True,    # Validate connections before use
        pool_recycle=3600,     # Recycle connections every hour
        pool_timeout=30,       # Wait max 30 seconds for connection during bursts
        echo=config.db_echo,
        connect_args={
            "server_settings": {
                "application_name": "handshake_indexer_async",  # For monitoring in pg_stat_activity
            },
            "timeout": 10,
            "command_timeout": 30,
        },
    )


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    """Session factory for Mirror reads and writes"""
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        autoflush=False,
        expire_on_commit=False,  # Rows are handed back to callers after commit
    )


@asynccontextmanager
async def managed_session(session_factory: async_sessionmaker) -> AsyncIterator[AsyncSession]:
    """
    Async context manager for one unit of work.

    Commits on success, rolls back and re-raises on any error.

    Usage:
        async with managed_session(ctx.session_factory) as session:
            result = await session.execute(select(Transfer).where(...))
    """
    session = session_factory()
    try:
        yield session
        await session.commit()
    except Exception as e:
        logger.debug(f"Database session rolled back: {e}")
        await session.rollback()
        raise
    finally:
        await session.close()


async def create_tables(engine: AsyncEngine) -> bool:
    """Create all Mirror tables if they don't exist"""
    logger.info("🏗️ Creating database tables (if they don't exist)...")
    logger.info(f"📊 Found {len(Base.metadata.tables)} table models to create")

    try:
        async with engine.begin() as connection:
            await connection.run_sync(Base.metadata.create_all, checkfirst=True)
            existing_tables = await connection.run_sync(
                lambda sync_conn: inspect(sync_conn).get_table_names()
            )
    except ProgrammingError as e:
        # Indexes created concurrently by another worker
        if "already exists" in str(e):
            logger.info(f"⚠️ Some database objects already exist (this is normal): {e}")
            return True
        logger.error(f"❌ Failed to create database tables: {e}")
        raise

    logger.info(f"✅ Database schema verified: {len(existing_tables)} tables available")
    logger.info(f"📋 Tables: {', '.join(sorted(existing_tables))}")
    return True


async def test_connection(engine: AsyncEngine) -> bool:
    """Test database connection"""
    try:
        async with engine.connect() as connection:
            await connection.execute(text("SELECT 1"))
        logger.info("✅ Database connection test successful")
        return True
    except Exception as e:
        logger.error(f"❌ Database connection test failed: {e}")
        return False
