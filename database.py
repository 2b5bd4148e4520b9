"""
Database Configuration and Session Management
============================================

This module provides the async database engine, session factory, and table
creation functionality for the escrow settlement engine.
"""

import logging
from contextlib import asynccontextmanager
from sqlalchemy import event, text
from sqlalchemy.ext.asyncio import create_async_engine, AsyncEngine, AsyncSession, async_sessionmaker
from config import Config
from models import Base

logger = logging.getLogger(__name__)


def build_async_database_url(url: str) -> str:
    """Map a plain database URL onto its asyncio driver"""
    if url.startswith("postgres://"):
        url = url.replace("postgres://", "postgresql://", 1)
    if url.startswith("postgresql://"):
        url = url.replace("postgresql://", "postgresql+asyncpg://", 1)
        # asyncpg uses 'ssl' instead of 'sslmode'
        url = url.replace("sslmode=require", "ssl=require")
        url = url.replace("sslmode=prefer", "ssl=prefer")
        url = url.replace("sslmode=disable", "ssl=disable")
    elif url.startswith("sqlite:///"):
        url = url.replace("sqlite:///", "sqlite+aiosqlite:///", 1)
    return url


def create_escrow_engine(url: str, echo: bool = False) -> AsyncEngine:
    """Create an async engine with pool settings suited to the backend"""
    async_url = build_async_database_url(url)
    if async_url.startswith("postgresql+asyncpg://"):
        return create_async_engine(
            async_url,
            pool_size=5,           # Base pool
            max_overflow=10,       # Burst capacity for concurrent sweeps
            pool_pre_ping=True,    # Validate connections before use
            pool_recycle=3600,     # Recycle connections every hour
            pool_timeout=30,
            echo=echo,
            connect_args={
                "server_settings": {
                    "application_name": "escrow_settlement_engine",
                },
                "timeout": 10,
                "command_timeout": 30,
            },
        )
    if async_url.startswith("sqlite"):
        engine = create_async_engine(async_url, echo=echo, connect_args={"timeout": 15})
        _use_immediate_transactions(engine)
        return engine
    return create_async_engine(async_url, echo=echo)


def _use_immediate_transactions(engine: AsyncEngine) -> None:
    """
    Make every SQLite transaction take the write lock up front.

    Deferred transactions holding a read lock cannot wait for a writer and
    fail with "database is locked"; immediate ones queue on the busy timeout.
    """

    @event.listens_for(engine.sync_engine, "connect")
    def _disable_driver_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin_immediate(connection):
        connection.exec_driver_sql("BEGIN IMMEDIATE")


def create_session_factory(bind: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(
        bind,
        class_=AsyncSession,
        autoflush=False,
        expire_on_commit=False,  # Objects stay readable after commit in background tasks
    )


async_engine = create_escrow_engine(Config.DATABASE_URL, echo=Config.DATABASE_ECHO)
AsyncSessionLocal = create_session_factory(async_engine)


@asynccontextmanager
async def async_managed_session(session_factory: async_sessionmaker = None):
    """Async context manager for database sessions"""
    session = (session_factory or AsyncSessionLocal)()
    try:
        yield session
        await session.commit()
    except Exception as e:
        logger.error(f"Database session error: {e}")
        await session.rollback()
        raise
    finally:
        await session.close()


async def create_tables(bind: AsyncEngine = None) -> bool:
    """Create all database tables if they don't exist"""
    engine = bind or async_engine
    try:
        logger.info("🏗️ Creating database tables (if they don't exist)...")
        logger.info(f"📊 Found {len(Base.metadata.tables)} table models to create")
        async with engine.begin() as connection:
            await connection.run_sync(Base.metadata.create_all, checkfirst=True)
        logger.info("✅ Database schema verified")
        return True
    except Exception as e:
        logger.error(f"❌ Failed to create database tables: {e}")
        return False


async def check_connection(bind: AsyncEngine = None) -> bool:
    """Test database connection"""
    engine = bind or async_engine
    try:
        async with engine.connect() as connection:
            await connection.execute(text("SELECT 1"))
        logger.info("✅ Database connection test successful")
        return True
    except Exception as e:
        logger.error(f"❌ Database connection test failed: {e}")
        return False
