"""
Database configuration and session management
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    create_async_engine, AsyncEngine, AsyncSession, async_sessionmaker
)

from config import Config
from models import Base

logger = logging.getLogger(__name__)

async_engine: Optional[AsyncEngine] = None
AsyncSessionLocal: Optional[async_sessionmaker] = None


def to_async_url(database_url: str) -> str:
    """Convert a plain PostgreSQL URL into its asyncpg form"""
    url = database_url
    if url.startswith('postgres://'):
        url = url.replace('postgres://', 'postgresql://', 1)
    if url.startswith('postgresql://'):
        url = url.replace('postgresql://', 'postgresql+asyncpg://', 1)
    # asyncpg uses 'ssl' instead of 'sslmode'
    url = url.replace('sslmode=require', 'ssl=require')
    url = url.replace('sslmode=prefer', 'ssl=prefer')
    url = url.replace('sslmode=disable', 'ssl=disable')
    return url


def init_database(database_url: Optional[str] = None, **engine_kwargs) -> async_sessionmaker:
    """
    Build the async engine and session factory.

    Called once at startup. Tests pass their own URL (sqlite+aiosqlite) and
    engine options.
    """
    global async_engine, AsyncSessionLocal

    url = database_url or Config.DATABASE_URL
    if not url:
        raise ValueError("DATABASE_URL environment variable is required")

    async_url = to_async_url(url)
    if async_url.startswith('postgresql+asyncpg://') and not engine_kwargs:
        engine_kwargs = {
            "pool_size": 5,
            "max_overflow": 10,
            "pool_pre_ping": True,    # Validate connections before use
            "pool_recycle": 3600,
            "pool_timeout": 30,
            "connect_args": {
                "server_settings": {"application_name": "stride_sip_scheduler"},
                "timeout": 10,
                "command_timeout": 30,
            },
        }

    async_engine = create_async_engine(async_url, echo=False, **engine_kwargs)
    AsyncSessionLocal = async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        autoflush=False,
        expire_on_commit=False  # Rows stay readable after commit in background jobs
    )
    logger.info(f"✅ DATABASE_INITIALIZED: dialect={async_engine.dialect.name}")
    return AsyncSessionLocal


def get_session_factory() -> async_sessionmaker:
    if AsyncSessionLocal is None:
        return init_database()
    return AsyncSessionLocal


@asynccontextmanager
async def async_managed_session(session_factory: Optional[async_sessionmaker] = None):
    """Async context manager for database sessions"""
    factory = session_factory or get_session_factory()
    session = factory()
    try:
        yield session
        await session.commit()
    except Exception as e:
        logger.error(f"Database session error: {e}")
        await session.rollback()
        raise
    finally:
        await session.close()


async def create_tables(engine: Optional[AsyncEngine] = None) -> None:
    """Create all database tables if they don't exist"""
    target = engine or async_engine
    if target is None:
        get_session_factory()
        target = async_engine

    logger.info(f"🏗️ Creating database tables ({len(Base.metadata.tables)} models registered)")
    async with target.begin() as conn:
        await conn.run_sync(Base.metadata.create_all, checkfirst=True)
    logger.info("✅ Database schema verified")


async def test_connection(session_factory: Optional[async_sessionmaker] = None) -> bool:
    """Check the database answers SELECT 1"""
    try:
        async with async_managed_session(session_factory) as session:
            await session.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.error(f"❌ Database connection test failed: {e}")
        return False


async def dispose_database() -> None:
    global async_engine, AsyncSessionLocal
    if async_engine is not None:
        await async_engine.dispose()
    async_engine = None
    AsyncSessionLocal = None
