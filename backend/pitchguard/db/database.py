"""
Database connection and session management
"""

import logging

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

logger = logging.getLogger(__name__)

# Create base class for models
Base = declarative_base()


def create_engine_for_url(database_url: str, echo: bool = False) -> AsyncEngine:
    """Create the async engine for the audit database"""
    if database_url.startswith("postgresql://"):
        database_url = database_url.replace("postgresql://", "postgresql+asyncpg://", 1)

    options = {"echo": echo, "future": True, "pool_pre_ping": True}
    if database_url.startswith("postgresql+asyncpg://"):
        options.update(
            pool_size=10,
            max_overflow=20,
            pool_recycle=3600,     # Recycle connections every hour
            pool_timeout=5,        # Audit writes never wait long for a connection
            connect_args={
                "command_timeout": 5,
                "server_settings": {"application_name": "pitchguard_gate"},
            },
        )
    return create_async_engine(database_url, **options)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)


async def init_db(engine: AsyncEngine) -> None:
    """Create tables that are missing (development helper, migrations own production)"""
    # Import all models to ensure they're registered
    from pitchguard.models.security_event import SecurityEventRecord  # noqa: F401

    try:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise
