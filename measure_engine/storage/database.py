"""Database configuration and session management."""
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncGenerator

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker

from measure_engine.config.settings import get_settings
from measure_engine.config.logging_config import get_logger

logger = get_logger(__name__)

# Engine and session factory (initialized lazily)
_engine = None
_async_session_factory = None


def _resolve_database_url() -> str:
    settings = get_settings()
    db_url = settings.external_database_url or settings.database_url
    if db_url.startswith("postgresql://"):
        db_url = db_url.replace("postgresql://", "postgresql+asyncpg://", 1)
    elif db_url.startswith("postgres://"):
        db_url = db_url.replace("postgres://", "postgresql+asyncpg://", 1)
    return db_url


def get_engine():
    """Get or create the database engine."""
    global _engine
    if _engine is None:
        settings = get_settings()
        db_url = _resolve_database_url()
        url = make_url(db_url)

        engine_kwargs = {
            "echo": settings.app_env == "development" and settings.log_level.upper() == "DEBUG",
            "future": True,
        }
        if url.get_backend_name() == "sqlite":
            if url.database and url.database != ":memory:":
                Path(url.database).parent.mkdir(parents=True, exist_ok=True)
        else:
            # Disable asyncpg prepared statement cache to avoid
            # InvalidCachedStatementError after schema changes.
            engine_kwargs.update(
                connect_args={"statement_cache_size": 0},
                pool_pre_ping=True,
                pool_size=10,
                max_overflow=20,
            )
        _engine = create_async_engine(db_url, **engine_kwargs)
        logger.info("Database engine created", db_type=url.get_backend_name())
    return _engine


def get_session_factory():
    """Get or create the session factory."""
    global _async_session_factory
    if _async_session_factory is None:
        engine = get_engine()
        _async_session_factory = async_sessionmaker(
            engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False
        )
    return _async_session_factory


async def init_db() -> None:
    """Initialize the database, creating all tables."""
    from measure_engine.storage.models import Base as ModelsBase

    engine = get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(ModelsBase.metadata.create_all)
    logger.info("Database initialized")


async def drop_db() -> None:
    """Drop all database tables (use with caution)."""
    from measure_engine.storage.models import Base as ModelsBase

    engine = get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(ModelsBase.metadata.drop_all)
    logger.warning("Database tables dropped")


async def dispose_engine() -> None:
    """Close pooled connections and forget the engine."""
    global _engine, _async_session_factory
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _async_session_factory = None


@asynccontextmanager
async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    Async context manager for database sessions.

    Usage:
        async with get_db() as db:
            result = await db.execute(query)
    """
    session_factory = get_session_factory()
    async with session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception as e:
            await session.rollback()
            logger.error("Database session error", error=str(e))
            raise
        finally:
            await session.close()
