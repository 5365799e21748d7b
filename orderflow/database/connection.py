"""
Async database engine and sessions for order persistence.

One engine and session factory per process, created lazily from settings.
A repricing worker on the database store opens a session per task run with
``get_session``.
"""

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import AsyncAdaptedQueuePool, NullPool

from orderflow.core.config import Settings, get_settings
from orderflow.core.logging import get_logger
from orderflow.database.base import Base
from orderflow.database.models import OrderRecord

logger = get_logger(__name__)

_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker[AsyncSession]] = None


def async_database_url(url: str) -> str:
    """Switch a plain PostgreSQL URL to the asyncpg driver."""
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    return url


def create_engine(settings: Optional[Settings] = None) -> AsyncEngine:
    """
    Create an async engine for the configured database.

    PostgreSQL gets a pooled engine sized from settings. SQLite and the test
    environment get NullPool so every session opens its own connection.
    """
    settings = settings or get_settings()
    database_url = async_database_url(settings.database_url)

    kwargs: dict[str, Any] = {"echo": settings.debug, "pool_pre_ping": True}
    if settings.environment == "test" or database_url.startswith("sqlite"):
        kwargs["poolclass"] = NullPool
    else:
        kwargs.update(
            poolclass=AsyncAdaptedQueuePool,
            pool_size=settings.db_pool_size,
            max_overflow=settings.db_max_overflow,
            pool_recycle=3600,
            connect_args={
                "server_settings": {"application_name": settings.app_name},
                "command_timeout": 60,
            },
        )

    engine = create_async_engine(database_url, **kwargs)
    logger.info(
        "Database engine created",
        driver=engine.dialect.driver,
        pooled=kwargs["poolclass"] is AsyncAdaptedQueuePool,
        environment=settings.environment,
    )
    return engine


def get_engine() -> AsyncEngine:
    """Return the process engine, creating it from settings on first use."""
    global _engine
    if _engine is None:
        _engine = create_engine()
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    global _session_factory
    if _session_factory is None:
        # Aggregates are read back after commit, so instances must not expire.
        _session_factory = async_sessionmaker(
            get_engine(), expire_on_commit=False, autoflush=False
        )
    return _session_factory


@asynccontextmanager
async def get_session() -> AsyncIterator[AsyncSession]:
    """Session scoped to one unit of work: commit on success, roll back on failure."""
    async with get_session_factory()() as session:
        try:
            yield session
        except Exception as exc:
            await session.rollback()
            logger.error(
                "Order transaction rolled back",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        await session.commit()


async def create_schema(engine: Optional[AsyncEngine] = None) -> None:
    """Create the orders table if it does not exist."""
    engine = engine or get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all, tables=[OrderRecord.__table__])
    logger.info("Database schema ensured", tables=[OrderRecord.__tablename__])


async def close_database_connections() -> None:
    """Dispose of the process engine; the next call to get_engine recreates it."""
    global _engine, _session_factory
    engine, _engine, _session_factory = _engine, None, None
    if engine is not None:
        await engine.dispose()
        logger.info("Database connections closed")
