from typing import Any

import structlog
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from finopsbridge.shared.core.config import Settings, get_settings
from finopsbridge.shared.core.exceptions import ConfigurationError

logger = structlog.get_logger()


def create_engine(settings: Settings | None = None) -> AsyncEngine:
    """
    Build the async engine for the worker.

    - pool_size / max_overflow bound connections used by concurrent account workers
    - pool_pre_ping drops stale connections between ticks
    - NullPool under tests avoids connection reuse across event loops
    """
    settings = settings or get_settings()
    if not settings.DATABASE_URL:
        logger.critical(
            "startup_failed_missing_db_url",
            msg="DATABASE_URL is not set. The worker cannot start.",
        )
        raise ConfigurationError("DATABASE_URL is not set")

    pool_args: dict[str, Any] = {}
    if settings.TESTING or settings.DATABASE_URL.startswith("sqlite"):
        pool_args["poolclass"] = NullPool
    else:
        pool_args["pool_size"] = settings.DB_POOL_SIZE
        pool_args["max_overflow"] = settings.DB_MAX_OVERFLOW
        pool_args["pool_pre_ping"] = True
        pool_args["pool_recycle"] = 300

    engine = create_async_engine(
        settings.DATABASE_URL,
        echo=settings.DB_ECHO,
        **pool_args,
    )
    logger.info("database_engine_created", dialect=engine.dialect.name)
    return engine


def create_session_maker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    # expire_on_commit=False: rows are handed across workers after the session closes.
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
