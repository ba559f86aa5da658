"""
Database Session Management

The job table is the pipeline's queue, so the API, the Celery drain tasks
and the asyncio worker pool all share the engine configuration below.

Lifecycle:
----------
process start → engine (pool) → session per request / per job step
→ commit or rollback → close → engine.dispose() on shutdown or task end
"""

from collections.abc import AsyncGenerator
from typing import Any

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import AsyncAdaptedQueuePool, NullPool

from app.core.config import settings
from app.core.logging import get_logger

logger = get_logger(__name__)


# ================================
# Engine
# ================================

def uses_queue_pool() -> bool:
    """
    Long-lived API and worker processes keep a connection pool.

    Celery tasks dispose the engine at the end of every task and SQLite
    cannot share connections across threads, so staging, testing and SQLite
    get NullPool (one connection per checkout).
    """
    return settings.APP_ENV in ("development", "production") and not settings.is_sqlite


def get_engine_config() -> dict[str, Any]:
    config: dict[str, Any] = {"echo": settings.DB_ECHO}

    if settings.is_sqlite:
        config["poolclass"] = NullPool
        return config

    # Visible in pg_stat_activity next to the claim queries
    config["connect_args"] = {"server_settings": {"application_name": settings.APP_NAME}}

    if uses_queue_pool():
        config.update({
            "poolclass": AsyncAdaptedQueuePool,
            "pool_size": settings.DB_POOL_SIZE,
            "max_overflow": settings.DB_MAX_OVERFLOW,
            "pool_pre_ping": True,
            "pool_timeout": 30,
            "pool_recycle": 7200 if settings.is_production else 3600,
        })
    else:
        config["poolclass"] = NullPool
    return config


def create_engine() -> AsyncEngine:
    """postgresql+asyncpg://… in deployments, sqlite+aiosqlite:///… in tests."""
    config = get_engine_config()
    engine = create_async_engine(settings.DATABASE_URL, **config)
    logger.info(
        "database_engine_created",
        dialect=engine.dialect.name,
        environment=settings.APP_ENV,
        pool=config["poolclass"].__name__,
        pool_size=config.get("pool_size"),
    )
    return engine


# One engine per process
engine: AsyncEngine = create_engine()

# expire_on_commit=False: the orchestrator returns committed jobs to workers
# that read them after their session has closed.
AsyncSessionLocal = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    autoflush=False,
    autocommit=False,
    expire_on_commit=False,
)


# ================================
# Sessions
# ================================

async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """One session per request; rolled back and re-raised on error."""
    async with AsyncSessionLocal() as session:
        try:
            yield session
        except SQLAlchemyError as e:
            logger.error("database_session_error", error=str(e), error_type=type(e).__name__)
            await session.rollback()
            raise


# ================================
# Startup / Shutdown
# ================================

async def init_db() -> None:
    """
    Check connectivity at startup.

    Development databases also get the vector extension and any missing
    tables; everywhere else the schema comes from Alembic.
    """
    async with engine.begin() as conn:
        await conn.execute(text("SELECT 1"))
    logger.info("database_connection_successful", dialect=engine.dialect.name)

    if not settings.is_development:
        return

    import app.models  # noqa: F401  (registers every table)
    from app.db.base import Base

    async with engine.begin() as conn:
        if not settings.is_sqlite:
            await conn.execute(text("CREATE EXTENSION IF NOT EXISTS vector"))
        await conn.run_sync(Base.metadata.create_all)
    logger.info("database_tables_created")


async def close_db() -> None:
    await engine.dispose()
    logger.info("database_connections_closed")


async def check_db_health() -> bool:
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return True
    except (SQLAlchemyError, OSError) as e:
        logger.error("database_health_check_failed", error=str(e), error_type=type(e).__name__)
        return False
