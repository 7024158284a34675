from __future__ import annotations

import asyncio
from typing import Optional

import sqlalchemy as sa
import structlog
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from src.shared.config import Settings, get_settings

logger = structlog.get_logger(__name__)

_engine: Optional[AsyncEngine] = None


def create_database_engine(settings: Optional[Settings] = None) -> AsyncEngine:
    """
    Initialize the pooled async engine.

    The pool is bounded (pool_size + max_overflow) and checkout waits at most
    `database_pool_timeout` seconds. It knows nothing about tenants; identity
    is applied per checkout by the session binder.
    """
    global _engine
    settings = settings or get_settings()

    _engine = create_async_engine(
        settings.engine_url,
        echo=settings.debug and not settings.is_prod,
        pool_size=settings.database_pool_size,
        max_overflow=settings.database_max_overflow,
        pool_timeout=settings.database_pool_timeout,
        pool_recycle=settings.database_pool_recycle,
        pool_pre_ping=True,
        connect_args={
            "timeout": settings.database_pool_timeout,
            "server_settings": {
                "application_name": f"tenantguard-api-{settings.environment}",
                "statement_timeout": "30000",  # 30s
            },
        },
    )
    logger.info(
        "Database engine created",
        pool_size=settings.database_pool_size,
        max_overflow=settings.database_max_overflow,
        pool_timeout=settings.database_pool_timeout,
    )
    return _engine


async def verify_database(engine: AsyncEngine, *, attempts: int = 5, delay: float = 3.0) -> bool:
    """
    Smoke-test connectivity, retrying a few times on startup.

    Returns False instead of raising so the service can start without the
    database; requests then fail with 503 until it comes back.
    """
    for attempt in range(1, attempts + 1):
        try:
            async with engine.connect() as conn:
                await conn.execute(sa.text("SELECT 1"))
            logger.info("Database connection established", attempt=attempt)
            return True
        except (sa.exc.SQLAlchemyError, OSError) as e:
            logger.warning("Database init failed", attempt=attempt, attempts=attempts, error=str(e))
            if attempt < attempts:
                await asyncio.sleep(delay)
    logger.warning("Database initialization failed after retries - starting without DB")
    return False


async def close_database_engine() -> None:
    global _engine
    if _engine:
        await _engine.dispose()
        logger.info("Database engine disposed")
    _engine = None


def get_engine() -> AsyncEngine:
    if _engine is None:
        raise RuntimeError("Engine not initialized. Call create_database_engine first.")
    return _engine
