"""
Database initialization and connection management.

This module provides functions for:
1. Creating the async engine and session factory from configuration
2. Creating the review store schema
3. Disposing of engines
"""

import logging
from typing import Any, Dict

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from review_core.common.config import DatabaseSettings
from review_core.common.logger import app_logger

from .base import metadata
from . import models  # noqa: F401  registers the tables on the metadata

logger = app_logger.getChild("database.init_db")


def get_engine_kwargs(database_url: str, pool_size: int = 5) -> Dict[str, Any]:
    """
    Get engine keyword arguments based on database type.

    In-memory SQLite shares one connection so every session sees the same
    database; PostgreSQL gets a sized, pre-pinged pool.
    """
    if database_url.startswith("sqlite"):
        if ":memory:" in database_url:
            return {"poolclass": StaticPool, "connect_args": {"check_same_thread": False}}
        return {}
    return {
        "pool_size": pool_size,
        "pool_pre_ping": True,
        "pool_recycle": 300,
    }


def create_engine(settings: DatabaseSettings) -> AsyncEngine:
    """Create the async engine described by ``settings``."""
    logger.info(f"Creating database engine for {settings.url.split('://')[0]}")
    return create_async_engine(
        settings.url,
        echo=settings.echo,
        **get_engine_kwargs(settings.url, settings.pool_size)
    )


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    """Session factory producing AsyncSessions that keep loaded state after commit."""
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def initialize_database(engine: AsyncEngine) -> None:
    """
    Create missing tables and check connectivity.

    Args:
        engine: Engine to initialize
    """
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
        await conn.execute(text("SELECT 1"))
    logger.info("Database schema ready")


async def close_database(engine: AsyncEngine) -> None:
    """Dispose of the engine and all pooled connections."""
    await engine.dispose()
    logger.info("Database engine closed")
