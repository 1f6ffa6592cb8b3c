"""
Redis Client Utility Module

This module builds asyncio Redis clients from configuration. Clients are
created explicitly and handed to the components that need them; there is
no process-wide client.
"""

import logging
from typing import Any, Dict

from redis.asyncio import Redis
from redis.exceptions import RedisError

from review_core.common.config import RedisSettings

logger = logging.getLogger(__name__)


def get_redis_settings(settings: RedisSettings) -> Dict[str, Any]:
    """
    Translate RedisSettings into client keyword arguments.

    Args:
        settings: Redis configuration section

    Returns:
        Dictionary with Redis connection settings
    """
    return {
        "host": settings.host,
        "port": settings.port,
        "db": settings.db,
        "password": settings.password,
        "ssl": settings.use_ssl,
        "socket_connect_timeout": settings.connection_timeout,
        "decode_responses": True
    }


def create_redis_client(settings: RedisSettings) -> Redis:
    """
    Create an asyncio Redis client.

    The connection is opened lazily by the first command.

    Args:
        settings: Redis configuration section

    Returns:
        Redis client instance
    """
    client = Redis(**get_redis_settings(settings))
    logger.info(f"Configured Redis client for {settings.host}:{settings.port}/{settings.db}")
    return client


async def check_redis(client: Redis) -> bool:
    """
    Ping Redis.

    Returns:
        True if the server answered, False otherwise
    """
    try:
        return bool(await client.ping())
    except (RedisError, OSError) as e:
        logger.warning(f"Redis ping failed: {e}")
        return False
