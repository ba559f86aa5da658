"""
Redis client for the embedding and search caches.

One client per process (and per event loop: Celery tasks run each job in a
fresh loop and call close_redis() before it ends). A failed connection is
not kept, so the next cache call tries again instead of reusing a dead pool.
Celery talks to Redis through its own broker connection (celery_app).
"""

from typing import Optional

from redis.asyncio import ConnectionPool, Redis
from redis.exceptions import RedisError

from app.core.config import settings
from app.core.logging import get_logger

logger = get_logger(__name__)

_pool: Optional[ConnectionPool] = None
_client: Optional[Redis] = None


def _build_pool() -> ConnectionPool:
    return ConnectionPool.from_url(
        settings.REDIS_URL,
        decode_responses=True,
        max_connections=settings.REDIS_MAX_CONNECTIONS,
        socket_connect_timeout=settings.REDIS_SOCKET_TIMEOUT_SECONDS,
        socket_timeout=settings.REDIS_SOCKET_TIMEOUT_SECONDS,
        socket_keepalive=True,
    )


async def init_redis() -> Redis:
    """
    Connect and ping.

    Raises:
        RedisError / OSError: Redis is unreachable (the client is discarded)
    """
    global _pool, _client

    if _client is not None:
        return _client

    pool = _build_pool()
    client = Redis(connection_pool=pool)
    try:
        await client.ping()
    except (RedisError, OSError) as e:
        logger.warning("redis_connection_failed", error=str(e))
        await client.aclose()
        await pool.disconnect()
        raise

    _pool, _client = pool, client
    logger.info("redis_connected", max_connections=settings.REDIS_MAX_CONNECTIONS)
    return _client


async def get_redis() -> Redis:
    """Shared client, connecting on first use."""
    return _client if _client is not None else await init_redis()


async def check_redis_health() -> bool:
    try:
        return bool(await (await get_redis()).ping())
    except (RedisError, OSError) as e:
        logger.warning("redis_health_check_failed", error=str(e))
        return False


async def close_redis() -> None:
    global _pool, _client

    client, pool = _client, _pool
    _client, _pool = None, None

    if client is not None:
        await client.aclose()
    if pool is not None:
        await pool.disconnect()
        logger.info("redis_closed")
