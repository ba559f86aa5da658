"""
Redis-backed JSON cache used for embedding vectors and search results.

The cache is best effort: a Redis outage degrades to a cache miss and is
logged, it never fails the caller.
"""

import json
import logging
from typing import Any, Awaitable, Callable, Optional

from redis.asyncio import Redis
from redis.exceptions import RedisError

from app.db.redis import get_redis

logger = logging.getLogger(__name__)


class RedisJSONCache:
    """
    Namespaced JSON values with a fixed TTL.

    Usage:
    ------
    cache = RedisJSONCache("search", ttl_seconds=60)
    await cache.set("abc", {"results": []})
    value = await cache.get("abc")
    """

    def __init__(
        self,
        namespace: str,
        ttl_seconds: int,
        redis: Optional[Redis] = None,
        redis_factory: Callable[[], Awaitable[Redis]] = get_redis,
    ):
        self.namespace = namespace
        self.ttl_seconds = ttl_seconds
        self._redis = redis
        self._redis_factory = redis_factory

    async def _client(self) -> Redis:
        if self._redis is not None:
            return self._redis
        return await self._redis_factory()

    def key(self, suffix: str) -> str:
        return f"{self.namespace}:{suffix}"

    async def get(self, suffix: str) -> Optional[Any]:
        try:
            raw = await (await self._client()).get(self.key(suffix))
        except (RedisError, OSError) as e:
            logger.warning(f"Cache read failed for {self.key(suffix)}: {e}")
            return None
        if raw is None:
            return None
        return json.loads(raw)

    async def set(self, suffix: str, value: Any) -> None:
        try:
            await (await self._client()).set(self.key(suffix), json.dumps(value), ex=self.ttl_seconds)
        except (RedisError, OSError) as e:
            logger.warning(f"Cache write failed for {self.key(suffix)}: {e}")

    async def acquire_lock(self, suffix: str, ttl_seconds: int) -> bool:
        """SET NX lock shared across worker processes. False if held elsewhere."""
        try:
            acquired = await (await self._client()).set(
                self.key(f"lock:{suffix}"), "1", nx=True, ex=ttl_seconds
            )
        except (RedisError, OSError) as e:
            logger.warning(f"Cache lock failed for {self.key(suffix)}: {e}")
            return True
        return bool(acquired)

    async def release_lock(self, suffix: str) -> None:
        try:
            await (await self._client()).delete(self.key(f"lock:{suffix}"))
        except (RedisError, OSError) as e:
            logger.warning(f"Cache unlock failed for {self.key(suffix)}: {e}")
