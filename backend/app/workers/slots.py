"""
Per-lane concurrency slots shared by every worker process.

A lane allowed N concurrent jobs (WORKER_CONCURRENCY) has N slot keys in
Redis. A worker takes a free slot with SET NX before it claims a job and
gives it back after reporting; while the job runs the slot's TTL is renewed
on the claim heartbeat, so a crashed worker's slot expires on its own.
Celery drains and the asyncio pool go through the same slots.
"""

import asyncio
import uuid
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable, Dict, Optional

from redis.asyncio import Redis
from redis.exceptions import RedisError

from app.core.config import settings
from app.core.logging import get_logger
from app.db.redis import get_redis
from app.services.capabilities import Lane, lane_concurrency

logger = get_logger(__name__)


class LaneSlots:
    """
    Usage:
    ------
    slots = LaneSlots()
    async with slots.hold(lane_for(Capability.TRANSCRIPTION)) as held:
        if held:
            ...  # claim and run one job
    """

    def __init__(
        self,
        concurrency: Optional[Dict[str, int]] = None,
        ttl_seconds: Optional[int] = None,
        renew_interval: Optional[float] = None,
        redis: Optional[Redis] = None,
        redis_factory: Callable[[], Awaitable[Redis]] = get_redis,
        namespace: str = "pipeline:slots",
    ):
        self.concurrency = concurrency if concurrency is not None else settings.WORKER_CONCURRENCY
        self.ttl_seconds = ttl_seconds or settings.CLAIM_TIMEOUT_SECONDS
        self.renew_interval = renew_interval or settings.CLAIM_HEARTBEAT_SECONDS
        self.namespace = namespace
        self._redis = redis
        self._redis_factory = redis_factory

    async def _client(self) -> Redis:
        if self._redis is not None:
            return self._redis
        return await self._redis_factory()

    def key(self, lane: Lane, index: int) -> str:
        return f"{self.namespace}:{lane.name}:{index}"

    async def acquire(self, lane: Lane, token: str) -> Optional[str]:
        """
        Take a free slot of the lane.

        Returns:
            The slot key, or None when every slot is held (or Redis is down:
            without the counter the limit cannot be honoured, so nothing runs)
        """
        try:
            client = await self._client()
            for index in range(lane_concurrency(lane, self.concurrency)):
                key = self.key(lane, index)
                if await client.set(key, token, nx=True, ex=self.ttl_seconds):
                    return key
        except (RedisError, OSError) as e:
            logger.warning("slot_acquire_failed", lane=lane.name, error=str(e))
        return None

    async def renew(self, key: str) -> None:
        try:
            await (await self._client()).expire(key, self.ttl_seconds)
        except (RedisError, OSError) as e:
            logger.warning("slot_renew_failed", key=key, error=str(e))

    async def release(self, key: str, token: str) -> None:
        """Free the slot if this holder still owns it (it may have expired and been retaken)."""
        try:
            client = await self._client()
            if await client.get(key) == token:
                await client.delete(key)
        except (RedisError, OSError) as e:
            logger.warning("slot_release_failed", key=key, error=str(e))

    async def _keep(self, key: str) -> None:
        while True:
            await asyncio.sleep(self.renew_interval)
            await self.renew(key)

    @asynccontextmanager
    async def hold(self, lane: Lane) -> AsyncIterator[bool]:
        """Yield True while holding a slot of the lane, False if none was free."""
        token = uuid.uuid4().hex
        key = await self.acquire(lane, token)
        if key is None:
            yield False
            return

        keeper = asyncio.create_task(self._keep(key))
        try:
            yield True
        finally:
            keeper.cancel()
            await asyncio.gather(keeper, return_exceptions=True)
            await self.release(key, token)
