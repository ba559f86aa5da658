"""
Embedding Service

Turns text into a fixed-length vector while avoiding duplicate spend.

Flow for embed(text):
---------------------
1. Normalize (NFC, collapse whitespace, strip) and sha256 the result
2. Empty text → zero vector, no provider call, no cost
3. Single-flight: if another coroutine in this process is already computing
   the same (model, hash), await its result instead of calling the provider;
   if that coroutine is cancelled, one waiter takes over the computation
4. Cache lookup: Redis key embedding:{model}:{hash}; a hit costs nothing
5. Cross-process: a short Redis lock lets one worker compute while the
   others wait for the cache to fill
6. Miss: call the provider, record the cost, cache with a TTL
"""

import asyncio
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, List, Optional

from app.core.config import settings
from app.core.errors import PermanentInputError, PipelineError, TransientProviderError
from app.services.aggregator import content_hash, normalize_text
from app.services.cache import RedisJSONCache
from app.services.embeddings.providers import EmbeddingProvider, get_embedding_provider
from app.services.ledger import CostLedger, ZERO, to_money

logger = logging.getLogger(__name__)

PEER_WAIT_INTERVAL_SECONDS = 0.2


@dataclass
class EmbeddingVector:
    vector: List[float]
    content_hash: str
    model: str
    cached: bool = False
    is_empty: bool = False
    cost: Decimal = ZERO


class EmbeddingService:
    """
    Cached, single-flight text embedding.

    Usage:
    ------
    service = EmbeddingService(ledger=get_cost_ledger())
    result = await service.embed("red bicycle", user_id=42)
    result.vector, result.cached
    """

    def __init__(
        self,
        provider: Optional[EmbeddingProvider] = None,
        ledger: Optional[CostLedger] = None,
        cache: Optional[RedisJSONCache] = None,
        timeout: Optional[float] = None,
    ):
        self.provider = provider or get_embedding_provider()
        self.ledger = ledger
        self.cache = cache or RedisJSONCache("embedding", settings.EMBEDDING_CACHE_TTL_SECONDS)
        self.timeout = timeout if timeout is not None else settings.ADAPTER_TIMEOUT_SECONDS
        self._inflight: Dict[str, asyncio.Future] = {}

    @property
    def model(self) -> str:
        return self.provider.model

    @property
    def dimension(self) -> int:
        return self.provider.dimension

    def zero_vector(self) -> List[float]:
        return [0.0] * self.dimension

    def cache_key(self, text_hash: str) -> str:
        return f"{self.model}:{text_hash}"

    def estimate_cost(self, text: str) -> Decimal:
        normalized = normalize_text(text)
        if not normalized:
            return ZERO
        return to_money(self.provider.estimate_cost([normalized]))

    async def embed(
        self,
        text: str,
        *,
        user_id: Optional[int] = None,
        job_id: Optional[int] = None,
        media_item_id: Optional[int] = None,
    ) -> EmbeddingVector:
        """
        Embed one text.

        Args:
            text: Raw text; normalized before hashing
            user_id: Owner charged for a provider call (None = not recorded)
            job_id / media_item_id: Cost record attribution

        Raises:
            TransientProviderError: provider timeout, throttling or 5xx
            PermanentInputError: provider rejected the input
        """
        normalized = normalize_text(text)
        digest = content_hash(normalized)

        if not normalized:
            return EmbeddingVector(
                vector=self.zero_vector(),
                content_hash=digest,
                model=self.model,
                is_empty=True,
            )

        key = self.cache_key(digest)

        while True:
            pending = self._inflight.get(key)
            if pending is None:
                break
            try:
                vector = await asyncio.shield(pending)
            except asyncio.CancelledError:
                # Only the leader was cancelled: take over (or join whoever already has)
                if not pending.cancelled():
                    raise
                logger.info(f"Embedding leader for {key} was cancelled; retrying here")
                continue
            return EmbeddingVector(vector=list(vector), content_hash=digest, model=self.model, cached=True)

        future = asyncio.get_running_loop().create_future()
        self._inflight[key] = future
        try:
            result = await self._resolve(normalized, digest, key, user_id, job_id, media_item_id)
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as e:
            future.set_exception(e)
            # Waiters (if any) re-raise it; mark retrieved for the no-waiter case
            future.exception()
            raise
        else:
            future.set_result(result.vector)
            return result
        finally:
            self._inflight.pop(key, None)

    async def embed_many(self, texts: List[str], **attribution) -> List[EmbeddingVector]:
        return list(await asyncio.gather(*(self.embed(text, **attribution) for text in texts)))

    # ========================================
    # Internals
    # ========================================

    async def _resolve(
        self,
        normalized: str,
        digest: str,
        key: str,
        user_id: Optional[int],
        job_id: Optional[int],
        media_item_id: Optional[int],
    ) -> EmbeddingVector:
        cached = await self.cache.get(key)
        if cached is not None:
            return EmbeddingVector(vector=cached, content_hash=digest, model=self.model, cached=True)

        lock_ttl = max(1, int(self.timeout))
        if not await self.cache.acquire_lock(key, lock_ttl):
            vector = await self._wait_for_peer(key, lock_ttl)
            if vector is not None:
                return EmbeddingVector(vector=vector, content_hash=digest, model=self.model, cached=True)
            logger.warning(f"Peer never filled embedding cache for {key}; computing locally")

        try:
            vector, cost = await self._call_provider(normalized)
            await self.cache.set(key, vector)
        finally:
            await self.cache.release_lock(key)

        cost = to_money(cost)
        if user_id is not None and cost > ZERO and self.ledger is not None:
            await self.ledger.record_cost(
                user_id=user_id,
                service=self.provider.service,
                operation="embeddings",
                amount=cost,
                job_id=job_id,
                media_item_id=media_item_id,
            )

        return EmbeddingVector(vector=vector, content_hash=digest, model=self.model, cost=cost)

    async def _wait_for_peer(self, key: str, max_wait: float) -> Optional[List[float]]:
        waited = 0.0
        while waited < max_wait:
            await asyncio.sleep(PEER_WAIT_INTERVAL_SECONDS)
            waited += PEER_WAIT_INTERVAL_SECONDS
            cached = await self.cache.get(key)
            if cached is not None:
                return cached
        return None

    async def _call_provider(self, text: str):
        try:
            vectors, cost = await asyncio.wait_for(self.provider.embed([text]), timeout=self.timeout)
        except asyncio.TimeoutError:
            raise TransientProviderError(f"Embedding call timed out after {self.timeout:.0f}s")
        except PipelineError:
            raise
        except Exception as e:
            raise self.provider.classify_exception(e) from e

        vector = list(vectors[0])
        if len(vector) != self.dimension:
            raise PermanentInputError(
                f"Provider returned {len(vector)}-d vector, expected {self.dimension}"
            )
        return vector, cost


# ========================================
# Dependency Injection
# ========================================

_embedding_service: Optional[EmbeddingService] = None


def get_embedding_service() -> EmbeddingService:
    """Process-wide service so single-flight covers every caller in the process."""
    global _embedding_service
    if _embedding_service is None:
        from app.services.ledger import get_cost_ledger
        _embedding_service = EmbeddingService(ledger=get_cost_ledger())
    return _embedding_service
