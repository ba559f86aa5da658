"""
Test doubles shared by the test-suite.

- FakeRedis: the few redis.asyncio calls the caches and lane slots make, kept in a dict
- FakeEmbeddingProvider: deterministic vectors, call counting, fixed cost
- ScriptedAdapter: analysis adapter whose calls follow a script
"""

import asyncio
import hashlib
import math
from decimal import Decimal
from typing import Dict, List, Optional

from app.core.errors import PipelineError, TransientProviderError
from app.models.jobs import Capability
from app.services.adapters.base import AnalysisAdapter, AnalysisOptions, AnalysisPayload
from app.services.embeddings.providers import EmbeddingProvider
from app.services.ledger import CostLedger

DIMENSION = 8


class FakeRedis:
    """The handful of redis.asyncio calls the caches make, kept in a dict."""

    def __init__(self):
        self.store: Dict[str, str] = {}
        self.expiry: Dict[str, Optional[int]] = {}

    async def get(self, key):
        return self.store.get(key)

    async def set(self, key, value, ex=None, nx=False):
        if nx and key in self.store:
            return None
        self.store[key] = value
        self.expiry[key] = ex
        return True

    async def expire(self, key, seconds):
        if key not in self.store:
            return False
        self.expiry[key] = seconds
        return True

    async def delete(self, *keys):
        removed = 0
        for key in keys:
            if self.store.pop(key, None) is not None:
                removed += 1
            self.expiry.pop(key, None)
        return removed


def hashed_vector(text: str) -> List[float]:
    """Deterministic non-zero vector for a text."""
    digest = hashlib.sha256(text.encode("utf-8")).digest()
    return [digest[i] / 255.0 + 0.01 for i in range(DIMENSION)]


def vector_at_distance(distance: float) -> List[float]:
    """Unit vector whose cosine distance to [1, 0, 0, ...] is `distance`."""
    cos = 1.0 - distance
    return [cos, math.sqrt(max(0.0, 1.0 - cos * cos))] + [0.0] * (DIMENSION - 2)


QUERY_VECTOR = [1.0] + [0.0] * (DIMENSION - 1)


class FakeEmbeddingProvider(EmbeddingProvider):
    """Counts calls; returns fixed vectors for known texts, hashed ones otherwise."""

    service = "fake-embeddings"
    model = "fake-embedding-model"
    dimension = DIMENSION

    def __init__(
        self,
        vectors: Optional[Dict[str, List[float]]] = None,
        cost: Decimal = Decimal("0.5"),
        delay: float = 0.0,
        error: Optional[Exception] = None,
    ):
        self.vectors = vectors or {}
        self.cost = cost
        self.delay = delay
        self.error = error
        self.calls: List[List[str]] = []

    def estimate_cost(self, texts):
        return self.cost * len(texts)

    def classify_exception(self, exc: Exception) -> PipelineError:
        return TransientProviderError(f"fake {type(exc).__name__}: {exc}")

    async def embed(self, texts):
        self.calls.append(list(texts))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        vectors = [self.vectors.get(text, hashed_vector(text)) for text in texts]
        return vectors, self.cost * len(texts)


class ScriptedAdapter(AnalysisAdapter):
    """
    Adapter whose calls follow a script.

    Each step is "ok", "slow" (succeeds after `slow_seconds`), "timeout"
    (sleeps past the adapter timeout) or an exception instance to raise.
    Once the script runs out every call succeeds.
    """

    service = "fake-analysis"
    operation = "analyze"

    def __init__(
        self,
        ledger: CostLedger,
        capability: Capability,
        script=None,
        payload: Optional[AnalysisPayload] = None,
        cost: Decimal = Decimal("0.5"),
        charges_on_failure: bool = False,
        timeout: float = 0.05,
        local_retries: int = 0,
        slow_seconds: float = 0.5,
    ):
        super().__init__(ledger, timeout=timeout, local_retries=local_retries, retry_delay=0.0)
        self.capability = capability
        self.script = list(script or [])
        self.payload = payload
        self.cost = cost
        self.charges_on_failure = charges_on_failure
        self.slow_seconds = slow_seconds
        self.calls: List[AnalysisOptions] = []

    def estimate_cost(self, options: AnalysisOptions) -> Decimal:
        return self.cost

    async def _call(self, locator, options):
        self.calls.append(options)
        step = self.script.pop(0) if self.script else "ok"
        if step == "slow":
            await asyncio.sleep(self.slow_seconds)
        if step == "timeout":
            await asyncio.sleep(10)
        if isinstance(step, Exception):
            raise step
        payload = self.payload or AnalysisPayload(
            labels=[{"name": "Bicycle", "confidence": 0.95}],
            text=f"{self.capability.value} output",
        )
        return AnalysisPayload(
            labels=list(payload.labels),
            entities=list(payload.entities),
            text=payload.text,
            segments=list(payload.segments),
            sentiment=payload.sentiment,
        ), self.cost

