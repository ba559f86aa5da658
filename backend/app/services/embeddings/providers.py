"""
Embedding providers.

A provider turns a batch of texts into vectors and reports what the call
cost. Providers know nothing about caching or budgets; EmbeddingService
handles both.
"""

import logging
from abc import ABC, abstractmethod
from decimal import Decimal
from functools import lru_cache
from typing import List, Optional, Tuple

import tiktoken

from app.core.config import settings
from app.core.errors import PipelineError
from app.services.adapters.openai_client import classify_openai_error, get_openai_client

logger = logging.getLogger(__name__)


class EmbeddingProvider(ABC):
    """Interface shared by the hosted and local providers."""

    service: str = "embedding"
    model: str
    dimension: int

    @abstractmethod
    async def embed(self, texts: List[str]) -> Tuple[List[List[float]], Decimal]:
        """Embed non-empty texts. Returns (vectors, cost of the call)."""

    def estimate_cost(self, texts: List[str]) -> Decimal:
        return Decimal("0")

    def classify_exception(self, exc: Exception) -> PipelineError:
        return classify_openai_error(exc, self.service)


# ========================================
# OpenAI
# ========================================

# USD per 1M input tokens
OPENAI_EMBEDDING_PRICES = {
    "text-embedding-3-small": Decimal("0.02"),
    "text-embedding-3-large": Decimal("0.13"),
    "text-embedding-ada-002": Decimal("0.10"),
}


@lru_cache(maxsize=None)
def _encoding_for(model: str):
    try:
        return tiktoken.encoding_for_model(model)
    except KeyError:
        return tiktoken.get_encoding("cl100k_base")


def count_tokens(text: str, model: str) -> int:
    return len(_encoding_for(model).encode(text))


class OpenAIEmbeddingProvider(EmbeddingProvider):
    """Hosted embeddings via the OpenAI API."""

    service = "openai"

    def __init__(self, model: Optional[str] = None, dimension: Optional[int] = None, client=None):
        self.model = model or settings.EMBEDDING_MODEL
        self.dimension = dimension or settings.EMBEDDING_DIMENSION
        self._client = client

    @property
    def client(self):
        if self._client is None:
            self._client = get_openai_client()
        return self._client

    @property
    def price_per_million(self) -> Decimal:
        return OPENAI_EMBEDDING_PRICES.get(self.model, Decimal("0.02"))

    def tokens_cost(self, tokens: int) -> Decimal:
        return Decimal(tokens) * self.price_per_million / Decimal(1_000_000)

    def estimate_cost(self, texts: List[str]) -> Decimal:
        return self.tokens_cost(sum(count_tokens(text, self.model) for text in texts))

    async def embed(self, texts: List[str]) -> Tuple[List[List[float]], Decimal]:
        params = {"model": self.model, "input": texts}
        # ada-002 has a fixed size; the v3 models can be shortened
        if self.model.startswith("text-embedding-3"):
            params["dimensions"] = self.dimension

        response = await self.client.embeddings.create(**params)

        vectors = [item.embedding for item in sorted(response.data, key=lambda item: item.index)]
        tokens = response.usage.total_tokens if response.usage else sum(
            count_tokens(text, self.model) for text in texts
        )
        return vectors, self.tokens_cost(tokens)


def get_embedding_provider() -> EmbeddingProvider:
    """Provider selected by EMBEDDING_PROVIDER."""
    if settings.EMBEDDING_PROVIDER == "local":
        from app.services.embeddings.local import LocalEmbeddingProvider
        return LocalEmbeddingProvider()
    return OpenAIEmbeddingProvider()
