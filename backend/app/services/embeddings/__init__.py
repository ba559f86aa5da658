"""
Text embedding: providers plus the cached, single-flight EmbeddingService.
"""

from app.services.embeddings.providers import (
    EmbeddingProvider,
    OpenAIEmbeddingProvider,
    get_embedding_provider,
)
from app.services.embeddings.service import (
    EmbeddingService,
    EmbeddingVector,
    get_embedding_service,
)

__all__ = [
    "EmbeddingProvider",
    "OpenAIEmbeddingProvider",
    "get_embedding_provider",
    "EmbeddingService",
    "EmbeddingVector",
    "get_embedding_service",
]
