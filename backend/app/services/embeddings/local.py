"""
Local Embedding Provider

Runs a sentence-transformers model in-process. Useful for development and
self-hosted deployments; calls are free, so no cost is recorded.

The model's output dimension must match EMBEDDING_DIMENSION, since the
embeddings table stores fixed-size vectors.

Features:
---------
- Batch processing
- CPU/CUDA/MPS device support with fallback to CPU
- Model loading and encoding run in a thread pool
- Normalized output (cosine similarity == dot product)
"""

import asyncio
import logging
from decimal import Decimal
from typing import List, Optional, Tuple

import numpy as np
import torch
from sentence_transformers import SentenceTransformer

from app.core.config import settings
from app.core.errors import PermanentInputError, PipelineError, TransientProviderError
from app.services.embeddings.providers import EmbeddingProvider

logger = logging.getLogger(__name__)


class LocalEmbeddingProvider(EmbeddingProvider):
    """
    sentence-transformers provider.

    Usage:
    ------
    provider = LocalEmbeddingProvider()
    vectors, cost = await provider.embed(["red bicycle", "city street"])
    """

    service = "local"

    def __init__(
        self,
        model_name: Optional[str] = None,
        batch_size: Optional[int] = None,
        device: Optional[str] = None,
    ):
        self.model = model_name or settings.LOCAL_EMBEDDING_MODEL
        self.batch_size = batch_size or settings.EMBEDDING_BATCH_SIZE
        self.device = device or settings.EMBEDDING_DEVICE
        self.dimension = settings.EMBEDDING_DIMENSION

        self._model: Optional[SentenceTransformer] = None
        self._load_lock = asyncio.Lock()

        self._validate_device()

    def _validate_device(self) -> None:
        """Validate and adjust device setting based on availability."""
        if self.device == "cuda" and not torch.cuda.is_available():
            logger.warning("CUDA not available, falling back to CPU")
            self.device = "cpu"
        elif self.device == "mps" and not torch.backends.mps.is_available():
            logger.warning("MPS not available, falling back to CPU")
            self.device = "cpu"

    async def initialize(self) -> None:
        """
        Load the model (downloads it on first use).

        Raises:
            PermanentInputError: model dimension does not match EMBEDDING_DIMENSION
        """
        async with self._load_lock:
            if self._model is not None:
                return

            logger.info(f"Loading embedding model: {self.model} on {self.device}")
            model = await asyncio.to_thread(SentenceTransformer, self.model, device=self.device)

            dimension = model.get_sentence_embedding_dimension()
            if dimension != self.dimension:
                raise PermanentInputError(
                    f"Model {self.model} produces {dimension}-d vectors; "
                    f"EMBEDDING_DIMENSION is {self.dimension}"
                )

            self._model = model
            logger.info(f"Embedding model loaded. Dimension: {dimension}, Device: {self.device}")

    async def embed(self, texts: List[str]) -> Tuple[List[List[float]], Decimal]:
        await self.initialize()
        embeddings = await asyncio.to_thread(self._encode, texts)
        return [row.tolist() for row in embeddings], Decimal("0")

    def _encode(self, texts: List[str]) -> np.ndarray:
        """Batch encode (sync, runs in thread pool)."""
        return self._model.encode(
            texts,
            batch_size=self.batch_size,
            normalize_embeddings=True,
            show_progress_bar=False,
            convert_to_numpy=True,
        )

    def classify_exception(self, exc: Exception) -> PipelineError:
        if isinstance(exc, PipelineError):
            return exc
        if isinstance(exc, torch.cuda.OutOfMemoryError):
            return TransientProviderError(f"Out of GPU memory: {exc}")
        return PermanentInputError(f"Local embedding failed: {exc}")
