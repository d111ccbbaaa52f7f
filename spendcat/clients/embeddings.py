"""
Sentence-transformers embedding client.

Encodes store names into fixed-length vectors. Model inference is CPU bound,
so every call runs in a worker thread and the event loop stays free.
"""

import asyncio
import logging
import threading
from typing import List, Optional

import numpy as np
from sentence_transformers import SentenceTransformer

from spendcat.clients.base import EmbeddingFailure
from spendcat.matching.types import EmbeddingConfig

logger = logging.getLogger(__name__)


class SentenceTransformerEmbeddingClient:
    """
    Async facade over a SentenceTransformer model.

    The model is loaded on first use. Vectors are L2-normalized so cosine
    similarity reduces to a dot product, although callers must not rely on it.
    """

    def __init__(self, config: Optional[EmbeddingConfig] = None):
        self.config = config or EmbeddingConfig()
        self.model: Optional[SentenceTransformer] = None
        self._load_lock = threading.Lock()

    def _get_model(self) -> SentenceTransformer:
        with self._load_lock:
            if self.model is None:
                logger.info(f"Loading embedding model: {self.config.model_name}")
                self.model = SentenceTransformer(self.config.model_name)
        return self.model

    def _encode(self, texts: List[str]) -> np.ndarray:
        model = self._get_model()
        return model.encode(texts, convert_to_numpy=True, normalize_embeddings=True)

    def _to_list(self, vector: np.ndarray) -> List[float]:
        if vector.shape[-1] != self.config.embedding_dim:
            raise EmbeddingFailure(
                f"Model returned {vector.shape[-1]} dimensions, expected {self.config.embedding_dim}"
            )
        return vector.astype(np.float32).tolist()

    async def embed(self, text: str) -> List[float]:
        """
        Embed a single text.

        Raises:
            EmbeddingFailure: If the text is empty, the model fails, or the
                vector length differs from the configured dimension
        """
        if not text or not text.strip():
            raise EmbeddingFailure("Cannot embed empty text")
        try:
            vectors = await asyncio.to_thread(self._encode, [text])
        except Exception as e:
            raise EmbeddingFailure(f"Embedding failed for '{text}': {e}") from e
        return self._to_list(vectors[0])

    async def embed_batch(self, texts: List[str]) -> List[Optional[List[float]]]:
        """
        Embed many texts in one model call.

        If the batch call fails, each text is retried on its own so a single
        bad input only loses its own slot.

        Returns:
            Vectors in input order; ``None`` where a text could not be embedded
        """
        if not texts:
            return []
        try:
            vectors = await asyncio.to_thread(self._encode, list(texts))
            return [self._to_list(v) for v in vectors]
        except Exception as e:
            logger.warning(f"Batch embedding of {len(texts)} texts failed: {e}; retrying individually")

        results: List[Optional[List[float]]] = []
        for text in texts:
            try:
                results.append(await self.embed(text))
            except EmbeddingFailure as e:
                logger.warning(str(e))
                results.append(None)
        return results

