"""
In-memory cosine similarity index over stored store embeddings.

The index is an immutable snapshot of every StoreEmbedding row, built lazily
on first access and dropped on invalidation. Queries are exact O(n) numpy
scans; there is no approximate search structure.

Readers that already hold a snapshot keep a consistent view while a newer
snapshot is built; a snapshot is never mutated after construction.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

from spendcat.database import crud
from spendcat.database.models import MappingSource
from spendcat.matching.types import SimilarityMatch

logger = logging.getLogger(__name__)


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """
    Cosine similarity of two vectors.

    Returns 0.0 for vectors of different length, empty vectors, or a zero norm.
    """
    if len(a) == 0 or len(a) != len(b):
        return 0.0
    va = np.asarray(a, dtype=np.float32)
    vb = np.asarray(b, dtype=np.float32)
    norm = float(np.linalg.norm(va) * np.linalg.norm(vb))
    if norm == 0.0:
        return 0.0
    return float(np.dot(va, vb) / norm)


@dataclass(frozen=True)
class IndexEntry:
    """Metadata of one indexed embedding (the vector lives in the matrix)."""
    record_id: int
    name: str
    category: str
    source: MappingSource
    confidence: float


class IndexSnapshot:
    """
    Immutable view of all embeddings at one point in time.

    Rows are grouped by vector dimension; a query only scores rows of its own
    dimension, every other row scores 0.0.
    """

    def __init__(self, entries: Sequence[IndexEntry], vectors: Sequence[Sequence[float]]):
        self.entries: Tuple[IndexEntry, ...] = tuple(entries)
        self._by_dim: Dict[int, Tuple[np.ndarray, np.ndarray]] = {}

        rows_by_dim: Dict[int, List[int]] = {}
        for i, vector in enumerate(vectors):
            rows_by_dim.setdefault(len(vector), []).append(i)

        for dim, rows in rows_by_dim.items():
            if dim == 0:
                continue
            matrix = np.asarray([vectors[i] for i in rows], dtype=np.float32)
            norms = np.linalg.norm(matrix, axis=1, keepdims=True)
            # zero-norm rows stay all-zero and therefore score 0.0
            normalized = np.divide(matrix, norms, out=np.zeros_like(matrix), where=norms > 0)
            normalized.setflags(write=False)
            self._by_dim[dim] = (np.asarray(rows, dtype=np.int64), normalized)

    def __len__(self) -> int:
        return len(self.entries)

    def scores(self, query: Sequence[float]) -> np.ndarray:
        """Cosine similarity of ``query`` against every entry, in entry order."""
        scores = np.zeros(len(self.entries), dtype=np.float32)
        q = np.asarray(query, dtype=np.float32)
        group = self._by_dim.get(q.shape[0]) if q.ndim == 1 else None
        if group is None:
            return scores
        q_norm = float(np.linalg.norm(q))
        if q_norm == 0.0:
            return scores
        rows, normalized = group
        scores[rows] = normalized @ (q / q_norm)
        return scores

    def _match(self, i: int, similarity: float) -> SimilarityMatch:
        entry = self.entries[i]
        return SimilarityMatch(
            record_id=entry.record_id,
            name=entry.name,
            category=entry.category,
            similarity=float(similarity),
            source=entry.source,
            confidence=entry.confidence,
        )

    def find_best(self, query: Sequence[float], min_similarity: float) -> Optional[SimilarityMatch]:
        if not self.entries:
            return None
        scores = self.scores(query)
        best = int(np.argmax(scores))
        if scores[best] < min_similarity:
            return None
        return self._match(best, scores[best])

    def find_similar(self, query: Sequence[float], min_similarity: float) -> List[SimilarityMatch]:
        if not self.entries:
            return []
        scores = self.scores(query)
        hits = np.nonzero(scores >= min_similarity)[0]
        # stable sort keeps entry order among equal scores
        ordered = hits[np.argsort(-scores[hits], kind="stable")]
        return [self._match(int(i), scores[i]) for i in ordered]


class SimilarityIndex:
    """
    Lazily loaded similarity index over the ``store_embeddings`` table.

    Any write to store embeddings must be followed by ``invalidate()``.
    """

    def __init__(self, db_manager):
        self.db_manager = db_manager
        self._snapshot: Optional[IndexSnapshot] = None
        self._generation = 0
        self._load_lock = asyncio.Lock()

    def invalidate(self) -> None:
        """Drop the current snapshot; the next query rebuilds it."""
        self._snapshot = None
        self._generation += 1

    async def get_snapshot(self) -> IndexSnapshot:
        snapshot = self._snapshot
        if snapshot is not None:
            return snapshot

        async with self._load_lock:
            if self._snapshot is not None:
                return self._snapshot
            generation = self._generation
            async with self.db_manager.session_scope() as session:
                rows = await crud.get_all_embeddings(session)
            snapshot = IndexSnapshot(
                entries=[
                    IndexEntry(
                        record_id=row.id,
                        name=row.name,
                        category=row.category,
                        source=row.source,
                        confidence=row.confidence,
                    )
                    for row in rows
                ],
                vectors=[row.vector for row in rows],
            )
            # an invalidation during the load makes this snapshot stale
            if generation == self._generation:
                self._snapshot = snapshot
            logger.debug(f"Similarity index snapshot built: {len(snapshot)} vectors")
            return snapshot

    async def find_best(
        self, vector: Sequence[float], min_similarity: float
    ) -> Optional[SimilarityMatch]:
        """
        Single most similar record at or above ``min_similarity``.

        Args:
            vector: Query embedding
            min_similarity: Inclusive similarity floor

        Returns:
            SimilarityMatch or None
        """
        snapshot = await self.get_snapshot()
        return snapshot.find_best(vector, min_similarity)

    async def find_group(
        self, vector: Sequence[float], min_similarity: float
    ) -> List[SimilarityMatch]:
        """All records at or above ``min_similarity``, most similar first."""
        snapshot = await self.get_snapshot()
        return snapshot.find_similar(vector, min_similarity)

    async def count(self) -> int:
        """Number of vectors in the current snapshot."""
        snapshot = await self.get_snapshot()
        return len(snapshot)
