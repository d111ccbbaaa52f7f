"""
Semantic grouping of store names.

Clusters unclassified store names by embedding similarity so only one
representative per cluster has to be sent to the classification oracle.
Branches of one chain ("Blue Bottle Hayes", "Blue Bottle Mint Plaza") end up
in one group; merely related shops ("Burger King", "McDonald's") stay apart.

Algorithm: greedy anchor clustering. The first unassigned name becomes the
anchor and every later unassigned name with similarity >= threshold to the
anchor joins its group.
"""

import asyncio
import logging
from typing import List, Optional, Sequence

import numpy as np

from spendcat.clients.batching import embed_names_in_batches
from spendcat.matching.types import EmbeddingConfig, StoreGroup

logger = logging.getLogger(__name__)


class SemanticGrouper:
    """
    Groups store names with the embedding client.

    Names whose embedding could not be generated are returned as singleton
    groups, so every input name appears in exactly one group.
    """

    def __init__(
        self,
        embedding_client,
        similarity_threshold: float = 0.88,
        embedding_config: Optional[EmbeddingConfig] = None,
    ):
        """
        Args:
            embedding_client: Object with async ``embed_batch``
            similarity_threshold: Minimum cosine similarity to the anchor (0-1)
            embedding_config: Batch size, concurrency and inter-batch delay
        """
        if not 0.0 <= similarity_threshold <= 1.0:
            raise ValueError("Similarity threshold must be between 0 and 1")

        self.embedding_client = embedding_client
        self.similarity_threshold = similarity_threshold
        self.embedding_config = embedding_config or EmbeddingConfig()
        self._semaphore = asyncio.Semaphore(self.embedding_config.max_concurrency)

    async def group(self, names: Sequence[str]) -> List[StoreGroup]:
        """
        Cluster ``names`` into groups, largest group first.

        Args:
            names: Distinct store names in priority order

        Returns:
            StoreGroup list covering every input name once
        """
        names = list(dict.fromkeys(names))
        if len(names) <= 1:
            return [StoreGroup(representative=n) for n in names]

        embedded = await embed_names_in_batches(
            self.embedding_client,
            names,
            batch_size=self.embedding_config.batch_size,
            semaphore=self._semaphore,
            batch_delay_seconds=self.embedding_config.batch_delay_seconds,
        )
        if not embedded:
            logger.warning("Embedding generation failed for all names; returning singleton groups")
            return [StoreGroup(representative=n) for n in names]

        embedded_names = [n for n in names if n in embedded]
        groups = self._greedy_cluster(embedded_names, [embedded[n] for n in embedded_names])
        groups.extend(StoreGroup(representative=n) for n in names if n not in embedded)

        # stable sort keeps priority order among equal-sized groups
        groups.sort(key=lambda g: g.size, reverse=True)
        logger.info(f"Grouping: {len(names)} names -> {len(groups)} groups")
        for g in groups:
            if g.members:
                logger.debug(f"  group [{g.representative}]: {', '.join(g.members)}")
        return groups

    def _greedy_cluster(self, names: List[str], vectors: List[List[float]]) -> List[StoreGroup]:
        similarity_matrix = self._similarity_matrix(vectors)
        n = len(names)
        assigned = [False] * n
        groups: List[StoreGroup] = []

        for i in range(n):
            if assigned[i]:
                continue
            assigned[i] = True
            members = []
            for j in range(i + 1, n):
                if assigned[j]:
                    continue
                if similarity_matrix[i, j] >= self.similarity_threshold:
                    members.append(names[j])
                    assigned[j] = True
            groups.append(StoreGroup(representative=names[i], members=members))

        return groups

    @staticmethod
    def _similarity_matrix(vectors: List[List[float]]) -> np.ndarray:
        """
        Pairwise cosine similarities.

        Vectors whose dimension differs from the first one, or with zero
        norm, score 0.0 against everything.
        """
        dim = len(vectors[0])
        matrix = np.zeros((len(vectors), dim), dtype=np.float32)
        for i, vector in enumerate(vectors):
            if len(vector) == dim:
                matrix[i] = vector
        norms = np.linalg.norm(matrix, axis=1, keepdims=True)
        normalized = np.divide(matrix, norms, out=np.zeros_like(matrix), where=norms > 0)
        return normalized @ normalized.T

