"""
Store embedding repository for vector-memory learning.

Writes learned (store name, category) pairs into the ``store_embeddings``
table, keeps the similarity index coherent, and spreads trusted categories
to near-identical store names.

Concurrent requests to embed the same name are de-duplicated: the first
caller claims the name, later callers skip until it is released.
"""

import asyncio
import logging
import threading
from typing import Dict, Iterable, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from spendcat.clients.batching import embed_names_in_batches
from spendcat.database import crud
from spendcat.database.models import MappingSource, StoreEmbedding
from spendcat.matching.similarity_index import SimilarityIndex
from spendcat.matching.types import EmbeddingConfig
from spendcat.learning.propagation import PropagationPolicy

logger = logging.getLogger(__name__)

DEFAULT_CONFIDENCE = {
    MappingSource.USER: 1.0,
    MappingSource.LOCAL: 1.0,
}
FALLBACK_CONFIDENCE = 0.8


class InFlightGuard:
    """Set of names whose embedding is currently being generated."""

    def __init__(self):
        self._names = set()
        self._lock = threading.Lock()

    def claim(self, name: str) -> bool:
        """Add ``name`` if absent. Returns False if someone else holds it."""
        with self._lock:
            if name in self._names:
                return False
            self._names.add(name)
            return True

    def claim_many(self, names: Iterable[str]) -> List[str]:
        """Claim every free name; returns the ones claimed, in input order."""
        claimed = []
        with self._lock:
            for name in names:
                if name not in self._names:
                    self._names.add(name)
                    claimed.append(name)
        return claimed

    def release(self, names: Iterable[str]) -> None:
        with self._lock:
            for name in names:
                self._names.discard(name)

    def __contains__(self, name: str) -> bool:
        with self._lock:
            return name in self._names

    def __len__(self) -> int:
        with self._lock:
            return len(self._names)


class StoreEmbeddingRepository:
    """
    Persists store embeddings and runs category propagation.

    Every successful write invalidates the shared SimilarityIndex.
    Failures in this class are logged and reported through return values;
    none of the public methods raise on embedding or database errors.
    """

    def __init__(
        self,
        db_manager,
        embedding_client,
        index: SimilarityIndex,
        policy: Optional[PropagationPolicy] = None,
        embedding_config: Optional[EmbeddingConfig] = None,
        confidence_defaults: Optional[Dict[MappingSource, float]] = None,
    ):
        """
        Args:
            db_manager: DatabaseManager
            embedding_client: Object with async ``embed`` and ``embed_batch``
            index: SimilarityIndex to invalidate after writes
            policy: Propagation gates (default thresholds if None)
            embedding_config: Batch size, concurrency and delay for batch writes
            confidence_defaults: Confidence per source for new records
        """
        self.db_manager = db_manager
        self.embedding_client = embedding_client
        self.index = index
        self.policy = policy or PropagationPolicy()
        self.embedding_config = embedding_config or EmbeddingConfig()
        self.confidence_defaults = dict(DEFAULT_CONFIDENCE)
        if confidence_defaults:
            self.confidence_defaults.update(confidence_defaults)
        self.in_flight = InFlightGuard()
        self._semaphore = asyncio.Semaphore(self.embedding_config.max_concurrency)

    def confidence_for(self, source: MappingSource) -> float:
        return self.confidence_defaults.get(source, FALLBACK_CONFIDENCE)

    async def generate_embedding(self, name: str) -> Optional[List[float]]:
        """Embed one name; returns None (logged) on failure."""
        try:
            return await self.embedding_client.embed(name)
        except Exception as e:
            logger.warning(f"Embedding generation failed for '{name}': {e}")
            return None

    async def has_embedding(self, name: str) -> bool:
        async with self.db_manager.session_scope() as session:
            return await crud.get_embedding_by_name(session, name) is not None

    async def save(
        self,
        name: str,
        category: str,
        source: MappingSource,
        confidence: Optional[float] = None,
        vector: Optional[List[float]] = None,
    ) -> bool:
        """
        Embed ``name`` (unless ``vector`` is given) and insert or replace its record.

        Returns:
            True if a record was written; False if skipped or failed
        """
        if not self.in_flight.claim(name):
            logger.debug(f"Embedding already in flight, skipping: {name}")
            return False
        try:
            if vector is None:
                vector = await self.generate_embedding(name)
            if vector is None:
                return False
            async with self.db_manager.session_scope() as session:
                written = await crud.upsert_embeddings(session, [{
                    "name": name,
                    "category": category,
                    "vector": vector,
                    "source": source,
                    "confidence": self.confidence_for(source) if confidence is None else confidence,
                }])
            if not written:
                logger.debug(f"Embedding for '{name}' kept: user-set record")
                return False
            self.index.invalidate()
            logger.debug(f"Embedding saved: {name} -> {category} (source={source.value})")
            return True
        except SQLAlchemyError as e:
            logger.error(f"Failed to save embedding for '{name}': {e}")
            return False
        finally:
            self.in_flight.release([name])

    async def save_many(self, categories: Dict[str, str], source: MappingSource) -> int:
        """
        Embed and store a batch of classified names.

        Names already in flight are skipped. Embeddings are generated in
        concurrent chunks; names whose embedding failed are not stored.

        Returns:
            Number of records written
        """
        if not categories:
            return 0
        names = self.in_flight.claim_many(categories)
        skipped = len(categories) - len(names)
        if skipped:
            logger.debug(f"Batch embedding: {skipped} names already in flight")
        if not names:
            return 0

        try:
            vectors = await embed_names_in_batches(
                self.embedding_client,
                names,
                batch_size=self.embedding_config.batch_size,
                semaphore=self._semaphore,
            )
            confidence = self.confidence_for(source)
            records = [
                {
                    "name": name,
                    "category": categories[name],
                    "vector": vectors[name],
                    "source": source,
                    "confidence": confidence,
                }
                for name in names if name in vectors
            ]
            if not records:
                return 0
            async with self.db_manager.session_scope() as session:
                written = await crud.upsert_embeddings(session, records)
            if written:
                self.index.invalidate()
            logger.info(f"Batch embeddings saved: {written}/{len(records)} (source={source.value})")
            return written
        except SQLAlchemyError as e:
            logger.error(f"Batch embedding save failed: {e}")
            return 0
        finally:
            self.in_flight.release(names)

    async def update_category(
        self,
        name: str,
        category: str,
        source: MappingSource,
        confidence: Optional[float] = None,
    ) -> bool:
        """Change the category of an existing record without re-embedding."""
        try:
            async with self.db_manager.session_scope() as session:
                updated = await crud.update_embedding_category(
                    session, name, category, source, confidence
                )
        except SQLAlchemyError as e:
            logger.error(f"Category update failed for '{name}': {e}")
            return False
        if updated:
            self.index.invalidate()
        return updated > 0

    async def upsert_category(
        self,
        name: str,
        category: str,
        source: MappingSource = MappingSource.USER,
    ) -> bool:
        """
        Update the category if ``name`` is already embedded, else embed and save.

        Existing records keep their vector; no embedding call is made for them.
        """
        confidence = self.confidence_for(source)
        try:
            exists = await self.has_embedding(name)
        except SQLAlchemyError as e:
            logger.error(f"Embedding lookup failed for '{name}': {e}")
            return False
        if exists:
            return await self.update_category(name, category, source, confidence)
        return await self.save(name, category, source, confidence)

    async def _query_vector(self, name: str) -> Optional[List[float]]:
        async with self.db_manager.session_scope() as session:
            existing = await crud.get_embedding_by_name(session, name)
        if existing is not None:
            return list(existing.vector)
        return await self.generate_embedding(name)

    async def propagate(self, name: str, category: str, confidence: float = 1.0) -> List[str]:
        """
        Copy ``category`` onto stored names similar to ``name``.

        Neighbours are skipped when they are ``name`` itself, already carry
        ``category``, fail the similarity / confidence gate, or were set by
        the user (checked again inside the UPDATE).

        Args:
            name: Store name whose category was just decided
            category: Category to spread
            confidence: Trust in that decision

        Returns:
            Names whose category was changed
        """
        if not self.policy.is_trusted(confidence):
            logger.debug(
                f"Propagation blocked: {name} -> {category} "
                f"(confidence={confidence} < {self.policy.min_confidence})"
            )
            return []

        try:
            vector = await self._query_vector(name)
            if vector is None:
                return []

            neighbours = await self.index.find_group(vector, self.policy.profile.propagate)
            propagated: List[str] = []
            async with self.db_manager.session_scope() as session:
                for match in neighbours:
                    if match.name == name or match.category == category:
                        continue
                    if match.source == MappingSource.USER:
                        continue
                    if not self.policy.should_propagate_with_confidence(match.similarity, confidence):
                        continue
                    if await crud.update_embedding_category_if_not_user(
                        session, match.record_id, category, MappingSource.PROPAGATED
                    ):
                        propagated.append(match.name)
                        logger.debug(
                            f"Propagated '{match.name}' -> {category} "
                            f"(similarity={match.similarity:.3f}, confidence={confidence})"
                        )
            if propagated:
                self.index.invalidate()
            logger.info(f"Propagation from '{name}' -> {category}: {len(propagated)} updated")
            return propagated
        except SQLAlchemyError as e:
            logger.error(f"Propagation from '{name}' failed: {e}")
            return []

    async def get_below_confidence(self, threshold: float) -> List[StoreEmbedding]:
        async with self.db_manager.session_scope() as session:
            return await crud.get_embeddings_below_confidence(session, threshold)

    async def increment_match_counts(self, embedding_ids: Iterable[int]) -> None:
        """Bump match counts; the index is not invalidated (counts are not indexed)."""
        try:
            async with self.db_manager.session_scope() as session:
                await crud.increment_match_counts(session, embedding_ids)
        except SQLAlchemyError as e:
            logger.warning(f"Match count update failed: {e}")

    async def count(self) -> int:
        async with self.db_manager.session_scope() as session:
            return await crud.count_embeddings(session)

    async def delete_all(self) -> int:
        async with self.db_manager.session_scope() as session:
            deleted = await crud.delete_all_embeddings(session)
        self.index.invalidate()
        return deleted
