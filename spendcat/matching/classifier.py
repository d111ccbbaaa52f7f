"""
Category classifier: the tiered lookup and learning engine.

Cascade order for a single store name:
  Tier 1:   Mapping store, exact then either-direction substring match
  Tier 1.5a: Best vector neighbour at similarity >= auto_apply (0.92)
  Tier 1.5b: Majority category of all neighbours >= group (0.88)
  Tier 2:   Keyword rules over the name and its message text
  Tier 3:   Deferred, the name stays unclassified until a bulk round

Vector hits are promoted into the mapping store so the next lookup of the
same name is a Tier 1 hit. While a bulk cache is active the vector tiers are
skipped and Tier 1 is served from memory.

Bulk pipeline (classify_unclassified):
  Step 1: Collect unclassified store names, largest total amount first
  Step 2: Rule pre-classification
  Step 3: Semantic grouping of the remaining names
  Step 4: Oracle classification of group representatives only
  Step 5: Spread each representative's category over its group
  Step 6: Persist mappings (one transaction) and embeddings (batched)
  Step 7: Update the expense records
"""

import enum
import inspect
import logging
import time
from collections import Counter
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable, Dict, List, Optional, Sequence

from sqlalchemy.exc import SQLAlchemyError

from spendcat.database import crud
from spendcat.database.models import MappingSource, UNCLASSIFIED
from spendcat.matching.mapping_store import (
    BulkCacheError,
    BulkClassificationCache,
    MappingStore,
    PendingMapping,
    write_pending,
)
from spendcat.matching.rule_engine import RuleEngine
from spendcat.matching.semantic_grouper import SemanticGrouper
from spendcat.matching.similarity_index import SimilarityIndex
from spendcat.matching.types import (
    CLASSIFIABLE_CATEGORIES,
    ClassificationResult,
    ClassificationTier,
    SimilarityMatch,
    SimilarityThresholds,
    StoreGroup,
    is_classifiable,
)
from spendcat.learning.embedding_store import StoreEmbeddingRepository
from spendcat.learning.propagation import PropagationPolicy
from spendcat.learning.round_driver import BatchRoundDriver

logger = logging.getLogger(__name__)


class CorrectionScope(enum.Enum):
    """Which expense records a manual correction applies to."""
    SINGLE_RECORD = "single_record"
    ALL_WITH_NAME = "all_with_name"


def majority_category(matches: Sequence[SimilarityMatch]) -> Optional[str]:
    """
    Most frequent category among ``matches``.

    Ties go to the lexicographically smallest category name.
    """
    if not matches:
        return None
    counts = Counter(m.category for m in matches)
    top = max(counts.values())
    return min(category for category, count in counts.items() if count == top)


async def _report(callback: Optional[Callable], *args) -> None:
    """Invoke a sync or async progress callback."""
    if callback is None:
        return
    result = callback(*args)
    if inspect.isawaitable(result):
        await result


class CategoryClassifier:
    """
    Tiered store-name classifier with bulk oracle rounds and self-learning.

    Public surface:
    - get_category / classify: single-name cascade
    - init_bulk_cache / flush_pending_mappings / clear_bulk_cache / bulk_cache
    - classify_unclassified / classify_all_until_complete: bulk pipeline
    - set_category / propagate: manual correction and learning
    - reclassify_low_confidence: second opinion on low-trust embeddings

    Errors from the embedding service, the oracle, and best-effort writes are
    logged and absorbed; the worst outcome for a name is staying unclassified.
    """

    def __init__(
        self,
        db_manager,
        mapping_store: MappingStore,
        index: SimilarityIndex,
        embedding_repo: StoreEmbeddingRepository,
        rule_engine: RuleEngine,
        grouper: SemanticGrouper,
        oracle,
        thresholds: Optional[SimilarityThresholds] = None,
        reference_provider=None,
    ):
        """
        Initialize the classifier.

        Args:
            db_manager: DatabaseManager for expense record access
            mapping_store: Persistent Tier 1 mappings
            index: Similarity index over stored embeddings
            embedding_repo: Embedding persistence and propagation
            rule_engine: Keyword rules (Tier 2 and bulk pre-filter)
            grouper: Semantic grouper for bulk rounds
            oracle: Object with async ``classify(names, categories)`` and ``enabled``
            thresholds: Similarity thresholds (defaults if None)
            reference_provider: Optional CategoryReferenceProvider to invalidate
                on manual corrections
        """
        self.db_manager = db_manager
        self.mapping_store = mapping_store
        self.index = index
        self.embedding_repo = embedding_repo
        self.rule_engine = rule_engine
        self.grouper = grouper
        self.oracle = oracle
        self.thresholds = thresholds or SimilarityThresholds()
        self.policy = PropagationPolicy(self.thresholds)
        self.reference_provider = reference_provider
        self._bulk_cache: Optional[BulkClassificationCache] = None
        # pending mappings of a cleared cache whose flush failed
        self._unflushed: List[PendingMapping] = []

    # ── Bulk cache lifecycle ─────────────────────────────────────────────

    async def init_bulk_cache(self) -> BulkClassificationCache:
        """
        Load all mappings into memory for a high-volume ingestion run.

        Raises:
            BulkCacheError: If a bulk cache is already active
        """
        if self._bulk_cache is not None:
            raise BulkCacheError("A bulk classification cache is already active")
        self._bulk_cache = await BulkClassificationCache.load(self.mapping_store)
        for name, category, _ in self._unflushed:
            self._bulk_cache.put(name, category)
        logger.info(f"Bulk cache active: {len(self._bulk_cache)} mappings loaded")
        return self._bulk_cache

    async def flush_pending_mappings(self) -> int:
        """
        Write pending mappings: leftovers of an earlier cache first, then the
        active cache's buffer.

        A failed write is logged and never raised. The entries stay queued,
        so the next flush retries them.

        Returns:
            Number of mappings written
        """
        written = 0
        try:
            if self._unflushed:
                written += await write_pending(self.mapping_store, self._unflushed)
                self._unflushed = []
            if self._bulk_cache is not None:
                written += await self._bulk_cache.flush(self.mapping_store)
        except SQLAlchemyError as e:
            queued = len(self._unflushed) + (len(self._bulk_cache.pending) if self._bulk_cache is not None else 0)
            logger.error(f"Pending mapping flush failed, {queued} kept for retry: {e}")
        return written

    def clear_bulk_cache(self) -> None:
        """Release the active cache. Unwritten pending entries are kept for the next flush."""
        if self._bulk_cache is not None:
            if self._bulk_cache.pending:
                self._unflushed.extend(self._bulk_cache.pending)
                logger.warning(f"{len(self._bulk_cache.pending)} unwritten mappings queued for the next flush")
            self._bulk_cache.clear()
            self._bulk_cache = None

    @property
    def unflushed_count(self) -> int:
        return len(self._unflushed)

    @asynccontextmanager
    async def bulk_cache(self) -> AsyncIterator[BulkClassificationCache]:
        """
        Scope a bulk ingestion run.

        Usage:
            async with classifier.bulk_cache():
                for name, text in incoming:
                    await classifier.get_category(name, text)
            # pending mappings flushed, cache released
        """
        cache = await self.init_bulk_cache()
        try:
            yield cache
            await self.flush_pending_mappings()
        finally:
            self.clear_bulk_cache()

    @property
    def bulk_cache_active(self) -> bool:
        return self._bulk_cache is not None

    # ── Single-name cascade ──────────────────────────────────────────────

    async def get_category(
        self,
        name: str,
        context: str = "",
        vector: Optional[List[float]] = None,
    ) -> str:
        """
        Category for ``name``, or the unclassified sentinel.

        Args:
            name: Store name
            context: Surrounding message text used by keyword rules
            vector: Precomputed embedding of ``name`` (skips one embedding call)
        """
        result = await self.classify(name, context, vector)
        return result.category

    async def classify(
        self,
        name: str,
        context: str = "",
        vector: Optional[List[float]] = None,
    ) -> ClassificationResult:
        """
        Run the tier cascade for one store name.

        Args:
            name: Store name
            context: Surrounding message text used by keyword rules
            vector: Precomputed embedding of ``name``

        Returns:
            ClassificationResult naming the deciding tier
        """
        if not name or not name.strip():
            return ClassificationResult(name=name, category=UNCLASSIFIED, tier=ClassificationTier.UNRESOLVED)

        if self._bulk_cache is not None:
            return self._classify_cached(self._bulk_cache, name, context)

        # ── Tier 1: Mapping store ────────────────────────────────────────
        result = await self._mapping_tier(name)
        if result is not None:
            return result

        # ── Tier 1.5: Vector neighbours ──────────────────────────────────
        result = await self._vector_tier(name, vector)
        if result is not None:
            return result

        # ── Tier 2: Keyword rules ────────────────────────────────────────
        category = self.rule_engine.infer(name, context)
        if category is not None:
            await self._save_mapping(name, category, MappingSource.LOCAL)
            logger.debug(f"Tier 2 rule: '{name}' -> {category}")
            return ClassificationResult(name=name, category=category, tier=ClassificationTier.RULE)

        # ── Tier 3: Deferred to bulk rounds ──────────────────────────────
        return ClassificationResult(name=name, category=UNCLASSIFIED, tier=ClassificationTier.UNRESOLVED)

    def _classify_cached(
        self, cache: BulkClassificationCache, name: str, context: str
    ) -> ClassificationResult:
        category = cache.lookup(name)
        if category is not None:
            return ClassificationResult(name=name, category=category, tier=ClassificationTier.BULK_CACHE)

        category = self.rule_engine.infer(name, context)
        if category is not None:
            cache.record(name, category, MappingSource.LOCAL)
            return ClassificationResult(name=name, category=category, tier=ClassificationTier.RULE)

        return ClassificationResult(name=name, category=UNCLASSIFIED, tier=ClassificationTier.UNRESOLVED)

    async def _mapping_tier(self, name: str) -> Optional[ClassificationResult]:
        try:
            category = await self.mapping_store.get_exact(name)
            if category is not None:
                logger.debug(f"Tier 1 exact: '{name}' -> {category}")
                return ClassificationResult(
                    name=name, category=category, tier=ClassificationTier.EXACT, matched_name=name
                )
            partial = await self.mapping_store.get_partial(name)
        except SQLAlchemyError as e:
            logger.warning(f"Mapping lookup failed for '{name}': {e}")
            return None

        if partial is not None:
            stored_name, category = partial
            logger.debug(f"Tier 1 partial: '{name}' ~ '{stored_name}' -> {category}")
            return ClassificationResult(
                name=name, category=category, tier=ClassificationTier.PARTIAL, matched_name=stored_name
            )
        return None

    async def _vector_tier(
        self, name: str, vector: Optional[List[float]]
    ) -> Optional[ClassificationResult]:
        try:
            if vector is None:
                vector = await self.embedding_repo.generate_embedding(name)
            if vector is None:
                return None

            # ── 1.5a: best single neighbour ──
            best = await self.index.find_best(vector, self.thresholds.group)
            if best is not None and self.policy.should_auto_apply(best.similarity):
                await self.embedding_repo.increment_match_counts([best.record_id])
                await self._save_mapping(name, best.category, MappingSource.VECTOR)
                logger.debug(
                    f"Tier 1.5a vector: '{name}' ~ '{best.name}' "
                    f"({best.similarity:.3f}) -> {best.category}"
                )
                return ClassificationResult(
                    name=name,
                    category=best.category,
                    tier=ClassificationTier.VECTOR_BEST,
                    similarity=best.similarity,
                    matched_name=best.name,
                )

            # ── 1.5b: group vote ──
            neighbours = await self.index.find_group(vector, self.thresholds.group)
            group = [m for m in neighbours if self.policy.should_group(m.similarity)]
            category = majority_category(group)
            if category is not None:
                await self.embedding_repo.increment_match_counts([m.record_id for m in group])
                await self._save_mapping(name, category, MappingSource.VECTOR)
                avg_similarity = sum(m.similarity for m in group) / len(group)
                logger.debug(
                    f"Tier 1.5b group vote: '{name}' -> {category} "
                    f"({len(group)} neighbours, avg {avg_similarity:.3f})"
                )
                return ClassificationResult(
                    name=name,
                    category=category,
                    tier=ClassificationTier.VECTOR_GROUP,
                    similarity=avg_similarity,
                )
        except Exception as e:
            logger.warning(f"Vector tier failed for '{name}', falling through: {e}")
        return None

    async def _save_mapping(self, name: str, category: str, source: MappingSource) -> None:
        try:
            await self.mapping_store.save(name, category, source)
        except SQLAlchemyError as e:
            logger.warning(f"Could not persist mapping '{name}' -> {category}: {e}")

    # ── Bulk pipeline ────────────────────────────────────────────────────

    async def _group_safely(self, names: List[str]) -> List[StoreGroup]:
        try:
            return await self.grouper.group(names)
        except Exception as e:
            logger.warning(f"Grouping failed, using singleton groups: {e}")
            return [StoreGroup(representative=n) for n in names]

    async def classify_unclassified(
        self,
        max_names: Optional[int] = None,
        on_step_progress: Optional[Callable] = None,
    ) -> int:
        """
        Classify every unclassified store name in one bulk round.

        Args:
            max_names: Only process the top ``max_names`` names by total amount
            on_step_progress: Optional callback ``(step, current, total)``

        Returns:
            Number of expense records updated
        """
        timings: Dict[str, float] = {}
        t0 = time.perf_counter()

        # ── Step 1: Collect names ────────────────────────────────────────
        async with self.db_manager.session_scope() as session:
            totals = await crud.get_unclassified_name_totals(session, limit=max_names)
        names = [name for name, _ in totals]
        timings['collect'] = time.perf_counter() - t0
        if not names:
            logger.info("No unclassified store names")
            return 0
        await _report(on_step_progress, "collect", len(names), len(names))

        # ── Step 2: Rule pre-classification ──────────────────────────────
        t = time.perf_counter()
        rule_results, remaining = self.rule_engine.pre_classify(names)
        timings['rules'] = time.perf_counter() - t
        await _report(on_step_progress, "rules", len(rule_results), len(names))

        # ── Step 3: Semantic grouping ────────────────────────────────────
        t = time.perf_counter()
        groups = await self._group_safely(remaining) if remaining else []
        timings['grouping'] = time.perf_counter() - t
        await _report(on_step_progress, "grouping", len(groups), len(remaining))

        # ── Step 4: Oracle on representatives ────────────────────────────
        t = time.perf_counter()
        oracle_results: Dict[str, str] = {}
        if groups:
            try:
                oracle_results = await self.oracle.classify(
                    [g.representative for g in groups], CLASSIFIABLE_CATEGORIES
                )
            except Exception as e:
                logger.warning(f"Oracle classification failed: {e}")
        timings['oracle'] = time.perf_counter() - t
        await _report(on_step_progress, "oracle", len(oracle_results), len(groups))

        if not oracle_results and not rule_results:
            logger.info(f"Bulk round resolved nothing ({len(names)} names)")
            return 0

        # ── Step 5: Spread over groups ───────────────────────────────────
        group_results: Dict[str, str] = {}
        for g in groups:
            category = oracle_results.get(g.representative)
            if not is_classifiable(category):
                continue
            for member in g.names:
                group_results[member] = category
        classifications = {**rule_results, **group_results}

        # ── Step 6: Persist mappings and embeddings ──────────────────────
        t = time.perf_counter()
        try:
            await self.mapping_store.save_batches({
                MappingSource.LOCAL: list(rule_results.items()),
                MappingSource.ORACLE: list(group_results.items()),
            })
        except SQLAlchemyError as e:
            logger.error(f"Bulk mapping write failed, round abandoned: {e}")
            return 0
        await self.embedding_repo.save_many(group_results, MappingSource.ORACLE)
        await self.embedding_repo.save_many(rule_results, MappingSource.LOCAL)
        timings['persist'] = time.perf_counter() - t
        await _report(on_step_progress, "persist", len(classifications), len(classifications))

        # ── Step 7: Update expense records ───────────────────────────────
        t = time.perf_counter()
        updated = 0
        try:
            async with self.db_manager.session_scope() as session:
                for name, category in classifications.items():
                    updated += await crud.update_expense_category_by_store_name(
                        session, name, category, only_unclassified=True
                    )
        except SQLAlchemyError as e:
            logger.error(f"Expense update failed, round abandoned: {e}")
            return 0
        timings['update'] = time.perf_counter() - t
        await _report(on_step_progress, "update", updated, updated)

        logger.info(
            f"Bulk round: {len(names)} names, {len(rule_results)} by rules, "
            f"{len(groups)} groups, {len(oracle_results)} by oracle, {updated} records updated | "
            + ", ".join(f"{k}={v * 1000:.0f}ms" for k, v in timings.items())
        )
        return updated

    async def classify_all_until_complete(
        self,
        max_rounds: int = 10,
        on_progress: Optional[Callable] = None,
        on_step_progress: Optional[Callable] = None,
    ) -> int:
        """Repeat bulk rounds until done or stalled; see BatchRoundDriver."""
        driver = BatchRoundDriver(self)
        return await driver.run(max_rounds, on_progress, on_step_progress)

    async def get_unclassified_count(self) -> int:
        async with self.db_manager.session_scope() as session:
            return await crud.count_unclassified(session)

    # ── Manual correction and learning ───────────────────────────────────

    async def set_category(
        self,
        name: str,
        category: str,
        scope: CorrectionScope = CorrectionScope.ALL_WITH_NAME,
        expense_id: Optional[int] = None,
    ) -> int:
        """
        Apply a user's category decision and learn from it.

        The mapping write and record update are mandatory and raise on
        failure. Embedding upsert and propagation afterwards are best effort.

        Args:
            name: Store name
            category: Category chosen by the user
            scope: One record (``expense_id``) or every record with this name
            expense_id: Record to update when scope is SINGLE_RECORD

        Returns:
            Number of expense records updated

        Raises:
            ValueError: If scope is SINGLE_RECORD without ``expense_id``
        """
        if scope is CorrectionScope.SINGLE_RECORD and expense_id is None:
            raise ValueError("expense_id is required for a single-record correction")

        async with self.db_manager.session_scope() as session:
            await crud.upsert_mapping(session, name, category, MappingSource.USER)
            if scope is CorrectionScope.SINGLE_RECORD:
                updated = int(await crud.update_expense_category_by_id(session, expense_id, category))
            else:
                updated = await crud.update_expense_category_by_store_name(session, name, category)

        if self.reference_provider is not None:
            self.reference_provider.invalidate()
        if self._bulk_cache is not None:
            self._bulk_cache.put(name, category)
        logger.info(f"User set '{name}' -> {category} ({updated} records)")

        try:
            await self.embedding_repo.upsert_category(name, category, MappingSource.USER)
            await self.propagate(name, category, confidence=1.0)
        except Exception as e:
            logger.warning(f"Learning from correction '{name}' -> {category} failed: {e}")
        return updated

    async def propagate(self, name: str, category: str, confidence: float) -> int:
        """
        Spread ``category`` from ``name`` to similar stored names.

        Propagated names also get a ``propagated`` mapping; user mappings are
        never replaced.

        Returns:
            Number of stored names whose category changed
        """
        propagated = await self.embedding_repo.propagate(name, category, confidence)
        if propagated:
            try:
                await self.mapping_store.save_many(
                    [(n, category) for n in propagated], MappingSource.PROPAGATED
                )
            except SQLAlchemyError as e:
                logger.warning(f"Propagated mappings not saved: {e}")
        return len(propagated)

    async def reclassify_low_confidence(self, threshold: Optional[float] = None) -> int:
        """
        Ask the oracle again about embeddings with confidence below ``threshold``.

        Every resolved name gets an ``oracle`` mapping, its embedding category
        and confidence reset to the oracle default, and all its expense
        records updated.

        Returns:
            Number of store names reclassified
        """
        threshold = self.thresholds.reclassify_below if threshold is None else threshold
        candidates = await self.embedding_repo.get_below_confidence(threshold)
        if not candidates:
            return 0

        names = [c.name for c in candidates]
        try:
            results = await self.oracle.classify(names, CLASSIFIABLE_CATEGORIES)
        except Exception as e:
            logger.warning(f"Reclassification oracle call failed: {e}")
            return 0

        confidence = self.embedding_repo.confidence_for(MappingSource.ORACLE)
        reclassified = 0
        for name, category in results.items():
            if not is_classifiable(category):
                continue
            try:
                async with self.db_manager.session_scope() as session:
                    await crud.upsert_mapping(session, name, category, MappingSource.ORACLE)
                    await crud.update_expense_category_by_store_name(session, name, category)
            except SQLAlchemyError as e:
                logger.warning(f"Reclassification of '{name}' not saved: {e}")
                continue
            await self.embedding_repo.update_category(name, category, MappingSource.ORACLE, confidence)
            reclassified += 1

        logger.info(f"Reclassified {reclassified}/{len(candidates)} low-confidence names (< {threshold})")
        return reclassified

    # ── Maintenance and statistics ───────────────────────────────────────

    def has_oracle(self) -> bool:
        return bool(getattr(self.oracle, "enabled", False))

    async def get_vector_cache_count(self) -> int:
        return await self.index.count()

    async def get_classification_stats(self) -> Dict[str, object]:
        """Mapping counts by source, embedding count and unclassified record count."""
        return {
            "mappings_by_source": await self.mapping_store.count_by_source(),
            "embeddings": await self.embedding_repo.count(),
            "unclassified_records": await self.get_unclassified_count(),
        }

    async def reset_learning_data(self) -> None:
        """Delete every mapping and embedding. Expense records are kept."""
        deleted_mappings = await self.mapping_store.delete_all()
        deleted_embeddings = await self.embedding_repo.delete_all()
        if self.reference_provider is not None:
            self.reference_provider.invalidate()
        logger.warning(
            f"Learning data reset: {deleted_mappings} mappings, {deleted_embeddings} embeddings deleted"
        )
