"""
Mapping store: the exact / partial name -> category cache (Tier 1).

Two layers:
- MappingStore: persistent table access through the database manager
- BulkClassificationCache: in-memory overlay for one bulk ingestion run,
  with a pending buffer that is written back in a single batch
"""

import logging
from collections import defaultdict
from typing import Dict, Iterable, List, Optional, Tuple

from spendcat.database import crud
from spendcat.database.models import MappingSource

logger = logging.getLogger(__name__)

PendingMapping = Tuple[str, str, MappingSource]


class BulkCacheError(RuntimeError):
    """Raised on misuse of the bulk classification cache lifecycle."""
    pass


def _contains_either_way(name: str, stored: str) -> bool:
    if len(name) >= len(stored):
        return stored in name
    return name in stored


class MappingStore:
    """
    Persistent name -> category mappings.

    At most one mapping per exact name. USER mappings are only replaced by
    another USER write.
    """

    def __init__(self, db_manager):
        self.db_manager = db_manager

    async def get_exact(self, name: str) -> Optional[str]:
        async with self.db_manager.session_scope() as session:
            mapping = await crud.get_mapping_exact(session, name)
            return mapping.category if mapping else None

    async def get_partial(self, name: str) -> Optional[Tuple[str, str]]:
        """
        Mapping whose stored name overlaps ``name`` in either direction.

        Returns:
            (stored_name, category) or None
        """
        async with self.db_manager.session_scope() as session:
            mapping = await crud.get_mapping_partial(session, name)
            return (mapping.name, mapping.category) if mapping else None

    async def save(self, name: str, category: str, source: MappingSource) -> bool:
        async with self.db_manager.session_scope() as session:
            return await crud.upsert_mapping(session, name, category, source)

    async def save_many(self, entries: Iterable[Tuple[str, str]], source: MappingSource) -> int:
        """Write a batch of (name, category) pairs in one transaction."""
        entries = list(entries)
        if not entries:
            return 0
        async with self.db_manager.session_scope() as session:
            written = await crud.upsert_mappings(session, entries, source)
        logger.info(f"Saved {written}/{len(entries)} mappings (source={source.value})")
        return written

    async def save_batches(self, batches: Dict[MappingSource, List[Tuple[str, str]]]) -> int:
        """Write several per-source batches in one transaction."""
        written = 0
        async with self.db_manager.session_scope() as session:
            for source, entries in batches.items():
                if entries:
                    written += await crud.upsert_mappings(session, entries, source)
        logger.info(f"Saved {written} mappings in one batch")
        return written

    async def get_all(self) -> Dict[str, str]:
        async with self.db_manager.session_scope() as session:
            return {m.name: m.category for m in await crud.get_all_mappings(session)}

    async def get_all_records(self) -> List[Tuple[str, str, MappingSource]]:
        async with self.db_manager.session_scope() as session:
            return [(m.name, m.category, m.source) for m in await crud.get_all_mappings(session)]

    async def count_by_source(self) -> Dict[str, int]:
        async with self.db_manager.session_scope() as session:
            return await crud.count_mappings_by_source(session)

    async def delete_all(self) -> int:
        async with self.db_manager.session_scope() as session:
            return await crud.delete_all_mappings(session)


class BulkClassificationCache:
    """
    In-memory mapping overlay scoped to one bulk ingestion run.

    Not safe for concurrent writers. Lifecycle: ``load()`` (or construction
    from a dict), ``lookup``/``record`` during the run, ``flush()`` to persist
    pending entries, ``clear()`` to release.
    """

    def __init__(self, mappings: Optional[Dict[str, str]] = None):
        self._cache: Dict[str, str] = dict(mappings or {})
        self.pending: List[PendingMapping] = []
        self.closed = False
        self.stats = {'exact_hits': 0, 'partial_hits': 0, 'misses': 0}

    @classmethod
    async def load(cls, mapping_store: MappingStore) -> "BulkClassificationCache":
        """Build a cache holding every persisted mapping."""
        mappings = await mapping_store.get_all()
        logger.debug(f"Bulk cache initialized with {len(mappings)} mappings")
        return cls(mappings)

    def __len__(self) -> int:
        return len(self._cache)

    def _check_open(self) -> None:
        if self.closed:
            raise BulkCacheError("Bulk classification cache has been cleared")

    def lookup(self, name: str) -> Optional[str]:
        """
        Exact match, then either-direction substring match.

        A substring hit is promoted to an exact entry for later lookups.
        """
        self._check_open()
        category = self._cache.get(name)
        if category is not None:
            self.stats['exact_hits'] += 1
            return category

        if name:
            best_name = None
            for stored in self._cache:
                if _contains_either_way(name, stored):
                    if best_name is None or len(stored) > len(best_name):
                        best_name = stored
            if best_name is not None:
                category = self._cache[best_name]
                self._cache[name] = category
                self.stats['partial_hits'] += 1
                return category

        self.stats['misses'] += 1
        return None

    def put(self, name: str, category: str) -> None:
        """Overwrite the cached category without queueing a write."""
        self._check_open()
        self._cache[name] = category

    def record(self, name: str, category: str, source: MappingSource) -> None:
        """Cache a new classification and queue it for the batch write."""
        self._check_open()
        self._cache[name] = category
        self.pending.append((name, category, source))

    async def flush(self, mapping_store: MappingStore) -> int:
        """
        Persist pending entries in one transaction, one batch per source.

        Entries stay pending if the write fails, so a later flush can retry.

        Returns:
            Number of mappings written
        """
        if not self.pending:
            return 0
        written = await write_pending(mapping_store, self.pending)
        logger.debug(f"Flushed {len(self.pending)} pending mappings")
        self.pending.clear()
        return written

    def clear(self) -> None:
        self._cache.clear()
        self.pending.clear()
        self.closed = True


async def write_pending(mapping_store: MappingStore, pending: Iterable[PendingMapping]) -> int:
    """Write (name, category, source) entries in one transaction, one batch per source."""
    by_source: Dict[MappingSource, List[Tuple[str, str]]] = defaultdict(list)
    for name, category, source in pending:
        by_source[source].append((name, category))
    if not by_source:
        return 0
    return await mapping_store.save_batches(dict(by_source))
