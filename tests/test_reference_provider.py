"""
Tests for the oracle prompt reference examples.
"""

from spendcat.database.models import MappingSource
from spendcat.matching.mapping_store import MappingStore
from spendcat.utils.reference_provider import CategoryReferenceProvider


async def test_user_mappings_listed_first(db):
    store = MappingStore(db)
    await store.save_many([(f"Deli {i}", "Food") for i in range(6)], MappingSource.ORACLE)
    await store.save("Harbor Grill", "Food", MappingSource.USER)

    provider = CategoryReferenceProvider(store, max_examples_per_category=3)
    reference = await provider.get_reference_map()

    assert reference == {"Food": ["Harbor Grill", "Deli 0", "Deli 1"]}
    assert await provider.get_reference_text() == "- Food: Harbor Grill, Deli 0, Deli 1"


async def test_cached_until_invalidated(db):
    store = MappingStore(db)
    provider = CategoryReferenceProvider(store)
    assert await provider.get_reference_text() == ""

    await store.save("Bean Bar", "Cafe", MappingSource.ORACLE)
    assert await provider.get_reference_text() == ""

    provider.invalidate()
    assert await provider.get_reference_text() == "- Cafe: Bean Bar"
