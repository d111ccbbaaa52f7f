"""
Tests for database CRUD operations.

Tests all CRUD functions for:
- Category mappings
- Store embeddings
- Expense records
"""

import pytest
from sqlalchemy.exc import IntegrityError

from spendcat.database import crud
from spendcat.database.models import MappingSource, UNCLASSIFIED


def _embedding(name, category="Food", source=MappingSource.ORACLE, confidence=0.8, vector=None):
    return {
        "name": name,
        "category": category,
        "vector": vector or [1.0, 0.0, 0.0],
        "source": source,
        "confidence": confidence,
    }


# ============================================================================
# CATEGORY MAPPING TESTS
# ============================================================================

class TestMappingCRUD:

    async def test_upsert_and_get(self, db):
        async with db.session_scope() as session:
            assert await crud.upsert_mapping(session, "Corner Deli", "Food", MappingSource.ORACLE)
        async with db.session_scope() as session:
            mapping = await crud.get_mapping_exact(session, "Corner Deli")
        assert mapping.category == "Food"
        assert mapping.source == MappingSource.ORACLE

    async def test_partial_is_case_sensitive(self, db):
        async with db.session_scope() as session:
            await crud.upsert_mapping(session, "Starbucks", "Cafe", MappingSource.ORACLE)
        async with db.session_scope() as session:
            assert await crud.get_mapping_partial(session, "STARBUCKS Reserve") is None
            assert (await crud.get_mapping_partial(session, "Starbucks Reserve")).name == "Starbucks"

    async def test_partial_tie_goes_to_lowest_id(self, db):
        async with db.session_scope() as session:
            await crud.upsert_mappings(session, [("Deli", "Food"), ("Mart", "Shopping")], MappingSource.LOCAL)
        async with db.session_scope() as session:
            assert (await crud.get_mapping_partial(session, "Mart Deli")).name == "Deli"

    async def test_user_rows_protected_in_batch(self, db):
        async with db.session_scope() as session:
            await crud.upsert_mapping(session, "Harbor Books", "Culture", MappingSource.USER)
            written = await crud.upsert_mappings(
                session, [("Harbor Books", "Shopping"), ("Corner Deli", "Food")], MappingSource.ORACLE
            )
        assert written == 1
        async with db.session_scope() as session:
            assert (await crud.get_mapping_exact(session, "Harbor Books")).category == "Culture"

    async def test_count_by_source(self, db):
        async with db.session_scope() as session:
            await crud.upsert_mappings(session, [("A", "Food"), ("B", "Cafe")], MappingSource.ORACLE)
            await crud.upsert_mapping(session, "C", "Etc", MappingSource.USER)
        async with db.session_scope() as session:
            assert await crud.count_mappings_by_source(session) == {"oracle": 2, "user": 1}


# ============================================================================
# STORE EMBEDDING TESTS
# ============================================================================

class TestEmbeddingCRUD:

    async def test_vector_round_trip(self, db):
        async with db.session_scope() as session:
            await crud.upsert_embeddings(session, [_embedding("A", vector=[0.25, -0.5, 1.0])])
        async with db.session_scope() as session:
            row = await crud.get_embedding_by_name(session, "A")
        assert row.vector == pytest.approx([0.25, -0.5, 1.0])

    async def test_confidence_constraint(self, db):
        with pytest.raises(IntegrityError):
            async with db.session_scope() as session:
                await crud.upsert_embeddings(session, [_embedding("A", confidence=1.5)])

    async def test_increment_match_counts(self, db):
        async with db.session_scope() as session:
            await crud.upsert_embeddings(session, [_embedding("A"), _embedding("B")])
            ids = [e.id for e in await crud.get_all_embeddings(session)]
        async with db.session_scope() as session:
            await crud.increment_match_counts(session, ids)
            await crud.increment_match_counts(session, ids[:1])
        async with db.session_scope() as session:
            rows = await crud.get_all_embeddings(session)
        assert [r.match_count for r in rows] == [2, 1]

    async def test_guarded_update_skips_user_rows(self, db):
        async with db.session_scope() as session:
            await crud.upsert_embeddings(session, [
                _embedding("Mine", "Cafe", MappingSource.USER, 1.0),
                _embedding("Theirs", "Cafe"),
            ])
            rows = {e.name: e.id for e in await crud.get_all_embeddings(session)}
        async with db.session_scope() as session:
            assert not await crud.update_embedding_category_if_not_user(
                session, rows["Mine"], "Food", MappingSource.PROPAGATED
            )
            assert await crud.update_embedding_category_if_not_user(
                session, rows["Theirs"], "Food", MappingSource.PROPAGATED
            )
        async with db.session_scope() as session:
            assert (await crud.get_embedding_by_name(session, "Mine")).category == "Cafe"
            theirs = await crud.get_embedding_by_name(session, "Theirs")
        assert theirs.category == "Food"
        assert theirs.source == MappingSource.PROPAGATED

    async def test_below_confidence_is_strict(self, db):
        async with db.session_scope() as session:
            await crud.upsert_embeddings(session, [
                _embedding("Low", confidence=0.5),
                _embedding("Edge", confidence=0.8),
            ])
        async with db.session_scope() as session:
            rows = await crud.get_embeddings_below_confidence(session, 0.8)
        assert [r.name for r in rows] == ["Low"]

    async def test_update_category_with_confidence(self, db):
        async with db.session_scope() as session:
            await crud.upsert_embeddings(session, [_embedding("A", confidence=0.5)])
            assert await crud.update_embedding_category(session, "A", "Cafe", MappingSource.ORACLE, 0.8) == 1
        async with db.session_scope() as session:
            row = await crud.get_embedding_by_name(session, "A")
        assert (row.category, row.confidence) == ("Cafe", 0.8)

    async def test_count_and_delete(self, db):
        async with db.session_scope() as session:
            await crud.upsert_embeddings(session, [_embedding("A"), _embedding("B")])
        async with db.session_scope() as session:
            assert await crud.count_embeddings(session) == 2
            assert await crud.delete_all_embeddings(session) == 2
            assert await crud.count_embeddings(session) == 0


# ============================================================================
# EXPENSE RECORD TESTS
# ============================================================================

class TestExpenseCRUD:

    @pytest.fixture
    async def expenses(self, db):
        async with db.session_scope() as session:
            for name, amount, category in [
                ("Corner Deli", 500, UNCLASSIFIED),
                ("Corner Deli", 700, UNCLASSIFIED),
                ("Bean Bar", 1200, UNCLASSIFIED),
                ("Alpha Mart", 1200, UNCLASSIFIED),
                ("Harbor Books", 9000, "Culture"),
            ]:
                await crud.insert_expense(session, store_name=name, amount=amount, category=category)

    async def test_insert_defaults(self, db):
        async with db.session_scope() as session:
            record = await crud.insert_expense(session, store_name="Corner Deli", amount=500)
        assert record.id is not None
        assert record.category == UNCLASSIFIED

    async def test_unclassified_totals_ordered(self, db, expenses):
        async with db.session_scope() as session:
            totals = await crud.get_unclassified_name_totals(session)
        assert totals == [("Alpha Mart", 1200), ("Bean Bar", 1200), ("Corner Deli", 1200)]

    async def test_unclassified_totals_limit(self, db, expenses):
        async with db.session_scope() as session:
            totals = await crud.get_unclassified_name_totals(session, limit=1)
        assert totals == [("Alpha Mart", 1200)]

    async def test_count_unclassified(self, db, expenses):
        async with db.session_scope() as session:
            assert await crud.count_unclassified(session) == 4

    async def test_update_by_store_name(self, db, expenses):
        async with db.session_scope() as session:
            assert await crud.update_expense_category_by_store_name(session, "Corner Deli", "Food") == 2
            assert await crud.update_expense_category_by_store_name(
                session, "Harbor Books", "Shopping", only_unclassified=True
            ) == 0

    async def test_update_by_id(self, db):
        async with db.session_scope() as session:
            record = await crud.insert_expense(session, store_name="Corner Deli", amount=500)
        async with db.session_scope() as session:
            assert await crud.update_expense_category_by_id(session, record.id, "Food")
            assert not await crud.update_expense_category_by_id(session, record.id + 100, "Food")
