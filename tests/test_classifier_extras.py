"""
Tests for classifier statistics, reset and wiring.
"""

from spendcat.database import crud
from spendcat.database.models import MappingSource
from spendcat.matching import build_classifier

from tests.fixtures.fakes import FakeOracle, unit


async def test_stats(classifier, db):
    await classifier.mapping_store.save("SuperMart", "Shopping", MappingSource.LOCAL)
    await classifier.mapping_store.save("Harbor Books", "Culture", MappingSource.USER)
    await classifier.embedding_repo.save("Harbor Books", "Culture", MappingSource.USER, vector=unit(0))
    async with db.session_scope() as session:
        await crud.insert_expense(session, store_name="Mystery Ltd", amount=100)

    stats = await classifier.get_classification_stats()

    assert stats == {
        "mappings_by_source": {"local": 1, "user": 1},
        "embeddings": 1,
        "unclassified_records": 1,
    }
    assert await classifier.get_vector_cache_count() == 1


async def test_reset_learning_data(classifier, db):
    await classifier.mapping_store.save("SuperMart", "Shopping", MappingSource.LOCAL)
    await classifier.embedding_repo.save("SuperMart", "Shopping", MappingSource.LOCAL, vector=unit(0))
    async with db.session_scope() as session:
        await crud.insert_expense(session, store_name="SuperMart", amount=100, category="Shopping")
    assert await classifier.get_vector_cache_count() == 1

    await classifier.reset_learning_data()

    assert await classifier.mapping_store.get_all() == {}
    assert await classifier.get_vector_cache_count() == 0
    assert await classifier.get_unclassified_count() == 0


async def test_has_oracle(db, config_manager, embedding_client):
    enabled = build_classifier(db, config_manager, embedding_client=embedding_client, oracle=FakeOracle())
    disabled = build_classifier(
        db, config_manager, embedding_client=embedding_client, oracle=FakeOracle(enabled=False)
    )
    assert enabled.has_oracle()
    assert not disabled.has_oracle()


async def test_build_uses_configured_thresholds(db, config_manager, embedding_client, oracle):
    config_manager.update_threshold('group', 0.80)

    classifier = build_classifier(db, config_manager, embedding_client=embedding_client, oracle=oracle)

    assert classifier.thresholds.group == 0.80
    assert classifier.grouper.similarity_threshold == 0.80
    assert classifier.embedding_repo.confidence_for(MappingSource.ORACLE) == 0.8
