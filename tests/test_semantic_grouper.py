"""
Tests for semantic grouping of store names.
"""

import pytest

from spendcat.matching.semantic_grouper import SemanticGrouper
from spendcat.matching.types import EmbeddingConfig

from tests.fixtures.fakes import FakeEmbeddingClient, near, unit


@pytest.fixture
def grouper(embedding_client, fast_embedding_config):
    return SemanticGrouper(embedding_client, 0.88, fast_embedding_config)


def test_invalid_threshold():
    with pytest.raises(ValueError):
        SemanticGrouper(FakeEmbeddingClient(), similarity_threshold=1.5)


async def test_branches_share_a_group(grouper, embedding_client):
    embedding_client.set("Blue Bottle Hayes", unit(0))
    embedding_client.set("Blue Bottle Mint", near(0, 0.95, 1))
    embedding_client.set("Burger King", unit(2))
    embedding_client.set("McDonald's", near(2, 0.70, 3))

    groups = await grouper.group(["Blue Bottle Hayes", "Burger King", "Blue Bottle Mint", "McDonald's"])

    assert [g.names for g in groups] == [
        ["Blue Bottle Hayes", "Blue Bottle Mint"],
        ["Burger King"],
        ["McDonald's"],
    ]


async def test_first_name_is_representative(grouper, embedding_client):
    for name in ("A1", "A2", "A3"):
        embedding_client.set(name, unit(0))
    groups = await grouper.group(["A2", "A1", "A3"])
    assert len(groups) == 1
    assert groups[0].representative == "A2"
    assert groups[0].members == ["A1", "A3"]


async def test_membership_is_judged_against_anchor(grouper, embedding_client):
    # B is close to both A and C, but C is not close enough to anchor A
    embedding_client.set("A", unit(0))
    embedding_client.set("B", near(0, 0.90, 1))
    embedding_client.set("C", near(1, 0.90, 2))
    groups = await grouper.group(["A", "B", "C"])
    assert [g.names for g in groups] == [["A", "B"], ["C"]]


async def test_every_name_in_exactly_one_group(grouper):
    names = [f"Store {i}" for i in range(25)]
    groups = await grouper.group(names)
    flattened = [n for g in groups for n in g.names]
    assert sorted(flattened) == sorted(names)


async def test_duplicates_collapsed(grouper):
    groups = await grouper.group(["Deli", "Deli"])
    assert [g.names for g in groups] == [["Deli"]]


async def test_trivial_inputs_skip_embedding(grouper, embedding_client):
    assert await grouper.group([]) == []
    groups = await grouper.group(["Only One"])
    assert [g.representative for g in groups] == ["Only One"]
    assert embedding_client.batch_calls == []


async def test_total_embedding_failure_gives_singletons(grouper, embedding_client):
    embedding_client.fail_all = True
    groups = await grouper.group(["A", "B", "C"])
    assert [g.names for g in groups] == [["A"], ["B"], ["C"]]


async def test_failed_names_become_singletons(grouper, embedding_client):
    embedding_client.set("A", unit(0))
    embedding_client.set("B", unit(0))
    embedding_client.fail_names.add("C")
    groups = await grouper.group(["A", "C", "B"])
    assert [g.names for g in groups] == [["A", "B"], ["C"]]


async def test_batches_respect_batch_size(embedding_client):
    grouper = SemanticGrouper(
        embedding_client, 0.88, EmbeddingConfig(batch_size=10, batch_delay_seconds=0.0)
    )
    await grouper.group([f"Store {i}" for i in range(25)])
    assert sorted(len(b) for b in embedding_client.batch_calls) == [5, 10, 10]
