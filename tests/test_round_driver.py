"""
Tests for repeated bulk rounds.
"""

import logging

from spendcat.database import crud
from spendcat.learning.round_driver import BatchRoundDriver


class ScriptedClassifier:
    """Returns scripted unclassified counts and per-round update counts."""

    def __init__(self, counts, updates):
        self.counts = list(counts)
        self.updates = list(updates)
        self.rounds = 0

    async def get_unclassified_count(self):
        return self.counts.pop(0)

    async def classify_unclassified(self, on_step_progress=None):
        self.rounds += 1
        return self.updates.pop(0)


async def test_runs_until_nothing_left():
    classifier = ScriptedClassifier(counts=[10, 4, 4, 0, 0], updates=[6, 4])
    progress = []

    total = await BatchRoundDriver(classifier).run(
        max_rounds=10, on_progress=lambda *args: progress.append(args)
    )

    assert total == 10
    assert classifier.rounds == 2
    assert progress == [(1, 6, 4), (2, 4, 0)]


async def test_nothing_to_do():
    classifier = ScriptedClassifier(counts=[0], updates=[])
    assert await BatchRoundDriver(classifier).run() == 0
    assert classifier.rounds == 0


async def test_stops_when_round_updates_nothing():
    classifier = ScriptedClassifier(counts=[10, 10], updates=[0])
    assert await BatchRoundDriver(classifier).run(max_rounds=10) == 0
    assert classifier.rounds == 1


async def test_stops_when_backlog_does_not_shrink():
    classifier = ScriptedClassifier(counts=[10, 12], updates=[3])
    assert await BatchRoundDriver(classifier).run(max_rounds=10) == 3
    assert classifier.rounds == 1


async def test_respects_max_rounds(caplog):
    classifier = ScriptedClassifier(counts=[10, 9, 9, 8], updates=[1, 1])
    with caplog.at_level(logging.WARNING, logger="spendcat.learning.round_driver"):
        assert await BatchRoundDriver(classifier).run(max_rounds=2) == 2
    assert classifier.rounds == 2
    assert "8 records still unclassified" in caplog.text


async def test_zero_max_rounds_runs_nothing(caplog):
    classifier = ScriptedClassifier(counts=[10], updates=[])
    with caplog.at_level(logging.WARNING, logger="spendcat.learning.round_driver"):
        assert await BatchRoundDriver(classifier).run(max_rounds=0) == 0
    assert classifier.rounds == 0
    assert "max_rounds" not in caplog.text


async def test_last_round_draining_backlog_is_not_a_warning(caplog):
    classifier = ScriptedClassifier(counts=[4, 2, 2, 0], updates=[2, 2])
    with caplog.at_level(logging.WARNING, logger="spendcat.learning.round_driver"):
        assert await BatchRoundDriver(classifier).run(max_rounds=2) == 4
    assert "max_rounds" not in caplog.text


async def test_async_progress_callback():
    classifier = ScriptedClassifier(counts=[3, 0, 0], updates=[3])
    seen = []

    async def on_progress(round_number, updated, remaining):
        seen.append(remaining)

    await BatchRoundDriver(classifier).run(on_progress=on_progress)
    assert seen == [0]


async def test_classifier_converges(classifier, db, oracle):
    async with db.session_scope() as session:
        for name in ("Deli One", "Deli Two", "Mystery Ltd"):
            await crud.insert_expense(session, store_name=name, amount=100)
    oracle.answers.update({"Deli One": "Food", "Deli Two": "Food"})

    total = await classifier.classify_all_until_complete(max_rounds=5)

    assert total == 2
    assert await classifier.get_unclassified_count() == 1
    # second round resolves nothing and stops the loop
    assert len(oracle.calls) == 2
