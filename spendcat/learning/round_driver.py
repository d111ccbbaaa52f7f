"""
Repeated bulk classification rounds.

Each round classifies what is currently unclassified. Learned mappings and
embeddings from one round make the next round cheaper, so a few rounds
usually drain the backlog. The driver stops when nothing is left, when a
round updates nothing, or when a round fails to shrink the backlog.
"""

import inspect
import logging
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class BatchRoundDriver:
    """Runs ``classify_unclassified`` rounds on a classifier until convergence."""

    def __init__(self, classifier):
        self.classifier = classifier

    async def run(
        self,
        max_rounds: int = 10,
        on_progress: Optional[Callable] = None,
        on_step_progress: Optional[Callable] = None,
    ) -> int:
        """
        Run bulk rounds.

        Args:
            max_rounds: Upper bound on rounds
            on_progress: Optional callback ``(round_number, updated, remaining)``,
                sync or async
            on_step_progress: Passed through to each round

        Returns:
            Total number of expense records updated across all rounds
        """
        total_updated = 0
        round_number = 0
        remaining = 0

        while round_number < max_rounds:
            before = await self.classifier.get_unclassified_count()
            if before == 0:
                logger.info("Nothing left to classify")
                break

            round_number += 1
            updated = await self.classifier.classify_unclassified(on_step_progress=on_step_progress)
            after = await self.classifier.get_unclassified_count()
            total_updated += updated
            remaining = after
            logger.info(f"Round {round_number}: {updated} updated, {after} remaining")

            if on_progress is not None:
                result = on_progress(round_number, updated, after)
                if inspect.isawaitable(result):
                    await result

            if updated == 0 or after >= before:
                logger.info(f"Stopping after round {round_number}: no progress")
                break
        else:
            if round_number == max_rounds and remaining > 0:
                logger.warning(f"Reached max_rounds={max_rounds} with {remaining} records still unclassified")

        return total_updated
