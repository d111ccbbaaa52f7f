"""
Similarity and confidence gates for category decisions.

A SimilarityProfile bundles the thresholds of one use case; the policies
answer yes/no questions against it. Store-name lookups and category
propagation share the same profile values but the propagation policy adds
a confidence floor, so a low-trust classification never spreads to
neighbouring store names.
"""

from dataclasses import dataclass

from spendcat.matching.types import SimilarityThresholds


@dataclass(frozen=True)
class SimilarityProfile:
    """Thresholds for one similarity use case. A zero disables that gate."""
    auto_apply: float
    propagate: float = 0.0
    group: float = 0.0

    def __post_init__(self):
        for name in ("auto_apply", "propagate", "group"):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                raise ValueError(f"{name} must be between 0 and 1, got {value}")


class SimilarityPolicy:
    """Threshold checks against a SimilarityProfile."""

    def __init__(self, profile: SimilarityProfile):
        self.profile = profile

    def should_auto_apply(self, similarity: float) -> bool:
        return similarity >= self.profile.auto_apply

    def should_propagate(self, similarity: float) -> bool:
        return self.profile.propagate > 0.0 and similarity >= self.profile.propagate

    def should_group(self, similarity: float) -> bool:
        return self.profile.group > 0.0 and similarity >= self.profile.group


class PropagationPolicy(SimilarityPolicy):
    """
    Store-name policy with a confidence floor for propagation.

    Args:
        thresholds: Shared classifier thresholds (defaults 0.92 / 0.90 / 0.88)
    """

    def __init__(self, thresholds: SimilarityThresholds = None):
        thresholds = thresholds or SimilarityThresholds()
        super().__init__(SimilarityProfile(
            auto_apply=thresholds.auto_apply,
            propagate=thresholds.propagate,
            group=thresholds.group,
        ))
        self.min_confidence = thresholds.min_propagation_confidence

    def is_trusted(self, confidence: float) -> bool:
        """Whether a classification is trusted enough to spread at all."""
        return confidence >= self.min_confidence

    def should_propagate_with_confidence(self, similarity: float, confidence: float) -> bool:
        return self.should_propagate(similarity) and self.is_trusted(confidence)
