"""
Type definitions for the spending category classifier.

Defines the category catalogue, tier enums, threshold configuration and
the result structures shared by all matching and learning modules.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, List, Dict, Any

from spendcat.database.models import MappingSource, UNCLASSIFIED


class SpendingCategory(Enum):
    """Fixed catalogue of spending categories."""
    FOOD = "Food"
    CAFE = "Cafe"
    DRINKING = "Drinking"
    TRANSPORT = "Transport"
    SHOPPING = "Shopping"
    SUBSCRIPTION = "Subscription"
    HEALTH = "Health"
    FITNESS = "Fitness"
    CULTURE = "Culture"
    EDUCATION = "Education"
    HOUSING = "Housing"
    LIVING = "Living"
    EVENTS = "Events"
    DELIVERY = "Delivery"
    INSURANCE = "Insurance"
    ETC = "Etc"
    UNCLASSIFIED = UNCLASSIFIED


# Categories an automated classifier may assign (the sentinel excluded)
CLASSIFIABLE_CATEGORIES: List[str] = [
    c.value for c in SpendingCategory if c is not SpendingCategory.UNCLASSIFIED
]


def is_classifiable(category: Optional[str]) -> bool:
    """True if ``category`` is a real catalogue category (not the sentinel)."""
    return category in CLASSIFIABLE_CATEGORIES


class ClassificationTier(Enum):
    """Which tier of the cascade produced a category."""
    EXACT = "exact"
    PARTIAL = "partial"
    VECTOR_BEST = "vector_best"
    VECTOR_GROUP = "vector_group"
    RULE = "rule"
    BULK_CACHE = "bulk_cache"
    UNRESOLVED = "unresolved"


@dataclass
class SimilarityThresholds:
    """
    Similarity cut-offs used across the classifier.

    Ordering ``auto_apply >= propagate >= group`` is enforced so a
    single-neighbour decision is always at least as strict as a vote.
    """
    auto_apply: float = 0.92
    propagate: float = 0.90
    group: float = 0.88
    min_propagation_confidence: float = 0.6
    reclassify_below: float = 0.95

    def __post_init__(self):
        """Validate ranges and ordering."""
        for name in ("auto_apply", "propagate", "group",
                     "min_propagation_confidence", "reclassify_below"):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                raise ValueError(f"Threshold '{name}' must be between 0 and 1, got {value}")
        if not self.auto_apply >= self.propagate >= self.group:
            raise ValueError(
                "Thresholds must satisfy auto_apply >= propagate >= group, got "
                f"{self.auto_apply} / {self.propagate} / {self.group}"
            )

    @classmethod
    def from_dict(cls, values: Dict[str, Any]) -> "SimilarityThresholds":
        known = {k: float(v) for k, v in values.items() if k in cls.__dataclass_fields__}
        return cls(**known)


@dataclass
class EmbeddingConfig:
    """Configuration for the sentence embedding model."""
    model_name: str = "all-MiniLM-L6-v2"
    embedding_dim: int = 384
    batch_size: int = 100
    max_concurrency: int = 10
    batch_delay_seconds: float = 0.2


@dataclass
class OracleConfig:
    """Configuration for the batch classification oracle."""
    model: str = "claude-sonnet-4-20250514"
    batch_size: int = 50
    max_concurrency: int = 5
    batch_delay_seconds: float = 0.5
    max_retries: int = 2
    retry_base_delay: float = 2.0
    max_tokens: int = 4000


@dataclass
class SimilarityMatch:
    """
    One stored embedding scored against a query vector.

    Attributes:
        record_id: StoreEmbedding primary key
        name: Stored store name
        category: Stored category
        similarity: Cosine similarity to the query in [-1, 1]
        source: Provenance of the stored category
        confidence: Stored confidence
    """
    record_id: int
    name: str
    category: str
    similarity: float
    source: MappingSource
    confidence: float


@dataclass
class StoreGroup:
    """A representative store name plus the names that cluster with it."""
    representative: str
    members: List[str] = field(default_factory=list)

    @property
    def size(self) -> int:
        return 1 + len(self.members)

    @property
    def names(self) -> List[str]:
        return [self.representative, *self.members]


@dataclass
class ClassificationResult:
    """
    Outcome of a single-name classification.

    Attributes:
        name: Store name that was classified
        category: Chosen category, or the unclassified sentinel
        tier: Tier that produced the category
        similarity: Best (or averaged) similarity for vector tiers
        matched_name: Stored name that decided the result, when there is one
    """
    name: str
    category: str
    tier: ClassificationTier
    similarity: Optional[float] = None
    matched_name: Optional[str] = None

    @property
    def is_classified(self) -> bool:
        return self.category != UNCLASSIFIED

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "name": self.name,
            "category": self.category,
            "tier": self.tier.value,
            "similarity": self.similarity,
            "matched_name": self.matched_name,
        }
