"""
Store-name classification package.

Provides the tiered classifier and its building blocks:
- Mapping store and bulk cache (exact and substring lookup)
- Similarity index over learned store embeddings
- Keyword rule engine
- Semantic grouper for bulk oracle rounds

``build_classifier`` wires all of them from a ConfigManager.
"""

import logging
from typing import Optional

from spendcat.matching.types import (
    CLASSIFIABLE_CATEGORIES,
    ClassificationResult,
    ClassificationTier,
    SimilarityThresholds,
    SpendingCategory,
)

_logger = logging.getLogger(__name__)


def build_classifier(
    db_manager,
    config_manager=None,
    embedding_client=None,
    oracle=None,
):
    """
    Build a CategoryClassifier with all collaborators wired.

    Args:
        db_manager: DatabaseManager with tables created
        config_manager: ConfigManager (defaults from config/classifier_config.yaml)
        embedding_client: Object with async ``embed``/``embed_batch``; a
            SentenceTransformerEmbeddingClient is created if None
        oracle: Object with async ``classify(names, categories)``; an
            AnthropicCategoryOracle is created if None

    Returns:
        CategoryClassifier
    """
    from spendcat.database.models import MappingSource
    from spendcat.learning.embedding_store import StoreEmbeddingRepository
    from spendcat.learning.propagation import PropagationPolicy
    from spendcat.matching.classifier import CategoryClassifier
    from spendcat.matching.mapping_store import MappingStore
    from spendcat.matching.rule_engine import RuleEngine
    from spendcat.matching.semantic_grouper import SemanticGrouper
    from spendcat.matching.similarity_index import SimilarityIndex
    from spendcat.utils.config_manager import ConfigManager
    from spendcat.utils.reference_provider import CategoryReferenceProvider

    config_manager = config_manager or ConfigManager.from_default_path()
    thresholds = config_manager.get_thresholds()
    embedding_config = config_manager.get_embedding_config()

    if embedding_client is None:
        from spendcat.clients.embeddings import SentenceTransformerEmbeddingClient
        embedding_client = SentenceTransformerEmbeddingClient(embedding_config)

    mapping_store = MappingStore(db_manager)
    reference_provider = CategoryReferenceProvider(mapping_store)
    if oracle is None:
        from spendcat.clients.oracle import AnthropicCategoryOracle
        oracle = AnthropicCategoryOracle(
            config_manager.get_oracle_config(),
            reference_provider=reference_provider,
        )

    index = SimilarityIndex(db_manager)
    embedding_repo = StoreEmbeddingRepository(
        db_manager,
        embedding_client,
        index,
        policy=PropagationPolicy(thresholds),
        embedding_config=embedding_config,
        confidence_defaults={s: config_manager.get_confidence(s) for s in MappingSource},
    )
    grouper = SemanticGrouper(
        embedding_client,
        similarity_threshold=thresholds.group,
        embedding_config=embedding_config,
    )

    _logger.info(
        f"Classifier built (oracle {'enabled' if getattr(oracle, 'enabled', False) else 'disabled'})"
    )
    return CategoryClassifier(
        db_manager,
        mapping_store,
        index,
        embedding_repo,
        RuleEngine.from_config(config_manager),
        grouper,
        oracle,
        thresholds=thresholds,
        reference_provider=reference_provider,
    )


__all__ = [
    "build_classifier",
    "CLASSIFIABLE_CATEGORIES",
    "ClassificationResult",
    "ClassificationTier",
    "SimilarityThresholds",
    "SpendingCategory",
]
