"""
Learning layer: store embeddings, category propagation and bulk rounds.
"""

from spendcat.learning.propagation import PropagationPolicy, SimilarityPolicy, SimilarityProfile
from spendcat.learning.round_driver import BatchRoundDriver

__all__ = [
    "PropagationPolicy",
    "SimilarityPolicy",
    "SimilarityProfile",
    "BatchRoundDriver",
]
