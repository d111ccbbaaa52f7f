"""
External service clients.

- Embedding client (sentence-transformers, run in worker threads)
- Classification oracle (Anthropic Messages API, batched)
"""

from spendcat.clients.base import (
    ClientError,
    EmbeddingFailure,
    OracleBatchFailure,
    RateLimitExceeded,
    exponential_backoff_retry,
)

__all__ = [
    "ClientError",
    "EmbeddingFailure",
    "OracleBatchFailure",
    "RateLimitExceeded",
    "exponential_backoff_retry",
]
