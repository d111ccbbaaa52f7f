"""
Shared error types and retry logic for external service clients.
"""
import asyncio
import logging
from functools import wraps
from typing import Callable

logger = logging.getLogger(__name__)


class ClientError(Exception):
    """Base exception for external service errors."""

    pass


class EmbeddingFailure(ClientError):
    """Raised when the embedding model cannot produce a vector."""

    pass


class OracleBatchFailure(ClientError):
    """Raised when one oracle request (a chunk of names) fails."""

    pass


class RateLimitExceeded(OracleBatchFailure):
    """Raised when the oracle rejects a request with a rate limit response."""

    pass


def exponential_backoff_retry(
    max_retries: int = 2, base_delay: float = 2.0, max_delay: float = 30.0
) -> Callable:
    """
    Decorator for exponential backoff retry of async calls.

    Only ``RateLimitExceeded`` is retried; any other error surfaces at once.

    Args:
        max_retries: Maximum number of retry attempts
        base_delay: Initial delay in seconds
        max_delay: Maximum delay between retries

    Returns:
        Decorated coroutine function with retry logic
    """

    def decorator(func: Callable) -> Callable:
        @wraps(func)
        async def wrapper(*args, **kwargs):
            for attempt in range(max_retries + 1):
                try:
                    return await func(*args, **kwargs)
                except RateLimitExceeded as e:
                    if attempt == max_retries:
                        logger.error(f"Max retries ({max_retries}) exceeded: {e}")
                        raise

                    delay = min(base_delay * (2**attempt), max_delay)
                    logger.warning(
                        f"Attempt {attempt + 1} rate limited: {e}. Retrying in {delay:.1f}s..."
                    )
                    await asyncio.sleep(delay)

        return wrapper

    return decorator
