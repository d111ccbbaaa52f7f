"""
Concurrent batch embedding of store names.
"""

import asyncio
import logging
from typing import Dict, List, Optional, Sequence

logger = logging.getLogger(__name__)


async def embed_names_in_batches(
    client,
    names: Sequence[str],
    batch_size: int = 100,
    semaphore: Optional[asyncio.Semaphore] = None,
    batch_delay_seconds: float = 0.0,
) -> Dict[str, List[float]]:
    """
    Embed many names as concurrent fixed-size batches.

    Each batch holds a permit of ``semaphore`` while it runs and pauses
    ``batch_delay_seconds`` before releasing it. A failed batch or slot is
    left out of the result.

    Returns:
        {name: vector} for every name that was embedded
    """
    if not names:
        return {}
    semaphore = semaphore or asyncio.Semaphore(10)
    batches = [list(names[i:i + batch_size]) for i in range(0, len(names), batch_size)]

    async def run(batch: List[str]) -> Dict[str, List[float]]:
        async with semaphore:
            try:
                vectors = await client.embed_batch(batch)
            except Exception as e:
                logger.warning(f"Embedding batch of {len(batch)} names failed: {e}")
                return {}
            finally:
                if batch_delay_seconds > 0:
                    await asyncio.sleep(batch_delay_seconds)
        return {name: vector for name, vector in zip(batch, vectors) if vector}

    embedded: Dict[str, List[float]] = {}
    for result in await asyncio.gather(*[run(batch) for batch in batches]):
        embedded.update(result)
    return embedded


