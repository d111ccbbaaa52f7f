"""
Batch classification oracle backed by the Anthropic Messages API.

Features:
- Names are sent in fixed-size chunks (50 per request by default)
- Bounded concurrency with a pause between requests on each permit
- Exponential backoff on rate limits, bounded retries
- A failed chunk is skipped; the other chunks still return
- Response is a plain {name: category} map; absent names are unresolved
"""
import asyncio
import json
import logging
import os
from typing import Dict, List, Optional, Sequence

import anthropic

from spendcat.clients.base import (
    OracleBatchFailure,
    RateLimitExceeded,
    exponential_backoff_retry,
)
from spendcat.matching.types import OracleConfig

logger = logging.getLogger(__name__)


def build_prompt(names: Sequence[str], categories: Sequence[str], reference_text: str = "") -> str:
    """Build the classification prompt for one chunk of store names."""
    name_lines = "\n".join(f"- {name}" for name in names)
    reference_block = f"\nKNOWN EXAMPLES:\n{reference_text}\n" if reference_text else ""
    return f"""Classify each store name into exactly one spending category.

CATEGORIES:
{", ".join(categories)}
{reference_block}
STORE NAMES:
{name_lines}

Respond with ONLY a JSON object mapping each store name to its category, e.g.
{{"Store A": "Food", "Store B": "Transport"}}

Rules:
- Use ONLY the categories listed above, spelled exactly
- Omit a store name if you cannot tell what it is
- No markdown, no explanation"""


def parse_oracle_response(
    response_text: str,
    names: Sequence[str],
    categories: Sequence[str],
) -> Dict[str, str]:
    """
    Parse the model reply into a {name: category} map.

    Entries for names that were not asked about, or with categories outside
    ``categories``, are dropped.

    Raises:
        OracleBatchFailure: If no JSON object can be decoded
    """
    text = response_text.strip()
    start_idx = text.find("{")
    end_idx = text.rfind("}")
    if start_idx == -1 or end_idx == -1 or end_idx < start_idx:
        raise OracleBatchFailure("No JSON object found in oracle response")

    try:
        payload = json.loads(text[start_idx:end_idx + 1])
    except json.JSONDecodeError as e:
        raise OracleBatchFailure(f"Oracle response is not valid JSON: {e}") from e
    if not isinstance(payload, dict):
        raise OracleBatchFailure(f"Expected JSON object, got {type(payload).__name__}")

    asked = set(names)
    allowed = set(categories)
    results: Dict[str, str] = {}
    for name, category in payload.items():
        if name not in asked or not isinstance(category, str):
            continue
        category = category.strip()
        if category in allowed:
            results[name] = category
        else:
            logger.debug(f"Dropping '{name}': category '{category}' not in catalogue")
    return results


class AnthropicCategoryOracle:
    """
    Classifies store names in batches using Claude.

    Without an API key the oracle is disabled and every call returns an
    empty map, leaving names unclassified.
    """

    def __init__(
        self,
        config: Optional[OracleConfig] = None,
        api_key: Optional[str] = None,
        reference_provider=None,
        client: Optional[anthropic.AsyncAnthropic] = None,
    ):
        """
        Args:
            config: Batching and retry settings
            api_key: Anthropic API key (or read from ANTHROPIC_API_KEY env var)
            reference_provider: Optional CategoryReferenceProvider whose examples
                are added to every prompt
            client: Pre-built AsyncAnthropic client (mainly for tests)
        """
        self.config = config or OracleConfig()
        self.reference_provider = reference_provider
        self.api_key = api_key or os.environ.get("ANTHROPIC_API_KEY")

        if client is not None:
            self.client = client
        elif self.api_key:
            self.client = anthropic.AsyncAnthropic(api_key=self.api_key)
        else:
            logger.warning("No ANTHROPIC_API_KEY found. Oracle classification disabled.")
            self.client = None
        self.enabled = self.client is not None

        self._semaphore = asyncio.Semaphore(self.config.max_concurrency)
        self._request_with_retry = exponential_backoff_retry(
            max_retries=self.config.max_retries,
            base_delay=self.config.retry_base_delay,
        )(self._request_chunk)

    async def classify(self, names: List[str], categories: List[str]) -> Dict[str, str]:
        """
        Classify store names into one of ``categories``.

        Args:
            names: Store names (duplicates are collapsed)
            categories: Allowed category values

        Returns:
            {name: category} for every name the model resolved
        """
        if not self.enabled or not names:
            return {}

        unique_names = list(dict.fromkeys(n for n in names if n))
        size = self.config.batch_size
        chunks = [unique_names[i:i + size] for i in range(0, len(unique_names), size)]

        reference_text = ""
        if self.reference_provider is not None:
            reference_text = await self.reference_provider.get_reference_text()

        chunk_results = await asyncio.gather(*[
            self._classify_chunk(i + 1, chunk, categories, reference_text)
            for i, chunk in enumerate(chunks)
        ])

        merged: Dict[str, str] = {}
        for result in chunk_results:
            merged.update(result)
        logger.info(
            f"Oracle resolved {len(merged)}/{len(unique_names)} names in {len(chunks)} chunks"
        )
        return merged

    async def _classify_chunk(
        self,
        chunk_num: int,
        names: List[str],
        categories: List[str],
        reference_text: str,
    ) -> Dict[str, str]:
        async with self._semaphore:
            try:
                return await self._request_with_retry(names, categories, reference_text)
            except OracleBatchFailure as e:
                logger.warning(f"Oracle chunk {chunk_num} ({len(names)} names) skipped: {e}")
                return {}
            finally:
                # spacing between requests that share a permit
                await asyncio.sleep(self.config.batch_delay_seconds)

    async def _request_chunk(
        self,
        names: List[str],
        categories: List[str],
        reference_text: str,
    ) -> Dict[str, str]:
        prompt = build_prompt(names, categories, reference_text)
        try:
            message = await self.client.messages.create(
                model=self.config.model,
                max_tokens=self.config.max_tokens,
                temperature=0.0,
                messages=[{"role": "user", "content": prompt}],
            )
        except anthropic.RateLimitError as e:
            raise RateLimitExceeded(str(e)) from e
        except anthropic.APIError as e:
            raise OracleBatchFailure(str(e)) from e

        response_text = "".join(
            block.text for block in message.content if getattr(block, "type", "") == "text"
        )
        return parse_oracle_response(response_text, names, categories)
