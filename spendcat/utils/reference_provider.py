"""
Category reference examples for oracle prompts.

Builds a per-category list of known store names from the mapping store,
preferring names the user categorised by hand, and renders it as text the
oracle client appends to its prompt.
"""

import logging
from typing import Dict, List, Optional

from spendcat.database.models import MappingSource

logger = logging.getLogger(__name__)

MAX_EXAMPLES_PER_CATEGORY = 5


class CategoryReferenceProvider:
    """
    Cached category -> example store names map.

    Call ``invalidate()`` whenever mappings change in a way the oracle should
    learn from (manual corrections).
    """

    def __init__(self, mapping_store, max_examples_per_category: int = MAX_EXAMPLES_PER_CATEGORY):
        self.mapping_store = mapping_store
        self.max_examples = max_examples_per_category
        self._reference_map: Optional[Dict[str, List[str]]] = None
        self._reference_text: Optional[str] = None

    def invalidate(self) -> None:
        self._reference_map = None
        self._reference_text = None

    async def get_reference_map(self) -> Dict[str, List[str]]:
        """
        Category -> up to ``max_examples`` store names, user mappings first.
        """
        if self._reference_map is not None:
            return self._reference_map

        records = await self.mapping_store.get_all_records()
        reference: Dict[str, List[str]] = {}
        for name, category, source in records:
            if source == MappingSource.USER:
                reference.setdefault(category, []).append(name)
        for name, category, source in records:
            if source != MappingSource.USER:
                examples = reference.setdefault(category, [])
                if len(examples) < self.max_examples:
                    examples.append(name)

        self._reference_map = {c: names[:self.max_examples] for c, names in reference.items()}
        logger.debug(
            f"Reference map built: {len(self._reference_map)} categories, "
            f"{sum(len(v) for v in self._reference_map.values())} stores"
        )
        return self._reference_map

    async def get_reference_text(self) -> str:
        """Prompt-ready ``- Category: store, store`` lines, or "" if empty."""
        if self._reference_text is not None:
            return self._reference_text
        reference = await self.get_reference_map()
        self._reference_text = "\n".join(
            f"- {category}: {', '.join(names)}"
            for category, names in reference.items() if names
        )
        return self._reference_text
