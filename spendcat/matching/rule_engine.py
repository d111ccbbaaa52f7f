"""
Keyword rule engine.

Deterministic, zero-cost classification by case-insensitive substring
containment. Two ordered tables are used:
- keyword rules: Tier 2 of the single-name cascade, checked against the
  store name together with the surrounding message text
- pre-classify rules: bulk pre-filter for names an oracle would waste a
  call on (known subscription brands, insurers, payment gateways, notice noise)

Within a table the first rule with a matching pattern wins.
"""

import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Tuple

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class KeywordRule:
    """An ordered (patterns -> category) rule with patterns pre-lowercased."""
    category: str
    patterns: Tuple[str, ...]

    def matches(self, text_lower: str) -> Optional[str]:
        """Return the first pattern contained in ``text_lower``, if any."""
        for pattern in self.patterns:
            if pattern in text_lower:
                return pattern
        return None


def compile_rules(table: Iterable[Dict]) -> List[KeywordRule]:
    """Turn config entries ``{category, patterns}`` into KeywordRule objects."""
    rules = []
    for entry in table:
        patterns = tuple(p.lower() for p in entry['patterns'] if p)
        if patterns:
            rules.append(KeywordRule(category=entry['category'], patterns=patterns))
    return rules


class RuleEngine:
    """
    Matches store names against ordered keyword tables.

    Rule tables are compiled once at construction; lookups only lowercase the
    input text.
    """

    def __init__(
        self,
        keyword_rules: Optional[Iterable[Dict]] = None,
        pre_classify_rules: Optional[Iterable[Dict]] = None,
    ):
        """
        Args:
            keyword_rules: Tier 2 table, list of ``{category, patterns}``
            pre_classify_rules: Bulk pre-filter table, same shape
        """
        self.keyword_rules = compile_rules(keyword_rules or [])
        self.pre_classify_rules = compile_rules(pre_classify_rules or [])
        self.stats = {
            'infer_hits': 0,
            'infer_misses': 0,
            'pre_classified': 0,
        }

    @classmethod
    def from_config(cls, config_manager) -> "RuleEngine":
        return cls(
            keyword_rules=config_manager.get_rules('keyword_rules'),
            pre_classify_rules=config_manager.get_rules('pre_classify_rules'),
        )

    @staticmethod
    def _first_match(rules: List[KeywordRule], text: str) -> Optional[str]:
        text_lower = text.lower()
        for rule in rules:
            pattern = rule.matches(text_lower)
            if pattern is not None:
                logger.debug(f"Rule hit: '{pattern}' -> {rule.category}")
                return rule.category
        return None

    def infer(self, name: str, context: str = "") -> Optional[str]:
        """
        Tier 2 classification over the store name plus context text.

        Args:
            name: Store name
            context: Surrounding message text (may be empty)

        Returns:
            Category of the first matching rule, or None
        """
        text = f"{name} {context}" if context else name
        category = self._first_match(self.keyword_rules, text)
        if category is None:
            self.stats['infer_misses'] += 1
        else:
            self.stats['infer_hits'] += 1
        return category

    def pre_classify(self, names: Iterable[str]) -> Tuple[Dict[str, str], List[str]]:
        """
        Split names into rule-resolved and remaining.

        Args:
            names: Store names in priority order

        Returns:
            (``{name: category}`` for matched names, unmatched names in input order)
        """
        matched: Dict[str, str] = {}
        remaining: List[str] = []
        for name in names:
            category = self._first_match(self.pre_classify_rules, name)
            if category is None:
                remaining.append(name)
            else:
                matched[name] = category
        self.stats['pre_classified'] += len(matched)
        return matched, remaining
