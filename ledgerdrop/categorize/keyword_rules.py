"""Deterministic keyword fallback: maps descriptions to categories.

Rules are an ordered list from config/rules.yaml; the first rule with a
keyword contained in the description (case-insensitive) wins.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass

from ledgerdrop.parsers.base import normalize_description

logger = logging.getLogger(__name__)

UNCATEGORIZED = "uncategorized"
KEYWORD_CONFIDENCE = 0.7
UNCATEGORIZED_CONFIDENCE = 0.3


@dataclass(frozen=True)
class KeywordRule:
    category_key: str
    keywords: tuple[str, ...]


@dataclass
class KeywordMatch:
    """Result of a keyword match."""
    category_key: str
    confidence: float
    keyword: str | None


def build_rules(raw_rules: list[dict]) -> list[KeywordRule]:
    """Turn rules.yaml entries ({category, keywords}) into KeywordRules, keeping order."""
    rules: list[KeywordRule] = []
    for entry in raw_rules:
        category = entry.get("category")
        keywords = tuple(str(k).lower() for k in entry.get("keywords", []) if str(k))
        if not category or not keywords:
            logger.warning("Keyword rule missing category or keywords: %r", entry)
            continue
        rules.append(KeywordRule(category_key=category, keywords=keywords))
    return rules


def match_keywords(description: str, rules: list[KeywordRule]) -> KeywordMatch:
    """First matching rule wins; no match yields 'uncategorized' at 0.3."""
    desc_lower = (description or "").lower()
    for rule in rules:
        for keyword in rule.keywords:
            if keyword in desc_lower:
                return KeywordMatch(rule.category_key, KEYWORD_CONFIDENCE, keyword)
    return KeywordMatch(UNCATEGORIZED, UNCATEGORIZED_CONFIDENCE, None)


def normalize_merchant(description: str) -> str:
    """Best-effort merchant label from a raw description.

    Takes the first " | "-separated segment, drops reference numbers and
    card decorators, and title-cases the rest: "REWE SAGT DANKE 4711" ->
    "Rewe Sagt Danke".
    """
    first = re.split(r"\s+\|\s+|//", description or "", maxsplit=1)[0]
    cleaned = normalize_description(first)
    cleaned = re.sub(r"[^\w&.' -]", " ", cleaned)
    cleaned = re.sub(r"\s{2,}", " ", cleaned).strip(" .-")
    return cleaned.title() if cleaned else ""
