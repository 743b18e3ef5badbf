"""Batch categorization: Claude AI per chunk, keyword rules as fallback.

Chunks are processed sequentially. A chunk either comes back fully valid
from Claude or falls back to the keyword rules as a whole; one bad chunk
never affects its neighbours. Once the overall time budget is spent the
remaining chunks skip the AI call entirely.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field

from ledgerdrop.categorize.claude_ai import (
    AiConfig,
    CategorizationInput,
    CategorizationServiceError,
    ClaudeFn,
    categorize_chunk,
)
from ledgerdrop.categorize.keyword_rules import (
    UNCATEGORIZED,
    KeywordRule,
    match_keywords,
    normalize_merchant,
)

logger = logging.getLogger(__name__)

METHOD_CLAUDE = "claude_ai"
METHOD_KEYWORD = "keyword"
METHOD_KEYWORD_UNCATEGORIZED = "keyword_uncategorized"

CHUNK_OK = "ok"
CHUNK_FALLBACK = "fallback"


@dataclass
class CategorizationResult:
    """Suggestion for one transaction. Advisory until a human reviews it."""
    index: int
    category_key: str
    merchant_normalized: str
    confidence: float
    method: str


@dataclass
class ChunkReport:
    chunk_index: int
    status: str  # CHUNK_OK or CHUNK_FALLBACK
    transaction_count: int
    error_message: str | None = None
    raw_response: str | None = None


@dataclass
class CategorizationOutcome:
    results: list[CategorizationResult] = field(default_factory=list)
    chunks: list[ChunkReport] = field(default_factory=list)

    @property
    def fallback_count(self) -> int:
        return sum(1 for r in self.results if r.method != METHOD_CLAUDE)

    @property
    def uncategorized_count(self) -> int:
        return sum(1 for r in self.results if r.category_key == UNCATEGORIZED)


class Categorizer:
    """Assign category, merchant and confidence to a batch of transactions.

    Args:
        vocabulary: Allowed category keys.
        keyword_rules: Ordered fallback rules.
        claude_fn: Optional callable (system: str, prompt: str) -> str. If
            None every chunk uses the keyword fallback.
        ai_config: Chunk size, time budget and model metadata.
        clock: Monotonic clock, injectable for tests.
    """

    def __init__(
        self,
        vocabulary: list[str],
        keyword_rules: list[KeywordRule],
        claude_fn: ClaudeFn | None = None,
        ai_config: AiConfig | None = None,
        clock=time.monotonic,
    ):
        self.vocabulary = list(vocabulary)
        self.keyword_rules = keyword_rules
        self.claude_fn = claude_fn
        self.ai_config = ai_config or AiConfig()
        self._clock = clock

    def categorize(self, items: list[CategorizationInput]) -> CategorizationOutcome:
        outcome = CategorizationOutcome()
        if not items:
            return outcome

        size = max(1, self.ai_config.chunk_size)
        chunks = [items[i:i + size] for i in range(0, len(items), size)]
        deadline = self._clock() + self.ai_config.total_timeout_seconds

        for chunk_index, chunk in enumerate(chunks):
            results, report = self._categorize_chunk(chunk_index, chunk, deadline)
            outcome.results.extend(results)
            outcome.chunks.append(report)

        outcome.results.sort(key=lambda r: r.index)
        logger.info(
            "Categorized %d transaction(s) in %d chunk(s), %d via keyword fallback",
            len(outcome.results), len(chunks), outcome.fallback_count,
        )
        return outcome

    def _categorize_chunk(
        self,
        chunk_index: int,
        chunk: list[CategorizationInput],
        deadline: float,
    ) -> tuple[list[CategorizationResult], ChunkReport]:
        if self.claude_fn is None:
            return self._fallback(chunk), ChunkReport(
                chunk_index, CHUNK_FALLBACK, len(chunk), "AI categorization not configured",
            )

        if self._clock() >= deadline:
            logger.warning("AI time budget exhausted; chunk %d uses keyword rules", chunk_index)
            return self._fallback(chunk), ChunkReport(
                chunk_index, CHUNK_FALLBACK, len(chunk), "AI time budget exhausted",
            )

        try:
            suggestions, raw = categorize_chunk(chunk, self.vocabulary, self.claude_fn)
        except CategorizationServiceError as e:
            logger.warning("Chunk %d failed AI categorization: %s", chunk_index, e)
            return self._fallback(chunk), ChunkReport(
                chunk_index, CHUNK_FALLBACK, len(chunk), str(e),
            )

        results = [
            CategorizationResult(
                index=s.index,
                category_key=s.category_key,
                merchant_normalized=s.merchant_normalized or normalize_merchant(item.description),
                confidence=s.confidence,
                method=METHOD_CLAUDE,
            )
            for s, item in zip(suggestions, chunk)
        ]
        return results, ChunkReport(chunk_index, CHUNK_OK, len(chunk), raw_response=raw)

    def _fallback(self, chunk: list[CategorizationInput]) -> list[CategorizationResult]:
        results = []
        for item in chunk:
            match = match_keywords(item.description, self.keyword_rules)
            results.append(CategorizationResult(
                index=item.index,
                category_key=match.category_key,
                merchant_normalized=normalize_merchant(item.description),
                confidence=match.confidence,
                method=METHOD_KEYWORD if match.keyword else METHOD_KEYWORD_UNCATEGORIZED,
            ))
        return results
