"""Tests for the chunked categorization pipeline with keyword fallback."""

import json
import re
from unittest.mock import MagicMock

from ledgerdrop.categorize.claude_ai import AiConfig, CategorizationInput
from ledgerdrop.categorize.keyword_rules import build_rules
from ledgerdrop.categorize.pipeline import (
    CHUNK_FALLBACK,
    CHUNK_OK,
    METHOD_CLAUDE,
    METHOD_KEYWORD,
    METHOD_KEYWORD_UNCATEGORIZED,
    Categorizer,
)

VOCAB = ["food_groceries", "food_dining", "transport_public", "uncategorized"]
RULES = build_rules([
    {"category": "food_groceries", "keywords": ["rewe"]},
    {"category": "transport_public", "keywords": ["bahn"]},
])


def _items(descriptions):
    return [
        CategorizationInput(index=i, description=d, amount_cents=-500,
                            currency="EUR", date="2025-11-28")
        for i, d in enumerate(descriptions)
    ]


def _echo_claude(category="food_dining", merchant="AI Merchant", confidence=0.95):
    """Fake claude_fn answering every index found in the prompt payload."""
    def claude_fn(system, prompt):
        indexes = [int(i) for i in re.findall(r"\"index\": (\d+)", prompt)]
        return json.dumps({"transactions": [
            {"index": i, "category": category,
             "merchant": merchant, "confidence": confidence}
            for i in indexes
        ]})
    return MagicMock(side_effect=claude_fn)


class TestWithoutAi:
    def test_all_keyword(self):
        outcome = Categorizer(VOCAB, RULES).categorize(_items(["REWE 123", "Unknown GmbH"]))

        first, second = outcome.results
        assert (first.category_key, first.confidence, first.method) == (
            "food_groceries", 0.7, METHOD_KEYWORD,
        )
        assert (second.category_key, second.confidence, second.method) == (
            "uncategorized", 0.3, METHOD_KEYWORD_UNCATEGORIZED,
        )
        assert outcome.uncategorized_count == 1
        assert outcome.chunks[0].status == CHUNK_FALLBACK
        assert outcome.chunks[0].error_message == "AI categorization not configured"

    def test_merchant_normalized(self):
        outcome = Categorizer(VOCAB, RULES).categorize(_items(["REWE SAGT DANKE 4711"]))
        assert outcome.results[0].merchant_normalized == "Rewe Sagt Danke"

    def test_empty_batch(self):
        outcome = Categorizer(VOCAB, RULES).categorize([])
        assert outcome.results == []
        assert outcome.chunks == []


class TestWithAi:
    def test_ai_results(self):
        claude_fn = _echo_claude()
        outcome = Categorizer(VOCAB, RULES, claude_fn=claude_fn).categorize(_items(["REWE", "X"]))

        assert all(r.method == METHOD_CLAUDE for r in outcome.results)
        assert all(r.category_key == "food_dining" for r in outcome.results)
        assert outcome.fallback_count == 0
        assert outcome.chunks[0].status == CHUNK_OK
        assert outcome.chunks[0].raw_response is not None
        claude_fn.assert_called_once()

    def test_chunking(self):
        claude_fn = _echo_claude()
        config = AiConfig(chunk_size=2)
        outcome = Categorizer(VOCAB, RULES, claude_fn=claude_fn, ai_config=config).categorize(
            _items(["a", "b", "c", "d", "e"]),
        )
        assert claude_fn.call_count == 3
        assert [c.transaction_count for c in outcome.chunks] == [2, 2, 1]
        assert [r.index for r in outcome.results] == [0, 1, 2, 3, 4]

    def test_failed_chunk_falls_back_alone(self):
        good = _echo_claude()
        calls = []

        def claude_fn(system, prompt):
            calls.append(prompt)
            if len(calls) == 2:
                return "not json at all"
            return good(system, prompt)

        config = AiConfig(chunk_size=2)
        outcome = Categorizer(VOCAB, RULES, claude_fn=claude_fn, ai_config=config).categorize(
            _items(["a", "b", "REWE", "Bahn", "e"]),
        )

        assert [c.status for c in outcome.chunks] == [CHUNK_OK, CHUNK_FALLBACK, CHUNK_OK]
        assert "Invalid JSON" in outcome.chunks[1].error_message
        methods = [r.method for r in outcome.results]
        assert methods == [METHOD_CLAUDE, METHOD_CLAUDE, METHOD_KEYWORD, METHOD_KEYWORD, METHOD_CLAUDE]
        assert outcome.results[2].category_key == "food_groceries"
        assert outcome.results[3].category_key == "transport_public"
        assert outcome.fallback_count == 2

    def test_transport_error_falls_back(self):
        claude_fn = MagicMock(side_effect=ConnectionError("reset"))
        outcome = Categorizer(VOCAB, RULES, claude_fn=claude_fn).categorize(_items(["REWE"]))
        assert outcome.results[0].method == METHOD_KEYWORD
        assert "reset" in outcome.chunks[0].error_message

    def test_empty_merchant_normalized_locally(self):
        claude_fn = _echo_claude(merchant="")
        outcome = Categorizer(VOCAB, RULES, claude_fn=claude_fn).categorize(
            _items(["PAYPAL *NETFLIX"]),
        )
        assert outcome.results[0].merchant_normalized == "Paypal Netflix"

    def test_time_budget_exhausted(self):
        ticks = iter([0.0, 0.0, 50.0])
        claude_fn = _echo_claude()
        config = AiConfig(chunk_size=1, total_timeout_seconds=10)
        categorizer = Categorizer(
            VOCAB, RULES, claude_fn=claude_fn, ai_config=config, clock=lambda: next(ticks),
        )

        outcome = categorizer.categorize(_items(["a", "REWE"]))

        assert claude_fn.call_count == 1
        assert outcome.chunks[1].status == CHUNK_FALLBACK
        assert outcome.chunks[1].error_message == "AI time budget exhausted"
        assert outcome.results[1].category_key == "food_groceries"

    def test_ai_uncategorized_counted(self):
        claude_fn = _echo_claude(category="uncategorized", confidence=0.2)
        outcome = Categorizer(VOCAB, RULES, claude_fn=claude_fn).categorize(_items(["??"]))
        assert outcome.results[0].method == METHOD_CLAUDE
        assert outcome.uncategorized_count == 1
