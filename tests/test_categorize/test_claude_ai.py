"""Tests for Claude AI chunk categorization: prompt, strict validation, transport."""

from __future__ import annotations

import json
from unittest.mock import MagicMock

import anthropic
import pytest

from ledgerdrop.categorize.claude_ai import (
    AiConfig,
    CategorizationInput,
    CategorizationServiceError,
    CategorizationTimeoutError,
    build_prompt,
    categorize_chunk,
    make_claude_fn,
    parse_response,
)

VOCAB = ["food_groceries", "food_dining", "transport_public", "uncategorized"]


def _items(n: int = 2, start: int = 0) -> list[CategorizationInput]:
    return [
        CategorizationInput(
            index=i, description=f"SHOP {i}", amount_cents=-1000 - i,
            currency="EUR", date="2025-11-28",
        )
        for i in range(start, start + n)
    ]


def _response(entries: list[dict]) -> str:
    return json.dumps({"transactions": entries})


def _entry(index: int, category: str = "food_groceries", merchant: str = "Rewe",
           confidence: float = 0.9) -> dict:
    return {"index": index, "category": category, "merchant": merchant, "confidence": confidence}


class TestBuildPrompt:
    def test_lists_categories_and_transactions(self):
        prompt = build_prompt(_items(2), VOCAB)
        assert "food_groceries, food_dining" in prompt
        assert '"description": "SHOP 1"' in prompt
        assert '"amount": -10.01' in prompt
        assert '"transactions"' in prompt


class TestParseResponse:
    def test_valid(self):
        result = parse_response(_response([_entry(0), _entry(1, "food_dining", "Pizza Roma", 0.6)]),
                                [0, 1], set(VOCAB))
        assert [r.index for r in result] == [0, 1]
        assert result[1].category_key == "food_dining"
        assert result[1].merchant_normalized == "Pizza Roma"
        assert result[1].confidence == 0.6

    def test_ordered_like_chunk(self):
        result = parse_response(_response([_entry(1), _entry(0)]), [0, 1], set(VOCAB))
        assert [r.index for r in result] == [0, 1]

    def test_markdown_fences_tolerated(self):
        text = "```json\n" + _response([_entry(0)]) + "\n```"
        assert parse_response(text, [0], set(VOCAB))[0].category_key == "food_groceries"

    def test_uncategorized_allowed(self):
        result = parse_response(_response([_entry(0, "uncategorized", "", 0.2)]), [0], {"food_dining"})
        assert result[0].category_key == "uncategorized"

    def test_integer_confidence(self):
        assert parse_response(_response([_entry(0, confidence=1)]), [0], set(VOCAB))[0].confidence == 1.0

    @pytest.mark.parametrize("text", [
        "not json",
        "[]",
        '{"results": []}',
        '{"transactions": {}}',
    ])
    def test_malformed_envelope(self, text):
        with pytest.raises(CategorizationServiceError):
            parse_response(text, [0], set(VOCAB))

    def test_missing_index(self):
        with pytest.raises(CategorizationServiceError, match="missing=\\[1\\]"):
            parse_response(_response([_entry(0)]), [0, 1], set(VOCAB))

    def test_extra_index(self):
        with pytest.raises(CategorizationServiceError, match="extra=\\[7\\]"):
            parse_response(_response([_entry(0), _entry(7)]), [0], set(VOCAB))

    def test_duplicate_index(self):
        with pytest.raises(CategorizationServiceError, match="Duplicate index"):
            parse_response(_response([_entry(0), _entry(0)]), [0], set(VOCAB))

    def test_unknown_category(self):
        with pytest.raises(CategorizationServiceError, match="Unknown category"):
            parse_response(_response([_entry(0, "crypto")]), [0], set(VOCAB))

    def test_non_string_merchant(self):
        with pytest.raises(CategorizationServiceError, match="Invalid merchant"):
            parse_response(_response([_entry(0, merchant=None)]), [0], set(VOCAB))

    @pytest.mark.parametrize("confidence", [1.5, -0.1, "0.9", True, None])
    def test_bad_confidence(self, confidence):
        with pytest.raises(CategorizationServiceError):
            parse_response(_response([_entry(0, confidence=confidence)]), [0], set(VOCAB))

    def test_string_index_rejected(self):
        entry = _entry(0)
        entry["index"] = "0"
        with pytest.raises(CategorizationServiceError, match="Invalid index"):
            parse_response(_response([entry]), [0], set(VOCAB))


class TestCategorizeChunk:
    def test_passes_system_and_prompt(self):
        claude_fn = MagicMock(return_value=_response([_entry(0), _entry(1)]))
        suggestions, raw = categorize_chunk(_items(2), VOCAB, claude_fn)

        assert len(suggestions) == 2
        assert raw == claude_fn.return_value
        system, prompt = claude_fn.call_args[0]
        assert "financial transaction analyzer" in system
        assert "SHOP 0" in prompt

    def test_transport_error_wrapped(self):
        claude_fn = MagicMock(side_effect=ConnectionError("reset"))
        with pytest.raises(CategorizationServiceError, match="reset"):
            categorize_chunk(_items(1), VOCAB, claude_fn)

    def test_timeout_propagates_as_is(self):
        claude_fn = MagicMock(side_effect=CategorizationTimeoutError("slow"))
        with pytest.raises(CategorizationTimeoutError):
            categorize_chunk(_items(1), VOCAB, claude_fn)

    def test_empty_response(self):
        with pytest.raises(CategorizationServiceError, match="Empty response"):
            categorize_chunk(_items(1), VOCAB, MagicMock(return_value="  "))


class TestMakeClaudeFn:
    def test_none_without_api_key(self):
        assert make_claude_fn(AiConfig(api_key=None)) is None

    @pytest.fixture
    def client(self, monkeypatch):
        client = MagicMock()
        ctor = MagicMock(return_value=client)
        monkeypatch.setattr(anthropic, "Anthropic", ctor)
        client.ctor = ctor
        return client

    def test_calls_messages_api(self, client):
        block = MagicMock(type="text", text='{"transactions": []}')
        client.messages.create.return_value = MagicMock(content=[block])
        config = AiConfig(api_key="sk-test", model="claude-test", request_timeout_seconds=5)

        claude_fn = make_claude_fn(config)
        assert claude_fn("sys", "prompt") == '{"transactions": []}'

        init_kwargs = client.ctor.call_args.kwargs
        assert init_kwargs["api_key"] == "sk-test"
        assert init_kwargs["timeout"] == 5
        kwargs = client.messages.create.call_args.kwargs
        assert kwargs["model"] == "claude-test"
        assert kwargs["system"] == "sys"
        assert kwargs["messages"] == [{"role": "user", "content": "prompt"}]

    def test_timeout_mapped(self, client):
        client.messages.create.side_effect = anthropic.APITimeoutError(request=MagicMock())
        claude_fn = make_claude_fn(AiConfig(api_key="sk-test"))
        with pytest.raises(CategorizationTimeoutError):
            claude_fn("sys", "prompt")

    def test_api_error_mapped(self, client):
        client.messages.create.side_effect = anthropic.APIConnectionError(
            message="connection reset", request=MagicMock(),
        )
        claude_fn = make_claude_fn(AiConfig(api_key="sk-test"))
        with pytest.raises(CategorizationServiceError, match="connection reset"):
            claude_fn("sys", "prompt")
