"""Claude AI categorization of transaction chunks.

One request per chunk. The response must be a JSON object

    {"transactions": [{"index": int, "category": str,
                       "merchant": str, "confidence": float}, ...]}

covering every index of the chunk exactly once, with categories from the
vocabulary (or "uncategorized") and confidences in [0, 1]. Anything else
fails the whole chunk: results are never partially trusted.

Uses the claude_fn callback pattern (system: str, prompt: str) -> str so
tests can pass a stub instead of the Anthropic client.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Callable

logger = logging.getLogger(__name__)

ClaudeFn = Callable[[str, str], str]

DEFAULT_MODEL = "claude-sonnet-4-20250514"
PROMPT_VERSION = "1.0.0"
UNCATEGORIZED = "uncategorized"


class CategorizationServiceError(Exception):
    """Raised when a chunk's AI response is unusable (transport, JSON or schema)."""


class CategorizationTimeoutError(CategorizationServiceError):
    """Raised when the AI request exceeds its time budget."""


@dataclass(frozen=True)
class AiConfig:
    """Provider settings, injected explicitly rather than read from globals."""
    api_key: str | None = None
    model: str = DEFAULT_MODEL
    prompt_version: str = PROMPT_VERSION
    chunk_size: int = 50
    max_tokens: int = 4096
    request_timeout_seconds: float = 30.0
    total_timeout_seconds: float = 120.0


@dataclass(frozen=True)
class CategorizationInput:
    index: int
    description: str
    amount_cents: int
    currency: str
    date: str  # ISO booking date


@dataclass(frozen=True)
class AiSuggestion:
    index: int
    category_key: str
    merchant_normalized: str
    confidence: float


SYSTEM_PROMPT = (
    "You are a financial transaction analyzer. For each transaction:\n"
    "1. Assign exactly one category from the provided list\n"
    "2. Normalize the merchant name (clean business name from the raw "
    'description, e.g. "AMAZON.DE*123ABC" -> "Amazon")\n'
    "3. Give a confidence from 0.0 to 1.0 (0.9+ for obvious matches, "
    "0.5-0.7 for guesses)\n"
    'Use "uncategorized" if you cannot determine the category. '
    "Never include amounts or totals in your answer.\n"
    "Return ONLY a JSON object, no other text."
)


def build_prompt(items: list[CategorizationInput], vocabulary: list[str]) -> str:
    payload = [
        {
            "index": item.index,
            "description": item.description,
            "amount": item.amount_cents / 100,
            "currency": item.currency,
            "date": item.date,
        }
        for item in items
    ]
    return (
        f"Available categories: {', '.join(vocabulary)}\n\n"
        "Analyze these transactions:\n"
        f"{json.dumps(payload, ensure_ascii=False, indent=2)}\n\n"
        "Return JSON in exactly this format:\n"
        '{"transactions": [{"index": <transaction index>, '
        '"category": "<category from the list>", '
        '"merchant": "<clean merchant name>", '
        '"confidence": <0.0 to 1.0>}]}'
    )


def categorize_chunk(
    items: list[CategorizationInput],
    vocabulary: list[str],
    claude_fn: ClaudeFn,
) -> tuple[list[AiSuggestion], str]:
    """Ask Claude to categorize one chunk.

    Returns:
        (suggestions ordered like items, raw response text)

    Raises:
        CategorizationServiceError: On any transport failure or any
            deviation from the response schema.
    """
    try:
        response = claude_fn(SYSTEM_PROMPT, build_prompt(items, vocabulary))
    except CategorizationServiceError:
        raise
    except Exception as e:
        raise CategorizationServiceError(f"Claude request failed: {e}") from e
    if not isinstance(response, str) or not response.strip():
        raise CategorizationServiceError("Empty response from Claude")
    expected = [item.index for item in items]
    return parse_response(response, expected, set(vocabulary)), response


def parse_response(
    response: str,
    expected_indexes: list[int],
    vocabulary: set[str],
) -> list[AiSuggestion]:
    """Validate a chunk response strictly; any deviation raises."""
    text = response.strip()
    if text.startswith("```"):
        lines = text.split("\n")
        lines = [line for line in lines if not line.strip().startswith("```")]
        text = "\n".join(lines)

    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise CategorizationServiceError(f"Invalid JSON in Claude response: {e}") from e

    if not isinstance(data, dict) or not isinstance(data.get("transactions"), list):
        raise CategorizationServiceError("Response is not an object with a 'transactions' list")

    by_index: dict[int, AiSuggestion] = {}
    for entry in data["transactions"]:
        suggestion = _validate_entry(entry, vocabulary)
        if suggestion.index in by_index:
            raise CategorizationServiceError(f"Duplicate index {suggestion.index}")
        by_index[suggestion.index] = suggestion

    if set(by_index) != set(expected_indexes):
        missing = sorted(set(expected_indexes) - set(by_index))
        extra = sorted(set(by_index) - set(expected_indexes))
        raise CategorizationServiceError(
            f"Response indexes do not match chunk (missing={missing}, extra={extra})"
        )
    return [by_index[i] for i in expected_indexes]


def _validate_entry(entry: object, vocabulary: set[str]) -> AiSuggestion:
    if not isinstance(entry, dict):
        raise CategorizationServiceError(f"Transaction entry is not an object: {entry!r}")

    index = entry.get("index")
    if not isinstance(index, int) or isinstance(index, bool):
        raise CategorizationServiceError(f"Invalid index: {index!r}")

    category = entry.get("category")
    if not isinstance(category, str) or (category not in vocabulary and category != UNCATEGORIZED):
        raise CategorizationServiceError(f"Unknown category for index {index}: {category!r}")

    merchant = entry.get("merchant")
    if not isinstance(merchant, str):
        raise CategorizationServiceError(f"Invalid merchant for index {index}: {merchant!r}")

    confidence = entry.get("confidence")
    if isinstance(confidence, bool) or not isinstance(confidence, (int, float)):
        raise CategorizationServiceError(f"Invalid confidence for index {index}: {confidence!r}")
    if not 0.0 <= confidence <= 1.0:
        raise CategorizationServiceError(f"Confidence out of range for index {index}: {confidence}")

    return AiSuggestion(
        index=index,
        category_key=category,
        merchant_normalized=merchant.strip(),
        confidence=float(confidence),
    )


def make_claude_fn(ai_config: AiConfig) -> ClaudeFn | None:
    """Create a Claude API callback from explicit settings.

    Returns None if no API key is configured; categorization then runs
    entirely on the keyword fallback.
    """
    if not ai_config.api_key:
        return None

    import anthropic

    client = anthropic.Anthropic(
        api_key=ai_config.api_key,
        timeout=ai_config.request_timeout_seconds,
        max_retries=0,
    )

    def claude_fn(system: str, prompt: str) -> str:
        try:
            response = client.messages.create(
                model=ai_config.model,
                max_tokens=ai_config.max_tokens,
                temperature=0.1,
                system=system,
                messages=[{"role": "user", "content": prompt}],
            )
        except anthropic.APITimeoutError as e:
            raise CategorizationTimeoutError(
                f"Claude request exceeded {ai_config.request_timeout_seconds:g}s"
            ) from e
        except anthropic.APIError as e:
            raise CategorizationServiceError(f"Claude API error: {e}") from e
        return "".join(
            block.text for block in response.content if getattr(block, "type", "") == "text"
        )

    return claude_fn
