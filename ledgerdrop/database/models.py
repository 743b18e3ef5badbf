"""Dataclass models matching the SQLite schema.

Each dataclass corresponds to one table. Fields match column names exactly.
Primary keys of imports and transactions are TEXT (UUID strings generated
via uuid4()). Dates are ISO strings; FX rates are Decimal in Python and
TEXT in SQLite so no binary floating point is ever stored.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from uuid import uuid4

IMPORT_PENDING = "pending"
IMPORT_COMPLETED = "completed"

FX_SOURCE_VALUTA = "VALUTA"
FX_SOURCE_BOOKING_FALLBACK = "BOOKING_FALLBACK"


def _new_id() -> str:
    return str(uuid4())


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class Import:
    file_name: str
    file_hash: str
    id: str = field(default_factory=_new_id)
    extracted_text_hash: str | None = None
    file_size: int | None = None
    statement_from: str | None = None
    statement_to: str | None = None
    record_count: int | None = None
    status: str = IMPORT_PENDING
    created_at: str = field(default_factory=_now)
    completed_at: str | None = None


@dataclass
class Transaction:
    import_id: str
    source_ref: str
    booking_date: str
    valuta_date: str
    account_amount_cents: int
    account_currency: str
    report_currency: str
    description_raw: str
    id: str = field(default_factory=_new_id)
    converted_amount_cents: int | None = None
    fx_rate_used: Decimal | None = None
    fx_date_used: str | None = None
    fx_date_source: str | None = None
    external_id: str | None = None
    category_key: str | None = None
    merchant_normalized: str | None = None
    confidence: float | None = None
    categorization_method: str | None = None
    is_reviewed: bool = False
    needs_fx_review: bool = False
    created_at: str = field(default_factory=_now)


@dataclass
class FxRate:
    date: str
    quote_currency: str
    rate: Decimal
    source: str = "ECB"
    base_currency: str = "EUR"
    updated_at: str = field(default_factory=_now)


@dataclass
class AiRun:
    chunk_index: int
    model: str
    prompt_version: str
    status: str  # "ok" or "fallback"
    import_id: str | None = None
    id: str = field(default_factory=_new_id)
    transaction_count: int = 0
    error_message: str | None = None
    raw_response: str | None = None
    created_at: str = field(default_factory=_now)
