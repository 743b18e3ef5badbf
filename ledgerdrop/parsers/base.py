"""Base parser: shared interface, data structures, and utility functions."""

from __future__ import annotations

import hashlib
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import date, datetime


class ParseError(Exception):
    """Raised when a single row or line cannot be turned into a transaction.

    Parsers catch this per row and count it in ``skipped_count``; it only
    escapes a parser as NoTransactionsError.
    """

    def __init__(self, message: str, source_ref: str | None = None):
        self.source_ref = source_ref
        super().__init__(f"{source_ref}: {message}" if source_ref else message)


class NoTransactionsError(ParseError):
    """Raised when a file parsed cleanly but yielded zero transactions."""

    def __init__(self, file_name: str, skipped_count: int = 0):
        self.file_name = file_name
        self.skipped_count = skipped_count
        super().__init__(
            f"No transactions found in {file_name} ({skipped_count} row(s) skipped)"
        )


class ExtractionError(Exception):
    """Raised when no usable text can be extracted from a PDF statement."""


class ExtractionTimeoutError(ExtractionError):
    """Raised when PDF text extraction exceeds its wall-clock budget."""

    def __init__(self, timeout_seconds: float):
        self.timeout_seconds = timeout_seconds
        super().__init__(f"PDF text extraction exceeded {timeout_seconds:g}s")


@dataclass
class DraftTransaction:
    """Intermediate representation output by parsers, before FX and categorization."""
    booking_date: date
    amount_cents: int      # signed minor units: negative=outflow, positive=inflow
    currency: str          # 3-letter uppercase code of the account currency
    description_raw: str
    source_ref: str        # "row:<n>" (CSV) or "line:<n>" (PDF)
    valuta_date: date | None = None
    external_id: str | None = None

    def __post_init__(self):
        if self.valuta_date is None:
            self.valuta_date = self.booking_date
        if not isinstance(self.amount_cents, int):
            raise TypeError(f"amount_cents must be int, got {type(self.amount_cents).__name__}")
        self.currency = normalize_currency(self.currency)


class BaseParser(ABC):
    """Abstract base for all statement parsers.

    Attributes:
        skipped_count: Number of rows skipped during parsing (unparseable
            date, amount or currency). Check this after parse() to detect
            silent data loss.
        extracted_text: Text the transactions were read from. Feeds the
            extracted-text hash used for cross-format dedup.
    """

    def __init__(self):
        self.skipped_count: int = 0
        self.extracted_text: str = ""

    @abstractmethod
    def parse(self, data: bytes) -> list[DraftTransaction]:
        """Parse a statement file and return draft transactions.

        Implementations should reset and increment self.skipped_count and
        set self.extracted_text.
        """

    @abstractmethod
    def detect(self, file_name: str, data: bytes) -> bool:
        """Return True if this parser can handle the given file."""


_CURRENCY_RE = re.compile(r"^[A-Z]{3}$")


def normalize_currency(code: str) -> str:
    """Uppercase and validate a 3-letter currency code."""
    normalized = (code or "").strip().upper()
    if not _CURRENCY_RE.match(normalized):
        raise ValueError(f"Invalid currency code: {code!r}")
    return normalized


def parse_statement_date(value: str) -> date | None:
    """DD.MM.YYYY or YYYY-MM-DD -> date. Returns None if invalid."""
    value = (value or "").strip()
    for fmt in ("%d.%m.%Y", "%Y-%m-%d"):
        try:
            return datetime.strptime(value, fmt).date()
        except ValueError:
            continue
    return None


def normalize_description(desc: str) -> str:
    """Normalize a bank transaction description for matching.

    - Uppercase
    - Strip long numbers (4+ digits)
    - Strip #123 patterns
    - Strip * and # decorators
    - Collapse whitespace
    """
    desc = desc.upper()
    desc = re.sub(r'\d{4,}', '', desc)
    desc = re.sub(r'#\d+', '', desc)
    desc = re.sub(r'[*#]', '', desc)
    desc = re.sub(r'\s{2,}', ' ', desc)
    return desc.strip()


def normalize_whitespace(text: str) -> str:
    """Collapse every whitespace run to a single space and strip the ends."""
    return re.sub(r"\s+", " ", text).strip()


def compute_file_hash(data: bytes) -> str:
    """SHA256 of the raw upload bytes, unnormalized."""
    return hashlib.sha256(data).hexdigest()


def compute_text_hash(text: str) -> str:
    """SHA256 of whitespace-normalized extracted text.

    Catches a re-rendered or re-encoded copy of the same statement. The CSV
    parser hashes the decoded file text and the PDF parser hashes the
    normalized page text, so a CSV and a PDF export of one statement
    normally hash differently and are not caught here.
    """
    return hashlib.sha256(normalize_whitespace(text).encode("utf-8")).hexdigest()
