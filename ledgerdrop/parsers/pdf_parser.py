"""PDF statement parser (Commerzbank-style account statements).

Text is extracted by an injected callable (pdfplumber by default), then
normalized to undo the letter-spacing some PDF renderers put between the
digits of dates and amounts ("2 8 . 1 1 . 2 0 2 5" -> "28.11.2025").

Two line shapes are transactions:
  - full:  <description> DD.MM.YYYY [DD.MM.YYYY] AMOUNT CCY
  - short: <description> DD.MM AMOUNT [+|-]
    The year comes from the first full date in the document (the statement
    header date) and the currency is the statement's home currency.

Every other line is ignored.
"""

from __future__ import annotations

import io
import logging
import re
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from datetime import date
from pathlib import PurePath
from typing import Callable

from ledgerdrop.money import parse_amount

from .base import (
    BaseParser,
    DraftTransaction,
    ExtractionError,
    ExtractionTimeoutError,
    ParseError,
    normalize_currency,
    parse_statement_date,
)

logger = logging.getLogger(__name__)

DEFAULT_EXTRACTION_TIMEOUT = 30.0

_AMOUNT = r"\d{1,3}(?:\.\d{3})*(?:,\d{2})?|\d+(?:,\d{2})?"

FULL_LINE_RE = re.compile(
    r"^(?P<desc>.*?)\s*"
    r"(?P<booking>\d{2}\.\d{2}\.\d{4})"
    r"(?:\s+(?P<valuta>\d{2}\.\d{2}\.\d{4}))?"
    r"\s+(?P<amount>[+-]? ?(?:" + _AMOUNT + r"))"
    r"\s+(?P<currency>[A-Z]{3})\b"
)

SHORT_LINE_RE = re.compile(
    r"^(?P<desc>.*?)\s*"
    r"(?<![\d.])(?P<day>\d{2})\.(?P<month>\d{2})(?![.\d])"
    r"\s+(?P<amount>\d{1,3}(?:\.\d{3})*,\d{2}|\d+,\d{2})"
    r"(?:\s*(?P<sign>[+-]))?\s*$"
)

HEADER_DATE_RE = re.compile(r"\b\d{2}\.\d{2}\.(\d{4})\b")

# A run of at least three single characters separated by single spaces,
# e.g. "2 8 . 1 1 . 2 0 2 5" or "-1 9 , 9 0". Wider gaps end the run.
_SPACED_RUN_RE = re.compile(r"(?<!\S)[+-]?(?:[\d.,] ){2,}[\d.,](?!\S)")
_SPACED_SEPARATOR_RE = re.compile(r"(?<=\d) *([.,]) *(?=\d)")


def normalize_pdf_text(text: str) -> str:
    """Collapse spurious whitespace inside dates and amounts, line by line.

    Separate tokens (two adjacent dates, a date and an amount) are left
    apart: only letter-spaced runs and spaces around a separator between
    digits are removed.
    """
    lines = []
    for line in text.splitlines():
        line = line.replace("\t", "  ").replace("\xa0", " ")
        line = _SPACED_RUN_RE.sub(lambda m: m.group(0).replace(" ", ""), line)
        line = _SPACED_SEPARATOR_RE.sub(r"\1", line)
        line = re.sub(r" {2,}", " ", line).strip()
        lines.append(line)
    return "\n".join(lines)


def extract_text_pdfplumber(data: bytes) -> str:
    """Extract the text of every page with pdfplumber."""
    import pdfplumber

    try:
        with pdfplumber.open(io.BytesIO(data)) as pdf:
            pages = [page.extract_text() or "" for page in pdf.pages]
    except Exception as e:
        raise ExtractionError(f"Could not read PDF: {e}") from e
    return "\n".join(pages)


def extract_with_timeout(
    extractor: Callable[[bytes], str],
    data: bytes,
    timeout_seconds: float,
) -> str:
    """Run the extractor, failing closed if it exceeds the wall-clock budget.

    Raises:
        ExtractionTimeoutError: If extraction takes longer than timeout_seconds.
    """
    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="pdf-extract")
    future = executor.submit(extractor, data)
    try:
        return future.result(timeout=timeout_seconds)
    except FutureTimeoutError as e:
        raise ExtractionTimeoutError(timeout_seconds) from e
    finally:
        # Don't block on a runaway extractor; the worker finishes in the background.
        executor.shutdown(wait=False)


class PdfStatementParser(BaseParser):
    """Parse text-based PDF bank statements.

    Args:
        extractor: Callable (pdf bytes) -> text. Defaults to pdfplumber.
        home_currency: Currency for short-form lines, which carry none.
        timeout_seconds: Wall-clock budget for text extraction.
        today: Date used for the year when the document has no full date.
    """

    def __init__(
        self,
        extractor: Callable[[bytes], str] | None = None,
        home_currency: str = "EUR",
        timeout_seconds: float = DEFAULT_EXTRACTION_TIMEOUT,
        today: date | None = None,
    ):
        super().__init__()
        self.extractor = extractor or extract_text_pdfplumber
        self.home_currency = normalize_currency(home_currency)
        self.timeout_seconds = timeout_seconds
        self.today = today

    def detect(self, file_name: str, data: bytes) -> bool:
        """PDFs start with the %PDF- magic bytes."""
        return PurePath(file_name).suffix.lower() == ".pdf" and data[:1024].lstrip().startswith(b"%PDF-")

    def parse(self, data: bytes) -> list[DraftTransaction]:
        """Extract, normalize and scan the statement text.

        Raises:
            ExtractionError: If the PDF has no extractable text (OCR would
                be required).
            ExtractionTimeoutError: If extraction exceeds timeout_seconds.
        """
        self.skipped_count = 0
        raw_text = extract_with_timeout(self.extractor, data, self.timeout_seconds)
        if not raw_text or not raw_text.strip():
            raise ExtractionError("PDF contains no extractable text. OCR may be required.")

        text = normalize_pdf_text(raw_text)
        self.extracted_text = text
        return self.parse_text(text)

    def parse_text(self, text: str) -> list[DraftTransaction]:
        """Scan already-normalized statement text for transaction lines."""
        year = self._statement_year(text)
        transactions: list[DraftTransaction] = []

        for line_no, line in enumerate(text.splitlines()):
            if not line:
                continue
            try:
                txn = self._parse_line(line_no, line, year)
            except ParseError as e:
                logger.debug("Skipping PDF line: %s", e)
                self.skipped_count += 1
                continue
            if txn is not None:
                transactions.append(txn)

        logger.info(
            "PDF parse complete: %d transaction(s), %d skipped line(s)",
            len(transactions), self.skipped_count,
        )
        return transactions

    def _statement_year(self, text: str) -> int:
        match = HEADER_DATE_RE.search(text)
        if match:
            return int(match.group(1))
        year = (self.today or date.today()).year
        logger.warning("No statement date found in PDF text, assuming year %d", year)
        return year

    def _parse_line(self, line_no: int, line: str, year: int) -> DraftTransaction | None:
        source_ref = f"line:{line_no}"

        full = FULL_LINE_RE.match(line)
        if full:
            booking_date = parse_statement_date(full.group("booking"))
            if booking_date is None:
                raise ParseError(f"invalid date {full.group('booking')!r}", source_ref)
            valuta_date = booking_date
            if full.group("valuta"):
                valuta_date = parse_statement_date(full.group("valuta")) or booking_date
            try:
                amount_cents = parse_amount(full.group("amount"))
            except ValueError as e:
                raise ParseError(str(e), source_ref) from e
            return DraftTransaction(
                booking_date=booking_date,
                valuta_date=valuta_date,
                amount_cents=amount_cents,
                currency=full.group("currency"),
                description_raw=full.group("desc").strip(),
                source_ref=source_ref,
            )

        short = SHORT_LINE_RE.match(line)
        if short:
            date_str = f"{short.group('day')}.{short.group('month')}.{year}"
            booking_date = parse_statement_date(date_str)
            if booking_date is None:
                raise ParseError(f"invalid date {date_str!r}", source_ref)
            try:
                amount_cents = parse_amount(short.group("amount"))
            except ValueError as e:
                raise ParseError(str(e), source_ref) from e
            if short.group("sign") == "-":
                amount_cents = -amount_cents
            return DraftTransaction(
                booking_date=booking_date,
                amount_cents=amount_cents,
                currency=self.home_currency,
                description_raw=short.group("desc").strip(),
                source_ref=source_ref,
            )

        return None
