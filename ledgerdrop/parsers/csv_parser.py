"""Semicolon CSV parser for German-style bank exports (Commerzbank and similar).

Columns are located by substring match of the header cells against
COLUMN_VOCABULARY, so a new bank export is supported by adding tokens, not
code. Files without a recognizable header fall back to positional columns:
booking date, amount, currency, description.

Every description column (Buchungstext, Verwendungszweck, Empfänger, ...)
contributes to the description, joined with " | " in header order.

Amounts use comma as decimal and dot as thousands separator; dates are
DD.MM.YYYY or YYYY-MM-DD. Unparseable rows are skipped and counted.
"""

from __future__ import annotations

import csv
import io
import logging
import unicodedata
from pathlib import PurePath

from ledgerdrop.money import parse_amount

from .base import (
    BaseParser,
    DraftTransaction,
    ParseError,
    normalize_currency,
    parse_statement_date,
)

logger = logging.getLogger(__name__)

BOOKING_DATE = "booking_date"
VALUTA_DATE = "valuta_date"
AMOUNT = "amount"
CURRENCY = "currency"
DESCRIPTION = "description"
REFERENCE = "reference"

# Ordered (concept, tokens). A header cell belongs to the first concept with
# a token contained in it, so the more specific concepts come first
# ("Valutadatum" is a valuta date before it is a "datum").
# Tokens are compared against case-folded, accent-stripped header cells.
COLUMN_VOCABULARY: tuple[tuple[str, tuple[str, ...]], ...] = (
    (VALUTA_DATE, ("valuta", "wertstellung", "value date")),
    (DESCRIPTION, ("verwendungszweck", "buchungstext", "beschreibung",
                   "description", "zweck", "text", "empfanger")),
    (REFERENCE, ("referenz", "reference", "transaktions-id", "umsatz-id",
                 "transaction id")),
    (BOOKING_DATE, ("buchungstag", "buchungsdatum", "buchung", "booking",
                    "datum", "date")),
    (AMOUNT, ("betrag", "amount", "umsatzbetrag")),
    (CURRENCY, ("wahrung", "waehrung", "currency", "ccy")),
)

# Used when no header cell matches any concept.
POSITIONAL_COLUMNS: dict[str, int] = {
    BOOKING_DATE: 0,
    AMOUNT: 1,
    CURRENCY: 2,
    DESCRIPTION: 3,
}

DESCRIPTION_SEPARATOR = " | "
UNKNOWN_DESCRIPTION = "Unknown transaction"


def fold_header(cell: str) -> str:
    """Case-fold and strip accents: "Währung" -> "wahrung"."""
    decomposed = unicodedata.normalize("NFKD", cell.strip().casefold())
    return "".join(c for c in decomposed if not unicodedata.combining(c))


def decode_csv_bytes(data: bytes) -> str:
    """UTF-8 (with or without BOM), falling back to cp1252 for legacy exports."""
    try:
        return data.decode("utf-8-sig")
    except UnicodeDecodeError:
        return data.decode("cp1252", errors="replace")


class SemicolonCsvParser(BaseParser):
    """Parse semicolon-delimited bank CSV exports.

    Args:
        home_currency: Currency used when the row has no currency column
            value.
        extra_tokens: Additional header tokens per concept, appended to
            COLUMN_VOCABULARY (configure in config/parsers.yaml).
    """

    DELIMITER = ";"

    def __init__(
        self,
        home_currency: str = "EUR",
        extra_tokens: dict[str, list[str]] | None = None,
    ):
        super().__init__()
        self.home_currency = normalize_currency(home_currency)
        self.vocabulary = _merge_vocabulary(extra_tokens or {})

    def detect(self, file_name: str, data: bytes) -> bool:
        """CSV statements are identified by extension and a ';' in the first line."""
        if PurePath(file_name).suffix.lower() != ".csv":
            return False
        first_line = decode_csv_bytes(data[:4096]).split("\n", 1)[0]
        return self.DELIMITER in first_line

    def map_columns(self, header: list[str]) -> dict[str, int]:
        """Map concepts to column indexes; first matching concept per cell wins.

        Returns an empty dict when no cell matches.
        """
        columns: dict[str, int] = {}
        for idx, cell in enumerate(header):
            concept = self._concept_of(cell)
            if concept is not None:
                columns.setdefault(concept, idx)
        return columns

    def description_columns(self, header: list[str]) -> list[int]:
        """Indexes of every description-like column, in header order."""
        return [idx for idx, cell in enumerate(header) if self._concept_of(cell) == DESCRIPTION]

    def _concept_of(self, cell: str) -> str | None:
        folded = fold_header(cell)
        if not folded:
            return None
        for concept, tokens in self.vocabulary:
            if any(token in folded for token in tokens):
                return concept
        return None

    def parse(self, data: bytes) -> list[DraftTransaction]:
        self.skipped_count = 0  # Reset for each parse
        text = decode_csv_bytes(data)
        self.extracted_text = text

        rows, malformed = self._read_rows(text)
        self.skipped_count = malformed
        if not rows:
            return []

        header = rows[0][1]
        columns = self.map_columns(header)
        description_cols = self.description_columns(header)
        data_rows = rows[1:]
        if BOOKING_DATE not in columns or AMOUNT not in columns:
            if columns:
                logger.warning(
                    "CSV header matched %s but not booking date and amount; "
                    "using positional columns", sorted(columns),
                )
            columns = dict(POSITIONAL_COLUMNS)
            description_cols = [POSITIONAL_COLUMNS[DESCRIPTION]]
            # Without a recognizable header the first row may already be data.
            if self._try_row(rows[0][0], rows[0][1], columns, description_cols) is not None:
                data_rows = rows

        transactions: list[DraftTransaction] = []
        for line_no, row in data_rows:
            txn = self._try_row(line_no, row, columns, description_cols)
            if txn is not None:
                transactions.append(txn)
            else:
                self.skipped_count += 1

        if self.skipped_count:
            logger.info("Skipped %d unparseable CSV row(s)", self.skipped_count)
        return transactions

    def _read_rows(self, text: str) -> tuple[list[tuple[int, list[str]]], int]:
        """Split text into non-blank (line_no, cells) rows.

        A structural CSV error (e.g. an unterminated quote swallowing the
        rest of the file) ends reading: rows read so far are kept and the
        remainder counts as one skipped row.
        """
        reader = csv.reader(
            io.StringIO(text, newline=""),
            delimiter=self.DELIMITER,
            quotechar='"',
            doublequote=True,
        )
        rows: list[tuple[int, list[str]]] = []
        line_no = 0
        try:
            for line_no, row in enumerate(reader):
                cells = [cell.strip() for cell in row]
                if any(cells):
                    rows.append((line_no, cells))
        except csv.Error as e:
            logger.warning("Malformed CSV after row %d, ignoring the rest: %s", line_no, e)
            return rows, 1
        return rows, 0

    def _try_row(
        self,
        line_no: int,
        row: list[str],
        columns: dict[str, int],
        description_cols: list[int],
    ) -> DraftTransaction | None:
        try:
            return self._parse_row(line_no, row, columns, description_cols)
        except ParseError as e:
            logger.debug("Skipping CSV row: %s", e)
            return None

    def _parse_row(
        self,
        line_no: int,
        row: list[str],
        columns: dict[str, int],
        description_cols: list[int],
    ) -> DraftTransaction:
        source_ref = f"row:{line_no}"

        def cell(concept: str) -> str:
            idx = columns.get(concept)
            if idx is None or idx >= len(row):
                return ""
            return row[idx]

        booking_date = parse_statement_date(cell(BOOKING_DATE))
        if booking_date is None:
            raise ParseError(f"invalid booking date {cell(BOOKING_DATE)!r}", source_ref)

        valuta_date = booking_date
        valuta_str = cell(VALUTA_DATE)
        if valuta_str:
            valuta_date = parse_statement_date(valuta_str) or booking_date

        try:
            amount_cents = parse_amount(cell(AMOUNT))
        except ValueError as e:
            raise ParseError(str(e), source_ref) from e

        try:
            currency = normalize_currency(cell(CURRENCY) or self.home_currency)
        except ValueError as e:
            raise ParseError(str(e), source_ref) from e

        parts = [row[idx] for idx in description_cols if idx < len(row) and row[idx]]
        return DraftTransaction(
            booking_date=booking_date,
            valuta_date=valuta_date,
            amount_cents=amount_cents,
            currency=currency,
            description_raw=DESCRIPTION_SEPARATOR.join(parts) or UNKNOWN_DESCRIPTION,
            external_id=cell(REFERENCE) or None,
            source_ref=source_ref,
        )


def _merge_vocabulary(
    extra_tokens: dict[str, list[str]],
) -> tuple[tuple[str, tuple[str, ...]], ...]:
    known = {concept for concept, _ in COLUMN_VOCABULARY}
    unknown = set(extra_tokens) - known
    if unknown:
        raise ValueError(f"Unknown CSV column concepts: {sorted(unknown)}")
    return tuple(
        (concept, tokens + tuple(fold_header(t) for t in extra_tokens.get(concept, ())))
        for concept, tokens in COLUMN_VOCABULARY
    )
