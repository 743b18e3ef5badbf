"""Import orchestration: bytes in, persisted transactions out.

    validate -> file-hash dedup -> parse -> text-hash dedup
    -> record import (PENDING) -> categorize + convert
    -> store records and mark COMPLETED in one database transaction

Anything that fails before the import row exists leaves no trace. A crash
after that leaves a PENDING import with no transactions, which the dedup
guard reclaims once it goes stale (or `ledgerdrop recover` purges).
"""

from __future__ import annotations

import logging
import re
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import PurePath
from typing import Callable

from ledgerdrop.categorize.claude_ai import CategorizationInput
from ledgerdrop.categorize.keyword_rules import UNCATEGORIZED
from ledgerdrop.categorize.pipeline import (
    CHUNK_OK,
    Categorizer,
    CategorizationOutcome,
)
from ledgerdrop.database.models import AiRun, Import, Transaction
from ledgerdrop.database.repository import DuplicateImportError, Repository
from ledgerdrop.dedup import DEFAULT_STALE_PENDING_MINUTES, DedupGuard
from ledgerdrop.fx.resolver import ConversionRequest, FxConversion, FxResolver
from ledgerdrop.parsers.base import (
    BaseParser,
    DraftTransaction,
    ExtractionError,
    ExtractionTimeoutError,
    NoTransactionsError,
    compute_file_hash,
    compute_text_hash,
)
from ledgerdrop.parsers.csv_parser import SemicolonCsvParser
from ledgerdrop.parsers.pdf_parser import DEFAULT_EXTRACTION_TIMEOUT, PdfStatementParser

logger = logging.getLogger(__name__)

SUPPORTED_EXTENSIONS = {".csv", ".pdf"}
DEFAULT_MAX_FILE_SIZE = 10 * 1024 * 1024

_CURRENCY_RE = re.compile(r"^[A-Z]{3}$")


class ValidationError(Exception):
    """Raised when an upload is rejected before parsing."""


@dataclass
class ImportSettings:
    """Limits and parser options for ImportPipeline (see config/settings.yaml)."""
    max_file_size: int = DEFAULT_MAX_FILE_SIZE
    fx_max_workers: int = 4
    stale_pending_minutes: int = DEFAULT_STALE_PENDING_MINUTES
    home_currency: str = "EUR"
    csv_extra_tokens: dict[str, list[str]] = field(default_factory=dict)
    pdf_timeout_seconds: float = DEFAULT_EXTRACTION_TIMEOUT


@dataclass
class IngestResult:
    """Outcome of ingesting one statement file."""
    file_name: str
    status: str  # "success", "duplicate", "error"
    import_id: str | None = None
    duplicate_of: str | None = None
    transaction_count: int = 0
    skipped_count: int = 0
    uncategorized_count: int = 0
    unconverted_count: int = 0
    ai_fallback_chunks: int = 0
    error_type: str | None = None
    error_message: str | None = None


class ImportPipeline:
    """Turn an uploaded statement into a completed import.

    Args:
        repo: Database repository.
        categorizer: Batch categorizer (AI with keyword fallback).
        fx_resolver: Converter into the report currency.
        settings: Import limits and parser options.
        pdf_extractor: Optional PDF text extractor (bytes -> str); defaults
            to pdfplumber.
        dedup: Optional DedupGuard; built from settings when omitted.
    """

    def __init__(
        self,
        repo: Repository,
        categorizer: Categorizer,
        fx_resolver: FxResolver,
        settings: ImportSettings | None = None,
        pdf_extractor: Callable[[bytes], str] | None = None,
        dedup: DedupGuard | None = None,
    ):
        self.repo = repo
        self.categorizer = categorizer
        self.fx_resolver = fx_resolver
        self.settings = settings or ImportSettings()
        self.pdf_extractor = pdf_extractor
        self.dedup = dedup or DedupGuard(repo, self.settings.stale_pending_minutes)

    def ingest(self, data: bytes, file_name: str, report_currency: str) -> IngestResult:
        try:
            self._validate(data, file_name, report_currency)
        except ValidationError as e:
            logger.warning("Rejected %s: %s", file_name, e)
            return IngestResult(
                file_name=file_name, status="error",
                error_type="validation", error_message=str(e),
            )

        # Byte-identical re-upload: exit before any parsing work.
        file_hash = compute_file_hash(data)
        existing = self.dedup.find_by_file_hash(file_hash)
        if existing is not None:
            logger.info("Duplicate file skipped: %s (import %s)", file_name, existing)
            return IngestResult(file_name=file_name, status="duplicate", duplicate_of=existing)

        parser = self._parser_for(file_name, data)
        if parser is None:
            return IngestResult(
                file_name=file_name, status="error", error_type="unsupported_format",
                error_message=f"Unrecognized statement format: {file_name}",
            )

        try:
            drafts = parser.parse(data)
            if not drafts:
                raise NoTransactionsError(file_name, parser.skipped_count)
        except ExtractionTimeoutError as e:
            logger.error("PDF extraction timed out for %s: %s", file_name, e)
            return IngestResult(
                file_name=file_name, status="error",
                error_type="extraction_timeout", error_message=str(e),
            )
        except ExtractionError as e:
            logger.error("PDF extraction failed for %s: %s", file_name, e)
            return IngestResult(
                file_name=file_name, status="error",
                error_type="extraction", error_message=str(e),
            )
        except NoTransactionsError as e:
            logger.warning("%s", e)
            return IngestResult(
                file_name=file_name, status="error", skipped_count=e.skipped_count,
                error_type="no_transactions", error_message=str(e),
            )

        if parser.skipped_count:
            logger.warning("Parser skipped %d row(s) in %s", parser.skipped_count, file_name)

        # Same statement text re-encoded or re-rendered.
        text_hash = compute_text_hash(parser.extracted_text)
        existing = self.dedup.find_by_text_hash(text_hash)
        if existing is not None:
            logger.info("Duplicate statement content skipped: %s (import %s)", file_name, existing)
            return IngestResult(
                file_name=file_name, status="duplicate", duplicate_of=existing,
                skipped_count=parser.skipped_count,
            )

        booking_dates = [d.booking_date for d in drafts]
        imp = Import(
            file_name=file_name,
            file_hash=file_hash,
            extracted_text_hash=text_hash,
            file_size=len(data),
            statement_from=min(booking_dates).isoformat(),
            statement_to=max(booking_dates).isoformat(),
            record_count=len(drafts),
        )
        try:
            self.repo.insert_import(imp)
        except DuplicateImportError as e:
            # Lost a race with a concurrent upload of the same statement.
            logger.info("Duplicate file (race): %s", file_name)
            return IngestResult(
                file_name=file_name, status="duplicate",
                duplicate_of=e.existing_import_id, skipped_count=parser.skipped_count,
            )

        try:
            return self._process(imp, drafts, report_currency, parser.skipped_count)
        except Exception as e:
            logger.exception("Import failed for %s; import %s left pending", file_name, imp.id)
            return IngestResult(
                file_name=file_name, status="error", import_id=imp.id,
                skipped_count=parser.skipped_count,
                error_type="internal", error_message=str(e),
            )

    def recover_stale_imports(self) -> list[Import]:
        """Purge PENDING imports abandoned by crashed runs."""
        return self.dedup.reclaim_stale()

    # ── internals ─────────────────────────────────────────

    def _validate(self, data: bytes, file_name: str, report_currency: str) -> None:
        suffix = PurePath(file_name).suffix.lower()
        if suffix not in SUPPORTED_EXTENSIONS:
            raise ValidationError(f"Unsupported file extension: {suffix or '(none)'}")
        if not data:
            raise ValidationError("File is empty")
        if len(data) > self.settings.max_file_size:
            raise ValidationError(
                f"File is {len(data)} bytes, limit is {self.settings.max_file_size}"
            )
        if not isinstance(report_currency, str) or not _CURRENCY_RE.match(report_currency):
            raise ValidationError(f"Invalid report currency: {report_currency!r}")

    def _parser_for(self, file_name: str, data: bytes) -> BaseParser | None:
        suffix = PurePath(file_name).suffix.lower()
        if suffix == ".csv":
            parser: BaseParser = SemicolonCsvParser(
                home_currency=self.settings.home_currency,
                extra_tokens=self.settings.csv_extra_tokens,
            )
        else:
            parser = PdfStatementParser(
                extractor=self.pdf_extractor,
                home_currency=self.settings.home_currency,
                timeout_seconds=self.settings.pdf_timeout_seconds,
            )
        return parser if parser.detect(file_name, data) else None

    def _process(
        self,
        imp: Import,
        drafts: list[DraftTransaction],
        report_currency: str,
        skipped_count: int,
    ) -> IngestResult:
        items = [
            CategorizationInput(
                index=i,
                description=d.description_raw,
                amount_cents=d.amount_cents,
                currency=d.currency,
                date=d.booking_date.isoformat(),
            )
            for i, d in enumerate(drafts)
        ]
        requests = [
            ConversionRequest(d.amount_cents, d.currency, d.valuta_date, d.booking_date)
            for d in drafts
        ]

        # One batched categorization runs alongside the per-transaction FX fan-out.
        with ThreadPoolExecutor(max_workers=1, thread_name_prefix="categorize") as pool:
            categorized = pool.submit(self.categorizer.categorize, items)
            conversions = self.fx_resolver.convert_many(
                requests, report_currency, max_workers=self.settings.fx_max_workers,
            )
            outcome: CategorizationOutcome = categorized.result()

        records = [
            self._build_record(imp.id, draft, result, conversion, report_currency)
            for draft, result, conversion in zip(drafts, outcome.results, conversions)
        ]

        self.repo.insert_ai_runs([
            AiRun(
                import_id=imp.id,
                chunk_index=chunk.chunk_index,
                model=self.categorizer.ai_config.model,
                prompt_version=self.categorizer.ai_config.prompt_version,
                status=chunk.status,
                transaction_count=chunk.transaction_count,
                error_message=chunk.error_message,
                raw_response=chunk.raw_response,
            )
            for chunk in outcome.chunks
        ])
        self.repo.complete_import(imp.id, records, datetime.now(timezone.utc).isoformat())

        unconverted = sum(1 for r in records if r.needs_fx_review)
        uncategorized = sum(1 for r in records if r.category_key == UNCATEGORIZED)
        logger.info(
            "Imported %s: %d transaction(s), %d skipped, %d uncategorized, %d unconverted",
            imp.file_name, len(records), skipped_count, uncategorized, unconverted,
        )
        return IngestResult(
            file_name=imp.file_name,
            status="success",
            import_id=imp.id,
            transaction_count=len(records),
            skipped_count=skipped_count,
            uncategorized_count=uncategorized,
            unconverted_count=unconverted,
            ai_fallback_chunks=sum(1 for c in outcome.chunks if c.status != CHUNK_OK),
        )

    @staticmethod
    def _build_record(
        import_id: str,
        draft: DraftTransaction,
        result,
        conversion: FxConversion | None,
        report_currency: str,
    ) -> Transaction:
        txn = Transaction(
            import_id=import_id,
            source_ref=draft.source_ref,
            booking_date=draft.booking_date.isoformat(),
            valuta_date=draft.valuta_date.isoformat(),
            account_amount_cents=draft.amount_cents,
            account_currency=draft.currency,
            report_currency=report_currency,
            description_raw=draft.description_raw,
            external_id=draft.external_id,
            category_key=result.category_key,
            merchant_normalized=result.merchant_normalized,
            confidence=result.confidence,
            categorization_method=result.method,
        )
        if conversion is None:
            txn.needs_fx_review = True
        else:
            txn.converted_amount_cents = conversion.converted_cents
            txn.fx_rate_used = conversion.rate
            txn.fx_date_used = conversion.rate_date.isoformat()
            txn.fx_date_source = conversion.date_source
        return txn
