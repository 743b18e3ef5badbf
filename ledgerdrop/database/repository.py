"""Repository: CRUD operations against SQLite using raw SQL.

All methods take/return dataclass instances from models.py.
Connection management uses a single connection with WAL mode and
foreign keys enabled. FX rate methods are called from the conversion
thread pool and serialize on a lock.
"""

from __future__ import annotations

import sqlite3
import threading
from decimal import Decimal
from pathlib import Path

from .models import (
    IMPORT_COMPLETED,
    IMPORT_PENDING,
    AiRun,
    FxRate,
    Import,
    Transaction,
)


class DuplicateImportError(Exception):
    """Raised when a file or its extracted text was already imported.

    Attributes:
        digest: The colliding hash.
        existing_import_id: Id of the import that already owns the hash.
        field: "file_hash" or "extracted_text_hash".
    """

    def __init__(
        self,
        digest: str,
        existing_import_id: str | None = None,
        field: str = "file_hash",
    ):
        self.digest = digest
        self.existing_import_id = existing_import_id
        self.field = field
        super().__init__(f"Import with {field} '{digest}' already exists")


_TXN_COLUMNS = (
    "id", "import_id", "source_ref", "booking_date", "valuta_date",
    "account_amount_cents", "account_currency", "report_currency",
    "converted_amount_cents", "fx_rate_used", "fx_date_used",
    "fx_date_source", "description_raw", "external_id", "category_key",
    "merchant_normalized", "confidence", "categorization_method",
    "is_reviewed", "needs_fx_review", "created_at",
)


class Repository:
    def __init__(self, db_path: str = ":memory:"):
        self.db_path = db_path
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.RLock()

    @property
    def conn(self) -> sqlite3.Connection:
        with self._lock:
            if self._conn is None:
                self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
                self._conn.row_factory = sqlite3.Row
                self._conn.execute("PRAGMA foreign_keys = ON")
                self._conn.execute("PRAGMA journal_mode = WAL")
            return self._conn

    def close(self):
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    # ── Migrations ──────────────────────────────────────────

    def apply_migrations(self, migrations_dir: Path):
        """Apply all pending SQL migrations in order.

        Each migration runs in a transaction: if the SQL fails, the
        schema_version row is not inserted, allowing retry on next startup.
        """
        self.conn.execute(
            "CREATE TABLE IF NOT EXISTS schema_version ("
            "  version INTEGER PRIMARY KEY,"
            "  description TEXT,"
            "  applied_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP"
            ")"
        )
        self.conn.commit()

        row = self.conn.execute(
            "SELECT MAX(version) FROM schema_version"
        ).fetchone()
        current = row[0] or 0

        for sql_file in sorted(Path(migrations_dir).glob("*.sql")):
            version = int(sql_file.name.split("_")[0])
            if version > current:
                try:
                    self.conn.execute("BEGIN")
                    # executescript auto-commits, so we split statements manually
                    sql_text = sql_file.read_text()
                    for statement in sql_text.split(";"):
                        statement = statement.strip()
                        if statement:
                            self.conn.execute(statement)
                    self.conn.execute(
                        "INSERT INTO schema_version (version, description) VALUES (?, ?)",
                        (version, sql_file.stem),
                    )
                    self.conn.commit()
                except Exception:
                    self.conn.rollback()
                    raise

    # ── Imports ─────────────────────────────────────────────

    def insert_import(self, imp: Import) -> Import:
        """Insert an import record in PENDING state.

        Raises:
            DuplicateImportError: If the file hash or extracted text hash is
                already taken. The unique constraints make this the
                authoritative check when two uploads of the same statement
                race past the read-side dedup checks.
        """
        try:
            self.conn.execute(
                "INSERT INTO imports (id, file_name, file_hash, extracted_text_hash,"
                " file_size, statement_from, statement_to, record_count, status,"
                " created_at, completed_at)"
                " VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (imp.id, imp.file_name, imp.file_hash, imp.extracted_text_hash,
                 imp.file_size, imp.statement_from, imp.statement_to,
                 imp.record_count, imp.status, imp.created_at, imp.completed_at),
            )
            self.conn.commit()
            return imp
        except sqlite3.IntegrityError as e:
            self.conn.rollback()
            if "extracted_text_hash" in str(e):
                existing = self.get_import_by_text_hash(imp.extracted_text_hash)
                raise DuplicateImportError(
                    imp.extracted_text_hash,
                    existing.id if existing else None,
                    field="extracted_text_hash",
                ) from e
            if "file_hash" in str(e):
                existing = self.get_import_by_hash(imp.file_hash)
                raise DuplicateImportError(
                    imp.file_hash,
                    existing.id if existing else None,
                ) from e
            raise

    def get_import(self, import_id: str) -> Import | None:
        row = self.conn.execute(
            "SELECT * FROM imports WHERE id = ?", (import_id,)
        ).fetchone()
        return self._row_to_import(row) if row else None

    def get_import_by_hash(self, file_hash: str) -> Import | None:
        row = self.conn.execute(
            "SELECT * FROM imports WHERE file_hash = ?", (file_hash,)
        ).fetchone()
        return self._row_to_import(row) if row else None

    def get_import_by_text_hash(self, text_hash: str) -> Import | None:
        row = self.conn.execute(
            "SELECT * FROM imports WHERE extracted_text_hash = ?", (text_hash,)
        ).fetchone()
        return self._row_to_import(row) if row else None

    def list_imports(self, status: str | None = None) -> list[Import]:
        sql = "SELECT * FROM imports"
        params: list = []
        if status is not None:
            sql += " WHERE status = ?"
            params.append(status)
        sql += " ORDER BY created_at, rowid"
        rows = self.conn.execute(sql, params).fetchall()
        return [self._row_to_import(r) for r in rows]

    def delete_pending_import(self, import_id: str) -> bool:
        """Delete an import that never completed, with any rows it owns.

        Completed imports are never deleted. Returns True if a row was removed.
        """
        cur = self.conn.execute(
            "DELETE FROM imports WHERE id = ? AND status = ?",
            (import_id, IMPORT_PENDING),
        )
        self.conn.commit()
        return cur.rowcount > 0

    # ── Transactions ────────────────────────────────────────

    def complete_import(
        self,
        import_id: str,
        txns: list[Transaction],
        completed_at: str,
    ) -> None:
        """Insert all transaction records and mark the import completed.

        Both happen in one database transaction: either every record is
        stored and the import is COMPLETED, or nothing is stored and the
        import stays PENDING.
        """
        placeholders = ",".join("?" * len(_TXN_COLUMNS))
        try:
            self.conn.execute("BEGIN")
            self.conn.executemany(
                f"INSERT INTO transactions ({', '.join(_TXN_COLUMNS)})"
                f" VALUES ({placeholders})",
                [self._transaction_to_row(t) for t in txns],
            )
            cur = self.conn.execute(
                "UPDATE imports SET status = ?, record_count = ?, completed_at = ?"
                " WHERE id = ? AND status = ?",
                (IMPORT_COMPLETED, len(txns), completed_at, import_id, IMPORT_PENDING),
            )
            if cur.rowcount != 1:
                raise LookupError(f"No pending import with id '{import_id}'")
            self.conn.commit()
        except Exception:
            self.conn.rollback()
            raise

    def get_transactions_by_import_id(
        self, import_id: str
    ) -> list[Transaction]:
        rows = self.conn.execute(
            "SELECT * FROM transactions WHERE import_id = ?"
            " ORDER BY booking_date, rowid",
            (import_id,),
        ).fetchall()
        return [self._row_to_transaction(r) for r in rows]

    # ── FX rates ────────────────────────────────────────────

    def find_fx_rate(
        self,
        quote_currency: str,
        on_or_before: str,
        not_before: str | None = None,
    ) -> FxRate | None:
        """Most recent EUR->quote rate dated on or before the given day.

        Args:
            not_before: Optional lower bound; rates older than this are
                treated as missing.
        """
        sql = (
            "SELECT * FROM fx_rates"
            " WHERE base_currency = 'EUR' AND quote_currency = ? AND date <= ?"
        )
        params: list = [quote_currency, on_or_before]
        if not_before is not None:
            sql += " AND date >= ?"
            params.append(not_before)
        sql += " ORDER BY date DESC LIMIT 1"
        with self._lock:
            row = self.conn.execute(sql, params).fetchone()
        return self._row_to_fx_rate(row) if row else None

    def upsert_fx_rates(self, rates: list[FxRate]) -> None:
        """Insert or overwrite EUR-anchored rates (last write wins).

        Raises:
            ValueError: If a rate is not EUR-based or not positive.
        """
        for r in rates:
            if r.base_currency != "EUR":
                raise ValueError(f"Rates must be EUR-anchored, got base {r.base_currency}")
            if r.rate <= 0:
                raise ValueError(f"Rate must be positive: {r.quote_currency} {r.rate}")
        with self._lock:
            try:
                self.conn.execute("BEGIN")
                self.conn.executemany(
                    "INSERT INTO fx_rates"
                    " (date, base_currency, quote_currency, rate, source, updated_at)"
                    " VALUES (?, ?, ?, ?, ?, ?)"
                    " ON CONFLICT(date, base_currency, quote_currency) DO UPDATE SET"
                    "  rate = excluded.rate,"
                    "  source = excluded.source,"
                    "  updated_at = excluded.updated_at",
                    [
                        (r.date, r.base_currency, r.quote_currency, str(r.rate),
                         r.source, r.updated_at)
                        for r in rates
                    ],
                )
                self.conn.commit()
            except Exception:
                self.conn.rollback()
                raise

    def list_fx_rates(
        self, quote_currency: str | None = None, limit: int = 50
    ) -> list[FxRate]:
        sql = "SELECT * FROM fx_rates"
        params: list = []
        if quote_currency is not None:
            sql += " WHERE quote_currency = ?"
            params.append(quote_currency)
        sql += " ORDER BY date DESC, quote_currency LIMIT ?"
        params.append(limit)
        with self._lock:
            rows = self.conn.execute(sql, params).fetchall()
        return [self._row_to_fx_rate(r) for r in rows]

    # ── AI runs ─────────────────────────────────────────────

    def insert_ai_runs(self, runs: list[AiRun]) -> None:
        if not runs:
            return
        self.conn.executemany(
            "INSERT INTO ai_runs"
            " (id, import_id, chunk_index, model, prompt_version, status,"
            "  transaction_count, error_message, raw_response, created_at)"
            " VALUES (?,?,?,?,?,?,?,?,?,?)",
            [
                (r.id, r.import_id, r.chunk_index, r.model, r.prompt_version,
                 r.status, r.transaction_count, r.error_message,
                 r.raw_response, r.created_at)
                for r in runs
            ],
        )
        self.conn.commit()

    def get_ai_runs(self, import_id: str) -> list[AiRun]:
        rows = self.conn.execute(
            "SELECT * FROM ai_runs WHERE import_id = ? ORDER BY chunk_index",
            (import_id,),
        ).fetchall()
        return [
            AiRun(
                id=r["id"], import_id=r["import_id"],
                chunk_index=r["chunk_index"], model=r["model"],
                prompt_version=r["prompt_version"], status=r["status"],
                transaction_count=r["transaction_count"],
                error_message=r["error_message"],
                raw_response=r["raw_response"], created_at=r["created_at"],
            )
            for r in rows
        ]

    # ── Summary ─────────────────────────────────────────────

    def get_status_counts(self) -> dict[str, int]:
        """Counts shown by `ledgerdrop status`."""
        row = self.conn.execute(
            "SELECT"
            "  (SELECT COUNT(*) FROM imports) AS total_imports,"
            "  (SELECT COUNT(*) FROM imports WHERE status = 'pending') AS pending_imports,"
            "  (SELECT COUNT(*) FROM transactions) AS total_txns,"
            "  (SELECT COUNT(*) FROM transactions WHERE is_reviewed = 0) AS unreviewed,"
            "  (SELECT COUNT(*) FROM transactions"
            "     WHERE category_key = 'uncategorized') AS uncategorized,"
            "  (SELECT COUNT(*) FROM transactions WHERE needs_fx_review = 1) AS unconverted,"
            "  (SELECT COUNT(*) FROM fx_rates) AS fx_rates"
        ).fetchone()
        return {key: row[key] for key in row.keys()}

    # ── Row Converters ──────────────────────────────────────

    @staticmethod
    def _transaction_to_row(t: Transaction) -> tuple:
        return (
            t.id, t.import_id, t.source_ref, t.booking_date, t.valuta_date,
            t.account_amount_cents, t.account_currency, t.report_currency,
            t.converted_amount_cents,
            str(t.fx_rate_used) if t.fx_rate_used is not None else None,
            t.fx_date_used, t.fx_date_source, t.description_raw,
            t.external_id, t.category_key, t.merchant_normalized,
            t.confidence, t.categorization_method,
            int(t.is_reviewed), int(t.needs_fx_review), t.created_at,
        )

    @staticmethod
    def _row_to_import(row: sqlite3.Row) -> Import:
        return Import(
            id=row["id"], file_name=row["file_name"],
            file_hash=row["file_hash"],
            extracted_text_hash=row["extracted_text_hash"],
            file_size=row["file_size"],
            statement_from=row["statement_from"],
            statement_to=row["statement_to"],
            record_count=row["record_count"], status=row["status"],
            created_at=row["created_at"],
            completed_at=row["completed_at"],
        )

    @staticmethod
    def _row_to_transaction(row: sqlite3.Row) -> Transaction:
        rate = row["fx_rate_used"]
        return Transaction(
            id=row["id"], import_id=row["import_id"],
            source_ref=row["source_ref"],
            booking_date=row["booking_date"],
            valuta_date=row["valuta_date"],
            account_amount_cents=row["account_amount_cents"],
            account_currency=row["account_currency"],
            report_currency=row["report_currency"],
            converted_amount_cents=row["converted_amount_cents"],
            fx_rate_used=Decimal(rate) if rate is not None else None,
            fx_date_used=row["fx_date_used"],
            fx_date_source=row["fx_date_source"],
            description_raw=row["description_raw"],
            external_id=row["external_id"],
            category_key=row["category_key"],
            merchant_normalized=row["merchant_normalized"],
            confidence=row["confidence"],
            categorization_method=row["categorization_method"],
            is_reviewed=bool(row["is_reviewed"]),
            needs_fx_review=bool(row["needs_fx_review"]),
            created_at=row["created_at"],
        )

    @staticmethod
    def _row_to_fx_rate(row: sqlite3.Row) -> FxRate:
        return FxRate(
            date=row["date"], base_currency=row["base_currency"],
            quote_currency=row["quote_currency"],
            rate=Decimal(row["rate"]), source=row["source"],
            updated_at=row["updated_at"],
        )
