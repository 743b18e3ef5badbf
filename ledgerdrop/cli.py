"""CLI entry point for LedgerDrop.

Commands:
    ledgerdrop import FILE [FILE ...]        Ingest bank statement(s) (.csv/.pdf)
    ledgerdrop show IMPORT_ID                List the transactions of an import
    ledgerdrop rates add DATE CCY RATE       Store a manual EUR->CCY rate
    ledgerdrop rates fetch CCY [CCY ...]     Fetch ECB rates for a day
    ledgerdrop rates show [CCY]              Print stored rates
    ledgerdrop status                        Import, review and rate counts
    ledgerdrop recover [--dry-run]           Purge abandoned pending imports
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
from datetime import date
from decimal import Decimal, InvalidOperation
from pathlib import Path

logger = logging.getLogger(__name__)


def _setup_logging() -> None:
    """Configure logging based on LEDGERDROP_LOG_LEVEL env var."""
    level = os.environ.get("LEDGERDROP_LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def _get_config():
    """Load application config from config directory."""
    from ledgerdrop.config import Config

    config_dir = os.environ.get("LEDGERDROP_CONFIG_DIR", "config")
    return Config(config_dir=config_dir)


def _get_repo():
    """Create a Repository connected to the configured database, migrated."""
    from ledgerdrop.database.repository import Repository

    db_path = os.environ.get("LEDGERDROP_DB_PATH", "ledgerdrop.db")
    repo = Repository(db_path=db_path)
    repo.apply_migrations(_get_migrations_dir())
    return repo


def _get_migrations_dir() -> Path:
    """Get the migrations directory path."""
    default = Path(__file__).parent / "database" / "migrations"
    return Path(os.environ.get("LEDGERDROP_MIGRATIONS_DIR", default))


def _get_rate_source(config):
    """Create the HTTP rate source; LEDGERDROP_RATE_SOURCE_URL overrides config."""
    from ledgerdrop.fx.sources import DEFAULT_BASE_URL, FrankfurterRateSource

    url = os.environ.get("LEDGERDROP_RATE_SOURCE_URL") or config.rate_source_url or DEFAULT_BASE_URL
    return FrankfurterRateSource(base_url=url, timeout=config.rate_source_timeout)


def _make_claude_fn(ai_config):
    """Create a Claude API callback for batch categorization.

    Returns a callable (system: str, prompt: str) -> str, or None if
    ANTHROPIC_API_KEY is not set.
    """
    from ledgerdrop.categorize.claude_ai import make_claude_fn

    return make_claude_fn(ai_config)


def _build_pipeline(config, repo):
    from ledgerdrop.categorize.pipeline import Categorizer
    from ledgerdrop.fx.resolver import FxResolver
    from ledgerdrop.importer import ImportPipeline

    ai_config = config.ai_config(api_key=os.environ.get("ANTHROPIC_API_KEY"))
    claude_fn = _make_claude_fn(ai_config)
    if claude_fn is None:
        logger.info("ANTHROPIC_API_KEY not set; categorizing with keyword rules only")
    categorizer = Categorizer(
        vocabulary=config.vocabulary,
        keyword_rules=config.keyword_rules,
        claude_fn=claude_fn,
        ai_config=ai_config,
    )
    fx_resolver = FxResolver(
        repo,
        rate_source=_get_rate_source(config),
        max_lookback_days=config.fx_max_lookback_days,
    )
    return ImportPipeline(
        repo=repo,
        categorizer=categorizer,
        fx_resolver=fx_resolver,
        settings=config.import_settings(),
    )


# ── Command handlers ─────────────────────────────────────


def cmd_import(args: argparse.Namespace) -> int:
    """Ingest statement files via the ImportPipeline."""
    config = _get_config()
    repo = _get_repo()
    report_currency = (args.report_currency or config.report_currency).upper()

    try:
        pipeline = _build_pipeline(config, repo)
        errors = 0
        for filepath in args.files:
            if not filepath.is_file():
                print(f"Error: File not found: {filepath}")
                errors += 1
                continue
            result = pipeline.ingest(filepath.read_bytes(), filepath.name, report_currency)
            if result.status == "success":
                print(
                    f"{result.file_name}: success (import={result.import_id},"
                    f" txns={result.transaction_count}, skipped={result.skipped_count},"
                    f" uncategorized={result.uncategorized_count},"
                    f" unconverted={result.unconverted_count})"
                )
            elif result.status == "duplicate":
                print(f"{result.file_name}: duplicate of import {result.duplicate_of}")
            else:
                errors += 1
                print(f"{result.file_name}: error [{result.error_type}] {result.error_message}")
        return 1 if errors else 0
    finally:
        repo.close()


def cmd_show(args: argparse.Namespace) -> int:
    """Print the transactions of one import."""
    from ledgerdrop.money import format_money

    repo = _get_repo()
    try:
        imp = repo.get_import(args.import_id)
        if imp is None:
            print(f"Error: Import not found: {args.import_id}")
            return 1
        print(f"{imp.file_name} [{imp.status}] {imp.statement_from} .. {imp.statement_to}")
        for t in repo.get_transactions_by_import_id(imp.id):
            converted = (
                format_money(t.converted_amount_cents, t.report_currency)
                if t.converted_amount_cents is not None else "(needs FX review)"
            )
            print(
                f"  {t.booking_date}  {format_money(t.account_amount_cents, t.account_currency):>14}"
                f"  {converted:>18}  {t.category_key:<22} {t.confidence:.2f}"
                f"  {t.merchant_normalized or t.description_raw}"
            )
        return 0
    finally:
        repo.close()


def cmd_rates(args: argparse.Namespace) -> int:
    """Manage the EUR-anchored rate table."""
    if args.rates_command is None:
        print("Usage: ledgerdrop rates {add,fetch,show}")
        return 1

    repo = _get_repo()
    try:
        if args.rates_command == "add":
            return _cmd_rates_add(repo, args)
        if args.rates_command == "fetch":
            return _cmd_rates_fetch(repo, args)
        return _cmd_rates_show(repo, args)
    finally:
        repo.close()


def _cmd_rates_add(repo, args: argparse.Namespace) -> int:
    from ledgerdrop.database.models import FxRate

    try:
        on_date = date.fromisoformat(args.date)
        rate = Decimal(args.rate)
        if not rate.is_finite():
            raise InvalidOperation(args.rate)
    except (ValueError, InvalidOperation):
        print(f"Error: Invalid date or rate: {args.date} {args.rate}")
        return 1
    try:
        repo.upsert_fx_rates([FxRate(
            date=on_date.isoformat(), quote_currency=args.currency.upper(),
            rate=rate, source="manual",
        )])
    except ValueError as e:
        print(f"Error: {e}")
        return 1
    print(f"Stored EUR->{args.currency.upper()} {rate} on {on_date.isoformat()}")
    return 0


def _cmd_rates_fetch(repo, args: argparse.Namespace) -> int:
    from ledgerdrop.fx.sources import RateSourceUnavailable

    try:
        on_date = date.fromisoformat(args.date) if args.date else date.today()
    except ValueError:
        print(f"Error: Invalid date: {args.date}")
        return 1
    source = _get_rate_source(_get_config())
    try:
        rates = source.fetch(on_date, [c.upper() for c in args.currencies])
    except RateSourceUnavailable as e:
        print(f"Error: {e}")
        return 1
    repo.upsert_fx_rates(rates)
    for r in rates:
        print(f"  {r.date}  EUR->{r.quote_currency}  {r.rate}")
    print(f"Stored {len(rates)} rate(s)")
    return 0


def _cmd_rates_show(repo, args: argparse.Namespace) -> int:
    currency = args.currency.upper() if args.currency else None
    rates = repo.list_fx_rates(currency, limit=args.limit)
    if not rates:
        print("No rates stored.")
        return 0
    for r in rates:
        print(f"  {r.date}  EUR->{r.quote_currency}  {r.rate}  ({r.source})")
    return 0


def cmd_status(args: argparse.Namespace) -> int:
    """Display system status counts."""
    repo = _get_repo()
    counts = repo.get_status_counts()

    print("LedgerDrop Status")
    print("=" * 40)
    print(f"  Total imports:       {counts['total_imports']:,}")
    print(f"  Pending imports:     {counts['pending_imports']:,}")
    print(f"  Total transactions:  {counts['total_txns']:,}")
    print(f"  Awaiting review:     {counts['unreviewed']:,}")
    print(f"  Uncategorized:       {counts['uncategorized']:,}")
    print(f"  Needs FX review:     {counts['unconverted']:,}")
    print(f"  Stored FX rates:     {counts['fx_rates']:,}")

    repo.close()
    return 0


def cmd_recover(args: argparse.Namespace) -> int:
    """List pending imports and purge the stale ones."""
    from ledgerdrop.database.models import IMPORT_PENDING
    from ledgerdrop.dedup import DedupGuard

    config = _get_config()
    repo = _get_repo()
    try:
        guard = DedupGuard(repo, config.import_settings().stale_pending_minutes)
        pending = repo.list_imports(status=IMPORT_PENDING)
        if not pending:
            print("No pending imports.")
            return 0
        for imp in pending:
            state = "stale" if guard.is_stale(imp) else "in flight"
            print(f"  {imp.id}  {imp.file_name}  created {imp.created_at}  ({state})")
        if args.dry_run:
            return 0
        reclaimed = guard.reclaim_stale()
        print(f"Purged {len(reclaimed)} stale import(s)")
        return 0
    finally:
        repo.close()


# ── Main entry point ─────────────────────────────────────


_COMMANDS = {
    "import": cmd_import,
    "show": cmd_show,
    "rates": cmd_rates,
    "status": cmd_status,
    "recover": cmd_recover,
}


def main(argv: list[str] | None = None):
    _setup_logging()

    parser = argparse.ArgumentParser(
        prog="ledgerdrop",
        description="LedgerDrop bank statement ingestion",
    )
    subparsers = parser.add_subparsers(dest="command")

    # import
    import_p = subparsers.add_parser("import", help="Ingest bank statement file(s)")
    import_p.add_argument("files", type=Path, nargs="+", help="Statement files (.csv/.pdf)")
    import_p.add_argument("--report-currency", help="Currency to convert into (default from settings)")

    # show
    show_p = subparsers.add_parser("show", help="List the transactions of an import")
    show_p.add_argument("import_id", help="Import ID")

    # rates
    rates_p = subparsers.add_parser("rates", help="Manage EUR-anchored exchange rates")
    rates_sub = rates_p.add_subparsers(dest="rates_command")
    add_p = rates_sub.add_parser("add", help="Store a manual rate")
    add_p.add_argument("date", help="Rate date (YYYY-MM-DD)")
    add_p.add_argument("currency", help="Quote currency, e.g. USD")
    add_p.add_argument("rate", help="Units of currency per 1 EUR")
    fetch_p = rates_sub.add_parser("fetch", help="Fetch ECB reference rates")
    fetch_p.add_argument("currencies", nargs="+", help="Quote currencies")
    fetch_p.add_argument("--date", help="Day to fetch (default today)")
    show_rates_p = rates_sub.add_parser("show", help="Print stored rates")
    show_rates_p.add_argument("currency", nargs="?", help="Filter by quote currency")
    show_rates_p.add_argument("--limit", type=int, default=50)

    # status
    subparsers.add_parser("status", help="Show import, review and rate counts")

    # recover
    recover_p = subparsers.add_parser("recover", help="Purge abandoned pending imports")
    recover_p.add_argument("--dry-run", action="store_true", help="List only, delete nothing")

    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        sys.exit(0)

    handler = _COMMANDS.get(args.command)
    if handler is None:
        print(f"Unknown command: {args.command}")
        sys.exit(1)

    sys.exit(handler(args))


if __name__ == "__main__":
    main()
