"""Tests for ledgerdrop.cli: argument parsing and command handlers.

Tests use main(argv=[...]) against the fixture config and a temporary
SQLite file; the HTTP rate source is patched out.
"""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from unittest.mock import MagicMock, patch

import pytest

from ledgerdrop.cli import main
from ledgerdrop.database.models import FxRate, Import
from ledgerdrop.database.repository import Repository
from ledgerdrop.fx.sources import RateSourceUnavailable
from tests.conftest import FIXTURE_CONFIG_DIR, MIGRATIONS_DIR

STATEMENT_CSV = (
    "Buchungstag;Wertstellung;Buchungstext;Betrag;Währung\n"
    "28.11.2025;29.11.2025;REWE SAGT DANKE 4711;-19,90;EUR\n"
    "30.11.2025;30.11.2025;Gehalt November;2.500,00;EUR\n"
)


@pytest.fixture
def db_path(tmp_path, monkeypatch):
    path = tmp_path / "ledgerdrop.db"
    monkeypatch.setenv("LEDGERDROP_CONFIG_DIR", str(FIXTURE_CONFIG_DIR))
    monkeypatch.setenv("LEDGERDROP_DB_PATH", str(path))
    monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
    monkeypatch.delenv("LEDGERDROP_RATE_SOURCE_URL", raising=False)
    return path


@pytest.fixture
def offline_rates():
    source = MagicMock()
    source.fetch.return_value = []
    with patch("ledgerdrop.cli._get_rate_source", return_value=source):
        yield source


def _run(argv) -> int:
    with pytest.raises(SystemExit) as exc_info:
        main(argv)
    return exc_info.value.code


def _open(db_path) -> Repository:
    repo = Repository(str(db_path))
    repo.apply_migrations(MIGRATIONS_DIR)
    return repo


class TestParsing:
    def test_no_command_prints_help(self, capsys):
        assert _run([]) == 0
        assert "usage" in capsys.readouterr().out.lower()

    def test_unknown_command_rejected(self):
        assert _run(["explode"]) == 2

    def test_import_requires_files(self):
        assert _run(["import"]) == 2


class TestImport:
    def test_import_csv(self, db_path, offline_rates, tmp_path, capsys):
        statement = tmp_path / "umsatz.csv"
        statement.write_text(STATEMENT_CSV, encoding="utf-8")

        assert _run(["import", str(statement), "--report-currency", "eur"]) == 0

        out = capsys.readouterr().out
        assert "umsatz.csv: success" in out
        assert "txns=2" in out
        repo = _open(db_path)
        assert len(repo.list_imports()) == 1
        repo.close()

    def test_unconverted_reported(self, db_path, offline_rates, tmp_path, capsys):
        statement = tmp_path / "umsatz.csv"
        statement.write_text(STATEMENT_CSV, encoding="utf-8")

        # Report currency USD comes from the fixture settings; no rates stored.
        assert _run(["import", str(statement)]) == 0
        assert "unconverted=2" in capsys.readouterr().out

    def test_duplicate(self, db_path, offline_rates, tmp_path, capsys):
        statement = tmp_path / "umsatz.csv"
        statement.write_text(STATEMENT_CSV, encoding="utf-8")
        _run(["import", str(statement)])

        assert _run(["import", str(statement)]) == 0
        assert "duplicate of import" in capsys.readouterr().out

    def test_missing_file(self, db_path, offline_rates, tmp_path, capsys):
        assert _run(["import", str(tmp_path / "nope.csv")]) == 1
        assert "File not found" in capsys.readouterr().out

    def test_error_result_exits_nonzero(self, db_path, offline_rates, tmp_path, capsys):
        statement = tmp_path / "notes.txt"
        statement.write_text("hello", encoding="utf-8")
        assert _run(["import", str(statement)]) == 1
        assert "error [validation]" in capsys.readouterr().out


class TestShow:
    def test_show_import(self, db_path, offline_rates, tmp_path, capsys):
        statement = tmp_path / "umsatz.csv"
        statement.write_text(STATEMENT_CSV, encoding="utf-8")
        _run(["import", str(statement), "--report-currency", "EUR"])
        repo = _open(db_path)
        import_id = repo.list_imports()[0].id
        repo.close()
        capsys.readouterr()

        assert _run(["show", import_id]) == 0

        out = capsys.readouterr().out
        assert "[completed]" in out
        assert "food_groceries" in out
        assert "income_salary" in out

    def test_unknown_import(self, db_path, capsys):
        assert _run(["show", "missing"]) == 1
        assert "Import not found" in capsys.readouterr().out


class TestRates:
    def test_add_and_show(self, db_path, capsys):
        assert _run(["rates", "add", "2025-11-28", "usd", "1.0567"]) == 0
        repo = _open(db_path)
        rate = repo.find_fx_rate("USD", "2025-11-28")
        repo.close()
        assert rate.rate == Decimal("1.0567")
        assert rate.source == "manual"

        assert _run(["rates", "show", "USD"]) == 0
        assert "EUR->USD  1.0567  (manual)" in capsys.readouterr().out

    @pytest.mark.parametrize("argv", [
        ["rates", "add", "28.11.2025", "USD", "1.05"],
        ["rates", "add", "2025-11-28", "USD", "abc"],
        ["rates", "add", "2025-11-28", "USD", "NaN"],
        ["rates", "add", "2025-11-28", "USD", "0"],
    ])
    def test_add_rejects_bad_input(self, db_path, argv, capsys):
        assert _run(argv) == 1
        assert "Error" in capsys.readouterr().out

    def test_fetch_stores_rates(self, db_path, offline_rates, capsys):
        offline_rates.fetch.return_value = [
            FxRate(date="2025-11-28", quote_currency="USD", rate=Decimal("1.05")),
        ]
        assert _run(["rates", "fetch", "usd", "--date", "2025-11-28"]) == 0
        offline_rates.fetch.assert_called_once_with(date(2025, 11, 28), ["USD"])
        assert "Stored 1 rate(s)" in capsys.readouterr().out

    def test_fetch_unavailable(self, db_path, offline_rates, capsys):
        offline_rates.fetch.side_effect = RateSourceUnavailable("down")
        assert _run(["rates", "fetch", "USD"]) == 1
        assert "down" in capsys.readouterr().out

    def test_show_empty(self, db_path, capsys):
        assert _run(["rates", "show"]) == 0
        assert "No rates stored." in capsys.readouterr().out

    def test_no_subcommand(self, db_path):
        assert _run(["rates"]) == 1


class TestStatus:
    def test_counts(self, db_path, capsys):
        assert _run(["status"]) == 0
        out = capsys.readouterr().out
        assert "LedgerDrop Status" in out
        assert "Total imports:       0" in out


class TestRecover:
    def _seed(self, db_path):
        repo = _open(db_path)
        stale = repo.insert_import(Import(
            file_name="crashed.csv", file_hash="h1", created_at="2020-01-01T00:00:00+00:00",
        ))
        repo.close()
        return stale

    def test_dry_run_keeps_imports(self, db_path, capsys):
        stale = self._seed(db_path)
        assert _run(["recover", "--dry-run"]) == 0
        assert "(stale)" in capsys.readouterr().out
        repo = _open(db_path)
        assert repo.get_import(stale.id) is not None
        repo.close()

    def test_purges_stale(self, db_path, capsys):
        stale = self._seed(db_path)
        assert _run(["recover"]) == 0
        assert "Purged 1 stale import(s)" in capsys.readouterr().out
        repo = _open(db_path)
        assert repo.get_import(stale.id) is None
        repo.close()

    def test_nothing_pending(self, db_path, capsys):
        assert _run(["recover"]) == 0
        assert "No pending imports." in capsys.readouterr().out
