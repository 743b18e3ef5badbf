"""Tests for ledgerdrop.config: YAML configuration loader."""

import pytest

from ledgerdrop.categorize.keyword_rules import KeywordRule
from ledgerdrop.config import Config
from tests.conftest import FIXTURE_CONFIG_DIR


@pytest.fixture
def config():
    return Config(FIXTURE_CONFIG_DIR)


class TestConfigInit:
    def test_loads_from_config_dir(self, config):
        assert config.config_dir == FIXTURE_CONFIG_DIR

    def test_raises_on_missing_directory(self):
        with pytest.raises(FileNotFoundError, match="Config directory not found"):
            Config("/nonexistent/path")

    def test_raises_on_file_not_directory(self, tmp_path):
        f = tmp_path / "not_a_dir.yaml"
        f.write_text("test: true")
        with pytest.raises(FileNotFoundError, match="Config directory not found"):
            Config(f)

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError, match="Config file not found"):
            Config(tmp_path).settings

    def test_invalid_yaml(self, tmp_path):
        (tmp_path / "settings.yaml").write_text("a: [unclosed")
        with pytest.raises(ValueError, match="Invalid YAML"):
            Config(tmp_path).settings

    def test_empty_file(self, tmp_path):
        (tmp_path / "settings.yaml").write_text("")
        with pytest.raises(ValueError, match="Empty config file"):
            Config(tmp_path).settings


class TestCategories:
    def test_flatten(self, config):
        flat = config.flatten_category_tree()
        assert flat["food_groceries"]["parent"] == "food"
        assert flat["food_groceries"]["is_leaf"] is True
        assert flat["food"]["is_leaf"] is False
        assert flat["food"]["parent"] is None

    def test_income_inherited(self, config):
        flat = config.flatten_category_tree()
        assert flat["income_salary"]["is_income"] is True
        assert flat["food_dining"]["is_income"] is False

    def test_vocabulary_is_leaves_with_uncategorized_last(self, config):
        assert config.vocabulary == [
            "food_groceries", "food_dining", "transport_public",
            "income_salary", "uncategorized",
        ]


class TestRules:
    def test_keyword_rules_in_order(self, config):
        rules = config.keyword_rules
        assert rules[0] == KeywordRule("food_groceries", ("rewe", "edeka", "lidl"))
        assert [r.category_key for r in rules] == [
            "food_groceries", "food_dining", "transport_public", "income_salary",
        ]

    def test_unknown_category_rejected(self, tmp_path):
        (tmp_path / "categories.yaml").write_text(
            "tree:\n  - key: food_groceries\n    name: Groceries\n"
        )
        (tmp_path / "rules.yaml").write_text(
            "keyword_rules:\n  - category: crypto\n    keywords: [coinbase]\n"
        )
        with pytest.raises(ValueError, match="unknown categories"):
            Config(tmp_path).keyword_rules


class TestParsersAndSettings:
    def test_parser_settings(self, config):
        assert config.home_currency == "EUR"
        assert config.csv_extra_tokens == {"amount": ["soll/haben"]}
        assert config.pdf_timeout_seconds == 5.0

    def test_fx_settings(self, config):
        assert config.report_currency == "USD"
        assert config.fx_max_lookback_days == 5
        assert config.rate_source_url == "https://rates.example.test"
        assert config.rate_source_timeout == 3.0

    def test_import_settings(self, config):
        settings = config.import_settings()
        assert settings.max_file_size == 1048576
        assert settings.stale_pending_minutes == 15
        assert settings.fx_max_workers == 2
        assert settings.home_currency == "EUR"
        assert settings.pdf_timeout_seconds == 5.0

    def test_ai_config(self, config):
        ai = config.ai_config(api_key="sk-test")
        assert ai.api_key == "sk-test"
        assert ai.model == "claude-test-model"
        assert ai.prompt_version == "2.0.0"
        assert ai.chunk_size == 10
        assert ai.request_timeout_seconds == 5.0
        assert ai.total_timeout_seconds == 20.0
        assert ai.max_tokens == 4096

    def test_defaults_when_sections_missing(self, tmp_path):
        (tmp_path / "settings.yaml").write_text("report_currency: gbp\n")
        (tmp_path / "parsers.yaml").write_text("home_currency: EUR\n")
        config = Config(tmp_path)
        assert config.report_currency == "GBP"
        assert config.fx_max_lookback_days == 7
        assert config.rate_source_url is None
        assert config.import_settings().max_file_size == 10 * 1024 * 1024
        assert config.ai_config().api_key is None


class TestProductionConfig:
    """The shipped config/ directory must stay loadable and consistent."""

    def test_rules_reference_known_categories(self):
        from pathlib import Path
        config = Config(Path(__file__).parent.parent / "config")
        assert config.keyword_rules
        assert config.vocabulary[-1] == "uncategorized"
