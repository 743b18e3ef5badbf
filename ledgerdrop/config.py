"""YAML configuration loader for LedgerDrop.

Loads the seed config files from the config/ directory:
  categories.yaml, rules.yaml, parsers.yaml, settings.yaml
"""

from pathlib import Path

import yaml

from ledgerdrop.categorize.claude_ai import AiConfig
from ledgerdrop.categorize.keyword_rules import UNCATEGORIZED, KeywordRule, build_rules
from ledgerdrop.importer import ImportSettings


class Config:
    """Loads and provides access to all YAML configuration files."""

    def __init__(self, config_dir: Path | str = "config"):
        self.config_dir = Path(config_dir)
        if not self.config_dir.is_dir():
            raise FileNotFoundError(f"Config directory not found: {self.config_dir}")

        self._categories: list[dict] | None = None
        self._rules: dict | None = None
        self._parsers: dict | None = None
        self._settings: dict | None = None

    def _load(self, filename: str) -> dict | list:
        path = self.config_dir / filename
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")
        with open(path, encoding="utf-8") as f:
            try:
                data = yaml.safe_load(f)
            except yaml.YAMLError as e:
                raise ValueError(f"Invalid YAML in {path}: {e}") from e
        if data is None:
            raise ValueError(f"Empty config file: {path}")
        return data

    @property
    def categories(self) -> list[dict]:
        if self._categories is None:
            data = self._load("categories.yaml")
            if isinstance(data, dict):
                self._categories = data.get("tree", data.get("categories", data))
            else:
                self._categories = data
        return self._categories

    @property
    def rules(self) -> dict:
        if self._rules is None:
            self._rules = self._load("rules.yaml")
        return self._rules

    @property
    def parsers(self) -> dict:
        if self._parsers is None:
            self._parsers = self._load("parsers.yaml")
        return self._parsers

    @property
    def settings(self) -> dict:
        if self._settings is None:
            self._settings = self._load("settings.yaml")
        return self._settings

    # ── Categories ──────────────────────────────────────────

    def flatten_category_tree(self) -> dict[str, dict]:
        """Walk the categories tree and return category key -> metadata.

        Each entry has keys: key, name, parent, is_leaf, is_income.
        """
        result: dict[str, dict] = {}

        def _walk(nodes: list[dict], parent: str | None, inherit_income: bool) -> None:
            for node in nodes:
                key = node.get("key", "")
                children = node.get("children", [])
                is_income = node.get("is_income", inherit_income)
                if key:
                    result[key] = {
                        "key": key,
                        "name": node.get("name", key),
                        "parent": parent,
                        "is_leaf": not children,
                        "is_income": bool(is_income),
                    }
                if children:
                    _walk(children, key or parent, is_income)

        _walk(self.categories, None, False)
        return result

    @property
    def vocabulary(self) -> list[str]:
        """Leaf category keys the categorizer may assign, 'uncategorized' last."""
        keys = [k for k, meta in self.flatten_category_tree().items()
                if meta["is_leaf"] and k != UNCATEGORIZED]
        return keys + [UNCATEGORIZED]

    # ── Rules ───────────────────────────────────────────────

    @property
    def keyword_rules(self) -> list[KeywordRule]:
        """Ordered keyword fallback rules.

        Raises:
            ValueError: If a rule names a category outside the vocabulary.
        """
        rules = build_rules(self.rules.get("keyword_rules", []))
        known = set(self.vocabulary)
        unknown = sorted({r.category_key for r in rules} - known)
        if unknown:
            raise ValueError(f"keyword_rules reference unknown categories: {unknown}")
        return rules

    # ── Parsers ─────────────────────────────────────────────

    @property
    def home_currency(self) -> str:
        return str(self.parsers.get("home_currency", "EUR")).upper()

    @property
    def csv_extra_tokens(self) -> dict[str, list[str]]:
        """Extra header tokens per column concept, e.g. {"amount": ["soll/haben"]}."""
        return self.parsers.get("csv", {}).get("extra_header_tokens", {}) or {}

    @property
    def pdf_timeout_seconds(self) -> float:
        return float(self.parsers.get("pdf", {}).get("extraction_timeout_seconds", 30))

    # ── Settings ────────────────────────────────────────────

    @property
    def report_currency(self) -> str:
        return str(self.settings.get("report_currency", self.home_currency)).upper()

    @property
    def fx_max_lookback_days(self) -> int:
        return int(self.settings.get("fx", {}).get("max_lookback_days", 7))

    @property
    def rate_source_url(self) -> str | None:
        return self.settings.get("fx", {}).get("rate_source_url")

    @property
    def rate_source_timeout(self) -> float:
        return float(self.settings.get("fx", {}).get("rate_source_timeout_seconds", 8))

    def import_settings(self) -> ImportSettings:
        imports = self.settings.get("imports", {})
        return ImportSettings(
            max_file_size=int(imports.get("max_file_size", 10 * 1024 * 1024)),
            fx_max_workers=int(self.settings.get("fx", {}).get("max_workers", 4)),
            stale_pending_minutes=int(imports.get("stale_pending_minutes", 30)),
            home_currency=self.home_currency,
            csv_extra_tokens=self.csv_extra_tokens,
            pdf_timeout_seconds=self.pdf_timeout_seconds,
        )

    def ai_config(self, api_key: str | None = None) -> AiConfig:
        """AI settings from settings.yaml; the API key comes from the caller."""
        ai = self.settings.get("ai", {})
        defaults = AiConfig()
        return AiConfig(
            api_key=api_key,
            model=ai.get("model", defaults.model),
            prompt_version=str(ai.get("prompt_version", defaults.prompt_version)),
            chunk_size=int(ai.get("chunk_size", defaults.chunk_size)),
            max_tokens=int(ai.get("max_tokens", defaults.max_tokens)),
            request_timeout_seconds=float(
                ai.get("request_timeout_seconds", defaults.request_timeout_seconds)),
            total_timeout_seconds=float(
                ai.get("total_timeout_seconds", defaults.total_timeout_seconds)),
        )
