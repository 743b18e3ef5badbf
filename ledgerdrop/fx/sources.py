"""External EUR reference-rate source (ECB data via the Frankfurter API)."""

from __future__ import annotations

import logging
from datetime import date
from decimal import Decimal, InvalidOperation

import requests

from ledgerdrop.database.models import FxRate

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.frankfurter.app"
DEFAULT_TIMEOUT = 8.0


class RateSourceUnavailable(RuntimeError):
    """Raised when the rate source cannot be reached or answers garbage."""


class FrankfurterRateSource:
    """Fetch EUR->X reference rates for a day.

    The API answers a weekend or holiday with the last published day; the
    returned rates carry that day as their date.

    Args:
        base_url: API root.
        timeout: Seconds per HTTP request.
        session: Optional requests.Session (tests inject a fake).
    """

    source_name = "ECB"

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = DEFAULT_TIMEOUT,
        session: requests.Session | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

    def fetch(self, on_date: date, currencies: tuple[str, ...] | list[str]) -> list[FxRate]:
        """Return EUR->currency rates published for on_date (or the last day before it).

        Raises:
            RateSourceUnavailable: On transport errors, non-OK responses or
                a payload without usable rates.
        """
        wanted = sorted({c for c in currencies if c != "EUR"})
        if not wanted:
            return []

        url = f"{self.base_url}/{on_date.isoformat()}"
        try:
            response = self.session.get(
                url,
                params={"from": "EUR", "to": ",".join(wanted)},
                timeout=self.timeout,
            )
            response.raise_for_status()
            payload = response.json(parse_float=Decimal)
        except (requests.RequestException, ValueError) as e:
            raise RateSourceUnavailable(f"Rate request failed: {e}") from e

        rates = payload.get("rates") if isinstance(payload, dict) else None
        if not isinstance(rates, dict):
            raise RateSourceUnavailable("Rate response missing 'rates'")
        published = payload.get("date") or on_date.isoformat()

        result: list[FxRate] = []
        for code, value in rates.items():
            code = str(code).upper()
            if code not in wanted:
                continue
            try:
                rate = Decimal(str(value))
            except InvalidOperation:
                logger.warning("Ignoring non-numeric rate for %s: %r", code, value)
                continue
            if rate <= 0:
                logger.warning("Ignoring non-positive rate for %s: %s", code, rate)
                continue
            result.append(FxRate(
                date=published,
                quote_currency=code,
                rate=rate,
                source=self.source_name,
            ))
        return result
