"""Currency conversion through an EUR-anchored rate table.

Only EUR->X rates are stored. Every other pair is derived:

    SAME     X->X   rate 1
    DIRECT   EUR->X the stored rate
    INVERSE  X->EUR 1 / (EUR->X)
    CROSS    X->Y   (EUR->Y) / (EUR->X), dated to the older of the two legs

A rate is looked up as the most recent one dated on or before the valuta
date (rates are not published on weekends and holidays), within
max_lookback_days. When the valuta date has no rate the booking date is
tried and the result is marked BOOKING_FALLBACK. Only when both miss is the
external rate source asked, once per date.

Amounts stay integer minor units; rates stay Decimal. The single rounding
step is round-half-up of amount x rate.
"""

from __future__ import annotations

import enum
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import date, timedelta
from decimal import Decimal
from typing import TYPE_CHECKING

from ledgerdrop.database.models import (
    FX_SOURCE_BOOKING_FALLBACK,
    FX_SOURCE_VALUTA,
    FxRate,
)
from ledgerdrop.money import round_half_up

from .sources import RateSourceUnavailable

if TYPE_CHECKING:
    from ledgerdrop.database.repository import Repository

    from .sources import FrankfurterRateSource

logger = logging.getLogger(__name__)

ANCHOR_CURRENCY = "EUR"
DEFAULT_MAX_LOOKBACK_DAYS = 7
DEFAULT_MAX_WORKERS = 4


class FxResolutionError(Exception):
    """Raised when no rate can be found for a pair at either date."""

    def __init__(self, from_currency: str, to_currency: str, valuta_date: date, booking_date: date):
        self.from_currency = from_currency
        self.to_currency = to_currency
        self.valuta_date = valuta_date
        self.booking_date = booking_date
        super().__init__(
            f"No {from_currency}->{to_currency} rate on or before "
            f"{valuta_date.isoformat()} (valuta) or {booking_date.isoformat()} (booking)"
        )


class RateDirection(enum.Enum):
    SAME = "same"
    DIRECT = "direct"
    INVERSE = "inverse"
    CROSS = "cross"


@dataclass(frozen=True)
class RateLeg:
    """One stored EUR->currency rate."""
    currency: str
    rate: Decimal
    date: date


@dataclass(frozen=True)
class DerivedRate:
    rate: Decimal
    date: date
    direction: RateDirection


@dataclass(frozen=True)
class FxConversion:
    """Outcome of a successful conversion."""
    converted_cents: int
    rate: Decimal
    rate_date: date
    date_source: str  # VALUTA or BOOKING_FALLBACK


@dataclass(frozen=True)
class ConversionRequest:
    amount_cents: int
    from_currency: str
    valuta_date: date
    booking_date: date


def rate_direction(from_currency: str, to_currency: str) -> RateDirection:
    if from_currency == to_currency:
        return RateDirection.SAME
    if from_currency == ANCHOR_CURRENCY:
        return RateDirection.DIRECT
    if to_currency == ANCHOR_CURRENCY:
        return RateDirection.INVERSE
    return RateDirection.CROSS


def required_legs(from_currency: str, to_currency: str) -> tuple[str, ...]:
    """Non-EUR currencies whose EUR->X rate a conversion needs."""
    direction = rate_direction(from_currency, to_currency)
    if direction is RateDirection.SAME:
        return ()
    if direction is RateDirection.DIRECT:
        return (to_currency,)
    if direction is RateDirection.INVERSE:
        return (from_currency,)
    return (from_currency, to_currency)


def derive_rate(
    from_currency: str,
    to_currency: str,
    legs: dict[str, RateLeg],
    on_date: date,
) -> DerivedRate:
    """Derive the from->to rate from EUR-anchored legs.

    Args:
        legs: EUR->currency rates keyed by currency; must contain every
            currency in required_legs(from_currency, to_currency).
        on_date: Date reported for SAME conversions.
    """
    direction = rate_direction(from_currency, to_currency)

    if direction is RateDirection.SAME:
        return DerivedRate(Decimal(1), on_date, direction)

    if direction is RateDirection.DIRECT:
        leg = legs[to_currency]
        return DerivedRate(leg.rate, leg.date, direction)

    if direction is RateDirection.INVERSE:
        leg = legs[from_currency]
        return DerivedRate(Decimal(1) / leg.rate, leg.date, direction)

    # CROSS: never claim a fresher date than the least fresh input.
    from_leg = legs[from_currency]
    to_leg = legs[to_currency]
    return DerivedRate(
        to_leg.rate / from_leg.rate,
        min(from_leg.date, to_leg.date),
        direction,
    )


def apply_rate(amount_cents: int, rate: Decimal) -> int:
    """The single rounding step: round-half-up(amount x rate)."""
    return round_half_up(Decimal(amount_cents) * rate)


class FxResolver:
    """Convert minor-unit amounts using the repository's rate table.

    Args:
        repo: Rate store (find_fx_rate / upsert_fx_rates).
        rate_source: Optional external source asked when the store has no
            rate at either date. Fetched rates are upserted.
        max_lookback_days: How far before a date a rate may be dated and
            still count as effective on that date.
    """

    def __init__(
        self,
        repo: Repository,
        rate_source: FrankfurterRateSource | None = None,
        max_lookback_days: int = DEFAULT_MAX_LOOKBACK_DAYS,
    ):
        self.repo = repo
        self.rate_source = rate_source
        self.max_lookback_days = max_lookback_days

    def convert(
        self,
        amount_cents: int,
        from_currency: str,
        to_currency: str,
        valuta_date: date,
        booking_date: date,
    ) -> FxConversion:
        """Convert an amount, trying the valuta date, then the booking date.

        Raises:
            FxResolutionError: If no rate is available at either date, even
                after asking the rate source.
        """
        if from_currency == to_currency:
            return FxConversion(amount_cents, Decimal(1), valuta_date, FX_SOURCE_VALUTA)

        attempts = ((valuta_date, FX_SOURCE_VALUTA), (booking_date, FX_SOURCE_BOOKING_FALLBACK))

        for on_date, date_source in attempts:
            derived = self._derive_at(from_currency, to_currency, on_date)
            if derived is not None:
                return self._conversion(amount_cents, derived, date_source)

        if self.rate_source is not None:
            for on_date, date_source in attempts:
                if self._fetch(from_currency, to_currency, on_date):
                    derived = self._derive_at(from_currency, to_currency, on_date)
                    if derived is not None:
                        return self._conversion(amount_cents, derived, date_source)

        raise FxResolutionError(from_currency, to_currency, valuta_date, booking_date)

    def convert_many(
        self,
        requests: list[ConversionRequest],
        to_currency: str,
        max_workers: int = DEFAULT_MAX_WORKERS,
    ) -> list[FxConversion | None]:
        """Convert many amounts in parallel, bounded by max_workers.

        Results are in request order; a request that cannot be resolved
        yields None instead of failing the batch.
        """

        def _one(req: ConversionRequest) -> FxConversion | None:
            try:
                return self.convert(
                    req.amount_cents, req.from_currency, to_currency,
                    req.valuta_date, req.booking_date,
                )
            except FxResolutionError as e:
                logger.warning("FX conversion failed: %s", e)
                return None

        if not requests:
            return []
        with ThreadPoolExecutor(
            max_workers=max(1, min(max_workers, len(requests))),
            thread_name_prefix="fx",
        ) as pool:
            return list(pool.map(_one, requests))

    # ── internals ─────────────────────────────────────────

    def _conversion(
        self, amount_cents: int, derived: DerivedRate, date_source: str
    ) -> FxConversion:
        return FxConversion(
            converted_cents=apply_rate(amount_cents, derived.rate),
            rate=derived.rate,
            rate_date=derived.date,
            date_source=date_source,
        )

    def _derive_at(
        self, from_currency: str, to_currency: str, on_date: date
    ) -> DerivedRate | None:
        legs: dict[str, RateLeg] = {}
        for currency in required_legs(from_currency, to_currency):
            leg = self._lookup_leg(currency, on_date)
            if leg is None:
                return None
            legs[currency] = leg
        return derive_rate(from_currency, to_currency, legs, on_date)

    def _lookup_leg(self, currency: str, on_date: date) -> RateLeg | None:
        not_before = on_date - timedelta(days=self.max_lookback_days)
        row = self.repo.find_fx_rate(
            currency, on_date.isoformat(), not_before=not_before.isoformat(),
        )
        if row is None:
            return None
        return RateLeg(currency, row.rate, date.fromisoformat(row.date))

    def _fetch(self, from_currency: str, to_currency: str, on_date: date) -> bool:
        """Ask the rate source for the legs of a pair; True if anything was stored."""
        currencies = required_legs(from_currency, to_currency)
        try:
            rates: list[FxRate] = self.rate_source.fetch(on_date, currencies)
        except RateSourceUnavailable as e:
            logger.warning(
                "Rate source unavailable for %s on %s: %s",
                "/".join(currencies), on_date.isoformat(), e,
            )
            return False
        if not rates:
            return False
        self.repo.upsert_fx_rates(rates)
        logger.info(
            "Fetched %d rate(s) for %s on %s",
            len(rates), "/".join(currencies), on_date.isoformat(),
        )
        return True
