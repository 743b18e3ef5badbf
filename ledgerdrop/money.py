"""Money helpers: every amount is an integer count of minor units (cents)."""

from __future__ import annotations

import re
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

CURRENCY_SYMBOLS: dict[str, str] = {
    "EUR": "€",
    "USD": "$",
    "GBP": "£",
    "JPY": "¥",
    "INR": "₹",
}


def round_half_up(value: Decimal | int | float | str) -> int:
    """Round to the nearest integer, halves away from zero.

    Symmetric so a debit and the matching credit convert to equal
    magnitudes.
    """
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def format_money(cents: int, currency: str) -> str:
    """Format minor units for display, en-US style.

    >>> format_money(12345, "EUR")
    '€123.45'
    >>> format_money(-123456, "USD")
    '-$1,234.56'
    """
    code = currency.upper()
    sign = "-" if cents < 0 else ""
    major, minor = divmod(abs(cents), 100)
    number = f"{major:,}.{minor:02d}"
    symbol = CURRENCY_SYMBOLS.get(code)
    if symbol is None:
        return f"{sign}{code} {number}"
    return f"{sign}{symbol}{number}"


def parse_money(value: str) -> int:
    """Leniently parse user-entered money into minor units.

    Keeps digits, separators and sign; the right-most of ``.``/``,`` is the
    decimal separator. Returns 0 when nothing numeric is left.
    """
    cleaned = re.sub(r"[^\d.,-]", "", value or "")
    if "," in cleaned and "." in cleaned:
        if cleaned.rfind(",") > cleaned.rfind("."):
            cleaned = cleaned.replace(".", "").replace(",", ".")
        else:
            cleaned = cleaned.replace(",", "")
    else:
        cleaned = cleaned.replace(",", ".")
    try:
        return round_half_up(Decimal(cleaned) * 100)
    except InvalidOperation:
        return 0


def parse_amount(value: str) -> int:
    """Strictly parse a statement amount (comma decimal, dot thousands).

    "1.234,56" -> 123456, "-19,90" -> -1990, "42" -> 4200.
    Thousands separators are stripped before the comma becomes the
    decimal point.

    Raises:
        ValueError: If the value is not a number in that format.
    """
    cleaned = re.sub(r"\s", "", value or "")
    if not re.fullmatch(r"[+-]?\d[\d.]*(,\d+)?", cleaned):
        raise ValueError(f"Invalid amount format: {value!r}")
    cleaned = cleaned.replace(".", "").replace(",", ".")
    return round_half_up(Decimal(cleaned) * 100)
