"""Decimal helpers for currency amounts.

All amounts are Decimal. Rounding to the currency minor unit is half-up.
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Any, Iterable

CENT = Decimal("0.01")
ZERO = Decimal("0")


def to_decimal(value: Any) -> Decimal:
    """Convert a value to Decimal, treating None and blanks as zero."""
    if value is None:
        return ZERO
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        return Decimal(str(value))
    if isinstance(value, int):
        return Decimal(value)
    s = str(value).strip().replace("$", "").replace(",", "")
    if s == "":
        return ZERO
    if s.startswith("(") and s.endswith(")"):
        s = "-" + s[1:-1]
    try:
        return Decimal(s)
    except InvalidOperation:
        raise ValueError(f"Not a monetary amount: {value!r}")


def round_money(value: Decimal) -> Decimal:
    """Round to the currency minor unit."""
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def money_sum(values: Iterable[Decimal]) -> Decimal:
    total = ZERO
    for v in values:
        total += v
    return total


def amounts_match(a: Decimal, b: Decimal, tolerance: Decimal = CENT) -> bool:
    """Check if two amounts match within tolerance."""
    return abs(to_decimal(a) - to_decimal(b)) <= tolerance
