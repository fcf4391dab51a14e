"""
chipsettle/core/money.py

Decimal money helpers.

Every amount in the system is a decimal.Decimal. Strategies work on integer
cents; conversion is exact and never drops a sub-cent value silently.
"""

from decimal import Decimal, ROUND_HALF_EVEN, InvalidOperation
from typing import Iterable, Union

CENT = Decimal("0.01")
ZERO = Decimal("0")

Number = Union[Decimal, int, float, str]


def to_decimal(value: Number) -> Decimal:
    """
    Coerce input to Decimal. Floats go through repr so 0.1 stays 0.1.
    Raises ValueError for non-numeric or non-finite input.
    """
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, bool):
        raise ValueError(f"Not a money amount: {value!r}")
    elif isinstance(value, (int, str)):
        try:
            result = Decimal(value)
        except InvalidOperation as exc:
            raise ValueError(f"Not a money amount: {value!r}") from exc
    elif isinstance(value, float):
        result = Decimal(repr(value))
    else:
        raise ValueError(f"Not a money amount: {value!r}")
    if not result.is_finite():
        raise ValueError(f"Money amount must be finite: {value!r}")
    return result


def quantize(value: Decimal, places: int = 2, rounding: str = ROUND_HALF_EVEN) -> Decimal:
    return value.quantize(Decimal(1).scaleb(-places), rounding=rounding)


def to_cents(value: Decimal) -> int:
    """Exact conversion. Raises ValueError when value has sub-cent residue."""
    cents = value * 100
    if cents != cents.to_integral_value():
        raise ValueError(f"Amount {value} is not a whole number of cents")
    return int(cents)


def from_cents(cents: int) -> Decimal:
    return (Decimal(cents) / 100).quantize(CENT)


def sub_cent_residue(value: Decimal) -> Decimal:
    """Part of value below one cent (0 for whole-cent amounts)."""
    return abs(value - value.quantize(CENT, rounding="ROUND_DOWN"))


def total(values: Iterable[Decimal]) -> Decimal:
    return sum(values, ZERO)


def fmt(value: Decimal) -> str:
    return f"{quantize(value):,.2f}"
