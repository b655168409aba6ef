"""Conversion between decimal currency amounts and integer minor units.

Rounding is half away from zero (ROUND_HALF_UP on non-negative values), applied
to the decimal string form of the input so that 1.005 rounds to 101 and not 100.
"""
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Union

from .errors import InvalidAmount


Number = Union[int, float, str, Decimal]

MINOR_UNITS_PER_MAJOR = 100
BASIS_POINTS_PER_PERCENT = 100

# Largest value a BIGINT column can hold
MAX_STORED_INTEGER = 2 ** 63 - 1


def _scale(amount: Number, factor: int) -> int:
    if isinstance(amount, bool) or amount is None:
        raise InvalidAmount(f"Not a numeric amount: {amount!r}")

    try:
        value = Decimal(str(amount))
    except (InvalidOperation, ValueError):
        raise InvalidAmount(f"Not a numeric amount: {amount!r}")

    if not value.is_finite():
        raise InvalidAmount(f"Amount must be finite: {amount!r}")
    if value < 0:
        raise InvalidAmount(f"Amount must not be negative: {amount!r}")

    return int((value * factor).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def to_minor_units(amount: Number) -> int:
    """Convert a decimal amount (e.g. 120.50) to minor units (12050)"""
    return _scale(amount, MINOR_UNITS_PER_MAJOR)


def to_decimal(minor_units: int) -> float:
    """Convert minor units back to a decimal amount.

    Exact for values produced by to_minor_units from amounts with at most two
    fractional digits; finer precision is lost on the way in.
    """
    return minor_units / MINOR_UNITS_PER_MAJOR


def to_basis_points(percent: Number) -> int:
    """Convert a percentage tax rate (20 or 7.5) to basis points (2000, 750)"""
    return _scale(percent, BASIS_POINTS_PER_PERCENT)
