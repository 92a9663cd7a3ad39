"""Exact conversion between major currency units (UZS) and minor units (tiyin)."""

from decimal import Decimal, ROUND_HALF_UP
from typing import Union

MINOR_UNITS_PER_MAJOR = 100

_CENT = Decimal("0.01")

Amount = Union[Decimal, int, float, str]


def _as_decimal(amount: Amount) -> Decimal:
    # floats go through str() so 500.1 stays 500.1 rather than its binary expansion
    if isinstance(amount, float):
        return Decimal(str(amount))
    return Decimal(amount)


def to_minor_units(amount_major: Amount) -> int:
    """Convert a major-unit amount to integer minor units.

    Equivalent to ``round(amount_major * 100)`` with halves rounded away
    from zero.

    Args:
        amount_major: Amount in major units (e.g. ``Decimal("500.00")``).

    Returns:
        Amount in minor units (e.g. ``50000``).
    """
    scaled = _as_decimal(amount_major) * MINOR_UNITS_PER_MAJOR
    return int(scaled.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def to_major_units(amount_minor: int) -> Decimal:
    """Convert integer minor units back to a two-decimal major-unit amount."""
    return (Decimal(int(amount_minor)) / MINOR_UNITS_PER_MAJOR).quantize(
        _CENT, rounding=ROUND_HALF_UP
    )
