"""
Money Utilities - Safe Decimal operations for prices.

Prices arrive as JSON numbers or strings from the catalog and from local
storage; everything is normalized to Decimal before arithmetic.
"""
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Union

Number = Union[str, int, float, Decimal, None]

MONEY_PRECISION = Decimal("0.01")


def to_decimal(value: Number) -> Decimal:
    """
    Convert any value to Decimal safely.

    Args:
        value: Value to convert (str, int, float, Decimal, or None)

    Returns:
        Decimal representation of the value, or Decimal("0") if None/invalid
    """
    if value is None:
        return Decimal("0")
    if isinstance(value, Decimal):
        return value
    try:
        if isinstance(value, float):
            # Via str() so 0.1 stays 0.1
            return Decimal(str(value))
        return Decimal(value)
    except (InvalidOperation, ValueError, TypeError):
        return Decimal("0")


def round_money(value: Number) -> Decimal:
    """Round to cents."""
    return to_decimal(value).quantize(MONEY_PRECISION, rounding=ROUND_HALF_UP)


def multiply(value: Number, factor: Number) -> Decimal:
    """Safe multiplication of a price by a factor (usually a quantity)."""
    return to_decimal(value) * to_decimal(factor)


def total(values) -> Decimal:
    """Sum an iterable of prices, rounded to cents."""
    return round_money(sum((to_decimal(v) for v in values), Decimal("0")))

