"""
Money Utilities - Safe Decimal operations for monetary values.

Avoids float precision issues by using Decimal throughout.
"""
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Union

# Default precision for money operations (2 decimal places)
MONEY_PRECISION = Decimal("0.01")


def to_decimal(value: Union[str, int, float, Decimal, None]) -> Decimal:
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
        return value if value.is_finite() else Decimal("0")

    if isinstance(value, bool):
        return Decimal("0")

    try:
        # Convert via string to avoid float precision issues
        if isinstance(value, float):
            result = Decimal(str(value))
        else:
            result = Decimal(str(value).strip())
    except (InvalidOperation, ValueError, TypeError):
        return Decimal("0")
    return result if result.is_finite() else Decimal("0")


def to_price(value: Union[str, int, float, Decimal, None]) -> Decimal:
    """Convert to a non-negative unit price."""
    decimal_value = to_decimal(value)
    return decimal_value if decimal_value > 0 else Decimal("0")


def round_money(value: Union[str, int, float, Decimal]) -> Decimal:
    """
    Round monetary value to cents.

    Args:
        value: Value to round

    Returns:
        Rounded Decimal value
    """
    return to_decimal(value).quantize(MONEY_PRECISION, rounding=ROUND_HALF_UP)


def to_float(value: Union[str, int, float, Decimal]) -> float:
    """
    Convert Decimal to float for JSON serialization.

    Args:
        value: Value to convert

    Returns:
        Float value rounded to 2 decimal places
    """
    return float(round_money(value))
