"""
DECIMAL PRECISION FOR RECORD AMOUNTS

Amounts are stored as floats in MongoDB but compared and combined as
Decimals rounded half-up to 2 places, so schedule totals match the amounts
entered on the form.
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Union, Iterable, Optional

# Precision configuration
DECIMAL_PLACES = 2
QUANTIZE_PATTERN = Decimal('0.01')

Number = Union[float, int, str, Decimal]


class FinancialPrecisionError(Exception):
    """Raised when a value cannot be treated as an amount"""
    pass


def to_decimal(value: Optional[Number]) -> Decimal:
    """
    Convert any numeric value to Decimal without rounding.
    None counts as zero.
    """
    if value is None:
        return Decimal('0')
    if isinstance(value, bool):
        raise FinancialPrecisionError("Cannot convert bool to Decimal")
    if isinstance(value, Decimal):
        return value
    try:
        # Convert via string to avoid float precision issues
        return Decimal(str(value))
    except InvalidOperation:
        raise FinancialPrecisionError(f"Cannot convert {value!r} to Decimal")


def round_financial(value: Optional[Number]) -> Decimal:
    """Round to 2 decimal places, half up"""
    return to_decimal(value).quantize(QUANTIZE_PATTERN, rounding=ROUND_HALF_UP)


def to_float(value: Optional[Number]) -> float:
    """Rounded float for MongoDB storage"""
    return float(round_financial(value))


def safe_add(values: Iterable[Optional[Number]]) -> Decimal:
    result = Decimal('0')
    for v in values:
        result += to_decimal(v)
    return result


def safe_subtract(a: Optional[Number], b: Optional[Number]) -> Decimal:
    return to_decimal(a) - to_decimal(b)


def amounts_match(a: Optional[Number], b: Optional[Number]) -> bool:
    """Equal after rounding both sides; a missing amount never matches"""
    if a is None or b is None:
        return False
    return round_financial(a) == round_financial(b)
