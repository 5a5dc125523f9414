"""
Decimal conversion for venue data.

Venue APIs return numbers as JSON floats or numeric strings. Everything is
converted to ``Decimal`` before it is stored or used in a calculation, so
no float arithmetic touches money values.
"""

from decimal import Decimal, InvalidOperation, localcontext
from typing import Any, Optional
import logging

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


def to_decimal(value: Any) -> Optional[Decimal]:
    """
    Convert a venue value to a finite ``Decimal``.

    Floats go through ``str`` so 0.1 becomes Decimal("0.1") rather than its
    binary expansion. None, NaN, infinities, booleans and unparseable input
    become None.
    """
    if value is None or isinstance(value, bool):
        return None

    if isinstance(value, Decimal):
        result = value
    else:
        try:
            result = Decimal(str(value).strip()) if isinstance(value, (int, float, str)) else None
        except InvalidOperation:
            logger.warning(f"Could not convert value to decimal: {value!r}")
            return None

    if result is None or not result.is_finite():
        return None

    # Normalize -0 and drop exponent notation from inputs like "1E+3"
    if result.is_zero():
        return ZERO
    _, digits, exponent = result.as_tuple()
    if exponent > 0:
        # Quantizing 5E+40 to units needs 41 digits of precision
        with localcontext() as ctx:
            ctx.prec = max(ctx.prec, len(digits) + exponent)
            result = result.quantize(Decimal(1))
    return result


def to_decimal_or_zero(value: Any) -> Decimal:
    """``to_decimal`` for required columns: missing or invalid values become 0."""
    result = to_decimal(value)
    return ZERO if result is None else result


def to_plain_string(value: Any) -> Optional[str]:
    """Fixed-point string form of a decimal value, never scientific notation."""
    result = to_decimal(value)
    if result is None:
        return None
    return format(result, "f")
