"""
Money helpers -- Decimal-only monetary arithmetic.

All monetary amounts in the kernel are ``Decimal`` quantized to cents.
Floats are rejected at the boundary: binary floating point cannot
represent most currency values exactly.
"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

from leadpay_kernel.exceptions import ValidationError

CENTS = Decimal("0.01")
ZERO = Decimal("0.00")


def parse_amount(value: Any, field: str = "amount") -> Decimal:
    """
    Convert caller input to a Decimal without rounding.

    Accepts ``Decimal``, ``int`` and numeric ``str``.

    Raises:
        ValidationError: For floats, booleans, non-numeric strings,
            NaN and infinity.
    """
    if isinstance(value, bool) or isinstance(value, float):
        raise ValidationError(
            field=field,
            message=f"{field} must be a Decimal, int or numeric string, not {type(value).__name__}",
            value=value,
        )
    if isinstance(value, Decimal):
        amount = value
    elif isinstance(value, (int, str)):
        try:
            amount = Decimal(str(value).strip())
        except InvalidOperation:
            raise ValidationError(
                field=field, message=f"{field} is not a number: {value!r}", value=value
            ) from None
    else:
        raise ValidationError(
            field=field,
            message=f"{field} must be a Decimal, int or numeric string, not {type(value).__name__}",
            value=value,
        )
    if not amount.is_finite():
        raise ValidationError(field=field, message=f"{field} must be finite", value=value)
    return amount


def to_money(value: Any) -> Decimal:
    """Quantize an already-numeric value (Decimal, int, or DB float) to cents."""
    if value is None:
        return ZERO
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(CENTS, rounding=ROUND_HALF_UP)


def decimal_places(value: Decimal) -> int:
    exponent = value.normalize().as_tuple().exponent
    return max(0, -exponent) if isinstance(exponent, int) else 0
