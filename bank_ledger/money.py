"""
Money Handling Module

Fixed-point amounts with two decimal places and banker's rounding.
NEVER uses float for monetary values.
"""

from decimal import Decimal, ROUND_HALF_EVEN, InvalidOperation, getcontext
from typing import Union

from .errors import ValidationError

# Set global decimal context for financial precision
getcontext().prec = 28

CURRENCY_CODE = "INR"
TWO_PLACES = Decimal("0.01")
ZERO = Decimal("0.00")

AmountLike = Union[str, int, Decimal]


def quantize(value: Decimal) -> Decimal:
    """Round to 2 places using half-even rounding"""
    return value.quantize(TWO_PLACES, rounding=ROUND_HALF_EVEN)


def to_amount(value: AmountLike) -> Decimal:
    """
    Parse a monetary value into a 2-place Decimal.

    Args:
        value: String, int or Decimal. Floats are refused to keep
            binary rounding errors out of balances.

    Returns:
        Quantized Decimal

    Raises:
        ValidationError: If the value is not a finite number
    """
    if isinstance(value, bool) or isinstance(value, float):
        raise ValidationError(f"Amount must be a decimal string or integer, got {type(value).__name__}")
    if value is None:
        raise ValidationError("Amount is required")
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value).strip())
    except InvalidOperation:
        raise ValidationError(f"Invalid amount: {value!r}")
    if not amount.is_finite():
        raise ValidationError(f"Invalid amount: {value!r}")
    return quantize(amount)


def to_positive_amount(value: AmountLike) -> Decimal:
    """Parse an amount that must be strictly greater than zero"""
    amount = to_amount(value)
    if amount <= ZERO:
        raise ValidationError("Amount must be greater than zero")
    return amount


def format_amount(value: Decimal) -> str:
    """Format for display"""
    return f"{CURRENCY_CODE} {quantize(value):,.2f}"
