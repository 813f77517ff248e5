"""
BILLING ENGINE - DECIMAL PRECISION & FINANCIAL UTILITIES

This module provides:
1. Decimal precision lock (2-decimal places, ROUND_HALF_UP)
2. Safe financial arithmetic
3. Field-level validation errors
4. Rounding at the point each monetary value is produced
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Union, List, Dict, Optional
import logging

logger = logging.getLogger(__name__)

# Precision configuration
DECIMAL_PLACES = 2
QUANTIZE_PATTERN = Decimal('0.01')
ZERO = Decimal('0')
HUNDRED = Decimal('100')
# Largest quantity or unit price accepted on a line
MAX_AMOUNT = Decimal('999999999999.99')

Numeric = Union[float, int, str, Decimal]


class BillingError(Exception):
    """Base class for every error raised by the billing engine"""
    pass


class ValidationError(BillingError):
    """
    Raised for bad input to the calculators or the document service.

    Carries a field-level error list so callers can report every problem
    at once: [{"field": "items[0].quantity", "message": "..."}]
    """

    def __init__(self, errors: List[Dict[str, str]], message: Optional[str] = None):
        self.errors = errors
        if message is None:
            message = "; ".join(f"{e['field']}: {e['message']}" for e in errors)
        self.message = message
        super().__init__(message)

    @classmethod
    def single(cls, field: str, message: str) -> "ValidationError":
        return cls([{"field": field, "message": message}])


class InvalidLineItem(ValidationError):
    """Raised when a line item has a negative or non-numeric quantity/price"""

    def __init__(self, field: str, message: str):
        super().__init__([{"field": field, "message": message}])


class InvalidRate(ValidationError):
    """Raised when a discount or tax rate is outside [0, 100]"""

    def __init__(self, field: str, message: str):
        super().__init__([{"field": field, "message": message}])


def to_decimal(value: Numeric) -> Decimal:
    """
    Convert any numeric value to Decimal.
    Does NOT round - preserves full precision.
    """
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        raise ValidationError.single("value", f"Cannot convert {type(value)} to Decimal")
    if isinstance(value, (int, float)):
        # Convert via string to avoid float precision issues
        return Decimal(str(value))
    if isinstance(value, str):
        try:
            return Decimal(value.strip())
        except InvalidOperation:
            raise ValidationError.single("value", f"Not a number: {value!r}")
    raise ValidationError.single("value", f"Cannot convert {type(value)} to Decimal")


def round_financial(value: Numeric) -> Decimal:
    """Round a value to 2 decimal places using ROUND_HALF_UP."""
    decimal_value = to_decimal(value)
    try:
        return decimal_value.quantize(QUANTIZE_PATTERN, rounding=ROUND_HALF_UP)
    except InvalidOperation:
        raise ValidationError.single("amount", f"Out of range: {value}")


def to_float(value: Numeric) -> float:
    """
    Convert Decimal back to float for MongoDB storage.
    Rounds to 2 decimal places first.
    """
    return float(round_financial(value))


def validate_non_negative(value: Numeric, field_name: str) -> Decimal:
    """
    Validate that an amount is a number and not negative.
    Raises InvalidLineItem if validation fails.
    """
    try:
        decimal_value = to_decimal(value)
    except ValidationError:
        raise InvalidLineItem(field_name, "Must be a number")
    if not decimal_value.is_finite():
        raise InvalidLineItem(field_name, "Must be a finite number")
    if decimal_value < ZERO:
        raise InvalidLineItem(field_name, f"Cannot be negative: {value}")
    if decimal_value > MAX_AMOUNT:
        raise InvalidLineItem(field_name, f"Cannot exceed {MAX_AMOUNT}: {value}")
    return decimal_value


def validate_rate(value: Numeric, field_name: str) -> Decimal:
    """
    Validate that a percentage is within [0, 100].
    Raises InvalidRate if validation fails.
    """
    try:
        decimal_value = to_decimal(value)
    except ValidationError:
        raise InvalidRate(field_name, "Must be a number")
    if not decimal_value.is_finite() or decimal_value < ZERO or decimal_value > HUNDRED:
        raise InvalidRate(field_name, f"Must be between 0 and 100%: {value}")
    return decimal_value


def validate_positive(value: Numeric, field_name: str) -> Decimal:
    """Validate that an amount is strictly positive (> 0)."""
    try:
        decimal_value = to_decimal(value)
    except ValidationError:
        raise ValidationError.single(field_name, "Must be a number")
    if not decimal_value.is_finite() or decimal_value <= ZERO:
        raise ValidationError.single(field_name, f"Must be greater than 0: {value}")
    return decimal_value


def safe_multiply(a: Numeric, b: Numeric) -> Decimal:
    """Safe multiplication preserving precision"""
    return to_decimal(a) * to_decimal(b)


def safe_subtract(a: Numeric, b: Numeric) -> Decimal:
    """Safe subtraction preserving precision"""
    return to_decimal(a) - to_decimal(b)


def safe_add(*values: Numeric) -> Decimal:
    """Safe addition of multiple values"""
    result = ZERO
    for v in values:
        result += to_decimal(v)
    return result


def calculate_percentage(amount: Numeric, percentage: Numeric) -> Decimal:
    """
    Calculate percentage of an amount (unrounded).
    Example: calculate_percentage(1000, 10) = 100
    """
    return to_decimal(amount) * to_decimal(percentage) / HUNDRED


def remaining_amount(grand_total: Numeric, paid_amount: Numeric) -> Decimal:
    """max(0, grand_total - paid_amount), rounded"""
    remaining = round_financial(safe_subtract(grand_total, paid_amount))
    return remaining if remaining > ZERO else round_financial(ZERO)
