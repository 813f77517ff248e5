"""
LINE ITEM CALCULATOR

LOCKED FORMULAS (every value rounded to 2 places, ROUND_HALF_UP, as it is produced):
- line_subtotal   = quantity * unit_price
- discount_amount = line_subtotal * discount / 100
- taxable_amount  = line_subtotal - discount_amount
- tax_amount      = taxable_amount * tax_rate / 100
- total_price     = taxable_amount + tax_amount

Derived values are never taken from the caller.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Mapping

from billing_engine.financial_precision import (
    Numeric,
    round_financial,
    safe_multiply,
    safe_subtract,
    safe_add,
    calculate_percentage,
    to_float,
    validate_non_negative,
    validate_rate,
)

# Input keys read from a stored/posted line item
LINE_INPUT_FIELDS = ("quantity", "unit_price", "discount", "tax_rate")
# Keys written back onto the line item
LINE_DERIVED_FIELDS = ("line_subtotal", "discount_amount", "taxable_amount", "tax_amount", "total_price")


@dataclass(frozen=True)
class LineItemAmounts:
    line_subtotal: Decimal
    discount_amount: Decimal
    taxable_amount: Decimal
    tax_amount: Decimal
    total_price: Decimal

    def as_storage(self) -> Dict[str, float]:
        return {name: to_float(getattr(self, name)) for name in LINE_DERIVED_FIELDS}


def compute_line_item(
    quantity: Numeric,
    unit_price: Numeric,
    discount: Numeric = 0,
    tax_rate: Numeric = 0,
) -> LineItemAmounts:
    """
    Compute a single line item's amounts.

    Raises InvalidLineItem for negative/non-numeric quantity or price and
    InvalidRate for rates outside [0, 100].
    """
    qty = validate_non_negative(quantity, "quantity")
    price = validate_non_negative(unit_price, "unit_price")
    discount_rate = validate_rate(discount, "discount")
    tax = validate_rate(tax_rate, "tax_rate")

    line_subtotal = round_financial(safe_multiply(qty, price))
    discount_amount = round_financial(calculate_percentage(line_subtotal, discount_rate))
    taxable_amount = round_financial(safe_subtract(line_subtotal, discount_amount))
    tax_amount = round_financial(calculate_percentage(taxable_amount, tax))
    total_price = round_financial(safe_add(taxable_amount, tax_amount))

    return LineItemAmounts(
        line_subtotal=line_subtotal,
        discount_amount=discount_amount,
        taxable_amount=taxable_amount,
        tax_amount=tax_amount,
        total_price=total_price,
    )


def compute_line_item_unrounded(
    quantity: Numeric,
    unit_price: Numeric,
    discount: Numeric = 0,
    tax_rate: Numeric = 0,
) -> Decimal:
    """Full-precision total_price, used only to surface round_off."""
    line_subtotal = safe_multiply(quantity, unit_price)
    taxable = safe_subtract(line_subtotal, calculate_percentage(line_subtotal, discount))
    return safe_add(taxable, calculate_percentage(taxable, tax_rate))


def line_inputs(line: Mapping[str, Any]) -> Dict[str, Any]:
    """Pick calculator inputs off a posted line, defaulting missing rates to 0."""
    return {
        "quantity": line.get("quantity", 0),
        "unit_price": line.get("unit_price", 0),
        "discount": line.get("discount", 0) or 0,
        "tax_rate": line.get("tax_rate", 0) or 0,
    }


def apply_line_amounts(line: Mapping[str, Any]) -> Dict[str, Any]:
    """Return a copy of the line with derived amounts recomputed from its inputs."""
    amounts = compute_line_item(**line_inputs(line))
    result = {k: v for k, v in line.items() if k not in LINE_DERIVED_FIELDS}
    result.update(amounts.as_storage())
    return result
