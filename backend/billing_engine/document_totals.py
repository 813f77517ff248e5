"""
DOCUMENT TOTALS

Aggregates priced lines into document totals.

LOCKED ORDERING (changing it changes historical totals):
1. Line discount before line tax (LineItemCalculator)
2. subtotal / total_discount / total_tax summed over items + service charges
3. Overall (document-level) discount taken on the post-tax amount
4. Deduction (battery buy-back) priced as its own line and subtracted LAST

AMC offer lines have no line discount; GST mode decides whether a tax line
is generated on top of qty * amc_cost_per_dg.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple
import logging

from billing_engine.financial_precision import (
    ZERO,
    Numeric,
    ValidationError,
    round_financial,
    safe_add,
    safe_multiply,
    safe_subtract,
    calculate_percentage,
    to_float,
    validate_non_negative,
    validate_rate,
)
from billing_engine.line_items import (
    LineItemAmounts,
    apply_line_amounts,
    compute_line_item,
    compute_line_item_unrounded,
    line_inputs,
)

logger = logging.getLogger(__name__)

DEFAULT_GST_RATE = Decimal('18')


@dataclass(frozen=True)
class DocumentTotals:
    subtotal: Decimal
    total_discount: Decimal
    total_tax: Decimal
    overall_discount: Decimal
    overall_discount_amount: Decimal
    deduction_amount: Decimal
    grand_total: Decimal
    round_off: Decimal
    items: List[Dict[str, Any]] = field(default_factory=list)
    service_charges: List[Dict[str, Any]] = field(default_factory=list)
    battery_buy_back: Optional[Dict[str, Any]] = None

    def as_storage(self) -> Dict[str, Any]:
        return {
            "subtotal": to_float(self.subtotal),
            "total_discount": to_float(self.total_discount),
            "total_tax": to_float(self.total_tax),
            "overall_discount": float(self.overall_discount),
            "overall_discount_amount": to_float(self.overall_discount_amount),
            "deduction_amount": to_float(self.deduction_amount),
            "grand_total": to_float(self.grand_total),
            "round_off": to_float(self.round_off),
            "items": self.items,
            "service_charges": self.service_charges,
            "battery_buy_back": self.battery_buy_back,
        }


@dataclass(frozen=True)
class AMCTotals:
    subtotal: Decimal
    total_tax: Decimal
    cgst: Decimal
    sgst: Decimal
    igst: Decimal
    overall_discount: Decimal
    overall_discount_amount: Decimal
    grand_total: Decimal
    round_off: Decimal
    gst_included: bool
    inter_state: bool
    offer_items: List[Dict[str, Any]] = field(default_factory=list)

    # AMC offers carry no line discount
    total_discount: Decimal = ZERO

    def as_storage(self) -> Dict[str, Any]:
        return {
            "subtotal": to_float(self.subtotal),
            "total_discount": to_float(self.total_discount),
            "total_tax": to_float(self.total_tax),
            "cgst": to_float(self.cgst),
            "sgst": to_float(self.sgst),
            "igst": to_float(self.igst),
            "overall_discount": float(self.overall_discount),
            "overall_discount_amount": to_float(self.overall_discount_amount),
            "deduction_amount": 0.0,
            "grand_total": to_float(self.grand_total),
            "round_off": to_float(self.round_off),
            "gst_included": self.gst_included,
            "inter_state": self.inter_state,
            "offer_items": self.offer_items,
        }


def _price_lines(
    lines: Optional[Iterable[Mapping[str, Any]]],
    path: str,
    errors: List[Dict[str, str]],
) -> Tuple[List[Dict[str, Any]], List[LineItemAmounts]]:
    """Price every line, collecting field errors under `path[i].field`."""
    priced: List[Dict[str, Any]] = []
    amounts: List[LineItemAmounts] = []
    for index, line in enumerate(lines or []):
        try:
            priced.append(apply_line_amounts(line))
            amounts.append(compute_line_item(**line_inputs(line)))
        except ValidationError as e:
            for err in e.errors:
                errors.append({"field": f"{path}[{index}].{err['field']}", "message": err["message"]})
    return priced, amounts


def recompute_totals(
    items: Optional[Iterable[Mapping[str, Any]]],
    overall_discount: Numeric = 0,
    battery_buy_back: Optional[Mapping[str, Any]] = None,
    service_charges: Optional[Iterable[Mapping[str, Any]]] = None,
) -> DocumentTotals:
    """
    Recompute document totals from raw line inputs.

    Pure: identical input always gives identical output. All line errors are
    collected and raised together as one ValidationError.
    """
    items = list(items or [])
    service_charges = list(service_charges or [])
    errors: List[Dict[str, str]] = []

    priced_items, item_amounts = _price_lines(items, "items", errors)
    priced_services, service_amounts = _price_lines(service_charges, "service_charges", errors)

    priced_deduction = None
    deduction_amounts = None
    if battery_buy_back:
        try:
            priced_deduction = apply_line_amounts(battery_buy_back)
            deduction_amounts = compute_line_item(**line_inputs(battery_buy_back))
        except ValidationError as e:
            for err in e.errors:
                errors.append({"field": f"battery_buy_back.{err['field']}", "message": err["message"]})

    try:
        overall_pct = validate_rate(overall_discount or 0, "overall_discount")
    except ValidationError as e:
        errors.extend(e.errors)
        overall_pct = ZERO

    if errors:
        raise ValidationError(errors)

    all_amounts = item_amounts + service_amounts
    subtotal = round_financial(safe_add(*[a.line_subtotal for a in all_amounts]))
    total_discount = round_financial(safe_add(*[a.discount_amount for a in all_amounts]))
    total_tax = round_financial(safe_add(*[a.tax_amount for a in all_amounts]))

    before_overall = round_financial(safe_add(safe_subtract(subtotal, total_discount), total_tax))
    overall_discount_amount = round_financial(calculate_percentage(before_overall, overall_pct))
    deduction_amount = deduction_amounts.total_price if deduction_amounts else round_financial(ZERO)
    grand_total = round_financial(
        safe_subtract(safe_subtract(before_overall, overall_discount_amount), deduction_amount)
    )

    if grand_total < ZERO:
        raise ValidationError.single(
            "battery_buy_back",
            f"Deduction {deduction_amount} exceeds the document total {before_overall - overall_discount_amount}",
        )

    # Residual against the same formula evaluated without intermediate rounding
    raw_before = safe_add(*[compute_line_item_unrounded(**line_inputs(l)) for l in items + service_charges])
    raw_grand = safe_subtract(raw_before, calculate_percentage(raw_before, overall_pct))
    if battery_buy_back:
        raw_grand = safe_subtract(raw_grand, compute_line_item_unrounded(**line_inputs(battery_buy_back)))
    round_off = round_financial(safe_subtract(grand_total, raw_grand))

    return DocumentTotals(
        subtotal=subtotal,
        total_discount=total_discount,
        total_tax=total_tax,
        overall_discount=overall_pct,
        overall_discount_amount=overall_discount_amount,
        deduction_amount=deduction_amount,
        grand_total=grand_total,
        round_off=round_off,
        items=priced_items,
        service_charges=priced_services,
        battery_buy_back=priced_deduction,
    )


def recompute_amc_totals(
    offer_items: Optional[Iterable[Mapping[str, Any]]],
    gst_included: bool = True,
    overall_discount: Numeric = 0,
    inter_state: bool = False,
    gst_rate: Numeric = DEFAULT_GST_RATE,
) -> AMCTotals:
    """
    AMC offer totals.

    gst_included=True  -> tax = qty * amc_cost_per_dg * gst_rate / 100 is added on top
    gst_included=False -> the cost already is the taxable total; no tax line

    Intra-state tax is split equally into CGST/SGST; inter-state goes to IGST.
    """
    offer_items = list(offer_items or [])
    errors: List[Dict[str, str]] = []
    rate = validate_rate(gst_rate, "gst_rate")

    priced: List[Dict[str, Any]] = []
    subtotal = ZERO
    total_tax = ZERO
    raw_total = ZERO
    for index, item in enumerate(offer_items):
        try:
            qty = validate_non_negative(item.get("qty", 0), "qty")
            cost = validate_non_negative(item.get("amc_cost_per_dg", 0), "amc_cost_per_dg")
        except ValidationError as e:
            for err in e.errors:
                errors.append({"field": f"offer_items[{index}].{err['field']}", "message": err["message"]})
            continue

        item_subtotal = round_financial(safe_multiply(qty, cost))
        item_tax = round_financial(calculate_percentage(item_subtotal, rate)) if gst_included else round_financial(ZERO)
        item_total = round_financial(safe_add(item_subtotal, item_tax))

        subtotal += item_subtotal
        total_tax += item_tax
        raw_sub = safe_multiply(qty, cost)
        raw_total += safe_add(raw_sub, calculate_percentage(raw_sub, rate)) if gst_included else raw_sub

        line = dict(item)
        line.update({
            "total_amc_amount_per_dg": to_float(item_subtotal),
            "tax_amount": to_float(item_tax),
            "total_price": to_float(item_total),
        })
        priced.append(line)

    try:
        overall_pct = validate_rate(overall_discount or 0, "overall_discount")
    except ValidationError as e:
        errors.extend(e.errors)
        overall_pct = ZERO

    if errors:
        raise ValidationError(errors)

    subtotal = round_financial(subtotal)
    total_tax = round_financial(total_tax)
    before_overall = round_financial(safe_add(subtotal, total_tax))
    overall_discount_amount = round_financial(calculate_percentage(before_overall, overall_pct))
    grand_total = round_financial(safe_subtract(before_overall, overall_discount_amount))

    if inter_state:
        cgst = sgst = round_financial(ZERO)
        igst = total_tax
    else:
        cgst = round_financial(total_tax / 2)
        # remainder keeps cgst + sgst == total_tax to the cent
        sgst = round_financial(safe_subtract(total_tax, cgst))
        igst = round_financial(ZERO)

    raw_grand = safe_subtract(raw_total, calculate_percentage(raw_total, overall_pct))
    round_off = round_financial(safe_subtract(grand_total, raw_grand))

    return AMCTotals(
        subtotal=subtotal,
        total_tax=total_tax,
        cgst=cgst,
        sgst=sgst,
        igst=igst,
        overall_discount=overall_pct,
        overall_discount_amount=overall_discount_amount,
        grand_total=grand_total,
        round_off=round_off,
        gst_included=bool(gst_included),
        inter_state=bool(inter_state),
        offer_items=priced,
    )
