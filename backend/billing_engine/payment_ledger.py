"""
PAYMENT LEDGER STATE

States (payment_status):
- pending    paid_amount == 0
- partial    0 < paid_amount < grand_total
- paid       paid_amount >= grand_total (remaining forced to exactly 0)
- overdue    set by the overdue sweep from due_date, never from amounts
- cancelled  explicit user action, never reached from amount changes

The pure transition functions are shared by quotations, invoices, AMC
documents and purchase orders. PaymentLedgerService persists a transition
as one compare-and-set update per document.
"""

from dataclasses import dataclass
from decimal import Decimal
from datetime import datetime
from typing import Any, Dict, Optional, Tuple
from motor.motor_asyncio import AsyncIOMotorDatabase
import asyncio
import logging

from billing_engine.financial_precision import (
    ZERO,
    BillingError,
    Numeric,
    ValidationError,
    round_financial,
    remaining_amount,
    safe_add,
    safe_subtract,
    to_decimal,
    to_float,
)
from billing_engine.document_types import (
    DocumentNotFoundError,
    get_document_type,
    object_id,
)
from billing_engine.lifecycle import DRAFT, can_transition

logger = logging.getLogger(__name__)


class PaymentStatus:
    PENDING = "pending"
    PARTIAL = "partial"
    PAID = "paid"
    OVERDUE = "overdue"
    CANCELLED = "cancelled"


class LedgerError(BillingError):
    """Base class for ledger rule violations"""
    pass


class OverpaymentRejected(LedgerError):
    """Raised for a non-positive payment or one that exceeds the grand total"""
    def __init__(self, message: str, amount=None, remaining=None):
        self.amount = amount
        self.remaining = remaining
        super().__init__(message)


class PaymentNotAllowed(LedgerError):
    """Raised when paying a cancelled/rejected document"""
    pass


class LedgerConflictError(LedgerError):
    """Raised when a concurrent writer kept changing the document under us"""
    pass


@dataclass(frozen=True)
class LedgerUpdate:
    paid_amount: Decimal
    remaining_amount: Decimal
    payment_status: str
    excess_amount: Decimal = ZERO

    def as_storage(self) -> Dict[str, Any]:
        return {
            "paid_amount": to_float(self.paid_amount),
            "remaining_amount": to_float(self.remaining_amount),
            "payment_status": self.payment_status,
        }


def derive_payment_status(
    paid_amount: Numeric,
    grand_total: Numeric,
    current_status: Optional[str] = None,
) -> str:
    """
    Payment status from amounts. An overdue document stays overdue until it
    is fully paid; a cancelled one stays cancelled.
    """
    if current_status == PaymentStatus.CANCELLED:
        return PaymentStatus.CANCELLED

    paid = round_financial(paid_amount or 0)
    total = round_financial(grand_total or 0)

    if paid > ZERO and paid >= total:
        return PaymentStatus.PAID
    if current_status == PaymentStatus.OVERDUE:
        return PaymentStatus.OVERDUE
    if paid > ZERO:
        return PaymentStatus.PARTIAL
    return PaymentStatus.PENDING


def ledger_state(
    paid_amount: Numeric,
    grand_total: Numeric,
    current_status: Optional[str] = None,
) -> LedgerUpdate:
    """Re-derive a full ledger state from an absolute paid amount (no delta rules)."""
    paid = round_financial(paid_amount or 0)
    total = round_financial(grand_total or 0)
    if paid < ZERO:
        paid = round_financial(ZERO)
    status = derive_payment_status(paid, total, current_status)
    if status == PaymentStatus.PAID:
        return LedgerUpdate(paid, round_financial(ZERO), status)
    return LedgerUpdate(paid, remaining_amount(total, paid), status)


def apply_payment(
    current_paid: Numeric,
    grand_total: Numeric,
    payment_delta: Numeric,
    tolerance: Numeric = 0,
    current_status: Optional[str] = None,
) -> LedgerUpdate:
    """
    Apply one payment.

    Raises OverpaymentRejected if the delta is not positive or the new paid
    amount would exceed grand_total + tolerance. A tolerated excess is
    reported in `excess_amount` and paid_amount is capped at grand_total.
    """
    if current_status == PaymentStatus.CANCELLED:
        raise PaymentNotAllowed("Cannot record a payment against a cancelled document")

    try:
        delta = to_decimal(payment_delta)
    except ValidationError:
        raise OverpaymentRejected(f"Payment amount must be a number: {payment_delta!r}")
    if not delta.is_finite() or delta <= ZERO:
        raise OverpaymentRejected(f"Payment amount must be greater than 0: {payment_delta}", amount=payment_delta)

    paid = round_financial(current_paid or 0)
    total = round_financial(grand_total or 0)
    new_paid = round_financial(safe_add(paid, delta))
    limit = safe_add(total, to_decimal(tolerance or 0))

    if new_paid > limit:
        remaining = remaining_amount(total, paid)
        raise OverpaymentRejected(
            f"Payment amount cannot exceed remaining amount: {remaining}",
            amount=to_float(delta),
            remaining=to_float(remaining),
        )

    if new_paid >= total:
        excess = round_financial(safe_subtract(new_paid, total))
        return LedgerUpdate(total, round_financial(ZERO), PaymentStatus.PAID, excess)

    status = derive_payment_status(new_paid, total, current_status)
    return LedgerUpdate(new_paid, remaining_amount(total, new_paid), status)


def revert_payment(
    current_paid: Numeric,
    grand_total: Numeric,
    payment_delta: Numeric,
    current_status: Optional[str] = None,
) -> LedgerUpdate:
    """Un-apply a payment (payment record reversed). Paid floors at 0."""
    delta = to_decimal(payment_delta)
    if not delta.is_finite() or delta <= ZERO:
        raise ValidationError.single("amount", f"Reversal amount must be greater than 0: {payment_delta}")
    new_paid = round_financial(safe_subtract(current_paid or 0, delta))
    if new_paid < ZERO:
        new_paid = round_financial(ZERO)
    return ledger_state(new_paid, grand_total, current_status)


def promote_lifecycle(document_type: str, status: str, paid_amount: Numeric, payment_status: str) -> str:
    """
    Lifecycle side of a payment: a draft that receives money becomes 'sent';
    a type with a paid lifecycle status (invoices) moves there when fully paid,
    and back to 'sent' if a reversal or reconciliation un-pays it.
    """
    config = get_document_type(document_type)
    if status == DRAFT and round_financial(paid_amount or 0) > ZERO:
        status = "sent"
    if not config.paid_status:
        return status
    if payment_status == PaymentStatus.PAID and can_transition(document_type, status, config.paid_status):
        return config.paid_status
    if status == config.paid_status and payment_status != PaymentStatus.PAID:
        return "sent"
    return status


class PaymentLedgerService:
    """
    Persists ledger transitions.

    Each write is a single update_one guarded by the paid_amount/grand_total
    that the transition was computed from, so a concurrent payment forces a
    re-read instead of a lost update.
    """

    MAX_RETRIES = 5
    RETRY_DELAY_MS = 10

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db

    async def _load(self, document_type: str, document_id, session=None) -> Dict[str, Any]:
        config = get_document_type(document_type)
        doc = await self.db[config.collection].find_one(
            {"_id": object_id(document_type, document_id)}, session=session
        )
        if not doc:
            raise DocumentNotFoundError(document_type, document_id)
        return doc

    async def _compare_and_set(self, document_type: str, doc: Dict[str, Any], changes: Dict[str, Any], session=None) -> bool:
        config = get_document_type(document_type)
        changes = dict(changes, updated_at=datetime.utcnow())
        result = await self.db[config.collection].update_one(
            {
                "_id": doc["_id"],
                "paid_amount": doc.get("paid_amount"),
                "grand_total": doc.get("grand_total"),
            },
            {"$set": changes},
            session=session,
        )
        return result.matched_count == 1

    async def record_payment(
        self,
        document_type: str,
        document_id,
        amount: Numeric,
        tolerance: Numeric = 0,
        session=None,
    ) -> Tuple[Dict[str, Any], LedgerUpdate]:
        """
        Apply a payment to a stored document.

        Returns (document after update, ledger update).
        """
        config = get_document_type(document_type)

        for attempt in range(self.MAX_RETRIES):
            doc = await self._load(document_type, document_id, session)
            if doc.get("status") == config.terminal_status:
                raise PaymentNotAllowed(
                    f"Cannot process payment for {doc.get('status')} {document_type}"
                )

            update = apply_payment(
                doc.get("paid_amount", 0),
                doc.get("grand_total", 0),
                amount,
                tolerance=tolerance,
                current_status=doc.get("payment_status"),
            )
            lifecycle = promote_lifecycle(
                document_type, doc.get("status", DRAFT), update.paid_amount, update.payment_status
            )
            changes = dict(update.as_storage(), status=lifecycle)

            if await self._compare_and_set(document_type, doc, changes, session):
                doc.update(changes)
                logger.info(
                    f"[LEDGER] {document_type}:{doc['_id']} +{to_float(amount)} -> "
                    f"paid={changes['paid_amount']} status={changes['payment_status']}"
                )
                return doc, update

            logger.warning(f"[LEDGER] Concurrent update on {document_type}:{document_id}, retry {attempt + 1}")
            await asyncio.sleep(self.RETRY_DELAY_MS * (attempt + 1) / 1000)

        raise LedgerConflictError(
            f"Failed to record payment on {document_type}:{document_id} after {self.MAX_RETRIES} attempts"
        )

    async def reverse_payment(
        self,
        document_type: str,
        document_id,
        amount: Numeric,
        session=None,
    ) -> Tuple[Dict[str, Any], LedgerUpdate]:
        """Un-apply a payment; a paid invoice drops back to 'sent'."""
        for attempt in range(self.MAX_RETRIES):
            doc = await self._load(document_type, document_id, session)
            update = revert_payment(
                doc.get("paid_amount", 0),
                doc.get("grand_total", 0),
                amount,
                current_status=doc.get("payment_status"),
            )
            lifecycle = promote_lifecycle(
                document_type, doc.get("status", DRAFT), update.paid_amount, update.payment_status
            )
            changes = dict(update.as_storage(), status=lifecycle)

            if await self._compare_and_set(document_type, doc, changes, session):
                doc.update(changes)
                logger.info(
                    f"[LEDGER] {document_type}:{doc['_id']} -{to_float(amount)} -> "
                    f"paid={changes['paid_amount']} status={changes['payment_status']}"
                )
                return doc, update

            logger.warning(f"[LEDGER] Concurrent update on {document_type}:{document_id}, retry {attempt + 1}")
            await asyncio.sleep(self.RETRY_DELAY_MS * (attempt + 1) / 1000)

        raise LedgerConflictError(
            f"Failed to reverse payment on {document_type}:{document_id} after {self.MAX_RETRIES} attempts"
        )
