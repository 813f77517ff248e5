"""
CROSS-DOCUMENT RECONCILIATION

A purchase order and the invoices raised against it are linked only by the
denormalized `po_number` string. Either side can be paid independently, so
both directions re-derive the target's ledger from scratch (idempotent
replacement, never delta application):

- sync_from_source(po_number): PO paid_amount is authoritative. It is
  allocated to the matching invoices in creation order, each invoice taking
  min(remaining PO paid, invoice grand_total).
- sync_to_source(po_number): PO paid_amount = min(sum of invoice paid,
  PO grand_total), but never below the PO's own non-reversed payment
  records; invoiced_total = sum of invoice grand totals.

Zero matching documents is a valid, silent outcome.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from datetime import datetime
from typing import Any, Dict, List, Optional
from motor.motor_asyncio import AsyncIOMotorDatabase
import logging

from billing_engine.financial_precision import (
    ZERO,
    round_financial,
    safe_add,
    safe_subtract,
    to_decimal,
    to_float,
)
from billing_engine.document_types import DocumentType, get_document_type
from billing_engine.payment_ledger import PaymentStatus, ledger_state, promote_lifecycle

logger = logging.getLogger(__name__)


async def applied_payments_total(db: AsyncIOMotorDatabase, document_type: str, document_id, session=None) -> Decimal:
    """Sum of applied_amount over a document's non-reversed payment records."""
    rows = await db.payments.aggregate(
        [
            {"$match": {"document_type": document_type, "document_id": str(document_id), "reversed": {"$ne": True}}},
            {"$group": {"_id": None, "total": {"$sum": "$applied_amount"}}},
        ],
        session=session,
    ).to_list(1)
    return round_financial(rows[0]["total"] if rows and rows[0].get("total") else 0)


@dataclass
class ReconciliationResult:
    po_number: str
    direction: str
    affected_ids: List[str] = field(default_factory=list)
    matched_count: int = 0
    noop: bool = False
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "po_number": self.po_number,
            "direction": self.direction,
            "affected_ids": self.affected_ids,
            "matched_count": self.matched_count,
            "noop": self.noop,
            "reason": self.reason,
        }


class CrossDocumentReconciler:
    """
    Keeps purchase-order and invoice ledgers consistent.

    No cross-document lock is taken: every write is a single update_one per
    document computed from the other side's current figures.
    """

    def __init__(
        self,
        db: AsyncIOMotorDatabase,
        source_type: str = DocumentType.PURCHASE_ORDER,
        target_type: str = DocumentType.INVOICE,
    ):
        self.db = db
        self.source_type = source_type
        self.target_type = target_type
        self.sources = db[get_document_type(source_type).collection]
        self.targets = db[get_document_type(target_type).collection]
        self.target_terminal = get_document_type(target_type).terminal_status

    async def _linked_targets(self, po_number: str, session=None) -> List[Dict[str, Any]]:
        cursor = self.targets.find(
            {"po_number": po_number, "status": {"$ne": self.target_terminal}},
            session=session,
        ).sort([("created_at", 1), ("_id", 1)])
        return await cursor.to_list(length=None)

    async def sync_from_source(self, po_number: str, session=None) -> ReconciliationResult:
        """Push the PO's paid amount down onto its invoices."""
        result = ReconciliationResult(po_number=po_number, direction="po_to_invoices")

        po = await self.sources.find_one({"po_number": po_number}, session=session)
        if not po:
            logger.info(f"[RECONCILE] No purchase order for {po_number}; nothing to do")
            result.noop, result.reason = True, "source_not_found"
            return result

        invoices = await self._linked_targets(po_number, session)
        result.matched_count = len(invoices)
        if not invoices:
            logger.info(f"[RECONCILE] No invoices reference {po_number}; nothing to do")
            result.noop, result.reason = True, "no_linked_documents"
            return result

        pool = round_financial(po.get("paid_amount", 0) or 0)
        now = datetime.utcnow()

        for invoice in invoices:
            grand_total = round_financial(invoice.get("grand_total", 0) or 0)
            allocated = min(pool, grand_total) if pool > ZERO else round_financial(ZERO)
            pool = round_financial(safe_subtract(pool, allocated))

            state = ledger_state(allocated, grand_total, invoice.get("payment_status"))
            lifecycle = promote_lifecycle(
                self.target_type, invoice.get("status", "draft"), state.paid_amount, state.payment_status
            )
            changes = dict(state.as_storage(), status=lifecycle, reconciled_at=now, updated_at=now)

            await self.targets.update_one({"_id": invoice["_id"]}, {"$set": changes}, session=session)
            result.affected_ids.append(str(invoice["_id"]))
            logger.info(
                f"[RECONCILE] {po_number} -> invoice {invoice['_id']}: "
                f"paid={changes['paid_amount']} remaining={changes['remaining_amount']} "
                f"status={changes['payment_status']}"
            )

        if pool > ZERO:
            logger.warning(f"[RECONCILE] {po_number}: {to_float(pool)} of PO payment not covered by invoices")

        return result

    async def sync_to_source(self, po_number: str, session=None) -> ReconciliationResult:
        """Roll invoice payments up onto the PO."""
        result = ReconciliationResult(po_number=po_number, direction="invoices_to_po")

        po = await self.sources.find_one({"po_number": po_number}, session=session)
        if not po:
            logger.info(f"[RECONCILE] No purchase order for {po_number}; nothing to do")
            result.noop, result.reason = True, "source_not_found"
            return result

        invoices = await self._linked_targets(po_number, session)
        result.matched_count = len(invoices)
        if not invoices:
            logger.info(f"[RECONCILE] No invoices reference {po_number}; nothing to do")
            result.noop, result.reason = True, "no_linked_documents"
            return result

        paid_sum = safe_add(*[to_decimal(i.get("paid_amount", 0) or 0) for i in invoices])
        invoiced_total = safe_add(*[to_decimal(i.get("grand_total", 0) or 0) for i in invoices])
        po_total = round_financial(po.get("grand_total", 0) or 0)
        # Payments recorded on the PO itself are never rolled back by its invoices
        own_payments = await applied_payments_total(self.db, self.source_type, po["_id"], session)
        rolled_up = min(round_financial(paid_sum), po_total)
        paid = min(max(rolled_up, own_payments), po_total)

        state = ledger_state(paid, po_total, po.get("payment_status"))
        lifecycle = promote_lifecycle(
            self.source_type, po.get("status", "draft"), state.paid_amount, state.payment_status
        )
        now = datetime.utcnow()
        changes = dict(
            state.as_storage(),
            status=lifecycle,
            invoiced_total=to_float(invoiced_total),
            reconciled_at=now,
            updated_at=now,
        )

        await self.sources.update_one({"_id": po["_id"]}, {"$set": changes}, session=session)
        result.affected_ids.append(str(po["_id"]))
        logger.info(
            f"[RECONCILE] invoices -> {po_number}: paid={changes['paid_amount']} "
            f"invoiced={changes['invoiced_total']} status={changes['payment_status']}"
        )
        return result
