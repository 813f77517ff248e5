"""
LEDGER INTEGRITY JOB

Re-derives every billing document's money figures and compares them with
what is stored:

- grand_total recomputed from the stored line inputs
- paid_amount never above grand_total
- remaining_amount == max(0, grand_total - paid_amount)
- payment_status consistent with the amounts (cancelled/overdue exempt)
- paid_amount == sum of non-reversed payment records, for documents whose
  ledger only moves through payments (no PO link, not seeded from a quotation)
- purchase orders: paid_amount never below their own non-reversed payments

Each inconsistent document gets one LEDGER_INTEGRITY_VIOLATION alert. The job
only reports; it never rewrites a document.
"""

from motor.motor_asyncio import AsyncIOMotorDatabase
from decimal import Decimal
from datetime import datetime
from typing import Dict, Any, List, Optional
import logging

from billing_engine.financial_precision import (
    ValidationError,
    round_financial,
    remaining_amount,
    to_decimal,
)
from billing_engine.document_totals import recompute_amc_totals, recompute_totals
from billing_engine.document_types import DOCUMENT_TYPES, DocumentType, DocumentTypeConfig, LineShape
from billing_engine.payment_ledger import PaymentStatus, derive_payment_status
from billing_engine.reconciliation import applied_payments_total

logger = logging.getLogger(__name__)

# One paisa
TOLERANCE = Decimal("0.01")

ALERT_TYPE = "LEDGER_INTEGRITY_VIOLATION"


def discrepancy(field: str, stored, calculated) -> Dict[str, Any]:
    numeric = isinstance(stored, Decimal) and isinstance(calculated, Decimal)
    return {
        "field": field,
        "stored": float(stored) if numeric else stored,
        "calculated": float(calculated) if numeric else calculated,
        "difference": float(abs(stored - calculated)) if numeric else None,
    }


def differs(stored: Decimal, calculated: Decimal) -> bool:
    return abs(to_decimal(stored) - to_decimal(calculated)) > TOLERANCE


def recomputed_grand_total(config: DocumentTypeConfig, doc: Dict[str, Any]) -> Optional[Decimal]:
    """Grand total from the stored inputs; None when those inputs no longer validate."""
    try:
        if config.line_shape == LineShape.OFFER_ITEMS:
            totals = recompute_amc_totals(
                doc.get("offer_items"),
                gst_included=doc["gst_included"] if doc.get("gst_included") is not None else True,
                overall_discount=doc.get("overall_discount") or 0,
                inter_state=doc.get("inter_state", False),
                gst_rate=doc.get("gst_rate", 18),
            )
        else:
            totals = recompute_totals(
                doc.get("items"),
                overall_discount=doc.get("overall_discount") or 0,
                battery_buy_back=doc.get("battery_buy_back"),
                service_charges=doc.get("service_charges"),
            )
    except ValidationError as e:
        logger.warning(f"[INTEGRITY_JOB] {doc.get('document_number')}: stored lines invalid: {e}")
        return None
    return totals.grand_total


def amount_discrepancies(config: DocumentTypeConfig, doc: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Checks that need nothing but the document itself."""
    found = []
    grand = round_financial(doc.get("grand_total") or 0)
    paid = round_financial(doc.get("paid_amount") or 0)
    remaining = round_financial(doc.get("remaining_amount") or 0)

    expected_grand = recomputed_grand_total(config, doc)
    if expected_grand is None:
        found.append(discrepancy("items", None, None))
    elif differs(grand, expected_grand):
        found.append(discrepancy("grand_total", grand, expected_grand))

    if paid > grand:
        found.append(discrepancy("paid_amount", paid, grand))

    expected_remaining = remaining_amount(grand, paid)
    if differs(remaining, expected_remaining):
        found.append(discrepancy("remaining_amount", remaining, expected_remaining))

    status = doc.get("payment_status")
    if status not in (PaymentStatus.CANCELLED, PaymentStatus.OVERDUE):
        expected_status = derive_payment_status(paid, grand)
        if status != expected_status:
            found.append(discrepancy("payment_status", status, expected_status))

    return found


class LedgerIntegrityJob:
    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db

    async def run(self, document_types: Optional[List[str]] = None) -> Dict[str, Any]:
        """
        Check every document of the given types (all types when omitted)
        and return a report of the mismatches found.
        """
        started = datetime.utcnow()
        checked = 0
        mismatches = []

        for name, config in DOCUMENT_TYPES.items():
            if document_types and name not in document_types:
                continue
            async for doc in self.db[config.collection].find({}):
                checked += 1
                found = amount_discrepancies(config, doc)
                found.extend(await self._payment_discrepancies(name, doc))
                if found:
                    mismatches.append(await self._raise_alert(config, doc, found))

        finished = datetime.utcnow()
        log = logger.warning if mismatches else logger.info
        log(f"[INTEGRITY_JOB] {len(mismatches)} of {checked} documents inconsistent")

        return {
            "job_name": "LedgerIntegrityJob",
            "status": "completed",
            "started_at": started.isoformat(),
            "completed_at": finished.isoformat(),
            "duration_ms": round((finished - started).total_seconds() * 1000, 2),
            "documents_checked": checked,
            "mismatches_found": len(mismatches),
            "mismatches": mismatches,
        }

    async def _payment_discrepancies(self, document_type: str, doc: Dict[str, Any]) -> List[Dict[str, Any]]:
        paid = round_financial(doc.get("paid_amount") or 0)
        if document_type == DocumentType.PURCHASE_ORDER:
            # Invoice roll-ups may raise a PO above its own payments, never below
            from_payments = await applied_payments_total(self.db, document_type, doc["_id"])
            if paid < from_payments - TOLERANCE:
                return [discrepancy("paid_amount", paid, from_payments)]
        elif not doc.get("po_number") and not doc.get("source_quotation"):
            from_payments = await applied_payments_total(self.db, document_type, doc["_id"])
            if differs(paid, from_payments):
                return [discrepancy("paid_amount", paid, from_payments)]
        return []

    async def _raise_alert(self, config: DocumentTypeConfig, doc: Dict[str, Any], found: List[Dict[str, Any]]):
        document_id = str(doc["_id"])
        await self.db.alerts.insert_one({
            "alert_type": ALERT_TYPE,
            "severity": "HIGH",
            "document_type": config.name,
            "document_id": document_id,
            "violations": found,
            "detected_at": datetime.utcnow(),
            "resolved": False,
        })
        fields = ", ".join(d["field"] for d in found)
        logger.warning(f"[INTEGRITY_JOB] {config.name} {doc.get('document_number')} mismatch on {fields}")

        return {
            "document_type": config.name,
            "document_id": document_id,
            "document_number": doc.get("document_number"),
            "checked_at": datetime.utcnow().isoformat(),
            "discrepancies": found,
        }


async def run_integrity_check(db: AsyncIOMotorDatabase) -> Dict[str, Any]:
    return await LedgerIntegrityJob(db).run()
