"""
BILLING DOCUMENT SERVICE

Orchestrates the billing engine for every document type:

- create/update recompute totals from raw line inputs (never trusting
  caller-supplied derived amounts) and re-derive the ledger
- payments go through PaymentLedgerService (compare-and-set per document)
  and are then reconciled across the purchase order / invoice link
- payment links are issued, mailed, previewed and consumed exactly once
- mark_overdue() is the overdue sweep run by the background job engine

Validation and ledger errors abort the operation. Reconciliation against
documents that no longer exist is a no-op; a storage failure during
reconciliation is logged and the already-committed payment stands.
"""

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ReturnDocument
from pymongo.errors import PyMongoError
from bson import ObjectId
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional
import asyncio
import inspect
import logging

from billing_engine.financial_precision import (
    ZERO,
    Numeric,
    BillingError,
    ValidationError,
    round_financial,
    safe_subtract,
    to_float,
    validate_non_negative,
)
from billing_engine.document_totals import recompute_amc_totals, recompute_totals
from billing_engine.document_types import (
    DocumentNotFoundError,
    DocumentStateError,
    DocumentType,
    DocumentTypeConfig,
    DOCUMENT_TYPES,
    LineShape,
    get_document_type,
    object_id,
)
from billing_engine.lifecycle import DRAFT, ensure_transition, can_transition, is_deletable
from billing_engine.atomic_numbering import SequenceAllocator
from billing_engine.payment_ledger import (
    OverpaymentRejected,
    PaymentLedgerService,
    PaymentNotAllowed,
    PaymentStatus,
    LedgerConflictError,
    apply_payment,
    ledger_state,
    promote_lifecycle,
)
from billing_engine.reconciliation import CrossDocumentReconciler, ReconciliationResult
from billing_engine.payment_links import PaymentLinkIssuer, TokenNotFound
from billing_engine.policy_service import PolicyService
from billing_engine.audit_service import AuditAction, AuditService
from billing_engine.idempotency import IdempotentOperation
from billing_engine.mail_service import build_payment_link_email

logger = logging.getLogger(__name__)

# Fields owned by the engine; never copied from a request payload
CONTROLLED_FIELDS = frozenset({
    "_id",
    "document_type",
    "document_number",
    "status",
    "payment_status",
    "paid_amount",
    "remaining_amount",
    "excess_amount",
    "subtotal",
    "total_discount",
    "total_tax",
    "cgst",
    "sgst",
    "igst",
    "overall_discount_amount",
    "deduction_amount",
    "grand_total",
    "round_off",
    "invoiced_total",
    "source_quotation",
    "source_quotation_type",
    "converted_to",
    "reconciled_at",
    "created_by",
    "created_at",
    "updated_at",
})

# Fields carried from a quotation onto the invoice created from it
QUOTATION_CARRY_FIELDS = (
    "items",
    "offer_items",
    "service_charges",
    "battery_buy_back",
    "overall_discount",
    "gst_included",
    "inter_state",
    "gst_rate",
    "customer_id",
    "customer_name",
    "customer_email",
    "customer_address",
    "po_number",
    "notes",
    "terms",
)

PUBLIC_LINK_FIELDS = (
    "document_number",
    "customer_name",
    "grand_total",
    "paid_amount",
    "remaining_amount",
    "payment_status",
    "due_date",
)


# converted_to while an invoice is being raised from a quotation
CONVERSION_PENDING = "pending"


class PaymentSource:
    MANUAL = "manual"
    EMAIL_LINK = "email_link"
    ADVANCE = "advance"


class BillingDocumentService:
    PAYMENTS_COLLECTION = "payments"

    def __init__(
        self,
        db: AsyncIOMotorDatabase,
        mailer=None,
        policy: Optional[PolicyService] = None,
        payment_link_base_url: Optional[str] = None,
    ):
        self.db = db
        self.mailer = mailer
        self.policy = policy or PolicyService(db)
        self.payment_link_base_url = payment_link_base_url
        self.allocator = SequenceAllocator(db)
        self.ledger = PaymentLedgerService(db)
        self.reconciler = CrossDocumentReconciler(db)
        self.links = PaymentLinkIssuer(db)
        self.audit = AuditService(db)
        self.payments = db[self.PAYMENTS_COLLECTION]

    # =========================================================================
    # INTERNAL HELPERS
    # =========================================================================

    def _collection(self, config: DocumentTypeConfig):
        return self.db[config.collection]

    async def _load(self, document_type: str, document_id, session=None) -> Dict[str, Any]:
        config = get_document_type(document_type)
        doc = await self._collection(config).find_one(
            {"_id": object_id(document_type, document_id)}, session=session
        )
        if not doc:
            raise DocumentNotFoundError(document_type, document_id)
        return doc

    async def _compute_totals(self, config: DocumentTypeConfig, source: Mapping[str, Any]) -> Dict[str, Any]:
        """
        Totals for a document's raw inputs, as storage fields.

        Structural errors (missing lines, unsupported charges) and calculator
        errors are raised together in one ValidationError.
        """
        errors: List[Dict[str, str]] = []

        if not source.get(config.line_shape):
            errors.append({"field": config.line_shape, "message": "At least one line item is required"})
        if source.get("service_charges") and not config.supports_service_charges:
            errors.append({"field": "service_charges", "message": f"Not supported for {config.name}"})
        if source.get("battery_buy_back") and not config.supports_deduction:
            errors.append({"field": "battery_buy_back", "message": f"Not supported for {config.name}"})

        totals = None
        try:
            if config.line_shape == LineShape.OFFER_ITEMS:
                gst_rate = source.get("gst_rate")
                if gst_rate is None:
                    gst_rate = await self.policy.get_amc_gst_rate()
                totals = recompute_amc_totals(
                    source.get("offer_items"),
                    gst_included=source["gst_included"] if source.get("gst_included") is not None else True,
                    overall_discount=source.get("overall_discount") or 0,
                    inter_state=source.get("inter_state", False),
                    gst_rate=gst_rate,
                )
            else:
                totals = recompute_totals(
                    source.get("items"),
                    overall_discount=source.get("overall_discount") or 0,
                    battery_buy_back=source.get("battery_buy_back") if config.supports_deduction else None,
                    service_charges=source.get("service_charges") if config.supports_service_charges else None,
                )
        except ValidationError as e:
            errors.extend(e.errors)

        if errors:
            raise ValidationError(errors)

        storage = totals.as_storage()
        if config.line_shape == LineShape.OFFER_ITEMS:
            storage["gst_rate"] = float(gst_rate)
        return storage

    async def _reconcile(self, document_type: str, doc: Dict[str, Any], to_source: bool, session=None) -> Optional[ReconciliationResult]:
        """
        Propagate a ledger change across the PO/invoice link.

        to_source=True rolls invoice figures up to the PO; False pushes the
        PO's paid amount down to its invoices.
        """
        po_number = doc.get("po_number")
        if not po_number:
            return None
        if document_type not in (DocumentType.INVOICE, DocumentType.PURCHASE_ORDER):
            return None

        try:
            if to_source:
                return await self.reconciler.sync_to_source(po_number, session=session)
            return await self.reconciler.sync_from_source(po_number, session=session)
        except PyMongoError as e:
            logger.error(f"[RECONCILE] Failed to reconcile {po_number} after {document_type} change: {e}")
            return None

    async def _send_mail(self, to_address: str, subject: str, html_body: str) -> bool:
        if self.mailer is None:
            logger.warning("[PAYMENT_LINK] No mailer configured; link not emailed")
            return False
        try:
            if inspect.iscoroutinefunction(self.mailer.send):
                return bool(await self.mailer.send(to_address, subject, html_body))
            return bool(await asyncio.to_thread(self.mailer.send, to_address, subject, html_body))
        except OSError as e:
            logger.error(f"[PAYMENT_LINK] Mail delivery to {to_address} failed: {e}")
            return False

    # =========================================================================
    # READ
    # =========================================================================

    async def get_document(self, document_type: str, document_id, session=None) -> Dict[str, Any]:
        return await self._load(document_type, document_id, session)

    async def list_documents(
        self,
        document_type: str,
        payment_status: Optional[str] = None,
        status: Optional[str] = None,
        po_number: Optional[str] = None,
        limit: int = 100,
    ) -> List[Dict[str, Any]]:
        config = get_document_type(document_type)
        query: Dict[str, Any] = {}
        if payment_status:
            query["payment_status"] = payment_status
        if status:
            query["status"] = status
        if po_number:
            query["po_number"] = po_number
        cursor = self._collection(config).find(query).sort("created_at", -1).limit(limit)
        return await cursor.to_list(length=limit)

    async def list_payments(self, document_type: str, document_id) -> List[Dict[str, Any]]:
        doc = await self._load(document_type, document_id)
        cursor = self.payments.find(
            {"document_type": document_type, "document_id": str(doc["_id"])}
        ).sort("created_at", 1)
        return await cursor.to_list(length=None)

    async def get_history(self, document_type: str, document_id) -> List[Dict[str, Any]]:
        """Audit entries for one document, oldest first."""
        doc = await self._load(document_type, document_id)
        return await self.audit.get_history(document_type, doc["_id"])

    # =========================================================================
    # CREATE / UPDATE / DELETE / CANCEL
    # =========================================================================

    async def create_document(
        self,
        document_type: str,
        payload: Mapping[str, Any],
        user_id: Optional[str] = None,
        session=None,
    ) -> Dict[str, Any]:
        """
        Validate, number, price and insert a new document.

        An optional `paid_amount` in the payload is an advance payment and is
        recorded through the same ledger rules as any other payment.
        """
        config = get_document_type(document_type)
        return await self._create(config, payload, user_id, payload.get("paid_amount") or 0, session=session)

    async def _create(
        self,
        config: DocumentTypeConfig,
        payload: Mapping[str, Any],
        user_id: Optional[str],
        paid_amount: Numeric,
        extra: Optional[Dict[str, Any]] = None,
        seeded: bool = False,
        session=None,
    ) -> Dict[str, Any]:
        errors: List[Dict[str, str]] = []
        totals: Dict[str, Any] = {}
        try:
            totals = await self._compute_totals(config, payload)
        except ValidationError as e:
            errors.extend(e.errors)

        advance = ZERO
        try:
            advance = validate_non_negative(paid_amount or 0, "paid_amount")
        except ValidationError as e:
            errors.extend(e.errors)

        if advance > ZERO and not seeded and not await self.policy.is_advance_payment_allowed():
            errors.append({"field": "paid_amount", "message": "Advance payments are disabled"})

        if errors:
            raise ValidationError(errors)

        grand_total = totals["grand_total"]
        excess = ZERO
        if seeded:
            # Carried over from a quotation: capped at the new total
            advance = min(round_financial(advance), round_financial(grand_total))
            ledger = ledger_state(advance, grand_total)
        elif advance > ZERO:
            tolerance = await self.policy.get_overpayment_tolerance()
            ledger = apply_payment(0, grand_total, advance, tolerance=tolerance)
            excess = ledger.excess_amount
        else:
            ledger = ledger_state(0, grand_total)

        document_number = await self.allocator.allocate(config.name, session=session)
        now = datetime.utcnow()

        doc = {k: v for k, v in payload.items() if k not in CONTROLLED_FIELDS}
        doc.update(totals)
        doc.update(ledger.as_storage())
        doc.update(extra or {})
        doc.update({
            "document_type": config.name,
            "document_number": document_number,
            "status": promote_lifecycle(config.name, DRAFT, ledger.paid_amount, ledger.payment_status),
            "created_by": user_id,
            "created_at": now,
            "updated_at": now,
        })
        if config.name == DocumentType.PURCHASE_ORDER:
            doc["po_number"] = document_number

        result = await self._collection(config).insert_one(doc, session=session)
        doc["_id"] = result.inserted_id
        logger.info(
            f"[BILLING] Created {config.name} {document_number}: "
            f"grand_total={doc['grand_total']} paid={doc['paid_amount']}"
        )

        if advance > ZERO and not seeded:
            await self._insert_payment(
                config.name, doc, advance, ledger.paid_amount, "advance", user_id,
                source=PaymentSource.ADVANCE, session=session,
            )
            if excess > ZERO:
                logger.warning(f"[BILLING] {document_number}: advance exceeded total by {to_float(excess)}")

        if config.name == DocumentType.INVOICE and doc.get("po_number"):
            # A new invoice with its own money rolls up; otherwise it takes its share of the PO
            await self._reconcile(config.name, doc, to_source=advance > ZERO, session=session)

        await self.audit.log_action(
            entity_type=config.name,
            entity_id=doc["_id"],
            action_type=AuditAction.CREATE,
            user_id=user_id,
            document_number=document_number,
            new_value={"grand_total": doc["grand_total"], "paid_amount": doc["paid_amount"]},
            session=session,
        )
        return doc

    async def update_document(
        self,
        document_type: str,
        document_id,
        payload: Mapping[str, Any],
        user_id: Optional[str] = None,
        session=None,
    ) -> Dict[str, Any]:
        """
        Apply field changes and recompute totals and ledger.

        Raises DocumentStateError for cancelled/rejected documents and
        OverpaymentRejected when the new grand total is below what has
        already been paid.
        """
        config = get_document_type(document_type)
        doc = await self._load(document_type, document_id, session)

        if doc.get("status") == config.terminal_status:
            raise DocumentStateError(f"{document_type} {doc.get('document_number')} is {doc['status']} and locked")

        changes = {k: v for k, v in payload.items() if k not in CONTROLLED_FIELDS}
        merged = {**doc, **changes}
        totals = await self._compute_totals(config, merged)

        paid = round_financial(doc.get("paid_amount", 0) or 0)
        grand_total = round_financial(totals["grand_total"])
        if paid > grand_total:
            raise OverpaymentRejected(
                f"Amount already paid ({to_float(paid)}) exceeds the new grand total ({to_float(grand_total)})",
                amount=to_float(paid),
                remaining=0.0,
            )

        ledger = ledger_state(paid, grand_total, doc.get("payment_status"))
        status = promote_lifecycle(document_type, doc.get("status", DRAFT), ledger.paid_amount, ledger.payment_status)

        update_fields = dict(changes)
        update_fields.update(totals)
        update_fields.update(ledger.as_storage())
        update_fields.update({"status": status, "updated_at": datetime.utcnow()})

        result = await self._collection(config).update_one(
            {"_id": doc["_id"], "paid_amount": doc.get("paid_amount")},
            {"$set": update_fields},
            session=session,
        )
        if result.matched_count != 1:
            raise LedgerConflictError(
                f"{document_type} {doc.get('document_number')} changed while updating; retry"
            )

        old_po_number = doc.get("po_number")
        old_values = {"grand_total": doc.get("grand_total"), "paid_amount": doc.get("paid_amount")}
        doc.update(update_fields)

        # Notes or address edits leave the PO link alone
        linked_figures_changed = (
            old_po_number != doc.get("po_number")
            or round_financial(old_values["grand_total"] or 0) != round_financial(doc["grand_total"])
            or round_financial(old_values["paid_amount"] or 0) != round_financial(doc["paid_amount"])
        )
        if linked_figures_changed and document_type == DocumentType.INVOICE:
            await self._reconcile(document_type, doc, to_source=True, session=session)
            if old_po_number and old_po_number != doc.get("po_number"):
                await self._reconcile(document_type, {"po_number": old_po_number}, to_source=True, session=session)
        elif linked_figures_changed and document_type == DocumentType.PURCHASE_ORDER:
            await self._reconcile(document_type, doc, to_source=False, session=session)

        await self.audit.log_action(
            entity_type=document_type,
            entity_id=doc["_id"],
            action_type=AuditAction.UPDATE,
            user_id=user_id,
            document_number=doc.get("document_number"),
            old_value=old_values,
            new_value={"grand_total": doc["grand_total"], "paid_amount": doc["paid_amount"]},
            session=session,
        )
        logger.info(f"[BILLING] Updated {document_type} {doc.get('document_number')}: grand_total={doc['grand_total']}")
        return doc

    async def delete_document(self, document_type: str, document_id, user_id: Optional[str] = None, session=None) -> bool:
        """Hard-delete a draft. Anything past draft must be cancelled instead."""
        config = get_document_type(document_type)
        doc = await self._load(document_type, document_id, session)

        if not is_deletable(doc.get("status", DRAFT)):
            raise DocumentStateError(
                f"Only draft documents can be deleted; {doc.get('document_number')} is {doc.get('status')}"
            )

        result = await self._collection(config).delete_one(
            {"_id": doc["_id"], "status": DRAFT}, session=session
        )
        if result.deleted_count != 1:
            raise DocumentStateError(f"{doc.get('document_number')} changed state while deleting")

        await self.links.collection.delete_many(
            {"document_id": str(doc["_id"]), "is_used": False}, session=session
        )
        await self.audit.log_action(
            entity_type=document_type,
            entity_id=doc["_id"],
            action_type=AuditAction.DELETE,
            user_id=user_id,
            document_number=doc.get("document_number"),
            old_value={"grand_total": doc.get("grand_total")},
            session=session,
        )
        logger.info(f"[BILLING] Deleted draft {document_type} {doc.get('document_number')}")
        return True

    async def cancel_document(self, document_type: str, document_id, user_id: Optional[str] = None, session=None) -> Dict[str, Any]:
        """
        Move a document to its terminal status (cancelled / rejected).

        Documents with payments on them must have those payments reversed
        first; outstanding payment links for the document are revoked.
        """
        config = get_document_type(document_type)
        doc = await self._load(document_type, document_id, session)
        current = doc.get("status", DRAFT)

        ensure_transition(document_type, current, config.terminal_status)
        if round_financial(doc.get("paid_amount", 0) or 0) > ZERO:
            raise DocumentStateError(
                f"Cannot cancel {doc.get('document_number')}: payments recorded. Reverse them first."
            )

        now = datetime.utcnow()
        changes = {
            "status": config.terminal_status,
            "payment_status": PaymentStatus.CANCELLED,
            "updated_at": now,
        }
        result = await self._collection(config).update_one(
            {"_id": doc["_id"], "status": current, "paid_amount": doc.get("paid_amount")},
            {"$set": changes},
            session=session,
        )
        if result.matched_count != 1:
            raise LedgerConflictError(f"{document_type} {doc.get('document_number')} changed while cancelling; retry")
        doc.update(changes)

        await self.links.collection.delete_many(
            {"document_id": str(doc["_id"]), "is_used": False}, session=session
        )
        if document_type == DocumentType.INVOICE:
            await self._reconcile(document_type, doc, to_source=True, session=session)

        await self.audit.log_action(
            entity_type=document_type,
            entity_id=doc["_id"],
            action_type=AuditAction.CANCEL,
            user_id=user_id,
            document_number=doc.get("document_number"),
            old_value={"status": current},
            new_value={"status": config.terminal_status},
            session=session,
        )
        logger.info(f"[BILLING] {document_type} {doc.get('document_number')}: {current} -> {config.terminal_status}")
        return doc

    async def change_status(
        self,
        document_type: str,
        document_id,
        new_status: str,
        user_id: Optional[str] = None,
        session=None,
    ) -> Dict[str, Any]:
        """Explicit lifecycle move (send, accept, confirm, receive ...)."""
        config = get_document_type(document_type)
        if new_status == config.terminal_status:
            return await self.cancel_document(document_type, document_id, user_id, session)
        if config.paid_status and new_status == config.paid_status:
            raise DocumentStateError(f"'{new_status}' is set by recording payments, not directly")

        doc = await self._load(document_type, document_id, session)
        current = doc.get("status", DRAFT)
        ensure_transition(document_type, current, new_status)

        result = await self._collection(config).update_one(
            {"_id": doc["_id"], "status": current},
            {"$set": {"status": new_status, "updated_at": datetime.utcnow()}},
            session=session,
        )
        if result.matched_count != 1:
            raise DocumentStateError(f"{doc.get('document_number')} changed state concurrently; retry")
        doc["status"] = new_status

        await self.audit.log_action(
            entity_type=document_type,
            entity_id=doc["_id"],
            action_type=AuditAction.STATUS_CHANGE,
            user_id=user_id,
            document_number=doc.get("document_number"),
            old_value={"status": current},
            new_value={"status": new_status},
            session=session,
        )
        return doc

    # =========================================================================
    # PAYMENTS
    # =========================================================================

    async def _insert_payment(
        self,
        document_type: str,
        doc: Dict[str, Any],
        amount: Numeric,
        applied_amount: Numeric,
        payment_method: str,
        user_id: Optional[str],
        notes: Optional[str] = None,
        operation_id: Optional[str] = None,
        source: str = PaymentSource.MANUAL,
        session=None,
    ) -> Dict[str, Any]:
        payment = {
            "document_type": document_type,
            "document_id": str(doc["_id"]),
            "document_number": doc.get("document_number"),
            "amount": to_float(amount),
            # Portion that landed on the ledger; differs from amount only for a tolerated overpayment
            "applied_amount": to_float(applied_amount),
            "payment_method": payment_method,
            "notes": notes,
            "operation_id": operation_id,
            "source": source,
            "created_by": user_id,
            "created_at": datetime.utcnow(),
            "reversed": False,
            "reversed_at": None,
        }
        result = await self.payments.insert_one(payment, session=session)
        payment["_id"] = result.inserted_id
        return payment

    async def record_payment(
        self,
        document_type: str,
        document_id,
        amount: Numeric,
        payment_method: str = "cash",
        user_id: Optional[str] = None,
        notes: Optional[str] = None,
        operation_id: Optional[str] = None,
        source: str = PaymentSource.MANUAL,
        session=None,
    ) -> Dict[str, Any]:
        """
        Record one payment against a document.

        A repeated operation_id returns the first response without touching
        the ledger again.
        """
        get_document_type(document_type)

        async with IdempotentOperation(self.db, operation_id, document_type, document_id, session) as op:
            if op.is_duplicate:
                return op.previous_response

            tolerance = await self.policy.get_overpayment_tolerance()
            doc, update = await self.ledger.record_payment(
                document_type, document_id, amount, tolerance=tolerance, session=session
            )
            applied = safe_subtract(amount, update.excess_amount)
            payment = await self._insert_payment(
                document_type, doc, amount, applied, payment_method, user_id,
                notes=notes, operation_id=op.operation_id, source=source, session=session,
            )

            reconciliation = await self._reconcile(
                document_type, doc, to_source=document_type == DocumentType.INVOICE, session=session
            )

            response = {
                "payment_id": str(payment["_id"]),
                "document_type": document_type,
                "document_id": str(doc["_id"]),
                "document_number": doc.get("document_number"),
                "amount": payment["amount"],
                "paid_amount": to_float(update.paid_amount),
                "remaining_amount": to_float(update.remaining_amount),
                "payment_status": update.payment_status,
                "status": doc.get("status"),
                "excess_amount": to_float(update.excess_amount),
                "operation_id": op.operation_id,
                "reconciliation": reconciliation.to_dict() if reconciliation else None,
            }
            await op.record_success(response)

        await self.audit.log_action(
            entity_type=document_type,
            entity_id=doc["_id"],
            action_type=AuditAction.PAYMENT,
            user_id=user_id,
            document_number=doc.get("document_number"),
            new_value={"amount": payment["amount"], "source": source, "paid_amount": response["paid_amount"]},
            session=session,
        )
        return response

    async def reverse_payment(self, payment_id: str, user_id: Optional[str] = None, session=None) -> Dict[str, Any]:
        """
        Un-apply a recorded payment. Each payment can be reversed once; the
        claim is a single guarded update on the payment record.
        """
        if not ObjectId.is_valid(payment_id):
            raise DocumentNotFoundError("payment", payment_id)
        payment_oid = ObjectId(payment_id)

        payment = await self.payments.find_one_and_update(
            {"_id": payment_oid, "reversed": {"$ne": True}},
            {"$set": {"reversed": True, "reversed_at": datetime.utcnow(), "reversed_by": user_id}},
            return_document=ReturnDocument.AFTER,
            session=session,
        )
        if not payment:
            if await self.payments.find_one({"_id": payment_oid}, session=session):
                raise DocumentStateError(f"Payment {payment_id} has already been reversed")
            raise DocumentNotFoundError("payment", payment_id)

        document_type = payment["document_type"]
        amount = payment.get("applied_amount", payment["amount"])
        try:
            doc, update = await self.ledger.reverse_payment(
                document_type, payment["document_id"], amount, session=session
            )
        except (DocumentNotFoundError, LedgerConflictError):
            await self.payments.update_one(
                {"_id": payment_oid},
                {"$set": {"reversed": False, "reversed_at": None, "reversed_by": None}},
                session=session,
            )
            raise

        reconciliation = await self._reconcile(
            document_type, doc, to_source=document_type == DocumentType.INVOICE, session=session
        )

        await self.audit.log_action(
            entity_type=document_type,
            entity_id=doc["_id"],
            action_type=AuditAction.PAYMENT_REVERSAL,
            user_id=user_id,
            document_number=doc.get("document_number"),
            old_value={"payment_id": payment_id, "amount": amount},
            new_value={"paid_amount": to_float(update.paid_amount)},
            session=session,
        )
        return {
            "payment_id": payment_id,
            "document_id": str(doc["_id"]),
            "document_number": doc.get("document_number"),
            "reversed_amount": to_float(amount),
            "paid_amount": to_float(update.paid_amount),
            "remaining_amount": to_float(update.remaining_amount),
            "payment_status": update.payment_status,
            "status": doc.get("status"),
            "reconciliation": reconciliation.to_dict() if reconciliation else None,
        }

    # =========================================================================
    # QUOTATION -> INVOICE
    # =========================================================================

    async def create_invoice_from_quotation(
        self,
        quotation_type: str,
        quotation_id,
        user_id: Optional[str] = None,
        overrides: Optional[Mapping[str, Any]] = None,
        session=None,
    ) -> Dict[str, Any]:
        """
        Raise an invoice from a quotation (AMC quotations produce AMC
        invoices). Money already paid against the quotation seeds the
        invoice, capped at the invoice's grand total.
        """
        quotation_config = get_document_type(quotation_type)
        if not quotation_config.invoice_type:
            raise ValidationError.single("quotation_type", f"{quotation_type} cannot be converted to an invoice")

        quotation = await self._load(quotation_type, quotation_id, session)
        if quotation.get("status") == quotation_config.terminal_status:
            raise DocumentStateError(f"Quotation {quotation.get('document_number')} is {quotation['status']}")

        # Claim the quotation before building the invoice; one converter wins
        quotations = self._collection(quotation_config)
        claimed = await quotations.find_one_and_update(
            {"_id": quotation["_id"], "converted_to": None},
            {"$set": {"converted_to": CONVERSION_PENDING, "updated_at": datetime.utcnow()}},
            return_document=ReturnDocument.AFTER,
            session=session,
        )
        if not claimed:
            current = await quotations.find_one({"_id": quotation["_id"]}, session=session) or quotation
            raise DocumentStateError(
                f"Quotation {quotation.get('document_number')} was already converted to {current.get('converted_to')}"
            )

        invoice_config = get_document_type(quotation_config.invoice_type)
        payload = {k: quotation[k] for k in QUOTATION_CARRY_FIELDS if k in quotation}
        payload.update({k: v for k, v in (overrides or {}).items() if k not in CONTROLLED_FIELDS})

        try:
            invoice = await self._create(
                invoice_config,
                payload,
                user_id,
                quotation.get("paid_amount", 0) or 0,
                extra={
                    "source_quotation": str(quotation["_id"]),
                    "source_quotation_type": quotation_type,
                },
                seeded=True,
                session=session,
            )
        except (BillingError, PyMongoError) as e:
            await quotations.update_one(
                {"_id": quotation["_id"], "converted_to": CONVERSION_PENDING},
                {"$unset": {"converted_to": ""}},
                session=session,
            )
            logger.warning(f"[BILLING] Released {quotation.get('document_number')} after failed conversion: {e}")
            raise

        quotation_changes = {"converted_to": str(invoice["_id"]), "updated_at": datetime.utcnow()}
        if can_transition(quotation_type, quotation.get("status", DRAFT), "accepted"):
            quotation_changes["status"] = "accepted"
        await quotations.update_one(
            {"_id": quotation["_id"]}, {"$set": quotation_changes}, session=session
        )

        await self.audit.log_action(
            entity_type=quotation_type,
            entity_id=quotation["_id"],
            action_type=AuditAction.CONVERT,
            user_id=user_id,
            document_number=quotation.get("document_number"),
            new_value={"invoice_id": str(invoice["_id"]), "invoice_number": invoice["document_number"]},
            session=session,
        )
        logger.info(f"[BILLING] {quotation.get('document_number')} -> {invoice['document_number']}")
        return invoice

    # =========================================================================
    # PAYMENT LINKS
    # =========================================================================

    def _require_link_type(self, document_type: str) -> DocumentTypeConfig:
        config = get_document_type(document_type)
        if not config.paid_status:
            raise ValidationError.single("document_type", f"Payment links are only issued for invoices, not {document_type}")
        return config

    async def send_payment_link(
        self,
        invoice_id,
        base_url: Optional[str] = None,
        to_address: Optional[str] = None,
        user_id: Optional[str] = None,
        document_type: str = DocumentType.INVOICE,
        session=None,
    ) -> Dict[str, Any]:
        """
        Issue a single-use payment link and email it.

        A mail failure is reported as email_sent=False; the link stays valid
        so it can be shared another way.
        """
        config = self._require_link_type(document_type)
        invoice = await self._load(document_type, invoice_id, session)

        if invoice.get("status") == config.terminal_status:
            raise DocumentStateError(f"{invoice.get('document_number')} is {invoice['status']}")
        if invoice.get("payment_status") == PaymentStatus.PAID:
            raise DocumentStateError(f"{invoice.get('document_number')} is already paid")

        to_address = to_address or invoice.get("customer_email")
        if not to_address:
            raise ValidationError.single("to_address", "No email address for this invoice")

        base_url = base_url or self.payment_link_base_url
        if not base_url:
            raise ValidationError.single("base_url", "Payment link base URL is not configured")

        ttl = await self.policy.get_payment_link_ttl()
        token = await self.links.issue(
            invoice["_id"],
            ttl=ttl,
            document_type=document_type,
            metadata={"sent_to": to_address, "sent_by": user_id},
            session=session,
        )
        grant = await self.links.verify(token, session=session)
        link = f"{base_url.rstrip('/')}/{token}"

        html_body = build_payment_link_email(invoice, link, invoice.get("customer_name"))
        email_sent = await self._send_mail(to_address, f"Payment for invoice {invoice.get('document_number')}", html_body)

        if invoice.get("status") == DRAFT and can_transition(document_type, DRAFT, "sent"):
            await self._collection(config).update_one(
                {"_id": invoice["_id"], "status": DRAFT},
                {"$set": {"status": "sent", "updated_at": datetime.utcnow()}},
                session=session,
            )

        await self.audit.log_action(
            entity_type=document_type,
            entity_id=invoice["_id"],
            action_type=AuditAction.PAYMENT_LINK_SENT,
            user_id=user_id,
            document_number=invoice.get("document_number"),
            new_value={"sent_to": to_address, "email_sent": email_sent},
            session=session,
        )
        return {
            "token": token,
            "link": link,
            "expires_at": grant.expires_at,
            "sent_to": to_address,
            "email_sent": email_sent,
        }

    async def preview_payment_link(self, token: str) -> Dict[str, Any]:
        """Public invoice summary behind a valid, unused link."""
        grant = await self.links.verify(token)
        try:
            invoice = await self._load(grant.document_type, grant.document_id)
        except DocumentNotFoundError:
            raise TokenNotFound(token)

        summary = {field: invoice.get(field) for field in PUBLIC_LINK_FIELDS}
        summary["document_type"] = grant.document_type
        summary["expires_at"] = grant.expires_at
        return summary

    async def pay_via_link(
        self,
        token: str,
        amount: Numeric,
        payment_method: str = "online",
        payer: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Pay through an emailed link.

        The amount is checked against the remaining balance before the token
        is consumed, so a rejected amount leaves the link usable.
        """
        grant = await self.links.verify(token)
        config = get_document_type(grant.document_type)
        try:
            invoice = await self._load(grant.document_type, grant.document_id)
        except DocumentNotFoundError:
            raise TokenNotFound(token)

        if invoice.get("status") == config.terminal_status:
            raise PaymentNotAllowed(f"Cannot process payment for {invoice['status']} invoice")
        tolerance = await self.policy.get_overpayment_tolerance()
        apply_payment(
            invoice.get("paid_amount", 0),
            invoice.get("grand_total", 0),
            amount,
            tolerance=tolerance,
            current_status=invoice.get("payment_status"),
        )

        grant = await self.links.verify_and_consume(token, used_by=payer)
        return await self.record_payment(
            grant.document_type,
            grant.document_id,
            amount,
            payment_method=payment_method,
            user_id=None,
            notes=f"Paid via payment link{f' by {payer}' if payer else ''}",
            operation_id=f"payment_link:{token}",
            source=PaymentSource.EMAIL_LINK,
        )

    # =========================================================================
    # OVERDUE SWEEP
    # =========================================================================

    async def mark_overdue(self, now: Optional[datetime] = None) -> int:
        """Flag unpaid invoices past their due date as overdue. Returns count."""
        now = now or datetime.utcnow()
        total = 0
        for config in DOCUMENT_TYPES.values():
            if not config.supports_overdue:
                continue
            result = await self._collection(config).update_many(
                {
                    "due_date": {"$lt": now},
                    "payment_status": {"$in": [PaymentStatus.PENDING, PaymentStatus.PARTIAL]},
                    "status": {"$ne": config.terminal_status},
                },
                {"$set": {"payment_status": PaymentStatus.OVERDUE, "updated_at": now}},
            )
            if result.modified_count:
                logger.info(f"[BILLING] Marked {result.modified_count} {config.name} documents overdue")
            total += result.modified_count
        return total
