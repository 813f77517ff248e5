"""
BILLING API ROUTES

Thin HTTP surface over BillingDocumentService. Every engine error is a
typed BillingError subclass; billing_http_error() maps it to a status code:

- ValidationError                   400  {"message", "errors": [{field, message}]}
- LedgerConflictError               409
- OperationInProgress               409
- other ledger errors               400
- TokenExpired                      410  (public reason only)
- other payment-link errors         400  (public reason only)
- DocumentNotFoundError             404
- DocumentStateError / transitions  409
- SequenceError                     503

/pay/{token} routes are public: they never echo internal error text.
"""

from fastapi import APIRouter, HTTPException, Request, status, Depends
from bson import ObjectId, Decimal128
from datetime import datetime
from typing import Optional, Dict, Any
import logging

from auth import get_admin_user, get_current_user
from models import (
    DocumentCreate, DocumentUpdate, StatusChange,
    PaymentCreate, SendPaymentLink, LinkPayment,
    PolicyUpdate, JobRequest
)
from billing_engine.financial_precision import BillingError, ValidationError
from billing_engine.document_types import DocumentNotFoundError, DocumentStateError
from billing_engine.lifecycle import InvalidTransitionError
from billing_engine.atomic_numbering import SequenceError
from billing_engine.payment_ledger import LedgerError, LedgerConflictError, OverpaymentRejected, PaymentNotAllowed
from billing_engine.payment_links import PaymentTokenError, TokenExpired
from billing_engine.ledger_integrity_job import LedgerIntegrityJob
from billing_engine.idempotency import OperationInProgress

logger = logging.getLogger(__name__)


def serialize_doc(doc: Dict[str, Any]) -> Dict[str, Any]:
    """Serialize MongoDB document for JSON response (handles ObjectId, datetime)"""
    if doc is None:
        return None
    result = {}
    for key, value in doc.items():
        if isinstance(value, ObjectId):
            result[key] = str(value)
        elif isinstance(value, Decimal128):
            result[key] = float(value.to_decimal())
        elif isinstance(value, datetime):
            result[key] = value.isoformat()
        elif isinstance(value, dict):
            result[key] = serialize_doc(value)
        elif isinstance(value, list):
            result[key] = [
                serialize_doc(item) if isinstance(item, dict)
                else str(item) if isinstance(item, ObjectId)
                else item
                for item in value
            ]
        else:
            result[key] = value
    return result


def billing_http_error(e: BillingError) -> HTTPException:
    """Map an engine error to the HTTP response staff clients see."""
    if isinstance(e, ValidationError):
        return HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"message": e.message, "errors": e.errors}
        )
    if isinstance(e, PaymentTokenError):
        code = status.HTTP_410_GONE if isinstance(e, TokenExpired) else status.HTTP_400_BAD_REQUEST
        return HTTPException(status_code=code, detail=e.public_reason)
    if isinstance(e, (LedgerConflictError, OperationInProgress)):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    if isinstance(e, LedgerError):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    if isinstance(e, DocumentNotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    if isinstance(e, (DocumentStateError, InvalidTransitionError)):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    if isinstance(e, SequenceError):
        logger.error(f"[BILLING] Numbering unavailable: {e}")
        return HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Document numbering is temporarily unavailable. Please retry."
        )
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


def public_payment_error(e: BillingError) -> HTTPException:
    """Same mapping for the unauthenticated payer, with fixed wording."""
    if isinstance(e, PaymentTokenError):
        return billing_http_error(e)
    logger.info(f"[PAYMENT_LINK] Rejected public payment: {e}")
    if isinstance(e, OverpaymentRejected):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Payment amount must be positive and not exceed the amount due")
    if isinstance(e, PaymentNotAllowed):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="This invoice can no longer be paid")
    if isinstance(e, (LedgerConflictError, OperationInProgress)):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Payment could not be processed. Please retry.")
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Payment could not be processed")


def get_billing_service(request: Request):
    return request.app.state.billing_service


def get_job_engine(request: Request):
    return request.app.state.job_engine


billing_router = APIRouter(prefix="/api/v1", tags=["Billing"])


# ============================================
# DOCUMENT ENDPOINTS
# ============================================

@billing_router.post("/billing/{document_type}", status_code=status.HTTP_201_CREATED)
async def create_document(
    document_type: str,
    data: DocumentCreate,
    current_user: dict = Depends(get_current_user),
    billing=Depends(get_billing_service)
):
    """Create a quotation / invoice / AMC document / purchase order with a new reference number"""
    try:
        doc = await billing.create_document(document_type, data.dict(exclude_unset=True), current_user["user_id"])
    except BillingError as e:
        raise billing_http_error(e)
    return serialize_doc(doc)


@billing_router.get("/billing/{document_type}")
async def list_documents(
    document_type: str,
    payment_status: Optional[str] = None,
    document_status: Optional[str] = None,
    po_number: Optional[str] = None,
    limit: int = 100,
    current_user: dict = Depends(get_current_user),
    billing=Depends(get_billing_service)
):
    try:
        docs = await billing.list_documents(
            document_type,
            payment_status=payment_status,
            status=document_status,
            po_number=po_number,
            limit=limit
        )
    except BillingError as e:
        raise billing_http_error(e)
    return [serialize_doc(d) for d in docs]


@billing_router.get("/billing/{document_type}/{document_id}")
async def get_document(
    document_type: str,
    document_id: str,
    current_user: dict = Depends(get_current_user),
    billing=Depends(get_billing_service)
):
    try:
        doc = await billing.get_document(document_type, document_id)
    except BillingError as e:
        raise billing_http_error(e)
    return serialize_doc(doc)


@billing_router.put("/billing/{document_type}/{document_id}")
async def update_document(
    document_type: str,
    document_id: str,
    data: DocumentUpdate,
    current_user: dict = Depends(get_current_user),
    billing=Depends(get_billing_service)
):
    """Update a document; totals and ledger are recomputed from the line inputs"""
    try:
        doc = await billing.update_document(
            document_type, document_id, data.dict(exclude_unset=True), current_user["user_id"]
        )
    except BillingError as e:
        raise billing_http_error(e)
    return serialize_doc(doc)


@billing_router.delete("/billing/{document_type}/{document_id}")
async def delete_document(
    document_type: str,
    document_id: str,
    current_user: dict = Depends(get_current_user),
    billing=Depends(get_billing_service)
):
    """Delete a draft document"""
    try:
        await billing.delete_document(document_type, document_id, current_user["user_id"])
    except BillingError as e:
        raise billing_http_error(e)
    return {"status": "deleted", "document_id": document_id}


@billing_router.post("/billing/{document_type}/{document_id}/cancel")
async def cancel_document(
    document_type: str,
    document_id: str,
    current_user: dict = Depends(get_current_user),
    billing=Depends(get_billing_service)
):
    try:
        doc = await billing.cancel_document(document_type, document_id, current_user["user_id"])
    except BillingError as e:
        raise billing_http_error(e)
    return serialize_doc(doc)


@billing_router.post("/billing/{document_type}/{document_id}/status")
async def change_status(
    document_type: str,
    document_id: str,
    data: StatusChange,
    current_user: dict = Depends(get_current_user),
    billing=Depends(get_billing_service)
):
    try:
        doc = await billing.change_status(document_type, document_id, data.status, current_user["user_id"])
    except BillingError as e:
        raise billing_http_error(e)
    return serialize_doc(doc)


@billing_router.post("/billing/{quotation_type}/{quotation_id}/convert", status_code=status.HTTP_201_CREATED)
async def create_invoice_from_quotation(
    quotation_type: str,
    quotation_id: str,
    data: Optional[DocumentUpdate] = None,
    current_user: dict = Depends(get_current_user),
    billing=Depends(get_billing_service)
):
    """Raise an invoice from a quotation (AMC quotations raise AMC invoices)"""
    overrides = data.dict(exclude_unset=True) if data else None
    try:
        invoice = await billing.create_invoice_from_quotation(
            quotation_type, quotation_id, current_user["user_id"], overrides
        )
    except BillingError as e:
        raise billing_http_error(e)
    return serialize_doc(invoice)


# ============================================
# PAYMENT ENDPOINTS
# ============================================

@billing_router.post("/billing/{document_type}/{document_id}/payments", status_code=status.HTTP_201_CREATED)
async def record_payment(
    document_type: str,
    document_id: str,
    data: PaymentCreate,
    current_user: dict = Depends(get_current_user),
    billing=Depends(get_billing_service)
):
    """
    Record a payment. Repeating a request with the same operation_id returns
    the original result without applying the payment twice.
    """
    try:
        return await billing.record_payment(
            document_type,
            document_id,
            data.amount,
            payment_method=data.payment_method,
            user_id=current_user["user_id"],
            notes=data.notes,
            operation_id=data.operation_id
        )
    except BillingError as e:
        raise billing_http_error(e)


@billing_router.get("/billing/{document_type}/{document_id}/payments")
async def list_payments(
    document_type: str,
    document_id: str,
    current_user: dict = Depends(get_current_user),
    billing=Depends(get_billing_service)
):
    try:
        payments = await billing.list_payments(document_type, document_id)
    except BillingError as e:
        raise billing_http_error(e)
    return [serialize_doc(p) for p in payments]


@billing_router.get("/billing/{document_type}/{document_id}/history")
async def document_history(
    document_type: str,
    document_id: str,
    current_user: dict = Depends(get_current_user),
    billing=Depends(get_billing_service)
):
    try:
        entries = await billing.get_history(document_type, document_id)
    except BillingError as e:
        raise billing_http_error(e)
    return [serialize_doc(entry) for entry in entries]


@billing_router.post("/payments/{payment_id}/reverse")
async def reverse_payment(
    payment_id: str,
    current_user: dict = Depends(get_current_user),
    billing=Depends(get_billing_service)
):
    try:
        return await billing.reverse_payment(payment_id, current_user["user_id"])
    except BillingError as e:
        raise billing_http_error(e)


@billing_router.post("/reconcile/{po_number}")
async def reconcile_purchase_order(
    po_number: str,
    direction: str = "from_po",
    current_user: dict = Depends(get_current_user),
    billing=Depends(get_billing_service)
):
    """
    Re-run reconciliation for a PO number.
    direction=from_po pushes the PO's paid amount to its invoices;
    direction=to_po rolls invoice payments up to the PO.
    """
    if direction == "from_po":
        result = await billing.reconciler.sync_from_source(po_number)
    elif direction == "to_po":
        result = await billing.reconciler.sync_to_source(po_number)
    else:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="direction must be 'from_po' or 'to_po'"
        )
    return result.to_dict()


# ============================================
# PAYMENT LINKS
# ============================================

@billing_router.post("/billing/{document_type}/{document_id}/payment-link")
async def send_payment_link(
    document_type: str,
    document_id: str,
    data: SendPaymentLink,
    current_user: dict = Depends(get_current_user),
    billing=Depends(get_billing_service)
):
    try:
        result = await billing.send_payment_link(
            document_id,
            base_url=data.base_url,
            to_address=data.to_address,
            user_id=current_user["user_id"],
            document_type=document_type
        )
    except BillingError as e:
        raise billing_http_error(e)
    return serialize_doc(result)


@billing_router.get("/pay/{token}")
async def preview_payment_link(token: str, billing=Depends(get_billing_service)):
    """Public: invoice summary behind a payment link"""
    try:
        summary = await billing.preview_payment_link(token)
    except BillingError as e:
        raise public_payment_error(e)
    return serialize_doc(summary)


@billing_router.post("/pay/{token}")
async def pay_via_link(token: str, data: LinkPayment, billing=Depends(get_billing_service)):
    """Public: pay through a single-use link"""
    try:
        result = await billing.pay_via_link(
            token, data.amount, payment_method=data.payment_method, payer=data.payer
        )
    except BillingError as e:
        raise public_payment_error(e)
    return {
        "status": "paid",
        "document_number": result["document_number"],
        "amount": result["amount"],
        "remaining_amount": result["remaining_amount"],
        "payment_status": result["payment_status"],
    }


# ============================================
# ADMIN: POLICIES, JOBS, INTEGRITY
# ============================================

@billing_router.get("/settings/billing-policies")
async def get_billing_policies(
    current_user: dict = Depends(get_current_user),
    billing=Depends(get_billing_service)
):
    return await billing.policy.get_all_policies()


@billing_router.put("/settings/billing-policies")
async def update_billing_policy(
    data: PolicyUpdate,
    current_user: dict = Depends(get_admin_user),
    billing=Depends(get_billing_service)
):
    try:
        return await billing.policy.update_policy(data.key, data.value)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@billing_router.post("/jobs", status_code=status.HTTP_202_ACCEPTED)
async def schedule_job(
    data: JobRequest,
    current_user: dict = Depends(get_admin_user),
    engine=Depends(get_job_engine)
):
    try:
        job_id = await engine.schedule_job(data.job_type, scheduled_by=current_user["user_id"])
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return await engine.run_job_async(job_id)


@billing_router.get("/jobs/{job_id}")
async def get_job(
    job_id: str,
    current_user: dict = Depends(get_admin_user),
    engine=Depends(get_job_engine)
):
    job = await engine.get_job_status(job_id)
    if not job:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")
    return serialize_doc(job)


@billing_router.post("/integrity-check")
async def run_integrity_check(
    current_user: dict = Depends(get_admin_user),
    billing=Depends(get_billing_service)
):
    """Synchronous ledger integrity report (no auto-fix)"""
    return await LedgerIntegrityJob(billing.db).run()
