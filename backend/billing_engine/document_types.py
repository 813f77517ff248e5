"""
DOCUMENT TYPE REGISTRY

Each billing document type supplies its own line shape, lifecycle vocabulary
and discount/deduction policy here instead of re-deriving the totals formula.
"""

from dataclasses import dataclass
from typing import Dict, Optional, Tuple

from bson import ObjectId

from billing_engine.financial_precision import BillingError, ValidationError


class DocumentType:
    QUOTATION = "quotation"
    AMC_QUOTATION = "amc_quotation"
    INVOICE = "invoice"
    AMC_INVOICE = "amc_invoice"
    PURCHASE_ORDER = "purchase_order"


class LineShape:
    ITEMS = "items"
    OFFER_ITEMS = "offer_items"


@dataclass(frozen=True)
class DocumentTypeConfig:
    name: str
    prefix: str
    collection: str
    line_shape: str
    statuses: Tuple[str, ...]
    terminal_status: str
    paid_status: Optional[str] = None
    supports_service_charges: bool = False
    supports_deduction: bool = False
    supports_overdue: bool = False
    invoice_type: Optional[str] = None


DOCUMENT_TYPES: Dict[str, DocumentTypeConfig] = {
    DocumentType.QUOTATION: DocumentTypeConfig(
        name=DocumentType.QUOTATION,
        prefix="QT",
        collection="quotations",
        line_shape=LineShape.ITEMS,
        statuses=("draft", "sent", "accepted", "rejected", "expired"),
        terminal_status="rejected",
        supports_service_charges=True,
        supports_deduction=True,
        invoice_type=DocumentType.INVOICE,
    ),
    DocumentType.AMC_QUOTATION: DocumentTypeConfig(
        name=DocumentType.AMC_QUOTATION,
        prefix="AQ",
        collection="amc_quotations",
        line_shape=LineShape.OFFER_ITEMS,
        statuses=("draft", "sent", "accepted", "rejected", "expired"),
        terminal_status="rejected",
        invoice_type=DocumentType.AMC_INVOICE,
    ),
    DocumentType.INVOICE: DocumentTypeConfig(
        name=DocumentType.INVOICE,
        prefix="IN",
        collection="invoices",
        line_shape=LineShape.ITEMS,
        statuses=("draft", "sent", "paid", "cancelled"),
        terminal_status="cancelled",
        paid_status="paid",
        supports_service_charges=True,
        supports_deduction=True,
        supports_overdue=True,
    ),
    DocumentType.AMC_INVOICE: DocumentTypeConfig(
        name=DocumentType.AMC_INVOICE,
        prefix="AI",
        collection="amc_invoices",
        line_shape=LineShape.OFFER_ITEMS,
        statuses=("draft", "sent", "paid", "cancelled"),
        terminal_status="cancelled",
        paid_status="paid",
        supports_overdue=True,
    ),
    DocumentType.PURCHASE_ORDER: DocumentTypeConfig(
        name=DocumentType.PURCHASE_ORDER,
        prefix="PO",
        collection="purchase_orders",
        line_shape=LineShape.ITEMS,
        statuses=("draft", "sent", "confirmed", "partially_received", "received", "cancelled"),
        terminal_status="cancelled",
    ),
}

# Reference-code prefixes, including counter-only types with no document collection
SEQUENCE_PREFIXES: Dict[str, str] = {
    **{name: config.prefix for name, config in DOCUMENT_TYPES.items()},
    "adjustment": "AD",
    "transfer": "TF",
}


def get_document_type(name: str) -> DocumentTypeConfig:
    config = DOCUMENT_TYPES.get(name)
    if config is None:
        raise ValidationError.single(
            "document_type",
            f"Unknown document type '{name}'. Expected one of {sorted(DOCUMENT_TYPES)}",
        )
    return config


class DocumentNotFoundError(BillingError):
    """Raised when a billing document id does not resolve"""
    def __init__(self, document_type: str, document_id):
        self.document_type = document_type
        self.document_id = str(document_id)
        super().__init__(f"{document_type} not found: {document_id}")


class DocumentStateError(BillingError):
    """Raised when a document's lifecycle status forbids the operation"""
    pass


def object_id(document_type: str, document_id) -> ObjectId:
    """Coerce a path/str id to ObjectId; malformed ids resolve to nothing."""
    if isinstance(document_id, ObjectId):
        return document_id
    if not ObjectId.is_valid(document_id):
        raise DocumentNotFoundError(document_type, document_id)
    return ObjectId(document_id)
