"""
LIFECYCLE TRANSITIONS

Per-document-type lifecycle status moves (the `status` field).
Payment status is derived separately by the payment ledger.

Usage:
    ensure_transition("invoice", "draft", "sent")       # ok
    ensure_transition("invoice", "paid", "cancelled")   # InvalidTransitionError
"""

from typing import Dict, List, Set
import logging

from billing_engine.financial_precision import BillingError
from billing_engine.document_types import DocumentType

logger = logging.getLogger(__name__)

DRAFT = "draft"


class InvalidTransitionError(BillingError):
    """Raised when attempting an invalid lifecycle transition."""
    def __init__(self, entity: str, from_state: str, to_state: str, allowed: List[str] = None):
        self.entity = entity
        self.from_state = from_state
        self.to_state = to_state
        self.allowed = allowed or []

        allowed_str = f" Allowed transitions from '{from_state}': {self.allowed}" if self.allowed else ""
        message = f"Invalid transition for {entity}: '{from_state}' -> '{to_state}'.{allowed_str}"
        super().__init__(message)


_QUOTATION_TRANSITIONS: Dict[str, Set[str]] = {
    "draft": {"sent", "accepted", "rejected"},
    "sent": {"accepted", "rejected", "expired"},
    "expired": {"sent", "rejected"},
    "accepted": set(),
    "rejected": set(),
}

_INVOICE_TRANSITIONS: Dict[str, Set[str]] = {
    "draft": {"sent", "cancelled"},
    "sent": {"paid", "cancelled"},
    "paid": set(),
    "cancelled": set(),
}

TRANSITIONS: Dict[str, Dict[str, Set[str]]] = {
    DocumentType.QUOTATION: _QUOTATION_TRANSITIONS,
    DocumentType.AMC_QUOTATION: _QUOTATION_TRANSITIONS,
    DocumentType.INVOICE: _INVOICE_TRANSITIONS,
    DocumentType.AMC_INVOICE: _INVOICE_TRANSITIONS,
    DocumentType.PURCHASE_ORDER: {
        "draft": {"sent", "confirmed", "cancelled"},
        "sent": {"confirmed", "cancelled"},
        "confirmed": {"partially_received", "received", "cancelled"},
        "partially_received": {"received"},
        "received": set(),
        "cancelled": set(),
    },
}


def allowed_transitions(document_type: str, from_state: str) -> List[str]:
    return sorted(TRANSITIONS.get(document_type, {}).get(from_state, set()))


def can_transition(document_type: str, from_state: str, to_state: str) -> bool:
    return to_state in TRANSITIONS.get(document_type, {}).get(from_state, set())


def ensure_transition(document_type: str, from_state: str, to_state: str) -> None:
    if not can_transition(document_type, from_state, to_state):
        raise InvalidTransitionError(
            document_type, from_state, to_state, allowed_transitions(document_type, from_state)
        )
    logger.debug(f"[LIFECYCLE] {document_type}: {from_state} -> {to_state}")


def is_deletable(status: str) -> bool:
    """Only draft documents may be hard-deleted."""
    return status == DRAFT
