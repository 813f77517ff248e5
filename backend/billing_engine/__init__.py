"""
Billing Document Calculation & Reconciliation Engine
"""
from .financial_precision import (
    to_decimal,
    round_financial,
    to_float,
    remaining_amount,
    BillingError,
    ValidationError,
    InvalidLineItem,
    InvalidRate
)

from .line_items import (
    LineItemAmounts,
    compute_line_item
)

from .document_totals import (
    DocumentTotals,
    AMCTotals,
    recompute_totals,
    recompute_amc_totals
)

from .document_types import (
    DocumentType,
    DOCUMENT_TYPES,
    get_document_type,
    DocumentNotFoundError,
    DocumentStateError
)

from .lifecycle import (
    InvalidTransitionError,
    ensure_transition
)

from .atomic_numbering import (
    SequenceAllocator,
    parse_reference_code,
    SequenceError,
    SequenceExhausted,
    AllocationFailed
)

from .payment_ledger import (
    PaymentStatus,
    LedgerUpdate,
    apply_payment,
    revert_payment,
    derive_payment_status,
    PaymentLedgerService,
    LedgerError,
    OverpaymentRejected,
    PaymentNotAllowed,
    LedgerConflictError
)

from .reconciliation import (
    CrossDocumentReconciler,
    ReconciliationResult
)

from .payment_links import (
    PaymentLinkIssuer,
    PaymentTokenGrant,
    PaymentTokenError,
    TokenNotFound,
    TokenAlreadyUsed,
    TokenExpired
)

from .idempotency import OperationInProgress

from .billing_service import BillingDocumentService

__all__ = [
    # Precision & errors
    'to_decimal',
    'round_financial',
    'to_float',
    'remaining_amount',
    'BillingError',
    'ValidationError',
    'InvalidLineItem',
    'InvalidRate',
    # Calculators
    'LineItemAmounts',
    'compute_line_item',
    'DocumentTotals',
    'AMCTotals',
    'recompute_totals',
    'recompute_amc_totals',
    # Document types & lifecycle
    'DocumentType',
    'DOCUMENT_TYPES',
    'get_document_type',
    'DocumentNotFoundError',
    'DocumentStateError',
    'InvalidTransitionError',
    'ensure_transition',
    # Numbering
    'SequenceAllocator',
    'parse_reference_code',
    'SequenceError',
    'SequenceExhausted',
    'AllocationFailed',
    # Ledger
    'PaymentStatus',
    'LedgerUpdate',
    'apply_payment',
    'revert_payment',
    'derive_payment_status',
    'PaymentLedgerService',
    'LedgerError',
    'OverpaymentRejected',
    'PaymentNotAllowed',
    'LedgerConflictError',
    # Reconciliation
    'CrossDocumentReconciler',
    'ReconciliationResult',
    # Payment links
    'PaymentLinkIssuer',
    'PaymentTokenGrant',
    'PaymentTokenError',
    'TokenNotFound',
    'TokenAlreadyUsed',
    'TokenExpired',
    # Idempotency
    'OperationInProgress',
    # Orchestration
    'BillingDocumentService',
]
