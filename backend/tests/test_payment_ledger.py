"""
Payment ledger tests: pure transitions and the compare-and-set service
"""
import asyncio
import itertools
from decimal import Decimal

import pytest
from bson import ObjectId

from billing_engine.document_types import DocumentNotFoundError
from billing_engine.payment_ledger import (
    LedgerConflictError,
    OverpaymentRejected,
    PaymentLedgerService,
    PaymentNotAllowed,
    PaymentStatus,
    apply_payment,
    derive_payment_status,
    ledger_state,
    promote_lifecycle,
    revert_payment,
)
from conftest import stored_document


class TestApplyPayment:
    """Single payment transitions"""

    def test_partial_payment(self):
        update = apply_payment(0, 1000, 400)
        assert update.paid_amount == Decimal("400.00")
        assert update.remaining_amount == Decimal("600.00")
        assert update.payment_status == PaymentStatus.PARTIAL

    def test_completing_payment(self):
        update = apply_payment(400, 1000, 600)
        assert update.paid_amount == Decimal("1000.00")
        assert update.remaining_amount == Decimal("0.00")
        assert update.payment_status == PaymentStatus.PAID
        assert update.excess_amount == Decimal("0.00")

    def test_overpayment_rejected_with_remaining(self):
        with pytest.raises(OverpaymentRejected) as exc:
            apply_payment(400, 1000, "600.01")
        assert exc.value.remaining == 600.0

    @pytest.mark.parametrize("amount", [0, -10, "abc"])
    def test_non_positive_amount_rejected(self, amount):
        with pytest.raises(OverpaymentRejected):
            apply_payment(0, 1000, amount)

    def test_tolerated_excess_is_capped(self):
        update = apply_payment(0, 1000, 1003, tolerance=5)
        assert update.paid_amount == Decimal("1000.00")
        assert update.excess_amount == Decimal("3.00")
        assert update.payment_status == PaymentStatus.PAID

    def test_excess_beyond_tolerance_rejected(self):
        with pytest.raises(OverpaymentRejected):
            apply_payment(0, 1000, 1006, tolerance=5)

    def test_cancelled_document_refuses_payment(self):
        with pytest.raises(PaymentNotAllowed):
            apply_payment(0, 1000, 100, current_status=PaymentStatus.CANCELLED)

    def test_overdue_sticks_until_fully_paid(self):
        partial = apply_payment(0, 1000, 100, current_status=PaymentStatus.OVERDUE)
        assert partial.payment_status == PaymentStatus.OVERDUE
        settled = apply_payment(100, 1000, 900, current_status=PaymentStatus.OVERDUE)
        assert settled.payment_status == PaymentStatus.PAID

    def test_order_independent(self):
        payments = ["100", "250.55", "649.45"]
        finals = set()
        for order in itertools.permutations(payments):
            paid = Decimal("0")
            for amount in order:
                paid = apply_payment(paid, 1000, amount).paid_amount
            finals.add(paid)
        assert finals == {Decimal("1000.00")}


class TestDerivedState:
    """Status derivation, reversal and lifecycle promotion"""

    @pytest.mark.parametrize(
        "paid,total,expected",
        [
            (0, 1000, "pending"),
            (1, 1000, "partial"),
            (1000, 1000, "paid"),
            (0, 0, "pending"),
        ],
    )
    def test_derive_payment_status(self, paid, total, expected):
        assert derive_payment_status(paid, total) == expected

    def test_cancelled_is_never_derived_away(self):
        assert derive_payment_status(1000, 1000, PaymentStatus.CANCELLED) == PaymentStatus.CANCELLED

    def test_ledger_state_forces_zero_remaining_when_paid(self):
        state = ledger_state(1200, 1000)
        assert state.payment_status == PaymentStatus.PAID
        assert state.remaining_amount == Decimal("0.00")

    def test_revert_payment(self):
        update = revert_payment(1000, 1000, 400)
        assert update.paid_amount == Decimal("600.00")
        assert update.remaining_amount == Decimal("400.00")
        assert update.payment_status == PaymentStatus.PARTIAL

    def test_revert_floors_at_zero(self):
        update = revert_payment(100, 1000, 500)
        assert update.paid_amount == Decimal("0.00")
        assert update.payment_status == PaymentStatus.PENDING

    def test_paid_invoice_promoted_from_draft(self):
        assert promote_lifecycle("invoice", "draft", 1000, PaymentStatus.PAID) == "paid"

    def test_partial_quotation_leaves_draft(self):
        assert promote_lifecycle("quotation", "draft", 100, PaymentStatus.PARTIAL) == "sent"

    def test_unpaid_invoice_drops_back_to_sent(self):
        assert promote_lifecycle("invoice", "paid", 500, PaymentStatus.PARTIAL) == "sent"

    def test_purchase_order_status_untouched_by_payment(self):
        assert promote_lifecycle("purchase_order", "confirmed", 100, PaymentStatus.PAID) == "confirmed"


class TestPaymentLedgerService:
    """Persisted ledger writes"""

    async def test_record_payment(self, db):
        result = await db.invoices.insert_one(stored_document("invoice", 1000))
        ledger = PaymentLedgerService(db)

        doc, update = await ledger.record_payment("invoice", result.inserted_id, 400)

        assert update.payment_status == "partial"
        stored = await db.invoices.find_one({"_id": result.inserted_id})
        assert stored["paid_amount"] == 400.0
        assert stored["remaining_amount"] == 600.0
        assert stored["payment_status"] == "partial"
        assert doc["paid_amount"] == 400.0

    async def test_full_payment_marks_invoice_paid(self, db):
        result = await db.invoices.insert_one(stored_document("invoice", 1000))
        ledger = PaymentLedgerService(db)

        await ledger.record_payment("invoice", str(result.inserted_id), 1000)

        stored = await db.invoices.find_one({"_id": result.inserted_id})
        assert stored["status"] == "paid"
        assert stored["payment_status"] == "paid"

    async def test_overpayment_leaves_document_unchanged(self, db):
        result = await db.invoices.insert_one(stored_document("invoice", 1000, paid_amount=900))
        ledger = PaymentLedgerService(db)

        with pytest.raises(OverpaymentRejected):
            await ledger.record_payment("invoice", result.inserted_id, 200)

        stored = await db.invoices.find_one({"_id": result.inserted_id})
        assert stored["paid_amount"] == 900.0

    async def test_cancelled_document_refuses_payment(self, db):
        result = await db.invoices.insert_one(stored_document("invoice", 1000, status="cancelled"))
        with pytest.raises(PaymentNotAllowed):
            await PaymentLedgerService(db).record_payment("invoice", result.inserted_id, 100)

    async def test_missing_document(self, db):
        with pytest.raises(DocumentNotFoundError):
            await PaymentLedgerService(db).record_payment("invoice", ObjectId(), 100)

    async def test_malformed_id(self, db):
        with pytest.raises(DocumentNotFoundError):
            await PaymentLedgerService(db).record_payment("invoice", "not-an-id", 100)

    async def test_concurrent_payments_all_applied(self, db):
        result = await db.invoices.insert_one(stored_document("invoice", 1000))
        ledger = PaymentLedgerService(db)

        await asyncio.gather(*[
            ledger.record_payment("invoice", result.inserted_id, 100) for _ in range(3)
        ])

        stored = await db.invoices.find_one({"_id": result.inserted_id})
        assert stored["paid_amount"] == 300.0
        assert stored["remaining_amount"] == 700.0

    async def test_conflict_after_retries(self, db, monkeypatch):
        result = await db.invoices.insert_one(stored_document("invoice", 1000))
        ledger = PaymentLedgerService(db)
        ledger.RETRY_DELAY_MS = 0

        async def always_stale(*args, **kwargs):
            return False

        monkeypatch.setattr(ledger, "_compare_and_set", always_stale)

        with pytest.raises(LedgerConflictError):
            await ledger.record_payment("invoice", result.inserted_id, 100)

    async def test_reverse_payment(self, db):
        result = await db.invoices.insert_one(
            stored_document("invoice", 1000, paid_amount=1000, status="paid")
        )
        ledger = PaymentLedgerService(db)

        doc, update = await ledger.reverse_payment("invoice", result.inserted_id, 250)

        assert update.paid_amount == Decimal("750.00")
        stored = await db.invoices.find_one({"_id": result.inserted_id})
        assert stored["payment_status"] == "partial"
        assert stored["status"] == "sent"
        assert stored["remaining_amount"] == 250.0
