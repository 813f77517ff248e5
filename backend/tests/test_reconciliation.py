"""
Cross-document reconciliation tests: purchase order <-> invoices by po_number
"""
from datetime import datetime, timedelta

from billing_engine.reconciliation import CrossDocumentReconciler
from conftest import stored_document

PO_NUMBER = "PO250627-A-000001"


async def _seed_po(db, grand_total, paid_amount=0, **fields):
    doc = stored_document(
        "purchase_order", grand_total, paid_amount,
        document_number=PO_NUMBER, po_number=PO_NUMBER, status="confirmed", **fields
    )
    result = await db.purchase_orders.insert_one(doc)
    return result.inserted_id


async def _seed_invoice(db, grand_total, paid_amount=0, minutes=0, **fields):
    doc = stored_document(
        "invoice", grand_total, paid_amount,
        po_number=PO_NUMBER, created_at=datetime(2025, 6, 27, 10) + timedelta(minutes=minutes), **fields
    )
    result = await db.invoices.insert_one(doc)
    return result.inserted_id


class TestSyncFromSource:
    """PO paid amount allocated down to its invoices"""

    async def test_waterfall_in_creation_order(self, db):
        await _seed_po(db, 7000, 5000)
        first = await _seed_invoice(db, 3000, minutes=0)
        second = await _seed_invoice(db, 4000, minutes=5)

        result = await CrossDocumentReconciler(db).sync_from_source(PO_NUMBER)

        assert result.matched_count == 2
        assert result.affected_ids == [str(first), str(second)]
        a = await db.invoices.find_one({"_id": first})
        b = await db.invoices.find_one({"_id": second})
        assert (a["paid_amount"], a["remaining_amount"], a["payment_status"]) == (3000.0, 0.0, "paid")
        assert a["status"] == "paid"
        assert (b["paid_amount"], b["remaining_amount"], b["payment_status"]) == (2000.0, 2000.0, "partial")

    async def test_replaces_rather_than_adds(self, db):
        await _seed_po(db, 7000, 5000)
        first = await _seed_invoice(db, 3000, paid_amount=3000, status="paid")
        reconciler = CrossDocumentReconciler(db)

        await reconciler.sync_from_source(PO_NUMBER)
        await reconciler.sync_from_source(PO_NUMBER)

        a = await db.invoices.find_one({"_id": first})
        assert a["paid_amount"] == 3000.0

    async def test_unpaid_po_resets_invoices(self, db):
        await _seed_po(db, 3000, 0)
        first = await _seed_invoice(db, 3000, paid_amount=3000, status="paid")

        await CrossDocumentReconciler(db).sync_from_source(PO_NUMBER)

        a = await db.invoices.find_one({"_id": first})
        assert a["paid_amount"] == 0.0
        assert a["payment_status"] == "pending"
        assert a["status"] == "sent"

    async def test_cancelled_invoices_skipped(self, db):
        await _seed_po(db, 7000, 5000)
        cancelled = await _seed_invoice(db, 3000, minutes=0, status="cancelled", payment_status="cancelled")
        live = await _seed_invoice(db, 4000, minutes=5)

        result = await CrossDocumentReconciler(db).sync_from_source(PO_NUMBER)

        assert result.affected_ids == [str(live)]
        untouched = await db.invoices.find_one({"_id": cancelled})
        assert untouched["paid_amount"] == 0.0
        assert (await db.invoices.find_one({"_id": live}))["paid_amount"] == 4000.0

    async def test_no_purchase_order_is_noop(self, db):
        await _seed_invoice(db, 3000)

        result = await CrossDocumentReconciler(db).sync_from_source(PO_NUMBER)

        assert result.noop is True
        assert result.reason == "source_not_found"

    async def test_no_invoices_is_noop(self, db):
        await _seed_po(db, 7000, 5000)

        result = await CrossDocumentReconciler(db).sync_from_source(PO_NUMBER)

        assert result.noop is True
        assert result.reason == "no_linked_documents"
        assert result.to_dict()["matched_count"] == 0


class TestSyncToSource:
    """Invoice payments rolled up onto the PO"""

    async def test_rollup(self, db):
        po_id = await _seed_po(db, 7000)
        await _seed_invoice(db, 3000, paid_amount=3000, status="paid")
        await _seed_invoice(db, 4000, paid_amount=1000, minutes=5)

        result = await CrossDocumentReconciler(db).sync_to_source(PO_NUMBER)

        assert result.affected_ids == [str(po_id)]
        po = await db.purchase_orders.find_one({"_id": po_id})
        assert po["paid_amount"] == 4000.0
        assert po["remaining_amount"] == 3000.0
        assert po["payment_status"] == "partial"
        assert po["invoiced_total"] == 7000.0
        assert po["status"] == "confirmed"

    async def test_capped_at_po_total(self, db):
        po_id = await _seed_po(db, 5000)
        await _seed_invoice(db, 3000, paid_amount=3000, status="paid")
        await _seed_invoice(db, 4000, paid_amount=4000, minutes=5, status="paid")

        await CrossDocumentReconciler(db).sync_to_source(PO_NUMBER)

        po = await db.purchase_orders.find_one({"_id": po_id})
        assert po["paid_amount"] == 5000.0
        assert po["remaining_amount"] == 0.0
        assert po["payment_status"] == "paid"
        assert po["invoiced_total"] == 7000.0

    async def test_idempotent(self, db):
        po_id = await _seed_po(db, 7000)
        await _seed_invoice(db, 3000, paid_amount=1500)
        reconciler = CrossDocumentReconciler(db)

        await reconciler.sync_to_source(PO_NUMBER)
        first = await db.purchase_orders.find_one({"_id": po_id})
        await reconciler.sync_to_source(PO_NUMBER)
        second = await db.purchase_orders.find_one({"_id": po_id})

        assert first["paid_amount"] == second["paid_amount"] == 1500.0

    async def test_no_invoices_leaves_po_alone(self, db):
        po_id = await _seed_po(db, 7000, 2000)

        result = await CrossDocumentReconciler(db).sync_to_source(PO_NUMBER)

        assert result.noop is True
        po = await db.purchase_orders.find_one({"_id": po_id})
        assert po["paid_amount"] == 2000.0

    async def test_po_own_payments_are_a_floor(self, db):
        po_id = await _seed_po(db, 10000, 5000)
        await db.payments.insert_one({
            "document_type": "purchase_order", "document_id": str(po_id),
            "amount": 5000.0, "applied_amount": 5000.0, "reversed": False,
        })
        await _seed_invoice(db, 3000, paid_amount=1000)

        await CrossDocumentReconciler(db).sync_to_source(PO_NUMBER)

        po = await db.purchase_orders.find_one({"_id": po_id})
        assert po["paid_amount"] == 5000.0
        assert po["remaining_amount"] == 5000.0
        assert po["invoiced_total"] == 3000.0

    async def test_reversed_po_payments_do_not_count(self, db):
        po_id = await _seed_po(db, 10000, 5000)
        await db.payments.insert_one({
            "document_type": "purchase_order", "document_id": str(po_id),
            "amount": 5000.0, "applied_amount": 5000.0, "reversed": True,
        })
        await _seed_invoice(db, 3000, paid_amount=1000)

        await CrossDocumentReconciler(db).sync_to_source(PO_NUMBER)

        po = await db.purchase_orders.find_one({"_id": po_id})
        assert po["paid_amount"] == 1000.0
