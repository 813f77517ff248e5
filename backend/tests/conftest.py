"""
Shared fixtures: an in-memory Motor database per test (mongomock-motor)
with the billing indexes applied.
"""
import uuid
from datetime import datetime

import pytest
import pytest_asyncio
from mongomock_motor import AsyncMongoMockClient

from billing_engine.billing_service import BillingDocumentService
from billing_engine.migrations import run_migrations


class RecordingMailer:
    """Mailer double that keeps every message it is asked to send."""

    def __init__(self, result=True, error=None):
        self.result = result
        self.error = error
        self.sent = []

    def send(self, to_address, subject, html_body):
        if self.error:
            raise self.error
        self.sent.append({"to": to_address, "subject": subject, "html": html_body})
        return self.result


@pytest.fixture
def raw_db():
    client = AsyncMongoMockClient()
    return client[f"billing_test_{uuid.uuid4().hex[:8]}"]


@pytest_asyncio.fixture
async def db(raw_db):
    await run_migrations(raw_db)
    return raw_db


@pytest.fixture
def mailer():
    return RecordingMailer()


@pytest.fixture
def service(db, mailer):
    return BillingDocumentService(db, mailer=mailer, payment_link_base_url="https://billing.example.com/pay")


def line(quantity, unit_price, discount=0, tax_rate=0, **extra):
    item = {"quantity": quantity, "unit_price": unit_price, "discount": discount, "tax_rate": tax_rate}
    item.update(extra)
    return item


def stored_document(document_type, grand_total, paid_amount=0, **fields):
    """A pre-priced document as it would sit in the collection."""
    paid = float(paid_amount)
    doc = {
        "document_type": document_type,
        "document_number": fields.pop("document_number", f"T-{uuid.uuid4().hex[:10]}"),
        "items": [line(1, grand_total)],
        "subtotal": float(grand_total),
        "total_discount": 0.0,
        "total_tax": 0.0,
        "overall_discount": 0.0,
        "overall_discount_amount": 0.0,
        "deduction_amount": 0.0,
        "grand_total": float(grand_total),
        "round_off": 0.0,
        "paid_amount": paid,
        "remaining_amount": max(float(grand_total) - paid, 0.0),
        "payment_status": "pending" if paid == 0 else ("paid" if paid >= grand_total else "partial"),
        "status": "sent",
        "created_at": datetime.utcnow(),
        "updated_at": datetime.utcnow(),
    }
    doc.update(fields)
    return doc
