"""
HTTP tests for the billing router (FastAPI app driven in-process through httpx)
"""
from datetime import timedelta

import pytest_asyncio
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from auth import create_access_token
from billing_engine.background_job_engine import BackgroundJobEngine
from billing_routes import billing_router

API = "/api/v1"


@pytest_asyncio.fixture
async def client(service, db):
    app = FastAPI()
    app.include_router(billing_router)
    app.state.billing_service = service
    app.state.job_engine = BackgroundJobEngine(db, service)

    token = create_access_token({"user_id": "user-1", "role": "accountant"})
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
        headers={"Authorization": f"Bearer {token}"},
    ) as http:
        yield http


def invoice_body(**fields):
    body = {
        "customer_name": "Acme Gensets",
        "customer_email": "accounts@acme.com",
        "items": [{"description": "Service visit", "quantity": 2, "unit_price": 100, "discount": 10, "tax_rate": 18}],
    }
    body.update(fields)
    return body


async def create_invoice(client, **fields):
    response = await client.post(f"{API}/billing/invoice", json=invoice_body(**fields))
    assert response.status_code == 201, response.text
    return response.json()


class TestAuth:
    async def test_token_required(self, service, db):
        app = FastAPI()
        app.include_router(billing_router)
        app.state.billing_service = service
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as anonymous:
            response = await anonymous.get(f"{API}/billing/invoice")
        assert response.status_code in (401, 403)

    async def test_invalid_token(self, client):
        response = await client.get(f"{API}/billing/invoice", headers={"Authorization": "Bearer not-a-jwt"})
        assert response.status_code == 401

    async def test_expired_token(self, client):
        expired = create_access_token({"user_id": "user-1"}, expires_delta=timedelta(minutes=-5))
        response = await client.get(f"{API}/billing/invoice", headers={"Authorization": f"Bearer {expired}"})
        assert response.status_code == 401

    async def test_token_without_user(self, client):
        anonymous = create_access_token({"role": "admin"})
        response = await client.get(f"{API}/billing/invoice", headers={"Authorization": f"Bearer {anonymous}"})
        assert response.status_code == 401

    async def test_admin_routes_need_admin_role(self, client):
        viewer = create_access_token({"user_id": "user-2", "role": "sales"})
        headers = {"Authorization": f"Bearer {viewer}"}

        response = await client.put(
            f"{API}/settings/billing-policies", json={"key": "amc_gst_rate", "value": 12}, headers=headers
        )
        assert response.status_code == 403

        response = await client.get(f"{API}/billing/invoice", headers=headers)
        assert response.status_code == 200


class TestDocumentRoutes:
    """Create / read / update / delete / cancel"""

    async def test_create_and_get(self, client):
        created = await create_invoice(client)

        assert created["grand_total"] == 212.4
        assert created["document_number"].startswith("IN")
        assert created["created_by"] == "user-1"

        response = await client.get(f"{API}/billing/invoice/{created['_id']}")
        assert response.status_code == 200
        assert response.json()["document_number"] == created["document_number"]

    async def test_validation_errors(self, client):
        response = await client.post(
            f"{API}/billing/invoice",
            json=invoice_body(items=[{"quantity": -1, "unit_price": 100}]),
        )
        assert response.status_code == 400
        assert response.json()["detail"]["errors"][0]["field"] == "items[0].quantity"

    async def test_huge_quantity_is_a_validation_error(self, client):
        response = await client.post(
            f"{API}/billing/invoice",
            json=invoice_body(items=[{"quantity": 10**30, "unit_price": 1}]),
        )
        assert response.status_code == 400
        assert response.json()["detail"]["errors"][0]["field"] == "items[0].quantity"

    async def test_unknown_document_type(self, client):
        response = await client.post(f"{API}/billing/receipt", json=invoice_body())
        assert response.status_code == 400

    async def test_missing_document(self, client):
        response = await client.get(f"{API}/billing/invoice/665f1c2e9b1e8a0012345678")
        assert response.status_code == 404

    async def test_list_with_filters(self, client):
        await create_invoice(client)
        await create_invoice(client, paid_amount=50)

        response = await client.get(f"{API}/billing/invoice", params={"payment_status": "partial"})

        assert response.status_code == 200
        assert len(response.json()) == 1

    async def test_update(self, client):
        created = await create_invoice(client)

        response = await client.put(
            f"{API}/billing/invoice/{created['_id']}",
            json={"items": [{"quantity": 1, "unit_price": 1000, "tax_rate": 18}]},
        )

        assert response.status_code == 200
        assert response.json()["grand_total"] == 1180.0

    async def test_delete_draft(self, client):
        created = await create_invoice(client)

        response = await client.delete(f"{API}/billing/invoice/{created['_id']}")

        assert response.status_code == 200
        assert response.json()["status"] == "deleted"

    async def test_history(self, client):
        created = await create_invoice(client)

        response = await client.get(f"{API}/billing/invoice/{created['_id']}/history")

        assert response.status_code == 200
        entries = response.json()
        assert entries[0]["action_type"] == "CREATE"
        assert entries[0]["user_id"] == "user-1"

    async def test_cancel_with_payment_conflicts(self, client):
        created = await create_invoice(client, paid_amount=10)
        response = await client.post(f"{API}/billing/invoice/{created['_id']}/cancel")
        assert response.status_code == 409

    async def test_invalid_transition_conflicts(self, client):
        created = await create_invoice(client)
        response = await client.post(f"{API}/billing/invoice/{created['_id']}/status", json={"status": "paid"})
        assert response.status_code == 409

    async def test_convert_quotation(self, client):
        response = await client.post(f"{API}/billing/quotation", json=invoice_body())
        quotation = response.json()

        response = await client.post(f"{API}/billing/quotation/{quotation['_id']}/convert")

        assert response.status_code == 201
        assert response.json()["source_quotation"] == quotation["_id"]


class TestPaymentRoutes:
    """Payments, reversal and reconciliation"""

    async def test_record_list_and_reverse(self, client):
        invoice = await create_invoice(client)
        url = f"{API}/billing/invoice/{invoice['_id']}/payments"

        response = await client.post(url, json={"amount": 100, "payment_method": "upi"})
        assert response.status_code == 201
        payment = response.json()
        assert payment["payment_status"] == "partial"
        assert payment["remaining_amount"] == 112.4

        listed = (await client.get(url)).json()
        assert [p["amount"] for p in listed] == [100.0]

        reversal = await client.post(f"{API}/payments/{payment['payment_id']}/reverse")
        assert reversal.status_code == 200
        assert reversal.json()["paid_amount"] == 0.0

        again = await client.post(f"{API}/payments/{payment['payment_id']}/reverse")
        assert again.status_code == 409

    async def test_overpayment(self, client):
        invoice = await create_invoice(client)
        response = await client.post(
            f"{API}/billing/invoice/{invoice['_id']}/payments", json={"amount": 1000}
        )
        assert response.status_code == 400

    async def test_operation_id_replay(self, client):
        invoice = await create_invoice(client)
        url = f"{API}/billing/invoice/{invoice['_id']}/payments"

        await client.post(url, json={"amount": 10, "operation_id": "gateway-42"})
        replay = await client.post(url, json={"amount": 10, "operation_id": "gateway-42"})

        assert replay.json()["idempotent_replay"] is True
        stored = (await client.get(f"{API}/billing/invoice/{invoice['_id']}")).json()
        assert stored["paid_amount"] == 10.0

    async def test_reconcile_direction(self, client):
        response = await client.post(f"{API}/reconcile/PO-1", params={"direction": "sideways"})
        assert response.status_code == 400

    async def test_reconcile_unknown_po_is_noop(self, client):
        response = await client.post(f"{API}/reconcile/PO-1", params={"direction": "to_po"})
        assert response.status_code == 200
        assert response.json()["noop"] is True


class TestPaymentLinkRoutes:
    """Staff issue links; payers use them without logging in"""

    async def _issue(self, client):
        invoice = await create_invoice(client)
        response = await client.post(f"{API}/billing/invoice/{invoice['_id']}/payment-link", json={})
        assert response.status_code == 200, response.text
        return invoice, response.json()

    async def test_issue_preview_and_pay(self, client, mailer):
        invoice, link = await self._issue(client)
        assert link["email_sent"] is True
        assert mailer.sent[0]["to"] == "accounts@acme.com"

        preview = await client.get(f"{API}/pay/{link['token']}")
        assert preview.status_code == 200
        assert preview.json()["remaining_amount"] == 212.4

        paid = await client.post(f"{API}/pay/{link['token']}", json={"amount": 212.4})
        assert paid.status_code == 200
        assert paid.json()["status"] == "paid"
        assert paid.json()["payment_status"] == "paid"
        assert paid.json()["document_number"] == invoice["document_number"]

    async def test_used_link(self, client):
        _, link = await self._issue(client)
        await client.post(f"{API}/pay/{link['token']}", json={"amount": 10})

        response = await client.post(f"{API}/pay/{link['token']}", json={"amount": 10})

        assert response.status_code == 400
        assert response.json()["detail"] == "This payment link has already been used"

    async def test_expired_link(self, client, service):
        invoice = await create_invoice(client)
        token = await service.links.issue(invoice["_id"], ttl=timedelta(seconds=-1))

        response = await client.get(f"{API}/pay/{token}")

        assert response.status_code == 410

    async def test_public_overpayment_wording(self, client):
        _, link = await self._issue(client)

        response = await client.post(f"{API}/pay/{link['token']}", json={"amount": 5000})

        assert response.status_code == 400
        assert response.json()["detail"] == "Payment amount must be positive and not exceed the amount due"

    async def test_unknown_link(self, client):
        response = await client.get(f"{API}/pay/{'0' * 64}")
        assert response.status_code == 400
        assert response.json()["detail"] == "Invalid payment link"


class TestAdminRoutes:
    """Policies, jobs and the integrity report"""

    async def test_policies(self, client):
        response = await client.get(f"{API}/settings/billing-policies")
        assert response.json()["policies"]["payment_link_ttl_days"] == 7

        response = await client.put(
            f"{API}/settings/billing-policies", json={"key": "payment_link_ttl_days", "value": 2}
        )
        assert response.status_code == 200
        assert response.json()["policies"]["payment_link_ttl_days"] == 2

    async def test_unknown_policy(self, client):
        response = await client.put(f"{API}/settings/billing-policies", json={"key": "nope", "value": 1})
        assert response.status_code == 400

    async def test_unknown_job_type(self, client):
        response = await client.post(f"{API}/jobs", json={"job_type": "REINDEX"})
        assert response.status_code == 400

    async def test_unknown_job(self, client):
        response = await client.get(f"{API}/jobs/665f1c2e9b1e8a0012345678")
        assert response.status_code == 404

    async def test_integrity_check(self, client):
        await create_invoice(client)
        response = await client.post(f"{API}/integrity-check")
        assert response.status_code == 200
        assert response.json()["mismatches_found"] == 0
