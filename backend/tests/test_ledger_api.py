"""Ledger HTTP API tests."""

from datetime import datetime, timedelta

import pytest
from httpx import AsyncClient

NOW = datetime(2025, 5, 15, 12, 0, 0)
DUE = (NOW + timedelta(days=14)).isoformat()


@pytest.mark.api
@pytest.mark.asyncio
class TestHealth:

    async def test_health(self, client: AsyncClient):
        resp = await client.get("/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "ok"

    async def test_ready(self, client: AsyncClient):
        resp = await client.get("/health/ready")
        assert resp.status_code == 200
        assert resp.json()["checks"]["database"] == "ok"


@pytest.mark.api
@pytest.mark.asyncio
class TestChargesApi:

    async def test_compute_exclusive_charge(self, client: AsyncClient):
        resp = await client.post("/api/ledger/charges/compute", json={
            "previous_reading": 100,
            "current_reading": 150,
            "charge_per_unit": "20",
            "tax_rate": 16,
            "tax_mode": "EXCLUSIVE",
        })
        assert resp.status_code == 200
        data = resp.json()
        assert data["units"] == 50
        assert data["subtotal"] == 1000
        assert data["tax_amount"] == 160
        assert data["grand_total"] == 1160

    async def test_backwards_meter_is_a_domain_error(self, client: AsyncClient):
        resp = await client.post("/api/ledger/charges/compute", json={
            "previous_reading": 150,
            "current_reading": 100,
            "charge_per_unit": 20,
        })
        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "INVALID_READING_RANGE"

    async def test_tax_rate_out_of_range(self, client: AsyncClient):
        resp = await client.post("/api/ledger/charges/compute", json={
            "previous_reading": 0,
            "current_reading": 10,
            "charge_per_unit": 20,
            "tax_rate": 160,
        })
        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "VALIDATION_ERROR"
        assert resp.json()["error"]["details"]["errors"][0]["field"] == "tax_rate"


@pytest.mark.api
@pytest.mark.asyncio
class TestBillingFlow:

    async def _create_bill(self, client: AsyncClient, tenant_id: str) -> dict:
        resp = await client.post("/api/ledger/bills", json={
            "tenant_id": tenant_id,
            "bill_type": "WATER",
            "previous_reading": 0,
            "current_reading": 50,
            "charge_per_unit": 20,
            "due_date": DUE,
        })
        assert resp.status_code == 201
        return resp.json()

    async def test_bill_invoice_payment_flow(self, client: AsyncClient, tenant):
        bill = await self._create_bill(client, tenant.id)
        assert bill["reference_number"] == "BILL-202505-000001"
        assert bill["grand_total"] == 1000
        assert bill["status"] == "UNPAID"

        resp = await client.post(f"/api/ledger/bills/{bill['id']}/invoices", json={"due_date": DUE})
        assert resp.status_code == 201
        invoice = resp.json()
        assert invoice["reference_number"] == "BILL-INV-202505-000001"
        assert invoice["parent_bill_id"] == bill["id"]
        assert invoice["grand_total"] == 1000

        resp = await client.post(
            f"/api/ledger/documents/{invoice['id']}/payments",
            json={"amount": 250, "payment_date": "2025-05-15", "notes": "cash"},
        )
        assert resp.status_code == 201
        outcome = resp.json()
        assert outcome["document"]["amount_paid"] == 250
        assert outcome["document"]["status"] == "PARTIAL"
        assert outcome["parent_bill"]["amount_paid"] == 250
        assert outcome["split_document"]["reference_number"] == "BILL-INV-202505-000002"
        assert outcome["split_document"]["balance"] == 750
        assert outcome["payment"]["amount_applied"] == 250
        assert outcome["warnings"] == []

        resp = await client.get(f"/api/ledger/documents/{bill['id']}")
        assert resp.status_code == 200
        assert resp.json()["balance"] == 750

    async def test_rent_invoice(self, client: AsyncClient, tenant):
        resp = await client.post("/api/ledger/rent-invoices", json={
            "tenant_id": tenant.id,
            "due_date": DUE,
            "payment_period": "June 2025",
        })
        assert resp.status_code == 201
        data = resp.json()
        assert data["reference_number"] == "INV-202505-000001"
        assert data["grand_total"] == 63800
        assert data["payment_period"] == "June 2025"

    async def test_settled_bill_cannot_be_invoiced(self, client: AsyncClient, tenant):
        bill = await self._create_bill(client, tenant.id)
        await client.post(f"/api/ledger/documents/{bill['id']}/payments", json={"amount": 1000})

        resp = await client.post(f"/api/ledger/bills/{bill['id']}/invoices", json={"due_date": DUE})
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "ALREADY_SETTLED"

    async def test_delete_document(self, client: AsyncClient, tenant):
        bill = await self._create_bill(client, tenant.id)

        resp = await client.delete(f"/api/ledger/documents/{bill['id']}")
        assert resp.status_code == 200
        assert resp.json()["reference_number"] == "BILL-202505-000001"

        resp = await client.get(f"/api/ledger/documents/{bill['id']}")
        assert resp.status_code == 404

    async def test_due_dates_with_offsets(self, client: AsyncClient, tenant):
        resp = await client.post("/api/ledger/bills", json={
            "tenant_id": tenant.id,
            "bill_type": "WATER",
            "previous_reading": 0,
            "current_reading": 50,
            "charge_per_unit": 20,
            "due_date": "2025-06-01T00:00:00Z",
        })
        assert resp.status_code == 201
        bill = resp.json()
        assert bill["due_date"] == "2025-06-01T00:00:00"
        assert bill["status"] == "UNPAID"

        resp = await client.post(
            f"/api/ledger/bills/{bill['id']}/invoices",
            json={"due_date": "2025-06-01T00:00:00+03:00"},
        )
        assert resp.status_code == 201
        assert resp.json()["due_date"] == "2025-05-31T21:00:00"

        resp = await client.post("/api/ledger/rent-invoices", json={
            "tenant_id": tenant.id,
            "due_date": "2025-05-15T14:00:00+03:00",
        })
        assert resp.status_code == 201
        assert resp.json()["status"] == "OVERDUE"

    async def test_commission_invoice(self, client: AsyncClient, tenant):
        body = {
            "tenant_id": tenant.id,
            "collection_amount": "200000",
            "commission_rate": "10",
            "vat_rate": "16",
            "period_start": "2025-04-01T00:00:00+03:00",
        }
        resp = await client.post("/api/ledger/commission-invoices", json=body)
        assert resp.status_code == 201
        data = resp.json()
        assert data["reference_number"] == "COM-INV-202505-000001"
        assert data["kind"] == "commission_invoice"
        assert data["grand_total"] == 23200
        # 00:00 in Nairobi on 1 April is still 31 March in UTC
        assert data["payment_period"] == "March 2025"

        resp = await client.post("/api/ledger/commission-invoices", json=body)
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "COMMISSION_ALREADY_INVOICED"

    async def test_commission_invoice_rejects_negative_collections(self, client: AsyncClient, tenant):
        resp = await client.post("/api/ledger/commission-invoices", json={
            "tenant_id": tenant.id,
            "collection_amount": "-10",
            "commission_rate": "10",
        })
        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "INVALID_COMMISSION_INPUT"


@pytest.mark.api
@pytest.mark.asyncio
class TestPaymentErrors:

    async def test_non_positive_amount(self, client: AsyncClient, make_document):
        doc = await make_document(100)
        resp = await client.post(f"/api/ledger/documents/{doc.id}/payments", json={"amount": -5})
        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "INVALID_PAYMENT_AMOUNT"

    async def test_sub_cent_amount(self, client: AsyncClient, make_document):
        doc = await make_document(100)
        resp = await client.post(f"/api/ledger/documents/{doc.id}/payments", json={"amount": "0.005"})
        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "INVALID_PAYMENT_AMOUNT"

        resp = await client.get(f"/api/ledger/documents/{doc.id}")
        assert resp.json()["amount_paid"] == 0

    async def test_unknown_document(self, client: AsyncClient):
        resp = await client.post("/api/ledger/documents/nope/payments", json={"amount": 5})
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "RESOURCE_NOT_FOUND"

    async def test_unknown_tenant(self, client: AsyncClient):
        resp = await client.post("/api/ledger/rent-invoices", json={"tenant_id": "nope"})
        assert resp.status_code == 404
