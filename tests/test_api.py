"""Tests for the Meterwise HTTP API."""

from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient

import api

from conftest import make_active, set_balance

MARCH = datetime(2026, 3, 1, tzinfo=timezone.utc).timestamp()
APRIL = datetime(2026, 4, 1, tzinfo=timezone.utc).timestamp()


@pytest.fixture
def client(service):
    api.set_service(service)
    api._RATE_BUCKETS.clear()
    yield TestClient(api.app)
    api.set_service(None)


class TestHealth:
    def test_healthz(self, client):
        r = client.get("/healthz")
        assert r.status_code == 200
        assert r.json()["status"] == "healthy"

    def test_readyz_checks_storage(self, client):
        r = client.get("/readyz")
        assert r.status_code == 200
        assert r.json()["storage"] == {"ok": True, "backend": "sqlite"}


class TestUsageEndpoints:
    def test_record_usage(self, client, company):
        r = client.post("/usage", json={
            "company_id": company, "category": "video_interview", "raw_quantity": 10, "job_id": "job-1",
        })
        assert r.status_code == 200
        body = r.json()
        assert body["ok"] is True
        assert body["final_cost"] == "3.6000"
        assert body["replayed"] is False

    def test_idempotency_header(self, client, company):
        payload = {"company_id": company, "category": "cv_parsing", "raw_quantity": 100}
        first = client.post("/usage", json=payload, headers={"Idempotency-Key": "abc"}).json()
        second = client.post("/usage", json=payload, headers={"Idempotency-Key": "abc"}).json()
        assert second["usage_record_id"] == first["usage_record_id"]
        assert second["replayed"] is True

    def test_invalid_quantity_envelope(self, client, company):
        r = client.post("/usage", json={"company_id": company, "category": "cv_parsing", "raw_quantity": -3})
        assert r.status_code == 422
        assert r.json() == {
            "ok": False,
            "error": {
                "code": "invalid_quantity",
                "message": "raw_quantity must be > 0, got -3",
                "details": {"raw_quantity": "-3"},
            },
        }

    def test_unknown_company_is_404(self, client):
        r = client.post("/usage", json={"company_id": "ghost", "category": "cv_parsing", "raw_quantity": 1})
        assert r.status_code == 404
        assert r.json()["error"]["code"] == "company_not_found"

    def test_spend_cap_is_402(self, client, company, service):
        service.update_settings(company, monthly_spend_cap="1")
        r = client.post("/usage", json={"company_id": company, "category": "video_interview", "raw_quantity": 10})
        assert r.status_code == 402
        assert r.json()["error"]["code"] == "spend_cap_exceeded"

    def test_missing_field_is_validation_error(self, client):
        r = client.post("/usage", json={"company_id": "acme"})
        assert r.status_code == 422
        assert r.json()["error"]["code"] == "validation_error"

    def test_usage_reports(self, client, company):
        client.post("/usage", json={"company_id": company, "category": "cv_parsing", "raw_quantity": 100, "job_id": "j1"})
        records = client.get(f"/usage/{company}").json()["records"]
        assert len(records) == 1
        totals = client.get(f"/usage/{company}/totals").json()["totals"]
        assert totals["amount"] == "0.3000"
        jobs = client.get(f"/usage/{company}/by-job").json()["jobs"]
        assert jobs[0]["job_id"] == "j1"
        months = client.get(f"/usage/{company}/by-month").json()["months"]
        assert months[0]["month"] == "2026-03"


class TestBillingEndpoints:
    def test_init_and_status(self, client):
        r = client.post("/billing/acme/init", json={"monthly_spend_cap": "250"})
        assert r.json()["billing"]["monthly_spend_cap"] == "250.0000"

        status = client.get("/billing/acme").json()["billing"]
        assert status["billing_status"] == "trial"
        assert status["blocked"] is False
        assert status["recent_recharges"] == []

    def test_settings_null_cap_means_unlimited(self, client, company, service):
        service.update_settings(company, monthly_spend_cap="50")
        r = client.patch(f"/billing/{company}/settings", json={"auto_recharge_threshold": "5"})
        assert r.json()["billing"]["monthly_spend_cap"] == "50.0000"
        r = client.patch(f"/billing/{company}/settings", json={"monthly_spend_cap": None})
        assert r.json()["billing"]["monthly_spend_cap"] is None

    def test_attach_payment_method_runs_initial_recharge(self, client, company, gateway):
        r = client.put(f"/billing/{company}/payment-method", json={
            "provider": "stripe", "payment_method_id": "pm_1", "last4": "4242", "brand": "visa",
        })
        assert r.status_code == 200
        body = r.json()
        assert body["recharge"]["status"] == "succeeded"
        assert body["billing"]["billing_status"] == "active"
        assert len(gateway.calls) == 1

    def test_manual_recharge_and_wallet(self, client, service):
        make_active(service, "acme", "50.00")
        r = client.post("/billing/acme/recharge", json={"amount": "20"})
        assert r.json()["recharge"]["amount"] == "20.0000"

        wallet = client.get("/billing/acme/wallet").json()
        assert wallet["balance"] == "70.0000"
        assert wallet["transactions"][0]["tx_type"] == "credit"

    def test_declined_manual_recharge_is_402(self, client, service, gateway):
        make_active(service, "acme", "50.00")
        gateway.succeed = False
        r = client.post("/billing/acme/recharge")
        assert r.status_code == 402
        assert r.json()["error"]["code"] == "recharge_failed"

    def test_recharge_result_callback_is_idempotent(self, client, service, gateway):
        make_active(service, "acme", "50.00")
        set_balance(service, "acme", "1.00")
        gateway.pending = True
        recharge = service.recharger.maybe_recharge("acme")

        payload = {"company_id": "acme", "success": True, "provider_ref": recharge.provider_ref}
        assert client.post("/webhooks/recharge-result", json=payload).json()["recharge"]["status"] == "succeeded"
        client.post("/webhooks/recharge-result", json=payload)
        assert client.get("/billing/acme/wallet").json()["balance"] == "101.0000"

    def test_recharge_result_needs_a_reference(self, client, service):
        make_active(service, "acme", "50.00")
        r = client.post("/webhooks/recharge-result", json={"company_id": "acme", "success": True, "amount": "40"})
        assert r.status_code == 422
        assert r.json()["error"]["code"] == "validation_error"
        assert client.get("/billing/acme/wallet").json()["balance"] == "50.0000"

    def test_unknown_failed_result_is_acknowledged(self, client, service):
        make_active(service, "acme", "50.00")
        r = client.post("/webhooks/recharge-result",
                        json={"company_id": "acme", "success": False, "provider_ref": "pi_elsewhere"})
        assert r.json() == {"ok": True, "recharge": None}

    def test_reconcile_recharges(self, client):
        assert client.post("/billing/reconcile-recharges").json() == {"ok": True, "recharges": []}

    def test_stripe_webhook_without_secret(self, client, monkeypatch):
        monkeypatch.setattr("config.STRIPE_WEBHOOK_SECRET", "")
        r = client.post("/webhooks/stripe", content=b"{}")
        assert r.status_code == 200
        assert r.json()["handled"] is False

    def test_grace_sweep(self, client):
        assert client.post("/billing/grace-sweep").json() == {"ok": True, "suspended": []}


class TestInvoiceEndpoints:
    def test_generate_get_settle_refund(self, client, company):
        client.post("/usage", json={"company_id": company, "category": "video_interview", "raw_quantity": 10})
        inv = client.post("/invoices", json={
            "company_id": company, "start": MARCH, "end": APRIL, "tax_rate": "10",
        }).json()["invoice"]
        assert inv["subtotal"] == "3.6000"
        assert inv["tax_amount"] == "0.3600"
        assert inv["total"] == "3.9600"
        assert inv["invoice_number"] == "INV-000001"

        assert client.get(f"/invoices/{inv['id']}").json()["invoice"]["id"] == inv["id"]
        listed = client.get("/invoices", params={"company_id": company}).json()["invoices"]
        assert [i["id"] for i in listed] == [inv["id"]]

        paid = client.post(f"/invoices/{inv['id']}/settle", json={"paid": True}).json()["invoice"]
        assert paid["status"] == "paid"
        again = client.post(f"/invoices/{inv['id']}/settle", json={"paid": False})
        assert again.status_code == 409

        refund = client.post(f"/invoices/{inv['id']}/refund", json={}).json()["invoice"]
        assert refund["refunds_invoice_id"] == inv["id"]

    def test_csv_download(self, client, company):
        inv = client.post("/invoices", json={"company_id": company, "start": MARCH, "end": APRIL}).json()["invoice"]
        r = client.get(f"/invoices/{inv['id']}/csv")
        assert r.status_code == 200
        assert r.headers["content-type"].startswith("text/csv")
        assert r.text.startswith(f"Invoice,{inv['invoice_number']}")

    def test_missing_invoice_is_404(self, client):
        r = client.get("/invoices/inv_nope")
        assert r.status_code == 404
        assert r.json()["error"]["code"] == "invoice_not_found"


class TestPricingEndpoints:
    def test_list_and_update(self, client):
        body = client.get("/pricing").json()
        assert {p["category"] for p in body["prices"]} == {"cv_parsing", "question_generation", "video_interview"}
        assert body["margin"]["margin_percent"] == "20"

        r = client.put("/pricing/video_interview", json={"unit_price": "0.50"})
        assert r.json()["price"]["unit_price"] == "0.50"

    def test_margin_override_routes(self, client):
        r = client.put("/pricing/margin", json={"margin_percent": "35", "company_id": "acme"})
        assert r.json()["margin_percent"] == "35"
        assert client.get("/pricing/margin", params={"company_id": "acme"}).json()["margin"]["override"] is True
        assert client.delete("/pricing/margin/acme").json()["cleared"] is True

    def test_unknown_category_is_422(self, client):
        r = client.put("/pricing/holograms", json={"unit_price": "1"})
        assert r.status_code == 422


class TestNotificationEndpoint:
    def test_drain(self, client, company, monkeypatch):
        monkeypatch.setitem(api.config.ALERT_CONFIG, "email_enabled", False)
        client.post("/usage", json={"company_id": company, "category": "cv_parsing", "raw_quantity": 100})
        assert client.post("/notifications/drain").json() == {"ok": True, "dispatched": 2, "failed": 0}


class TestAuth:
    def test_token_required_outside_dev(self, client, monkeypatch):
        monkeypatch.setattr(api, "AUTH_REQUIRED", True)
        monkeypatch.setenv("METERWISE_API_TOKEN", "s3cret")

        assert client.get("/billing/acme").status_code == 401
        assert client.get("/healthz").status_code == 200
        r = client.get("/pricing", headers={"Authorization": "Bearer s3cret"})
        assert r.status_code == 200
