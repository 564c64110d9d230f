"""Tests for Meterwise payment gateway and Stripe webhook handling."""

import hashlib
import hmac
import json
import time
from decimal import Decimal
from types import SimpleNamespace

import pytest
import stripe

from payments import StripeGateway, apply_stripe_event, handle_stripe_webhook, to_minor_units

from conftest import make_active, set_balance

WEBHOOK_SECRET = "whsec_test_secret"


def sign(payload: str, secret: str = WEBHOOK_SECRET) -> str:
    t = int(time.time())
    mac = hmac.new(secret.encode(), f"{t}.{payload}".encode(), hashlib.sha256).hexdigest()
    return f"t={t},v1={mac}"


def intent_event(event_type, intent_id, company_id, recharge_id=None, amount=10000, error=None):
    obj = {
        "id": intent_id,
        "object": "payment_intent",
        "amount": amount,
        "amount_received": amount if event_type.endswith("succeeded") else 0,
        "metadata": {"meterwise_company_id": company_id},
    }
    if recharge_id:
        obj["metadata"]["meterwise_recharge_id"] = recharge_id
    if error:
        obj["last_payment_error"] = {"message": error}
    return {"id": "evt_test", "object": "event", "type": event_type, "data": {"object": obj}}


@pytest.fixture
def pending_recharge(service, gateway):
    make_active(service, "acme", "50.00")
    set_balance(service, "acme", "1.00")
    gateway.pending = True
    return service.recharger.maybe_recharge("acme")


class TestStripeGateway:
    def test_minor_units(self):
        assert to_minor_units("100") == 10000
        assert to_minor_units("12.345") == 1235

    def test_stub_mode_without_key(self):
        gw = StripeGateway(secret_key="")
        assert gw.enabled is False
        result = gw.charge("pm_x", Decimal("10"), company_id="acme", recharge_id="rch_1")
        assert result.success is True
        assert result.provider_ref.startswith("pi_stub_")

    @pytest.mark.parametrize("status,success,pending", [
        ("succeeded", True, False),
        ("processing", False, True),
        ("requires_payment_method", False, False),
    ])
    def test_intent_status_mapping(self, monkeypatch, status, success, pending):
        monkeypatch.setattr(stripe, "api_key", None)
        calls = []

        def create(**kwargs):
            calls.append(kwargs)
            return SimpleNamespace(id="pi_live_1", status=status)

        monkeypatch.setattr(stripe.PaymentIntent, "create", create)
        gw = StripeGateway(secret_key="sk_test_123", currency="usd")
        result = gw.charge("pm_x", Decimal("25.50"), company_id="acme", recharge_id="rch_9")

        assert (result.success, result.pending) == (success, pending)
        assert result.provider_ref == "pi_live_1"
        assert calls[0]["amount"] == 2550
        assert calls[0]["off_session"] is True
        assert calls[0]["idempotency_key"] == "rch_9"
        assert calls[0]["metadata"] == {"meterwise_company_id": "acme", "meterwise_recharge_id": "rch_9"}

    def test_stripe_error_is_failed_charge(self, monkeypatch):
        monkeypatch.setattr(stripe, "api_key", None)

        def create(**kwargs):
            raise stripe.StripeError("card declined")

        monkeypatch.setattr(stripe.PaymentIntent, "create", create)
        result = StripeGateway(secret_key="sk_test_123").charge("pm_x", Decimal("5"))
        assert result.success is False
        assert result.pending is False
        assert "card declined" in result.error

    def test_lookup_by_ref(self, monkeypatch):
        monkeypatch.setattr(stripe, "api_key", None)
        monkeypatch.setattr(stripe.PaymentIntent, "retrieve",
                            lambda ref: SimpleNamespace(id=ref, status="succeeded"))
        result = StripeGateway(secret_key="sk_test_123").lookup("pi_live_7", recharge_id="rch_7")
        assert result.success is True
        assert result.provider_ref == "pi_live_7"

    def test_lookup_by_recharge_id(self, monkeypatch):
        monkeypatch.setattr(stripe, "api_key", None)
        queries = []

        def search(query, limit):
            queries.append(query)
            return SimpleNamespace(data=[])

        monkeypatch.setattr(stripe.PaymentIntent, "search", search)
        assert StripeGateway(secret_key="sk_test_123").lookup("", recharge_id="rch_7") is None
        assert queries == ["metadata['meterwise_recharge_id']:'rch_7'"]

    def test_stub_lookup(self):
        gw = StripeGateway(secret_key="")
        assert gw.lookup("pi_stub_abc").success is True
        assert gw.lookup("", recharge_id="rch_1") is None


class TestApplyStripeEvent:
    def test_succeeded_settles_pending_recharge(self, service, pending_recharge):
        event = intent_event("payment_intent.succeeded", pending_recharge.provider_ref, "acme",
                             recharge_id=pending_recharge.recharge_id)
        out = apply_stripe_event(event, service.recharger)

        assert out == {
            "handled": True,
            "type": "payment_intent.succeeded",
            "recharge_id": pending_recharge.recharge_id,
            "status": "succeeded",
        }
        b = service.ledger.get("acme")
        assert b.wallet_balance == Decimal("101.00")
        assert b.recharge_in_flight is False

    def test_replayed_event_is_noop(self, service, pending_recharge):
        event = intent_event("payment_intent.succeeded", pending_recharge.provider_ref, "acme")
        apply_stripe_event(event, service.recharger)
        apply_stripe_event(event, service.recharger)
        assert service.ledger.get("acme").wallet_balance == Decimal("101.00")

    def test_payment_failed_marks_past_due(self, service, pending_recharge):
        event = intent_event("payment_intent.payment_failed", pending_recharge.provider_ref, "acme",
                             error="Your card has insufficient funds.")
        out = apply_stripe_event(event, service.recharger)
        assert out["status"] == "failed"
        assert service.ledger.get("acme").billing_status == "past_due"

    def test_unknown_failed_payment_ignored(self, service):
        make_active(service, "acme", "50.00")
        event = intent_event("payment_intent.payment_failed", "pi_elsewhere", "acme", error="declined")
        out = apply_stripe_event(event, service.recharger)
        assert out["handled"] is False
        assert service.ledger.get("acme").billing_status == "active"

    def test_other_event_types_ignored(self, service):
        event = {"type": "charge.refunded", "data": {"object": {"id": "ch_1"}}}
        assert apply_stripe_event(event, service.recharger) == {"handled": False, "type": "charge.refunded"}

    def test_missing_company_metadata_ignored(self, service):
        event = intent_event("payment_intent.succeeded", "pi_x", "")
        out = apply_stripe_event(event, service.recharger)
        assert out["handled"] is False


class TestWebhook:
    def test_no_secret_configured(self, service):
        out = handle_stripe_webhook(b"{}", "", service.recharger, webhook_secret="")
        assert out["handled"] is False
        assert "not configured" in out["reason"]

    def test_bad_signature(self, service, pending_recharge):
        payload = json.dumps(intent_event("payment_intent.succeeded", "pi_fake_1", "acme"))
        out = handle_stripe_webhook(payload.encode(), sign(payload, "whsec_other"),
                                    service.recharger, webhook_secret=WEBHOOK_SECRET)
        assert out["handled"] is False
        assert out["error"]
        assert service.ledger.get("acme").wallet_balance == Decimal("1.00")

    def test_valid_signature_is_applied(self, service, pending_recharge):
        payload = json.dumps(intent_event("payment_intent.succeeded", pending_recharge.provider_ref, "acme"))
        out = handle_stripe_webhook(payload.encode(), sign(payload), service.recharger,
                                    webhook_secret=WEBHOOK_SECRET)
        assert out["handled"] is True
        assert out["status"] == "succeeded"
        assert service.ledger.get("acme").wallet_balance == Decimal("101.00")
