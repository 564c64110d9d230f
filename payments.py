# Meterwise Payment Gateway
# Outbound charge call used by auto-recharge, plus the inbound Stripe
# webhook that resolves charges the gateway reported as pending.
#
# NOTE: Without METERWISE_STRIPE_SECRET_KEY the gateway runs in stub mode:
# every charge succeeds immediately with a pi_stub_* reference. Set a live
# or test key in .env to route charges through Stripe.

import json
import logging
import uuid
from dataclasses import asdict, dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

import stripe

import config
from models import money

log = logging.getLogger("meterwise.stripe")


@dataclass
class ChargeResult:
    success: bool
    provider_ref: str = ""
    pending: bool = False   # accepted by the processor, outcome arrives by webhook
    error: str = ""

    def to_dict(self) -> dict:
        return asdict(self)


class PaymentGateway:
    """charge(payment_method_id, amount) -> ChargeResult. Implementations may block."""

    name = "gateway"

    def charge(self, payment_method_id: str, amount: Decimal, company_id: str = "",
               recharge_id: str = "") -> ChargeResult:
        raise NotImplementedError

    def lookup(self, provider_ref: str = "", recharge_id: str = "") -> Optional[ChargeResult]:
        """Current outcome of an earlier charge, or None if the processor has no record of it."""
        raise NotImplementedError


def to_minor_units(amount) -> int:
    return int((money(amount) * 100).quantize(Decimal(1), rounding=ROUND_HALF_UP))


class StripeGateway(PaymentGateway):
    """Off-session confirmed PaymentIntents against a stored payment method."""

    name = "stripe"

    def __init__(self, secret_key: Optional[str] = None, currency: Optional[str] = None):
        self.secret_key = config.STRIPE_SECRET_KEY if secret_key is None else secret_key
        self.currency = currency or config.STRIPE_CURRENCY
        self.enabled = bool(self.secret_key and self.secret_key.startswith("sk_"))
        if self.enabled:
            stripe.api_key = self.secret_key
            log.info("Stripe ENABLED (key prefix: %s...)", self.secret_key[:7])

    def charge(self, payment_method_id: str, amount: Decimal, company_id: str = "",
               recharge_id: str = "") -> ChargeResult:
        if not self.enabled:
            ref = f"pi_stub_{uuid.uuid4().hex[:16]}"
            log.info("STRIPE stub charge %s %s -> %s", company_id, money(amount), ref)
            return ChargeResult(success=True, provider_ref=ref)

        try:
            pi = stripe.PaymentIntent.create(
                amount=to_minor_units(amount),
                currency=self.currency,
                payment_method=payment_method_id,
                confirm=True,
                off_session=True,
                metadata={
                    "meterwise_company_id": company_id,
                    "meterwise_recharge_id": recharge_id,
                },
                description=f"Wallet recharge {recharge_id}",
                idempotency_key=recharge_id or None,
            )
        except stripe.StripeError as e:
            intent = getattr(getattr(e, "error", None), "payment_intent", None)
            ref = getattr(intent, "id", "") or ""
            log.error("Stripe PaymentIntent failed for %s: %s", company_id, e)
            return ChargeResult(success=False, provider_ref=ref,
                                error=getattr(e, "user_message", None) or str(e))

        return self._result(pi)

    def lookup(self, provider_ref: str = "", recharge_id: str = "") -> Optional[ChargeResult]:
        if not self.enabled:
            # Stub charges settle synchronously, so a stub ref is always a success
            if provider_ref.startswith("pi_stub_"):
                return ChargeResult(success=True, provider_ref=provider_ref)
            return None

        if provider_ref:
            pi = stripe.PaymentIntent.retrieve(provider_ref)
        else:
            found = stripe.PaymentIntent.search(
                query=f"metadata['meterwise_recharge_id']:'{recharge_id}'", limit=1,
            )
            if not found.data:
                return None
            pi = found.data[0]
        return self._result(pi)

    @staticmethod
    def _result(pi) -> ChargeResult:
        if pi.status == "succeeded":
            return ChargeResult(success=True, provider_ref=pi.id)
        if pi.status in ("processing", "requires_action", "requires_confirmation"):
            log.info("Stripe PaymentIntent %s pending (%s)", pi.id, pi.status)
            return ChargeResult(success=False, provider_ref=pi.id, pending=True)
        return ChargeResult(success=False, provider_ref=pi.id, error=f"status {pi.status}")


# ── Webhook Handling ──────────────────────────────────────────────────


def apply_stripe_event(event, trigger) -> dict:
    """Map a verified Stripe event onto the recharge result entry point.

    Handles:
    - payment_intent.succeeded → credit the wallet
    - payment_intent.payment_failed → mark past_due

    A failed intent the engine never started is acknowledged and ignored.
    """
    event_type = event["type"]
    data = event["data"]["object"]

    if event_type not in ("payment_intent.succeeded", "payment_intent.payment_failed"):
        return {"handled": False, "type": event_type}

    metadata = data.get("metadata") or {}
    company_id = metadata.get("meterwise_company_id")
    if not company_id:
        log.warning("Stripe %s %s has no company metadata; ignored", event_type, data.get("id"))
        return {"handled": False, "type": event_type, "reason": "no company metadata"}

    success = event_type == "payment_intent.succeeded"
    amount = Decimal(int(data.get("amount_received") or data.get("amount") or 0)) / 100
    error = ""
    if not success:
        error = (data.get("last_payment_error") or {}).get("message", "") or "payment failed"

    recharge = trigger.on_recharge_result(
        company_id, amount if amount > 0 else None, success, data["id"],
        recharge_id=metadata.get("meterwise_recharge_id") or None,
        error=error,
    )
    if recharge is None:
        return {"handled": False, "type": event_type, "reason": "unknown failed payment"}
    return {
        "handled": True,
        "type": event_type,
        "recharge_id": recharge.recharge_id,
        "status": recharge.status,
    }


def handle_stripe_webhook(payload: bytes, sig_header: str, trigger,
                          webhook_secret: Optional[str] = None) -> dict:
    secret = config.STRIPE_WEBHOOK_SECRET if webhook_secret is None else webhook_secret
    if not secret:
        return {"handled": False, "reason": "Stripe webhook secret not configured"}

    try:
        stripe.Webhook.construct_event(payload, sig_header, secret)
    except (ValueError, stripe.SignatureVerificationError) as e:
        log.error("Webhook signature verification failed: %s", e)
        return {"handled": False, "error": str(e)}

    # Signature is good; work on the plain JSON rather than StripeObject
    return apply_stripe_event(json.loads(payload), trigger)
