# Meterwise Billing Service
# Process bootstrap and account-level operations. build_service() wires
# one BillingStore into every component; nothing connects at import time.
#
# Company lifecycle:
#   trial ──(payment method + first recharge ok)──▶ active
#   active ──(recharge declined)──▶ past_due ──(grace window expires)──▶ suspended
#   past_due | suspended ──(recharge ok)──▶ active

import logging
import time
from decimal import Decimal
from typing import Callable, Optional

import config
from db import BillingStore
from errors import ValidationError
from invoices import InvoiceGenerator
from models import BLOCKED_STATUSES, BillingStatus, CompanyBilling, money, month_start
from notifications import BillingNotifier
from payments import PaymentGateway, StripeGateway
from pricing import PricingResolver
from recharge import AutoRechargeTrigger
from repositories import CompanyBillingRepo, RechargeRepo
from reporting import UsageAggregator
from usage import UsageRecorder, background_dispatch
from wallet import SpendCapEnforcer, WalletLedger

log = logging.getLogger("meterwise")

PAYMENT_PROVIDERS = ("stripe", "paypal")

# Distinguishes "leave unchanged" from an explicit None (unlimited cap)
UNSET = object()


def _non_negative(name, value) -> Decimal:
    amount = money(value)
    if amount < 0:
        raise ValidationError(f"{name} must be >= 0, got {value}")
    return amount


class BillingService:
    """Account operations plus handles on every billing component."""

    def __init__(self, store: BillingStore, pricing: PricingResolver, ledger: WalletLedger,
                 caps: SpendCapEnforcer, recharger: AutoRechargeTrigger,
                 recorder: UsageRecorder, invoices: InvoiceGenerator,
                 reports: UsageAggregator, notifier: BillingNotifier, clock=time.time):
        self.store = store
        self.pricing = pricing
        self.ledger = ledger
        self.caps = caps
        self.recharger = recharger
        self.recorder = recorder
        self.invoices = invoices
        self.reports = reports
        self.notifier = notifier
        self.clock = clock

    # ── Accounts ──────────────────────────────────────────────────────

    def init_company(self, company_id: str, monthly_spend_cap=None,
                     auto_recharge_threshold=None, auto_recharge_amount=None) -> CompanyBilling:
        """Create the billing row in trial with a zero balance. Existing rows are returned as-is."""
        if not company_id:
            raise ValidationError("company_id is required")
        now = self.clock()
        billing = CompanyBilling(
            company_id=company_id,
            billing_status=BillingStatus.TRIAL.value,
            current_month_start=month_start(now),
            monthly_spend_cap=None if monthly_spend_cap is None
            else _non_negative("monthly_spend_cap", monthly_spend_cap),
            auto_recharge_enabled=True,
            auto_recharge_threshold=_non_negative(
                "auto_recharge_threshold",
                config.AUTO_RECHARGE_THRESHOLD if auto_recharge_threshold is None
                else auto_recharge_threshold,
            ),
            auto_recharge_amount=_non_negative(
                "auto_recharge_amount",
                config.AUTO_RECHARGE_AMOUNT if auto_recharge_amount is None
                else auto_recharge_amount,
            ),
            created_at=now,
            updated_at=now,
        )
        with self.store.transaction() as (conn, backend):
            existing = CompanyBillingRepo.get(conn, company_id, backend)
            if existing is not None:
                return existing
            CompanyBillingRepo.insert(conn, billing, backend)
        log.info("ACCOUNT %s created (trial)", company_id)
        return billing

    def status(self, company_id: str) -> dict:
        billing = self.ledger.get(company_id)
        with self.store.connection() as (conn, backend):
            recent = RechargeRepo.list_for_company(conn, company_id, backend, limit=5)
        out = billing.to_dict()
        out["blocked"] = billing.billing_status in BLOCKED_STATUSES
        out["recent_recharges"] = [r.to_dict() for r in recent]
        return out

    def update_settings(self, company_id: str, monthly_spend_cap=UNSET,
                        auto_recharge_enabled: Optional[bool] = None,
                        auto_recharge_threshold=None, auto_recharge_amount=None) -> CompanyBilling:
        with self.ledger.locked(company_id) as unit:
            b = unit.billing
            if monthly_spend_cap is not UNSET:
                b.monthly_spend_cap = (None if monthly_spend_cap is None
                                       else _non_negative("monthly_spend_cap", monthly_spend_cap))
            if auto_recharge_enabled is not None:
                b.auto_recharge_enabled = bool(auto_recharge_enabled)
            if auto_recharge_threshold is not None:
                b.auto_recharge_threshold = _non_negative(
                    "auto_recharge_threshold", auto_recharge_threshold)
            if auto_recharge_amount is not None:
                b.auto_recharge_amount = _non_negative("auto_recharge_amount", auto_recharge_amount)
            self.ledger.save(unit)
        log.info("SETTINGS %s cap=%s auto=%s threshold=%s amount=%s", company_id,
                 b.monthly_spend_cap, b.auto_recharge_enabled,
                 b.auto_recharge_threshold, b.auto_recharge_amount)
        return b

    # ── Payment methods ───────────────────────────────────────────────

    def attach_payment_method(self, company_id: str, provider: str, payment_method_id: str,
                              last4: Optional[str] = None, brand: Optional[str] = None,
                              exp: Optional[str] = None) -> dict:
        """Store a payment method. A company still in trial gets its initial recharge now."""
        provider = (provider or "").lower()
        if provider not in PAYMENT_PROVIDERS:
            raise ValidationError(f"unsupported payment provider: {provider!r}",
                                  allowed=list(PAYMENT_PROVIDERS))
        if not payment_method_id:
            raise ValidationError("payment_method_id is required")

        with self.ledger.locked(company_id) as unit:
            b = unit.billing
            b.payment_provider = provider
            b.payment_method_id = payment_method_id
            b.payment_method_last4 = last4
            b.payment_method_brand = brand
            b.payment_method_exp = exp
            self.ledger.save(unit)
            in_trial = b.billing_status == BillingStatus.TRIAL.value
        log.info("PAYMENT %s attached %s %s ****%s", company_id, provider,
                 brand or "", last4 or "????")

        if in_trial:
            recharge = self.recharger.initial_recharge(company_id)
        else:
            recharge = self.recharger.maybe_recharge(company_id)
        return {
            "billing": self.ledger.get(company_id).to_dict(),
            "recharge": recharge.to_dict() if recharge else None,
        }

    def remove_payment_method(self, company_id: str) -> CompanyBilling:
        with self.ledger.locked(company_id) as unit:
            b = unit.billing
            b.payment_provider = None
            b.payment_method_id = None
            b.payment_method_last4 = None
            b.payment_method_brand = None
            b.payment_method_exp = None
            self.ledger.save(unit)
        log.info("PAYMENT %s removed", company_id)
        return b

    # ── Delegates for the inbound interfaces ──────────────────────────

    def record_usage(self, company_id: str, category, raw_quantity, job_id=None,
                     idempotency_key=None) -> dict:
        return self.recorder.record_usage(company_id, category, raw_quantity,
                                          job_id=job_id, idempotency_key=idempotency_key)

    def on_recharge_result(self, company_id: str, amount, success: bool, provider_ref,
                           recharge_id=None, error: str = ""):
        return self.recharger.on_recharge_result(company_id, amount, success, provider_ref,
                                                 recharge_id=recharge_id, error=error)


# ── Bootstrap ─────────────────────────────────────────────────────────


def build_service(store: Optional[BillingStore] = None,
                  gateway: Optional[PaymentGateway] = None,
                  dispatch: Callable = background_dispatch,
                  clock=time.time,
                  lookup_timeout: Optional[float] = None,
                  seed: bool = True) -> BillingService:
    store = store or BillingStore()
    gateway = gateway or StripeGateway()
    pricing = PricingResolver(store, clock=clock)
    ledger = WalletLedger(store, clock=clock)
    caps = SpendCapEnforcer(store, clock=clock)
    recharger = AutoRechargeTrigger(ledger, gateway, clock=clock)
    recorder = UsageRecorder(pricing, ledger, caps, recharger, dispatch=dispatch,
                             lookup_timeout=lookup_timeout, clock=clock)
    service = BillingService(
        store=store,
        pricing=pricing,
        ledger=ledger,
        caps=caps,
        recharger=recharger,
        recorder=recorder,
        invoices=InvoiceGenerator(store, clock=clock),
        reports=UsageAggregator(store),
        notifier=BillingNotifier(store, clock=clock),
        clock=clock,
    )
    if seed:
        pricing.seed_defaults()
    return service


# ── Singleton ─────────────────────────────────────────────────────────

_billing_service: Optional[BillingService] = None


def get_billing_service() -> BillingService:
    global _billing_service
    if _billing_service is None:
        _billing_service = build_service()
    return _billing_service
