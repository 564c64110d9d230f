"""Shared pytest configuration for the Meterwise test suite.

Ensures the project root is on sys.path so test files can import
source modules (billing, usage, api, etc.) directly, and provides
isolated stores, a controllable clock and a scriptable payment gateway.
"""

import os
import sys
import threading
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path

import pytest

# Add project root to sys.path so `import billing`, `from api import app`, etc. work
PROJECT_ROOT = str(Path(__file__).resolve().parent.parent)
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

os.environ["METERWISE_ENV"] = "test"
os.environ["METERWISE_API_TOKEN"] = ""
os.environ["METERWISE_STRIPE_SECRET_KEY"] = ""
os.environ["METERWISE_DEFAULT_TAX_RATE"] = ""

from billing import build_service  # noqa: E402
from db import BillingStore  # noqa: E402
from payments import ChargeResult, PaymentGateway  # noqa: E402

# 2026-03-15 12:00 UTC
T0 = datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc).timestamp()


class FakeClock:
    def __init__(self, now: float = T0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds

    def set(self, dt: datetime):
        self.now = dt.timestamp()


class FakeGateway(PaymentGateway):
    """Records every charge. Outcome and blocking are set by the test."""

    name = "fake"

    def __init__(self):
        self.calls = []
        self.succeed = True
        self.pending = False
        self.release = None           # threading.Event to hold charges open
        self.entered = threading.Event()
        self.on_charge = None         # called with (company_id, recharge_id, ref) before returning
        self.results = {}             # recharge_id -> ChargeResult, what lookup() reports
        self._lock = threading.Lock()

    def charge(self, payment_method_id, amount, company_id="", recharge_id=""):
        with self._lock:
            self.calls.append({
                "payment_method_id": payment_method_id,
                "amount": amount,
                "company_id": company_id,
                "recharge_id": recharge_id,
            })
            ref = f"pi_fake_{len(self.calls)}"
        self.entered.set()
        if self.release is not None:
            self.release.wait(10)
        if self.pending:
            result = ChargeResult(success=False, provider_ref=ref, pending=True)
        elif self.succeed:
            result = ChargeResult(success=True, provider_ref=ref)
        else:
            result = ChargeResult(success=False, provider_ref=ref, error="card_declined")
        self.results[recharge_id] = result
        if self.on_charge is not None:
            self.on_charge(company_id, recharge_id, ref)
        return result

    def lookup(self, provider_ref="", recharge_id=""):
        for result in self.results.values():
            if provider_ref and result.provider_ref == provider_ref:
                return result
        return self.results.get(recharge_id)


class ThreadDispatch:
    """Runs dispatched work on real threads and lets the test join them."""

    def __init__(self):
        self.threads = []

    def __call__(self, fn, *args):
        t = threading.Thread(target=fn, args=args, daemon=True)
        self.threads.append(t)
        t.start()
        return t

    def join(self, timeout: float = 10):
        for t in self.threads:
            t.join(timeout)


def inline_dispatch(fn, *args):
    return fn(*args)


def set_balance(service, company_id: str, amount):
    """Force a wallet balance (test setup only)."""
    with service.ledger.locked(company_id) as unit:
        unit.billing.wallet_balance = Decimal(str(amount))
        service.ledger.save(unit)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def store(tmp_path):
    s = BillingStore(db_path=str(tmp_path / "meterwise.db"), backend="sqlite")
    yield s
    s.close()


@pytest.fixture
def service(store, gateway, clock):
    return build_service(store=store, gateway=gateway, dispatch=inline_dispatch, clock=clock)


@pytest.fixture
def company(service):
    service.init_company("acme")
    return "acme"


@pytest.fixture
def flat_pricing(service):
    """video_interview at 1.00/minute with no margin, so final_cost == minutes."""
    service.pricing.set_unit_price("video_interview", "1.00", "minute")
    service.pricing.set_margin("0")
    return service


def make_active(svc, company_id, balance, threshold="10.00", amount="100.00"):
    """Active company with a card on file; attaching it triggers no recharge."""
    svc.init_company(company_id, auto_recharge_threshold=threshold, auto_recharge_amount=amount)
    with svc.ledger.locked(company_id) as unit:
        unit.billing.billing_status = "active"
        unit.billing.wallet_balance = Decimal(str(balance))
        svc.ledger.save(unit)
    svc.attach_payment_method(company_id, "stripe", "pm_card_visa", last4="4242", brand="visa")
