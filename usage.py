# Meterwise Usage Recorder
# The inbound path for AI collaborators. One call records exactly one
# billable action:
#
#   resolve price (deadline-bounded, no lock)
#   → lock company → idempotency lookup → month rollover → status gate
#   → spend cap → insert record → debit wallet → outbox events → commit
#   → schedule auto-recharge off the caller's path
#
# Any failure before commit rolls the whole unit back: there is never a
# usage record without its debit or a debit without its record.

import logging
import threading
import time
from typing import Callable, Optional

import config
from errors import BillingBlocked, LookupTimeout
from events import EventType, emit
from models import BLOCKED_STATUSES, UsageRecord, new_id
from pricing import PricingResolver
from recharge import AutoRechargeTrigger
from repositories import UsageRecordRepo
from wallet import SpendCapEnforcer, WalletLedger

log = logging.getLogger("meterwise")


def background_dispatch(fn: Callable, *args):
    def run():
        try:
            fn(*args)
        except Exception:
            log.exception("RECHARGE %s dispatch failed", args[0] if args else "-")

    t = threading.Thread(target=run, daemon=True, name="meterwise-recharge")
    t.start()
    return t


class UsageRecorder:
    def __init__(
        self,
        pricing: PricingResolver,
        ledger: WalletLedger,
        caps: SpendCapEnforcer,
        recharger: Optional[AutoRechargeTrigger] = None,
        dispatch: Callable = background_dispatch,
        lookup_timeout: Optional[float] = None,
        clock=time.time,
    ):
        self.pricing = pricing
        self.ledger = ledger
        self.caps = caps
        self.recharger = recharger
        self.dispatch = dispatch
        self.lookup_timeout = config.LOOKUP_TIMEOUT_SEC if lookup_timeout is None else lookup_timeout
        self.clock = clock

    def record(self, company_id: str, category, raw_quantity, job_id: Optional[str] = None,
               idempotency_key: Optional[str] = None) -> UsageRecord:
        record, _replayed = self._record(company_id, category, raw_quantity, job_id, idempotency_key)
        return record

    def record_usage(self, company_id: str, category, raw_quantity, job_id: Optional[str] = None,
                     idempotency_key: Optional[str] = None) -> dict:
        """Inbound contract: {usage_record_id, final_cost, replayed}."""
        record, replayed = self._record(company_id, category, raw_quantity, job_id, idempotency_key)
        return {
            "usage_record_id": record.id,
            "final_cost": str(record.final_cost),
            "replayed": replayed,
        }

    def _record(self, company_id, category, raw_quantity, job_id, idempotency_key):
        deadline = self.clock() + self.lookup_timeout
        quote = self.pricing.resolve(category, raw_quantity, company_id=company_id,
                                     deadline=deadline)

        with self.ledger.locked(company_id) as unit:
            if idempotency_key:
                existing = UsageRecordRepo.find_by_idempotency_key(
                    unit.conn, company_id, idempotency_key, unit.backend,
                )
                if existing is not None:
                    log.info("USAGE %s replay key=%s -> %s", company_id, idempotency_key,
                             existing.id)
                    return existing, True

            self.ledger.roll_month(unit)

            status = unit.billing.billing_status
            if status in BLOCKED_STATUSES:
                raise BillingBlocked(
                    f"{company_id} is {status}; usage is blocked until payment succeeds",
                    company_id=company_id, billing_status=status,
                )

            self.caps.check(unit, quote.final_cost)
            if self.clock() > deadline:
                raise LookupTimeout(
                    "pricing and spend-cap lookup exceeded their deadline",
                    company_id=company_id,
                )

            record = UsageRecord(
                id=new_id("usage"),
                company_id=company_id,
                category=quote.category,
                raw_quantity=quote.raw_quantity,
                base_cost=quote.base_cost,
                margin_percent=quote.margin_percent,
                final_cost=quote.final_cost,
                created_at=unit.now,
                job_id=job_id,
                idempotency_key=idempotency_key or None,
            )
            UsageRecordRepo.insert(unit.conn, record, unit.backend)
            self.ledger.debit(unit, record.final_cost,
                              description=f"{record.category} usage",
                              usage_record_id=record.id)
            emit(unit.conn, unit.backend, EventType.USAGE_RECORDED, company_id, now=unit.now,
                 usage_record_id=record.id, category=record.category, job_id=job_id,
                 raw_quantity=record.raw_quantity, final_cost=record.final_cost)
            needs_recharge = self._wants_recharge(unit.billing)

        log.info("USAGE %s %s qty=%s cost=%s job=%s", company_id, record.category,
                 record.raw_quantity, record.final_cost, job_id or "-")
        if needs_recharge:
            self.dispatch(self.recharger.maybe_recharge, company_id)
        return record, False

    def _wants_recharge(self, billing) -> bool:
        # Cheap pre-filter; maybe_recharge re-checks every gate under the lock
        return (
            self.recharger is not None
            and billing.auto_recharge_enabled
            and billing.has_payment_method
            and not billing.recharge_in_flight
            and billing.wallet_balance < billing.auto_recharge_threshold
        )
