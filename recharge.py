# Meterwise Auto-Recharge
# Tops a wallet back up from its stored payment method.
#
# A recharge runs in three steps:
#   1. decide   (under the company lock): gate checks, set recharge_in_flight,
#               insert an in_flight Recharge row
#   2. charge   (no lock held): PaymentGateway.charge, which may be slow
#   3. apply    (under the lock again): credit or mark past_due, clear the flag
#
# The in-flight flag gives single-flight behaviour: concurrent low-balance
# triggers that all see a balance under the threshold produce one charge.
# Results are idempotent on provider_ref, so a synchronous success followed
# by the processor's webhook for the same payment never credits twice.
# If step 3 fails after the card was charged, the row stays in_flight and
# reconcile_stale_recharges settles it from the processor's record.

import logging
import time
from decimal import Decimal
from typing import Optional

import config
from errors import ConcurrencyConflict, RechargeFailed, ValidationError
from events import EventType, emit
from models import (
    BillingStatus,
    Recharge,
    RechargeReason,
    RechargeStatus,
    money,
    new_id,
)
from payments import ChargeResult, PaymentGateway
from repositories import CompanyBillingRepo, RechargeRepo
from wallet import LedgerUnit, WalletLedger

log = logging.getLogger("meterwise")


class AutoRechargeTrigger:
    def __init__(self, ledger: WalletLedger, gateway: PaymentGateway,
                 grace_hours: Optional[float] = None, stale_after: Optional[float] = None,
                 clock=time.time):
        self.ledger = ledger
        self.store = ledger.store
        self.gateway = gateway
        self.grace_hours = config.PAST_DUE_GRACE_HOURS if grace_hours is None else grace_hours
        self.stale_after = config.RECHARGE_STALE_SEC if stale_after is None else stale_after
        self.clock = clock

    # ── Entry points ──────────────────────────────────────────────────

    def maybe_recharge(self, company_id: str) -> Optional[Recharge]:
        """Low-balance trigger. Returns None when no charge was started."""
        started = self._begin(company_id, RechargeReason.LOW_BALANCE)
        if started is None:
            return None
        return self._execute(*started)

    def initial_recharge(self, company_id: str) -> Optional[Recharge]:
        """Immediate recharge after a payment method is attached; not threshold-gated."""
        started = self._begin(company_id, RechargeReason.INITIAL)
        if started is None:
            return None
        return self._execute(*started)

    def recharge_now(self, company_id: str, amount=None) -> Recharge:
        """Manual top-up. Raises RechargeFailed if the charge is declined."""
        amount = None if amount is None else money(amount)
        if amount is not None and amount <= 0:
            raise ValidationError(f"recharge amount must be > 0, got {amount}")
        started = self._begin(company_id, RechargeReason.MANUAL, amount=amount)
        if started is None:
            raise ConcurrencyConflict(
                f"a recharge is already in flight for {company_id}", company_id=company_id,
            )
        recharge = self._execute(*started)
        if recharge.status == RechargeStatus.FAILED.value:
            raise RechargeFailed(
                recharge.error or "payment declined",
                company_id=company_id, recharge_id=recharge.recharge_id,
            )
        return recharge

    # ── Step 1: decide ────────────────────────────────────────────────

    def _begin(self, company_id: str, reason: RechargeReason,
               amount: Optional[Decimal] = None):
        with self.ledger.locked(company_id) as unit:
            b = unit.billing
            if not b.has_payment_method:
                if reason is RechargeReason.MANUAL:
                    raise ValidationError(
                        f"{company_id} has no payment method on file", company_id=company_id,
                    )
                return None
            if b.recharge_in_flight:
                log.debug("RECHARGE %s skipped, one already in flight", company_id)
                return None
            if reason is RechargeReason.LOW_BALANCE:
                if not b.auto_recharge_enabled or b.wallet_balance >= b.auto_recharge_threshold:
                    return None

            amount = amount or b.auto_recharge_amount
            if amount <= 0:
                return None

            b.recharge_in_flight = True
            self.ledger.save(unit)
            recharge = Recharge(
                recharge_id=new_id("rch"),
                company_id=company_id,
                amount=amount,
                reason=reason.value,
                created_at=unit.now,
            )
            RechargeRepo.insert(unit.conn, recharge, unit.backend)
            emit(unit.conn, unit.backend, EventType.RECHARGE_REQUESTED, company_id, now=unit.now,
                 recharge_id=recharge.recharge_id, amount=amount, reason=reason,
                 balance=b.wallet_balance)
            payment_method_id = b.payment_method_id

        log.info("RECHARGE %s requested %s (%s) balance=%s", company_id, amount,
                 reason.value, b.wallet_balance)
        return recharge, payment_method_id

    # ── Step 2: charge ────────────────────────────────────────────────

    def _execute(self, recharge: Recharge, payment_method_id: str) -> Recharge:
        try:
            result = self.gateway.charge(
                payment_method_id, recharge.amount,
                company_id=recharge.company_id, recharge_id=recharge.recharge_id,
            )
        except Exception as e:
            # A crashing gateway is a declined charge; the flag must still clear
            log.exception("RECHARGE %s gateway error", recharge.company_id)
            result = ChargeResult(success=False, error=f"gateway error: {e}")

        if result.pending:
            # The webhook may already have settled this row; only the ref is written
            self._record_provider_ref(recharge, result.provider_ref)
            log.info("RECHARGE %s %s pending at processor (%s)",
                     recharge.company_id, recharge.recharge_id, result.provider_ref)
            return self._reload(recharge)

        try:
            return self.on_recharge_result(
                recharge.company_id, recharge.amount, result.success,
                result.provider_ref or None, recharge_id=recharge.recharge_id,
                error=result.error,
            )
        except Exception:
            # Row stays in_flight for reconcile_stale_recharges
            log.exception("RECHARGE %s %s apply failed after charge (ref=%s)",
                          recharge.company_id, recharge.recharge_id, result.provider_ref)
            try:
                self._record_provider_ref(recharge, result.provider_ref)
            except Exception:
                log.exception("RECHARGE %s %s could not store ref %s",
                              recharge.company_id, recharge.recharge_id, result.provider_ref)
            raise

    def _record_provider_ref(self, recharge: Recharge, provider_ref: str):
        if not provider_ref:
            return
        with self.store.transaction() as (conn, backend):
            if RechargeRepo.set_provider_ref(conn, recharge.recharge_id, provider_ref, backend):
                recharge.provider_ref = provider_ref

    def _reload(self, recharge: Recharge) -> Recharge:
        with self.store.connection() as (conn, backend):
            return RechargeRepo.get(conn, recharge.recharge_id, backend) or recharge

    # ── Step 3: apply ─────────────────────────────────────────────────

    def on_recharge_result(self, company_id: str, amount, success: bool,
                           provider_ref: Optional[str], recharge_id: Optional[str] = None,
                           error: str = "") -> Optional[Recharge]:
        """Apply a charge outcome. Replays for an already-settled recharge are no-ops.

        Returns None for a failed payment the engine never started.
        """
        if not provider_ref and not recharge_id:
            raise ValidationError("provider_ref or recharge_id is required", company_id=company_id)
        with self.ledger.locked(company_id) as unit:
            recharge = self._find(unit, provider_ref, recharge_id)
            if recharge is None:
                if not success:
                    log.warning("RECHARGE %s unknown payment %s failed, ignored",
                                company_id, provider_ref or recharge_id)
                    return None
                # Payment the engine never started (e.g. a top-up made on the processor side)
                if amount is None:
                    raise ValidationError("amount is required for an unknown recharge")
                if not provider_ref:
                    raise ValidationError("provider_ref is required for an unknown recharge",
                                          recharge_id=recharge_id)
                recharge = Recharge(
                    recharge_id=new_id("rch"),
                    company_id=company_id,
                    amount=money(amount),
                    reason=RechargeReason.MANUAL.value,
                    provider_ref=provider_ref,
                    created_at=unit.now,
                )
                RechargeRepo.insert(unit.conn, recharge, unit.backend)
                clears_flag = False
            else:
                if recharge.company_id != company_id:
                    raise ValidationError(
                        f"recharge {recharge.recharge_id} belongs to another company",
                        recharge_id=recharge.recharge_id,
                    )
                if recharge.status != RechargeStatus.IN_FLIGHT.value:
                    log.info("RECHARGE %s %s already %s, ignoring replay",
                             company_id, recharge.recharge_id, recharge.status)
                    return recharge
                clears_flag = True

            if amount is not None and money(amount) != recharge.amount:
                log.warning("RECHARGE %s %s processor amount %s differs from requested %s",
                            company_id, recharge.recharge_id, money(amount), recharge.amount)
                recharge.amount = money(amount)

            recharge.provider_ref = provider_ref or recharge.provider_ref
            recharge.completed_at = unit.now
            if clears_flag:
                unit.billing.recharge_in_flight = False

            if success:
                self._succeeded(unit, recharge)
            else:
                self._failed(unit, recharge, error)
            RechargeRepo.update(unit.conn, recharge, unit.backend)
            self.ledger.save(unit)
        return recharge

    def _find(self, unit: LedgerUnit, provider_ref, recharge_id) -> Optional[Recharge]:
        recharge = None
        if provider_ref:
            recharge = RechargeRepo.get_by_provider_ref(unit.conn, provider_ref, unit.backend)
        if recharge is None and recharge_id:
            recharge = RechargeRepo.get(unit.conn, recharge_id, unit.backend)
        return recharge

    def _succeeded(self, unit: LedgerUnit, recharge: Recharge):
        b = unit.billing
        recharge.status = RechargeStatus.SUCCEEDED.value
        recharge.error = ""
        self.ledger.credit(
            b.company_id, recharge.amount,
            description=f"Recharge ({recharge.reason})",
            recharge_id=recharge.recharge_id, unit=unit,
        )
        emit(unit.conn, unit.backend, EventType.RECHARGE_SUCCEEDED, b.company_id, now=unit.now,
             recharge_id=recharge.recharge_id, amount=recharge.amount,
             provider_ref=recharge.provider_ref, balance=b.wallet_balance)
        if b.billing_status != BillingStatus.ACTIVE.value:
            self._set_status(unit, BillingStatus.ACTIVE, reason="recharge succeeded")
        log.info("RECHARGE %s %s succeeded +%s ref=%s", b.company_id,
                 recharge.recharge_id, recharge.amount, recharge.provider_ref)

    def _failed(self, unit: LedgerUnit, recharge: Recharge, error: str):
        b = unit.billing
        recharge.status = RechargeStatus.FAILED.value
        recharge.error = error or "payment declined"
        emit(unit.conn, unit.backend, EventType.RECHARGE_FAILED, b.company_id, now=unit.now,
             recharge_id=recharge.recharge_id, amount=recharge.amount,
             provider_ref=recharge.provider_ref, error=recharge.error)
        # A suspended company stays suspended
        if b.billing_status != BillingStatus.SUSPENDED.value:
            self._set_status(unit, BillingStatus.PAST_DUE, reason=recharge.error)
        log.warning("RECHARGE %s %s failed: %s", b.company_id, recharge.recharge_id,
                    recharge.error)

    def _set_status(self, unit: LedgerUnit, status: BillingStatus, reason: str = ""):
        b = unit.billing
        old = b.billing_status
        if old == status.value:
            return
        b.billing_status = status.value
        if status is BillingStatus.PAST_DUE:
            b.past_due_since = unit.now
        elif status is BillingStatus.ACTIVE:
            b.past_due_since = 0.0
        emit(unit.conn, unit.backend, EventType.BILLING_STATUS_CHANGED, b.company_id,
             now=unit.now, old_status=old, new_status=status.value, reason=reason)
        log.info("STATUS %s %s -> %s (%s)", b.company_id, old, status.value, reason)

    # ── Grace period ──────────────────────────────────────────────────

    def enforce_grace_period(self, now: Optional[float] = None) -> list[str]:
        """Suspend past_due companies whose grace window has run out."""
        now = self.clock() if now is None else now
        cutoff = now - self.grace_hours * 3600
        with self.store.connection() as (conn, backend):
            candidates = CompanyBillingRepo.list_by_status(
                conn, BillingStatus.PAST_DUE.value, backend,
            )

        suspended = []
        for c in candidates:
            if c.past_due_since > cutoff:
                continue
            with self.ledger.locked(c.company_id) as unit:
                b = unit.billing
                # Re-check: a recharge may have landed since the scan
                if b.billing_status != BillingStatus.PAST_DUE.value or b.past_due_since > cutoff:
                    continue
                unit.now = now
                self._set_status(unit, BillingStatus.SUSPENDED,
                                 reason=f"past_due for more than {self.grace_hours:g}h")
                self.ledger.save(unit)
            suspended.append(c.company_id)

        if suspended:
            log.warning("GRACE suspended %d compan%s: %s", len(suspended),
                        "y" if len(suspended) == 1 else "ies", ", ".join(suspended))
        return suspended

    # ── Stale in-flight recharges ─────────────────────────────────────

    def reconcile_stale_recharges(self, now: Optional[float] = None) -> list[Recharge]:
        """Settle recharges whose apply step never ran.

        Each in_flight row older than stale_after is looked up at the
        processor. A settled outcome is applied through on_recharge_result;
        a charge the processor has no record of is abandoned without
        changing billing status. Pending charges are left alone.
        """
        now = self.clock() if now is None else now
        cutoff = now - self.stale_after
        with self.store.connection() as (conn, backend):
            flagged = CompanyBillingRepo.list_recharge_in_flight(conn, backend)

        resolved = []
        for b in flagged:
            with self.store.connection() as (conn, backend):
                recharge = RechargeRepo.latest_in_flight(conn, b.company_id, backend)
            if recharge is None:
                self._clear_orphan_flag(b.company_id)
                continue
            if recharge.created_at > cutoff:
                continue

            try:
                result = self.gateway.lookup(recharge.provider_ref or "",
                                             recharge_id=recharge.recharge_id)
            except Exception:
                log.exception("RECONCILE %s %s lookup failed", b.company_id, recharge.recharge_id)
                continue
            if result is not None and result.pending:
                continue

            try:
                if result is None:
                    settled = self._abandon(b.company_id, recharge.recharge_id)
                else:
                    settled = self.on_recharge_result(
                        b.company_id, None, result.success,
                        result.provider_ref or recharge.provider_ref,
                        recharge_id=recharge.recharge_id, error=result.error,
                    )
            except ConcurrencyConflict:
                log.warning("RECONCILE %s busy, retrying next sweep", b.company_id)
                continue
            resolved.append(settled)
            log.info("RECONCILE %s %s -> %s", b.company_id, settled.recharge_id, settled.status)
        return resolved

    def _abandon(self, company_id: str, recharge_id: str) -> Recharge:
        with self.ledger.locked(company_id) as unit:
            recharge = RechargeRepo.get(unit.conn, recharge_id, unit.backend)
            if recharge.status != RechargeStatus.IN_FLIGHT.value:
                return recharge
            recharge.status = RechargeStatus.FAILED.value
            recharge.error = "no charge found at processor"
            recharge.completed_at = unit.now
            unit.billing.recharge_in_flight = False
            RechargeRepo.update(unit.conn, recharge, unit.backend)
            self.ledger.save(unit)
        log.warning("RECHARGE %s %s abandoned, processor never saw it", company_id, recharge_id)
        return recharge

    def _clear_orphan_flag(self, company_id: str):
        with self.ledger.locked(company_id) as unit:
            if not unit.billing.recharge_in_flight:
                return
            if RechargeRepo.latest_in_flight(unit.conn, company_id, unit.backend) is not None:
                return
            unit.billing.recharge_in_flight = False
            self.ledger.save(unit)
        log.warning("RECHARGE %s in-flight flag had no recharge row, cleared", company_id)
