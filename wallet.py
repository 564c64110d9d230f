# Meterwise Wallet Ledger
# Prepaid balance per company. Every balance change happens inside a
# LedgerUnit: the company's row held under the per-company lock (plus
# FOR UPDATE on PostgreSQL) for one transaction. Debits are only possible
# from inside such a unit, which makes the usage recorder the single
# downward path for wallet_balance.
#
# Month rollover is lazy. Whichever debit first observes
#   now >= current_month_start + 1 calendar month
# zeroes current_month_spent and moves the anchor forward by whole months
# before its own cost is added.

import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from db import BillingStore
from errors import CompanyNotFound, SpendCapExceeded, ValidationError
from events import EventType, emit
from models import (
    CompanyBilling,
    TxType,
    WalletTransaction,
    add_months,
    money,
    months_elapsed,
    new_id,
)
from repositories import CompanyBillingRepo, WalletTransactionRepo

log = logging.getLogger("meterwise")


@dataclass
class LedgerUnit:
    """An open, locked transaction on one company's billing row."""
    conn: object
    backend: str
    billing: CompanyBilling
    now: float


class WalletLedger:
    def __init__(self, store: BillingStore, clock=time.time):
        self.store = store
        self.clock = clock

    @contextmanager
    def locked(self, company_id: str, timeout: Optional[float] = None):
        with self.store.company_transaction(company_id, timeout=timeout) as (conn, backend):
            billing = CompanyBillingRepo.get(conn, company_id, backend, for_update=True)
            if billing is None:
                raise CompanyNotFound(f"no billing account for {company_id}", company_id=company_id)
            yield LedgerUnit(conn=conn, backend=backend, billing=billing, now=self.clock())

    def get(self, company_id: str) -> CompanyBilling:
        with self.store.connection() as (conn, backend):
            billing = CompanyBillingRepo.get(conn, company_id, backend)
        if billing is None:
            raise CompanyNotFound(f"no billing account for {company_id}", company_id=company_id)
        return billing

    def save(self, unit: LedgerUnit):
        unit.billing.updated_at = unit.now
        CompanyBillingRepo.save(unit.conn, unit.billing, unit.backend)

    # ── Month rollover ────────────────────────────────────────────────

    def roll_month(self, unit: LedgerUnit) -> bool:
        b = unit.billing
        k = months_elapsed(b.current_month_start, unit.now)
        if k <= 0:
            return False
        previous = b.current_month_spent
        b.current_month_start = add_months(b.current_month_start, k)
        b.current_month_spent = money(0)
        self.save(unit)
        log.info("ROLLOVER %s spent=%s reset, %d month(s) elapsed", b.company_id, previous, k)
        return True

    def reset_month_if_due(self, company_id: str) -> bool:
        with self.locked(company_id) as unit:
            return self.roll_month(unit)

    # ── Balance changes ───────────────────────────────────────────────

    def debit(self, unit: LedgerUnit, amount, description: str = "",
              usage_record_id: Optional[str] = None) -> WalletTransaction:
        amount = money(amount)
        if amount < 0:
            raise ValidationError(f"debit amount must be >= 0, got {amount}")
        self.roll_month(unit)

        b = unit.billing
        before = b.wallet_balance
        b.wallet_balance = money(before - amount)
        b.current_month_spent = money(b.current_month_spent + amount)
        b.total_spent = money(b.total_spent + amount)
        self.save(unit)

        tx = self._journal(unit, TxType.DEBIT, amount, before, description,
                           usage_record_id=usage_record_id)
        emit(unit.conn, unit.backend, EventType.WALLET_DEBITED, b.company_id, now=unit.now,
             tx_id=tx.tx_id, amount=amount, balance=b.wallet_balance,
             usage_record_id=usage_record_id)
        log.info("DEBIT %s -%s balance=%s month=%s", b.company_id, amount,
                 b.wallet_balance, b.current_month_spent)
        return tx

    def credit(self, company_id: str, amount, description: str = "Wallet credit",
               recharge_id: Optional[str] = None,
               unit: Optional[LedgerUnit] = None) -> WalletTransaction:
        """Add funds. Opens its own locked unit unless one is passed in."""
        amount = money(amount)
        if amount <= 0:
            raise ValidationError(f"credit amount must be > 0, got {amount}")
        if unit is None:
            with self.locked(company_id) as own:
                return self._credit(own, amount, description, recharge_id)
        return self._credit(unit, amount, description, recharge_id)

    def _credit(self, unit: LedgerUnit, amount: Decimal, description: str,
                recharge_id: Optional[str]) -> WalletTransaction:
        b = unit.billing
        before = b.wallet_balance
        b.wallet_balance = money(before + amount)
        self.save(unit)

        tx = self._journal(unit, TxType.CREDIT, amount, before, description,
                           recharge_id=recharge_id)
        emit(unit.conn, unit.backend, EventType.WALLET_CREDITED, b.company_id, now=unit.now,
             tx_id=tx.tx_id, amount=amount, balance=b.wallet_balance, recharge_id=recharge_id)
        log.info("CREDIT %s +%s balance=%s", b.company_id, amount, b.wallet_balance)
        return tx

    def _journal(self, unit, tx_type, amount, before, description,
                 usage_record_id=None, recharge_id=None) -> WalletTransaction:
        tx = WalletTransaction(
            tx_id=new_id("tx"),
            company_id=unit.billing.company_id,
            tx_type=tx_type.value,
            amount=amount,
            balance_before=before,
            balance_after=unit.billing.wallet_balance,
            description=description,
            usage_record_id=usage_record_id,
            recharge_id=recharge_id,
            created_at=unit.now,
        )
        WalletTransactionRepo.insert(unit.conn, tx, unit.backend)
        return tx

    def history(self, company_id: str, limit: int = 50) -> list[WalletTransaction]:
        with self.store.connection() as (conn, backend):
            return WalletTransactionRepo.history(conn, company_id, backend, limit=limit)


# ── Spend caps ────────────────────────────────────────────────────────


class SpendCapEnforcer:
    """Monthly ceiling check. A null cap means unlimited."""

    def __init__(self, store: BillingStore, clock=time.time):
        self.store = store
        self.clock = clock

    @staticmethod
    def exceeds(billing: CompanyBilling, amount, now: float) -> bool:
        if billing.monthly_spend_cap is None:
            return False
        spent = billing.current_month_spent
        if months_elapsed(billing.current_month_start, now) > 0:
            spent = money(0)
        return money(spent + money(amount)) > billing.monthly_spend_cap

    def would_exceed_cap(self, company_id: str, additional_amount) -> bool:
        """Advisory read outside any lock; the recorder re-checks under its unit."""
        with self.store.connection() as (conn, backend):
            billing = CompanyBillingRepo.get(conn, company_id, backend)
        if billing is None:
            raise CompanyNotFound(f"no billing account for {company_id}", company_id=company_id)
        return self.exceeds(billing, additional_amount, self.clock())

    def check(self, unit: LedgerUnit, amount):
        b = unit.billing
        if self.exceeds(b, amount, unit.now):
            log.warning("CAP %s rejected %s (spent=%s cap=%s)", b.company_id, amount,
                        b.current_month_spent, b.monthly_spend_cap)
            raise SpendCapExceeded(
                f"monthly spend cap {b.monthly_spend_cap} would be exceeded",
                company_id=b.company_id,
                cap=str(b.monthly_spend_cap),
                current_month_spent=str(b.current_month_spent),
                amount=str(money(amount)),
            )
