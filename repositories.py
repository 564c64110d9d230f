# Meterwise Repositories
# All SQL lives here. Components hand in a (conn, backend) pair obtained
# from BillingStore and get typed entities back.

import json
from decimal import Decimal
from typing import Optional

from db import sql
from models import (
    CompanyBilling,
    Invoice,
    InvoiceLineItem,
    Recharge,
    UsageRecord,
    WalletTransaction,
    money,
    to_decimal,
)


def _exec(conn, backend, query, params=()):
    return conn.execute(sql(query, backend), params)


# ── company_billing ───────────────────────────────────────────────────


class CompanyBillingRepo:

    COLUMNS = (
        "company_id", "billing_status", "wallet_balance", "current_month_spent",
        "total_spent", "current_month_start", "monthly_spend_cap",
        "auto_recharge_enabled", "auto_recharge_threshold", "auto_recharge_amount",
        "payment_provider", "payment_method_id", "payment_method_last4",
        "payment_method_brand", "payment_method_exp", "recharge_in_flight",
        "past_due_since", "created_at", "updated_at",
    )

    @staticmethod
    def _values(b: CompanyBilling) -> tuple:
        return (
            b.company_id, b.billing_status, b.wallet_balance, b.current_month_spent,
            b.total_spent, b.current_month_start, b.monthly_spend_cap,
            int(b.auto_recharge_enabled),
            b.auto_recharge_threshold, b.auto_recharge_amount,
            b.payment_provider, b.payment_method_id, b.payment_method_last4,
            b.payment_method_brand, b.payment_method_exp, int(b.recharge_in_flight),
            b.past_due_since, b.created_at, b.updated_at,
        )

    @staticmethod
    def get(conn, company_id: str, backend="sqlite", for_update=False) -> Optional[CompanyBilling]:
        query = "SELECT * FROM company_billing WHERE company_id = ?"
        if for_update and backend == "postgres":
            query += " FOR UPDATE"
        row = _exec(conn, backend, query, (company_id,)).fetchone()
        return CompanyBilling.from_row(row) if row else None

    @staticmethod
    def insert(conn, billing: CompanyBilling, backend="sqlite"):
        cols = CompanyBillingRepo.COLUMNS
        _exec(
            conn, backend,
            f"INSERT INTO company_billing ({', '.join(cols)}) "
            f"VALUES ({', '.join('?' for _ in cols)})",
            CompanyBillingRepo._values(billing),
        )

    @staticmethod
    def save(conn, billing: CompanyBilling, backend="sqlite"):
        cols = CompanyBillingRepo.COLUMNS[1:]
        values = CompanyBillingRepo._values(billing)
        _exec(
            conn, backend,
            f"UPDATE company_billing SET {', '.join(c + ' = ?' for c in cols)} "
            "WHERE company_id = ?",
            values[1:] + (billing.company_id,),
        )

    @staticmethod
    def list_by_status(conn, status: str, backend="sqlite") -> list[CompanyBilling]:
        rows = _exec(
            conn, backend,
            "SELECT * FROM company_billing WHERE billing_status = ? ORDER BY company_id",
            (status,),
        ).fetchall()
        return [CompanyBilling.from_row(r) for r in rows]

    @staticmethod
    def list_recharge_in_flight(conn, backend="sqlite") -> list[CompanyBilling]:
        rows = _exec(
            conn, backend,
            "SELECT * FROM company_billing WHERE recharge_in_flight = 1 ORDER BY company_id",
        ).fetchall()
        return [CompanyBilling.from_row(r) for r in rows]


# ── usage_records ─────────────────────────────────────────────────────


class UsageRecordRepo:

    @staticmethod
    def insert(conn, r: UsageRecord, backend="sqlite"):
        _exec(
            conn, backend,
            """INSERT INTO usage_records
               (id, company_id, job_id, category, raw_quantity, base_cost,
                margin_percent, final_cost, idempotency_key, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (r.id, r.company_id, r.job_id, r.category, r.raw_quantity, r.base_cost,
             r.margin_percent, r.final_cost, r.idempotency_key, r.created_at),
        )

    @staticmethod
    def get(conn, record_id: str, backend="sqlite") -> Optional[UsageRecord]:
        row = _exec(conn, backend, "SELECT * FROM usage_records WHERE id = ?", (record_id,)).fetchone()
        return UsageRecord.from_row(row) if row else None

    @staticmethod
    def find_by_idempotency_key(conn, company_id: str, key: str, backend="sqlite") -> Optional[UsageRecord]:
        row = _exec(
            conn, backend,
            "SELECT * FROM usage_records WHERE company_id = ? AND idempotency_key = ?",
            (company_id, key),
        ).fetchone()
        return UsageRecord.from_row(row) if row else None

    @staticmethod
    def query(
        conn,
        company_id: str,
        backend="sqlite",
        start: Optional[float] = None,
        end: Optional[float] = None,
        job_id: Optional[str] = None,
        category: Optional[str] = None,
        limit: Optional[int] = None,
        newest_first: bool = False,
    ) -> list[UsageRecord]:
        """Records for a company, window is [start, end)."""
        clauses = ["company_id = ?"]
        params: list = [company_id]
        if start is not None:
            clauses.append("created_at >= ?")
            params.append(start)
        if end is not None:
            clauses.append("created_at < ?")
            params.append(end)
        if job_id is not None:
            clauses.append("job_id = ?")
            params.append(job_id)
        if category is not None:
            clauses.append("category = ?")
            params.append(category)

        order = "DESC" if newest_first else "ASC"
        query = (
            f"SELECT * FROM usage_records WHERE {' AND '.join(clauses)} "
            f"ORDER BY created_at {order}, id {order}"
        )
        if limit:
            query += " LIMIT ?"
            params.append(int(limit))
        rows = _exec(conn, backend, query, tuple(params)).fetchall()
        return [UsageRecord.from_row(r) for r in rows]


# ── wallet_transactions ───────────────────────────────────────────────


class WalletTransactionRepo:

    @staticmethod
    def insert(conn, tx: WalletTransaction, backend="sqlite"):
        _exec(
            conn, backend,
            """INSERT INTO wallet_transactions
               (tx_id, company_id, tx_type, amount, balance_before, balance_after,
                description, usage_record_id, recharge_id, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (tx.tx_id, tx.company_id, tx.tx_type, tx.amount, tx.balance_before,
             tx.balance_after, tx.description, tx.usage_record_id, tx.recharge_id,
             tx.created_at),
        )

    @staticmethod
    def history(conn, company_id: str, backend="sqlite", limit: int = 50) -> list[WalletTransaction]:
        rows = _exec(
            conn, backend,
            """SELECT * FROM wallet_transactions WHERE company_id = ?
               ORDER BY created_at DESC, tx_id DESC LIMIT ?""",
            (company_id, int(limit)),
        ).fetchall()
        return [WalletTransaction.from_row(r) for r in rows]


# ── recharges ─────────────────────────────────────────────────────────


class RechargeRepo:

    @staticmethod
    def insert(conn, r: Recharge, backend="sqlite"):
        _exec(
            conn, backend,
            """INSERT INTO recharges
               (recharge_id, company_id, amount, reason, status, provider_ref,
                error, created_at, completed_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (r.recharge_id, r.company_id, r.amount, r.reason, r.status,
             r.provider_ref, r.error, r.created_at, r.completed_at),
        )

    @staticmethod
    def update(conn, r: Recharge, backend="sqlite"):
        _exec(
            conn, backend,
            """UPDATE recharges
               SET status = ?, provider_ref = ?, error = ?, completed_at = ?
               WHERE recharge_id = ?""",
            (r.status, r.provider_ref, r.error, r.completed_at, r.recharge_id),
        )

    @staticmethod
    def set_provider_ref(conn, recharge_id: str, provider_ref: str, backend="sqlite") -> bool:
        """Attach the processor reference. Never touches a settled recharge."""
        cur = _exec(
            conn, backend,
            "UPDATE recharges SET provider_ref = ? WHERE recharge_id = ? AND status = 'in_flight'",
            (provider_ref, recharge_id),
        )
        return cur.rowcount > 0

    @staticmethod
    def get(conn, recharge_id: str, backend="sqlite") -> Optional[Recharge]:
        row = _exec(
            conn, backend, "SELECT * FROM recharges WHERE recharge_id = ?", (recharge_id,),
        ).fetchone()
        return Recharge.from_row(row) if row else None

    @staticmethod
    def get_by_provider_ref(conn, provider_ref: str, backend="sqlite") -> Optional[Recharge]:
        row = _exec(
            conn, backend, "SELECT * FROM recharges WHERE provider_ref = ?", (provider_ref,),
        ).fetchone()
        return Recharge.from_row(row) if row else None

    @staticmethod
    def latest_in_flight(conn, company_id: str, backend="sqlite") -> Optional[Recharge]:
        row = _exec(
            conn, backend,
            """SELECT * FROM recharges WHERE company_id = ? AND status = 'in_flight'
               ORDER BY created_at DESC LIMIT 1""",
            (company_id,),
        ).fetchone()
        return Recharge.from_row(row) if row else None

    @staticmethod
    def list_for_company(conn, company_id: str, backend="sqlite", limit: int = 50) -> list[Recharge]:
        rows = _exec(
            conn, backend,
            "SELECT * FROM recharges WHERE company_id = ? ORDER BY created_at DESC LIMIT ?",
            (company_id, int(limit)),
        ).fetchall()
        return [Recharge.from_row(r) for r in rows]


# ── invoices ──────────────────────────────────────────────────────────


class InvoiceRepo:

    SEQUENCE = "invoice_number"

    @staticmethod
    def next_number(conn, backend="sqlite") -> int:
        """Allocate the next invoice sequence value inside the caller's transaction."""
        cur = _exec(
            conn, backend,
            "UPDATE invoice_sequence SET value = value + 1 WHERE name = ?",
            (InvoiceRepo.SEQUENCE,),
        )
        if cur.rowcount == 0:
            _exec(
                conn, backend,
                "INSERT INTO invoice_sequence (name, value) VALUES (?, 1)",
                (InvoiceRepo.SEQUENCE,),
            )
        row = _exec(
            conn, backend,
            "SELECT value FROM invoice_sequence WHERE name = ?",
            (InvoiceRepo.SEQUENCE,),
        ).fetchone()
        return int(row["value"])

    @staticmethod
    def _from_row(row) -> Invoice:
        items = row["line_items"]
        if isinstance(items, str):
            items = json.loads(items)
        tax_rate = row["tax_rate"]
        return Invoice(
            id=row["id"],
            invoice_number=row["invoice_number"],
            company_id=row["company_id"],
            status=row["status"],
            line_items=[InvoiceLineItem.from_dict(i) for i in items],
            subtotal=money(row["subtotal"]),
            tax_rate=None if tax_rate is None else to_decimal(tax_rate),
            tax_amount=money(row["tax_amount"]),
            total=money(row["total"]),
            period_start=float(row["period_start"]),
            period_end=float(row["period_end"]),
            created_at=float(row["created_at"]),
            description=row["description"] or "",
            refunds_invoice_id=row["refunds_invoice_id"],
            paid_at=float(row["paid_at"] or 0),
        )

    @staticmethod
    def insert(conn, inv: Invoice, backend="sqlite"):
        _exec(
            conn, backend,
            """INSERT INTO invoices
               (id, invoice_number, company_id, status, line_items, subtotal,
                tax_rate, tax_amount, total, period_start, period_end,
                description, refunds_invoice_id, created_at, paid_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (inv.id, inv.invoice_number, inv.company_id, inv.status,
             json.dumps([li.to_dict() for li in inv.line_items]),
             inv.subtotal, inv.tax_rate, inv.tax_amount, inv.total,
             inv.period_start, inv.period_end, inv.description,
             inv.refunds_invoice_id, inv.created_at, inv.paid_at),
        )

    @staticmethod
    def get(conn, invoice_id: str, backend="sqlite") -> Optional[Invoice]:
        row = _exec(conn, backend, "SELECT * FROM invoices WHERE id = ?", (invoice_id,)).fetchone()
        return InvoiceRepo._from_row(row) if row else None

    @staticmethod
    def list(conn, company_id: str, backend="sqlite", status: Optional[str] = None,
             limit: int = 50) -> list[Invoice]:
        clauses = ["company_id = ?"]
        params: list = [company_id]
        if status:
            clauses.append("status = ?")
            params.append(status)
        params.append(int(limit))
        rows = _exec(
            conn, backend,
            f"SELECT * FROM invoices WHERE {' AND '.join(clauses)} "
            "ORDER BY created_at DESC, invoice_number DESC LIMIT ?",
            tuple(params),
        ).fetchall()
        return [InvoiceRepo._from_row(r) for r in rows]

    @staticmethod
    def set_status(conn, invoice_id: str, status: str, paid_at: float, backend="sqlite"):
        _exec(
            conn, backend,
            "UPDATE invoices SET status = ?, paid_at = ? WHERE id = ?",
            (status, paid_at, invoice_id),
        )


# ── pricing_config / margin_config ────────────────────────────────────


class PricingRepo:

    @staticmethod
    def active_price(conn, category: str, backend="sqlite"):
        """(unit_price, unit) of the newest active row, or None."""
        row = _exec(
            conn, backend,
            """SELECT unit_price, unit FROM pricing_config
               WHERE category = ? AND active = 1
               ORDER BY id DESC LIMIT 1""",
            (category,),
        ).fetchone()
        if not row:
            return None
        return to_decimal(row["unit_price"]), row["unit"]

    @staticmethod
    def list_active_prices(conn, backend="sqlite") -> list[dict]:
        rows = _exec(
            conn, backend,
            """SELECT category, unit_price, unit, created_at FROM pricing_config
               WHERE active = 1 ORDER BY category, id DESC""",
        ).fetchall()
        seen = {}
        for r in rows:
            seen.setdefault(r["category"], {
                "category": r["category"],
                "unit_price": str(to_decimal(r["unit_price"])),
                "unit": r["unit"],
                "since": float(r["created_at"]),
            })
        return list(seen.values())

    @staticmethod
    def replace_price(conn, category: str, unit_price: Decimal, unit: str, now: float, backend="sqlite"):
        _exec(
            conn, backend,
            "UPDATE pricing_config SET active = 0 WHERE category = ? AND active = 1",
            (category,),
        )
        _exec(
            conn, backend,
            """INSERT INTO pricing_config (category, unit_price, unit, active, created_at)
               VALUES (?, ?, ?, 1, ?)""",
            (category, unit_price, unit, now),
        )

    @staticmethod
    def active_margin(conn, company_id: Optional[str], backend="sqlite") -> Optional[Decimal]:
        if company_id is None:
            row = _exec(
                conn, backend,
                """SELECT margin_percent FROM margin_config
                   WHERE company_id IS NULL AND active = 1 ORDER BY id DESC LIMIT 1""",
            ).fetchone()
        else:
            row = _exec(
                conn, backend,
                """SELECT margin_percent FROM margin_config
                   WHERE company_id = ? AND active = 1 ORDER BY id DESC LIMIT 1""",
                (company_id,),
            ).fetchone()
        return to_decimal(row["margin_percent"]) if row else None

    @staticmethod
    def deactivate_margin(conn, company_id: Optional[str], backend="sqlite") -> int:
        if company_id is None:
            cur = _exec(
                conn, backend,
                "UPDATE margin_config SET active = 0 WHERE company_id IS NULL AND active = 1",
            )
        else:
            cur = _exec(
                conn, backend,
                "UPDATE margin_config SET active = 0 WHERE company_id = ? AND active = 1",
                (company_id,),
            )
        return cur.rowcount

    @staticmethod
    def insert_margin(conn, company_id: Optional[str], percent: Decimal, now: float, backend="sqlite"):
        _exec(
            conn, backend,
            """INSERT INTO margin_config (company_id, margin_percent, active, created_at)
               VALUES (?, ?, 1, ?)""",
            (company_id, percent, now),
        )


# ── billing_events (outbox) ───────────────────────────────────────────


class OutboxRepo:

    @staticmethod
    def insert(conn, event, backend="sqlite"):
        _exec(
            conn, backend,
            """INSERT INTO billing_events
               (event_id, event_type, company_id, payload, created_at)
               VALUES (?, ?, ?, ?, ?)""",
            (event.event_id, event.event_type, event.company_id,
             json.dumps(event.payload, sort_keys=True), event.created_at),
        )

    @staticmethod
    def _rows(rows):
        out = []
        for r in rows:
            payload = r["payload"]
            out.append({
                "event_id": r["event_id"],
                "event_type": r["event_type"],
                "company_id": r["company_id"],
                "payload": json.loads(payload) if isinstance(payload, str) else payload,
                "created_at": float(r["created_at"]),
                "dispatched_at": float(r["dispatched_at"] or 0),
                "attempts": int(r["attempts"] or 0),
            })
        return out

    @staticmethod
    def pending(conn, backend="sqlite", limit: int = 100, max_attempts: int = 5) -> list[dict]:
        rows = _exec(
            conn, backend,
            """SELECT * FROM billing_events WHERE dispatched_at = 0 AND attempts < ?
               ORDER BY created_at ASC, event_id ASC LIMIT ?""",
            (int(max_attempts), int(limit)),
        ).fetchall()
        return OutboxRepo._rows(rows)

    @staticmethod
    def for_company(conn, company_id: str, backend="sqlite", event_type: Optional[str] = None,
                    limit: int = 100) -> list[dict]:
        clauses = ["company_id = ?"]
        params: list = [company_id]
        if event_type:
            clauses.append("event_type = ?")
            params.append(event_type)
        params.append(int(limit))
        rows = _exec(
            conn, backend,
            f"SELECT * FROM billing_events WHERE {' AND '.join(clauses)} "
            "ORDER BY created_at ASC, event_id ASC LIMIT ?",
            tuple(params),
        ).fetchall()
        return OutboxRepo._rows(rows)

    @staticmethod
    def mark_dispatched(conn, event_id: str, now: float, backend="sqlite"):
        _exec(
            conn, backend,
            "UPDATE billing_events SET dispatched_at = ?, attempts = attempts + 1 WHERE event_id = ?",
            (now, event_id),
        )

    @staticmethod
    def mark_failed(conn, event_id: str, error: str, backend="sqlite"):
        _exec(
            conn, backend,
            "UPDATE billing_events SET attempts = attempts + 1, last_error = ? WHERE event_id = ?",
            (error[:500], event_id),
        )
