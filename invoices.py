# Meterwise Invoicing
# Invoices are immutable snapshots of committed usage over [start, end).
# Line items follow the fixed category order and sum exactly to the
# subtotal, which sums exactly to the records' final_cost. Only the
# status (and paid_at) of an invoice ever changes after insert.
#
# Invoice lifecycle:  pending → paid | failed
# Corrections:        a new invoice with status refunded, linked back

import csv
import io
import logging
import time
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

import config
from db import BillingStore
from errors import InvalidInvoiceTransition, InvoiceNotFound, ValidationError
from events import EventType, emit
from models import (
    CATEGORY_ORDER,
    ZERO,
    Invoice,
    InvoiceLineItem,
    InvoiceStatus,
    money,
    new_id,
    to_decimal,
)
from repositories import InvoiceRepo, UsageRecordRepo

log = logging.getLogger("meterwise")

# Only these transitions are legal; anything else is rejected
VALID_TRANSITIONS = {
    InvoiceStatus.PENDING.value: {InvoiceStatus.PAID.value, InvoiceStatus.FAILED.value},
    InvoiceStatus.PAID.value: set(),
    InvoiceStatus.FAILED.value: set(),
    InvoiceStatus.REFUNDED.value: set(),
}


def format_invoice_number(seq: int) -> str:
    return f"INV-{seq:06d}"


def build_line_items(records) -> list[InvoiceLineItem]:
    """Group records by category in CATEGORY_ORDER; empty categories are omitted."""
    totals = {}
    for r in records:
        amount, qty, count = totals.get(r.category, (ZERO, Decimal(0), 0))
        totals[r.category] = (amount + r.final_cost, qty + r.raw_quantity, count + 1)
    return [
        InvoiceLineItem(
            category=cat,
            amount=money(totals[cat][0]),
            quantity=totals[cat][1],
            record_count=totals[cat][2],
        )
        for cat in CATEGORY_ORDER
        if cat in totals
    ]


class InvoiceGenerator:
    def __init__(self, store: BillingStore, clock=time.time):
        self.store = store
        self.clock = clock

    def generate(self, company_id: str, start: float, end: float,
                 tax_rate=None, description: str = "") -> Invoice:
        if end <= start:
            raise ValidationError(f"invoice window is empty: [{start}, {end})")
        if tax_rate is None:
            tax_rate = config.DEFAULT_TAX_RATE
        rate = None if tax_rate is None else to_decimal(tax_rate)
        if rate is not None and (not rate.is_finite() or rate < 0):
            raise ValidationError(f"tax_rate must be >= 0, got {tax_rate}")

        with self.store.transaction() as (conn, backend):
            records = UsageRecordRepo.query(conn, company_id, backend, start=start, end=end)
            items = build_line_items(records)
            subtotal = money(sum((li.amount for li in items), ZERO))
            tax_amount = money(subtotal * rate / 100) if rate is not None else ZERO
            seq = InvoiceRepo.next_number(conn, backend)
            invoice = Invoice(
                id=new_id("inv"),
                invoice_number=format_invoice_number(seq),
                company_id=company_id,
                status=InvoiceStatus.PENDING.value,
                line_items=items,
                subtotal=subtotal,
                tax_rate=rate,
                tax_amount=tax_amount,
                total=money(subtotal + tax_amount),
                period_start=float(start),
                period_end=float(end),
                created_at=self.clock(),
                description=description,
            )
            InvoiceRepo.insert(conn, invoice, backend)
            emit(conn, backend, EventType.INVOICE_GENERATED, company_id, now=invoice.created_at,
                 invoice_id=invoice.id, invoice_number=invoice.invoice_number,
                 total=invoice.total, records=len(records))

        log.info("INVOICE %s %s subtotal=%s tax=%s total=%s (%d records)", company_id,
                 invoice.invoice_number, subtotal, tax_amount, invoice.total, len(records))
        return invoice

    def get(self, invoice_id: str) -> Invoice:
        with self.store.connection() as (conn, backend):
            invoice = InvoiceRepo.get(conn, invoice_id, backend)
        if invoice is None:
            raise InvoiceNotFound(f"invoice {invoice_id} not found", invoice_id=invoice_id)
        return invoice

    def list(self, company_id: str, status: Optional[str] = None, limit: int = 50) -> list[Invoice]:
        if status is not None and status not in VALID_TRANSITIONS:
            raise ValidationError(f"unknown invoice status: {status!r}",
                                  allowed=list(VALID_TRANSITIONS))
        with self.store.connection() as (conn, backend):
            return InvoiceRepo.list(conn, company_id, backend, status=status, limit=limit)

    def settle(self, invoice_id: str, paid: bool) -> Invoice:
        target = InvoiceStatus.PAID.value if paid else InvoiceStatus.FAILED.value
        now = self.clock()
        with self.store.transaction() as (conn, backend):
            invoice = InvoiceRepo.get(conn, invoice_id, backend)
            if invoice is None:
                raise InvoiceNotFound(f"invoice {invoice_id} not found", invoice_id=invoice_id)
            if target not in VALID_TRANSITIONS[invoice.status]:
                raise InvalidInvoiceTransition(
                    f"invoice {invoice.invoice_number} is {invoice.status}, cannot become {target}",
                    invoice_id=invoice_id, status=invoice.status, requested=target,
                )
            paid_at = now if paid else 0.0
            InvoiceRepo.set_status(conn, invoice_id, target, paid_at, backend)
            emit(conn, backend, EventType.INVOICE_SETTLED, invoice.company_id, now=now,
                 invoice_id=invoice_id, status=target)
            updated = InvoiceRepo.get(conn, invoice_id, backend)
        log.info("INVOICE %s %s -> %s", invoice.company_id, invoice.invoice_number, target)
        return updated

    def refund(self, invoice_id: str, description: str = "") -> Invoice:
        """Issue a correcting invoice that mirrors the original's amounts."""
        now = self.clock()
        with self.store.transaction() as (conn, backend):
            original = InvoiceRepo.get(conn, invoice_id, backend)
            if original is None:
                raise InvoiceNotFound(f"invoice {invoice_id} not found", invoice_id=invoice_id)
            if original.status == InvoiceStatus.REFUNDED.value:
                raise InvalidInvoiceTransition(
                    f"invoice {original.invoice_number} is itself a refund",
                    invoice_id=invoice_id, status=original.status,
                )
            seq = InvoiceRepo.next_number(conn, backend)
            refund = Invoice(
                id=new_id("inv"),
                invoice_number=format_invoice_number(seq),
                company_id=original.company_id,
                status=InvoiceStatus.REFUNDED.value,
                line_items=list(original.line_items),
                subtotal=original.subtotal,
                tax_rate=original.tax_rate,
                tax_amount=original.tax_amount,
                total=original.total,
                period_start=original.period_start,
                period_end=original.period_end,
                created_at=now,
                description=description or f"Refund of {original.invoice_number}",
                refunds_invoice_id=original.id,
            )
            InvoiceRepo.insert(conn, refund, backend)
            emit(conn, backend, EventType.INVOICE_GENERATED, original.company_id, now=now,
                 invoice_id=refund.id, invoice_number=refund.invoice_number,
                 total=refund.total, refunds_invoice_id=original.id)
        log.info("INVOICE %s %s refunds %s total=%s", original.company_id,
                 refund.invoice_number, original.invoice_number, refund.total)
        return refund

    def export_csv(self, invoice: Invoice) -> str:
        output = io.StringIO()
        writer = csv.writer(output)

        writer.writerow(["Invoice", invoice.invoice_number])
        writer.writerow(["Company", invoice.company_id])
        writer.writerow(["Status", invoice.status])
        writer.writerow(["Period Start", _iso(invoice.period_start)])
        writer.writerow(["Period End", _iso(invoice.period_end)])
        if invoice.refunds_invoice_id:
            writer.writerow(["Refunds", invoice.refunds_invoice_id])
        writer.writerow([])

        writer.writerow(["Category", "Quantity", "Records", "Amount"])
        for li in invoice.line_items:
            writer.writerow([li.category, str(li.quantity), li.record_count, str(li.amount)])

        writer.writerow([])
        writer.writerow(["Subtotal", "", "", str(invoice.subtotal)])
        rate = "" if invoice.tax_rate is None else f"{invoice.tax_rate}%"
        writer.writerow(["Tax", rate, "", str(invoice.tax_amount)])
        writer.writerow(["Total", "", "", str(invoice.total)])
        return output.getvalue()


def _iso(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()
