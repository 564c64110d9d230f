#!/usr/bin/env python3
# Meterwise CLI v1.0.0
# argparse. Operator access to wallets, usage, invoices and pricing.

import argparse
import json
import sys
import time
from datetime import datetime, timezone

import config
from billing import UNSET, get_billing_service
from errors import BillingError
from models import add_months, month_start


def _ts(value):
    """Accept a unix timestamp or an ISO date/datetime (UTC when naive)."""
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        dt = datetime.fromisoformat(value)
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt.timestamp()


def _date(ts):
    return datetime.fromtimestamp(ts, tz=timezone.utc).strftime("%Y-%m-%d %H:%M")


def _window(args):
    """Default window is the current calendar month."""
    start = _ts(args.start) if args.start else month_start(time.time())
    end = _ts(args.end) if args.end else add_months(start, 1)
    return start, end


def cmd_init(args):
    """Create a company billing account."""
    b = get_billing_service().init_company(
        args.company_id,
        monthly_spend_cap=args.cap,
        auto_recharge_threshold=args.threshold,
        auto_recharge_amount=args.amount,
    )
    print(f"Company {b.company_id}: {b.billing_status} | balance {b.wallet_balance}")


def cmd_status(args):
    """Show billing status for a company."""
    s = get_billing_service().status(args.company_id)
    if args.json:
        print(json.dumps(s, indent=2))
        return
    cap = s["monthly_spend_cap"] or "unlimited"
    print(f"Company: {s['company_id']}")
    print(f"  Status:     {s['billing_status']}{' (blocked)' if s['blocked'] else ''}")
    print(f"  Balance:    {s['wallet_balance']}")
    print(f"  This month: {s['current_month_spent']} / {cap} (since {_date(s['current_month_start'])})")
    print(f"  Lifetime:   {s['total_spent']}")
    auto = "on" if s["auto_recharge_enabled"] else "off"
    print(f"  Auto:       {auto} | below {s['auto_recharge_threshold']} add {s['auto_recharge_amount']}")
    if s["payment_method_id"]:
        print(f"  Card:       {s['payment_provider']} {s['payment_method_brand'] or ''} "
              f"****{s['payment_method_last4'] or '????'}")
    else:
        print("  Card:       none")
    for r in s["recent_recharges"]:
        print(f"    [{r['status']:>9}] {r['recharge_id']} | {r['amount']} | {r['reason']}")


def cmd_settings(args):
    """Update spend cap and auto-recharge settings."""
    cap = UNSET
    if args.cap is not None:
        cap = None if args.cap.lower() in ("none", "unlimited") else args.cap
    auto = None
    if args.auto is not None:
        auto = args.auto == "on"
    b = get_billing_service().update_settings(
        args.company_id, monthly_spend_cap=cap, auto_recharge_enabled=auto,
        auto_recharge_threshold=args.threshold, auto_recharge_amount=args.amount,
    )
    print(f"Updated {b.company_id}: cap={b.monthly_spend_cap or 'unlimited'} "
          f"auto={'on' if b.auto_recharge_enabled else 'off'} "
          f"threshold={b.auto_recharge_threshold} amount={b.auto_recharge_amount}")


def cmd_record(args):
    """Record one billable action."""
    result = get_billing_service().record_usage(
        args.company_id, args.category, args.quantity,
        job_id=args.job_id, idempotency_key=args.key,
    )
    replay = " (replayed)" if result["replayed"] else ""
    print(f"Recorded {result['usage_record_id']} | cost {result['final_cost']}{replay}")


def cmd_wallet(args):
    """Show wallet balance and recent transactions."""
    svc = get_billing_service()
    b = svc.ledger.get(args.company_id)
    print(f"Company: {args.company_id} | balance {b.wallet_balance}")
    for tx in svc.ledger.history(args.company_id, limit=args.limit):
        sign = "-" if tx.tx_type == "debit" else "+"
        print(f"  {_date(tx.created_at)} {sign}{tx.amount:>10} -> {tx.balance_after:>10} | {tx.description}")


def cmd_recharge(args):
    """Charge the stored payment method now."""
    r = get_billing_service().recharger.recharge_now(args.company_id, amount=args.amount)
    print(f"Recharge {r.recharge_id}: {r.status} | {r.amount} | ref {r.provider_ref or '-'}")


def cmd_invoice(args):
    """Generate an invoice for a window (default: current month)."""
    svc = get_billing_service()
    start, end = _window(args)
    inv = svc.invoices.generate(args.company_id, start, end, tax_rate=args.tax_rate)
    if args.csv:
        print(svc.invoices.export_csv(inv), end="")
        return
    print(f"Invoice {inv.invoice_number} ({inv.id}) for {inv.company_id}")
    print(f"  Period:   {_date(inv.period_start)} -> {_date(inv.period_end)}")
    for li in inv.line_items:
        print(f"    {li.category:<20} {li.record_count:>6} records  {li.amount:>12}")
    print(f"  Subtotal: {inv.subtotal}")
    print(f"  Tax:      {inv.tax_amount}")
    print(f"  Total:    {inv.total}")


def cmd_invoices(args):
    """List invoices for a company."""
    invoices = get_billing_service().invoices.list(args.company_id, status=args.status)
    if not invoices:
        print("No invoices.")
        return
    for inv in invoices:
        link = f" | refunds {inv.refunds_invoice_id}" if inv.refunds_invoice_id else ""
        print(f"  [{inv.status:>8}] {inv.invoice_number} | {inv.total:>12} | "
              f"{_date(inv.period_start)} -> {_date(inv.period_end)}{link}")


def cmd_usage(args):
    """Usage totals for a window, by category, job or month."""
    reports = get_billing_service().reports
    start, end = _window(args)
    if args.by == "job":
        rows = reports.totals_by_job(args.company_id, start, end)
        for r in rows:
            print(f"  {r['job_id'] or '(no job)':<36} {r['records']:>6} records  {r['amount']:>12}")
    elif args.by == "month":
        rows = reports.totals_by_month(args.company_id, start, end)
        for r in rows:
            print(f"  {r['month']}  {r['records']:>6} records  {r['amount']:>12}")
    else:
        t = reports.totals_for_company(args.company_id, start, end)
        for c in t["by_category"]:
            print(f"  {c['category']:<20} {c['records']:>6} records  {c['amount']:>12}")
        print(f"  {'TOTAL':<20} {t['records']:>6} records  {t['amount']:>12}")


def cmd_pricing(args):
    """Show active unit prices and margin."""
    pricing = get_billing_service().pricing
    for p in pricing.list_prices():
        print(f"  {p['category']:<20} {p['unit_price']:>10} per {p['unit']}")
    m = pricing.current_margin(args.company_id)
    scope = f"{args.company_id} override" if m["override"] else "global"
    print(f"  margin {m['margin_percent']}% ({scope})")


def cmd_set_price(args):
    p = get_billing_service().pricing.set_unit_price(args.category, args.price, args.unit)
    print(f"{p['category']} = {p['unit_price']} per {p['unit']}")


def cmd_set_margin(args):
    pricing = get_billing_service().pricing
    if args.clear:
        cleared = pricing.clear_margin_override(args.company_id)
        print(f"Override for {args.company_id} {'cleared' if cleared else 'not set'}")
        return
    value = pricing.set_margin(args.percent, company_id=args.company_id)
    print(f"Margin {args.company_id or 'global'} = {value}%")


def cmd_grace_sweep(args):
    """Suspend past_due companies whose grace window ran out."""
    suspended = get_billing_service().recharger.enforce_grace_period()
    print(f"Suspended {len(suspended)}: {', '.join(suspended) or '-'}")


def cmd_reconcile(args):
    """Settle stale in-flight recharges from the processor's record."""
    resolved = get_billing_service().recharger.reconcile_stale_recharges()
    for r in resolved:
        print(f"  {r.company_id:<20} {r.recharge_id}  {r.status}  {r.amount}")
    print(f"Reconciled {len(resolved)}")


def cmd_notify(args):
    """Drain the billing event outbox (once, or in a loop)."""
    notifier = get_billing_service().notifier
    if args.loop:
        try:
            notifier.run_forever(interval=args.interval)
        except KeyboardInterrupt:
            print("\nNotifier stopped.")
        return
    result = notifier.drain()
    print(f"Dispatched {result['dispatched']} | failed {result['failed']}")


def cmd_serve(args):
    """Start the API server."""
    import uvicorn
    from api import app
    print(f"Starting Meterwise API on port {args.port}...")
    uvicorn.run(app, host=args.bind, port=args.port)


def main(argv=None):
    parser = argparse.ArgumentParser(
        prog="meterwise",
        description="Meterwise: usage metering, prepaid wallets and invoicing",
    )
    sub = parser.add_subparsers(dest="command")

    # meterwise init
    p_init = sub.add_parser("init", help="Create a company billing account")
    p_init.add_argument("company_id")
    p_init.add_argument("--cap", default=None, help="Monthly spend cap (default unlimited)")
    p_init.add_argument("--threshold", default=None, help="Auto-recharge threshold")
    p_init.add_argument("--amount", default=None, help="Auto-recharge amount")
    p_init.set_defaults(func=cmd_init)

    # meterwise status
    p_status = sub.add_parser("status", help="Show billing status")
    p_status.add_argument("company_id")
    p_status.add_argument("--json", action="store_true", help="Raw JSON output")
    p_status.set_defaults(func=cmd_status)

    # meterwise settings
    p_set = sub.add_parser("settings", help="Update cap / auto-recharge settings")
    p_set.add_argument("company_id")
    p_set.add_argument("--cap", default=None, help="Monthly cap, or 'none' for unlimited")
    p_set.add_argument("--auto", choices=["on", "off"], default=None, help="Auto-recharge")
    p_set.add_argument("--threshold", default=None, help="Auto-recharge threshold")
    p_set.add_argument("--amount", default=None, help="Auto-recharge amount")
    p_set.set_defaults(func=cmd_settings)

    # meterwise record
    p_rec = sub.add_parser("record", help="Record usage")
    p_rec.add_argument("company_id")
    p_rec.add_argument("category", help="cv_parsing | question_generation | video_interview")
    p_rec.add_argument("quantity", help="KB, tokens or minutes")
    p_rec.add_argument("--job-id", default=None, help="Job ID")
    p_rec.add_argument("--key", default=None, help="Idempotency key")
    p_rec.set_defaults(func=cmd_record)

    # meterwise wallet
    p_wallet = sub.add_parser("wallet", help="Wallet balance and history")
    p_wallet.add_argument("company_id")
    p_wallet.add_argument("--limit", type=int, default=20)
    p_wallet.set_defaults(func=cmd_wallet)

    # meterwise recharge
    p_rch = sub.add_parser("recharge", help="Manual recharge from stored payment method")
    p_rch.add_argument("company_id")
    p_rch.add_argument("--amount", default=None, help="Amount (default: auto-recharge amount)")
    p_rch.set_defaults(func=cmd_recharge)

    # meterwise invoice
    p_inv = sub.add_parser("invoice", help="Generate an invoice")
    p_inv.add_argument("company_id")
    p_inv.add_argument("--start", default=None, help="Window start (timestamp or ISO date)")
    p_inv.add_argument("--end", default=None, help="Window end, exclusive")
    p_inv.add_argument("--tax-rate", default=None, help="Tax rate percent")
    p_inv.add_argument("--csv", action="store_true", help="Print as CSV")
    p_inv.set_defaults(func=cmd_invoice)

    # meterwise invoices
    p_invs = sub.add_parser("invoices", help="List invoices")
    p_invs.add_argument("company_id")
    p_invs.add_argument("--status", default=None, help="pending | paid | failed | refunded")
    p_invs.set_defaults(func=cmd_invoices)

    # meterwise usage
    p_usage = sub.add_parser("usage", help="Usage totals")
    p_usage.add_argument("company_id")
    p_usage.add_argument("--by", choices=["category", "job", "month"], default="category")
    p_usage.add_argument("--start", default=None, help="Window start (timestamp or ISO date)")
    p_usage.add_argument("--end", default=None, help="Window end, exclusive")
    p_usage.set_defaults(func=cmd_usage)

    # meterwise pricing
    p_price = sub.add_parser("pricing", help="Show prices and margin")
    p_price.add_argument("--company-id", default=None, help="Show this company's margin")
    p_price.set_defaults(func=cmd_pricing)

    # meterwise set-price
    p_sp = sub.add_parser("set-price", help="Change a category's unit price")
    p_sp.add_argument("category")
    p_sp.add_argument("price")
    p_sp.add_argument("--unit", default=None, help="KB | token | minute")
    p_sp.set_defaults(func=cmd_set_price)

    # meterwise set-margin
    p_sm = sub.add_parser("set-margin", help="Change the global or per-company margin")
    p_sm.add_argument("percent", nargs="?", default=None)
    p_sm.add_argument("--company-id", default=None, help="Per-company override")
    p_sm.add_argument("--clear", action="store_true", help="Remove the company override")
    p_sm.set_defaults(func=cmd_set_margin)

    # meterwise grace-sweep
    p_gs = sub.add_parser("grace-sweep", help="Suspend expired past_due companies")
    p_gs.set_defaults(func=cmd_grace_sweep)

    # meterwise reconcile
    p_rc = sub.add_parser("reconcile", help="Settle stale in-flight recharges")
    p_rc.set_defaults(func=cmd_reconcile)

    # meterwise notify
    p_nt = sub.add_parser("notify", help="Drain billing events")
    p_nt.add_argument("--loop", action="store_true", help="Keep draining")
    p_nt.add_argument("--interval", type=float, default=5.0, help="Loop interval (seconds)")
    p_nt.set_defaults(func=cmd_notify)

    # meterwise serve
    p_serve = sub.add_parser("serve", help="Start API server")
    p_serve.add_argument("--port", type=int, default=8000)
    p_serve.add_argument("--bind", default="0.0.0.0")
    p_serve.set_defaults(func=cmd_serve)

    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        sys.exit(1)

    if args.command == "set-margin" and not args.clear and args.percent is None:
        parser.error("set-margin needs a percent (or --company-id ... --clear)")
    if args.command == "set-margin" and args.clear and not args.company_id:
        parser.error("--clear needs --company-id")

    config.setup_logging()
    try:
        args.func(args)
    except BillingError as e:
        print(f"error: {e.code}: {e.message}", file=sys.stderr)
        sys.exit(2)


if __name__ == "__main__":
    main()
