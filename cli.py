#!/usr/bin/env python3
# Tenant Billing CLI v1.0.0
# argparse. Operator access to the same ledger, pricing and jobs the API uses.
# All amounts are integer minor units (paise).

import argparse
import json
import sys
import time

from access import get_access_controller
from billing import get_billing_calculator, json_safe
from errors import BillingError
from invoices import format_minor, get_invoice_generator
from jobs import run_balance_check, run_monthly_billing, setup_logging
from pricing import PRICING_FIELDS, TenantService, get_pricing_catalog
from usage import get_usage_accumulator, period_for_month
from wallet import TxType, get_wallet_ledger


def _print_wallet(w):
    print(f"  balance={w['balance_minor']} ({format_minor(w['balance_minor'])}) "
          f"locked={w['locked_balance_minor']} available={w['available_balance_minor']} "
          f"{w['currency']}")


def _print_result(result):
    tx = result["transaction"]
    print(f"{tx['tx_type']}: {tx['tx_id']} | {tx['amount_minor']:+d} | "
          f"balance after {tx['balance_after_minor']}")
    _print_wallet(result["wallet"])
    if result.get("tenant_unlocked"):
        print("  Tenant unlocked.")


def _month_epoch(label):
    """'YYYY-MM' -> an instant inside the following month, for the billing job."""
    _, end = period_for_month(label)
    return end + 1


def cmd_tenant_add(args):
    t = get_access_controller().register_tenant(args.tenant_id, args.name)
    print(f"Tenant registered: {t['tenant_id']} | {t['name'] or '-'}")


def cmd_tenants(args):
    tenants = get_access_controller().list_tenants(locked=True if args.locked else None)
    if not tenants:
        print("No tenants.")
        return
    for t in tenants:
        state = "LOCKED" if t["subscription_locked"] else "active"
        reason = f" | {t['locked_reason']}" if t["locked_reason"] else ""
        print(f"  [{state:>6}] {t['tenant_id']} | {t['name'] or '-'}{reason}")


def cmd_wallet(args):
    report = json_safe(get_billing_calculator().check_balance(args.tenant_id))
    if args.json:
        print(json.dumps(report, indent=2))
        return
    _print_wallet(report)
    runway = report["months_remaining"]
    print(f"  monthly charge={report['monthly_charge_minor']} "
          f"months remaining={'unlimited' if runway is None else runway} "
          f"status={report['status']}")


def cmd_topup(args):
    _print_result(get_wallet_ledger().credit(
        args.tenant_id, args.amount, args.description, reference_id=args.ref, actor=args.actor))


def cmd_topup_bulk(args):
    calc = get_billing_calculator()
    if args.preview:
        print(json.dumps(calc.calculate_bulk_discount(args.tenant_id, args.months), indent=2))
        return
    result = calc.topup_bulk(args.tenant_id, args.months, reference_id=args.ref, actor=args.actor)
    c = result["calculation"]
    print(f"Bulk top-up: {c['months']} x {c['monthly_charge_minor']} = {c['subtotal_minor']} "
          f"- {c['discount_minor']} ({c['discount_percent']:g}%) = {c['total_minor']}")
    _print_result(result)


def cmd_adjust(args):
    _print_result(get_wallet_ledger().adjust(
        args.tenant_id, args.amount, args.description, actor=args.actor))


def cmd_refund(args):
    _print_result(get_wallet_ledger().refund(
        args.tenant_id, args.amount, args.description, reference_id=args.ref, actor=args.actor))


def cmd_txns(args):
    page = get_wallet_ledger().list_transactions(args.tenant_id, args.page, args.page_size, args.type)
    if not page["transactions"]:
        print("No transactions.")
        return
    for tx in page["transactions"]:
        when = time.strftime("%Y-%m-%d %H:%M", time.gmtime(tx["created_at"]))
        print(f"  {when} [{tx['tx_type']:>10}] {tx['amount_minor']:>+12d} "
              f"-> {tx['balance_after_minor']:>12d} | {tx['description']}")
    p = page["pagination"]
    print(f"  page {p['page']}/{max(p['total_pages'], 1)} ({p['total']} total)")


def cmd_lock(args):
    t = get_access_controller().lock(args.tenant_id, args.reason)
    print(f"Tenant {t['tenant_id']} locked: {t['locked_reason']}")


def cmd_unlock(args):
    t = get_access_controller().unlock(args.tenant_id)
    print(f"Tenant {t['tenant_id']} unlocked.")


def cmd_pricing(args):
    rows = get_pricing_catalog().list_pricing(args.tenant_id, args.service, args.active)
    if not rows:
        print("No pricing.")
        return
    for p in rows:
        state = "active" if p.is_active else "retired"
        amount = (f"{p.price_per_unit_minor}/unit min {p.min_units_per_period}"
                  if p.price_per_unit_minor else f"{p.monthly_fee_minor}/month")
        print(f"  [{state:>7}] {p.pricing_id} | {p.service} | {amount} | "
              f"6m {p.discount_6_month_percent}% 12m {p.discount_12_month_percent}%")


def cmd_pricing_set(args):
    fields = {k: getattr(args, k) for k in PRICING_FIELDS if getattr(args, k) is not None}
    p = get_pricing_catalog().set_pricing(args.tenant_id, args.service, fields, actor=args.actor)
    print(f"Pricing set: {p.pricing_id} | {p.service}")


def cmd_usage(args):
    acc = get_usage_accumulator()
    if args.month:
        start, _ = period_for_month(args.month)
        rows = [u for u in [acc.get_usage(args.tenant_id, start)] if u]
    else:
        rows = acc.list_usage(args.tenant_id)
    if not rows:
        print("No usage.")
        return
    for u in rows:
        print(f"  {u['period']} | pages={u['epaper_page_count']} other={u['other_charges_minor']} "
              f"total={u['total_charge_minor']} | invoice={u['invoice_id'] or '-'}")


def cmd_track_pages(args):
    u = get_usage_accumulator().track_epaper_pages(args.tenant_id, args.pages)
    print(f"{u['period']}: {u['epaper_page_count']} ePaper pages")


def cmd_invoice(args):
    gen = get_invoice_generator()
    if args.generate:
        start, end = period_for_month(args.generate)
        outcome = gen.generate_monthly_invoice(args.ref, start, end)
        print(json.dumps(outcome, indent=2, default=str))
        return
    print(json.dumps(gen.get_invoice(args.ref), indent=2, default=str))


def cmd_invoices(args):
    page = get_invoice_generator().list_invoices(args.tenant_id, status=args.status)
    if not page["invoices"]:
        print("No invoices.")
        return
    for inv in page["invoices"]:
        print(f"  [{inv['status']:>8}] {inv['invoice_id']} | {inv['period']} | "
              f"{inv['total_amount_minor']} ({format_minor(inv['total_amount_minor'])})")


def cmd_bill_month(args):
    run = run_monthly_billing(now=_month_epoch(args.month) if args.month else None)
    print(json.dumps(run["counts"], indent=2))


def cmd_balance_check(args):
    run = run_balance_check()
    print(json.dumps(run["counts"], indent=2))


def cmd_reconcile(args):
    report = get_wallet_ledger().reconcile(args.tenant_id)
    print(json.dumps(report, indent=2))
    if not report["consistent"]:
        sys.exit(2)


def cmd_serve(args):
    from api import main as serve

    serve(host=args.host, port=args.port)


def main(argv=None):
    parser = argparse.ArgumentParser(
        prog="tenant-billing",
        description="Tenant wallet & billing engine",
    )
    parser.add_argument("--actor", default=None, help="Operator id recorded on ledger entries")
    sub = parser.add_subparsers(dest="command")

    # tenant-billing tenant-add
    p_tadd = sub.add_parser("tenant-add", help="Register a tenant")
    p_tadd.add_argument("tenant_id", help="Tenant ID")
    p_tadd.add_argument("--name", default="", help="Display name")
    p_tadd.set_defaults(func=cmd_tenant_add)

    # tenant-billing tenants
    p_tenants = sub.add_parser("tenants", help="List tenants")
    p_tenants.add_argument("--locked", action="store_true", help="Only locked tenants")
    p_tenants.set_defaults(func=cmd_tenants)

    # tenant-billing wallet <tenant>
    p_wallet = sub.add_parser("wallet", help="Show balance and runway")
    p_wallet.add_argument("tenant_id", help="Tenant ID")
    p_wallet.add_argument("--json", action="store_true", help="Print the full report as JSON")
    p_wallet.set_defaults(func=cmd_wallet)

    # tenant-billing topup <tenant> <amount>
    p_topup = sub.add_parser("topup", help="Credit a wallet")
    p_topup.add_argument("tenant_id", help="Tenant ID")
    p_topup.add_argument("amount", type=int, help="Amount in minor units")
    p_topup.add_argument("--description", default="Wallet top-up", help="Ledger description")
    p_topup.add_argument("--ref", default=None, help="Payment reference")
    p_topup.set_defaults(func=cmd_topup)

    # tenant-billing topup-bulk <tenant> <months>
    p_bulk = sub.add_parser("topup-bulk", help="Prepay N months at the bulk discount")
    p_bulk.add_argument("tenant_id", help="Tenant ID")
    p_bulk.add_argument("months", type=int, help="Months to prepay")
    p_bulk.add_argument("--ref", default=None, help="Payment reference")
    p_bulk.add_argument("--preview", action="store_true", help="Show the calculation only")
    p_bulk.set_defaults(func=cmd_topup_bulk)

    # tenant-billing adjust <tenant> <amount>
    p_adj = sub.add_parser("adjust", help="Signed balance correction")
    p_adj.add_argument("tenant_id", help="Tenant ID")
    p_adj.add_argument("amount", type=int, help="Signed amount in minor units")
    p_adj.add_argument("--description", required=True, help="Why the correction was made")
    p_adj.set_defaults(func=cmd_adjust)

    # tenant-billing refund <tenant> <amount>
    p_ref = sub.add_parser("refund", help="Refund to a wallet")
    p_ref.add_argument("tenant_id", help="Tenant ID")
    p_ref.add_argument("amount", type=int, help="Amount in minor units")
    p_ref.add_argument("--description", default="Refund", help="Ledger description")
    p_ref.add_argument("--ref", default=None, help="Reference (e.g. invoice id)")
    p_ref.set_defaults(func=cmd_refund)

    # tenant-billing txns <tenant>
    p_txns = sub.add_parser("txns", help="Wallet transactions, newest first")
    p_txns.add_argument("tenant_id", help="Tenant ID")
    p_txns.add_argument("--type", choices=[t.value for t in TxType], default=None)
    p_txns.add_argument("--page", type=int, default=1)
    p_txns.add_argument("--page-size", type=int, default=20)
    p_txns.set_defaults(func=cmd_txns)

    # tenant-billing lock / unlock
    p_lock = sub.add_parser("lock", help="Lock a tenant")
    p_lock.add_argument("tenant_id", help="Tenant ID")
    p_lock.add_argument("--reason", default="locked by operator", help="Lock reason")
    p_lock.set_defaults(func=cmd_lock)

    p_unlock = sub.add_parser("unlock", help="Unlock a tenant")
    p_unlock.add_argument("tenant_id", help="Tenant ID")
    p_unlock.set_defaults(func=cmd_unlock)

    # tenant-billing pricing <tenant>
    p_pr = sub.add_parser("pricing", help="Pricing history")
    p_pr.add_argument("tenant_id", help="Tenant ID")
    p_pr.add_argument("--service", choices=[s.value for s in TenantService], default=None)
    p_pr.add_argument("--active", action="store_true", help="Only active rows")
    p_pr.set_defaults(func=cmd_pricing)

    # tenant-billing pricing-set <tenant> <service>
    p_ps = sub.add_parser("pricing-set", help="Set a new pricing version")
    p_ps.add_argument("tenant_id", help="Tenant ID")
    p_ps.add_argument("service", choices=[s.value for s in TenantService])
    p_ps.add_argument("--price-per-unit", dest="price_per_unit_minor", type=int, default=None)
    p_ps.add_argument("--monthly-fee", dest="monthly_fee_minor", type=int, default=None)
    p_ps.add_argument("--min-units", dest="min_units_per_period", type=int, default=None)
    p_ps.add_argument("--discount-6", dest="discount_6_month_percent", type=float, default=None)
    p_ps.add_argument("--discount-12", dest="discount_12_month_percent", type=float, default=None)
    p_ps.set_defaults(func=cmd_pricing_set)

    # tenant-billing usage <tenant>
    p_usage = sub.add_parser("usage", help="Monthly usage rows")
    p_usage.add_argument("tenant_id", help="Tenant ID")
    p_usage.add_argument("--month", default="", help="Month in YYYY-MM format")
    p_usage.set_defaults(func=cmd_usage)

    # tenant-billing track-pages <tenant> <pages>
    p_tp = sub.add_parser("track-pages", help="Record published ePaper pages for this month")
    p_tp.add_argument("tenant_id", help="Tenant ID")
    p_tp.add_argument("pages", type=int, help="Page count")
    p_tp.set_defaults(func=cmd_track_pages)

    # tenant-billing invoice <invoice_id> | invoice <tenant> --generate YYYY-MM
    p_inv = sub.add_parser("invoice", help="Show an invoice, or generate one for a tenant-month")
    p_inv.add_argument("ref", help="Invoice ID, or tenant ID with --generate")
    p_inv.add_argument("--generate", default=None, metavar="YYYY-MM",
                       help="Generate and settle the invoice for this month")
    p_inv.set_defaults(func=cmd_invoice)

    # tenant-billing invoices <tenant>
    p_invs = sub.add_parser("invoices", help="List a tenant's invoices")
    p_invs.add_argument("tenant_id", help="Tenant ID")
    p_invs.add_argument("--status", default=None, help="Filter by status")
    p_invs.set_defaults(func=cmd_invoices)

    # tenant-billing bill-month
    p_bill = sub.add_parser("bill-month", help="Run monthly billing")
    p_bill.add_argument("--month", default="", help="Month to bill (YYYY-MM), default last month")
    p_bill.set_defaults(func=cmd_bill_month)

    # tenant-billing balance-check
    p_bc = sub.add_parser("balance-check", help="Run the balance health scan")
    p_bc.set_defaults(func=cmd_balance_check)

    # tenant-billing reconcile <tenant>
    p_rec = sub.add_parser("reconcile", help="Check the wallet against its transaction log")
    p_rec.add_argument("tenant_id", help="Tenant ID")
    p_rec.set_defaults(func=cmd_reconcile)

    # tenant-billing serve
    p_serve = sub.add_parser("serve", help="Run the HTTP API")
    p_serve.add_argument("--host", default="0.0.0.0")
    p_serve.add_argument("--port", type=int, default=8000)
    p_serve.set_defaults(func=cmd_serve)

    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        sys.exit(1)

    if args.command in ("bill-month", "balance-check"):
        setup_logging()

    try:
        args.func(args)
    except BillingError as e:
        print(f"Error [{e.code}]: {e.message}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
