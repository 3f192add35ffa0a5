# Tenant Billing: Invoice Generator
# Turns a month's charge breakdown into an invoice with line items and
# settles it against the wallet, all inside one transaction:
#
#   charge -> OPEN invoice + line items -> link usage row -> debit wallet
#     debit ok            -> PAID, paid_at = now
#     InsufficientBalance -> PAST_DUE, tenant locked
#
# The usage row's invoice_id is the idempotency guard: a month that already
# links an invoice is never billed again.

import logging
import time
import uuid
from dataclasses import asdict, dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Optional

from access import fetch_tenant, lock_tenant_tx
from billing import MonthlyCharge, calculate_monthly_charge_tx
from db import get_engine, row_to_dict, sql
from errors import (
    DuplicateInvoicePeriod,
    InsufficientBalance,
    InvalidRequest,
    InvoiceNotFound,
)
from usage import link_invoice_tx, period_label
from wallet import DEFAULT_CURRENCY, MAX_PAGE_SIZE, debit_tx

log = logging.getLogger("tenant_billing.invoices")


class InvoiceStatus(str, Enum):
    DRAFT = "DRAFT"
    OPEN = "OPEN"
    PAID = "PAID"
    VOID = "VOID"
    PAST_DUE = "PAST_DUE"


class InvoiceKind(str, Enum):
    SUBSCRIPTION = "SUBSCRIPTION"


class BillingComponent(str, Enum):
    EPAPER_PAGE = "EPAPER_PAGE"
    NEWS_WEBSITE_MONTHLY = "NEWS_WEBSITE_MONTHLY"
    PRINT_MONTHLY = "PRINT_MONTHLY"
    CUSTOM_SERVICE = "CUSTOM_SERVICE"
    OTHER_CHARGES = "OTHER_CHARGES"


@dataclass
class InvoiceLineItem:
    component: str
    description: str = ""
    quantity: int = 1
    unit_amount_minor: int = 0
    amount_minor: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class Invoice:
    tenant_id: str
    period_start: float
    period_end: float
    invoice_id: str = field(default_factory=lambda: f"INV-{int(time.time())}-{uuid.uuid4().hex[:6]}")
    kind: str = InvoiceKind.SUBSCRIPTION.value
    status: str = InvoiceStatus.OPEN.value
    currency: str = DEFAULT_CURRENCY
    line_items: list = field(default_factory=list)
    paid_at: Optional[float] = None
    created_at: float = field(default_factory=time.time)

    @property
    def total_amount_minor(self) -> int:
        return sum(item.amount_minor for item in self.line_items)

    def to_dict(self) -> dict:
        d = asdict(self)
        d["total_amount_minor"] = self.total_amount_minor
        d["period"] = period_label(self.period_start)
        return d


def format_minor(amount_minor: int) -> str:
    return f"₹{Decimal(amount_minor) / 100:,.2f}"


def build_line_items(charge: MonthlyCharge) -> list:
    """One line item per non-zero charge component."""
    items = []
    if charge.epaper_charge_minor > 0:
        pages = charge.epaper_billed_pages
        description = f"ePaper pages ({pages} billed"
        if pages > charge.epaper_page_count:
            description += f", {charge.epaper_page_count} used, minimum applied"
        items.append(InvoiceLineItem(
            component=BillingComponent.EPAPER_PAGE.value,
            description=description + ")",
            quantity=pages,
            unit_amount_minor=charge.epaper_unit_price_minor,
            amount_minor=charge.epaper_charge_minor,
        ))
    for component, description, amount in (
        (BillingComponent.NEWS_WEBSITE_MONTHLY, "News Website - Monthly Fee",
         charge.news_website_charge_minor),
        (BillingComponent.PRINT_MONTHLY, "Print Service - Monthly Fee", charge.print_charge_minor),
        (BillingComponent.CUSTOM_SERVICE, "Custom Service - Monthly Fee",
         charge.custom_service_charge_minor),
        (BillingComponent.OTHER_CHARGES, "Other Charges", charge.other_charges_minor),
    ):
        if amount > 0:
            items.append(InvoiceLineItem(
                component=component.value,
                description=description,
                quantity=1,
                unit_amount_minor=amount,
                amount_minor=amount,
            ))
    return items


# ── Connection-scoped internals ───────────────────────────────────────


def _insert_invoice(conn, backend, invoice: Invoice):
    now = time.time()
    conn.execute(
        sql("""INSERT INTO billing_invoices
               (invoice_id, tenant_id, kind, status, currency, period_start, period_end,
                total_amount_minor, paid_at, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""", backend),
        (invoice.invoice_id, invoice.tenant_id, invoice.kind, invoice.status, invoice.currency,
         invoice.period_start, invoice.period_end, invoice.total_amount_minor, None,
         invoice.created_at, now),
    )
    for position, item in enumerate(invoice.line_items):
        conn.execute(
            sql("""INSERT INTO billing_invoice_line_items
                   (line_item_id, invoice_id, position, component, description, quantity,
                    unit_amount_minor, amount_minor)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?)""", backend),
            (f"LI-{uuid.uuid4().hex[:12]}", invoice.invoice_id, position, item.component,
             item.description, item.quantity, item.unit_amount_minor, item.amount_minor),
        )


def _set_status(conn, backend, invoice: Invoice, status: InvoiceStatus, paid_at=None):
    conn.execute(
        sql("""UPDATE billing_invoices SET status = ?, paid_at = ?, updated_at = ?
               WHERE invoice_id = ?""", backend),
        (status.value, paid_at, time.time(), invoice.invoice_id),
    )
    invoice.status = status.value
    invoice.paid_at = paid_at


def _invoice_from_rows(row, item_rows) -> dict:
    invoice = row_to_dict(row)
    invoice["period"] = period_label(invoice["period_start"])
    invoice["line_items"] = [
        {k: r[k] for k in ("component", "description", "quantity",
                           "unit_amount_minor", "amount_minor")}
        for r in item_rows
    ]
    return invoice


def fetch_invoice(conn, backend, invoice_id, tenant_id=None) -> dict:
    query = "SELECT * FROM billing_invoices WHERE invoice_id = ?"
    params = [invoice_id]
    if tenant_id is not None:
        query += " AND tenant_id = ?"
        params.append(tenant_id)
    row = conn.execute(sql(query, backend), tuple(params)).fetchone()
    if row is None:
        raise InvoiceNotFound(f"invoice {invoice_id} not found", invoice_id=invoice_id)
    items = conn.execute(
        sql("""SELECT * FROM billing_invoice_line_items WHERE invoice_id = ?
               ORDER BY position""", backend),
        (invoice_id,),
    ).fetchall()
    return _invoice_from_rows(row, items)


def generate_monthly_invoice_tx(conn, backend, tenant_id, period_start, period_end) -> dict:
    fetch_tenant(conn, backend, tenant_id, lock=True)
    charge = calculate_monthly_charge_tx(conn, backend, tenant_id, period_start, period_end)
    outcome = {"tenant_id": tenant_id, "period": charge.period, "charge": charge.to_dict(),
               "invoice": None, "tenant_locked": False}

    if charge.invoice_id:
        outcome["status"] = "already_invoiced"
        outcome["invoice"] = fetch_invoice(conn, backend, charge.invoice_id)
        return outcome
    if charge.total_charge_minor == 0:
        log.info("INVOICE skipped tenant=%s period=%s: no charges", tenant_id, charge.period)
        outcome["status"] = "no_charge"
        return outcome

    existing = conn.execute(
        sql("""SELECT invoice_id FROM billing_invoices
               WHERE tenant_id = ? AND kind = ? AND period_start = ?""", backend),
        (tenant_id, InvoiceKind.SUBSCRIPTION.value, charge.period_start),
    ).fetchone()
    if existing is not None:
        raise DuplicateInvoicePeriod(
            f"tenant {tenant_id} already has invoice {existing['invoice_id']} for {charge.period}",
            tenant_id=tenant_id,
            invoice_id=existing["invoice_id"],
        )

    invoice = Invoice(
        tenant_id=tenant_id,
        period_start=charge.period_start,
        period_end=charge.period_end,
        line_items=build_line_items(charge),
    )
    _insert_invoice(conn, backend, invoice)
    link_invoice_tx(conn, backend, charge.usage_id, invoice.invoice_id)

    total = invoice.total_amount_minor
    try:
        debit_tx(conn, backend, tenant_id, total,
                 f"Monthly charges for {charge.period}", "INVOICE", invoice.invoice_id)
    except InsufficientBalance as e:
        _set_status(conn, backend, invoice, InvoiceStatus.PAST_DUE)
        lock_tenant_tx(conn, backend, tenant_id,
                       f"insufficient balance for monthly charges: required {format_minor(total)}")
        outcome["tenant_locked"] = True
        log.warning("INVOICE %s tenant=%s period=%s total=%d PAST_DUE (%s)",
                    invoice.invoice_id, tenant_id, charge.period, total, e.message)
    else:
        _set_status(conn, backend, invoice, InvoiceStatus.PAID, paid_at=time.time())
        log.info("INVOICE %s tenant=%s period=%s total=%d PAID",
                 invoice.invoice_id, tenant_id, charge.period, total)

    outcome["status"] = "invoiced"
    outcome["invoice"] = invoice.to_dict()
    return outcome


class InvoiceGenerator:
    def __init__(self, db=None):
        self._db = db

    @property
    def db(self):
        return self._db or get_engine()

    def generate_monthly_invoice(self, tenant_id: str, period_start: float,
                                 period_end: float) -> dict:
        """Invoice and settle one tenant-month.

        Returns an outcome dict whose "status" is "invoiced", "no_charge" or
        "already_invoiced". A shortfall is reported through the invoice status
        (PAST_DUE) and tenant_locked, not raised.
        """
        return self.db.atomic(generate_monthly_invoice_tx, tenant_id, period_start, period_end)

    def get_invoice(self, invoice_id: str, tenant_id: Optional[str] = None) -> dict:
        return self.db.read(fetch_invoice, invoice_id, tenant_id)

    def list_invoices(self, tenant_id: str, page: int = 1, page_size: int = 20,
                      status: Optional[str] = None) -> dict:
        page = max(1, int(page))
        page_size = min(MAX_PAGE_SIZE, max(1, int(page_size)))
        if status is not None:
            try:
                status = InvoiceStatus(str(getattr(status, "value", status)).upper()).value
            except ValueError:
                raise InvalidRequest(f"unknown invoice status {status!r}") from None

        def _list(conn, backend):
            fetch_tenant(conn, backend, tenant_id)
            where = "WHERE tenant_id = ?"
            params = [tenant_id]
            if status:
                where += " AND status = ?"
                params.append(status)
            total = conn.execute(
                sql(f"SELECT COUNT(*) AS n FROM billing_invoices {where}", backend),
                tuple(params),
            ).fetchone()["n"]
            rows = conn.execute(
                sql(f"""SELECT invoice_id FROM billing_invoices {where}
                        ORDER BY period_start DESC, created_at DESC LIMIT ? OFFSET ?""", backend),
                tuple(params) + (page_size, (page - 1) * page_size),
            ).fetchall()
            return total, [fetch_invoice(conn, backend, r["invoice_id"]) for r in rows]

        total, items = self.db.read(_list)
        return {
            "invoices": items,
            "pagination": {
                "page": page,
                "page_size": page_size,
                "total": total,
                "total_pages": (total + page_size - 1) // page_size,
            },
        }


_generator = None


def get_invoice_generator() -> InvoiceGenerator:
    global _generator
    if _generator is None:
        _generator = InvoiceGenerator()
    return _generator
