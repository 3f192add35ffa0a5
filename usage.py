# Tenant Billing: Usage Accumulator
# One tenant_usage_monthly row per tenant per calendar month (UTC).
# Counters are incremented as usage happens; the charge columns are filled in
# by the billing calculator, and invoice_id is set once the month is billed.

import logging
import time
import uuid
from datetime import date, datetime, timedelta, timezone
from typing import Optional

from access import fetch_tenant
from db import for_update, get_engine, row_to_dict, sql
from errors import InvalidRequest
from wallet import validate_amount

log = logging.getLogger("tenant_billing.usage")

CHARGE_COLUMNS = (
    "epaper_billed_pages",
    "epaper_charge_minor",
    "news_website_charge_minor",
    "print_charge_minor",
    "custom_service_charge_minor",
    "total_charge_minor",
)


# ── Periods ───────────────────────────────────────────────────────────


def month_period(year: int, month: int) -> tuple:
    """(first instant, last instant) of a calendar month as epoch seconds."""
    if not 1 <= month <= 12:
        raise InvalidRequest(f"month must be 1-12, got {month}")
    start = datetime(year, month, 1, tzinfo=timezone.utc)
    if month == 12:
        nxt = datetime(year + 1, 1, 1, tzinfo=timezone.utc)
    else:
        nxt = datetime(year, month + 1, 1, tzinfo=timezone.utc)
    return start.timestamp(), (nxt - timedelta(microseconds=1)).timestamp()


def _as_datetime(when) -> datetime:
    if when is None:
        return datetime.now(timezone.utc)
    if isinstance(when, datetime):
        return when if when.tzinfo else when.replace(tzinfo=timezone.utc)
    if isinstance(when, date):
        return datetime(when.year, when.month, when.day, tzinfo=timezone.utc)
    return datetime.fromtimestamp(float(when), tz=timezone.utc)


def period_containing(when=None) -> tuple:
    dt = _as_datetime(when)
    return month_period(dt.year, dt.month)


def current_month_period(now=None) -> tuple:
    return period_containing(now)


def previous_month_period(now=None) -> tuple:
    dt = _as_datetime(now)
    if dt.month == 1:
        return month_period(dt.year - 1, 12)
    return month_period(dt.year, dt.month - 1)


def period_for_month(label: str) -> tuple:
    """Parse 'YYYY-MM' into a period."""
    try:
        year, month = (int(part) for part in str(label).split("-"))
    except ValueError:
        raise InvalidRequest(f"period must look like YYYY-MM, got {label!r}") from None
    return month_period(year, month)


def period_label(period_start: float) -> str:
    return datetime.fromtimestamp(period_start, tz=timezone.utc).strftime("%Y-%m")


# ── Connection-scoped internals ───────────────────────────────────────


def _usage_view(row) -> Optional[dict]:
    usage = row_to_dict(row)
    if usage is not None:
        usage["period"] = period_label(usage["period_start"])
    return usage


def fetch_usage(conn, backend, tenant_id, period_start, lock=False) -> Optional[dict]:
    query = "SELECT * FROM tenant_usage_monthly WHERE tenant_id = ? AND period_start = ?"
    if lock:
        query += for_update(backend)
    row = conn.execute(sql(query, backend), (tenant_id, period_start)).fetchone()
    return _usage_view(row)


def get_or_create_usage_tx(conn, backend, tenant_id, period_start, period_end,
                           lock=False) -> dict:
    """Zero-initialized usage row for the period, created on first touch.

    With lock=True the row stays locked until the caller commits, so a
    concurrent increment cannot land between pricing the month and linking
    its invoice.
    """
    usage = fetch_usage(conn, backend, tenant_id, period_start, lock=lock)
    if usage is not None:
        return usage
    fetch_tenant(conn, backend, tenant_id)
    now = time.time()
    conn.execute(
        sql("""INSERT INTO tenant_usage_monthly
               (usage_id, tenant_id, period_start, period_end, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?)
               ON CONFLICT (tenant_id, period_start) DO NOTHING""", backend),
        (f"USG-{uuid.uuid4().hex[:12]}", tenant_id, period_start, period_end, now, now),
    )
    return fetch_usage(conn, backend, tenant_id, period_start, lock=lock)


def write_charges_tx(conn, backend, usage_id, charges: dict):
    conn.execute(
        sql(f"""UPDATE tenant_usage_monthly
                SET {", ".join(f"{col} = ?" for col in CHARGE_COLUMNS)}, updated_at = ?
                WHERE usage_id = ?""", backend),
        tuple(charges[col] for col in CHARGE_COLUMNS) + (time.time(), usage_id),
    )


def link_invoice_tx(conn, backend, usage_id, invoice_id):
    conn.execute(
        sql("UPDATE tenant_usage_monthly SET invoice_id = ?, updated_at = ? WHERE usage_id = ?",
            backend),
        (invoice_id, time.time(), usage_id),
    )


def _increment(conn, backend, tenant_id, when, column, amount) -> dict:
    period_start, period_end = period_containing(when)
    usage = get_or_create_usage_tx(conn, backend, tenant_id, period_start, period_end,
                                   lock=True)
    if usage["invoice_id"]:
        log.warning("USAGE tenant=%s period=%s already invoiced (%s); %s +%d will not be billed",
                    tenant_id, usage["period"], usage["invoice_id"], column, amount)
    conn.execute(
        sql(f"""UPDATE tenant_usage_monthly SET {column} = {column} + ?, updated_at = ?
                WHERE usage_id = ?""", backend),
        (amount, time.time(), usage["usage_id"]),
    )
    return fetch_usage(conn, backend, tenant_id, period_start)


class UsageAccumulator:
    def __init__(self, db=None):
        self._db = db

    @property
    def db(self):
        return self._db or get_engine()

    def get_or_create_usage(self, tenant_id: str, period_start: float, period_end: float) -> dict:
        return self.db.atomic(get_or_create_usage_tx, tenant_id, period_start, period_end)

    def track_epaper_pages(self, tenant_id: str, page_count: int, issue_date=None) -> dict:
        """Add published ePaper pages to the month containing issue_date."""
        validate_amount(page_count)
        usage = self.db.atomic(_increment, tenant_id, issue_date, "epaper_page_count", page_count)
        log.info("USAGE tenant=%s period=%s epaper_pages +%d total=%d", tenant_id,
                 usage["period"], page_count, usage["epaper_page_count"])
        return usage

    def record_other_charge(self, tenant_id: str, amount_minor: int, at=None,
                            description: str = "") -> dict:
        """Add a manually recorded charge to the month containing `at`."""
        validate_amount(amount_minor)
        usage = self.db.atomic(_increment, tenant_id, at, "other_charges_minor", amount_minor)
        log.info("USAGE tenant=%s period=%s other_charge +%d total=%d (%s)", tenant_id,
                 usage["period"], amount_minor, usage["other_charges_minor"], description)
        return usage

    def get_usage(self, tenant_id: str, period_start: float) -> Optional[dict]:
        def _get(conn, backend):
            fetch_tenant(conn, backend, tenant_id)
            return fetch_usage(conn, backend, tenant_id, period_start)

        return self.db.read(_get)

    def list_usage(self, tenant_id: str, limit: int = 24) -> list:
        """Most recent months first."""
        def _list(conn, backend):
            fetch_tenant(conn, backend, tenant_id)
            rows = conn.execute(
                sql("""SELECT * FROM tenant_usage_monthly WHERE tenant_id = ?
                       ORDER BY period_start DESC LIMIT ?""", backend),
                (tenant_id, limit),
            ).fetchall()
            return [_usage_view(r) for r in rows]

        return self.db.read(_list)


_accumulator = None


def get_usage_accumulator() -> UsageAccumulator:
    global _accumulator
    if _accumulator is None:
        _accumulator = UsageAccumulator()
    return _accumulator
