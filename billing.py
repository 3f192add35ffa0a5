# Tenant Billing: Billing Calculator
# Usage + pricing -> monthly charge breakdown, bulk prepay discounts, and
# the runway (months of balance remaining) used by the health scan.
#
# Charges for a month:
#   EPAPER          max(pages, min_units_per_period) x price_per_unit_minor
#   flat services   monthly_fee_minor when a pricing row covers the month
#   other           manually recorded other_charges_minor
# Pricing is resolved as of the last instant of the month, so a price set
# today does not reprice a month that already ended.

import logging
import math
import os
import time
from dataclasses import asdict, dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from access import fetch_tenant
from db import get_engine
from errors import InvalidAmount, InvalidRequest, PricingNotConfigured
from pricing import TenantService, active_pricing_tx
from usage import (
    current_month_period,
    get_or_create_usage_tx,
    period_label,
    write_charges_tx,
)
from wallet import get_wallet_ledger

log = logging.getLogger("tenant_billing.billing")

# Months of charges a tenant is expected to keep in the wallet.
MIN_ADVANCE_MONTHS = int(os.environ.get("TENANT_BILLING_MIN_ADVANCE_MONTHS", "3"))

# Runway thresholds in months (lower bound inclusive).
HEALTHY_MONTHS = 2.5
LOW_MONTHS = 1.5
CRITICAL_MONTHS = 1.0

FLAT_FEE_COLUMNS = {
    TenantService.NEWS_WEBSITE: "news_website_charge_minor",
    TenantService.PRINT_SERVICE: "print_charge_minor",
    TenantService.CUSTOM_SERVICE: "custom_service_charge_minor",
}


@dataclass
class MonthlyCharge:
    """Charge breakdown for one tenant and one calendar month."""
    tenant_id: str
    usage_id: str
    period: str
    period_start: float
    period_end: float
    epaper_page_count: int = 0
    epaper_billed_pages: int = 0
    epaper_unit_price_minor: int = 0
    epaper_charge_minor: int = 0
    news_website_charge_minor: int = 0
    print_charge_minor: int = 0
    custom_service_charge_minor: int = 0
    other_charges_minor: int = 0
    total_charge_minor: int = 0
    minimum_advance_months: int = MIN_ADVANCE_MONTHS
    required_balance_minor: int = 0
    invoice_id: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)


# ── Connection-scoped internals ───────────────────────────────────────


def calculate_monthly_charge_tx(conn, backend, tenant_id, period_start, period_end) -> MonthlyCharge:
    usage = get_or_create_usage_tx(conn, backend, tenant_id, period_start, period_end,
                                   lock=True)
    charge = MonthlyCharge(
        tenant_id=tenant_id,
        usage_id=usage["usage_id"],
        period=usage["period"],
        period_start=usage["period_start"],
        period_end=usage["period_end"],
        epaper_page_count=usage["epaper_page_count"],
        other_charges_minor=usage["other_charges_minor"],
        invoice_id=usage["invoice_id"],
    )

    if usage["invoice_id"]:
        # Billed months are frozen at the numbers that were invoiced.
        for col in ("epaper_billed_pages", "epaper_charge_minor", "news_website_charge_minor",
                    "print_charge_minor", "custom_service_charge_minor", "total_charge_minor"):
            setattr(charge, col, usage[col])
        if charge.epaper_billed_pages:
            charge.epaper_unit_price_minor = charge.epaper_charge_minor // charge.epaper_billed_pages
        charge.required_balance_minor = charge.total_charge_minor * MIN_ADVANCE_MONTHS
        return charge

    as_of = period_end
    epaper = active_pricing_tx(conn, backend, tenant_id, TenantService.EPAPER, as_of)
    if epaper is not None:
        min_units = epaper.min_units_per_period or 0
        charge.epaper_billed_pages = max(usage["epaper_page_count"], min_units)
        charge.epaper_unit_price_minor = epaper.price_per_unit_minor or 0
        charge.epaper_charge_minor = charge.epaper_billed_pages * charge.epaper_unit_price_minor
    elif usage["epaper_page_count"] > 0:
        raise PricingNotConfigured(
            f"tenant {tenant_id} has {usage['epaper_page_count']} ePaper pages in "
            f"{usage['period']} but no EPAPER pricing",
            tenant_id=tenant_id,
            service=TenantService.EPAPER.value,
        )

    for service, column in FLAT_FEE_COLUMNS.items():
        pricing = active_pricing_tx(conn, backend, tenant_id, service, as_of)
        if pricing is not None:
            setattr(charge, column, pricing.monthly_fee_minor or 0)

    charge.total_charge_minor = (
        charge.epaper_charge_minor
        + charge.news_website_charge_minor
        + charge.print_charge_minor
        + charge.custom_service_charge_minor
        + charge.other_charges_minor
    )
    charge.required_balance_minor = charge.total_charge_minor * MIN_ADVANCE_MONTHS

    write_charges_tx(conn, backend, usage["usage_id"], {
        "epaper_billed_pages": charge.epaper_billed_pages,
        "epaper_charge_minor": charge.epaper_charge_minor,
        "news_website_charge_minor": charge.news_website_charge_minor,
        "print_charge_minor": charge.print_charge_minor,
        "custom_service_charge_minor": charge.custom_service_charge_minor,
        "total_charge_minor": charge.total_charge_minor,
    })
    return charge


def _discount_tiers(conn, backend, tenant_id, as_of):
    """Discount tiers from the EPAPER row, else from any other active service."""
    fetch_tenant(conn, backend, tenant_id)
    for service in TenantService:
        pricing = active_pricing_tx(conn, backend, tenant_id, service, as_of)
        if pricing is not None:
            return pricing
    return None


def discount_for(subtotal_minor: int, percent) -> int:
    """Round subtotal x percent / 100 to the nearest minor unit, halves up."""
    amount = Decimal(subtotal_minor) * Decimal(str(percent)) / Decimal(100)
    return int(amount.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def classify_runway(months_remaining: float) -> str:
    if months_remaining >= HEALTHY_MONTHS:
        return "healthy"
    if months_remaining >= LOW_MONTHS:
        return "low"
    if months_remaining >= CRITICAL_MONTHS:
        return "critical"
    return "insufficient"


def json_safe(report: dict) -> dict:
    """Replace an unbounded runway with None so the report is valid JSON."""
    out = dict(report)
    value = out.get("months_remaining")
    if isinstance(value, float) and math.isinf(value):
        out["months_remaining"] = None
    return out


class BillingCalculator:
    def __init__(self, db=None, ledger=None):
        self._db = db
        self._ledger = ledger

    @property
    def db(self):
        return self._db or get_engine()

    @property
    def ledger(self):
        return self._ledger or get_wallet_ledger()

    def calculate_monthly_charge(self, tenant_id: str, period_start: float,
                                 period_end: float) -> MonthlyCharge:
        """Compute and persist the month's charges. Recomputing is idempotent."""
        charge = self.db.atomic(calculate_monthly_charge_tx, tenant_id, period_start, period_end)
        log.debug("CHARGE tenant=%s period=%s total=%d", tenant_id, charge.period,
                  charge.total_charge_minor)
        return charge

    def current_month_charge(self, tenant_id: str, now=None) -> MonthlyCharge:
        start, end = current_month_period(now)
        return self.calculate_monthly_charge(tenant_id, start, end)

    def calculate_bulk_discount(self, tenant_id: str, months: int, now=None) -> dict:
        """Preview of prepaying `months` of the current monthly charge."""
        if isinstance(months, bool) or not isinstance(months, int) or months <= 0:
            raise InvalidRequest(f"months must be a positive integer, got {months!r}")
        as_of = time.time() if now is None else now

        tiers = self.db.read(_discount_tiers, tenant_id, as_of)
        if tiers is None:
            raise PricingNotConfigured(f"tenant {tenant_id} has no active pricing",
                                       tenant_id=tenant_id)

        monthly = self.current_month_charge(tenant_id, as_of).total_charge_minor
        subtotal = monthly * months

        percent = 0.0
        if months >= 12 and tiers.discount_12_month_percent:
            percent = float(tiers.discount_12_month_percent)
        elif months >= 6 and tiers.discount_6_month_percent:
            percent = float(tiers.discount_6_month_percent)

        discount = discount_for(subtotal, percent)
        return {
            "tenant_id": tenant_id,
            "monthly_charge_minor": monthly,
            "months": months,
            "subtotal_minor": subtotal,
            "discount_percent": percent,
            "discount_minor": discount,
            "total_minor": subtotal - discount,
        }

    def topup_bulk(self, tenant_id: str, months: int, reference_id: Optional[str] = None,
                   actor: Optional[str] = None) -> dict:
        """Credit the discounted total for `months` of prepayment."""
        calc = self.calculate_bulk_discount(tenant_id, months)
        if calc["total_minor"] <= 0:
            raise InvalidAmount(f"tenant {tenant_id} has no monthly charge to prepay",
                                tenant_id=tenant_id)
        result = self.ledger.credit(
            tenant_id,
            calc["total_minor"],
            f"Bulk top-up: {months} months ({calc['discount_percent']:g}% discount)",
            reference_id=reference_id,
            actor=actor,
            meta=calc,
            reference_type="BULK_TOPUP",
        )
        result["calculation"] = calc
        return result

    def check_balance(self, tenant_id: str, now=None) -> dict:
        """Runway of the available balance against the current month's charge."""
        charge = self.current_month_charge(tenant_id, now)
        wallet = self.ledger.get_balance(tenant_id)
        monthly = charge.total_charge_minor
        available = wallet["available_balance_minor"]
        months_remaining = available / monthly if monthly > 0 else math.inf
        status = classify_runway(months_remaining)
        return {
            "tenant_id": tenant_id,
            "period": period_label(charge.period_start),
            "balance_minor": wallet["balance_minor"],
            "locked_balance_minor": wallet["locked_balance_minor"],
            "available_balance_minor": available,
            "currency": wallet["currency"],
            "monthly_charge_minor": monthly,
            "required_balance_minor": charge.required_balance_minor,
            "months_remaining": months_remaining if math.isinf(months_remaining)
            else round(months_remaining, 2),
            "has_sufficient_balance": months_remaining >= CRITICAL_MONTHS,
            "status": status,
        }


_calculator = None


def get_billing_calculator() -> BillingCalculator:
    global _calculator
    if _calculator is None:
        _calculator = BillingCalculator()
    return _calculator
