"""Tests for monthly invoice generation and settlement."""

from datetime import date

import pytest

from access import get_access_controller
from billing import get_billing_calculator
from db import get_engine, sql
from errors import DuplicateInvoicePeriod, InvalidRequest, InvoiceNotFound, PricingNotConfigured
from invoices import (
    BillingComponent,
    InvoiceGenerator,
    InvoiceStatus,
    build_line_items,
    format_minor,
)
from pricing import get_pricing_catalog
from usage import get_usage_accumulator, month_period
from wallet import get_wallet_ledger


MARCH = month_period(2026, 3)
APRIL = month_period(2026, 4)


@pytest.fixture
def gen():
    return InvoiceGenerator()


@pytest.fixture
def march_usage(epaper_pricing):
    get_usage_accumulator().track_epaper_pages("tenant-a", 3, issue_date=date(2026, 3, 9))


class TestFormatting:
    def test_format_minor(self):
        assert format_minor(1_600_000) == "₹16,000.00"
        assert format_minor(5) == "₹0.05"
        assert format_minor(0) == "₹0.00"


class TestSettlement:
    def test_exact_balance_pays(self, gen, march_usage):
        get_wallet_ledger().credit("tenant-a", 1_600_000, "topup")

        outcome = gen.generate_monthly_invoice("tenant-a", *MARCH)

        assert outcome["status"] == "invoiced"
        assert outcome["tenant_locked"] is False
        invoice = outcome["invoice"]
        assert invoice["status"] == InvoiceStatus.PAID.value
        assert invoice["paid_at"] is not None
        assert invoice["total_amount_minor"] == 1_600_000
        assert get_wallet_ledger().get_balance("tenant-a")["balance_minor"] == 0
        assert get_access_controller().is_locked("tenant-a") is False

        debit = get_wallet_ledger().list_transactions("tenant-a", tx_type="DEBIT")["transactions"]
        assert len(debit) == 1
        assert debit[0]["amount_minor"] == -1_600_000
        assert debit[0]["reference_type"] == "INVOICE"
        assert debit[0]["reference_id"] == invoice["invoice_id"]

    def test_shortfall_marks_past_due_and_locks(self, gen, march_usage):
        get_wallet_ledger().credit("tenant-a", 1_000_000, "topup")

        outcome = gen.generate_monthly_invoice("tenant-a", *MARCH)

        assert outcome["status"] == "invoiced"
        assert outcome["tenant_locked"] is True
        assert outcome["invoice"]["status"] == InvoiceStatus.PAST_DUE.value
        assert outcome["invoice"]["paid_at"] is None

        tenant = get_access_controller().get_tenant("tenant-a")
        assert tenant["subscription_locked"] is True
        assert "insufficient balance" in tenant["locked_reason"]
        assert "₹16,000.00" in tenant["locked_reason"]

        ledger = get_wallet_ledger()
        assert ledger.get_balance("tenant-a")["balance_minor"] == 1_000_000
        assert ledger.list_transactions("tenant-a")["pagination"]["total"] == 1

    def test_locked_funds_not_spent(self, gen, march_usage):
        ledger = get_wallet_ledger()
        ledger.credit("tenant-a", 2_000_000, "topup")
        ledger.lock_funds("tenant-a", 500_000, "hold")
        outcome = gen.generate_monthly_invoice("tenant-a", *MARCH)
        assert outcome["invoice"]["status"] == InvoiceStatus.PAST_DUE.value
        assert ledger.get_balance("tenant-a")["balance_minor"] == 2_000_000

    def test_topup_after_past_due_unlocks(self, gen, march_usage):
        gen.generate_monthly_invoice("tenant-a", *MARCH)
        assert get_access_controller().is_locked("tenant-a") is True
        result = get_wallet_ledger().credit("tenant-a", 2_000_000, "topup")
        assert result["tenant_unlocked"] is True
        assert get_access_controller().get_tenant("tenant-a")["locked_reason"] is None


class TestInvoiceShape:
    def test_line_items_sum_to_total(self, gen, march_usage):
        get_pricing_catalog().set_pricing("tenant-a", "NEWS_WEBSITE", {"monthly_fee_minor": 99900},
                                          effective_from=0.0)
        get_usage_accumulator().record_other_charge("tenant-a", 2500, at=date(2026, 3, 20))
        get_wallet_ledger().credit("tenant-a", 5_000_000, "topup")

        invoice = gen.generate_monthly_invoice("tenant-a", *MARCH)["invoice"]

        components = [item["component"] for item in invoice["line_items"]]
        assert components == [BillingComponent.EPAPER_PAGE.value,
                              BillingComponent.NEWS_WEBSITE_MONTHLY.value,
                              BillingComponent.OTHER_CHARGES.value]
        assert sum(i["amount_minor"] for i in invoice["line_items"]) == invoice["total_amount_minor"]
        assert invoice["total_amount_minor"] == 1_600_000 + 99900 + 2500

        epaper = invoice["line_items"][0]
        assert epaper["quantity"] == 8
        assert epaper["unit_amount_minor"] == 200000
        assert "minimum applied" in epaper["description"]

    def test_build_line_items_skips_zero_components(self, epaper_pricing):
        charge = get_billing_calculator().calculate_monthly_charge("tenant-a", *MARCH)
        items = build_line_items(charge)
        assert [i.component for i in items] == [BillingComponent.EPAPER_PAGE.value]

    def test_stored_invoice_matches_outcome(self, gen, march_usage):
        get_wallet_ledger().credit("tenant-a", 1_600_000, "topup")
        created = gen.generate_monthly_invoice("tenant-a", *MARCH)["invoice"]
        stored = gen.get_invoice(created["invoice_id"])
        assert stored["invoice_id"].startswith("INV-")
        assert stored["period"] == "2026-03"
        assert stored["status"] == created["status"]
        assert stored["total_amount_minor"] == created["total_amount_minor"]
        assert stored["line_items"] == created["line_items"]


class TestIdempotency:
    def test_second_run_returns_existing(self, gen, march_usage):
        get_wallet_ledger().credit("tenant-a", 5_000_000, "topup")
        first = gen.generate_monthly_invoice("tenant-a", *MARCH)
        second = gen.generate_monthly_invoice("tenant-a", *MARCH)

        assert second["status"] == "already_invoiced"
        assert second["invoice"]["invoice_id"] == first["invoice"]["invoice_id"]
        assert get_wallet_ledger().get_balance("tenant-a")["balance_minor"] == 3_400_000
        assert gen.list_invoices("tenant-a")["pagination"]["total"] == 1

    def test_invoiced_month_is_frozen(self, gen, march_usage):
        get_wallet_ledger().credit("tenant-a", 5_000_000, "topup")
        gen.generate_monthly_invoice("tenant-a", *MARCH)

        get_pricing_catalog().set_pricing("tenant-a", "EPAPER", {"price_per_unit_minor": 999999},
                                          effective_from=0.0)
        get_usage_accumulator().track_epaper_pages("tenant-a", 20, issue_date=date(2026, 3, 30))

        charge = get_billing_calculator().calculate_monthly_charge("tenant-a", *MARCH)
        assert charge.invoice_id is not None
        assert charge.total_charge_minor == 1_600_000
        assert charge.epaper_unit_price_minor == 200000

    def test_unlinked_duplicate_rejected(self, gen, march_usage):
        get_wallet_ledger().credit("tenant-a", 5_000_000, "topup")
        gen.generate_monthly_invoice("tenant-a", *MARCH)

        def _unlink(conn, backend):
            conn.execute(sql("UPDATE tenant_usage_monthly SET invoice_id = NULL WHERE tenant_id = ?",
                             backend), ("tenant-a",))
        get_engine().atomic(_unlink)

        with pytest.raises(DuplicateInvoicePeriod):
            gen.generate_monthly_invoice("tenant-a", *MARCH)
        assert get_wallet_ledger().get_balance("tenant-a")["balance_minor"] == 3_400_000


class TestNoCharge:
    def test_zero_total_creates_no_invoice(self, gen, tenant):
        outcome = gen.generate_monthly_invoice("tenant-a", *MARCH)
        assert outcome["status"] == "no_charge"
        assert outcome["invoice"] is None
        assert gen.list_invoices("tenant-a")["invoices"] == []

    def test_pages_without_pricing_raise(self, gen, tenant):
        get_usage_accumulator().track_epaper_pages("tenant-a", 4, issue_date=date(2026, 3, 2))
        with pytest.raises(PricingNotConfigured):
            gen.generate_monthly_invoice("tenant-a", *MARCH)
        assert gen.list_invoices("tenant-a")["invoices"] == []


class TestQueries:
    def _two_months(self, gen):
        ledger = get_wallet_ledger()
        ledger.credit("tenant-a", 1_600_000, "topup")
        gen.generate_monthly_invoice("tenant-a", *MARCH)
        gen.generate_monthly_invoice("tenant-a", *APRIL)

    def test_list_newest_first_with_status_filter(self, gen, epaper_pricing):
        self._two_months(gen)
        listing = gen.list_invoices("tenant-a")
        assert [i["period"] for i in listing["invoices"]] == ["2026-04", "2026-03"]

        paid = gen.list_invoices("tenant-a", status="paid")["invoices"]
        assert [i["period"] for i in paid] == ["2026-03"]
        past_due = gen.list_invoices("tenant-a", status=InvoiceStatus.PAST_DUE)["invoices"]
        assert [i["period"] for i in past_due] == ["2026-04"]

    def test_pagination(self, gen, epaper_pricing):
        self._two_months(gen)
        page = gen.list_invoices("tenant-a", page=2, page_size=1)
        assert page["pagination"] == {"page": 2, "page_size": 1, "total": 2, "total_pages": 2}
        assert page["invoices"][0]["period"] == "2026-03"

    def test_unknown_status(self, gen, tenant):
        with pytest.raises(InvalidRequest):
            gen.list_invoices("tenant-a", status="LOST")

    def test_get_invoice_scoped_to_tenant(self, gen, march_usage):
        get_access_controller().register_tenant("tenant-b")
        get_wallet_ledger().credit("tenant-a", 1_600_000, "topup")
        invoice_id = gen.generate_monthly_invoice("tenant-a", *MARCH)["invoice"]["invoice_id"]
        assert gen.get_invoice(invoice_id, tenant_id="tenant-a")["invoice_id"] == invoice_id
        with pytest.raises(InvoiceNotFound):
            gen.get_invoice(invoice_id, tenant_id="tenant-b")
        with pytest.raises(InvoiceNotFound):
            gen.get_invoice("INV-missing")
