"""HTTP surface tests using FastAPI's TestClient."""

import time
from datetime import date

import pytest
from fastapi.testclient import TestClient

import api
from api import app
from usage import get_usage_accumulator, period_for_month

ADMIN = {"X-Actor-Role": "SUPER_ADMIN", "X-Actor-Id": "ops-1"}
TENANT_A = {"X-Tenant-Id": "tenant-a"}


@pytest.fixture(autouse=True)
def clear_rate_limit():
    api._RATE_BUCKETS.clear()
    yield
    api._RATE_BUCKETS.clear()


@pytest.fixture
def client():
    return TestClient(app)


def _topup(client, amount, tenant_id="tenant-a"):
    return client.post(f"/tenants/{tenant_id}/wallet/topup", json={"amount_minor": amount})


class TestHealth:
    def test_healthz(self, client):
        r = client.get("/healthz")
        assert r.status_code == 200
        assert r.json()["status"] == "healthy"

    def test_readyz_checks_storage(self, client):
        r = client.get("/readyz")
        assert r.status_code == 200
        assert r.json()["storage"] == {"ok": True, "backend": "sqlite"}


class TestTenants:
    def test_register_requires_admin(self, client):
        r = client.put("/tenants/tenant-x", json={"name": "X"})
        assert r.status_code == 403
        assert r.json() == {"ok": False, "error": {
            "code": "FORBIDDEN", "message": "this operation requires the SUPER_ADMIN role"}}

    def test_register_and_fetch(self, client):
        r = client.put("/tenants/tenant-x", json={"name": "X Times"}, headers=ADMIN)
        assert r.status_code == 200
        assert r.json()["tenant"]["name"] == "X Times"
        assert client.get("/tenants/tenant-x").json()["tenant"]["subscription_locked"] is False

    def test_blank_tenant_id_is_400(self, client):
        r = client.put("/tenants/%20", json={"name": "Blank"}, headers=ADMIN)
        assert r.status_code == 400
        assert r.json()["error"]["code"] == "INVALID_REQUEST"

    def test_unknown_tenant_is_404(self, client):
        r = client.get("/tenants/ghost")
        assert r.status_code == 404
        assert r.json()["error"]["code"] == "TENANT_NOT_FOUND"

    def test_lock_and_unlock(self, client, tenant):
        r = client.post("/tenants/tenant-a/lock", json={"reason": "chargeback"}, headers=ADMIN)
        assert r.json()["tenant"]["locked_reason"] == "chargeback"
        r = client.post("/tenants/tenant-a/unlock", headers=ADMIN)
        assert r.json()["tenant"]["subscription_locked"] is False

    def test_lock_default_reason_names_actor(self, client, tenant):
        r = client.post("/tenants/tenant-a/lock", json={}, headers=ADMIN)
        assert r.json()["tenant"]["locked_reason"] == "locked by ops-1"


class TestWallet:
    def test_topup(self, client, tenant):
        r = _topup(client, 10000)
        assert r.status_code == 200
        body = r.json()
        assert body["transaction"]["tx_type"] == "CREDIT"
        assert body["transaction"]["balance_after_minor"] == 10000
        assert body["wallet"]["available_balance_minor"] == 10000
        assert body["tenant_unlocked"] is False

    @pytest.mark.parametrize("amount", [0, -50])
    def test_topup_non_positive_is_400(self, client, tenant, amount):
        r = _topup(client, amount)
        assert r.status_code == 400
        assert r.json()["error"]["code"] == "INVALID_AMOUNT"

    def test_topup_rejects_fractional_amount(self, client, tenant):
        r = client.post("/tenants/tenant-a/wallet/topup", json={"amount_minor": 10.5})
        assert r.status_code == 422
        assert r.json()["error"]["code"] == "validation_error"

    def test_topup_unlocks(self, client, tenant):
        client.post("/tenants/tenant-a/lock", json={"reason": "shortfall"}, headers=ADMIN)
        assert _topup(client, 2_000_000).json()["tenant_unlocked"] is True
        assert client.get("/tenants/tenant-a").json()["tenant"]["subscription_locked"] is False

    def test_wallet_view_with_no_charges(self, client, tenant):
        _topup(client, 500)
        wallet = client.get("/tenants/tenant-a/wallet").json()["wallet"]
        assert wallet["balance_minor"] == 500
        assert wallet["monthly_charge_minor"] == 0
        assert wallet["months_remaining"] is None
        assert wallet["status"] == "healthy"

    def test_wallet_view_with_pricing(self, client, epaper_pricing):
        _topup(client, 2_400_000)
        wallet = client.get("/tenants/tenant-a/wallet").json()["wallet"]
        assert wallet["monthly_charge_minor"] == 1_600_000
        assert wallet["months_remaining"] == 1.5
        assert wallet["status"] == "low"

    def test_adjust_requires_admin(self, client, tenant):
        _topup(client, 1000)
        body = {"amount_minor": -300, "description": "correction"}
        assert client.post("/tenants/tenant-a/wallet/adjust", json=body).status_code == 403
        r = client.post("/tenants/tenant-a/wallet/adjust", json=body, headers=ADMIN)
        assert r.status_code == 200
        assert r.json()["wallet"]["balance_minor"] == 700
        assert r.json()["transaction"]["created_by"] == "ops-1"

    def test_adjust_below_zero(self, client, tenant):
        _topup(client, 1000)
        r = client.post("/tenants/tenant-a/wallet/adjust",
                        json={"amount_minor": -1001, "description": "oops"}, headers=ADMIN)
        assert r.status_code == 400
        assert r.json()["error"]["code"] == "WOULD_GO_NEGATIVE"

    def test_refund(self, client, tenant):
        r = client.post("/tenants/tenant-a/wallet/refund",
                        json={"amount_minor": 700, "reference_id": "INV-1"}, headers=ADMIN)
        assert r.status_code == 200
        assert r.json()["transaction"]["tx_type"] == "REFUND"

    def test_transactions_and_reconcile(self, client, tenant):
        _topup(client, 1000)
        _topup(client, 2000)
        r = client.get("/tenants/tenant-a/wallet/transactions", params={"page_size": 1})
        body = r.json()
        assert body["pagination"]["total"] == 2
        assert body["transactions"][0]["amount_minor"] == 2000

        bad = client.get("/tenants/tenant-a/wallet/transactions", params={"type": "BOGUS"})
        assert bad.status_code == 400

        rec = client.get("/tenants/tenant-a/wallet/reconcile").json()["reconciliation"]
        assert rec["consistent"] is True
        assert rec["ledger_balance_minor"] == 3000


class TestBulk:
    def test_calculate_bulk(self, client, epaper_pricing):
        r = client.post("/tenants/tenant-a/wallet/calculate-bulk", json={"months": 12})
        calc = r.json()["calculation"]
        assert calc["discount_percent"] == 15.0
        assert calc["total_minor"] == 16_320_000
        assert client.get("/tenants/tenant-a/wallet").json()["wallet"]["balance_minor"] == 0

    def test_calculate_bulk_without_pricing(self, client, tenant):
        r = client.post("/tenants/tenant-a/wallet/calculate-bulk", json={"months": 6})
        assert r.status_code == 404
        assert r.json()["error"]["code"] == "PRICING_NOT_CONFIGURED"

    def test_topup_bulk(self, client, epaper_pricing):
        r = client.post("/tenants/tenant-a/wallet/topup-bulk", json={"months": 6})
        assert r.status_code == 200
        assert r.json()["wallet"]["balance_minor"] == 9_120_000
        assert r.json()["calculation"]["discount_minor"] == 480_000


class TestPricingRoutes:
    def test_set_list_update_retire(self, client, tenant):
        r = client.post("/tenants/tenant-a/pricing", headers=ADMIN, json={
            "service": "EPAPER", "price_per_unit_minor": 200000, "effective_from": "2026-01-01"})
        assert r.status_code == 200
        first = r.json()["pricing"]
        assert first["min_units_per_period"] == 8
        assert first["created_by"] == "ops-1"

        r = client.put(f"/tenants/tenant-a/pricing/{first['pricing_id']}", headers=ADMIN,
                       json={"price_per_unit_minor": 250000})
        second = r.json()["pricing"]
        assert r.json()["supersedes"] == first["pricing_id"]
        assert second["price_per_unit_minor"] == 250000

        history = client.get("/tenants/tenant-a/pricing").json()["pricing"]
        assert len(history) == 2
        active = client.get("/tenants/tenant-a/pricing", params={"active_only": True}).json()
        assert [p["pricing_id"] for p in active["pricing"]] == [second["pricing_id"]]

        r = client.delete(f"/tenants/tenant-a/pricing/{second['pricing_id']}", headers=ADMIN)
        assert r.json()["pricing"]["is_active"] is False

    def test_pricing_change_requires_admin(self, client, tenant):
        r = client.post("/tenants/tenant-a/pricing",
                        json={"service": "EPAPER", "price_per_unit_minor": 1})
        assert r.status_code == 403

    def test_invalid_pricing(self, client, tenant):
        r = client.post("/tenants/tenant-a/pricing", headers=ADMIN,
                        json={"service": "NEWS_WEBSITE"})
        assert r.status_code == 400
        r = client.post("/tenants/tenant-a/pricing", headers=ADMIN,
                        json={"service": "RADIO", "monthly_fee_minor": 5})
        assert r.status_code == 400
        assert r.json()["error"]["code"] == "INVALID_REQUEST"

    def test_services_toggle(self, client, tenant):
        client.post("/tenants/tenant-a/pricing", headers=ADMIN, json={
            "service": "PRINT_SERVICE", "monthly_fee_minor": 50000, "effective_from": "2026-01-01"})
        r = client.post("/tenants/tenant-a/services/PRINT_SERVICE/toggle",
                        json={"activate": False}, headers=ADMIN)
        assert r.json()["active"] is False
        services = {s["service"]: s["active"]
                    for s in client.get("/tenants/tenant-a/services").json()["services"]}
        assert services["PRINT_SERVICE"] is False


class TestUsageAndInvoices:
    def test_track_pages_and_current_usage(self, client, epaper_pricing):
        r = client.post("/tenants/tenant-a/usage/epaper-pages", json={"page_count": 10})
        assert r.status_code == 200
        assert r.json()["usage"]["epaper_page_count"] == 10
        usage = client.get("/tenants/tenant-a/usage/current").json()["usage"]
        assert usage["epaper_billed_pages"] == 10
        assert usage["total_charge_minor"] == 2_000_000

    def test_other_charge_requires_admin(self, client, tenant):
        body = {"amount_minor": 2500, "description": "courier", "charged_on": "2026-03-05"}
        assert client.post("/tenants/tenant-a/usage/other-charges", json=body).status_code == 403
        r = client.post("/tenants/tenant-a/usage/other-charges", json=body, headers=ADMIN)
        assert r.json()["usage"]["period"] == "2026-03"
        assert r.json()["usage"]["other_charges_minor"] == 2500

    def test_generate_invoice(self, client, epaper_pricing):
        get_usage_accumulator().track_epaper_pages("tenant-a", 3, issue_date=date(2026, 3, 4))
        _topup(client, 1_600_000)

        r = client.post("/tenants/tenant-a/invoices/generate", json={"period": "2026-03"},
                        headers=ADMIN)
        assert r.status_code == 200
        body = r.json()
        assert body["status"] == "invoiced"
        invoice_id = body["invoice"]["invoice_id"]
        assert body["invoice"]["status"] == "PAID"

        again = client.post("/tenants/tenant-a/invoices/generate", json={"period": "2026-03"},
                            headers=ADMIN)
        assert again.json()["status"] == "already_invoiced"

        assert client.get(f"/invoices/{invoice_id}").json()["invoice"]["total_amount_minor"] == 1_600_000
        listing = client.get("/tenants/tenant-a/invoices").json()
        assert listing["pagination"]["total"] == 1

    def test_generate_invoice_bad_period(self, client, tenant):
        r = client.post("/tenants/tenant-a/invoices/generate", json={"period": "March"},
                        headers=ADMIN)
        assert r.status_code == 422
        r = client.post("/tenants/tenant-a/invoices/generate", json={"period": "2026-13"},
                        headers=ADMIN)
        assert r.status_code == 400

    def test_missing_invoice(self, client):
        r = client.get("/invoices/INV-none")
        assert r.status_code == 404
        assert r.json()["error"]["code"] == "INVOICE_NOT_FOUND"


class TestJobs:
    def test_monthly_billing_endpoint(self, client, epaper_pricing):
        get_usage_accumulator().track_epaper_pages("tenant-a", 3, issue_date=date(2026, 3, 4))
        r = client.post("/jobs/monthly-billing", json={"as_of": "2026-04-01"}, headers=ADMIN)
        assert r.status_code == 200
        run = r.json()["run"]
        assert run["period_start"] == period_for_month("2026-03")[0]
        assert run["counts"]["past_due"] == 1

    def test_jobs_require_admin(self, client):
        assert client.post("/jobs/monthly-billing", json={}).status_code == 403
        assert client.post("/jobs/balance-check").status_code == 403

    def test_balance_check_endpoint(self, client, tenant):
        r = client.post("/jobs/balance-check", headers=ADMIN)
        assert r.status_code == 200
        assert r.json()["run"]["counts"]["total"] == 1


class TestSelfService:
    def test_requires_tenant_principal(self, client, tenant):
        assert client.get("/tenant/wallet/balance").status_code == 403
        r = client.get("/tenant/wallet/balance", headers={"X-Tenant-Id": "ghost"})
        assert r.status_code == 403
        assert r.json()["error"]["code"] == "FORBIDDEN"

    def test_balance(self, client, tenant):
        _topup(client, 1234)
        wallet = client.get("/tenant/wallet/balance", headers=TENANT_A).json()["wallet"]
        assert wallet["tenant_id"] == "tenant-a"
        assert wallet["available_balance_minor"] == 1234
        assert wallet["subscription_locked"] is False

    def test_transactions_are_own_only(self, client, tenant):
        client.put("/tenants/tenant-b", json={"name": "B"}, headers=ADMIN)
        _topup(client, 100)
        _topup(client, 999, tenant_id="tenant-b")
        txs = client.get("/tenant/wallet/transactions", headers=TENANT_A).json()["transactions"]
        assert [t["amount_minor"] for t in txs] == [100]

    def test_invoice_of_other_tenant_is_hidden(self, client, epaper_pricing):
        client.put("/tenants/tenant-b", json={"name": "B"}, headers=ADMIN)
        r = client.post("/tenants/tenant-a/invoices/generate", json={"period": "2026-03"},
                        headers=ADMIN)
        invoice_id = r.json()["invoice"]["invoice_id"]

        own = client.get(f"/tenant/invoices/{invoice_id}", headers=TENANT_A)
        assert own.status_code == 200
        other = client.get(f"/tenant/invoices/{invoice_id}", headers={"X-Tenant-Id": "tenant-b"})
        assert other.status_code == 404
        assert client.get("/tenant/invoices", headers=TENANT_A).json()["pagination"]["total"] == 1

    def test_current_month_usage(self, client, epaper_pricing):
        usage = client.get("/tenant/usage/current-month", headers=TENANT_A).json()["usage"]
        assert usage["epaper_charge_minor"] == 1_600_000

    def test_access_check(self, client, tenant):
        assert client.get("/tenant/access", headers=TENANT_A).status_code == 200
        client.post("/tenants/tenant-a/lock", json={"reason": "insufficient balance"},
                    headers=ADMIN)
        r = client.get("/tenant/access", headers=TENANT_A)
        assert r.status_code == 403
        assert r.json()["error"]["code"] == "TENANT_LOCKED"
        assert r.json()["error"]["message"] == "insufficient balance"

    def test_topup_request(self, client, epaper_pricing):
        r = client.post("/tenant/wallet/topup-request", json={"months": 6}, headers=TENANT_A)
        body = r.json()
        assert body["amount_due_minor"] == 9_120_000
        assert body["amount_display"] == "₹91,200.00"
        assert body["calculation"]["discount_percent"] == 5.0

        r = client.post("/tenant/wallet/topup-request", json={"amount_minor": 5000},
                        headers=TENANT_A)
        assert r.json()["amount_due_minor"] == 5000
        assert r.json()["calculation"] is None

        r = client.post("/tenant/wallet/topup-request", json={}, headers=TENANT_A)
        assert r.status_code == 400
        # Nothing was credited
        assert client.get("/tenant/wallet/balance", headers=TENANT_A).json()["wallet"]["balance_minor"] == 0


class TestRateLimit:
    def test_rate_limited(self, client, monkeypatch, tenant):
        monkeypatch.setattr(api, "RATE_LIMIT_REQUESTS", 2)
        assert client.get("/tenants/tenant-a").status_code == 200
        assert client.get("/tenants/tenant-a").status_code == 200
        r = client.get("/tenants/tenant-a")
        assert r.status_code == 429
        assert r.json()["error"]["code"] == "rate_limited"

    def test_idle_buckets_are_swept(self, client, monkeypatch, tenant):
        monkeypatch.setattr(api, "RATE_BUCKET_SWEEP_AT", 2)
        stale = time.time() - api.RATE_LIMIT_WINDOW_SEC - 1
        api._RATE_BUCKETS["10.0.0.1"].append(stale)
        api._RATE_BUCKETS["10.0.0.2"].append(stale)
        assert client.get("/tenants/tenant-a").status_code == 200
        assert "10.0.0.1" not in api._RATE_BUCKETS
        assert "10.0.0.2" not in api._RATE_BUCKETS
        assert len(api._RATE_BUCKETS) == 1
