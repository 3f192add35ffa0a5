# Tenant Billing API
# FastAPI. Operator surface under /tenants, tenant self-service under /tenant.
#
# Identity is resolved upstream. This service trusts three headers set by the
# gateway: X-Actor-Id, X-Actor-Role (SUPER_ADMIN for elevated operations) and
# X-Tenant-Id (the tenant principal on self-service routes).

import hmac
import json
import logging
import os
import time
from collections import defaultdict, deque
from datetime import date, datetime, timezone

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from starlette.middleware.base import BaseHTTPMiddleware

from access import get_access_controller
from billing import get_billing_calculator, json_safe
from db import get_engine
from errors import BillingError, Forbidden, InvalidAmount, TenantNotFound
from invoices import format_minor, get_invoice_generator
from jobs import run_balance_check, run_monthly_billing
from pricing import get_pricing_catalog
from usage import get_usage_accumulator, period_for_month
from wallet import get_wallet_ledger, validate_amount

log = logging.getLogger("tenant_billing.api")

app = FastAPI(title="Tenant Billing", version="1.0.0")

TENANT_BILLING_ENV = os.environ.get("TENANT_BILLING_ENV", "dev").lower()
AUTH_REQUIRED = TENANT_BILLING_ENV not in {"dev", "development", "test"}
API_TOKEN = os.environ.get("TENANT_BILLING_API_TOKEN", "")
RATE_LIMIT_REQUESTS = int(os.environ.get("TENANT_BILLING_RATE_LIMIT_REQUESTS", "120"))
RATE_LIMIT_WINDOW_SEC = int(os.environ.get("TENANT_BILLING_RATE_LIMIT_WINDOW_SEC", "60"))
_RATE_BUCKETS = defaultdict(deque)
# Idle client buckets are swept once this many are tracked
RATE_BUCKET_SWEEP_AT = int(os.environ.get("TENANT_BILLING_RATE_BUCKET_SWEEP_AT", "10000"))

SUPER_ADMIN = "SUPER_ADMIN"


# ── API Token Auth ────────────────────────────────────────────────────

# Public routes, no token required
PUBLIC_PATHS = {"/", "/docs", "/openapi.json", "/healthz", "/readyz"}


class TokenAuthMiddleware(BaseHTTPMiddleware):
    """
    Bearer token between the gateway and this service. Required outside
    dev/test; a missing TENANT_BILLING_API_TOKEN there is a config error.
    """

    async def dispatch(self, request: Request, call_next):
        if not AUTH_REQUIRED:
            return await call_next(request)

        api_token = os.environ.get("TENANT_BILLING_API_TOKEN", API_TOKEN)
        if not api_token:
            return JSONResponse(
                status_code=500,
                content={
                    "ok": False,
                    "error": {
                        "code": "auth_config_error",
                        "message": "TENANT_BILLING_API_TOKEN must be set in non-dev environments",
                    },
                },
            )

        if request.url.path in PUBLIC_PATHS:
            return await call_next(request)

        auth = request.headers.get("Authorization", "")
        token = auth[7:] if auth.startswith("Bearer ") else ""

        if not token or not hmac.compare_digest(token, api_token):
            return JSONResponse(
                status_code=401,
                content={"ok": False, "error": {"code": "unauthorized", "message": "Unauthorized"}},
            )

        return await call_next(request)


app.add_middleware(TokenAuthMiddleware)


class RequestLogMiddleware(BaseHTTPMiddleware):
    """Emit structured access logs for observability."""

    async def dispatch(self, request: Request, call_next):
        started = time.time()
        response = await call_next(request)
        duration_ms = round((time.time() - started) * 1000, 2)
        entry = {
            "event": "api_request",
            "path": request.url.path,
            "method": request.method,
            "status": response.status_code,
            "duration_ms": duration_ms,
            "client_ip": request.client.host if request.client else "unknown",
            "actor": request.headers.get("X-Actor-Id"),
        }
        log.info(json.dumps(entry, sort_keys=True))
        return response


app.add_middleware(RequestLogMiddleware)


def _sweep_rate_buckets(now):
    cutoff = now - RATE_LIMIT_WINDOW_SEC
    for ip in [ip for ip, bucket in _RATE_BUCKETS.items() if not bucket or bucket[-1] <= cutoff]:
        del _RATE_BUCKETS[ip]


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Simple in-memory IP rate limiting for API safety."""

    async def dispatch(self, request: Request, call_next):
        if request.url.path in PUBLIC_PATHS:
            return await call_next(request)

        now = time.time()
        if len(_RATE_BUCKETS) >= RATE_BUCKET_SWEEP_AT:
            _sweep_rate_buckets(now)
        client_ip = request.client.host if request.client else "unknown"
        bucket = _RATE_BUCKETS[client_ip]
        while bucket and bucket[0] <= now - RATE_LIMIT_WINDOW_SEC:
            bucket.popleft()

        if len(bucket) >= RATE_LIMIT_REQUESTS:
            return JSONResponse(
                status_code=429,
                content={
                    "ok": False,
                    "error": {"code": "rate_limited", "message": "Too many requests"},
                },
            )

        bucket.append(now)
        return await call_next(request)


app.add_middleware(RateLimitMiddleware)


@app.exception_handler(BillingError)
async def billing_error_handler(_: Request, exc: BillingError):
    return JSONResponse(status_code=exc.http_status, content={"ok": False, "error": exc.to_dict()})


@app.exception_handler(HTTPException)
async def http_exception_handler(_: Request, exc: HTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"ok": False, "error": {"code": "http_error", "message": str(exc.detail)}},
    )


@app.exception_handler(RequestValidationError)
async def request_validation_exception_handler(_: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=422,
        content={
            "ok": False,
            "error": {
                "code": "validation_error",
                "message": "Request validation failed",
                "details": json.loads(json.dumps(exc.errors(), default=str)),
            },
        },
    )


# ── Identity dependencies ─────────────────────────────────────────────


def actor_id(x_actor_id: str | None = Header(default=None)) -> str | None:
    return x_actor_id


def require_super_admin(
    x_actor_role: str | None = Header(default=None),
    x_actor_id: str | None = Header(default=None),
) -> str | None:
    """Elevated operations: lock, unlock, adjust, refund, pricing changes, jobs."""
    if (x_actor_role or "").upper() != SUPER_ADMIN:
        raise Forbidden("this operation requires the SUPER_ADMIN role")
    return x_actor_id


def current_tenant(x_tenant_id: str | None = Header(default=None)) -> dict:
    """Resolve the self-service principal. Unknown tenants look the same as missing ones."""
    if not x_tenant_id:
        raise Forbidden("only tenant principals can access this endpoint")
    try:
        return get_access_controller().get_tenant(x_tenant_id)
    except TenantNotFound:
        raise Forbidden("only tenant principals can access this endpoint") from None


def _epoch(d: date | None):
    if d is None:
        return None
    return datetime(d.year, d.month, d.day, tzinfo=timezone.utc).timestamp()


# ── Request models ────────────────────────────────────────────────────


class TenantIn(BaseModel):
    name: str = ""


class TopupIn(BaseModel):
    amount_minor: int = Field(strict=True)
    description: str | None = None
    reference_id: str | None = None


class BulkTopupIn(BaseModel):
    months: int = Field(strict=True)
    reference_id: str | None = None


class BulkPreviewIn(BaseModel):
    months: int = Field(strict=True)


class AdjustIn(BaseModel):
    amount_minor: int = Field(strict=True)
    description: str = Field(min_length=1, max_length=500)


class RefundIn(BaseModel):
    amount_minor: int = Field(strict=True)
    description: str | None = None
    reference_id: str | None = None


class LockIn(BaseModel):
    reason: str | None = None


class PricingFields(BaseModel):
    price_per_unit_minor: int | None = Field(default=None, strict=True)
    monthly_fee_minor: int | None = Field(default=None, strict=True)
    min_units_per_period: int | None = Field(default=None, strict=True)
    discount_6_month_percent: float | None = None
    discount_12_month_percent: float | None = None


class PricingIn(PricingFields):
    service: str
    effective_from: date | None = None


class ToggleIn(BaseModel):
    activate: bool


class PagesIn(BaseModel):
    page_count: int = Field(strict=True)
    issue_date: date | None = None


class OtherChargeIn(BaseModel):
    amount_minor: int = Field(strict=True)
    description: str = ""
    charged_on: date | None = None


class GenerateInvoiceIn(BaseModel):
    period: str = Field(pattern=r"^\d{4}-\d{2}$")


class MonthlyBillingIn(BaseModel):
    as_of: date | None = None


class TopupRequestIn(BaseModel):
    amount_minor: int | None = Field(default=None, strict=True)
    months: int | None = Field(default=None, strict=True)


# ── Tenants ───────────────────────────────────────────────────────────


@app.put("/tenants/{tenant_id}")
def api_register_tenant(tenant_id: str, t: TenantIn, actor: str | None = Depends(require_super_admin)):
    """Register a tenant with the billing core (or rename it)."""
    return {"ok": True, "tenant": get_access_controller().register_tenant(tenant_id, t.name)}


@app.get("/tenants/{tenant_id}")
def api_get_tenant(tenant_id: str):
    return {"ok": True, "tenant": get_access_controller().get_tenant(tenant_id)}


@app.post("/tenants/{tenant_id}/lock")
def api_lock_tenant(tenant_id: str, body: LockIn, actor: str | None = Depends(require_super_admin)):
    tenant = get_access_controller().lock(tenant_id, body.reason or f"locked by {actor or 'operator'}")
    return {"ok": True, "tenant": tenant}


@app.post("/tenants/{tenant_id}/unlock")
def api_unlock_tenant(tenant_id: str, actor: str | None = Depends(require_super_admin)):
    return {"ok": True, "tenant": get_access_controller().unlock(tenant_id)}


# ── Wallet ────────────────────────────────────────────────────────────


@app.get("/tenants/{tenant_id}/wallet")
def api_wallet(tenant_id: str):
    """Balance plus this month's charge and runway."""
    return {"ok": True, "wallet": json_safe(get_billing_calculator().check_balance(tenant_id))}


@app.post("/tenants/{tenant_id}/wallet/topup")
def api_topup(tenant_id: str, body: TopupIn, actor: str | None = Depends(actor_id)):
    result = get_wallet_ledger().credit(
        tenant_id, body.amount_minor, body.description or "Wallet top-up",
        reference_id=body.reference_id, actor=actor,
    )
    return {"ok": True, **result}


@app.post("/tenants/{tenant_id}/wallet/topup-bulk")
def api_topup_bulk(tenant_id: str, body: BulkTopupIn, actor: str | None = Depends(actor_id)):
    result = get_billing_calculator().topup_bulk(
        tenant_id, body.months, reference_id=body.reference_id, actor=actor,
    )
    return {"ok": True, **result}


@app.post("/tenants/{tenant_id}/wallet/calculate-bulk")
def api_calculate_bulk(tenant_id: str, body: BulkPreviewIn):
    """Preview only. Nothing is credited."""
    return {"ok": True, "calculation": get_billing_calculator().calculate_bulk_discount(
        tenant_id, body.months)}


@app.post("/tenants/{tenant_id}/wallet/adjust")
def api_adjust(tenant_id: str, body: AdjustIn, actor: str | None = Depends(require_super_admin)):
    result = get_wallet_ledger().adjust(tenant_id, body.amount_minor, body.description, actor=actor)
    return {"ok": True, **result}


@app.post("/tenants/{tenant_id}/wallet/refund")
def api_refund(tenant_id: str, body: RefundIn, actor: str | None = Depends(require_super_admin)):
    result = get_wallet_ledger().refund(
        tenant_id, body.amount_minor, body.description or "Refund",
        reference_id=body.reference_id, actor=actor,
    )
    return {"ok": True, **result}


@app.get("/tenants/{tenant_id}/wallet/transactions")
def api_transactions(tenant_id: str, page: int = 1, page_size: int = 20, type: str | None = None):
    return {"ok": True, **get_wallet_ledger().list_transactions(tenant_id, page, page_size, type)}


@app.get("/tenants/{tenant_id}/wallet/reconcile")
def api_reconcile(tenant_id: str):
    return {"ok": True, "reconciliation": get_wallet_ledger().reconcile(tenant_id)}


# ── Usage ─────────────────────────────────────────────────────────────


@app.get("/tenants/{tenant_id}/usage/current")
def api_current_usage(tenant_id: str):
    return {"ok": True, "usage": get_billing_calculator().current_month_charge(tenant_id).to_dict()}


@app.post("/tenants/{tenant_id}/usage/epaper-pages")
def api_track_pages(tenant_id: str, body: PagesIn):
    usage = get_usage_accumulator().track_epaper_pages(
        tenant_id, body.page_count, _epoch(body.issue_date))
    return {"ok": True, "usage": usage}


@app.post("/tenants/{tenant_id}/usage/other-charges")
def api_other_charge(tenant_id: str, body: OtherChargeIn,
                     actor: str | None = Depends(require_super_admin)):
    usage = get_usage_accumulator().record_other_charge(
        tenant_id, body.amount_minor, _epoch(body.charged_on), body.description)
    return {"ok": True, "usage": usage}


# ── Pricing ───────────────────────────────────────────────────────────


@app.get("/tenants/{tenant_id}/pricing")
def api_list_pricing(tenant_id: str, service: str | None = None, active_only: bool = False):
    pricing = get_pricing_catalog().list_pricing(tenant_id, service, active_only)
    return {"ok": True, "pricing": [p.to_dict() for p in pricing]}


@app.post("/tenants/{tenant_id}/pricing")
def api_set_pricing(tenant_id: str, body: PricingIn, actor: str | None = Depends(require_super_admin)):
    fields = body.model_dump(exclude={"service", "effective_from"}, exclude_none=True)
    pricing = get_pricing_catalog().set_pricing(
        tenant_id, body.service, fields, _epoch(body.effective_from), actor=actor)
    return {"ok": True, "pricing": pricing.to_dict()}


@app.put("/tenants/{tenant_id}/pricing/{pricing_id}")
def api_update_pricing(tenant_id: str, pricing_id: str, body: PricingFields,
                       actor: str | None = Depends(require_super_admin)):
    """Issue a new pricing version derived from pricing_id."""
    pricing = get_pricing_catalog().update_pricing(
        tenant_id, pricing_id, body.model_dump(exclude_none=True), actor=actor)
    return {"ok": True, "pricing": pricing.to_dict(), "supersedes": pricing_id}


@app.delete("/tenants/{tenant_id}/pricing/{pricing_id}")
def api_retire_pricing(tenant_id: str, pricing_id: str,
                       actor: str | None = Depends(require_super_admin)):
    """Deactivate a pricing row. History is kept."""
    pricing = get_pricing_catalog().retire_pricing(tenant_id, pricing_id, actor=actor)
    return {"ok": True, "pricing": pricing.to_dict()}


@app.get("/tenants/{tenant_id}/services")
def api_services(tenant_id: str):
    return {"ok": True, "services": get_pricing_catalog().list_services(tenant_id)}


@app.post("/tenants/{tenant_id}/services/{service}/toggle")
def api_toggle_service(tenant_id: str, service: str, body: ToggleIn,
                       actor: str | None = Depends(require_super_admin)):
    result = get_pricing_catalog().toggle_service(tenant_id, service, body.activate, actor=actor)
    return {"ok": True, **result}


# ── Invoices ──────────────────────────────────────────────────────────


@app.post("/tenants/{tenant_id}/invoices/generate")
def api_generate_invoice(tenant_id: str, body: GenerateInvoiceIn,
                         actor: str | None = Depends(require_super_admin)):
    start, end = period_for_month(body.period)
    return {"ok": True, **get_invoice_generator().generate_monthly_invoice(tenant_id, start, end)}


@app.get("/tenants/{tenant_id}/invoices")
def api_list_invoices(tenant_id: str, page: int = 1, page_size: int = 20, status: str | None = None):
    return {"ok": True, **get_invoice_generator().list_invoices(tenant_id, page, page_size, status)}


@app.get("/invoices/{invoice_id}")
def api_get_invoice(invoice_id: str):
    return {"ok": True, "invoice": get_invoice_generator().get_invoice(invoice_id)}


# ── Jobs ──────────────────────────────────────────────────────────────


@app.post("/jobs/monthly-billing")
def api_run_monthly_billing(body: MonthlyBillingIn, actor: str | None = Depends(require_super_admin)):
    """Bill the month before as_of (default: today)."""
    log.info("MONTHLY BILLING triggered via API by %s", actor)
    return {"ok": True, "run": run_monthly_billing(now=_epoch(body.as_of))}


@app.post("/jobs/balance-check")
def api_run_balance_check(actor: str | None = Depends(require_super_admin)):
    return {"ok": True, "run": run_balance_check()}


# ── Tenant self-service ───────────────────────────────────────────────


@app.get("/tenant/wallet/balance")
def tenant_balance(tenant: dict = Depends(current_tenant)):
    report = json_safe(get_billing_calculator().check_balance(tenant["tenant_id"]))
    report["subscription_locked"] = tenant["subscription_locked"]
    report["locked_reason"] = tenant["locked_reason"]
    return {"ok": True, "wallet": report}


@app.get("/tenant/wallet/transactions")
def tenant_transactions(page: int = 1, page_size: int = 20, type: str | None = None,
                        tenant: dict = Depends(current_tenant)):
    return {"ok": True, **get_wallet_ledger().list_transactions(
        tenant["tenant_id"], page, page_size, type)}


@app.get("/tenant/usage/current-month")
def tenant_current_usage(tenant: dict = Depends(current_tenant)):
    charge = get_billing_calculator().current_month_charge(tenant["tenant_id"])
    return {"ok": True, "usage": charge.to_dict()}


@app.get("/tenant/invoices")
def tenant_invoices(page: int = 1, page_size: int = 20, status: str | None = None,
                    tenant: dict = Depends(current_tenant)):
    return {"ok": True, **get_invoice_generator().list_invoices(
        tenant["tenant_id"], page, page_size, status)}


@app.get("/tenant/invoices/{invoice_id}")
def tenant_invoice(invoice_id: str, tenant: dict = Depends(current_tenant)):
    invoice = get_invoice_generator().get_invoice(invoice_id, tenant_id=tenant["tenant_id"])
    return {"ok": True, "invoice": invoice}


@app.get("/tenant/access")
def tenant_access(tenant: dict = Depends(current_tenant)):
    """Access check for tenant-facing features. 403 TENANT_LOCKED when locked."""
    get_access_controller().ensure_unlocked(tenant["tenant_id"])
    return {"ok": True, "tenant_id": tenant["tenant_id"], "subscription_locked": False}


@app.post("/tenant/wallet/topup-request")
def tenant_topup_request(body: TopupRequestIn, tenant: dict = Depends(current_tenant)):
    """Amount due for a top-up. Payment capture happens in the payment gateway."""
    tenant_id = tenant["tenant_id"]
    calculation = None
    if body.months is not None:
        calculation = get_billing_calculator().calculate_bulk_discount(tenant_id, body.months)
        amount = calculation["total_minor"]
        if amount <= 0:
            raise InvalidAmount("no monthly charge configured to prepay")
    elif body.amount_minor is not None:
        amount = validate_amount(body.amount_minor)
    else:
        raise InvalidAmount("amount_minor or months is required")
    return {
        "ok": True,
        "message": "Top-up request created. Complete payment to credit the wallet.",
        "tenant_id": tenant_id,
        "amount_due_minor": amount,
        "amount_display": format_minor(amount),
        "months": body.months,
        "calculation": calculation,
    }


# ── Health ────────────────────────────────────────────────────────────


@app.get("/healthz")
def healthz():
    return {"ok": True, "status": "healthy", "env": TENANT_BILLING_ENV}


@app.get("/readyz")
def readyz():
    token = os.environ.get("TENANT_BILLING_API_TOKEN", API_TOKEN)
    if AUTH_REQUIRED and not token:
        raise HTTPException(
            status_code=503, detail="API token not configured for non-dev environment"
        )

    storage = get_engine().healthcheck()
    if not storage.get("ok"):
        raise HTTPException(
            status_code=503, detail=f"Storage not ready: {storage.get('error', 'unknown')}"
        )

    return {"ok": True, "status": "ready", "storage": storage}


@app.get("/")
def root():
    return {"name": "Tenant Billing", "status": "running"}


def main(host="0.0.0.0", port=8000):
    import uvicorn

    from jobs import setup_logging

    setup_logging()
    log.info("API STARTING on port %d", port)
    uvicorn.run(app, host=host, port=port)


if __name__ == "__main__":
    main()
