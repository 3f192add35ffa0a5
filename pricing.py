# Tenant Billing: Pricing Catalog
# Per-tenant, per-service price rows with effective date ranges.
#
# Rows are versioned, never edited in place: changing a price deactivates
# the current row (stamping effective_until) and inserts a new one, so an
# old invoice can always be re-derived from the row that was in effect.

import logging
import time
import uuid
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Optional

from access import fetch_tenant
from db import get_engine, row_to_dict, sql
from errors import InvalidAmount, InvalidRequest, PricingNotFound
from wallet import DEFAULT_CURRENCY

log = logging.getLogger("tenant_billing.pricing")


class TenantService(str, Enum):
    EPAPER = "EPAPER"
    NEWS_WEBSITE = "NEWS_WEBSITE"
    PRINT_SERVICE = "PRINT_SERVICE"
    CUSTOM_SERVICE = "CUSTOM_SERVICE"


# Billed per page with a monthly floor; everything else is a flat monthly fee.
METERED_SERVICES = (TenantService.EPAPER,)

DEFAULT_MIN_UNITS = 8
DEFAULT_DISCOUNT_6_MONTH_PERCENT = 5.0
DEFAULT_DISCOUNT_12_MONTH_PERCENT = 15.0

PRICING_FIELDS = (
    "price_per_unit_minor",
    "monthly_fee_minor",
    "min_units_per_period",
    "discount_6_month_percent",
    "discount_12_month_percent",
)


@dataclass
class TenantPricing:
    pricing_id: str
    tenant_id: str
    service: str
    currency: str = "INR"
    price_per_unit_minor: Optional[int] = None
    monthly_fee_minor: Optional[int] = None
    min_units_per_period: Optional[int] = None
    discount_6_month_percent: Optional[float] = None
    discount_12_month_percent: Optional[float] = None
    is_active: bool = True
    effective_from: float = 0.0
    effective_until: Optional[float] = None
    created_by: Optional[str] = None
    created_at: float = 0.0

    @classmethod
    def from_row(cls, row) -> "TenantPricing":
        data = row_to_dict(row)
        data["is_active"] = bool(data["is_active"])
        return cls(**data)

    def to_dict(self) -> dict:
        return asdict(self)

    def fields(self) -> dict:
        return {k: getattr(self, k) for k in PRICING_FIELDS}


def parse_service(service) -> TenantService:
    if isinstance(service, TenantService):
        return service
    try:
        return TenantService(str(service).upper())
    except ValueError:
        raise InvalidRequest(f"unknown service {service!r}") from None


def _validate_fields(service: TenantService, fields: dict) -> dict:
    clean = {}
    for key in ("price_per_unit_minor", "monthly_fee_minor", "min_units_per_period"):
        value = fields.get(key)
        if value is None:
            continue
        if isinstance(value, bool) or not isinstance(value, int) or value < 0:
            raise InvalidAmount(f"{key} must be a non-negative integer, got {value!r}")
        clean[key] = value
    for key in ("discount_6_month_percent", "discount_12_month_percent"):
        value = fields.get(key)
        if value is None:
            continue
        if isinstance(value, bool) or not isinstance(value, (int, float)) or not 0 <= value <= 100:
            raise InvalidAmount(f"{key} must be a percentage between 0 and 100, got {value!r}")
        clean[key] = float(value)

    if service in METERED_SERVICES:
        if not clean.get("price_per_unit_minor"):
            raise InvalidAmount(f"price_per_unit_minor required for {service.value} service")
    elif not clean.get("monthly_fee_minor"):
        raise InvalidAmount(f"monthly_fee_minor required for {service.value} service")

    clean.setdefault("min_units_per_period",
                     DEFAULT_MIN_UNITS if service in METERED_SERVICES else None)
    clean.setdefault("discount_6_month_percent", DEFAULT_DISCOUNT_6_MONTH_PERCENT)
    clean.setdefault("discount_12_month_percent", DEFAULT_DISCOUNT_12_MONTH_PERCENT)
    return clean


# ── Connection-scoped internals ───────────────────────────────────────


def active_pricing_tx(conn, backend, tenant_id, service, as_of) -> Optional[TenantPricing]:
    """The row in effect at as_of; latest effective_from wins.

    A superseded row keeps covering [effective_from, effective_until], so a
    past period still prices against the row that was current back then.
    """
    row = conn.execute(
        sql("""SELECT * FROM tenant_pricing
               WHERE tenant_id = ? AND service = ?
                 AND (is_active = ? OR effective_until IS NOT NULL)
                 AND effective_from <= ?
                 AND (effective_until IS NULL OR effective_until >= ?)
               ORDER BY effective_from DESC, created_at DESC
               LIMIT 1""", backend),
        (tenant_id, TenantService(service).value, True, as_of, as_of),
    ).fetchone()
    return TenantPricing.from_row(row) if row else None


def _retire_current(conn, backend, tenant_id, service, until):
    conn.execute(
        sql("""UPDATE tenant_pricing SET is_active = ?, effective_until = ?
               WHERE tenant_id = ? AND service = ? AND is_active = ?""", backend),
        (False, until, tenant_id, service.value, True),
    )


def _end_coverage(conn, backend, tenant_id, service, until):
    """Stop every row for the service from covering anything after `until`.

    Besides the active row this catches a superseded row still covering the
    gap before a future-dated version, and the pending future version itself.
    """
    _retire_current(conn, backend, tenant_id, service, until)
    conn.execute(
        sql("""UPDATE tenant_pricing SET is_active = ?, effective_until = ?
               WHERE tenant_id = ? AND service = ? AND effective_until > ?""", backend),
        (False, until, tenant_id, service.value, until),
    )


def _insert_pricing(conn, backend, tenant_id, service, fields, effective_from, actor):
    pricing = TenantPricing(
        pricing_id=f"PRC-{uuid.uuid4().hex[:12]}",
        tenant_id=tenant_id,
        service=service.value,
        currency=DEFAULT_CURRENCY,
        is_active=True,
        effective_from=effective_from,
        created_by=actor,
        created_at=time.time(),
        **fields,
    )
    conn.execute(
        sql("""INSERT INTO tenant_pricing
               (pricing_id, tenant_id, service, currency, price_per_unit_minor,
                monthly_fee_minor, min_units_per_period, discount_6_month_percent,
                discount_12_month_percent, is_active, effective_from, effective_until,
                created_by, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""", backend),
        (pricing.pricing_id, pricing.tenant_id, pricing.service, pricing.currency,
         pricing.price_per_unit_minor, pricing.monthly_fee_minor,
         pricing.min_units_per_period, pricing.discount_6_month_percent,
         pricing.discount_12_month_percent, True, pricing.effective_from, None,
         pricing.created_by, pricing.created_at),
    )
    return pricing


def _fetch_pricing(conn, backend, tenant_id, pricing_id) -> TenantPricing:
    row = conn.execute(
        sql("SELECT * FROM tenant_pricing WHERE pricing_id = ? AND tenant_id = ?", backend),
        (pricing_id, tenant_id),
    ).fetchone()
    if row is None:
        raise PricingNotFound(f"pricing {pricing_id} not found for tenant {tenant_id}",
                              pricing_id=pricing_id)
    return TenantPricing.from_row(row)


def set_pricing_tx(conn, backend, tenant_id, service, fields, effective_from=None, actor=None):
    service = parse_service(service)
    clean = _validate_fields(service, fields or {})
    fetch_tenant(conn, backend, tenant_id)
    effective_from = effective_from if effective_from is not None else time.time()
    _retire_current(conn, backend, tenant_id, service, effective_from)
    pricing = _insert_pricing(conn, backend, tenant_id, service, clean, effective_from, actor)
    log.info("PRICING set tenant=%s service=%s id=%s fields=%s from=%.0f", tenant_id,
             service.value, pricing.pricing_id, clean, effective_from)
    return pricing


class PricingCatalog:
    def __init__(self, db=None):
        self._db = db

    @property
    def db(self):
        return self._db or get_engine()

    def get_active_pricing(self, tenant_id: str, service, as_of: Optional[float] = None
                           ) -> Optional[TenantPricing]:
        as_of = time.time() if as_of is None else as_of
        return self.db.read(active_pricing_tx, tenant_id, parse_service(service), as_of)

    def set_pricing(self, tenant_id: str, service, fields: dict,
                    effective_from: Optional[float] = None,
                    actor: Optional[str] = None) -> TenantPricing:
        """Replace the current price for (tenant, service) with a new active version."""
        return self.db.atomic(set_pricing_tx, tenant_id, service, fields, effective_from, actor)

    def get_pricing(self, tenant_id: str, pricing_id: str) -> TenantPricing:
        return self.db.read(_fetch_pricing, tenant_id, pricing_id)

    def list_pricing(self, tenant_id: str, service=None, active_only: bool = False) -> list:
        """Full pricing history, newest first."""
        def _list(conn, backend):
            fetch_tenant(conn, backend, tenant_id)
            query = "SELECT * FROM tenant_pricing WHERE tenant_id = ?"
            params = [tenant_id]
            if service is not None:
                query += " AND service = ?"
                params.append(parse_service(service).value)
            if active_only:
                query += " AND is_active = ?"
                params.append(True)
            query += " ORDER BY effective_from DESC, created_at DESC"
            return [TenantPricing.from_row(r)
                    for r in conn.execute(sql(query, backend), tuple(params)).fetchall()]

        return self.db.read(_list)

    def update_pricing(self, tenant_id: str, pricing_id: str, fields: dict,
                       actor: Optional[str] = None) -> TenantPricing:
        """Issue a new version derived from pricing_id with fields overridden."""
        def _update(conn, backend):
            base = _fetch_pricing(conn, backend, tenant_id, pricing_id)
            merged = base.fields()
            merged.update({k: v for k, v in (fields or {}).items()
                           if k in PRICING_FIELDS and v is not None})
            return set_pricing_tx(conn, backend, tenant_id, base.service, merged, None, actor)

        return self.db.atomic(_update)

    def retire_pricing(self, tenant_id: str, pricing_id: str,
                       actor: Optional[str] = None) -> TenantPricing:
        """Deactivate a row. The row itself is kept for history."""
        def _retire(conn, backend):
            pricing = _fetch_pricing(conn, backend, tenant_id, pricing_id)
            if pricing.is_active:
                now = time.time()
                conn.execute(
                    sql("""UPDATE tenant_pricing SET is_active = ?, effective_until = ?
                           WHERE pricing_id = ?""", backend),
                    (False, now, pricing_id),
                )
                log.info("PRICING retired tenant=%s service=%s id=%s by=%s",
                         tenant_id, pricing.service, pricing_id, actor)
            return _fetch_pricing(conn, backend, tenant_id, pricing_id)

        return self.db.atomic(_retire)

    def list_services(self, tenant_id: str, as_of: Optional[float] = None) -> list:
        as_of = time.time() if as_of is None else as_of

        def _services(conn, backend):
            fetch_tenant(conn, backend, tenant_id)
            out = []
            for service in TenantService:
                pricing = active_pricing_tx(conn, backend, tenant_id, service, as_of)
                out.append({
                    "service": service.value,
                    "active": pricing is not None,
                    "pricing": pricing.to_dict() if pricing else None,
                })
            return out

        return self.db.read(_services)

    def toggle_service(self, tenant_id: str, service, activate: bool,
                       actor: Optional[str] = None) -> dict:
        """Deactivate retires the current row; activate re-issues the latest row."""
        service = parse_service(service)

        def _toggle(conn, backend):
            fetch_tenant(conn, backend, tenant_id)
            now = time.time()
            current = active_pricing_tx(conn, backend, tenant_id, service, now)
            if not activate:
                _end_coverage(conn, backend, tenant_id, service, now)
                if current is not None:
                    log.info("SERVICE deactivated tenant=%s service=%s", tenant_id, service.value)
                return {"service": service.value, "active": False, "pricing": None}

            if current is not None:
                return {"service": service.value, "active": True, "pricing": current.to_dict()}
            row = conn.execute(
                sql("""SELECT * FROM tenant_pricing WHERE tenant_id = ? AND service = ?
                       ORDER BY effective_from DESC, created_at DESC LIMIT 1""", backend),
                (tenant_id, service.value),
            ).fetchone()
            if row is None:
                raise PricingNotFound(
                    f"no pricing history for {service.value}; set pricing first",
                    service=service.value,
                )
            latest = TenantPricing.from_row(row)
            pricing = set_pricing_tx(conn, backend, tenant_id, service, latest.fields(), now, actor)
            log.info("SERVICE activated tenant=%s service=%s", tenant_id, service.value)
            return {"service": service.value, "active": True, "pricing": pricing.to_dict()}

        return self.db.atomic(_toggle)


_catalog = None


def get_pricing_catalog() -> PricingCatalog:
    global _catalog
    if _catalog is None:
        _catalog = PricingCatalog()
    return _catalog
