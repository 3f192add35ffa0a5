# Tenant Billing: Access Lock Controller
# Owns the tenant's subscription_locked flag. Nothing else in the system
# writes it: the wallet clears it on a successful top-up and the invoice
# generator sets it when a period cannot be collected.
#
# The *_tx functions take an open (conn, backend) so the ledger and the
# invoice generator can flip the flag inside their own transaction.

import logging
import time

from db import for_update, get_engine, row_to_dict, sql
from errors import InvalidRequest, TenantLocked, TenantNotFound

log = logging.getLogger("tenant_billing.access")


def _tenant_view(row) -> dict:
    tenant = row_to_dict(row)
    tenant["subscription_locked"] = bool(tenant["subscription_locked"])
    return tenant


def fetch_tenant(conn, backend, tenant_id, lock=False) -> dict:
    """Load a tenant row or raise TenantNotFound."""
    query = "SELECT * FROM tenants WHERE tenant_id = ?"
    if lock:
        query += for_update(backend)
    row = conn.execute(sql(query, backend), (tenant_id,)).fetchone()
    if row is None:
        raise TenantNotFound(f"tenant {tenant_id} not found", tenant_id=tenant_id)
    return _tenant_view(row)


def lock_tenant_tx(conn, backend, tenant_id, reason) -> dict:
    fetch_tenant(conn, backend, tenant_id, lock=True)
    now = time.time()
    conn.execute(
        sql("""UPDATE tenants
               SET subscription_locked = ?, locked_reason = ?, locked_at = ?, updated_at = ?
               WHERE tenant_id = ?""", backend),
        (True, reason, now, now, tenant_id),
    )
    log.warning("LOCK tenant=%s reason=%s", tenant_id, reason)
    return fetch_tenant(conn, backend, tenant_id)


def unlock_tenant_tx(conn, backend, tenant_id) -> dict:
    tenant = fetch_tenant(conn, backend, tenant_id, lock=True)
    conn.execute(
        sql("""UPDATE tenants
               SET subscription_locked = ?, locked_reason = NULL, locked_at = NULL, updated_at = ?
               WHERE tenant_id = ?""", backend),
        (False, time.time(), tenant_id),
    )
    if tenant["subscription_locked"]:
        log.warning("UNLOCK tenant=%s (was: %s)", tenant_id, tenant["locked_reason"])
    return fetch_tenant(conn, backend, tenant_id)


class AccessLockController:
    """Tenant registry boundary plus the lock/unlock flag."""

    def __init__(self, db=None):
        self._db = db

    @property
    def db(self):
        return self._db or get_engine()

    # ── Tenant registry ───────────────────────────────────────────────

    def register_tenant(self, tenant_id: str, name: str = "") -> dict:
        """Create the tenant row, or rename it if it already exists."""
        if not tenant_id or not str(tenant_id).strip():
            raise InvalidRequest("tenant_id is required")

        def _upsert(conn, backend):
            now = time.time()
            conn.execute(
                sql("""INSERT INTO tenants
                       (tenant_id, name, subscription_locked, created_at, updated_at)
                       VALUES (?, ?, ?, ?, ?)
                       ON CONFLICT (tenant_id) DO UPDATE
                       SET name = excluded.name, updated_at = excluded.updated_at""", backend),
                (tenant_id, name or "", False, now, now),
            )
            return fetch_tenant(conn, backend, tenant_id)

        tenant = self.db.atomic(_upsert)
        log.info("TENANT registered tenant=%s name=%r", tenant_id, tenant["name"])
        return tenant

    def get_tenant(self, tenant_id: str) -> dict:
        return self.db.read(fetch_tenant, tenant_id)

    def list_tenants(self, locked=None) -> list:
        def _list(conn, backend):
            query = "SELECT * FROM tenants"
            params = ()
            if locked is not None:
                query += " WHERE subscription_locked = ?"
                params = (bool(locked),)
            query += " ORDER BY created_at, tenant_id"
            return [_tenant_view(r) for r in conn.execute(sql(query, backend), params).fetchall()]

        return self.db.read(_list)

    # ── Lock flag ─────────────────────────────────────────────────────

    def lock(self, tenant_id: str, reason: str) -> dict:
        """Lock the tenant. Re-locking overwrites reason and timestamp."""
        return self.db.atomic(lock_tenant_tx, tenant_id, reason or "locked by operator")

    def unlock(self, tenant_id: str) -> dict:
        return self.db.atomic(unlock_tenant_tx, tenant_id)

    def is_locked(self, tenant_id: str) -> bool:
        return self.get_tenant(tenant_id)["subscription_locked"]

    def ensure_unlocked(self, tenant_id: str) -> dict:
        """Guard for tenant-facing capabilities. Raises TenantLocked."""
        tenant = self.get_tenant(tenant_id)
        if tenant["subscription_locked"]:
            raise TenantLocked(
                tenant["locked_reason"] or "subscription locked",
                tenant_id=tenant_id,
                locked_at=tenant["locked_at"],
            )
        return tenant


_controller = None


def get_access_controller() -> AccessLockController:
    global _controller
    if _controller is None:
        _controller = AccessLockController()
    return _controller
