# Tenant Billing: Wallet Ledger
# The only code that writes wallets.balance_minor / locked_balance_minor.
#
# Every mutation is one unit of work (db.Database.atomic): read the wallet
# row, validate, write the wallet row, append an immutable
# wallet_transactions row. Either both writes commit or neither does.
#
# Signed amounts in the log:
#   CREDIT / REFUND        +amount
#   DEBIT                  -amount
#   ADJUSTMENT             signed as given
#   LOCK                   +amount   (moves funds into locked_balance)
#   UNLOCK                 -released (moves funds out of locked_balance)
# LOCK and UNLOCK leave balance_minor unchanged, so their balance_after
# equals the balance at the time.

import logging
import os
import time
import uuid
from enum import Enum
from typing import Optional

from access import fetch_tenant, unlock_tenant_tx
from db import decode_json, encode_json, for_update, get_engine, row_to_dict, sql
from errors import (
    InsufficientAvailableBalance,
    InsufficientBalance,
    InvalidAmount,
    InvalidRequest,
    WouldGoNegative,
)

log = logging.getLogger("tenant_billing.wallet")

DEFAULT_CURRENCY = os.environ.get("TENANT_BILLING_CURRENCY", "INR")

MAX_PAGE_SIZE = 100


class TxType(str, Enum):
    CREDIT = "CREDIT"
    DEBIT = "DEBIT"
    LOCK = "LOCK"
    UNLOCK = "UNLOCK"
    REFUND = "REFUND"
    ADJUSTMENT = "ADJUSTMENT"


# Types that move balance_minor; LOCK/UNLOCK only move locked_balance_minor.
BALANCE_TYPES = (TxType.CREDIT, TxType.DEBIT, TxType.REFUND, TxType.ADJUSTMENT)
LOCK_TYPES = (TxType.LOCK, TxType.UNLOCK)


def validate_amount(amount, allow_negative=False) -> int:
    """Money is an integer count of minor units. Floats and bools are rejected."""
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise InvalidAmount(f"amount must be an integer number of minor units, got {amount!r}")
    if allow_negative:
        if amount == 0:
            raise InvalidAmount("adjustment amount must be non-zero")
    elif amount <= 0:
        raise InvalidAmount(f"amount must be positive, got {amount}")
    return amount


def balance_view(wallet: dict) -> dict:
    return {
        "tenant_id": wallet["tenant_id"],
        "wallet_id": wallet["wallet_id"],
        "balance_minor": wallet["balance_minor"],
        "locked_balance_minor": wallet["locked_balance_minor"],
        "available_balance_minor": wallet["balance_minor"] - wallet["locked_balance_minor"],
        "currency": wallet["currency"],
    }


def _tx_view(row) -> dict:
    tx = row_to_dict(row)
    tx["meta"] = decode_json(tx.get("meta"))
    tx.pop("seq", None)
    return tx


# ── Connection-scoped internals ───────────────────────────────────────


def load_wallet(conn, backend, tenant_id) -> dict:
    """Fetch the tenant's wallet row (row-locked on Postgres), creating it at zero."""
    query = "SELECT * FROM wallets WHERE tenant_id = ?" + for_update(backend)
    row = conn.execute(sql(query, backend), (tenant_id,)).fetchone()
    if row is not None:
        return row_to_dict(row)

    fetch_tenant(conn, backend, tenant_id)
    now = time.time()
    conn.execute(
        sql("""INSERT INTO wallets
               (wallet_id, tenant_id, balance_minor, locked_balance_minor, currency,
                created_at, updated_at)
               VALUES (?, ?, 0, 0, ?, ?, ?)
               ON CONFLICT (tenant_id) DO NOTHING""", backend),
        (f"WAL-{uuid.uuid4().hex[:12]}", tenant_id, DEFAULT_CURRENCY, now, now),
    )
    log.info("WALLET created tenant=%s currency=%s", tenant_id, DEFAULT_CURRENCY)
    row = conn.execute(sql(query, backend), (tenant_id,)).fetchone()
    return row_to_dict(row)


def _write_wallet(conn, backend, wallet, balance, locked):
    conn.execute(
        sql("""UPDATE wallets SET balance_minor = ?, locked_balance_minor = ?, updated_at = ?
               WHERE wallet_id = ?""", backend),
        (balance, locked, time.time(), wallet["wallet_id"]),
    )
    wallet["balance_minor"] = balance
    wallet["locked_balance_minor"] = locked


def _append_tx(conn, backend, wallet, tx_type, amount, description,
               reference_type=None, reference_id=None, meta=None, actor=None) -> dict:
    tx = {
        "tx_id": f"TX-{uuid.uuid4().hex[:16]}",
        "wallet_id": wallet["wallet_id"],
        "tenant_id": wallet["tenant_id"],
        "tx_type": TxType(tx_type).value,
        "amount_minor": amount,
        "balance_after_minor": wallet["balance_minor"],
        "description": description or "",
        "reference_type": reference_type,
        "reference_id": reference_id,
        "meta": meta,
        "created_by": actor,
        "created_at": time.time(),
    }
    conn.execute(
        sql("""INSERT INTO wallet_transactions
               (tx_id, wallet_id, tenant_id, tx_type, amount_minor, balance_after_minor,
                description, reference_type, reference_id, meta, created_by, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""", backend),
        (tx["tx_id"], tx["wallet_id"], tx["tenant_id"], tx["tx_type"], tx["amount_minor"],
         tx["balance_after_minor"], tx["description"], tx["reference_type"],
         tx["reference_id"], encode_json(meta, backend), tx["created_by"], tx["created_at"]),
    )
    return tx


def _result(wallet, tx, **extra) -> dict:
    out = {"transaction": tx, "wallet": balance_view(wallet)}
    out.update(extra)
    return out


def credit_tx(conn, backend, tenant_id, amount, description="", reference_type="TOPUP",
              reference_id=None, actor=None, meta=None, tx_type=TxType.CREDIT) -> dict:
    """Increase the balance. A locked tenant is unlocked in the same transaction."""
    validate_amount(amount)
    wallet = load_wallet(conn, backend, tenant_id)
    _write_wallet(conn, backend, wallet, wallet["balance_minor"] + amount,
                  wallet["locked_balance_minor"])
    tx = _append_tx(conn, backend, wallet, tx_type, amount, description,
                    reference_type, reference_id, meta, actor)

    tenant_unlocked = False
    if fetch_tenant(conn, backend, tenant_id)["subscription_locked"]:
        unlock_tenant_tx(conn, backend, tenant_id)
        tenant_unlocked = True

    log.info("%s tenant=%s +%d balance=%d ref=%s%s", tx["tx_type"], tenant_id, amount,
             wallet["balance_minor"], reference_id, " (tenant unlocked)" if tenant_unlocked else "")
    return _result(wallet, tx, tenant_unlocked=tenant_unlocked)


def debit_tx(conn, backend, tenant_id, amount, description="", reference_type=None,
             reference_id=None, actor=None, meta=None) -> dict:
    """Decrease the balance. Only unlocked funds can be debited."""
    validate_amount(amount)
    wallet = load_wallet(conn, backend, tenant_id)
    available = wallet["balance_minor"] - wallet["locked_balance_minor"]
    if available < amount:
        raise InsufficientBalance(
            f"insufficient balance: required {amount}, available {available}",
            tenant_id=tenant_id,
            required_minor=amount,
            available_minor=available,
        )
    _write_wallet(conn, backend, wallet, wallet["balance_minor"] - amount,
                  wallet["locked_balance_minor"])
    tx = _append_tx(conn, backend, wallet, TxType.DEBIT, -amount, description,
                    reference_type, reference_id, meta, actor)
    log.info("DEBIT tenant=%s -%d balance=%d ref=%s:%s", tenant_id, amount,
             wallet["balance_minor"], reference_type, reference_id)
    return _result(wallet, tx)


def lock_funds_tx(conn, backend, tenant_id, amount, reference_id=None,
                  description="", actor=None) -> dict:
    validate_amount(amount)
    wallet = load_wallet(conn, backend, tenant_id)
    available = wallet["balance_minor"] - wallet["locked_balance_minor"]
    if available < amount:
        raise InsufficientAvailableBalance(
            f"cannot lock {amount}: only {available} available",
            tenant_id=tenant_id,
            required_minor=amount,
            available_minor=available,
        )
    _write_wallet(conn, backend, wallet, wallet["balance_minor"],
                  wallet["locked_balance_minor"] + amount)
    tx = _append_tx(conn, backend, wallet, TxType.LOCK, amount,
                    description or f"Locked {amount} funds", "LOCK", reference_id, None, actor)
    log.info("LOCK tenant=%s amount=%d locked=%d", tenant_id, amount,
             wallet["locked_balance_minor"])
    return _result(wallet, tx)


def unlock_funds_tx(conn, backend, tenant_id, amount, reference_id=None,
                    description="", actor=None) -> dict:
    """Release locked funds, clamped so locked_balance never goes below zero."""
    validate_amount(amount)
    wallet = load_wallet(conn, backend, tenant_id)
    released = min(amount, wallet["locked_balance_minor"])
    _write_wallet(conn, backend, wallet, wallet["balance_minor"],
                  wallet["locked_balance_minor"] - released)
    tx = _append_tx(conn, backend, wallet, TxType.UNLOCK, -released,
                    description or f"Released {released} locked funds", "UNLOCK",
                    reference_id, {"requested_minor": amount}, actor)
    log.info("UNLOCK tenant=%s requested=%d released=%d locked=%d", tenant_id, amount,
             released, wallet["locked_balance_minor"])
    return _result(wallet, tx, released_minor=released)


def adjust_tx(conn, backend, tenant_id, amount, description="", actor=None,
              reference_id=None) -> dict:
    validate_amount(amount, allow_negative=True)
    wallet = load_wallet(conn, backend, tenant_id)
    new_balance = wallet["balance_minor"] + amount
    if new_balance < 0:
        raise WouldGoNegative(
            f"adjustment of {amount} would leave balance at {new_balance}",
            tenant_id=tenant_id,
            balance_minor=wallet["balance_minor"],
        )
    if new_balance < wallet["locked_balance_minor"]:
        raise WouldGoNegative(
            f"adjustment of {amount} would leave available balance at "
            f"{new_balance - wallet['locked_balance_minor']}",
            tenant_id=tenant_id,
            balance_minor=wallet["balance_minor"],
            locked_balance_minor=wallet["locked_balance_minor"],
        )
    _write_wallet(conn, backend, wallet, new_balance, wallet["locked_balance_minor"])
    tx = _append_tx(conn, backend, wallet, TxType.ADJUSTMENT, amount, description,
                    "ADJUSTMENT", reference_id, None, actor)
    log.info("ADJUSTMENT tenant=%s %+d balance=%d by=%s", tenant_id, amount, new_balance, actor)
    return _result(wallet, tx)


# ── Ledger facade ─────────────────────────────────────────────────────


class WalletLedger:
    """Tenant wallets: balance, locked funds, and the append-only transaction log."""

    def __init__(self, db=None):
        self._db = db

    @property
    def db(self):
        return self._db or get_engine()

    def credit(self, tenant_id: str, amount_minor: int, description: str = "",
               reference_id: Optional[str] = None, actor: Optional[str] = None,
               meta: Optional[dict] = None, reference_type: str = "TOPUP") -> dict:
        return self.db.atomic(credit_tx, tenant_id, amount_minor, description,
                              reference_type, reference_id, actor, meta)

    def debit(self, tenant_id: str, amount_minor: int, description: str = "",
              reference_type: Optional[str] = None, reference_id: Optional[str] = None,
              actor: Optional[str] = None) -> dict:
        return self.db.atomic(debit_tx, tenant_id, amount_minor, description,
                              reference_type, reference_id, actor)

    def lock_funds(self, tenant_id: str, amount_minor: int,
                   reference_id: Optional[str] = None, actor: Optional[str] = None) -> dict:
        return self.db.atomic(lock_funds_tx, tenant_id, amount_minor, reference_id, "", actor)

    def unlock_funds(self, tenant_id: str, amount_minor: int,
                     reference_id: Optional[str] = None, actor: Optional[str] = None) -> dict:
        return self.db.atomic(unlock_funds_tx, tenant_id, amount_minor, reference_id, "", actor)

    def adjust(self, tenant_id: str, amount_minor: int, description: str = "",
               actor: Optional[str] = None) -> dict:
        """Operator correction. Signed; rejected if the balance would drop below zero."""
        return self.db.atomic(adjust_tx, tenant_id, amount_minor, description, actor)

    def refund(self, tenant_id: str, amount_minor: int, description: str = "",
               reference_id: Optional[str] = None, actor: Optional[str] = None) -> dict:
        """A credit recorded as REFUND. Auto-unlocks like any other credit."""
        return self.db.atomic(credit_tx, tenant_id, amount_minor, description or "Refund",
                              "REFUND", reference_id, actor, None, TxType.REFUND)

    def get_balance(self, tenant_id: str) -> dict:
        """Balance, locked and available amounts. Creates a zero wallet on first access."""
        def _read(conn, backend):
            row = conn.execute(sql("SELECT * FROM wallets WHERE tenant_id = ?", backend),
                               (tenant_id,)).fetchone()
            return row_to_dict(row)

        wallet = self.db.read(_read)
        if wallet is None:
            wallet = self.db.atomic(load_wallet, tenant_id)
        return balance_view(wallet)

    def list_transactions(self, tenant_id: str, page: int = 1, page_size: int = 20,
                          tx_type: Optional[str] = None) -> dict:
        """Newest first. Page numbers start at 1."""
        page = max(1, int(page))
        page_size = min(MAX_PAGE_SIZE, max(1, int(page_size)))
        if tx_type is not None:
            try:
                tx_type = TxType(str(getattr(tx_type, "value", tx_type)).upper()).value
            except ValueError:
                raise InvalidRequest(f"unknown transaction type {tx_type!r}") from None

        def _list(conn, backend):
            fetch_tenant(conn, backend, tenant_id)
            where = "WHERE tenant_id = ?"
            params = [tenant_id]
            if tx_type:
                where += " AND tx_type = ?"
                params.append(tx_type)
            total = conn.execute(
                sql(f"SELECT COUNT(*) AS n FROM wallet_transactions {where}", backend),
                tuple(params),
            ).fetchone()["n"]
            rows = conn.execute(
                sql(f"""SELECT * FROM wallet_transactions {where}
                        ORDER BY seq DESC LIMIT ? OFFSET ?""", backend),
                tuple(params) + (page_size, (page - 1) * page_size),
            ).fetchall()
            return total, [_tx_view(r) for r in rows]

        total, items = self.db.read(_list)
        return {
            "transactions": items,
            "pagination": {
                "page": page,
                "page_size": page_size,
                "total": total,
                "total_pages": (total + page_size - 1) // page_size,
            },
        }

    def reconcile(self, tenant_id: str) -> dict:
        """Rebuild balance and locked balance from the log and compare with the wallet row."""
        wallet = self.get_balance(tenant_id)

        def _sums(conn, backend):
            rows = conn.execute(
                sql("""SELECT tx_type, COALESCE(SUM(amount_minor), 0) AS total, COUNT(*) AS n
                       FROM wallet_transactions WHERE wallet_id = ? GROUP BY tx_type""", backend),
                (wallet["wallet_id"],),
            ).fetchall()
            last = conn.execute(
                sql("""SELECT balance_after_minor FROM wallet_transactions
                       WHERE wallet_id = ? ORDER BY seq DESC LIMIT 1""", backend),
                (wallet["wallet_id"],),
            ).fetchone()
            return ({r["tx_type"]: (int(r["total"]), int(r["n"])) for r in rows},
                    last["balance_after_minor"] if last else 0)

        sums, last_balance_after = self.db.read(_sums)
        ledger_balance = sum(sums.get(t.value, (0, 0))[0] for t in BALANCE_TYPES)
        ledger_locked = sum(sums.get(t.value, (0, 0))[0] for t in LOCK_TYPES)
        report = {
            "tenant_id": tenant_id,
            "balance_minor": wallet["balance_minor"],
            "ledger_balance_minor": ledger_balance,
            "drift_minor": wallet["balance_minor"] - ledger_balance,
            "locked_balance_minor": wallet["locked_balance_minor"],
            "ledger_locked_minor": ledger_locked,
            "locked_drift_minor": wallet["locked_balance_minor"] - ledger_locked,
            "last_balance_after_minor": last_balance_after,
            "transaction_count": sum(n for _, n in sums.values()),
        }
        report["consistent"] = (
            report["drift_minor"] == 0
            and report["locked_drift_minor"] == 0
            and last_balance_after == wallet["balance_minor"]
        )
        if not report["consistent"]:
            log.error("RECONCILE drift tenant=%s %s", tenant_id, report)
        return report


_ledger = None


def get_wallet_ledger() -> WalletLedger:
    global _ledger
    if _ledger is None:
        _ledger = WalletLedger()
    return _ledger
