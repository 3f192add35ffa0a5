# Tenant Billing: Scheduled Jobs
# Two standalone entry points meant for an external scheduler (cron, k8s
# CronJob, systemd timer):
#
#   monthly billing   day 1 of each month, bills the previous month
#   balance check     daily, classifies every tenant's runway
#
# Tenants are processed one at a time. One tenant failing is logged and
# counted, never fatal to the run. Re-running a monthly billing run is safe:
# months that already link an invoice are skipped.

import argparse
import json
import logging
import os
import sys
import time
import uuid
from typing import Callable, Optional

from access import get_access_controller
from billing import get_billing_calculator, json_safe
from db import decode_json, encode_json, get_engine, row_to_dict, sql
from invoices import get_invoice_generator
from usage import get_usage_accumulator, period_label, previous_month_period
from wallet import DEFAULT_CURRENCY

LOG_FILE = os.environ.get("TENANT_BILLING_LOG_FILE", "tenant_billing.log")

log = logging.getLogger("tenant_billing.jobs")


def setup_logging(log_file=None, level=logging.INFO):
    """Console + file logging for the tenant_billing logger tree."""
    log_file = log_file or LOG_FILE
    logger = logging.getLogger("tenant_billing")

    if logger.handlers:
        return logger

    logger.setLevel(level)
    fmt = logging.Formatter(
        "[%(asctime)s] %(levelname)-8s %(message)s", datefmt="%Y-%m-%d %H:%M:%S"
    )

    fh = logging.FileHandler(log_file)
    fh.setLevel(level)
    fh.setFormatter(fmt)
    logger.addHandler(fh)

    ch = logging.StreamHandler()
    ch.setLevel(level)
    ch.setFormatter(fmt)
    logger.addHandler(ch)

    return logger


# ── Job run records ───────────────────────────────────────────────────


def record_job_run(job_type, started_at, counts, results, period=None) -> dict:
    run = {
        "run_id": f"RUN-{uuid.uuid4().hex[:12]}",
        "job_type": job_type,
        "period_start": period[0] if period else None,
        "period_end": period[1] if period else None,
        "started_at": started_at,
        "finished_at": time.time(),
        "counts": counts,
        "results": results,
    }

    def _insert(conn, backend):
        conn.execute(
            sql("""INSERT INTO billing_job_runs
                   (run_id, job_type, period_start, period_end, started_at, finished_at,
                    counts, results)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?)""", backend),
            (run["run_id"], job_type, run["period_start"], run["period_end"], started_at,
             run["finished_at"], encode_json(counts, backend), encode_json(results, backend)),
        )

    get_engine().atomic(_insert)
    run["duration_sec"] = round(run["finished_at"] - started_at, 3)
    return run


def list_job_runs(job_type: Optional[str] = None, limit: int = 20) -> list:
    def _list(conn, backend):
        query = "SELECT * FROM billing_job_runs"
        params = ()
        if job_type:
            query += " WHERE job_type = ?"
            params = (job_type,)
        query += " ORDER BY started_at DESC LIMIT ?"
        rows = conn.execute(sql(query, backend), params + (limit,)).fetchall()
        runs = []
        for row in rows:
            run = row_to_dict(row)
            run["counts"] = decode_json(run["counts"])
            run["results"] = decode_json(run["results"])
            runs.append(run)
        return runs

    return get_engine().read(_list)


def _summarize(run: dict):
    summary = {k: run[k] for k in ("run_id", "job_type", "counts", "duration_sec")}
    if run["period_start"] is not None:
        summary["period"] = period_label(run["period_start"])
    log.info("JOB SUMMARY %s", json.dumps(summary, sort_keys=True))


# ── Monthly billing ───────────────────────────────────────────────────


def run_monthly_billing(now=None, tenant_ids=None) -> dict:
    """Invoice every tenant for the month before `now`."""
    started = time.time()
    period_start, period_end = previous_month_period(now)
    period = period_label(period_start)
    log.info("MONTHLY BILLING start period=%s", period)

    access = get_access_controller()
    generator = get_invoice_generator()
    usage_acc = get_usage_accumulator()

    counts = {"total": 0, "invoiced": 0, "paid": 0, "past_due": 0, "no_charge": 0,
              "locked_skipped": 0, "already_billed": 0, "errored": 0}
    results = []

    tenants = access.list_tenants()
    if tenant_ids is not None:
        wanted = set(tenant_ids)
        tenants = [t for t in tenants if t["tenant_id"] in wanted]

    for tenant in tenants:
        tenant_id = tenant["tenant_id"]
        counts["total"] += 1
        if tenant["subscription_locked"]:
            counts["locked_skipped"] += 1
            results.append({"tenant_id": tenant_id, "outcome": "locked_skipped"})
            log.info("MONTHLY BILLING skip tenant=%s: locked (%s)",
                     tenant_id, tenant["locked_reason"])
            continue
        try:
            usage = usage_acc.get_usage(tenant_id, period_start)
            if usage is not None and usage["invoice_id"]:
                counts["already_billed"] += 1
                results.append({"tenant_id": tenant_id, "outcome": "already_billed",
                                "invoice_id": usage["invoice_id"]})
                continue

            outcome = generator.generate_monthly_invoice(tenant_id, period_start, period_end)
            if outcome["status"] == "no_charge":
                counts["no_charge"] += 1
                results.append({"tenant_id": tenant_id, "outcome": "no_charge"})
            elif outcome["status"] == "already_invoiced":
                counts["already_billed"] += 1
                results.append({"tenant_id": tenant_id, "outcome": "already_billed",
                                "invoice_id": outcome["invoice"]["invoice_id"]})
            else:
                invoice = outcome["invoice"]
                counts["invoiced"] += 1
                counts["paid" if invoice["status"] == "PAID" else "past_due"] += 1
                results.append({
                    "tenant_id": tenant_id,
                    "outcome": "invoiced",
                    "invoice_id": invoice["invoice_id"],
                    "invoice_status": invoice["status"],
                    "total_amount_minor": invoice["total_amount_minor"],
                    "tenant_locked": outcome["tenant_locked"],
                })
        except Exception as e:
            counts["errored"] += 1
            results.append({"tenant_id": tenant_id, "outcome": "errored",
                            "error": f"{type(e).__name__}: {e}"})
            log.exception("MONTHLY BILLING failed tenant=%s period=%s", tenant_id, period)

    run = record_job_run("monthly_billing", started, counts, results, (period_start, period_end))
    _summarize(run)
    return run


# ── Daily balance check ───────────────────────────────────────────────


def log_notifier(report: dict):
    """Default notification hook: a warning line per tenant that needs attention."""
    log.warning(
        "BALANCE %s tenant=%s available=%d monthly=%d months_remaining=%s currency=%s",
        report["status"].upper(), report["tenant_id"], report["available_balance_minor"],
        report["monthly_charge_minor"], report["months_remaining"],
        report.get("currency", DEFAULT_CURRENCY),
    )


def run_balance_check(now=None, notifier: Optional[Callable[[dict], None]] = None) -> dict:
    """Classify every tenant's runway. Does not touch the ledger or lock anyone."""
    started = time.time()
    notifier = notifier or log_notifier
    calculator = get_billing_calculator()

    counts = {"total": 0, "healthy": 0, "low": 0, "critical": 0, "insufficient": 0,
              "errored": 0, "notified": 0}
    results = []

    for tenant in get_access_controller().list_tenants():
        tenant_id = tenant["tenant_id"]
        counts["total"] += 1
        try:
            report = json_safe(calculator.check_balance(tenant_id, now))
        except Exception as e:
            counts["errored"] += 1
            results.append({"tenant_id": tenant_id, "status": "errored",
                            "error": f"{type(e).__name__}: {e}"})
            log.exception("BALANCE CHECK failed tenant=%s", tenant_id)
            continue

        report["subscription_locked"] = tenant["subscription_locked"]
        counts[report["status"]] += 1
        results.append(report)
        if report["status"] != "healthy":
            try:
                notifier(report)
                counts["notified"] += 1
            except Exception:
                log.exception("BALANCE CHECK notifier failed tenant=%s", tenant_id)

    run = record_job_run("balance_check", started, counts, results)
    _summarize(run)
    return run


# ── Entry points ──────────────────────────────────────────────────────


def monthly_billing_main():
    setup_logging()
    run = run_monthly_billing()
    return 1 if run["counts"]["errored"] else 0


def balance_check_main():
    setup_logging()
    run = run_balance_check()
    return 1 if run["counts"]["errored"] else 0


def main(argv=None):
    parser = argparse.ArgumentParser(description="Tenant billing scheduled jobs")
    parser.add_argument("job", choices=["monthly-billing", "balance-check"])
    args = parser.parse_args(argv)
    if args.job == "monthly-billing":
        return monthly_billing_main()
    return balance_check_main()


if __name__ == "__main__":
    sys.exit(main())
