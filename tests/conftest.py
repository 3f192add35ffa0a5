"""Shared pytest configuration for the tenant billing test suite.

Puts the project root on sys.path so tests import the flat modules
(wallet, billing, api, ...) directly, and gives every test its own
SQLite file.
"""

import os
import sys
from pathlib import Path

import pytest

# Add project root to sys.path so `import wallet`, `from api import app`, etc. work
PROJECT_ROOT = str(Path(__file__).resolve().parent.parent)
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

os.environ["TENANT_BILLING_DB_BACKEND"] = "sqlite"
os.environ.setdefault("TENANT_BILLING_ENV", "test")
os.environ.setdefault("TENANT_BILLING_API_TOKEN", "")


@pytest.fixture(autouse=True)
def isolated_db(tmp_path, monkeypatch):
    """Fresh SQLite database per test."""
    db_file = str(tmp_path / "tenant_billing_test.db")
    monkeypatch.setenv("TENANT_BILLING_DB_PATH", db_file)
    import db as db_mod
    db_mod.reset_engine()
    yield db_file
    db_mod.reset_engine()


@pytest.fixture
def tenant():
    """A registered, unlocked tenant."""
    from access import get_access_controller
    return get_access_controller().register_tenant("tenant-a", "Daily Herald")


@pytest.fixture
def epaper_pricing(tenant):
    """EPAPER at 200000 paise/page, minimum 8 pages, effective since the epoch."""
    from pricing import get_pricing_catalog
    return get_pricing_catalog().set_pricing(
        tenant["tenant_id"],
        "EPAPER",
        {"price_per_unit_minor": 200000, "min_units_per_period": 8},
        effective_from=0.0,
    )
