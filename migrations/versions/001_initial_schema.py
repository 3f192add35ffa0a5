"""Initial tenant billing schema

Revision ID: 001
Revises: None
Create Date: 2026-01-02
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Referenced tenant rows; subscription_locked is owned by the lock controller
    op.create_table(
        "tenants",
        sa.Column("tenant_id", sa.Text(), primary_key=True),
        sa.Column("name", sa.Text(), server_default=""),
        sa.Column("subscription_locked", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("locked_reason", sa.Text(), nullable=True),
        sa.Column("locked_at", sa.Float(), nullable=True),
        sa.Column("created_at", sa.Float(), nullable=False),
        sa.Column("updated_at", sa.Float(), nullable=False),
    )

    # One wallet per tenant; the checks mirror the ledger invariant
    op.create_table(
        "wallets",
        sa.Column("wallet_id", sa.Text(), primary_key=True),
        sa.Column("tenant_id", sa.Text(), sa.ForeignKey("tenants.tenant_id"),
                  nullable=False, unique=True),
        sa.Column("balance_minor", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("locked_balance_minor", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("currency", sa.Text(), nullable=False, server_default="INR"),
        sa.Column("created_at", sa.Float(), nullable=False),
        sa.Column("updated_at", sa.Float(), nullable=False),
        sa.CheckConstraint("balance_minor >= 0", name="ck_wallet_balance_non_negative"),
        sa.CheckConstraint("locked_balance_minor >= 0", name="ck_wallet_locked_non_negative"),
        sa.CheckConstraint("locked_balance_minor <= balance_minor", name="ck_wallet_locked_le_balance"),
    )

    # Append-only ledger; seq gives a stable order for equal timestamps
    op.create_table(
        "wallet_transactions",
        sa.Column("seq", sa.BigInteger(), sa.Identity(), primary_key=True),
        sa.Column("tx_id", sa.Text(), nullable=False, unique=True),
        sa.Column("wallet_id", sa.Text(), sa.ForeignKey("wallets.wallet_id"), nullable=False),
        sa.Column("tenant_id", sa.Text(), nullable=False),
        sa.Column("tx_type", sa.Text(), nullable=False),
        sa.Column("amount_minor", sa.BigInteger(), nullable=False),
        sa.Column("balance_after_minor", sa.BigInteger(), nullable=False),
        sa.Column("description", sa.Text(), nullable=False, server_default=""),
        sa.Column("reference_type", sa.Text(), nullable=True),
        sa.Column("reference_id", sa.Text(), nullable=True),
        sa.Column("meta", JSONB(), nullable=True),
        sa.Column("created_by", sa.Text(), nullable=True),
        sa.Column("created_at", sa.Float(), nullable=False),
    )
    op.create_index("idx_wallet_tx_wallet", "wallet_transactions", ["wallet_id", "seq"])
    op.create_index("idx_wallet_tx_tenant_type", "wallet_transactions", ["tenant_id", "tx_type"])

    # Versioned pricing; rows are deactivated, never updated in place
    op.create_table(
        "tenant_pricing",
        sa.Column("pricing_id", sa.Text(), primary_key=True),
        sa.Column("tenant_id", sa.Text(), sa.ForeignKey("tenants.tenant_id"), nullable=False),
        sa.Column("service", sa.Text(), nullable=False),
        sa.Column("currency", sa.Text(), nullable=False, server_default="INR"),
        sa.Column("price_per_unit_minor", sa.BigInteger(), nullable=True),
        sa.Column("monthly_fee_minor", sa.BigInteger(), nullable=True),
        sa.Column("min_units_per_period", sa.Integer(), nullable=True),
        sa.Column("discount_6_month_percent", sa.Float(), nullable=True),
        sa.Column("discount_12_month_percent", sa.Float(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("effective_from", sa.Float(), nullable=False),
        sa.Column("effective_until", sa.Float(), nullable=True),
        sa.Column("created_by", sa.Text(), nullable=True),
        sa.Column("created_at", sa.Float(), nullable=False),
    )
    op.create_index(
        "idx_pricing_lookup",
        "tenant_pricing",
        ["tenant_id", "service", "is_active", "effective_from"],
    )

    op.create_table(
        "tenant_usage_monthly",
        sa.Column("usage_id", sa.Text(), primary_key=True),
        sa.Column("tenant_id", sa.Text(), sa.ForeignKey("tenants.tenant_id"), nullable=False),
        sa.Column("period_start", sa.Float(), nullable=False),
        sa.Column("period_end", sa.Float(), nullable=False),
        sa.Column("epaper_page_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("epaper_billed_pages", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("epaper_charge_minor", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("news_website_charge_minor", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("print_charge_minor", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("custom_service_charge_minor", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("other_charges_minor", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("total_charge_minor", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("invoice_id", sa.Text(), nullable=True),
        sa.Column("created_at", sa.Float(), nullable=False),
        sa.Column("updated_at", sa.Float(), nullable=False),
        sa.UniqueConstraint("tenant_id", "period_start", name="uq_usage_tenant_period"),
    )

    op.create_table(
        "billing_invoices",
        sa.Column("invoice_id", sa.Text(), primary_key=True),
        sa.Column("tenant_id", sa.Text(), sa.ForeignKey("tenants.tenant_id"), nullable=False),
        sa.Column("kind", sa.Text(), nullable=False, server_default="SUBSCRIPTION"),
        sa.Column("status", sa.Text(), nullable=False, server_default="DRAFT"),
        sa.Column("currency", sa.Text(), nullable=False, server_default="INR"),
        sa.Column("period_start", sa.Float(), nullable=False),
        sa.Column("period_end", sa.Float(), nullable=False),
        sa.Column("total_amount_minor", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("paid_at", sa.Float(), nullable=True),
        sa.Column("created_at", sa.Float(), nullable=False),
        sa.Column("updated_at", sa.Float(), nullable=False),
        sa.UniqueConstraint("tenant_id", "kind", "period_start", name="uq_invoice_tenant_period"),
    )
    op.create_index("idx_invoices_tenant", "billing_invoices", ["tenant_id", "created_at"])
    op.create_index("idx_invoices_status", "billing_invoices", ["status"])

    op.create_table(
        "billing_invoice_line_items",
        sa.Column("line_item_id", sa.Text(), primary_key=True),
        sa.Column("invoice_id", sa.Text(), sa.ForeignKey("billing_invoices.invoice_id"),
                  nullable=False),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("component", sa.Text(), nullable=False),
        sa.Column("description", sa.Text(), nullable=False, server_default=""),
        sa.Column("quantity", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("unit_amount_minor", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("amount_minor", sa.BigInteger(), nullable=False, server_default="0"),
    )
    op.create_index("idx_line_items_invoice", "billing_invoice_line_items",
                    ["invoice_id", "position"])

    # Scheduled job run history
    op.create_table(
        "billing_job_runs",
        sa.Column("run_id", sa.Text(), primary_key=True),
        sa.Column("job_type", sa.Text(), nullable=False),
        sa.Column("period_start", sa.Float(), nullable=True),
        sa.Column("period_end", sa.Float(), nullable=True),
        sa.Column("started_at", sa.Float(), nullable=False),
        sa.Column("finished_at", sa.Float(), nullable=False),
        sa.Column("counts", JSONB(), nullable=False),
        sa.Column("results", JSONB(), nullable=False),
    )
    op.create_index("idx_job_runs_type", "billing_job_runs",
                    ["job_type", sa.text("started_at DESC")])


def downgrade() -> None:
    op.drop_index("idx_job_runs_type")
    op.drop_table("billing_job_runs")
    op.drop_index("idx_line_items_invoice")
    op.drop_table("billing_invoice_line_items")
    op.drop_index("idx_invoices_status")
    op.drop_index("idx_invoices_tenant")
    op.drop_table("billing_invoices")
    op.drop_table("tenant_usage_monthly")
    op.drop_index("idx_pricing_lookup")
    op.drop_table("tenant_pricing")
    op.drop_index("idx_wallet_tx_tenant_type")
    op.drop_index("idx_wallet_tx_wallet")
    op.drop_table("wallet_transactions")
    op.drop_table("wallets")
    op.drop_table("tenants")
