"""Billing schema: wallets, usage, recharges, invoices, pricing, outbox

Revision ID: 001
Revises: None
Create Date: 2026-10-19
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

# Fixed-point money; quantities keep whatever precision the caller sent
MONEY = sa.Numeric(20, 4)


def upgrade() -> None:
    op.create_table(
        "company_billing",
        sa.Column("company_id", sa.Text(), primary_key=True),
        sa.Column("billing_status", sa.Text(), nullable=False, server_default="trial"),
        sa.Column("wallet_balance", MONEY, nullable=False, server_default="0"),
        sa.Column("current_month_spent", MONEY, nullable=False, server_default="0"),
        sa.Column("total_spent", MONEY, nullable=False, server_default="0"),
        sa.Column("current_month_start", sa.Float(), nullable=False),
        sa.Column("monthly_spend_cap", MONEY, nullable=True),
        sa.Column("auto_recharge_enabled", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("auto_recharge_threshold", MONEY, nullable=False, server_default="0"),
        sa.Column("auto_recharge_amount", MONEY, nullable=False, server_default="0"),
        sa.Column("payment_provider", sa.Text(), nullable=True),
        sa.Column("payment_method_id", sa.Text(), nullable=True),
        sa.Column("payment_method_last4", sa.Text(), nullable=True),
        sa.Column("payment_method_brand", sa.Text(), nullable=True),
        sa.Column("payment_method_exp", sa.Text(), nullable=True),
        sa.Column("recharge_in_flight", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("past_due_since", sa.Float(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.Float(), nullable=False),
        sa.Column("updated_at", sa.Float(), nullable=False),
    )
    op.create_index("idx_billing_status", "company_billing", ["billing_status"])

    op.create_table(
        "usage_records",
        sa.Column("id", sa.Text(), primary_key=True),
        sa.Column("company_id", sa.Text(), nullable=False),
        sa.Column("job_id", sa.Text(), nullable=True),
        sa.Column("category", sa.Text(), nullable=False),
        sa.Column("raw_quantity", sa.Numeric(), nullable=False),
        sa.Column("base_cost", MONEY, nullable=False),
        sa.Column("margin_percent", sa.Numeric(), nullable=False),
        sa.Column("final_cost", MONEY, nullable=False),
        sa.Column("idempotency_key", sa.Text(), nullable=True),
        sa.Column("created_at", sa.Float(), nullable=False),
    )
    op.create_index(
        "uq_usage_idempotency", "usage_records",
        ["company_id", "idempotency_key"], unique=True,
    )
    op.create_index("idx_usage_company_time", "usage_records", ["company_id", "created_at"])
    op.create_index("idx_usage_company_job", "usage_records", ["company_id", "job_id"])

    op.create_table(
        "wallet_transactions",
        sa.Column("tx_id", sa.Text(), primary_key=True),
        sa.Column("company_id", sa.Text(), nullable=False),
        sa.Column("tx_type", sa.Text(), nullable=False),
        sa.Column("amount", MONEY, nullable=False),
        sa.Column("balance_before", MONEY, nullable=False),
        sa.Column("balance_after", MONEY, nullable=False),
        sa.Column("description", sa.Text(), server_default=""),
        sa.Column("usage_record_id", sa.Text(), nullable=True),
        sa.Column("recharge_id", sa.Text(), nullable=True),
        sa.Column("created_at", sa.Float(), nullable=False),
    )
    op.create_index("idx_wallet_tx_company", "wallet_transactions", ["company_id", "created_at"])

    op.create_table(
        "recharges",
        sa.Column("recharge_id", sa.Text(), primary_key=True),
        sa.Column("company_id", sa.Text(), nullable=False),
        sa.Column("amount", MONEY, nullable=False),
        sa.Column("reason", sa.Text(), nullable=False),
        sa.Column("status", sa.Text(), nullable=False),
        sa.Column("provider_ref", sa.Text(), nullable=True),
        sa.Column("error", sa.Text(), server_default=""),
        sa.Column("created_at", sa.Float(), nullable=False),
        sa.Column("completed_at", sa.Float(), server_default="0"),
    )
    op.create_index("uq_recharges_provider_ref", "recharges", ["provider_ref"], unique=True)
    op.create_index("idx_recharges_company", "recharges", ["company_id", "created_at"])

    op.create_table(
        "invoices",
        sa.Column("id", sa.Text(), primary_key=True),
        sa.Column("invoice_number", sa.Text(), nullable=False, unique=True),
        sa.Column("company_id", sa.Text(), nullable=False),
        sa.Column("status", sa.Text(), nullable=False, server_default="pending"),
        # JSON-encoded list of line items
        sa.Column("line_items", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("subtotal", MONEY, nullable=False),
        sa.Column("tax_rate", sa.Numeric(), nullable=True),
        sa.Column("tax_amount", MONEY, nullable=False),
        sa.Column("total", MONEY, nullable=False),
        sa.Column("period_start", sa.Float(), nullable=False),
        sa.Column("period_end", sa.Float(), nullable=False),
        sa.Column("description", sa.Text(), server_default=""),
        sa.Column("refunds_invoice_id", sa.Text(), nullable=True),
        sa.Column("created_at", sa.Float(), nullable=False),
        sa.Column("paid_at", sa.Float(), server_default="0"),
    )
    op.create_index("idx_invoices_company", "invoices", ["company_id", "created_at"])
    op.create_index("idx_invoices_status", "invoices", ["status"])

    op.create_table(
        "invoice_sequence",
        sa.Column("name", sa.Text(), primary_key=True),
        sa.Column("value", sa.BigInteger(), nullable=False),
    )
    op.execute("INSERT INTO invoice_sequence (name, value) VALUES ('invoice_number', 0)")

    op.create_table(
        "pricing_config",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("category", sa.Text(), nullable=False),
        sa.Column("unit_price", sa.Numeric(), nullable=False),
        sa.Column("unit", sa.Text(), nullable=False),
        sa.Column("active", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("created_at", sa.Float(), nullable=False),
    )
    op.create_index("idx_pricing_active", "pricing_config", ["category", "active"])

    op.create_table(
        "margin_config",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("company_id", sa.Text(), nullable=True),
        sa.Column("margin_percent", sa.Numeric(), nullable=False),
        sa.Column("active", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("created_at", sa.Float(), nullable=False),
    )
    op.create_index("idx_margin_active", "margin_config", ["company_id", "active"])

    op.create_table(
        "billing_events",
        sa.Column("event_id", sa.Text(), primary_key=True),
        sa.Column("event_type", sa.Text(), nullable=False),
        sa.Column("company_id", sa.Text(), nullable=False),
        sa.Column("payload", sa.Text(), nullable=False, server_default="{}"),
        sa.Column("created_at", sa.Float(), nullable=False),
        sa.Column("dispatched_at", sa.Float(), nullable=False, server_default="0"),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text(), server_default=""),
    )
    op.create_index("idx_events_pending", "billing_events", ["dispatched_at", "created_at"])
    op.create_index("idx_events_company", "billing_events", ["company_id", "created_at"])


def downgrade() -> None:
    for table in (
        "billing_events", "margin_config", "pricing_config", "invoice_sequence",
        "invoices", "recharges", "wallet_transactions", "usage_records", "company_billing",
    ):
        op.drop_table(table)
