"""initial overage billing tables

Revision ID: 001_initial_overage
Revises: None
Create Date: 2026-10-18
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "001_initial_overage"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # --- billing_plans ---
    op.create_table(
        "billing_plans",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("slug", sa.String(64), nullable=False, unique=True),
        sa.Column("name", sa.String(128), nullable=False),
        sa.Column("minutes_included", sa.Integer, nullable=False, server_default="0"),
        sa.Column("price_per_extra_minute", sa.Numeric(10, 4), nullable=False, server_default="0"),
        sa.Column("stripe_product_id", sa.String(255), nullable=True),
        sa.Column("metered_price_id", sa.String(255), nullable=True),
        sa.Column("created_at", sa.DateTime, nullable=False),
        sa.Column("updated_at", sa.DateTime, nullable=False),
    )
    op.create_index("ix_billing_plans_slug", "billing_plans", ["slug"], unique=True)

    # --- tenant_billing_records ---
    op.create_table(
        "tenant_billing_records",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("tenant_id", sa.String(128), nullable=False, unique=True),
        sa.Column("plan_id", sa.Integer, sa.ForeignKey("billing_plans.id"), nullable=False),
        sa.Column("status", sa.String(32), nullable=False, server_default="active"),
        sa.Column("billing_cycle", sa.String(16), nullable=False, server_default="monthly"),
        sa.Column("current_period_start", sa.DateTime, nullable=True),
        sa.Column("current_period_end", sa.DateTime, nullable=True),
        sa.Column("overage_enabled", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("overage_budget", sa.Numeric(12, 2), nullable=True),
        sa.Column("overage_spent", sa.Numeric(12, 4), nullable=False, server_default="0"),
        sa.Column("stripe_customer_id", sa.String(255), nullable=True),
        sa.Column("stripe_subscription_id", sa.String(255), nullable=True),
        sa.Column("stripe_subscription_item_id", sa.String(255), nullable=True),
        sa.Column("version", sa.Integer, nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime, nullable=False),
        sa.Column("updated_at", sa.DateTime, nullable=False),
    )
    op.create_index(
        "ix_tenant_billing_records_tenant_id", "tenant_billing_records", ["tenant_id"], unique=True
    )
    op.create_index(
        "ix_tenant_billing_records_overage_enabled", "tenant_billing_records", ["overage_enabled"]
    )

    # --- usage_records ---
    op.create_table(
        "usage_records",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("tenant_id", sa.String(128), nullable=False),
        sa.Column("period_start", sa.DateTime, nullable=False),
        sa.Column("period_end", sa.DateTime, nullable=False),
        sa.Column("minutes_used", sa.Integer, nullable=False, server_default="0"),
        sa.Column("minutes_included", sa.Integer, nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime, nullable=False),
        sa.Column("updated_at", sa.DateTime, nullable=False),
    )
    op.create_index("ix_usage_records_tenant_id", "usage_records", ["tenant_id"])
    op.create_index("ix_usage_records_period_start", "usage_records", ["period_start"])

    # --- billing_events (append-only) ---
    op.create_table(
        "billing_events",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("tenant_id", sa.String(128), nullable=False),
        sa.Column("event_type", sa.String(64), nullable=False),
        sa.Column("payload", sa.Text, nullable=False, server_default="{}"),
        sa.Column("created_at", sa.DateTime, nullable=False),
    )
    op.create_index("ix_billing_events_tenant_id", "billing_events", ["tenant_id"])
    op.create_index("ix_billing_events_event_type", "billing_events", ["event_type"])
    op.create_index("ix_billing_events_created_at", "billing_events", ["created_at"])


def downgrade() -> None:
    op.drop_table("billing_events")
    op.drop_table("usage_records")
    op.drop_table("tenant_billing_records")
    op.drop_table("billing_plans")
