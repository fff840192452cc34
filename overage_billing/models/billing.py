"""
Billing Models
==============

SQLModel tables for overage billing state:
- BillingPlan: per-plan product, cached metered price id, overage rate.
- TenantBillingRecord: one per tenant; overage flags and remote identifiers.
- UsageRecord: minutes consumed per billing period (written by the usage ledger).
- BillingEvent: append-only audit log of billing-state transitions.
"""

from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from sqlmodel import Field, SQLModel


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# Tenant record status values. Cancellation is terminal; rows are never deleted.
STATUS_ACTIVE = "active"
STATUS_TRIALING = "trialing"
STATUS_PAST_DUE = "past_due"
STATUS_CANCELED = "canceled"


class BillingPlan(SQLModel, table=True):
    """A subscription plan and its overage pricing."""

    __tablename__ = "billing_plans"

    id: Optional[int] = Field(default=None, primary_key=True)
    slug: str = Field(unique=True, index=True, max_length=64)
    name: str = Field(max_length=128)
    minutes_included: int = Field(default=0)
    price_per_extra_minute: Decimal = Field(default=Decimal("0"), max_digits=10, decimal_places=4)
    stripe_product_id: Optional[str] = Field(default=None, nullable=True, max_length=255)
    # Set once by the price catalog, then reused for every tenant on the plan.
    metered_price_id: Optional[str] = Field(default=None, nullable=True, max_length=255)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


class TenantBillingRecord(SQLModel, table=True):
    """Per-tenant billing state; mutated only through the overage transitions."""

    __tablename__ = "tenant_billing_records"

    id: Optional[int] = Field(default=None, primary_key=True)
    tenant_id: str = Field(unique=True, index=True, max_length=128)
    plan_id: int = Field(foreign_key="billing_plans.id")
    status: str = Field(default=STATUS_ACTIVE, max_length=32)
    billing_cycle: str = Field(default="monthly", max_length=16)
    current_period_start: Optional[datetime] = Field(default=None, nullable=True)
    current_period_end: Optional[datetime] = Field(default=None, nullable=True)

    overage_enabled: bool = Field(default=False, index=True)
    overage_budget: Optional[Decimal] = Field(default=None, nullable=True, max_digits=12, decimal_places=2)
    overage_spent: Decimal = Field(default=Decimal("0"), max_digits=12, decimal_places=4)

    stripe_customer_id: Optional[str] = Field(default=None, nullable=True, max_length=255)
    stripe_subscription_id: Optional[str] = Field(default=None, nullable=True, max_length=255)
    stripe_subscription_item_id: Optional[str] = Field(default=None, nullable=True, max_length=255)

    # Optimistic concurrency: every write is a compare-and-set on this column.
    version: int = Field(default=1)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @property
    def has_remote_subscription(self) -> bool:
        return bool(self.stripe_subscription_id)

    @property
    def has_line_item(self) -> bool:
        return bool(self.stripe_subscription_item_id)


class UsageRecord(SQLModel, table=True):
    """Minutes consumed in one billing period. Read-only for reconciliation."""

    __tablename__ = "usage_records"

    id: Optional[int] = Field(default=None, primary_key=True)
    tenant_id: str = Field(index=True, max_length=128)
    period_start: datetime = Field(index=True)
    period_end: datetime
    minutes_used: int = Field(default=0)
    minutes_included: int = Field(default=0)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


class BillingEvent(SQLModel, table=True):
    """Immutable audit entry. Inserted once, never updated or deleted."""

    __tablename__ = "billing_events"

    id: Optional[int] = Field(default=None, primary_key=True)
    tenant_id: str = Field(index=True, max_length=128)
    event_type: str = Field(index=True, max_length=64)
    payload: str = Field(default="{}")  # JSON text
    created_at: datetime = Field(default_factory=_utcnow, index=True)
