"""SQLModel tables."""

from overage_billing.models.billing import (
    BillingEvent,
    BillingPlan,
    TenantBillingRecord,
    UsageRecord,
)

__all__ = ["BillingEvent", "BillingPlan", "TenantBillingRecord", "UsageRecord"]
