"""
Account Billing State
=====================

PURPOSE:
    The per-tenant overage transitions:
    1. **enable()** — turn overage on. Free/trial tenants (no remote
       subscription, or a free plan) get a local-only flag; paid tenants get
       the plan's metered price attached to their subscription.
    2. **disable()** — detach the remote item if one is recorded, then
       always clear enabled/budget/spent/item id.
    3. **update_budget()** — local-only cap change.
    4. **reset_usage_period()** — open a new usage period and zero
       overage_spent (billing-cycle rollover).

ORDERING:
    Every transition runs under the tenant's lock and re-reads the record
    inside it. Remote calls happen before any local write, so a remote
    failure leaves local state untouched; the record is then written with a
    version compare-and-set.
"""

from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Iterable, Optional

from overage_billing.core.errors import ValidationError
from overage_billing.models.billing import BillingPlan, TenantBillingRecord, UsageRecord
from overage_billing.services.billing_metrics import BillingMetrics, get_billing_metrics
from overage_billing.services.billing_repository import BillingRepository
from overage_billing.services.event_log import BillingEventType, EventLog
from overage_billing.services.subscription_items import DetachResult, SubscriptionItemReconciler
from overage_billing.services.tenant_locks import TenantLockRegistry

logger = logging.getLogger(__name__)

PLAN_TYPE_FREE = "free"
PLAN_TYPE_PAID = "paid"


def normalize_budget(budget: Any) -> Optional[Decimal]:
    """Coerce a caller-supplied budget to Decimal; None means uncapped."""
    if budget is None:
        return None
    try:
        value = Decimal(str(budget))
    except (InvalidOperation, ValueError):
        raise ValidationError("OVB-API-001", detail=f"budget {budget!r} is not a number")
    if not value.is_finite() or value < 0:
        raise ValidationError("OVB-API-001", detail=f"budget {budget!r} is negative or not finite")
    return value


class AccountBillingState:
    """Orchestrates enable/disable/update-budget for one tenant at a time."""

    def __init__(
        self,
        repository: BillingRepository,
        reconciler: SubscriptionItemReconciler,
        event_log: EventLog,
        *,
        locks: Optional[TenantLockRegistry] = None,
        free_plan_slugs: Iterable[str] = ("free",),
        metrics: Optional[BillingMetrics] = None,
    ) -> None:
        self._repository = repository
        self._reconciler = reconciler
        self._event_log = event_log
        self._locks = locks or TenantLockRegistry()
        self._free_plan_slugs = frozenset(free_plan_slugs)
        self._metrics = metrics or get_billing_metrics()

    def is_local_only(self, tenant: TenantBillingRecord, plan: BillingPlan) -> bool:
        """Overage is a local flag for tenants without a paid remote subscription."""
        return not tenant.has_remote_subscription or plan.slug in self._free_plan_slugs

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def enable(self, tenant_id: str, budget: Any = None) -> TenantBillingRecord:
        """
        Enable overage billing for a tenant.

        Idempotent: a repeated call adopts the already-attached remote item
        instead of adding a second one.

        Raises:
            NotFoundError: tenant, plan, or remote subscription missing.
            ConfigurationError: plan cannot carry a metered price.
            TransientError / ProviderError: remote call failed (nothing written).
        """
        new_budget = normalize_budget(budget)

        async with self._locks.hold(tenant_id):
            tenant = self._repository.require_tenant(tenant_id)
            plan = self._repository.require_plan(tenant.plan_id)

            if self.is_local_only(tenant, plan):
                stale_item = tenant.stripe_subscription_item_id
                if stale_item and tenant.stripe_subscription_id:
                    # Moved to a free plan while attached.
                    await self._reconciler.detach(tenant_id, tenant.stripe_subscription_id, stale_item)
                updated = self._repository.update_tenant(
                    tenant,
                    overage_enabled=True,
                    overage_budget=new_budget,
                    stripe_subscription_item_id=None,
                )
                self._event_log.record(
                    tenant_id,
                    BillingEventType.OVERAGE_ENABLED,
                    {"plan_type": PLAN_TYPE_FREE, "plan_slug": plan.slug, "budget": new_budget},
                )
                self._metrics.increment("overage_enabled")
                return updated

            attached = await self._reconciler.attach_overage(tenant, plan)

            previous_item = tenant.stripe_subscription_item_id
            if previous_item and previous_item != attached.item_id:
                # Plan's price changed since the last enable; keep one overage item.
                await self._reconciler.detach(tenant_id, tenant.stripe_subscription_id, previous_item)

            updated = self._repository.update_tenant(
                tenant,
                overage_enabled=True,
                overage_budget=new_budget,
                stripe_subscription_item_id=attached.item_id,
            )
            self._event_log.record(
                tenant_id,
                BillingEventType.OVERAGE_ENABLED,
                {
                    "plan_type": PLAN_TYPE_PAID,
                    "plan_slug": plan.slug,
                    "budget": new_budget,
                    "price_id": attached.price_id,
                    "subscription_item_id": attached.item_id,
                    "adopted": attached.adopted,
                },
            )
            self._metrics.increment("overage_enabled")
            return updated

    async def disable(self, tenant_id: str) -> TenantBillingRecord:
        """
        Disable overage billing for a tenant.

        The cleared state is written whether or not a remote detach was
        needed, and also when the item turned out to be gone already.
        """
        async with self._locks.hold(tenant_id):
            tenant = self._repository.require_tenant(tenant_id)
            item_id = tenant.stripe_subscription_item_id

            detached: Optional[DetachResult] = None
            if item_id and tenant.stripe_subscription_id:
                detached = await self._reconciler.detach(tenant_id, tenant.stripe_subscription_id, item_id)

            updated = self._repository.update_tenant(
                tenant,
                overage_enabled=False,
                overage_budget=Decimal("0"),
                overage_spent=Decimal("0"),
                stripe_subscription_item_id=None,
            )
            self._event_log.record(
                tenant_id,
                BillingEventType.OVERAGE_DISABLED,
                {
                    "subscription_item_id": item_id,
                    "remote_call": detached is not None,
                    "detached": bool(detached and detached.removed),
                },
            )
            self._metrics.increment("overage_disabled")
            return updated

    async def update_budget(self, tenant_id: str, budget: Any) -> TenantBillingRecord:
        """Change the tenant's overage cap. Local only; no remote call."""
        new_budget = normalize_budget(budget)

        async with self._locks.hold(tenant_id):
            tenant = self._repository.require_tenant(tenant_id)
            old_budget = tenant.overage_budget
            updated = self._repository.update_tenant(tenant, overage_budget=new_budget)
            self._event_log.record(
                tenant_id,
                BillingEventType.OVERAGE_BUDGET_UPDATED,
                {"old_budget": old_budget, "new_budget": new_budget},
            )
            return updated

    async def reset_usage_period(
        self,
        tenant_id: str,
        period_start: datetime,
        period_end: datetime,
    ) -> UsageRecord:
        """Start a new billing period: fresh usage record, overage_spent back to zero."""
        if period_end <= period_start:
            raise ValidationError(
                "OVB-API-001",
                detail="period_end must be after period_start",
                context={"tenant_id": tenant_id},
            )

        async with self._locks.hold(tenant_id):
            tenant = self._repository.require_tenant(tenant_id)
            plan = self._repository.require_plan(tenant.plan_id)

            self._repository.update_tenant(
                tenant,
                overage_spent=Decimal("0"),
                current_period_start=period_start,
                current_period_end=period_end,
            )
            usage = self._repository.add_usage(
                UsageRecord(
                    tenant_id=tenant_id,
                    period_start=period_start,
                    period_end=period_end,
                    minutes_used=0,
                    minutes_included=plan.minutes_included,
                )
            )
            self._event_log.record(
                tenant_id,
                BillingEventType.USAGE_PERIOD_RESET,
                {
                    "period_start": period_start.isoformat(),
                    "period_end": period_end.isoformat(),
                    "minutes_included": plan.minutes_included,
                    "previous_overage_spent": tenant.overage_spent,
                },
            )
            logger.info("Usage period reset for tenant %s", tenant_id)
            return usage
