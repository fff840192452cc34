"""
Usage Gate
==========

Read-only views over a tenant's usage, used by application code before
placing a call and by the billing screens:

1. **check_usage_limit()** — may the tenant consume more minutes?
2. **get_usage_stats()** — minutes, overage and budget for the current period.

Decision order for check_usage_limit():
    no billing record                  → blocked
    status not active/trialing         → blocked
    within included minutes            → allowed
    free plan, minutes exhausted       → blocked (free plans have no overage)
    paid plan, overage disabled        → blocked
    budget set and overage cost ≥ it   → blocked
    otherwise                          → allowed
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Iterable, Optional

from overage_billing.models.billing import STATUS_ACTIVE, STATUS_TRIALING
from overage_billing.services.billing_repository import BillingRepository
from overage_billing.services.usage_reporter import compute_overage

ALLOWED_STATUSES = frozenset({STATUS_ACTIVE, STATUS_TRIALING})

REASON_NO_SUBSCRIPTION = "No active subscription"
REASON_FREE_EXHAUSTED = (
    "Your free trial minutes have been used. Please upgrade to a paid plan to continue."
)
REASON_OVERAGE_DISABLED = "Monthly minutes exceeded and overage is disabled"
REASON_BUDGET_EXCEEDED = "Overage budget exceeded"


@dataclass(frozen=True)
class UsageSnapshot:
    minutes_used: int = 0
    minutes_included: int = 0
    overage_minutes: int = 0
    overage_cost: Decimal = Decimal("0")


@dataclass(frozen=True)
class SubscriptionSnapshot:
    status: str
    overage_enabled: bool = False
    overage_budget: Optional[Decimal] = None
    overage_spent: Decimal = Decimal("0")


@dataclass(frozen=True)
class UsageLimitCheck:
    allowed: bool
    usage: UsageSnapshot
    subscription: SubscriptionSnapshot
    reason: Optional[str] = None


@dataclass(frozen=True)
class UsageStats:
    minutes_used: int
    minutes_included: int
    overage_minutes: int
    overage_cost: Decimal
    percentage_used: float
    overage_enabled: bool
    overage_budget: Optional[Decimal]
    overage_spent: Decimal
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None


class UsageGate:
    """Answers usage questions from the local ledger; never calls the provider."""

    def __init__(self, repository: BillingRepository, free_plan_slugs: Iterable[str] = ("free",)) -> None:
        self._repository = repository
        self._free_plan_slugs = frozenset(free_plan_slugs)

    def check_usage_limit(self, tenant_id: str) -> UsageLimitCheck:
        tenant = self._repository.get_tenant(tenant_id)
        if tenant is None:
            return UsageLimitCheck(
                allowed=False,
                reason=REASON_NO_SUBSCRIPTION,
                usage=UsageSnapshot(),
                subscription=SubscriptionSnapshot(status="inactive"),
            )

        subscription = SubscriptionSnapshot(
            status=tenant.status,
            overage_enabled=tenant.overage_enabled,
            overage_budget=tenant.overage_budget,
            overage_spent=tenant.overage_spent or Decimal("0"),
        )
        if tenant.status not in ALLOWED_STATUSES:
            return UsageLimitCheck(
                allowed=False,
                reason=f"Subscription is {tenant.status}",
                usage=UsageSnapshot(),
                subscription=subscription,
            )

        plan = self._repository.require_plan(tenant.plan_id)
        latest = self._repository.latest_usage(tenant_id)
        minutes_used = latest.minutes_used if latest else 0
        calc = compute_overage(minutes_used, plan.minutes_included, plan.price_per_extra_minute)
        usage = UsageSnapshot(
            minutes_used=minutes_used,
            minutes_included=plan.minutes_included,
            overage_minutes=calc.overage_minutes,
            overage_cost=calc.overage_cost,
        )

        if minutes_used < plan.minutes_included:
            return UsageLimitCheck(allowed=True, usage=usage, subscription=subscription)

        if plan.slug in self._free_plan_slugs:
            return UsageLimitCheck(
                allowed=False,
                reason=REASON_FREE_EXHAUSTED,
                usage=usage,
                subscription=SubscriptionSnapshot(status=tenant.status),
            )

        if not tenant.overage_enabled:
            return UsageLimitCheck(
                allowed=False, reason=REASON_OVERAGE_DISABLED, usage=usage, subscription=subscription
            )

        if tenant.overage_budget and calc.overage_cost >= tenant.overage_budget:
            return UsageLimitCheck(
                allowed=False, reason=REASON_BUDGET_EXCEEDED, usage=usage, subscription=subscription
            )

        return UsageLimitCheck(allowed=True, usage=usage, subscription=subscription)

    def get_usage_stats(self, tenant_id: str) -> Optional[UsageStats]:
        """Current-period usage for a tenant, or None when the tenant is unknown."""
        tenant = self._repository.get_tenant(tenant_id)
        if tenant is None:
            return None

        plan = self._repository.require_plan(tenant.plan_id)
        latest = self._repository.latest_usage(tenant_id)
        minutes_used = latest.minutes_used if latest else 0
        calc = compute_overage(minutes_used, plan.minutes_included, plan.price_per_extra_minute)
        percentage = (minutes_used / plan.minutes_included) * 100 if plan.minutes_included else 0.0

        return UsageStats(
            minutes_used=minutes_used,
            minutes_included=plan.minutes_included,
            overage_minutes=calc.overage_minutes,
            overage_cost=calc.overage_cost,
            percentage_used=round(percentage, 2),
            overage_enabled=tenant.overage_enabled,
            overage_budget=tenant.overage_budget,
            overage_spent=tenant.overage_spent or Decimal("0"),
            period_start=latest.period_start if latest else None,
            period_end=latest.period_end if latest else None,
        )
