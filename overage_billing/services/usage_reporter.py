"""
Usage Reporter
==============

PURPOSE:
    Pushes a tenant's overage for the current billing period to its metered
    line item and refreshes the locally derived overage_spent.

COST CALCULATION:
    overage_minutes = max(0, minutes_used - plan.minutes_included)
    overage_spent   = overage_minutes × plan.price_per_extra_minute

IDEMPOTENCY:
    The provider always receives the absolute period quantity with
    action="set", never a delta. Reporting unchanged usage twice sends the
    same quantity twice and bills it once.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Callable, Optional

from overage_billing.core.errors import OverageBillingError
from overage_billing.models.billing import BillingPlan, TenantBillingRecord, UsageRecord
from overage_billing.services.billing_metrics import BillingMetrics, get_billing_metrics
from overage_billing.services.billing_provider import BillingProvider, UsageReceipt
from overage_billing.services.billing_repository import BillingRepository
from overage_billing.services.event_log import BillingEventType, EventLog

logger = logging.getLogger(__name__)

REPORTED = "reported"
NO_LINE_ITEM = "no_line_item"
NO_OVERAGE = "no_overage"


@dataclass(frozen=True)
class OverageComputation:
    overage_minutes: int
    overage_cost: Decimal


def compute_overage(minutes_used: int, minutes_included: int, rate: Decimal) -> OverageComputation:
    """Overage minutes and their cost; both are zero when usage is within the plan."""
    minutes = max(0, int(minutes_used or 0) - int(minutes_included or 0))
    return OverageComputation(
        overage_minutes=minutes,
        overage_cost=minutes * Decimal(rate or 0),
    )


@dataclass(frozen=True)
class OverageReport:
    """Outcome of one report_overage() call."""

    tenant_id: str
    outcome: str  # reported | no_line_item | no_overage
    overage_minutes: int
    overage_spent: Decimal
    receipt: Optional[UsageReceipt] = None
    tenant: Optional[TenantBillingRecord] = None

    @property
    def reported(self) -> bool:
        return self.outcome == REPORTED


class UsageReporter:
    """Reports absolute overage quantities to the remote line item."""

    def __init__(
        self,
        repository: BillingRepository,
        provider: BillingProvider,
        event_log: EventLog,
        *,
        metrics: Optional[BillingMetrics] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._repository = repository
        self._provider = provider
        self._event_log = event_log
        self._metrics = metrics or get_billing_metrics()
        self._clock = clock

    async def report_overage(
        self,
        tenant: TenantBillingRecord,
        usage: UsageRecord,
        plan: Optional[BillingPlan] = None,
    ) -> OverageReport:
        """
        Report the tenant's current overage and persist overage_spent.

        A tenant without a line item, or without overage, is a no-op: no
        remote call and no local write.

        Raises:
            TransientError / ProviderError / NotFoundError: the remote report
                failed; overage_spent is left untouched.
            ConcurrentUpdateError: the tenant record changed after it was read.
        """
        plan = plan or self._repository.require_plan(tenant.plan_id)
        calc = compute_overage(usage.minutes_used, plan.minutes_included, plan.price_per_extra_minute)

        if not tenant.stripe_subscription_item_id:
            return OverageReport(tenant.tenant_id, NO_LINE_ITEM, calc.overage_minutes, tenant.overage_spent)
        if calc.overage_minutes <= 0:
            return OverageReport(tenant.tenant_id, NO_OVERAGE, 0, tenant.overage_spent)

        timestamp = int(self._clock())
        try:
            receipt = await self._provider.report_usage(
                tenant.stripe_subscription_item_id,
                quantity=calc.overage_minutes,
                timestamp=timestamp,
                action="set",
            )
        except OverageBillingError:
            self._metrics.increment("usage_report_failures")
            raise

        updated = self._repository.update_tenant(tenant, overage_spent=calc.overage_cost)
        self._metrics.increment("usage_reported")
        self._event_log.record(
            tenant.tenant_id,
            BillingEventType.OVERAGE_REPORTED,
            {
                "subscription_item_id": tenant.stripe_subscription_item_id,
                "quantity": calc.overage_minutes,
                "overage_spent": str(calc.overage_cost),
                "timestamp": timestamp,
                "period_start": usage.period_start.isoformat() if usage.period_start else None,
            },
        )
        logger.info(
            "Reported %d overage minutes for tenant %s (spent=%s)",
            calc.overage_minutes,
            tenant.tenant_id,
            calc.overage_cost,
        )
        return OverageReport(
            tenant_id=tenant.tenant_id,
            outcome=REPORTED,
            overage_minutes=calc.overage_minutes,
            overage_spent=calc.overage_cost,
            receipt=receipt,
            tenant=updated,
        )
