"""
Price Catalog Resolver
======================

PURPOSE:
    Ensures each plan has exactly one metered overage price at the billing
    provider. The price is created lazily on first use and its id persisted
    on the plan record; once persisted it is reused for every tenant on the
    plan and never recreated.

CONCURRENCY:
    - In-process: creation is serialised per plan and the plan is re-read
      under the lock.
    - Cross-process: the create call carries a deterministic idempotency key
      (plan, product, amount), and the id is persisted with a
      first-writer-wins update. A loser adopts the winner's id.

UNIT AMOUNT:
    plan.price_per_extra_minute is in currency units (e.g. 0.15 USD);
    the provider receives minor units (15.00 cents) as unit_amount_decimal.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Optional

from overage_billing.core.errors import ConfigurationError
from overage_billing.models.billing import BillingPlan
from overage_billing.services.billing_metrics import BillingMetrics, get_billing_metrics
from overage_billing.services.billing_provider import BillingProvider
from overage_billing.services.billing_repository import BillingRepository
from overage_billing.services.event_log import BillingEventType, EventLog
from overage_billing.services.tenant_locks import TenantLockRegistry

logger = logging.getLogger(__name__)

MINOR_UNITS = Decimal("100")
_UNIT_AMOUNT_PRECISION = Decimal("0.0001")


class PriceCatalogResolver:
    """Lazily creates and caches the per-plan metered price."""

    def __init__(
        self,
        repository: BillingRepository,
        provider: BillingProvider,
        event_log: EventLog,
        *,
        currency: str = "usd",
        interval: str = "month",
        locks: Optional[TenantLockRegistry] = None,
        metrics: Optional[BillingMetrics] = None,
    ) -> None:
        self._repository = repository
        self._provider = provider
        self._event_log = event_log
        self._currency = currency
        self._interval = interval
        self._locks = locks or TenantLockRegistry()
        self._metrics = metrics or get_billing_metrics()

    @staticmethod
    def unit_amount_for(plan: BillingPlan) -> Decimal:
        """Per-minute overage rate in minor currency units."""
        rate = plan.price_per_extra_minute
        if rate is None or Decimal(rate) <= 0:
            raise ConfigurationError(
                "OVB-CFG-002",
                detail=f"plan {plan.slug} has no positive overage rate",
                context={"plan_id": plan.id, "plan_slug": plan.slug},
            )
        return (Decimal(rate) * MINOR_UNITS).quantize(_UNIT_AMOUNT_PRECISION)

    async def ensure_metered_price(self, plan: BillingPlan, *, tenant_id: str) -> str:
        """
        Return the plan's metered price id, creating it on first use.

        Args:
            plan: The plan whose overage price is needed.
            tenant_id: Tenant whose request triggered the lookup (audit only).

        Raises:
            ConfigurationError: plan has no product or no positive rate.
            TransientError / ProviderError: price creation failed remotely.
        """
        if plan.metered_price_id:
            return plan.metered_price_id

        if not plan.stripe_product_id:
            raise ConfigurationError(
                "OVB-CFG-001",
                detail=f"plan {plan.slug} has no billing product",
                context={"plan_id": plan.id, "plan_slug": plan.slug},
            )
        unit_amount = self.unit_amount_for(plan)

        async with self._locks.hold(f"plan:{plan.id}"):
            current = self._repository.require_plan(plan.id)
            if current.metered_price_id:
                return current.metered_price_id

            price = await self._provider.create_metered_price(
                product_id=plan.stripe_product_id,
                unit_amount_decimal=unit_amount,
                currency=self._currency,
                interval=self._interval,
                nickname=f"{plan.name} overage",
                idempotency_key=f"overage-price:{plan.id}:{plan.stripe_product_id}:{unit_amount}",
            )
            persisted = self._repository.cache_plan_price(plan.id, price.price_id)

        if persisted != price.price_id:
            self._metrics.increment("prices_adopted")
            return persisted

        self._metrics.increment("prices_created")
        self._event_log.record(
            tenant_id,
            BillingEventType.METERED_PRICE_CREATED,
            {
                "plan_id": plan.id,
                "plan_slug": plan.slug,
                "product_id": plan.stripe_product_id,
                "price_id": persisted,
                "unit_amount_decimal": str(unit_amount),
                "currency": self._currency,
                "interval": self._interval,
            },
        )
        logger.info("Metered price %s cached for plan %s", persisted, plan.slug)
        return persisted
