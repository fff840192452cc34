"""
Subscription Item Reconciler
============================

Adds or removes the metered overage line item on a tenant's remote
subscription. Both directions are idempotent:

- attach adopts an item that already references the price (a previous
  attempt may have succeeded remotely but failed to persist locally);
- detach treats an item that is already gone as success.

Every subscription update carries the complete item list and
proration_behavior="none", so enabling or disabling overage never triggers
an immediate charge or credit.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from overage_billing.core.errors import NotFoundError, ProviderError
from overage_billing.models.billing import BillingPlan, TenantBillingRecord
from overage_billing.services.billing_metrics import BillingMetrics, get_billing_metrics
from overage_billing.services.billing_provider import BillingProvider
from overage_billing.services.price_catalog import PriceCatalogResolver

logger = logging.getLogger(__name__)

NO_PRORATION = "none"


@dataclass(frozen=True)
class AttachResult:
    item_id: str
    price_id: str
    adopted: bool  # True when the item already existed remotely


@dataclass(frozen=True)
class DetachResult:
    item_id: str
    removed: bool  # False when the item (or its subscription) was already gone


class SubscriptionItemReconciler:
    """Keeps the overage line item on the remote subscription in sync."""

    def __init__(
        self,
        provider: BillingProvider,
        price_catalog: PriceCatalogResolver,
        *,
        metrics: Optional[BillingMetrics] = None,
    ) -> None:
        self._provider = provider
        self._price_catalog = price_catalog
        self._metrics = metrics or get_billing_metrics()

    async def attach_overage(self, tenant: TenantBillingRecord, plan: BillingPlan) -> AttachResult:
        """Resolve the plan's metered price and attach it to the tenant's subscription."""
        price_id = await self._price_catalog.ensure_metered_price(plan, tenant_id=tenant.tenant_id)
        return await self.attach(tenant.tenant_id, tenant.stripe_subscription_id, price_id)

    async def attach(self, tenant_id: str, subscription_id: str, price_id: str) -> AttachResult:
        """
        Ensure *price_id* is a line item on *subscription_id*.

        Raises:
            NotFoundError: the remote subscription does not exist.
            TransientError / ProviderError: the remote update failed.
        """
        subscription = await self._provider.get_subscription(subscription_id)

        existing = subscription.item_for_price(price_id)
        if existing is not None:
            self._metrics.increment("items_adopted")
            logger.info(
                "Adopted existing overage item %s on %s for tenant %s",
                existing.item_id,
                subscription_id,
                tenant_id,
            )
            return AttachResult(item_id=existing.item_id, price_id=price_id, adopted=True)

        updated = await self._provider.update_subscription_items(
            subscription_id,
            keep_item_ids=[item.item_id for item in subscription.items],
            add_price_ids=[price_id],
            proration_behavior=NO_PRORATION,
        )
        created = updated.item_for_price(price_id)
        if created is None:
            raise ProviderError(
                "OVB-PRV-005",
                detail=f"subscription {subscription_id} update returned no item for {price_id}",
                context={"tenant_id": tenant_id, "subscription_id": subscription_id},
            )

        self._metrics.increment("items_attached")
        logger.info(
            "Attached overage item %s (price %s) on %s for tenant %s",
            created.item_id,
            price_id,
            subscription_id,
            tenant_id,
        )
        return AttachResult(item_id=created.item_id, price_id=price_id, adopted=False)

    async def detach(self, tenant_id: str, subscription_id: str, line_item_id: str) -> DetachResult:
        """
        Remove *line_item_id* from *subscription_id*, keeping all other items.

        A missing item, or a subscription that no longer exists at all, is
        reported as ``removed=False`` rather than raised.
        """
        try:
            subscription = await self._provider.get_subscription(subscription_id)
        except NotFoundError:
            self._metrics.increment("items_already_absent")
            logger.warning(
                "Subscription %s gone while detaching %s for tenant %s; treating as detached",
                subscription_id,
                line_item_id,
                tenant_id,
            )
            return DetachResult(item_id=line_item_id, removed=False)

        if subscription.item_by_id(line_item_id) is None:
            self._metrics.increment("items_already_absent")
            logger.info("Overage item %s already absent for tenant %s", line_item_id, tenant_id)
            return DetachResult(item_id=line_item_id, removed=False)

        remaining = [item.item_id for item in subscription.items if item.item_id != line_item_id]
        try:
            await self._provider.update_subscription_items(
                subscription_id,
                keep_item_ids=remaining,
                remove_item_ids=[line_item_id],
                proration_behavior=NO_PRORATION,
            )
        except NotFoundError:
            # Removed between the read and the update.
            self._metrics.increment("items_already_absent")
            return DetachResult(item_id=line_item_id, removed=False)

        self._metrics.increment("items_detached")
        logger.info("Detached overage item %s from %s for tenant %s", line_item_id, subscription_id, tenant_id)
        return DetachResult(item_id=line_item_id, removed=True)
