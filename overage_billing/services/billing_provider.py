"""
Billing Provider Interface
==========================

The narrow remote-provider surface the reconciliation services consume:

    create_metered_price     product id, unit amount, interval, usage type
    get_subscription         subscription id → subscription with line items
    update_subscription_items  set the full line-item list under a proration mode
    report_usage             absolute (set) or incremental quantity for a line item

Implementations translate their SDK's failures into the error taxonomy in
overage_billing.core.errors:

    NotFoundError       subscription / item does not exist remotely
    TransientError      rate limiting, network failure, timeout, 5xx
    ConfigurationError  missing or rejected credentials
    ProviderError       any other rejection
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import List, Literal, Optional, Sequence

UsageAction = Literal["set", "increment"]
ProrationBehavior = Literal["none", "create_prorations", "always_invoice"]


@dataclass(frozen=True)
class MeteredPrice:
    price_id: str
    product_id: str
    unit_amount_decimal: Decimal
    currency: str
    interval: str


@dataclass(frozen=True)
class LineItem:
    """One price attached to a remote subscription."""

    item_id: str
    price_id: str
    usage_type: Optional[str] = None  # "metered" | "licensed" | None when unknown


@dataclass(frozen=True)
class RemoteSubscription:
    subscription_id: str
    status: str
    items: List[LineItem] = field(default_factory=list)
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None

    def item_for_price(self, price_id: str) -> Optional[LineItem]:
        """Return the line item referencing *price_id*, if any."""
        for item in self.items:
            if item.price_id == price_id:
                return item
        return None

    def item_by_id(self, item_id: str) -> Optional[LineItem]:
        for item in self.items:
            if item.item_id == item_id:
                return item
        return None

    def metered_items(self) -> List[LineItem]:
        return [item for item in self.items if item.usage_type == "metered"]


@dataclass(frozen=True)
class UsageReceipt:
    """Acknowledgement of a usage report."""

    item_id: str
    quantity: int
    timestamp: int
    action: UsageAction
    record_id: Optional[str] = None


class BillingProvider(ABC):
    """Abstract remote subscription-billing provider."""

    name: str = "provider"

    @abstractmethod
    async def create_metered_price(
        self,
        *,
        product_id: str,
        unit_amount_decimal: Decimal,
        currency: str,
        interval: str,
        nickname: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> MeteredPrice:
        """Create a per-unit metered recurring price on *product_id*."""

    @abstractmethod
    async def get_subscription(self, subscription_id: str) -> RemoteSubscription:
        """Fetch a subscription with its current line items.

        Raises NotFoundError when the subscription does not exist.
        """

    @abstractmethod
    async def update_subscription_items(
        self,
        subscription_id: str,
        *,
        keep_item_ids: Sequence[str],
        add_price_ids: Sequence[str] = (),
        remove_item_ids: Sequence[str] = (),
        proration_behavior: ProrationBehavior = "none",
    ) -> RemoteSubscription:
        """Replace the subscription's line-item set.

        The resulting set is *keep_item_ids* plus one new item per
        *add_price_ids*; *remove_item_ids* are deleted. Returns the updated
        subscription.
        """

    @abstractmethod
    async def report_usage(
        self,
        item_id: str,
        *,
        quantity: int,
        timestamp: int,
        action: UsageAction = "set",
    ) -> UsageReceipt:
        """Report usage for a metered line item.

        Overage reconciliation always sends the absolute period quantity
        with action="set"; the price aggregates with last-during-period so a
        repeated report never adds up.
        """
