"""
Stripe Billing Provider
=======================

PURPOSE:
    BillingProvider implementation backed by the Stripe Python SDK:
    1. **create_metered_price()** — per-unit recurring price with
       usage_type=metered and aggregate_usage=last_during_period.
    2. **get_subscription()** — subscription with items.data.price expanded.
    3. **update_subscription_items()** — Subscription.modify with the full
       item list; removed items are sent as {"id", "deleted": True}.
    4. **report_usage()** — SubscriptionItem.create_usage_record.

    The SDK is synchronous; every call is offloaded with run_sync() and
    bounded by the configured timeout. The API key is passed per request so
    several providers (e.g. test and live keys) can coexist in one process.

ERROR CLASSIFICATION:
    RateLimitError                      → TransientError   OVB-PRV-002
    APIConnectionError / timeout        → TransientError   OVB-PRV-003
    APIError (5xx)                      → TransientError   OVB-PRV-004
    Authentication / Permission         → ConfigurationError OVB-CFG-003
    InvalidRequestError resource_missing → NotFoundError   OVB-PRV-001 / OVB-PRV-006
    any other StripeError               → ProviderError    OVB-PRV-005
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Sequence, TypeVar

import stripe

from overage_billing.core.async_utils import run_sync
from overage_billing.core.errors import (
    ConfigurationError,
    NotFoundError,
    OverageBillingError,
    ProviderError,
    TransientError,
)
from overage_billing.services.billing_provider import (
    BillingProvider,
    LineItem,
    MeteredPrice,
    ProrationBehavior,
    RemoteSubscription,
    UsageAction,
    UsageReceipt,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

__all__ = ["StripeBillingProvider", "classify_stripe_error"]


def classify_stripe_error(
    exc: Exception,
    *,
    operation: str,
    not_found_code: str = "OVB-PRV-001",
    context: Optional[Dict[str, Any]] = None,
) -> OverageBillingError:
    """Map a Stripe SDK (or timeout) exception onto the error taxonomy."""
    ctx = {"operation": operation, **(context or {})}
    if isinstance(exc, TimeoutError):
        return TransientError("OVB-PRV-003", detail=str(exc), context=ctx)
    if isinstance(exc, stripe.RateLimitError):
        return TransientError("OVB-PRV-002", detail=str(exc), context=ctx)
    if isinstance(exc, stripe.APIConnectionError):
        return TransientError("OVB-PRV-003", detail=str(exc), context=ctx)
    if isinstance(exc, (stripe.AuthenticationError, stripe.PermissionError)):
        return ConfigurationError("OVB-CFG-003", detail=str(exc), context=ctx)
    if isinstance(exc, stripe.InvalidRequestError):
        if getattr(exc, "code", None) == "resource_missing":
            return NotFoundError(not_found_code, detail=str(exc), context=ctx)
        return ProviderError("OVB-PRV-005", detail=str(exc), context=ctx)
    if isinstance(exc, stripe.APIError):
        return TransientError("OVB-PRV-004", detail=str(exc), context=ctx)
    return ProviderError("OVB-PRV-005", detail=str(exc), context=ctx)


def _ts_to_datetime(value: Any) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def _to_line_item(raw: Any) -> LineItem:
    price = raw["price"]
    recurring = price.get("recurring") if price is not None else None
    return LineItem(
        item_id=raw["id"],
        price_id=price["id"] if price is not None else "",
        usage_type=recurring.get("usage_type") if recurring else None,
    )


def _to_subscription(raw: Any) -> RemoteSubscription:
    items_obj = raw.get("items")
    data = items_obj.get("data", []) if items_obj is not None else []
    return RemoteSubscription(
        subscription_id=raw["id"],
        status=raw.get("status", "unknown"),
        items=[_to_line_item(item) for item in data],
        current_period_start=_ts_to_datetime(raw.get("current_period_start")),
        current_period_end=_ts_to_datetime(raw.get("current_period_end")),
    )


class StripeBillingProvider(BillingProvider):
    """Stripe-backed remote billing provider."""

    name = "stripe"

    def __init__(
        self,
        api_key: Optional[str],
        *,
        timeout_s: float = 15.0,
        api_version: Optional[str] = None,
        clear_usage_on_remove: bool = True,
    ) -> None:
        self._api_key = api_key
        self._timeout_s = timeout_s
        self._api_version = api_version
        self._clear_usage_on_remove = clear_usage_on_remove

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------

    def _request_opts(self) -> Dict[str, Any]:
        opts: Dict[str, Any] = {"api_key": self._api_key}
        if self._api_version:
            opts["stripe_version"] = self._api_version
        return opts

    async def _call(
        self,
        operation: str,
        func: Callable[..., T],
        *args: Any,
        not_found_code: str = "OVB-PRV-001",
        context: Optional[Dict[str, Any]] = None,
        **kwargs: Any,
    ) -> T:
        if not self._api_key:
            raise ConfigurationError(
                "OVB-CFG-003",
                detail="Stripe secret key is not configured",
                context={"operation": operation},
            )
        try:
            return await run_sync(
                func, *args, timeout=self._timeout_s, **kwargs, **self._request_opts()
            )
        except (TimeoutError, stripe.StripeError) as exc:
            err = classify_stripe_error(
                exc, operation=operation, not_found_code=not_found_code, context=context
            )
            logger.warning(
                "stripe_call_failed",
                extra={
                    "operation": operation,
                    "error.code": err.code,
                    "error.retryable": err.retryable,
                    "error.message": str(exc),
                },
            )
            raise err from exc

    # ------------------------------------------------------------------
    # BillingProvider
    # ------------------------------------------------------------------

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
        params: Dict[str, Any] = {
            "product": product_id,
            "currency": currency,
            "unit_amount_decimal": str(unit_amount_decimal),
            "billing_scheme": "per_unit",
            "recurring": {
                "interval": interval,
                "usage_type": "metered",
                "aggregate_usage": "last_during_period",
            },
        }
        if nickname:
            params["nickname"] = nickname
        if idempotency_key:
            params["idempotency_key"] = idempotency_key

        price = await self._call(
            "create_metered_price",
            stripe.Price.create,
            context={"product_id": product_id},
            **params,
        )
        logger.info("Created Stripe metered price %s on product %s", price["id"], product_id)
        return MeteredPrice(
            price_id=price["id"],
            product_id=product_id,
            unit_amount_decimal=Decimal(str(unit_amount_decimal)),
            currency=currency,
            interval=interval,
        )

    async def get_subscription(self, subscription_id: str) -> RemoteSubscription:
        raw = await self._call(
            "get_subscription",
            stripe.Subscription.retrieve,
            subscription_id,
            expand=["items.data.price"],
            context={"subscription_id": subscription_id},
        )
        return _to_subscription(raw)

    async def update_subscription_items(
        self,
        subscription_id: str,
        *,
        keep_item_ids: Sequence[str],
        add_price_ids: Sequence[str] = (),
        remove_item_ids: Sequence[str] = (),
        proration_behavior: ProrationBehavior = "none",
    ) -> RemoteSubscription:
        items: List[Dict[str, Any]] = [{"id": item_id} for item_id in keep_item_ids]
        items.extend({"price": price_id} for price_id in add_price_ids)
        for item_id in remove_item_ids:
            removal: Dict[str, Any] = {"id": item_id, "deleted": True}
            if self._clear_usage_on_remove:
                removal["clear_usage"] = True
            items.append(removal)

        raw = await self._call(
            "update_subscription_items",
            stripe.Subscription.modify,
            subscription_id,
            items=items,
            proration_behavior=proration_behavior,
            expand=["items.data.price"],
            context={"subscription_id": subscription_id},
        )
        return _to_subscription(raw)

    async def report_usage(
        self,
        item_id: str,
        *,
        quantity: int,
        timestamp: int,
        action: UsageAction = "set",
    ) -> UsageReceipt:
        record = await self._call(
            "report_usage",
            stripe.SubscriptionItem.create_usage_record,
            item_id,
            quantity=quantity,
            timestamp=timestamp,
            action=action,
            not_found_code="OVB-PRV-006",
            context={"subscription_item_id": item_id},
        )
        return UsageReceipt(
            item_id=item_id,
            quantity=quantity,
            timestamp=timestamp,
            action=action,
            record_id=record.get("id") if record is not None else None,
        )
