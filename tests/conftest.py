"""
Pytest configuration for overage billing tests.

Every test gets its own SQLite file and an in-memory FakeBillingProvider;
no test talks to Stripe.
"""

import itertools
import logging
import os
import tempfile
from collections import Counter
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, List, Optional, Sequence

# Must be set before overage_billing.config is imported
_test_data_dir = tempfile.mkdtemp(prefix="overage_billing_test_")
os.environ.setdefault("OVERAGE_DATA_DIRECTORY", _test_data_dir)
os.environ.setdefault("OVERAGE_LOG_DIR", os.path.join(_test_data_dir, "logs"))
os.environ.pop("OVERAGE_STRIPE_SECRET_KEY", None)
os.environ.pop("OVERAGE_INTERNAL_API_KEY", None)

import pytest

from overage_billing.config import Settings
from overage_billing.core.database import build_engine, init_db, make_session_factory
from overage_billing.core.errors import NotFoundError
from overage_billing.core.errors.registry import error_registry
from overage_billing.models.billing import BillingPlan, TenantBillingRecord, UsageRecord
from overage_billing.services.billing_metrics import BillingMetrics
from overage_billing.services.billing_provider import (
    BillingProvider,
    LineItem,
    MeteredPrice,
    RemoteSubscription,
    UsageReceipt,
)
from overage_billing.services.billing_repository import BillingRepository
from overage_billing.services.container import build_overage_services

# Load error registry so OverageBillingError returns correct HTTP status codes
error_registry.load()

PERIOD_START = datetime(2026, 10, 1, tzinfo=timezone.utc)
PERIOD_END = datetime(2026, 11, 1, tzinfo=timezone.utc)
BASE_PRICE_ID = "price_base_plan"


class FakeBillingProvider(BillingProvider):
    """In-memory provider that behaves like Stripe for the calls we make."""

    name = "fake"

    def __init__(self) -> None:
        self.subscriptions: Dict[str, List[LineItem]] = {}
        self.prices: Dict[str, MeteredPrice] = {}
        self.prices_by_key: Dict[str, str] = {}
        self.usage: Dict[str, int] = {}
        self.usage_reports: List[UsageReceipt] = []
        self.proration_behaviors: List[str] = []
        self.calls: Counter = Counter()
        # operation name -> exception raised by every call to it
        self.failures: Dict[str, Exception] = {}
        # item id -> exception raised when usage is reported for it
        self.item_failures: Dict[str, Exception] = {}
        self._seq = itertools.count(1)

    # -- test helpers --------------------------------------------------

    def add_subscription(self, subscription_id: str, price_ids: Sequence[str] = (BASE_PRICE_ID,)) -> None:
        self.subscriptions[subscription_id] = [self._new_item(p) for p in price_ids]

    def item_ids(self, subscription_id: str) -> List[str]:
        return [item.item_id for item in self.subscriptions[subscription_id]]

    def price_ids(self, subscription_id: str) -> List[str]:
        return [item.price_id for item in self.subscriptions[subscription_id]]

    def _new_item(self, price_id: str) -> LineItem:
        usage_type = "metered" if price_id in self.prices else "licensed"
        return LineItem(item_id=f"si_{next(self._seq)}", price_id=price_id, usage_type=usage_type)

    def _enter(self, operation: str) -> None:
        self.calls[operation] += 1
        if operation in self.failures:
            raise self.failures[operation]

    def _snapshot(self, subscription_id: str) -> RemoteSubscription:
        return RemoteSubscription(
            subscription_id=subscription_id,
            status="active",
            items=list(self.subscriptions[subscription_id]),
        )

    # -- BillingProvider -----------------------------------------------

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
        self._enter("create_metered_price")
        if idempotency_key and idempotency_key in self.prices_by_key:
            return self.prices[self.prices_by_key[idempotency_key]]
        price = MeteredPrice(
            price_id=f"price_metered_{next(self._seq)}",
            product_id=product_id,
            unit_amount_decimal=unit_amount_decimal,
            currency=currency,
            interval=interval,
        )
        self.prices[price.price_id] = price
        if idempotency_key:
            self.prices_by_key[idempotency_key] = price.price_id
        return price

    async def get_subscription(self, subscription_id: str) -> RemoteSubscription:
        self._enter("get_subscription")
        if subscription_id not in self.subscriptions:
            raise NotFoundError("OVB-PRV-001", detail=f"No such subscription: {subscription_id}")
        return self._snapshot(subscription_id)

    async def update_subscription_items(
        self,
        subscription_id: str,
        *,
        keep_item_ids: Sequence[str],
        add_price_ids: Sequence[str] = (),
        remove_item_ids: Sequence[str] = (),
        proration_behavior: str = "none",
    ) -> RemoteSubscription:
        self._enter("update_subscription_items")
        if subscription_id not in self.subscriptions:
            raise NotFoundError("OVB-PRV-001", detail=f"No such subscription: {subscription_id}")
        current = {item.item_id: item for item in self.subscriptions[subscription_id]}
        for item_id in list(keep_item_ids) + list(remove_item_ids):
            if item_id not in current:
                raise NotFoundError("OVB-PRV-006", detail=f"No such subscription item: {item_id}")
        items = [current[item_id] for item_id in keep_item_ids]
        items.extend(self._new_item(price_id) for price_id in add_price_ids)
        self.subscriptions[subscription_id] = items
        self.proration_behaviors.append(proration_behavior)
        return self._snapshot(subscription_id)

    async def report_usage(
        self,
        item_id: str,
        *,
        quantity: int,
        timestamp: int,
        action: str = "set",
    ) -> UsageReceipt:
        self._enter("report_usage")
        if item_id in self.item_failures:
            raise self.item_failures[item_id]
        if not any(item.item_id == item_id for items in self.subscriptions.values() for item in items):
            raise NotFoundError("OVB-PRV-006", detail=f"No such subscription item: {item_id}")
        if action == "set":
            self.usage[item_id] = quantity
        else:
            self.usage[item_id] = self.usage.get(item_id, 0) + quantity
        receipt = UsageReceipt(
            item_id=item_id,
            quantity=quantity,
            timestamp=timestamp,
            action=action,
            record_id=f"mbur_{next(self._seq)}",
        )
        self.usage_reports.append(receipt)
        return receipt


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def _restore_root_logging():
    """setup_logging() replaces root handlers; put pytest's back afterwards."""
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    for handler in root.handlers:
        if handler not in handlers:
            handler.close()
    root.handlers[:] = handlers
    root.setLevel(level)


@pytest.fixture
def engine(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'billing.db'}")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_scope(engine):
    return make_session_factory(engine)


@pytest.fixture
def repository(session_scope):
    return BillingRepository(session_scope)


@pytest.fixture
def provider():
    return FakeBillingProvider()


@pytest.fixture
def metrics():
    return BillingMetrics()


@pytest.fixture
def test_settings(tmp_path):
    return Settings(
        log_dir=str(tmp_path / "logs"),
        stripe_secret_key=None,
        internal_api_key=None,
        tenant_timeout_s=5.0,
    )


@pytest.fixture
def services(test_settings, session_scope, provider, metrics):
    return build_overage_services(
        test_settings, session_scope=session_scope, provider=provider, metrics=metrics
    )


@pytest.fixture
def pro_plan(repository):
    return repository.add_plan(
        BillingPlan(
            slug="pro",
            name="Pro",
            minutes_included=1000,
            price_per_extra_minute=Decimal("0.15"),
            stripe_product_id="prod_pro",
        )
    )


@pytest.fixture
def free_plan(repository):
    return repository.add_plan(
        BillingPlan(
            slug="free",
            name="Free",
            minutes_included=60,
            price_per_extra_minute=Decimal("0.15"),
        )
    )


@pytest.fixture
def make_tenant(repository, provider, pro_plan):
    """Create a tenant record; by default on the pro plan with a remote subscription."""

    def _make(tenant_id: str, plan: Optional[BillingPlan] = None, subscription: bool = True, **fields):
        subscription_id = None
        if subscription:
            subscription_id = f"sub_{tenant_id}"
            provider.add_subscription(subscription_id)
        return repository.add_tenant(
            TenantBillingRecord(
                tenant_id=tenant_id,
                plan_id=(plan or pro_plan).id,
                stripe_customer_id=f"cus_{tenant_id}",
                stripe_subscription_id=subscription_id,
                current_period_start=PERIOD_START,
                current_period_end=PERIOD_END,
                **fields,
            )
        )

    return _make


@pytest.fixture
def add_usage(repository):
    def _add(tenant_id: str, minutes_used: int, minutes_included: int = 1000, period_start=PERIOD_START):
        return repository.add_usage(
            UsageRecord(
                tenant_id=tenant_id,
                period_start=period_start,
                period_end=PERIOD_END,
                minutes_used=minutes_used,
                minutes_included=minutes_included,
            )
        )

    return _add
