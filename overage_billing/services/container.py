"""
Service container.

Builds the overage services from one Settings instance with explicit
constructor injection: a single repository, provider, event log, lock
registry and metrics object are shared by every service so the per-tenant
locks and counters agree across the HTTP surface and the batch job.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from overage_billing.config import Settings
from overage_billing.core.database import SessionFactory, engine_for, make_session_factory
from overage_billing.services.account_billing import AccountBillingState
from overage_billing.services.billing_metrics import BillingMetrics, get_billing_metrics
from overage_billing.services.billing_provider import BillingProvider
from overage_billing.services.billing_repository import BillingRepository
from overage_billing.services.event_log import EventLog
from overage_billing.services.price_catalog import PriceCatalogResolver
from overage_billing.services.reconciliation import BatchReconciliationJob
from overage_billing.services.stripe_provider import StripeBillingProvider
from overage_billing.services.subscription_items import SubscriptionItemReconciler
from overage_billing.services.tenant_locks import TenantLockRegistry
from overage_billing.services.usage_limits import UsageGate
from overage_billing.services.usage_reporter import UsageReporter

logger = logging.getLogger(__name__)


@dataclass
class OverageServices:
    repository: BillingRepository
    provider: BillingProvider
    event_log: EventLog
    locks: TenantLockRegistry
    metrics: BillingMetrics
    price_catalog: PriceCatalogResolver
    reconciler: SubscriptionItemReconciler
    reporter: UsageReporter
    accounts: AccountBillingState
    usage_gate: UsageGate
    batch_job: BatchReconciliationJob


def build_overage_services(
    settings: Settings,
    session_scope: Optional[SessionFactory] = None,
    provider: Optional[BillingProvider] = None,
    metrics: Optional[BillingMetrics] = None,
) -> OverageServices:
    """Wire every overage service; tests pass their own session scope and provider."""
    if session_scope is None:
        session_scope = make_session_factory(engine_for(settings))
    if provider is None:
        if not settings.stripe_configured:
            logger.warning("Stripe secret key not set; remote billing calls will fail")
        provider = StripeBillingProvider(
            settings.stripe_secret_key,
            timeout_s=settings.provider_timeout_s,
            api_version=settings.stripe_api_version,
            clear_usage_on_remove=settings.detach_clear_usage,
        )
    metrics = metrics or get_billing_metrics()

    repository = BillingRepository(session_scope)
    event_log = EventLog(repository)
    locks = TenantLockRegistry()
    price_catalog = PriceCatalogResolver(
        repository,
        provider,
        event_log,
        currency=settings.currency,
        interval=settings.price_interval,
        locks=locks,
        metrics=metrics,
    )
    reconciler = SubscriptionItemReconciler(provider, price_catalog, metrics=metrics)
    reporter = UsageReporter(repository, provider, event_log, metrics=metrics)
    accounts = AccountBillingState(
        repository,
        reconciler,
        event_log,
        locks=locks,
        free_plan_slugs=settings.free_plan_slugs,
        metrics=metrics,
    )
    batch_job = BatchReconciliationJob(
        repository,
        reporter,
        event_log,
        locks=locks,
        metrics=metrics,
        tenant_timeout_s=settings.tenant_timeout_s,
    )
    return OverageServices(
        repository=repository,
        provider=provider,
        event_log=event_log,
        locks=locks,
        metrics=metrics,
        price_catalog=price_catalog,
        reconciler=reconciler,
        reporter=reporter,
        accounts=accounts,
        usage_gate=UsageGate(repository, settings.free_plan_slugs),
        batch_job=batch_job,
    )
