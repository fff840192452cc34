"""
Tests for BatchReconciliationJob — per-tenant isolation and run summary.
"""

import asyncio
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from overage_billing.core.errors import NotFoundError, TransientError
from overage_billing.services.event_log import BillingEventType
from overage_billing.services.reconciliation import (
    FAILED,
    SKIPPED,
    SYNCED,
    BatchReconciliationJob,
)

NOV_START = datetime(2026, 11, 1, tzinfo=timezone.utc)
DEC_START = datetime(2026, 12, 1, tzinfo=timezone.utc)


@pytest.fixture
def enabled_tenants(services, make_tenant, repository, add_usage):
    """Create and enable N paid tenants t01..tNN, each 100 minutes over plan."""

    async def _create(count: int, minutes_used: int = 1100):
        records = []
        for i in range(1, count + 1):
            tenant_id = f"t{i:02d}"
            make_tenant(tenant_id)
            await services.accounts.enable(tenant_id)
            add_usage(tenant_id, minutes_used=minutes_used)
            records.append(repository.get_tenant(tenant_id))
        return records

    return _create


class TestRunOnce:
    @pytest.mark.asyncio
    async def test_one_failing_tenant_does_not_stop_the_batch(self, services, provider, enabled_tenants):
        tenants = await enabled_tenants(10)
        failing = tenants[3]
        provider.item_failures[failing.stripe_subscription_item_id] = TransientError(
            "OVB-PRV-004", detail="502 Bad Gateway"
        )

        summary = await services.batch_job.run_once()

        assert summary.synced == 9
        assert summary.failed == 1
        assert summary.skipped == 0
        assert summary.tenants_with(FAILED) == ["t04"]
        assert summary.tenants_with(SYNCED) == [t.tenant_id for t in tenants if t is not failing]
        for tenant in tenants:
            if tenant is not failing:
                assert provider.usage[tenant.stripe_subscription_item_id] == 100

        events = services.event_log.history("t04", BillingEventType.OVERAGE_SYNC_FAILED)
        assert len(events) == 1
        payload = services.event_log.decode(events[0])
        assert payload["error_code"] == "OVB-PRV-004"
        assert payload["status"] == FAILED

    @pytest.mark.asyncio
    async def test_summary_dict_and_metrics(self, services, provider, enabled_tenants, metrics):
        tenants = await enabled_tenants(3)
        provider.item_failures[tenants[0].stripe_subscription_item_id] = TransientError("OVB-PRV-002")

        summary = await services.batch_job.run_once()
        report = summary.as_dict()

        assert report["tenants_checked"] == 3
        assert (report["synced"], report["skipped"], report["failed"]) == (2, 0, 1)
        assert report["problems"][0]["tenant_id"] == "t01"
        assert report["finished_at"] is not None

        snapshot = metrics.get_snapshot()
        assert snapshot["counters"]["batch_runs"] == 1
        assert snapshot["counters"]["tenants_synced"] == 2
        assert snapshot["counters"]["tenants_failed"] == 1
        assert snapshot["errors"]["OVB-PRV-002"] == 1
        assert snapshot["last_run"]["run_id"] == summary.run_id

    @pytest.mark.asyncio
    async def test_missing_remote_item_is_skipped(self, services, provider, enabled_tenants):
        tenants = await enabled_tenants(2)
        provider.item_failures[tenants[1].stripe_subscription_item_id] = NotFoundError(
            "OVB-PRV-006", detail="No such subscription item"
        )

        summary = await services.batch_job.run_once()

        assert summary.tenants_with(SKIPPED) == ["t02"]
        assert summary.failed == 0
        assert len(services.event_log.history("t02", BillingEventType.OVERAGE_SYNC_FAILED)) == 1

    @pytest.mark.asyncio
    async def test_tenant_without_usage_record_is_skipped(self, services, make_tenant):
        make_tenant("t1")
        await services.accounts.enable("t1")

        summary = await services.batch_job.run_once()

        assert summary.tenants_with(SKIPPED) == ["t1"]
        assert summary.results[0].detail == "no_usage_record"
        assert services.event_log.history("t1", BillingEventType.OVERAGE_SYNC_FAILED) == []

    @pytest.mark.asyncio
    async def test_within_plan_counts_as_synced(self, services, provider, enabled_tenants):
        await enabled_tenants(2, minutes_used=500)

        summary = await services.batch_job.run_once()

        assert summary.synced == 2
        assert {r.detail for r in summary.results} == {"no_overage"}
        assert provider.calls["report_usage"] == 0

    @pytest.mark.asyncio
    async def test_disabled_and_free_tenants_are_not_listed(self, services, make_tenant, free_plan, enabled_tenants):
        await enabled_tenants(2)
        await services.accounts.disable("t02")
        make_tenant("t_free", plan=free_plan, subscription=False)
        await services.accounts.enable("t_free")

        summary = await services.batch_job.run_once()

        assert [r.tenant_id for r in summary.results] == ["t01"]

    @pytest.mark.asyncio
    async def test_repeated_runs_report_same_quantity(self, services, provider, enabled_tenants):
        tenants = await enabled_tenants(1)

        await services.batch_job.run_once()
        await services.batch_job.run_once()

        assert provider.calls["report_usage"] == 2
        assert provider.usage[tenants[0].stripe_subscription_item_id] == 100

    @pytest.mark.asyncio
    async def test_unexpected_exception_is_isolated(self, services, provider, enabled_tenants):
        tenants = await enabled_tenants(3)
        provider.item_failures[tenants[1].stripe_subscription_item_id] = RuntimeError("boom")

        summary = await services.batch_job.run_once()

        assert summary.tenants_with(FAILED) == ["t02"]
        assert summary.synced == 2
        assert summary.results[1].error_code is None

    @pytest.mark.asyncio
    async def test_slow_tenant_is_bounded(self, services, provider, repository, enabled_tenants, metrics):
        tenants = await enabled_tenants(3)
        slow_item = tenants[0].stripe_subscription_item_id
        original = provider.report_usage

        async def _report(item_id, **kwargs):
            if item_id == slow_item:
                await asyncio.sleep(5)
            return await original(item_id, **kwargs)

        provider.report_usage = _report
        job = BatchReconciliationJob(
            repository,
            services.reporter,
            services.event_log,
            locks=services.locks,
            metrics=metrics,
            tenant_timeout_s=0.05,
        )

        summary = await job.run_once()

        assert summary.tenants_with(FAILED) == ["t01"]
        assert summary.results[0].error_code == "OVB-PRV-003"
        assert summary.synced == 2
        assert not services.locks.is_locked("t01")

    @pytest.mark.asyncio
    async def test_event_log_failure_does_not_abort_run(self, services, provider, enabled_tenants, monkeypatch):
        tenants = await enabled_tenants(2)
        provider.item_failures[tenants[0].stripe_subscription_item_id] = TransientError("OVB-PRV-003")
        original_record = services.event_log.record

        def _record(tenant_id, event_type, payload=None):
            if event_type is BillingEventType.OVERAGE_SYNC_FAILED:
                raise RuntimeError("database is locked")
            return original_record(tenant_id, event_type, payload)

        monkeypatch.setattr(services.event_log, "record", _record)

        summary = await services.batch_job.run_once()

        assert summary.failed == 1
        assert summary.synced == 1


class TestBillingPeriodRollover:
    @pytest.mark.asyncio
    async def test_previous_period_usage_is_not_reported_into_new_period(
        self, services, provider, repository, enabled_tenants
    ):
        (tenant,) = await enabled_tenants(1)
        repository.update_tenant(
            tenant, current_period_start=NOV_START, current_period_end=DEC_START, overage_spent=Decimal("0")
        )

        summary = await services.batch_job.run_once()

        assert summary.tenants_with(SKIPPED) == ["t01"]
        assert summary.results[0].detail == "no_usage_record"
        assert provider.calls["report_usage"] == 0
        assert tenant.stripe_subscription_item_id not in provider.usage
        assert repository.get_tenant("t01").overage_spent == Decimal("0")

    @pytest.mark.asyncio
    async def test_new_period_row_is_reported(self, services, provider, repository, enabled_tenants, add_usage):
        (tenant,) = await enabled_tenants(1)
        repository.update_tenant(tenant, current_period_start=NOV_START, current_period_end=DEC_START)
        add_usage("t01", minutes_used=1020, period_start=NOV_START)

        summary = await services.batch_job.run_once()

        assert summary.synced == 1
        assert provider.usage[tenant.stripe_subscription_item_id] == 20
