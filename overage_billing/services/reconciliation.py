"""
Reconciliation Worker — Overage Usage Sync
==========================================

PURPOSE:
    Walks every tenant with overage enabled and a remote line item, reads
    its most recent usage record and reports the absolute overage quantity
    to the billing provider.

    One tenant's failure never stops the run: errors are caught per tenant,
    logged, written to the event log, and counted in the run summary.

SCHEDULE:
    Intended to be called on a fixed external schedule (e.g. daily cron
    running scripts/reconcile_overage.py). There is no internal scheduler.

OUTCOMES PER TENANT:
    synced   usage reported, or nothing to report (no overage)
    skipped  state changed since listing, no usage record, tenant/plan/
             subscription not found, or plan misconfigured
    failed   provider error, timeout, version conflict, anything unexpected
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from uuid import uuid4

from overage_billing.core.errors import ConfigurationError, NotFoundError, OverageBillingError
from overage_billing.core.structured_logging import run_id_var, tenant_id_var
from overage_billing.services.billing_metrics import BillingMetrics, get_billing_metrics
from overage_billing.services.billing_repository import BillingRepository
from overage_billing.services.event_log import BillingEventType, EventLog
from overage_billing.services.tenant_locks import TenantLockRegistry
from overage_billing.services.usage_reporter import UsageReporter

logger = logging.getLogger(__name__)

SYNCED = "synced"
SKIPPED = "skipped"
FAILED = "failed"


@dataclass(frozen=True)
class TenantSyncResult:
    tenant_id: str
    status: str
    detail: Optional[str] = None
    error_code: Optional[str] = None
    overage_minutes: int = 0


@dataclass
class ReconciliationSummary:
    run_id: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    results: List[TenantSyncResult] = field(default_factory=list)

    def _count(self, status: str) -> int:
        return sum(1 for r in self.results if r.status == status)

    @property
    def synced(self) -> int:
        return self._count(SYNCED)

    @property
    def skipped(self) -> int:
        return self._count(SKIPPED)

    @property
    def failed(self) -> int:
        return self._count(FAILED)

    def tenants_with(self, status: str) -> List[str]:
        return [r.tenant_id for r in self.results if r.status == status]

    def as_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "tenants_checked": len(self.results),
            "synced": self.synced,
            "skipped": self.skipped,
            "failed": self.failed,
            "problems": [
                {
                    "tenant_id": r.tenant_id,
                    "status": r.status,
                    "error_code": r.error_code,
                    "detail": r.detail,
                }
                for r in self.results
                if r.status != SYNCED
            ],
        }


class BatchReconciliationJob:
    """One sequential reconciliation pass over all overage tenants."""

    def __init__(
        self,
        repository: BillingRepository,
        reporter: UsageReporter,
        event_log: EventLog,
        *,
        locks: Optional[TenantLockRegistry] = None,
        metrics: Optional[BillingMetrics] = None,
        tenant_timeout_s: float = 60.0,
    ) -> None:
        self._repository = repository
        self._reporter = reporter
        self._event_log = event_log
        self._locks = locks or TenantLockRegistry()
        self._metrics = metrics or get_billing_metrics()
        self._tenant_timeout_s = tenant_timeout_s

    async def run_once(self) -> ReconciliationSummary:
        """Reconcile every eligible tenant once and return the run summary."""
        summary = ReconciliationSummary(run_id=uuid4().hex[:12], started_at=datetime.now(timezone.utc))
        token = run_id_var.set(summary.run_id)
        try:
            tenant_ids = [t.tenant_id for t in self._repository.list_overage_tenants()]
            logger.info("Starting overage reconciliation run: %d tenants", len(tenant_ids))

            for tenant_id in tenant_ids:
                summary.results.append(await self._process(tenant_id))

            summary.finished_at = datetime.now(timezone.utc)
            report = summary.as_dict()
            self._metrics.record_run(
                {k: report[k] for k in ("run_id", "tenants_checked", "synced", "skipped", "failed")}
            )
            if summary.failed:
                logger.error(
                    "Overage reconciliation finished with %d failed tenants", summary.failed
                )
            logger.info("reconciliation_summary", extra=report)
            return summary
        finally:
            run_id_var.reset(token)

    async def _process(self, tenant_id: str) -> TenantSyncResult:
        token = tenant_id_var.set(tenant_id)
        try:
            result = await asyncio.wait_for(
                self._reconcile_tenant(tenant_id), timeout=self._tenant_timeout_s
            )
        except asyncio.TimeoutError:
            result = TenantSyncResult(
                tenant_id,
                FAILED,
                detail=f"tenant processing exceeded {self._tenant_timeout_s}s",
                error_code="OVB-PRV-003",
            )
        except (NotFoundError, ConfigurationError) as exc:
            result = TenantSyncResult(tenant_id, SKIPPED, detail=exc.detail, error_code=exc.code)
        except OverageBillingError as exc:
            result = TenantSyncResult(tenant_id, FAILED, detail=exc.detail, error_code=exc.code)
        except Exception as exc:
            logger.exception("Unexpected error reconciling tenant %s", tenant_id)
            result = TenantSyncResult(tenant_id, FAILED, detail=str(exc) or type(exc).__name__)

        try:
            self._metrics.increment(f"tenants_{result.status}")
            if result.error_code or result.status == FAILED:
                self._metrics.record_error(result.error_code or "unexpected")
                logger.warning(
                    "Tenant %s %s during reconciliation: %s",
                    tenant_id,
                    result.status,
                    result.detail,
                    extra={"error.code": result.error_code},
                )
                self._record_problem(result)
        finally:
            tenant_id_var.reset(token)
        return result

    async def _reconcile_tenant(self, tenant_id: str) -> TenantSyncResult:
        async with self._locks.hold(tenant_id):
            # Re-read under the lock: a Disable may have landed since listing.
            tenant = self._repository.get_tenant(tenant_id)
            if tenant is None or not tenant.overage_enabled or not tenant.stripe_subscription_item_id:
                return TenantSyncResult(tenant_id, SKIPPED, detail="state_changed")

            usage = self._repository.latest_usage(tenant_id, period_start=tenant.current_period_start)
            if usage is None:
                return TenantSyncResult(tenant_id, SKIPPED, detail="no_usage_record")

            report = await self._reporter.report_overage(tenant, usage)
            return TenantSyncResult(
                tenant_id, SYNCED, detail=report.outcome, overage_minutes=report.overage_minutes
            )

    def _record_problem(self, result: TenantSyncResult) -> None:
        try:
            self._event_log.record(
                result.tenant_id,
                BillingEventType.OVERAGE_SYNC_FAILED,
                {"status": result.status, "error_code": result.error_code, "detail": result.detail},
            )
        except Exception:
            # The run summary still carries the failure.
            logger.exception("Could not record sync failure for tenant %s", result.tenant_id)
