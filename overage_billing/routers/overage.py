"""
Overage Billing Router
======================

Endpoints for application code (service-to-service):
1. Overage transitions: POST enable / POST disable / PUT budget
2. Usage views: GET usage stats, GET limit check
3. Audit: GET events
4. Operations: POST /reconcile (one batch pass), GET /metrics

All routes sit under /api/billing/overage. When OVERAGE_INTERNAL_API_KEY is
set, every request must carry it in X-Internal-API-Key.
"""

import hmac
import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Header, Query, Request
from pydantic import BaseModel, Field

from overage_billing.core.errors import NotFoundError, OverageBillingError
from overage_billing.models.billing import TenantBillingRecord
from overage_billing.services.container import OverageServices
from overage_billing.services.event_log import BillingEventType, EventLog

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Pydantic models
# ---------------------------------------------------------------------------

class EnableOverageRequest(BaseModel):
    budget: Optional[Decimal] = Field(default=None, description="Overage cap; omit for uncapped")


class UpdateBudgetRequest(BaseModel):
    budget: Optional[Decimal] = Field(..., description="New overage cap; null for uncapped")


class TenantOverageResponse(BaseModel):
    tenant_id: str
    plan_id: int
    status: str
    overage_enabled: bool
    overage_budget: Optional[Decimal] = None
    overage_spent: Decimal
    stripe_subscription_item_id: Optional[str] = None
    version: int

    @classmethod
    def from_record(cls, record: TenantBillingRecord) -> "TenantOverageResponse":
        return cls(
            tenant_id=record.tenant_id,
            plan_id=record.plan_id,
            status=record.status,
            overage_enabled=record.overage_enabled,
            overage_budget=record.overage_budget,
            overage_spent=record.overage_spent,
            stripe_subscription_item_id=record.stripe_subscription_item_id,
            version=record.version,
        )


class UsageStatsResponse(BaseModel):
    tenant_id: str
    minutes_used: int
    minutes_included: int
    overage_minutes: int
    overage_cost: Decimal
    percentage_used: float
    overage_enabled: bool
    overage_budget: Optional[Decimal] = None
    overage_spent: Decimal
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None


class UsageLimitResponse(BaseModel):
    tenant_id: str
    allowed: bool
    reason: Optional[str] = None
    minutes_used: int
    minutes_included: int
    overage_minutes: int
    overage_cost: Decimal
    status: str
    overage_enabled: bool
    overage_budget: Optional[Decimal] = None


class BillingEventResponse(BaseModel):
    id: int
    event_type: str
    payload: Dict[str, Any]
    created_at: datetime


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------

def get_overage_services(request: Request) -> OverageServices:
    """Services built by the app lifespan (or injected by create_app)."""
    return request.app.state.overage_services


def require_internal_key(
    request: Request,
    x_internal_api_key: Optional[str] = Header(default=None),
) -> None:
    expected = request.app.state.settings.internal_api_key
    if not expected:
        return
    if not x_internal_api_key or not hmac.compare_digest(x_internal_api_key, expected):
        raise OverageBillingError("OVB-API-002", detail=f"rejected key on {request.url.path}")


router = APIRouter(dependencies=[Depends(require_internal_key)])


# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------

@router.post(
    "/tenants/{tenant_id}/enable",
    response_model=TenantOverageResponse,
    summary="Enable overage billing",
)
async def enable_overage(
    tenant_id: str,
    body: Optional[EnableOverageRequest] = None,
    services: OverageServices = Depends(get_overage_services),
):
    budget = body.budget if body else None
    record = await services.accounts.enable(tenant_id, budget=budget)
    return TenantOverageResponse.from_record(record)


@router.post(
    "/tenants/{tenant_id}/disable",
    response_model=TenantOverageResponse,
    summary="Disable overage billing",
)
async def disable_overage(
    tenant_id: str,
    services: OverageServices = Depends(get_overage_services),
):
    record = await services.accounts.disable(tenant_id)
    return TenantOverageResponse.from_record(record)


@router.put(
    "/tenants/{tenant_id}/budget",
    response_model=TenantOverageResponse,
    summary="Change the overage budget",
)
async def update_overage_budget(
    tenant_id: str,
    body: UpdateBudgetRequest,
    services: OverageServices = Depends(get_overage_services),
):
    record = await services.accounts.update_budget(tenant_id, body.budget)
    return TenantOverageResponse.from_record(record)


# ---------------------------------------------------------------------------
# Usage views
# ---------------------------------------------------------------------------

@router.get("/tenants/{tenant_id}/usage", response_model=UsageStatsResponse)
async def get_usage(
    tenant_id: str,
    services: OverageServices = Depends(get_overage_services),
):
    stats = services.usage_gate.get_usage_stats(tenant_id)
    if stats is None:
        raise NotFoundError("OVB-DB-001", detail=f"tenant {tenant_id}", context={"tenant_id": tenant_id})
    return UsageStatsResponse(
        tenant_id=tenant_id,
        minutes_used=stats.minutes_used,
        minutes_included=stats.minutes_included,
        overage_minutes=stats.overage_minutes,
        overage_cost=stats.overage_cost,
        percentage_used=stats.percentage_used,
        overage_enabled=stats.overage_enabled,
        overage_budget=stats.overage_budget,
        overage_spent=stats.overage_spent,
        period_start=stats.period_start,
        period_end=stats.period_end,
    )


@router.get("/tenants/{tenant_id}/limit", response_model=UsageLimitResponse)
async def check_limit(
    tenant_id: str,
    services: OverageServices = Depends(get_overage_services),
):
    check = services.usage_gate.check_usage_limit(tenant_id)
    return UsageLimitResponse(
        tenant_id=tenant_id,
        allowed=check.allowed,
        reason=check.reason,
        minutes_used=check.usage.minutes_used,
        minutes_included=check.usage.minutes_included,
        overage_minutes=check.usage.overage_minutes,
        overage_cost=check.usage.overage_cost,
        status=check.subscription.status,
        overage_enabled=check.subscription.overage_enabled,
        overage_budget=check.subscription.overage_budget,
    )


@router.get("/tenants/{tenant_id}/events", response_model=List[BillingEventResponse])
async def list_events(
    tenant_id: str,
    event_type: Optional[BillingEventType] = None,
    limit: int = Query(default=50, ge=1, le=500),
    services: OverageServices = Depends(get_overage_services),
):
    events = services.event_log.history(tenant_id, event_type=event_type, limit=limit)
    return [
        BillingEventResponse(
            id=e.id,
            event_type=e.event_type,
            payload=EventLog.decode(e),
            created_at=e.created_at,
        )
        for e in events
    ]


# ---------------------------------------------------------------------------
# Operations
# ---------------------------------------------------------------------------

@router.post("/reconcile", summary="Run one reconciliation pass")
async def run_reconciliation(services: OverageServices = Depends(get_overage_services)):
    summary = await services.batch_job.run_once()
    return summary.as_dict()


@router.get("/metrics")
async def get_metrics(services: OverageServices = Depends(get_overage_services)):
    return services.metrics.get_snapshot()
