"""
Billing Repository
==================

PURPOSE:
    The local datastore surface used by the overage services:
    - read/write tenant billing records (optimistic version check on write)
    - read plans and persist the cached metered price id (first writer wins)
    - read the most recent usage record; open a new usage period
    - append-only insert/read of billing events

    Every method opens its own short session via the injected factory.
    Loaded objects are detached copies; mutate state only through
    update_tenant().
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, List, Optional

from sqlalchemy import update
from sqlmodel import col, select

from overage_billing.core.database import SessionFactory
from overage_billing.core.errors import ConcurrentUpdateError, NotFoundError
from overage_billing.models.billing import (
    BillingEvent,
    BillingPlan,
    TenantBillingRecord,
    UsageRecord,
)

logger = logging.getLogger(__name__)

__all__ = ["BillingRepository"]


class BillingRepository:
    """SQLModel-backed persistence for plans, tenant records, usage and events."""

    def __init__(self, session_scope: SessionFactory) -> None:
        self._session_scope = session_scope

    # ------------------------------------------------------------------
    # Plans
    # ------------------------------------------------------------------

    def add_plan(self, plan: BillingPlan) -> BillingPlan:
        with self._session_scope() as session:
            session.add(plan)
            session.commit()
            session.refresh(plan)
            return plan

    def get_plan(self, plan_id: int) -> Optional[BillingPlan]:
        with self._session_scope() as session:
            return session.get(BillingPlan, plan_id)

    def require_plan(self, plan_id: int) -> BillingPlan:
        plan = self.get_plan(plan_id)
        if plan is None:
            raise NotFoundError("OVB-DB-002", detail=f"plan {plan_id}", context={"plan_id": plan_id})
        return plan

    def cache_plan_price(self, plan_id: int, price_id: str) -> str:
        """
        Persist *price_id* as the plan's metered price unless one is already set.

        Returns the id that is persisted after the call. When another writer
        got there first, that writer's id is returned and *price_id* is left
        unused.
        """
        stmt = (
            update(BillingPlan)
            .where(BillingPlan.id == plan_id)
            .where(col(BillingPlan.metered_price_id).is_(None))
            .values(metered_price_id=price_id, updated_at=datetime.now(timezone.utc))
        )
        with self._session_scope() as session:
            result = session.execute(stmt)
            session.commit()
            if result.rowcount == 1:
                return price_id
            plan = session.get(BillingPlan, plan_id, populate_existing=True)
            if plan is None:
                raise NotFoundError("OVB-DB-002", detail=f"plan {plan_id}", context={"plan_id": plan_id})
            logger.warning(
                "Plan %s already had metered price %s; discarding %s",
                plan_id,
                plan.metered_price_id,
                price_id,
            )
            return plan.metered_price_id or price_id

    # ------------------------------------------------------------------
    # Tenant billing records
    # ------------------------------------------------------------------

    def add_tenant(self, record: TenantBillingRecord) -> TenantBillingRecord:
        with self._session_scope() as session:
            session.add(record)
            session.commit()
            session.refresh(record)
            return record

    def get_tenant(self, tenant_id: str) -> Optional[TenantBillingRecord]:
        with self._session_scope() as session:
            stmt = select(TenantBillingRecord).where(TenantBillingRecord.tenant_id == tenant_id)
            return session.exec(stmt).first()

    def require_tenant(self, tenant_id: str) -> TenantBillingRecord:
        record = self.get_tenant(tenant_id)
        if record is None:
            raise NotFoundError(
                "OVB-DB-001", detail=f"tenant {tenant_id}", context={"tenant_id": tenant_id}
            )
        return record

    def update_tenant(self, record: TenantBillingRecord, **changes: Any) -> TenantBillingRecord:
        """
        Apply *changes* if the stored version still equals ``record.version``.

        Raises ConcurrentUpdateError when the row changed since *record* was
        read. Returns the freshly stored record.
        """
        values = dict(changes)
        values["version"] = record.version + 1
        values["updated_at"] = datetime.now(timezone.utc)
        stmt = (
            update(TenantBillingRecord)
            .where(TenantBillingRecord.id == record.id)
            .where(TenantBillingRecord.version == record.version)
            .values(**values)
        )
        with self._session_scope() as session:
            result = session.execute(stmt)
            if result.rowcount != 1:
                session.rollback()
                raise ConcurrentUpdateError(
                    "OVB-DB-003",
                    detail=f"tenant {record.tenant_id} version {record.version} is stale",
                    context={"tenant_id": record.tenant_id, "version": record.version},
                )
            session.commit()
            return session.get(TenantBillingRecord, record.id, populate_existing=True)

    def list_overage_tenants(self) -> List[TenantBillingRecord]:
        """Tenants with overage enabled and a remote line item attached."""
        stmt = (
            select(TenantBillingRecord)
            .where(TenantBillingRecord.overage_enabled == True)  # noqa: E712
            .where(col(TenantBillingRecord.stripe_subscription_item_id).is_not(None))
            .order_by(TenantBillingRecord.tenant_id)
        )
        with self._session_scope() as session:
            return list(session.exec(stmt).all())

    # ------------------------------------------------------------------
    # Usage
    # ------------------------------------------------------------------

    def latest_usage(
        self, tenant_id: str, period_start: Optional[datetime] = None
    ) -> Optional[UsageRecord]:
        """Most recent usage record (by period start) for a tenant.

        With period_start, rows for earlier billing periods are ignored.
        """
        stmt = select(UsageRecord).where(UsageRecord.tenant_id == tenant_id)
        if period_start is not None:
            stmt = stmt.where(UsageRecord.period_start >= period_start)
        stmt = (
            stmt.order_by(col(UsageRecord.period_start).desc(), col(UsageRecord.id).desc())
            .limit(1)
        )
        with self._session_scope() as session:
            return session.exec(stmt).first()

    def add_usage(self, usage: UsageRecord) -> UsageRecord:
        with self._session_scope() as session:
            session.add(usage)
            session.commit()
            session.refresh(usage)
            return usage

    # ------------------------------------------------------------------
    # Events (append-only)
    # ------------------------------------------------------------------

    def insert_event(self, event: BillingEvent) -> BillingEvent:
        with self._session_scope() as session:
            session.add(event)
            session.commit()
            session.refresh(event)
            return event

    def list_events(
        self,
        tenant_id: str,
        event_type: Optional[str] = None,
        limit: int = 100,
    ) -> List[BillingEvent]:
        """Events for a tenant, newest first."""
        stmt = select(BillingEvent).where(BillingEvent.tenant_id == tenant_id)
        if event_type:
            stmt = stmt.where(BillingEvent.event_type == event_type)
        stmt = stmt.order_by(col(BillingEvent.id).desc()).limit(limit)
        with self._session_scope() as session:
            return list(session.exec(stmt).all())
