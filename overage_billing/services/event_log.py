"""
Billing Event Log
=================

Append-only recorder of billing-state transitions. Every entry is written
to the billing_events table and mirrored to the structured log so the
audit trail and observability agree.

Entries are never updated or deleted; the class exposes no such operation.
"""

from __future__ import annotations

import json
import logging
from enum import Enum
from typing import Any, Dict, List, Optional

from overage_billing.models.billing import BillingEvent
from overage_billing.services.billing_repository import BillingRepository

logger = logging.getLogger(__name__)


class BillingEventType(str, Enum):
    OVERAGE_ENABLED = "overage_enabled"
    OVERAGE_DISABLED = "overage_disabled"
    OVERAGE_BUDGET_UPDATED = "overage_budget_updated"
    OVERAGE_REPORTED = "overage_reported"
    OVERAGE_SYNC_FAILED = "overage_sync_failed"
    METERED_PRICE_CREATED = "metered_price_created"
    USAGE_PERIOD_RESET = "usage_period_reset"


class EventLog:
    """Writes immutable BillingEvent rows."""

    def __init__(self, repository: BillingRepository) -> None:
        self._repository = repository

    def record(
        self,
        tenant_id: str,
        event_type: BillingEventType,
        payload: Optional[Dict[str, Any]] = None,
    ) -> BillingEvent:
        body = payload or {}
        event = BillingEvent(
            tenant_id=tenant_id,
            event_type=event_type.value,
            payload=json.dumps(body, default=str, sort_keys=True),
        )
        stored = self._repository.insert_event(event)
        logger.info(
            "billing_event",
            extra={"tenant_id": tenant_id, "event_type": event_type.value, "payload": body},
        )
        return stored

    def history(
        self,
        tenant_id: str,
        event_type: Optional[BillingEventType] = None,
        limit: int = 100,
    ) -> List[BillingEvent]:
        """Most recent events for a tenant, newest first."""
        return self._repository.list_events(
            tenant_id,
            event_type=event_type.value if event_type else None,
            limit=limit,
        )

    @staticmethod
    def decode(event: BillingEvent) -> Dict[str, Any]:
        try:
            return json.loads(event.payload) if event.payload else {}
        except (json.JSONDecodeError, TypeError):
            return {}
