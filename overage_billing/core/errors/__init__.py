"""
Error code system.

OverageBillingError is the base exception for all structured errors. Each
subclass is one class of failure the callers branch on; the code ties the
instance to an entry in registry.yaml (HTTP status, retryability, safe text).

Usage:
    from overage_billing.core.errors import NotFoundError
    raise NotFoundError("OVB-DB-001", detail="tenant t_123", context={"tenant_id": "t_123"})
"""

from __future__ import annotations

import re

CODE_PATTERN = re.compile(r"^OVB-[A-Z]{2,6}-\d{3}$")


class OverageBillingError(Exception):
    """Structured application error tied to the error registry.

    Args:
        code: Registry error code, e.g. "OVB-PRV-001".
        detail: Internal-only detail message (never exposed to users).
        context: Arbitrary key-value context for structured logging.
    """

    #: Whether a caller may retry the same operation unchanged.
    retryable: bool = False

    def __init__(
        self,
        code: str,
        detail: str | None = None,
        context: dict | None = None,
    ) -> None:
        if not CODE_PATTERN.match(code):
            raise ValueError(f"Invalid error code format: {code!r}")
        self.code = code
        self.detail = detail
        self.context = context or {}
        super().__init__(f"{code}: {detail}" if detail else code)


class NotFoundError(OverageBillingError):
    """Tenant record, plan, or remote subscription does not exist."""


class ConfigurationError(OverageBillingError):
    """Plan or provider is not configured well enough to proceed."""


class TransientError(OverageBillingError):
    """Network failure, timeout, or rate limiting. Safe to retry."""

    retryable = True


class ProviderError(OverageBillingError):
    """The billing provider rejected the request for a non-transient reason."""


class ConcurrentUpdateError(OverageBillingError):
    """The tenant record changed underneath an update (stale version)."""

    retryable = True


class ValidationError(OverageBillingError):
    """Caller supplied an invalid argument."""


__all__ = [
    "CODE_PATTERN",
    "OverageBillingError",
    "NotFoundError",
    "ConfigurationError",
    "TransientError",
    "ProviderError",
    "ConcurrentUpdateError",
    "ValidationError",
]
