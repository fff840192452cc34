"""
FastAPI exception handler for OverageBillingError.

The response body is built from the registry entry, never from the
exception text: detail and context go to the log only.

    {"error": {"code", "title", "message", "retryable",
               "user_action_required", "remediation"}}

A code missing from the registry becomes a generic 500.
"""

import logging
from typing import Any, Dict

from fastapi import Request
from fastapi.responses import JSONResponse

from overage_billing.core.errors import OverageBillingError
from overage_billing.core.errors.registry import ErrorEntry, error_registry

logger = logging.getLogger(__name__)

_LOG_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARN": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}


def _body(entry: ErrorEntry) -> Dict[str, Any]:
    return {
        "error": {
            "code": entry.code,
            "title": entry.title,
            "message": entry.safe_message,
            "retryable": entry.retryable,
            "user_action_required": entry.user_action_required,
            "remediation": entry.remediation,
        }
    }


def _unregistered(exc: OverageBillingError) -> ErrorEntry:
    return ErrorEntry(
        code=exc.code,
        domain=exc.code.split("-")[1],
        title="Internal error",
        severity="ERROR",
        retryable=exc.retryable,
        user_action_required=False,
        http_status=500,
        safe_message="An unexpected error occurred.",
    )


async def overage_error_handler(request: Request, exc: OverageBillingError) -> JSONResponse:
    """Convert OverageBillingError into a structured JSON response."""
    entry = error_registry.get(exc.code)
    if entry is None:
        logger.error("unregistered_error_code", extra={"error.code": exc.code, "error.message": exc.detail})
        entry = _unregistered(exc)

    extra = {
        "error.code": exc.code,
        "error.kind": type(exc).__name__,
        "error.message": exc.detail,
        "error.retryable": entry.retryable,
        "http.method": request.method,
        "path": request.url.path,
    }
    extra.update({f"error.ctx.{key}": value for key, value in exc.context.items()})
    logger.log(_LOG_LEVELS.get(entry.severity, logging.ERROR), entry.title, extra=extra)

    return JSONResponse(status_code=entry.http_status, content=_body(entry))
