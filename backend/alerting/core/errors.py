"""
Centralised error handling — exception hierarchy + FastAPI handlers.

Provides:
    • Domain-specific exception classes
    • Consistent JSON error response format
    • Automatic logging of unhandled errors
    • Request context in error responses (non-production)

Error taxonomy of the dispatch core:

    Class                   Status  Raised when
    ─────────────────────   ──────  ─────────────────────────────────────
    ValidationError         422     request rejected before any alert row
    NotFoundError           404     unknown alert id
    StoreUnavailableError   503     transient store errors outlived retries
    StoreError              500     non-retryable store error (constraints)
    DispatchFatalError      500     the fan-out itself raised; alert stays
                                    SENDING with unfinalized counters
    DispatchConflictError   409     a dispatch/retry already runs for the
                                    same alert
    RateLimitError          429     caller exceeded its request budget
    ChannelDeliveryError    502     transport failure inside an adapter
                                    (never escapes the dispatcher)

Usage:
    from backend.alerting.core.errors import NotFoundError

    raise NotFoundError("Alert", id=alert_id)
"""

from __future__ import annotations

import logging
import traceback
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from backend.alerting.core.config import settings

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
# Exception Hierarchy
# ═══════════════════════════════════════════════════════════════════════════

class AlertingError(Exception):
    """Base exception for all application errors."""

    def __init__(
        self,
        message: str = "An unexpected error occurred",
        *,
        status_code: int = 500,
        error_code: str = "INTERNAL_ERROR",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.error_code = error_code
        self.details = details or {}


class NotFoundError(AlertingError):
    """Resource not found (404)."""

    def __init__(self, resource: str, **identifiers: Any):
        details = {"resource": resource, **identifiers}
        super().__init__(
            message=f"{resource} not found",
            status_code=404,
            error_code="NOT_FOUND",
            details=details,
        )


class ValidationError(AlertingError):
    """Input validation failed (422)."""

    def __init__(
        self,
        message: str,
        *,
        field: Optional[str] = None,
        errors: Optional[List[Dict[str, str]]] = None,
        **details: Any,
    ):
        d = {**details}
        if field:
            d["field"] = field
        if errors:
            d["errors"] = errors
        super().__init__(
            message=message,
            status_code=422,
            error_code="VALIDATION_ERROR",
            details=d,
        )
        self.errors = errors or []


class RateLimitError(AlertingError):
    """Rate limit exceeded (429)."""

    def __init__(self, message: str = "Rate limit exceeded", retry_after: int = 60):
        super().__init__(
            message=message,
            status_code=429,
            error_code="RATE_LIMIT_EXCEEDED",
            details={"retry_after_seconds": retry_after},
        )


class StoreError(AlertingError):
    """Non-retryable store failure such as a constraint violation (500)."""

    def __init__(self, operation: str, message: str = "", **details: Any):
        super().__init__(
            message=f"{operation} failed: {message}",
            status_code=500,
            error_code="STORE_ERROR",
            details={"operation": operation, **details},
        )
        self.operation = operation


class StoreUnavailableError(StoreError):
    """Transient store failure that outlived every retry (503)."""

    def __init__(self, operation: str, attempts: int, message: str = ""):
        AlertingError.__init__(
            self,
            message=f"{operation} failed after {attempts} attempts: {message}",
            status_code=503,
            error_code="STORE_UNAVAILABLE",
            details={"operation": operation, "attempts": attempts},
        )
        self.operation = operation
        self.attempts = attempts


class DispatchFatalError(AlertingError):
    """The fan-out could not run at all; the alert is left in SENDING (500)."""

    def __init__(self, alert_id: str, message: str = ""):
        super().__init__(
            message=f"Dispatch of alert {alert_id} aborted: {message}",
            status_code=500,
            error_code="DISPATCH_FAILED",
            details={"alert_id": alert_id},
        )
        self.alert_id = alert_id


class DispatchConflictError(AlertingError):
    """The alert is busy or not in a state that allows the operation (409)."""

    def __init__(self, alert_id: str, reason: str = "is already being dispatched"):
        super().__init__(
            message=f"Alert {alert_id} {reason}",
            status_code=409,
            error_code="DISPATCH_CONFLICT",
            details={"alert_id": alert_id},
        )
        self.alert_id = alert_id


class ChannelDeliveryError(AlertingError):
    """A transport backend rejected or failed a send (502)."""

    def __init__(self, channel: str, message: str = "", **details: Any):
        super().__init__(
            message=f"{channel} delivery failed: {message}",
            status_code=502,
            error_code="CHANNEL_DELIVERY_ERROR",
            details={"channel": channel, **details},
        )
        self.channel = channel
        self.reason = message


# ═══════════════════════════════════════════════════════════════════════════
# Error Response Builder
# ═══════════════════════════════════════════════════════════════════════════

def _build_error_response(
    status_code: int,
    error_code: str,
    message: str,
    details: Optional[Dict[str, Any]] = None,
    request: Optional[Request] = None,
) -> JSONResponse:
    """Build a consistent JSON error response."""
    body: Dict[str, Any] = {
        "success": False,
        "error": {
            "code": error_code,
            "message": message,
            "status": status_code,
        },
    }

    if details:
        body["error"]["details"] = details

    # Include request path in non-production
    if request and not settings.is_production:
        body["error"]["path"] = str(request.url.path)
        body["error"]["method"] = request.method

    return JSONResponse(status_code=status_code, content=body)


# ═══════════════════════════════════════════════════════════════════════════
# FastAPI Exception Handlers
# ═══════════════════════════════════════════════════════════════════════════

def register_error_handlers(app: FastAPI) -> None:
    """Register all exception handlers on the FastAPI app."""

    @app.exception_handler(AlertingError)
    async def handle_alerting_error(request: Request, exc: AlertingError):
        log = logger.warning if exc.status_code < 500 else logger.error
        log(
            "API Error [%s]: %s | details=%s",
            exc.error_code, exc.message, exc.details,
        )
        return _build_error_response(
            exc.status_code, exc.error_code, exc.message,
            exc.details, request,
        )

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        errors = [
            {
                "field": ".".join(str(p) for p in err.get("loc", ())[1:]) or "body",
                "message": err.get("msg", "invalid value"),
            }
            for err in exc.errors()
        ]
        logger.warning("Request validation failed: %s", errors)
        return _build_error_response(
            422, "VALIDATION_ERROR", "Invalid request body",
            {"errors": errors}, request,
        )

    @app.exception_handler(Exception)
    async def handle_unhandled(request: Request, exc: Exception):
        logger.critical(
            "Unhandled exception: %s\n%s",
            exc, traceback.format_exc(),
        )
        message = str(exc) if settings.DEBUG else "Internal server error"
        return _build_error_response(
            500, "INTERNAL_ERROR", message, request=request,
        )
