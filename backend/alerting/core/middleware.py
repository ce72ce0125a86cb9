"""
HTTP middleware for the alert API.

Each request is tagged with a request id (taken from X-Request-ID or
generated) and with the operator named in X-Actor-Id. Both are bound to
the log context for the lifetime of the request, so a dispatch triggered
by ``POST /send`` logs every batch under the operator who sent it.
Responses echo the request id and carry X-Process-Time.

Liveness checks and the documentation pages are served without a log line.
"""

from __future__ import annotations

import logging
import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from backend.alerting.core.logging_config import bind_request_context, release_request_context

logger = logging.getLogger(__name__)

ACTOR_HEADER = "X-Actor-Id"
REQUEST_ID_HEADER = "X-Request-ID"
_QUIET_PREFIXES = ("/docs", "/redoc", "/openapi", "/favicon", "/health/live")


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """One summary line per request: method, path, status, time and who asked."""

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex[:16]
        actor_id = request.headers.get(ACTOR_HEADER)
        client_ip = request.client.host if request.client else "unknown"
        path = request.url.path

        token = bind_request_context(
            request_id=request_id,
            actor_id=actor_id,
            client_ip=client_ip,
            endpoint=path,
            method=request.method,
        )
        start = time.perf_counter()
        try:
            try:
                response = await call_next(request)
            except Exception:
                self._log(request.method, path, 500, start, actor_id or client_ip)
                raise

            response.headers[REQUEST_ID_HEADER] = request_id
            response.headers["X-Process-Time"] = f"{(time.perf_counter() - start) * 1000:.1f}ms"
            if not path.startswith(_QUIET_PREFIXES):
                self._log(request.method, path, response.status_code, start, actor_id or client_ip)
            return response
        finally:
            release_request_context(token)

    @staticmethod
    def _log(method: str, path: str, status_code: int, start: float, caller: str) -> None:
        duration_ms = round((time.perf_counter() - start) * 1000, 1)
        if status_code >= 500:
            level = logging.ERROR
        elif status_code >= 400:
            level = logging.WARNING
        else:
            level = logging.INFO
        logger.log(
            level,
            "%s %s → %d (%.1fms) [%s]",
            method, path, status_code, duration_ms, caller,
            extra={"duration_ms": duration_ms, "status_code": status_code, "endpoint": path},
        )
