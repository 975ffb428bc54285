"""
Request middleware: access log, timing, request ids.

    X-Request-ID    echoed back (or generated), bound into the log scope
    X-Process-Time  handler latency
    X-User-Id/Role  caller as forwarded by the identity proxy, bound into
                    the log scope so every record of the request carries it

Access log level:
    5xx → ERROR, 4xx → WARNING, SOS submissions → WARNING, otherwise INFO.
Health and docs traffic is not access-logged. WebSocket upgrades bypass
this middleware (the feed route logs its own open/close).
"""

from __future__ import annotations

import logging
import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from backend.app.core.logging_config import set_log_context

logger = logging.getLogger(__name__)

_UNLOGGED_PREFIXES = ("/docs", "/redoc", "/openapi", "/favicon", "/health")
_SOS_PATH = "/api/v1/sos"


def _access_level(path: str, status_code: int) -> int:
    if status_code >= 500:
        return logging.ERROR
    if status_code >= 400 or path.startswith(_SOS_PATH):
        return logging.WARNING
    return logging.INFO


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """One access-log record per HTTP request, scoped to the caller."""

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:16]
        user_id = request.headers.get("X-User-Id") or "anonymous"
        role = request.headers.get("X-User-Role")
        path = request.url.path
        set_log_context(request_id=request_id, user_id=user_id, role=role)

        start = time.perf_counter()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            response.headers["X-Request-ID"] = request_id
            response.headers["X-Process-Time"] = f"{(time.perf_counter() - start) * 1000:.1f}ms"
            return response
        finally:
            duration_ms = (time.perf_counter() - start) * 1000
            if not path.startswith(_UNLOGGED_PREFIXES):
                logger.log(
                    _access_level(path, status_code),
                    "%s %s → %d (%.1fms)",
                    request.method, path, status_code, duration_ms,
                    extra={"duration_ms": duration_ms, "status_code": status_code, "endpoint": path},
                )
            set_log_context()
