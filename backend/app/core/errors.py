"""
Centralised error handling — exception hierarchy + FastAPI handlers.

Provides:
    • Domain-specific exception classes for the SOS relay
    • Consistent JSON error response format
    • Automatic logging of unhandled errors
    • Request context in error responses (non-production)

Usage:
    from backend.app.core.errors import (
        RelayError,
        NotFoundError,
        TransientStoreError,
        MalformedEventError,
        register_error_handlers,
    )

    raise NotFoundError("Alert", id="a1b2")
"""

from __future__ import annotations

import logging
import traceback
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from backend.app.core.config import settings

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
# Exception Hierarchy
# ═══════════════════════════════════════════════════════════════════════════

class RelayError(Exception):
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


class NotFoundError(RelayError):
    """Resource not found (404)."""

    def __init__(self, resource: str, **identifiers: Any):
        details = {"resource": resource, **identifiers}
        super().__init__(
            message=f"{resource} not found",
            status_code=404,
            error_code="NOT_FOUND",
            details=details,
        )


class ValidationError(RelayError):
    """Input validation failed (422)."""

    def __init__(self, message: str, *, field: Optional[str] = None, **details: Any):
        d = {**details}
        if field:
            d["field"] = field
        super().__init__(
            message=message,
            status_code=422,
            error_code="VALIDATION_ERROR",
            details=d,
        )


class PermissionDeniedError(RelayError):
    """Caller's role may not perform this action (403)."""

    def __init__(self, action: str, role: Optional[str] = None):
        super().__init__(
            message=f"Not allowed to {action}",
            status_code=403,
            error_code="PERMISSION_DENIED",
            details={"action": action, "role": role},
        )


class InvalidTransitionError(RelayError):
    """Alert status transition is not a valid edge (409)."""

    def __init__(self, alert_id: str, current: str, target: str):
        super().__init__(
            message=f"Alert {alert_id} cannot move from {current} to {target}",
            status_code=409,
            error_code="INVALID_TRANSITION",
            details={"alert_id": alert_id, "current": current, "target": target},
        )


class TransientStoreError(RelayError):
    """Store read/write failed for a retryable reason (503)."""

    def __init__(self, operation: str, message: str = "", **details: Any):
        super().__init__(
            message=f"Store {operation} failed: {message}",
            status_code=503,
            error_code="STORE_UNAVAILABLE",
            details={"operation": operation, **details},
        )


class MalformedEventError(RelayError):
    """Change feed payload could not be decoded (422)."""

    def __init__(self, message: str, **details: Any):
        super().__init__(
            message=f"Malformed change event: {message}",
            status_code=422,
            error_code="MALFORMED_EVENT",
            details=details,
        )


class OptimisticWriteTimeout(RelayError):
    """Optimistic write was not confirmed in time and was reverted (504)."""

    def __init__(self, entity_id: str, timeout_seconds: float):
        super().__init__(
            message=(
                f"Change to {entity_id} was not confirmed within "
                f"{timeout_seconds:.1f}s and has been reverted"
            ),
            status_code=504,
            error_code="OPTIMISTIC_WRITE_TIMEOUT",
            details={"entity_id": entity_id, "timeout_seconds": timeout_seconds},
        )


class ReconcileError(RelayError):
    """A change could not be merged into the local view safely (500)."""

    def __init__(self, entity_id: str, message: str = ""):
        super().__init__(
            message=f"Could not reconcile {entity_id}: {message}",
            status_code=500,
            error_code="RECONCILE_ERROR",
            details={"entity_id": entity_id},
        )


class DispatchUnavailableError(RelayError):
    """Dispatch cannot be initiated, e.g. no contact address (422)."""

    def __init__(self, alert_id: str, reason: str):
        super().__init__(
            message=f"Dispatch for alert {alert_id} unavailable: {reason}",
            status_code=422,
            error_code="DISPATCH_UNAVAILABLE",
            details={"alert_id": alert_id, "reason": reason},
        )


class ExternalServiceError(RelayError):
    """External API call failed (502)."""

    def __init__(self, service: str, message: str = "", **details: Any):
        super().__init__(
            message=f"External service '{service}' failed: {message}",
            status_code=502,
            error_code="EXTERNAL_SERVICE_ERROR",
            details={"service": service, **details},
        )


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
        "error": {
            "code": error_code,
            "message": message,
            "status": status_code,
        }
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

    @app.exception_handler(RelayError)
    async def handle_relay_error(request: Request, exc: RelayError):
        log = logger.error if exc.status_code >= 500 else logger.warning
        log(
            "API Error [%s]: %s | details=%s",
            exc.error_code, exc.message, exc.details,
        )
        return _build_error_response(
            exc.status_code, exc.error_code, exc.message,
            exc.details, request,
        )

    @app.exception_handler(ValueError)
    async def handle_value_error(request: Request, exc: ValueError):
        logger.warning("ValueError: %s", exc)
        return _build_error_response(
            422, "VALIDATION_ERROR", str(exc), request=request,
        )

    @app.exception_handler(Exception)
    async def handle_unhandled(request: Request, exc: Exception):
        logger.critical(
            "Unhandled exception: %s\n%s",
            exc, traceback.format_exc(),
        )
        message = str(exc) if settings.DEBUG else "Internal server error"
        details = (
            {"traceback": traceback.format_exc().split("\n")}
            if settings.DEBUG else None
        )
        return _build_error_response(
            500, "INTERNAL_ERROR", message, details, request,
        )
