"""
Unified Error Governance

Centrally handles exception classification, structured logging and error
metrics so every API failure leaves the same JSON envelope:

    {"error": {"message", "code", "id", "details"}}
"""

from typing import Any, Dict, Optional
from uuid import uuid4

import structlog
from fastapi import Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import IntegrityError

from app.shared.core.config import get_settings
from app.shared.core.exceptions import WayfarerException
from app.shared.core.ops_metrics import API_ERRORS_TOTAL

logger = structlog.get_logger()

# Postgres SQLSTATE -> (status, code, client message)
_INTEGRITY_ERRORS: Dict[str, tuple[int, str, str]] = {
    "23505": (409, "duplicate_resource", "Resource already exists"),
    "23503": (400, "invalid_reference", "Referenced resource does not exist"),
}

# Stripe error.type -> (status, client message)
_STRIPE_ERRORS: Dict[str, tuple[int, str]] = {
    "card_error": (400, "Your card was declined."),
    "rate_limit_error": (429, "Too many requests to the payment processor. Please try again shortly."),
    "invalid_request_error": (400, "Invalid payment request."),
    "api_connection_error": (503, "Payment processor is temporarily unreachable."),
    "api_error": (500, "Payment processor error."),
    "authentication_error": (500, "Payment configuration error."),
}

_SAFE_CODES = {
    "auth_error",
    "not_found",
    "usage_limit_exceeded",
    "invalid_signature",
    "duplicate_resource",
    "invalid_reference",
    "card_error",
    "rate_limit_error",
}


def _sqlstate(exc: IntegrityError) -> Optional[str]:
    orig = getattr(exc, "orig", None)
    for attr in ("pgcode", "sqlstate"):
        value = getattr(orig, attr, None)
        if value:
            return str(value)
    return None


def _classify(exc: Exception, is_prod: bool) -> WayfarerException:
    if isinstance(exc, WayfarerException):
        return exc

    if isinstance(exc, IntegrityError):
        mapped = _INTEGRITY_ERRORS.get(_sqlstate(exc) or "")
        if mapped:
            status_code, code, message = mapped
            return WayfarerException(message, code=code, status_code=status_code)
        return WayfarerException(
            "Database constraint violated", code="integrity_error", status_code=400
        )

    stripe_type = getattr(exc, "stripe_type", None)
    if isinstance(stripe_type, str) and stripe_type in _STRIPE_ERRORS:
        status_code, message = _STRIPE_ERRORS[stripe_type]
        return WayfarerException(message, code=stripe_type, status_code=status_code)

    if isinstance(exc, ValueError):
        return WayfarerException(
            "Invalid request parameters" if is_prod else str(exc),
            code="value_error",
            status_code=400,
        )

    return WayfarerException(
        "An unexpected internal error occurred",
        code="internal_error",
        status_code=500,
    )


def handle_exception(
    request: Request, exc: Exception, error_id: Optional[str] = None
) -> JSONResponse:
    """
    Classifies and records exceptions, returning a standardized JSON response.
    """
    error_id = error_id or str(uuid4())
    settings = get_settings()
    is_prod = settings.ENVIRONMENT.lower() in ("production", "staging")

    app_exc = _classify(exc, is_prod)

    if app_exc is not exc and app_exc.status_code >= 500:
        # Log the original cause for internal debugging
        logger.exception(
            "unhandled_raw_exception",
            error=str(exc),
            error_type=type(exc).__name__,
            error_id=error_id,
            path=request.url.path,
        )

    message = app_exc.message
    details: Optional[Dict[str, Any]] = app_exc.details or None
    if is_prod and app_exc.code not in _SAFE_CODES:
        # Do not leak internals in production
        message = (
            "An error occurred while processing your request"
            if app_exc.status_code >= 500
            else message
        )
        details = None

    API_ERRORS_TOTAL.labels(
        path=request.url.path,
        method=request.method,
        status_code=app_exc.status_code,
    ).inc()

    logger.error(
        "api_error",
        error_id=error_id,
        code=app_exc.code,
        message=app_exc.message,
        status_code=app_exc.status_code,
        path=request.url.path,
        details=app_exc.details,
    )

    return JSONResponse(
        status_code=app_exc.status_code,
        content={
            "error": {
                "message": message,
                "code": app_exc.code,
                "id": error_id,
                "details": details,
            }
        },
    )
