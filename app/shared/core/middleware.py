import re
import time
import uuid
from collections.abc import Awaitable, Callable

import structlog
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

from app.shared.core.config import get_settings

logger = structlog.get_logger()

DOCS_PATHS = frozenset({"/docs", "/redoc", "/openapi.json"})
# Billing, admin and storage responses carry account data
NO_STORE_PREFIXES = ("/api/v1/billing", "/api/v1/admin", "/api/v1/storage")

_BASE_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "Permissions-Policy": "camera=(), microphone=(), geolocation=()",
}
_API_CSP = "default-src 'none'; frame-ancestors 'none'; base-uri 'none';"

_REQUEST_ID_PATTERN = re.compile(r"^[A-Za-z0-9._:-]{1,128}$")


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        response = await call_next(request)
        path = request.url.path

        for header, value in _BASE_HEADERS.items():
            response.headers.setdefault(header, value)

        if request.url.scheme == "https":
            response.headers["Strict-Transport-Security"] = (
                "max-age=0" if get_settings().DEBUG else "max-age=31536000; includeSubDomains"
            )

        if path.startswith(NO_STORE_PREFIXES):
            response.headers["Cache-Control"] = "no-store"

        # Swagger UI requires inline scripts
        if path not in DOCS_PATHS:
            response.headers.setdefault("Content-Security-Policy", _API_CSP)

        return response


def resolve_request_id(raw: str | None) -> str:
    """Reuse a caller's correlation id when it is well-formed, otherwise mint one."""
    if raw and _REQUEST_ID_PATTERN.match(raw):
        return raw
    return str(uuid.uuid4())


class RequestIDMiddleware(BaseHTTPMiddleware):
    """
    Binds a request id (and method/path) into structlog contextvars for the
    lifetime of the request and echoes it as X-Request-ID.

    Client-supplied ids are for correlation only and are discarded when
    malformed.
    """

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        request_id = resolve_request_id(request.headers.get("X-Request-ID"))
        request.state.request_id = request_id

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            method=request.method,
            path=request.url.path,
        )

        started = time.perf_counter()
        try:
            response = await call_next(request)
        finally:
            duration_ms = round((time.perf_counter() - started) * 1000, 2)

        response.headers["X-Request-ID"] = request_id
        if response.status_code >= 500:
            logger.warning("http_request_failed", status_code=response.status_code, duration_ms=duration_ms)
        else:
            logger.debug("http_request_completed", status_code=response.status_code, duration_ms=duration_ms)
        return response
