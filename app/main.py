import inspect
import json
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Dict, List, Sequence

import structlog
from fastapi import FastAPI, HTTPException, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from app.shared.core.app_routes import register_api_routers, register_lifecycle_routes
from app.shared.core.config import get_settings, reload_settings_from_environment
from app.shared.core.exceptions import WayfarerException
from app.shared.core.logging import setup_logging
from app.shared.core.middleware import RequestIDMiddleware, SecurityHeadersMiddleware
from app.shared.core.ops_metrics import API_ERRORS_TOTAL, RATE_LIMIT_EXCEEDED
from app.shared.core.rate_limit import setup_rate_limiting
from app.shared.db.session import dispose_engine_pool

setup_logging()
settings = get_settings()
logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    global settings
    settings = reload_settings_from_environment()
    logger.info("app_starting", app_name=settings.APP_NAME, environment=settings.ENVIRONMENT)

    from app.shared.core.http import close_http_client, init_http_client

    # Shared pool for Stripe and other outbound calls
    await init_http_client()

    yield

    logger.info("app_shutting_down")

    # Close HTTP pool first (prevents new requests while shutting down)
    await close_http_client()

    await dispose_engine_pool()
    logger.info("db_engine_disposed")


# Application instance
wayfarer_app = FastAPI(
    title=settings.APP_NAME,
    version=settings.VERSION,
    lifespan=lifespan,
)
app: FastAPI = wayfarer_app

__all__ = ["app", "wayfarer_app", "lifespan"]


@wayfarer_app.exception_handler(WayfarerException)
async def wayfarer_exception_handler(
    request: Request, exc: WayfarerException
) -> JSONResponse:
    """Handle custom application exceptions."""
    from app.shared.core.error_governance import handle_exception
    return handle_exception(request, exc)


@wayfarer_app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Handle FastAPI HTTP exceptions with standardized format."""
    is_prod = settings.ENVIRONMENT.lower() in {"production", "staging"}
    detail_text = str(exc.detail) if isinstance(exc.detail, str) else "Request failed"
    if is_prod and exc.status_code >= 500:
        error_text = "Internal Server Error"
        message_text = "An unexpected internal error occurred"
    else:
        error_text = detail_text if isinstance(exc.detail, str) else "Error"
        message_text = detail_text

    API_ERRORS_TOTAL.labels(
        path=request.url.path, method=request.method, status_code=exc.status_code
    ).inc()
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": error_text,
            "code": "HTTP_ERROR",
            "message": message_text,
        },
        headers=getattr(exc, "headers", None),
    )


@wayfarer_app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Handle Pydantic validation errors."""

    def _json_safe(value: Any) -> Any:
        if isinstance(value, Exception):
            return str(value)
        try:
            json.dumps(value)
            return value
        except (TypeError, ValueError):
            return str(value)

    def _sanitize_errors(errors: Sequence[Any]) -> List[Dict[str, Any]]:
        sanitized = []
        for err in errors:
            clean = dict(err)
            if "ctx" in clean and isinstance(clean["ctx"], dict):
                clean["ctx"] = {k: _json_safe(v) for k, v in clean["ctx"].items()}
            if "input" in clean:
                clean["input"] = _json_safe(clean["input"])
            sanitized.append(clean)
        return sanitized

    API_ERRORS_TOTAL.labels(
        path=request.url.path, method=request.method, status_code=422
    ).inc()
    return JSONResponse(
        status_code=422,
        content={
            "error": "Unprocessable Entity",
            "code": "VALIDATION_ERROR",
            "message": "The request body or parameters are invalid.",
            "details": _sanitize_errors(exc.errors()),
        },
    )


@wayfarer_app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
    """Handle business logic ValueErrors via central governance."""
    from app.shared.core.error_governance import handle_exception
    return handle_exception(request, exc)


setup_rate_limiting(wayfarer_app)

original_handler = wayfarer_app.exception_handlers.get(
    RateLimitExceeded, _rate_limit_exceeded_handler
)


async def custom_rate_limit_handler(request: Request, exc: Exception) -> Response:
    if not isinstance(exc, RateLimitExceeded):
        raise exc
    RATE_LIMIT_EXCEEDED.labels(path=request.url.path, limiter="route").inc()
    API_ERRORS_TOTAL.labels(
        path=request.url.path,
        method=request.method,
        status_code=getattr(exc, "status_code", 429),
    ).inc()
    res = original_handler(request, exc)
    if inspect.isawaitable(res):
        return await res
    return res


wayfarer_app.add_exception_handler(RateLimitExceeded, custom_rate_limit_handler)


@wayfarer_app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Unhandled exceptions (including Stripe and integrity errors) go through error governance."""
    from app.shared.core.error_governance import handle_exception

    return handle_exception(request, exc)


register_lifecycle_routes(
    wayfarer_app,
    app_name=settings.APP_NAME,
    version=settings.VERSION,
)

Instrumentator().instrument(wayfarer_app).expose(wayfarer_app)

# Middleware is processed in REVERSE order of addition.
# CORS is added LAST so it processes FIRST for incoming requests.
wayfarer_app.add_middleware(SecurityHeadersMiddleware)
wayfarer_app.add_middleware(RequestIDMiddleware)

if settings.CORS_ORIGINS and "*" in settings.CORS_ORIGINS:
    logger.error("insecure_cors_config_detected", msg="allow_credentials=True with '*' origin is forbidden")
    cors_allowed_origins = [o for o in settings.CORS_ORIGINS if o != "*"]
else:
    cors_allowed_origins = settings.CORS_ORIGINS

wayfarer_app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_allowed_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "Stripe-Signature", "X-Request-ID"],
)

register_api_routers(wayfarer_app)
