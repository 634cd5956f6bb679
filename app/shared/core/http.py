"""
Async HTTP Client Shared Infrastructure

Ensures a single httpx.AsyncClient is shared between the FastAPI lifespan,
the Stripe client and background sweeps to avoid socket exhaustion.
"""

import inspect
from typing import Optional
import httpx
import structlog

from app.shared.core.config import get_settings

logger = structlog.get_logger()

# Singleton instance
_client: Optional[httpx.AsyncClient] = None


def _user_agent() -> str:
    settings = get_settings()
    return f"{settings.APP_NAME}/{settings.VERSION}"


def get_http_client(timeout: Optional[float] = None) -> httpx.AsyncClient:
    """
    Returns the global shared httpx.AsyncClient.
    Lazily creates one when the lifespan hook has not run (CLI, tests).
    """
    global _client

    if _client is None:
        logger.warning(
            "http_client_lazy_initialized",
            msg="Client was not pre-initialized",
        )
        _client = httpx.AsyncClient(
            timeout=httpx.Timeout(timeout or 20.0, connect=10.0),
            limits=httpx.Limits(max_connections=100, max_keepalive_connections=20),
            headers={"User-Agent": _user_agent()},
        )

    return _client


async def init_http_client() -> None:
    """
    Initializes the global httpx.AsyncClient at application startup.
    """
    global _client
    if _client is not None:
        logger.warning("http_client_already_initialized")
        return

    settings = get_settings()
    _client = httpx.AsyncClient(
        timeout=httpx.Timeout(settings.STRIPE_TIMEOUT_SECONDS, connect=10.0),
        limits=httpx.Limits(
            max_connections=200,
            max_keepalive_connections=40,
            keepalive_expiry=30.0,
        ),
        headers={"User-Agent": _user_agent()},
    )
    logger.info("http_client_initialized", max_connections=200)


async def close_http_client() -> None:
    """
    Gracefully shuts down the global client, flushing its connection pool.
    """
    global _client

    if not _client:
        return

    close_result = _client.aclose()
    if inspect.isawaitable(close_result):
        await close_result

    logger.info("http_client_closed")
    _client = None
