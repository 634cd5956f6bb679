"""
Rate Limiting for Wayfarer

Two layers:
- slowapi (built on the limits library) for declarative per-route limits.
- FixedWindowRateLimiter presets for sensitive flows (auth, password reset,
  contact form), backed by Redis when configured and process memory otherwise.
"""

import asyncio
import hashlib
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, cast

import structlog
from fastapi import FastAPI, HTTPException, Request, status
from redis.asyncio import Redis, from_url
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from app.shared.core.config import get_settings, ENV_PRODUCTION, ENV_STAGING
from app.shared.core.ops_metrics import RATE_LIMIT_EXCEEDED

__all__ = [
    "get_limiter",
    "setup_rate_limiting",
    "rate_limit",
    "standard_limit",
    "auth_limit",
    "FixedWindowRateLimiter",
    "RateLimitResult",
    "RATE_LIMITERS",
    "get_client_identifier",
    "enforce_rate_limit",
    "RateLimitExceeded",
    "_rate_limit_exceeded_handler",
]

logger = structlog.get_logger()

_limiter: Limiter | None = None
_redis_client: Redis | None = None


def context_aware_key(request: Request) -> str:
    """
    Identifies the requester for route-level rate limiting.
    1. Uses user_id if the auth dependency already ran.
    2. Falls back to a hash of the bearer token (avoids NAT collisions).
    3. Falls back to remote IP.
    """
    user_id = getattr(request.state, "user_id", None)
    if user_id:
        return f"user:{user_id}"

    auth_header = request.headers.get("Authorization")
    if auth_header and auth_header.startswith("Bearer "):
        token = auth_header.split(" ", 1)[1]
        token_hash = hashlib.sha256(token.encode()).hexdigest()[:16]
        return f"token:{token_hash}"

    return get_remote_address(request)


def _is_production_like() -> bool:
    return get_settings().ENVIRONMENT.lower() in (ENV_PRODUCTION, ENV_STAGING)


def get_limiter() -> Limiter:
    """Lazy initialization of the slowapi Limiter instance.

    Production deployments must set REDIS_URL so limits are shared across
    replicas. ``memory://`` is only for single-instance dev/test.
    """
    global _limiter
    if _limiter is None:
        settings = get_settings()
        storage_uri = settings.REDIS_URL or "memory://"
        if (
            _is_production_like()
            and not settings.REDIS_URL
            and not settings.ALLOW_IN_MEMORY_RATE_LIMITS
        ):
            raise RuntimeError(
                "Distributed rate limiting is required in staging/production. "
                "Set REDIS_URL (or explicitly ALLOW_IN_MEMORY_RATE_LIMITS=true for break-glass)."
            )

        _limiter = Limiter(
            key_func=context_aware_key,
            storage_uri=storage_uri,
            strategy="fixed-window",
            enabled=settings.RATELIMIT_ENABLED and not settings.TESTING,
        )
    return _limiter


def get_redis_client() -> Redis | None:
    """Lazy initialization of the Redis client used by fixed-window limiters."""
    global _redis_client
    settings = get_settings()
    # Tests use the in-memory store unless explicitly opted in.
    if settings.TESTING and not settings.ALLOW_REDIS_IN_TESTS:
        return None
    if not settings.REDIS_URL:
        return None

    # Clients are bound to the loop they were created on.
    if _redis_client is not None:
        try:
            loop = asyncio.get_running_loop()
            if getattr(_redis_client, "_loop", None) not in (None, loop):
                _redis_client = None
        except RuntimeError:
            _redis_client = None

    if _redis_client is None:
        redis_from_url = cast(Callable[..., Redis], from_url)
        _redis_client = redis_from_url(settings.REDIS_URL, decode_responses=True)
    return _redis_client


def setup_rate_limiting(app: FastAPI) -> None:
    """
    Configure rate limiting for the FastAPI application.
    """
    limiter = get_limiter()
    app.state.limiter = limiter

    def _rate_limit_handler(request: Request, exc: Exception) -> Any:
        return _rate_limit_exceeded_handler(request, cast(RateLimitExceeded, exc))

    app.add_exception_handler(RateLimitExceeded, _rate_limit_handler)
    logger.info("rate_limiting_configured")


def rate_limit(
    limit: str | Callable[[Request], str] = "100/minute",
) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """Decorator to apply rate limiting to an endpoint.

    Always returns the limiter's decorator; the limiter checks its `enabled`
    flag per request rather than at import time.
    """
    return cast(
        Callable[[Callable[..., Any]], Callable[..., Any]], get_limiter().limit(limit)
    )


STANDARD_LIMIT = "100/minute"
AUTH_LIMIT = "30/minute"


def standard_limit(func: Callable[..., Any]) -> Callable[..., Any]:
    """Apply the standard API limit decorator."""
    return rate_limit(STANDARD_LIMIT)(func)


def auth_limit(func: Callable[..., Any]) -> Callable[..., Any]:
    """Apply the authenticated-route API limit decorator."""
    return rate_limit(AUTH_LIMIT)(func)


@dataclass(frozen=True)
class RateLimitResult:
    success: bool
    limit: int
    remaining: int
    reset: int  # unix timestamp when the window closes


class FixedWindowRateLimiter:
    """
    Fixed-window counter keyed by an arbitrary identifier.

    `unique_token_per_interval` bounds the in-memory store; when it is full the
    entries closest to expiry are evicted first.
    """

    def __init__(
        self,
        interval_seconds: int,
        unique_token_per_interval: int,
        max_attempts: int,
        name: str = "default",
    ) -> None:
        self.interval_seconds = interval_seconds
        self.unique_token_per_interval = unique_token_per_interval
        self.max_attempts = max_attempts
        self.name = name
        self._store: dict[str, dict[str, float]] = {}

    def _key(self, identifier: str) -> str:
        return f"ratelimit:{self.name}:{identifier}"

    def _purge_expired(self, now: float) -> None:
        expired = [k for k, v in self._store.items() if v["expires_at"] <= now]
        for key in expired:
            self._store.pop(key, None)

    def _evict_for_capacity(self) -> None:
        overflow = len(self._store) - self.unique_token_per_interval + 1
        if overflow <= 0:
            return
        soonest = sorted(self._store.items(), key=lambda item: item[1]["expires_at"])
        for key, _ in soonest[:overflow]:
            self._store.pop(key, None)

    def _result(self, count: int, expires_at: float) -> RateLimitResult:
        return RateLimitResult(
            success=count <= self.max_attempts,
            limit=self.max_attempts,
            remaining=max(0, self.max_attempts - count),
            reset=int(expires_at),
        )

    async def _check_redis(self, redis: Redis, identifier: str) -> RateLimitResult:
        key = self._key(identifier)
        current = await redis.incr(key)
        if current == 1:
            await redis.expire(key, self.interval_seconds)
        ttl = await redis.ttl(key)
        if ttl is None or ttl < 0:
            ttl = self.interval_seconds
        return self._result(int(current), time.time() + ttl)

    def _check_memory(self, identifier: str) -> RateLimitResult:
        now = time.time()
        self._purge_expired(now)

        entry = self._store.get(identifier)
        if entry is None:
            self._evict_for_capacity()
            entry = {"count": 0, "expires_at": now + self.interval_seconds}
            self._store[identifier] = entry

        entry["count"] += 1
        return self._result(int(entry["count"]), entry["expires_at"])

    async def check(self, identifier: str) -> RateLimitResult:
        """Count one attempt for `identifier` and report whether it is allowed."""
        redis = get_redis_client()
        if redis is not None:
            try:
                return await self._check_redis(redis, identifier)
            except Exception as e:
                logger.error(
                    "rate_limit_redis_error", limiter=self.name, error=str(e)
                )
                if _is_production_like():
                    # Fail closed: memory counters are not shared across replicas.
                    return RateLimitResult(
                        success=False,
                        limit=self.max_attempts,
                        remaining=0,
                        reset=int(time.time() + self.interval_seconds),
                    )

        return self._check_memory(identifier)

    async def reset(self, identifier: str) -> None:
        redis = get_redis_client()
        if redis is not None:
            try:
                await redis.delete(self._key(identifier))
            except Exception as e:
                logger.error("rate_limit_reset_failed", limiter=self.name, error=str(e))
        self._store.pop(identifier, None)

    async def get_status(self, identifier: str) -> RateLimitResult:
        """Current window state without counting an attempt."""
        now = time.time()
        redis = get_redis_client()
        if redis is not None:
            try:
                key = self._key(identifier)
                raw = await redis.get(key)
                ttl = await redis.ttl(key)
                count = int(raw or 0)
                expires_at = now + (ttl if ttl and ttl > 0 else self.interval_seconds)
                return self._result(count, expires_at)
            except Exception as e:
                logger.error("rate_limit_status_failed", limiter=self.name, error=str(e))

        entry = self._store.get(identifier)
        if entry is None or entry["expires_at"] <= now:
            return self._result(0, now + self.interval_seconds)
        return self._result(int(entry["count"]), entry["expires_at"])


RATE_LIMITERS: dict[str, FixedWindowRateLimiter] = {
    "auth": FixedWindowRateLimiter(15 * 60, 500, 5, name="auth"),
    "api": FixedWindowRateLimiter(60, 1000, 100, name="api"),
    "password_reset": FixedWindowRateLimiter(60 * 60, 500, 3, name="password_reset"),
    "email_verification": FixedWindowRateLimiter(
        60 * 60, 500, 5, name="email_verification"
    ),
    "contact_form": FixedWindowRateLimiter(60 * 60, 500, 3, name="contact_form"),
}


def get_client_identifier(request: Request) -> str:
    """First X-Forwarded-For hop plus user agent."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        ip = forwarded.split(",")[0].strip()
    elif request.client:
        ip = request.client.host
    else:
        ip = "unknown"
    user_agent = request.headers.get("user-agent") or "unknown"
    return f"{ip}|{user_agent}"


def enforce_rate_limit(
    preset: str, limiter: Optional[FixedWindowRateLimiter] = None
) -> Callable[[Request], Awaitable[Optional[RateLimitResult]]]:
    """
    FastAPI dependency enforcing a fixed-window preset.

    Usage:
        @router.post("/contact", dependencies=[Depends(enforce_rate_limit("contact_form"))])
    """
    window = limiter or RATE_LIMITERS[preset]

    async def _dependency(request: Request) -> Optional[RateLimitResult]:
        if not get_settings().RATELIMIT_ENABLED:
            return None

        result = await window.check(get_client_identifier(request))
        if not result.success:
            RATE_LIMIT_EXCEEDED.labels(path=request.url.path, limiter=preset).inc()
            retry_after = max(0, result.reset - int(time.time()))
            logger.warning(
                "rate_limit_exceeded",
                limiter=preset,
                path=request.url.path,
                retry_after=retry_after,
            )
            raise HTTPException(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                detail="Too many requests. Please try again later.",
                headers={
                    "X-RateLimit-Limit": str(result.limit),
                    "X-RateLimit-Remaining": str(result.remaining),
                    "X-RateLimit-Reset": str(result.reset),
                    "Retry-After": str(retry_after),
                },
            )
        return result

    return _dependency
