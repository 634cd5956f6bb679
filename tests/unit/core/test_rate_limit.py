import time
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi import HTTPException
from starlette.requests import Request

from app.shared.core.rate_limit import (
    RATE_LIMITERS,
    FixedWindowRateLimiter,
    context_aware_key,
    enforce_rate_limit,
    get_client_identifier,
)


def _request(headers=None, client=("10.0.0.1", 1234), path="/api/v1/contact"):
    raw_headers = [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()]
    scope = {
        "type": "http",
        "method": "POST",
        "path": path,
        "headers": raw_headers,
        "client": client,
        "query_string": b"",
        "state": {},
    }
    return Request(scope)


@pytest.fixture(autouse=True)
def no_redis():
    with patch("app.shared.core.rate_limit.get_redis_client", return_value=None):
        yield


def test_presets_match_published_windows():
    assert (RATE_LIMITERS["auth"].interval_seconds, RATE_LIMITERS["auth"].max_attempts) == (900, 5)
    assert (RATE_LIMITERS["api"].interval_seconds, RATE_LIMITERS["api"].max_attempts) == (60, 100)
    assert RATE_LIMITERS["password_reset"].max_attempts == 3
    assert RATE_LIMITERS["email_verification"].max_attempts == 5
    assert RATE_LIMITERS["contact_form"].interval_seconds == 3600


@pytest.mark.asyncio
async def test_memory_window_allows_up_to_max_attempts():
    limiter = FixedWindowRateLimiter(60, 100, 3, name="test")

    results = [await limiter.check("client-a") for _ in range(4)]

    assert [r.success for r in results] == [True, True, True, False]
    assert [r.remaining for r in results] == [2, 1, 0, 0]
    assert results[0].limit == 3
    assert results[0].reset >= int(time.time())


@pytest.mark.asyncio
async def test_memory_window_is_per_identifier_and_resettable():
    limiter = FixedWindowRateLimiter(60, 100, 1, name="test")

    assert (await limiter.check("a")).success is True
    assert (await limiter.check("a")).success is False
    assert (await limiter.check("b")).success is True

    await limiter.reset("a")
    assert (await limiter.check("a")).success is True


@pytest.mark.asyncio
async def test_expired_windows_are_purged():
    limiter = FixedWindowRateLimiter(60, 100, 1, name="test")
    await limiter.check("a")
    limiter._store["a"]["expires_at"] = time.time() - 1

    result = await limiter.check("a")
    assert result.success is True
    assert result.remaining == 0


@pytest.mark.asyncio
async def test_capacity_evicts_soonest_expiring_entries():
    limiter = FixedWindowRateLimiter(60, 2, 5, name="test")
    await limiter.check("first")
    await limiter.check("second")
    limiter._store["first"]["expires_at"] = time.time() + 5
    limiter._store["second"]["expires_at"] = time.time() + 50

    await limiter.check("third")

    assert "first" not in limiter._store
    assert set(limiter._store) == {"second", "third"}


@pytest.mark.asyncio
async def test_get_status_does_not_count():
    limiter = FixedWindowRateLimiter(60, 100, 3, name="test")
    assert (await limiter.get_status("a")).remaining == 3
    await limiter.check("a")
    status = await limiter.get_status("a")
    assert status.remaining == 2
    assert (await limiter.get_status("a")).remaining == 2


@pytest.mark.asyncio
async def test_redis_window_uses_incr_and_expire():
    redis = MagicMock()
    redis.incr = AsyncMock(return_value=1)
    redis.expire = AsyncMock(return_value=True)
    redis.ttl = AsyncMock(return_value=60)
    limiter = FixedWindowRateLimiter(60, 100, 2, name="api")

    with patch("app.shared.core.rate_limit.get_redis_client", return_value=redis):
        result = await limiter.check("client")

    assert result.success is True
    assert result.remaining == 1
    redis.incr.assert_awaited_once_with("ratelimit:api:client")
    redis.expire.assert_awaited_once_with("ratelimit:api:client", 60)


@pytest.mark.asyncio
async def test_redis_failure_falls_back_to_memory_outside_production():
    redis = MagicMock()
    redis.incr = AsyncMock(side_effect=ConnectionError("redis down"))
    limiter = FixedWindowRateLimiter(60, 100, 2, name="api")

    with patch("app.shared.core.rate_limit.get_redis_client", return_value=redis):
        result = await limiter.check("client")

    assert result.success is True
    assert "client" in limiter._store


@pytest.mark.asyncio
async def test_redis_failure_fails_closed_in_production():
    redis = MagicMock()
    redis.incr = AsyncMock(side_effect=ConnectionError("redis down"))
    limiter = FixedWindowRateLimiter(60, 100, 2, name="api")

    with patch("app.shared.core.rate_limit.get_redis_client", return_value=redis), patch(
        "app.shared.core.rate_limit._is_production_like", return_value=True
    ):
        result = await limiter.check("client")

    assert result.success is False
    assert result.remaining == 0


def test_get_client_identifier_prefers_forwarded_for():
    request = _request({"X-Forwarded-For": "203.0.113.9, 10.0.0.2", "User-Agent": "pytest"})
    assert get_client_identifier(request) == "203.0.113.9|pytest"

    request = _request({})
    assert get_client_identifier(request) == "10.0.0.1|unknown"


def test_context_aware_key_uses_token_hash():
    request = _request({"Authorization": "Bearer abc.def.ghi"})
    key = context_aware_key(request)
    assert key.startswith("token:")
    assert "abc" not in key

    request = _request({})
    assert context_aware_key(request) == "10.0.0.1"


@pytest.mark.asyncio
async def test_enforce_rate_limit_raises_429_with_headers():
    limiter = FixedWindowRateLimiter(60, 100, 1, name="contact_form")
    dependency = enforce_rate_limit("contact_form", limiter=limiter)
    request = _request({"User-Agent": "pytest"})

    first = await dependency(request)
    assert first is not None and first.success is True

    with pytest.raises(HTTPException) as exc_info:
        await dependency(request)

    exc = exc_info.value
    assert exc.status_code == 429
    assert exc.headers["X-RateLimit-Limit"] == "1"
    assert exc.headers["X-RateLimit-Remaining"] == "0"
    assert "X-RateLimit-Reset" in exc.headers
    assert int(exc.headers["Retry-After"]) <= 60
