import asyncio
import errno
from datetime import datetime, timedelta, timezone
from email.utils import format_datetime
from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from app.shared.core.retry import (
    RETRY_CONFIGS,
    RetryManager,
    calculate_retry_delay,
    extract_status_code,
    get_retry_config,
    is_retryable_error,
    parse_retry_after,
    retry_operation,
    set_retry_config,
    wait_retry_after,
)


class StatusError(Exception):
    def __init__(self, status_code, message="upstream failed", retry_after=None):
        super().__init__(message)
        self.status_code = status_code
        self.retry_after = retry_after


def test_default_policies_match_published_table():
    assert RETRY_CONFIGS["webhook"]["max_attempts"] == 4
    assert RETRY_CONFIGS["webhook"]["min_wait"] == 2.0
    assert RETRY_CONFIGS["webhook"]["max_wait"] == 30.0
    assert RETRY_CONFIGS["payment"]["max_attempts"] == 3
    assert RETRY_CONFIGS["external_api"]["jitter"] is True


def test_calculate_retry_delay_is_exponential_and_capped():
    config = {"min_wait": 1.0, "max_wait": 10.0, "multiplier": 2.0, "jitter": False}
    assert calculate_retry_delay(0, config) == 1.0
    assert calculate_retry_delay(1, config) == 2.0
    assert calculate_retry_delay(2, config) == 4.0
    assert calculate_retry_delay(3, config) == 8.0
    assert calculate_retry_delay(4, config) == 10.0
    assert calculate_retry_delay(20, config) == 10.0


def test_calculate_retry_delay_jitter_stays_within_bounds():
    config = {"min_wait": 4.0, "max_wait": 30.0, "multiplier": 2.0, "jitter": True}
    with patch("app.shared.core.retry.random.random", return_value=1.0):
        assert calculate_retry_delay(0, config) == pytest.approx(5.0)
    with patch("app.shared.core.retry.random.random", return_value=0.0):
        assert calculate_retry_delay(0, config) == pytest.approx(3.0)


def test_parse_retry_after_seconds_and_garbage():
    assert parse_retry_after("7") == 7.0
    assert parse_retry_after(3) == 3.0
    assert parse_retry_after("-4") == 0.0
    assert parse_retry_after(None) is None
    assert parse_retry_after("") is None
    assert parse_retry_after("soon") is None


def test_parse_retry_after_http_date():
    future = datetime.now(timezone.utc) + timedelta(seconds=120)
    delay = parse_retry_after(format_datetime(future, usegmt=True))
    assert delay is not None
    assert 100 <= delay <= 120

    past = datetime.now(timezone.utc) - timedelta(seconds=120)
    assert parse_retry_after(format_datetime(past, usegmt=True)) == 0.0


def test_extract_status_code_sources():
    assert extract_status_code(StatusError(503)) == 503
    assert extract_status_code(SimpleNamespace(http_status=429)) == 429

    request = httpx.Request("GET", "https://api.stripe.com/v1/customers")
    response = httpx.Response(404, request=request)
    exc = httpx.HTTPStatusError("not found", request=request, response=response)
    assert extract_status_code(exc) == 404
    assert extract_status_code(ValueError("x")) is None


@pytest.mark.parametrize(
    "exc",
    [
        httpx.ConnectError("refused"),
        httpx.ReadTimeout("slow"),
        ConnectionError("reset by peer"),
        TimeoutError(),
        asyncio.TimeoutError(),
        OSError(errno.ECONNREFUSED, "refused"),
        StatusError(500),
        StatusError(502),
        StatusError(429),
        StatusError(400, "connection reset while reading"),
        RuntimeError("something odd"),
    ],
)
def test_is_retryable_error_true(exc):
    assert is_retryable_error(exc) is True


@pytest.mark.parametrize("status", [400, 401, 402, 403, 404, 409, 422])
def test_is_retryable_error_permanent_4xx(status):
    assert is_retryable_error(StatusError(status, "bad request")) is False


def test_is_retryable_error_code_attribute():
    exc = Exception("socket")
    exc.code = "ETIMEDOUT"  # type: ignore[attr-defined]
    assert is_retryable_error(exc) is True


@pytest.mark.asyncio
async def test_execute_with_retry_succeeds_after_retries():
    manager = RetryManager("database")
    attempts = 0

    async def flaky():
        nonlocal attempts
        attempts += 1
        if attempts < 3:
            raise StatusError(503)
        return "ok"

    with patch("app.shared.core.retry.asyncio.sleep", new=AsyncMock()) as mock_sleep:
        result = await manager.execute_with_retry(flaky)

    assert result == "ok"
    assert attempts == 3
    assert [call.args[0] for call in mock_sleep.await_args_list] == [1.0, 2.0]


@pytest.mark.asyncio
async def test_execute_with_retry_raises_after_exhaustion():
    manager = RetryManager("database")

    async def always_fail():
        raise StatusError(500, "boom")

    with patch("app.shared.core.retry.asyncio.sleep", new=AsyncMock()) as mock_sleep:
        with pytest.raises(StatusError, match="boom"):
            await manager.execute_with_retry(always_fail)

    assert mock_sleep.await_count == manager.config["max_attempts"] - 1


@pytest.mark.asyncio
async def test_execute_with_retry_does_not_retry_permanent_errors():
    manager = RetryManager("database")
    calls = 0

    async def bad_request():
        nonlocal calls
        calls += 1
        raise StatusError(404, "missing")

    with patch("app.shared.core.retry.asyncio.sleep", new=AsyncMock()) as mock_sleep:
        with pytest.raises(StatusError):
            await manager.execute_with_retry(bad_request)

    assert calls == 1
    mock_sleep.assert_not_awaited()


@pytest.mark.asyncio
async def test_execute_with_retry_honors_retry_after_hint():
    manager = RetryManager("database")
    attempts = 0

    async def throttled():
        nonlocal attempts
        attempts += 1
        if attempts == 1:
            raise StatusError(429, "slow down", retry_after=3)
        if attempts == 2:
            raise StatusError(429, "slow down", retry_after=600)
        return "done"

    with patch("app.shared.core.retry.asyncio.sleep", new=AsyncMock()) as mock_sleep:
        assert await manager.execute_with_retry(throttled) == "done"

    # Hints win over backoff but are capped at max_wait (10s for database)
    assert [call.args[0] for call in mock_sleep.await_args_list] == [3.0, 10.0]


@pytest.mark.asyncio
async def test_retry_operation_decorator():
    calls = 0

    @retry_operation("payment")
    async def charge(amount):
        nonlocal calls
        calls += 1
        if calls == 1:
            raise httpx.ConnectError("refused")
        return amount * 2

    with patch("app.shared.core.retry.asyncio.sleep", new=AsyncMock()):
        assert await charge(21) == 42
    assert calls == 2


def test_wait_retry_after_prefers_hint_then_falls_back():
    fallback = lambda state: 1.5  # noqa: E731
    strategy = wait_retry_after(fallback, max_wait=5.0)

    hinted = SimpleNamespace(
        outcome=SimpleNamespace(failed=True, exception=lambda: StatusError(429, retry_after=2))
    )
    capped = SimpleNamespace(
        outcome=SimpleNamespace(failed=True, exception=lambda: StatusError(429, retry_after=60))
    )
    plain = SimpleNamespace(
        outcome=SimpleNamespace(failed=True, exception=lambda: StatusError(503))
    )

    assert strategy(hinted) == 2.0
    assert strategy(capped) == 5.0
    assert strategy(plain) == 1.5


def test_get_and_set_retry_config():
    original = get_retry_config("payment")
    try:
        custom = dict(original, max_attempts=7)
        set_retry_config("payment", custom)
        assert get_retry_config("payment")["max_attempts"] == 7
        # Returned config is a copy
        get_retry_config("payment")["max_attempts"] = 99
        assert RETRY_CONFIGS["payment"]["max_attempts"] == 7
    finally:
        set_retry_config("payment", original)

    with pytest.raises(ValueError, match="Invalid retry configuration"):
        set_retry_config("payment", {"max_attempts": 1})


def test_unknown_operation_falls_back_to_database_config():
    assert get_retry_config("nope") == RETRY_CONFIGS["database"]
