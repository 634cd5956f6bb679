"""
Retry Logic with Exponential Backoff

Provides retry mechanisms for transient failures in webhook processing,
database operations and calls to hosted APIs (Stripe, Supabase).

Classification rules are shared by every caller: transport failures, 5xx and
429 responses are retried, any other 4xx is permanent.
"""
import asyncio
import errno
import random
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Callable, Optional, TypeVar
from functools import wraps

import httpx
import structlog
from tenacity import RetryCallState
from tenacity.wait import wait_base

from app.shared.core.ops_metrics import RETRY_ATTEMPTS_TOTAL

logger = structlog.get_logger()
T = TypeVar('T')

_TRANSPORT_ERRORS = (
    httpx.TransportError,
    ConnectionError,
    TimeoutError,
    asyncio.TimeoutError,
)
_TRANSPORT_ERRNOS = {errno.ECONNREFUSED, errno.ETIMEDOUT}
_TRANSPORT_CODES = {"ECONNREFUSED", "ETIMEDOUT"}

# Default retry configurations
RETRY_CONFIGS: dict[str, dict[str, Any]] = {
    "webhook": {
        "max_attempts": 4,  # initial delivery + 3 retries
        "min_wait": 2.0,
        "max_wait": 30.0,
        "multiplier": 2.0,
        "jitter": False,
        "exceptions": (Exception,),
    },
    "database": {
        "max_attempts": 4,
        "min_wait": 1.0,
        "max_wait": 10.0,
        "multiplier": 2.0,
        "jitter": False,
        "exceptions": (Exception,),
    },
    "payment": {
        "max_attempts": 3,
        "min_wait": 1.0,
        "max_wait": 10.0,
        "multiplier": 2.0,
        "jitter": False,
        "exceptions": (Exception,),
    },
    "external_api": {
        "max_attempts": 3,
        "min_wait": 0.5,
        "max_wait": 8.0,
        "multiplier": 2.0,
        "jitter": True,
        "exceptions": (Exception,),
    },
}

_REQUIRED_KEYS = {"max_attempts", "min_wait", "max_wait", "multiplier", "exceptions"}


def calculate_retry_delay(attempt: int, config: Optional[dict[str, Any]] = None) -> float:
    """
    Exponential backoff for a zero-based attempt index.

    delay = min(min_wait * multiplier ** attempt, max_wait), optionally with
    +/-25% jitter when the policy enables it.
    """
    config = config or RETRY_CONFIGS["webhook"]
    base_delay = float(config["min_wait"])
    max_delay = float(config["max_wait"])
    multiplier = float(config["multiplier"])

    delay = min(base_delay * (multiplier ** max(attempt, 0)), max_delay)

    if config.get("jitter"):
        # +/-25% so concurrent clients do not retry in lockstep
        delay = delay + delay * 0.25 * (random.random() * 2 - 1)
        delay = min(max(delay, 0.001), max_delay)

    return delay


def parse_retry_after(value: Any) -> Optional[float]:
    """Parse a Retry-After header (delta-seconds or HTTP-date) into seconds."""
    if value is None:
        return None
    if isinstance(value, (int, float)):
        return max(float(value), 0.0)

    text = str(value).strip()
    if not text:
        return None

    try:
        return max(float(text), 0.0)
    except ValueError:
        pass

    try:
        retry_at = parsedate_to_datetime(text)
    except (TypeError, ValueError, IndexError):
        return None
    if retry_at is None:
        return None
    if retry_at.tzinfo is None:
        retry_at = retry_at.replace(tzinfo=timezone.utc)

    delta = (retry_at - datetime.now(timezone.utc)).total_seconds()
    return max(delta, 0.0)


def extract_status_code(exc: BaseException) -> Optional[int]:
    """Best-effort HTTP status lookup across httpx, Stripe and app errors."""
    for attr in ("status_code", "http_status"):
        value = getattr(exc, attr, None)
        if isinstance(value, int):
            return value

    response = getattr(exc, "response", None)
    if response is not None:
        value = getattr(response, "status_code", None)
        if isinstance(value, int):
            return value
    return None


def _is_transport_error(exc: BaseException) -> bool:
    if isinstance(exc, _TRANSPORT_ERRORS):
        return True
    if getattr(exc, "errno", None) in _TRANSPORT_ERRNOS:
        return True
    code = getattr(exc, "code", None)
    return isinstance(code, str) and code.upper() in _TRANSPORT_CODES


def is_retryable_error(exc: BaseException) -> bool:
    """
    Decide whether a failure is worth re-attempting.

    Order matters: transport failures and connection/timeout messages win
    over any status code, then 5xx and 429 are retryable and remaining 4xx
    are permanent. Unclassified errors default to retryable.
    """
    if _is_transport_error(exc):
        return True

    message = str(exc).lower()
    if "connection" in message or "timeout" in message:
        return True

    status = extract_status_code(exc)
    if status is not None:
        if status >= 500:
            return True
        if status == 429:
            return True
        if 400 <= status < 500:
            return False

    return True


def _retry_after_hint(exc: BaseException) -> Optional[float]:
    hint = getattr(exc, "retry_after", None)
    if hint is None:
        return None
    return parse_retry_after(hint)


class RetryManager:
    """Manages retry logic with configurable backoff strategies."""

    def __init__(self, operation_type: str = "default", config: Optional[dict[str, Any]] = None):
        self.operation_type = operation_type
        self.config = config or RETRY_CONFIGS.get(operation_type, {
            "max_attempts": 3,
            "min_wait": 0.1,
            "max_wait": 2.0,
            "multiplier": 2.0,
            "jitter": False,
            "exceptions": (Exception,),
        })

    def _should_retry(self, exc: Exception) -> bool:
        if not isinstance(exc, self.config["exceptions"]):
            return False
        predicate = self.config.get("retry_if") or is_retryable_error
        return bool(predicate(exc))

    def _delay_for(self, attempt: int, exc: Exception) -> float:
        hint = _retry_after_hint(exc)
        if hint is not None:
            return min(hint, float(self.config["max_wait"]))
        return calculate_retry_delay(attempt, self.config)

    async def execute_with_retry(self, coro: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """Execute a coroutine with retry logic."""
        max_attempts = int(self.config["max_attempts"])
        last_exception: Optional[Exception] = None

        for attempt in range(max_attempts):
            try:
                result = await coro(*args, **kwargs)

                if attempt > 0:
                    logger.info(
                        "operation_succeeded_after_retry",
                        operation_type=self.operation_type,
                        attempt=attempt + 1,
                        max_attempts=max_attempts,
                    )

                return result

            except Exception as e:
                last_exception = e

                if not self._should_retry(e):
                    logger.warning(
                        "operation_failed_not_retryable",
                        operation_type=self.operation_type,
                        attempt=attempt + 1,
                        error=str(e),
                        error_type=type(e).__name__,
                    )
                    raise

                if attempt < max_attempts - 1:
                    delay = self._delay_for(attempt, e)
                    logger.warning(
                        "operation_failed_will_retry",
                        operation_type=self.operation_type,
                        attempt=attempt + 1,
                        max_attempts=max_attempts,
                        delay_seconds=round(delay, 3),
                        error=str(e),
                        error_type=type(e).__name__
                    )
                    RETRY_ATTEMPTS_TOTAL.labels(operation_type=self.operation_type).inc()

                    await asyncio.sleep(delay)
                else:
                    logger.error(
                        "operation_failed_all_retries_exhausted",
                        operation_type=self.operation_type,
                        total_attempts=max_attempts,
                        error=str(e),
                        error_type=type(e).__name__
                    )

        # All retries exhausted
        assert last_exception is not None
        raise last_exception


def retry_operation(operation_type: str = "default") -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """
    Decorator for operations that need retry logic.

    Usage:
        @retry_operation("database")
        async def load_profile():
            ...
    """
    def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            retry_manager = RetryManager(operation_type)
            return await retry_manager.execute_with_retry(func, *args, **kwargs)
        return wrapper
    return decorator


# Pre-configured retry decorators for common operations
retry_database = retry_operation("database")
retry_external_api = retry_operation("external_api")
retry_payment = retry_operation("payment")


class wait_retry_after(wait_base):
    """
    Tenacity wait strategy that prefers a server-provided Retry-After hint.

    Falls back to the wrapped strategy when the failed attempt carries no
    `retry_after` attribute. Hints are capped at `max_wait`.
    """

    def __init__(self, fallback: wait_base, max_wait: float) -> None:
        self.fallback = fallback
        self.max_wait = max_wait

    def __call__(self, retry_state: RetryCallState) -> float:
        outcome = retry_state.outcome
        if outcome is not None and outcome.failed:
            exc = outcome.exception()
            if exc is not None:
                hint = _retry_after_hint(exc)
                if hint is not None:
                    return min(hint, self.max_wait)
        return float(self.fallback(retry_state))


def get_retry_config(operation_type: str) -> dict[str, Any]:
    """Get retry configuration for an operation type."""
    return RETRY_CONFIGS.get(operation_type, RETRY_CONFIGS["database"]).copy()


def set_retry_config(operation_type: str, config: dict[str, Any]) -> None:
    """Set custom retry configuration for an operation type."""
    if not all(key in config for key in _REQUIRED_KEYS):
        raise ValueError(f"Invalid retry configuration for {operation_type}")

    RETRY_CONFIGS[operation_type] = config.copy()
    logger.info(
        "retry_config_updated",
        operation_type=operation_type,
        max_attempts=config["max_attempts"],
    )
