"""Stripe REST client over the shared httpx pool."""

from __future__ import annotations

import uuid
from typing import Any, Iterable, Optional

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
    wait_random,
)

from app.shared.core.config import get_settings
from app.shared.core.exceptions import ConfigurationError
from app.shared.core.http import get_http_client
from app.shared.core.retry import (
    RETRY_CONFIGS,
    is_retryable_error,
    parse_retry_after,
    wait_retry_after,
)

logger = structlog.get_logger()


class StripeAPIError(Exception):
    """Error payload returned by the Stripe API."""

    def __init__(
        self,
        message: str,
        *,
        stripe_type: str = "api_error",
        code: Optional[str] = None,
        decline_code: Optional[str] = None,
        param: Optional[str] = None,
        http_status: Optional[int] = None,
        retry_after: Optional[float] = None,
        request_id: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.stripe_type = stripe_type
        self.code = code
        self.decline_code = decline_code
        self.param = param
        self.http_status = http_status
        self.retry_after = retry_after
        self.request_id = request_id

    @property
    def type(self) -> str:
        return self.stripe_type

    @classmethod
    def from_response(cls, response: httpx.Response) -> "StripeAPIError":
        try:
            body = response.json()
        except ValueError:
            body = {}
        error = body.get("error") if isinstance(body, dict) else None
        if not isinstance(error, dict):
            error = {}

        return cls(
            str(error.get("message") or f"Stripe API returned {response.status_code}"),
            stripe_type=str(error.get("type") or _type_for_status(response.status_code)),
            code=error.get("code"),
            decline_code=error.get("decline_code"),
            param=error.get("param"),
            http_status=response.status_code,
            retry_after=parse_retry_after(response.headers.get("Retry-After")),
            request_id=response.headers.get("Request-Id"),
        )


def _type_for_status(status_code: int) -> str:
    if status_code == 401:
        return "authentication_error"
    if status_code == 402:
        return "card_error"
    if status_code == 429:
        return "rate_limit_error"
    if status_code >= 500:
        return "api_error"
    return "invalid_request_error"


def _scalar(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def encode_form(params: dict[str, Any], prefix: Optional[str] = None) -> list[tuple[str, str]]:
    """
    Flatten nested params into Stripe's bracket form encoding.

    {"items": [{"price": "p_1"}], "metadata": {"tier": "explorer"}} ->
    [("items[0][price]", "p_1"), ("metadata[tier]", "explorer")]
    """
    pairs: list[tuple[str, str]] = []
    for key, value in params.items():
        if value is None:
            continue
        full_key = f"{prefix}[{key}]" if prefix else str(key)
        if isinstance(value, dict):
            pairs.extend(encode_form(value, full_key))
        elif isinstance(value, (list, tuple)):
            for index, item in enumerate(value):
                item_key = f"{full_key}[{index}]"
                if isinstance(item, dict):
                    pairs.extend(encode_form(item, item_key))
                else:
                    pairs.append((item_key, _scalar(item)))
        else:
            pairs.append((full_key, _scalar(value)))
    return pairs


def _expand(expand: Optional[Iterable[str]]) -> dict[str, Any]:
    return {"expand": list(expand)} if expand else {}


class StripeClient:
    """Async wrapper for the Stripe operations the billing flows use."""

    def __init__(
        self,
        secret_key: Optional[str] = None,
        *,
        base_url: Optional[str] = None,
        retry_config: Optional[dict[str, Any]] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        settings = get_settings()
        self.secret_key = secret_key or settings.STRIPE_SECRET_KEY
        if not self.secret_key:
            raise ConfigurationError("STRIPE_SECRET_KEY not configured")

        self.base_url = (base_url or settings.STRIPE_API_BASE_URL).rstrip("/")
        self.api_version = settings.STRIPE_API_VERSION
        self.timeout = settings.STRIPE_TIMEOUT_SECONDS
        self.retry_config = retry_config or RETRY_CONFIGS["external_api"]
        self._http_client = http_client

    def _headers(self, idempotency_key: Optional[str]) -> dict[str, str]:
        headers = {"Authorization": f"Bearer {self.secret_key}"}
        if self.api_version:
            headers["Stripe-Version"] = self.api_version
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        return headers

    def _retrying(self) -> AsyncRetrying:
        cfg = self.retry_config
        backoff = wait_exponential(
            multiplier=cfg["min_wait"], exp_base=cfg["multiplier"], max=cfg["max_wait"]
        )
        if cfg.get("jitter"):
            backoff = backoff + wait_random(0, float(cfg["min_wait"]) / 2)
        return AsyncRetrying(
            stop=stop_after_attempt(cfg["max_attempts"]),
            wait=wait_retry_after(backoff, max_wait=float(cfg["max_wait"])),
            retry=retry_if_exception(is_retryable_error),
            reraise=True,
            before_sleep=self._log_retry,
        )

    @staticmethod
    def _log_retry(retry_state: Any) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            "stripe_request_retrying",
            attempt=retry_state.attempt_number,
            error=str(exc),
            error_type=type(exc).__name__ if exc else None,
        )

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
    ) -> dict[str, Any]:
        client = self._http_client or get_http_client()
        url = f"{self.base_url}/{path.lstrip('/')}"
        encoded = encode_form(params or {})
        # One key per logical call so retried POSTs are not applied twice
        if method == "POST" and idempotency_key is None:
            idempotency_key = str(uuid.uuid4())
        headers = self._headers(idempotency_key if method == "POST" else None)

        async for attempt in self._retrying():
            with attempt:
                if method == "POST":
                    response = await client.request(
                        method, url, data=dict(encoded), headers=headers, timeout=self.timeout
                    )
                else:
                    response = await client.request(
                        method, url, params=encoded, headers=headers, timeout=self.timeout
                    )

                if response.status_code >= 400:
                    error = StripeAPIError.from_response(response)
                    logger.warning(
                        "stripe_api_error",
                        path=path,
                        status_code=response.status_code,
                        stripe_type=error.stripe_type,
                        code=error.code,
                        request_id=error.request_id,
                    )
                    raise error

                payload = response.json()
                if not isinstance(payload, dict):
                    raise StripeAPIError(
                        "Invalid Stripe response payload type",
                        http_status=response.status_code,
                    )
                return payload

        raise RuntimeError("unreachable")  # pragma: no cover

    # Customers
    async def retrieve_customer(self, customer_id: str) -> dict[str, Any]:
        return await self._request("GET", f"customers/{customer_id}")

    async def create_customer(
        self,
        email: str,
        name: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        return await self._request(
            "POST",
            "customers",
            {"email": email, "name": name, "metadata": metadata or {}},
        )

    # Subscriptions
    async def retrieve_subscription(
        self, subscription_id: str, expand: Optional[Iterable[str]] = None
    ) -> dict[str, Any]:
        return await self._request(
            "GET", f"subscriptions/{subscription_id}", _expand(expand)
        )

    async def update_subscription(self, subscription_id: str, **params: Any) -> dict[str, Any]:
        return await self._request("POST", f"subscriptions/{subscription_id}", params)

    async def cancel_subscription(self, subscription_id: str) -> dict[str, Any]:
        return await self._request("DELETE", f"subscriptions/{subscription_id}")

    # Prices
    async def create_price(
        self,
        *,
        unit_amount: int,
        interval: str,
        product_name: str,
        currency: str = "usd",
        metadata: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        return await self._request(
            "POST",
            "prices",
            {
                "currency": currency,
                "unit_amount": unit_amount,
                "recurring": {"interval": interval},
                "product_data": {"name": product_name, "metadata": metadata or {}},
                "metadata": metadata or {},
            },
        )

    async def deactivate_price(self, price_id: str) -> dict[str, Any]:
        return await self._request("POST", f"prices/{price_id}", {"active": False})

    # Subscription schedules
    async def create_subscription_schedule(
        self, from_subscription: str, phases: Optional[list[dict[str, Any]]] = None
    ) -> dict[str, Any]:
        schedule = await self._request(
            "POST", "subscription_schedules", {"from_subscription": from_subscription}
        )
        if not phases:
            return schedule
        # Stripe rejects phases alongside from_subscription; apply them as an update.
        return await self._request(
            "POST",
            f"subscription_schedules/{schedule['id']}",
            {"phases": phases, "end_behavior": "release"},
        )

    # Invoices
    async def retrieve_invoice(self, invoice_id: str) -> dict[str, Any]:
        return await self._request("GET", f"invoices/{invoice_id}")

    async def pay_invoice(self, invoice_id: str) -> dict[str, Any]:
        return await self._request("POST", f"invoices/{invoice_id}/pay")

    async def upcoming_invoice(self, **params: Any) -> dict[str, Any]:
        return await self._request("GET", "invoices/upcoming", params)

    # Checkout and portal
    async def create_checkout_session(
        self,
        *,
        customer_id: str,
        unit_amount: int,
        interval: str,
        product_name: str,
        success_url: str,
        cancel_url: str,
        metadata: dict[str, Any],
        client_reference_id: Optional[str] = None,
    ) -> dict[str, Any]:
        return await self._request(
            "POST",
            "checkout/sessions",
            {
                "mode": "subscription",
                "customer": customer_id,
                "client_reference_id": client_reference_id,
                "success_url": success_url,
                "cancel_url": cancel_url,
                "line_items": [
                    {
                        "quantity": 1,
                        "price_data": {
                            "currency": "usd",
                            "unit_amount": unit_amount,
                            "recurring": {"interval": interval},
                            "product_data": {"name": product_name},
                        },
                    }
                ],
                "metadata": metadata,
                "subscription_data": {"metadata": metadata},
            },
        )

    async def create_portal_session(self, customer_id: str, return_url: str) -> dict[str, Any]:
        return await self._request(
            "POST",
            "billing_portal/sessions",
            {"customer": customer_id, "return_url": return_url},
        )


def get_stripe_client() -> StripeClient:
    """FastAPI dependency for a Stripe client bound to current settings."""
    return StripeClient()
