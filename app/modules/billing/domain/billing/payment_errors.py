"""
Payment error mapping.

Turns Stripe and transport failures into a stable shape the API and the
subscription workflow can act on: an error code, a message for logs, a
message safe to show the traveller, and the action they should take.
"""

from __future__ import annotations

import asyncio
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, TypeVar

import httpx
import structlog

from app.shared.core.exceptions import BillingError
from app.shared.core.retry import RETRY_CONFIGS, calculate_retry_delay

logger = structlog.get_logger()
T = TypeVar("T")


class PaymentAction(str, Enum):
    RETRY = "retry"
    UPDATE_PAYMENT_METHOD = "update_payment_method"
    CONTACT_SUPPORT = "contact_support"


@dataclass(frozen=True)
class PaymentErrorDetails:
    code: str
    message: str
    user_message: str
    action: PaymentAction
    retryable: bool
    severity: str = "medium"

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["action"] = self.action.value
        return data


# stripe code -> (our code, user message, action, severity)
_STRIPE_CODE_MAP: dict[str, tuple[str, str, PaymentAction, str]] = {
    "card_declined": (
        "CARD_DECLINED",
        "Your card was declined. Please try a different payment method.",
        PaymentAction.UPDATE_PAYMENT_METHOD,
        "medium",
    ),
    "insufficient_funds": (
        "INSUFFICIENT_FUNDS",
        "Your card has insufficient funds. Please use a different card.",
        PaymentAction.UPDATE_PAYMENT_METHOD,
        "medium",
    ),
    "expired_card": (
        "EXPIRED_CARD",
        "Your card has expired. Please update your payment method.",
        PaymentAction.UPDATE_PAYMENT_METHOD,
        "medium",
    ),
    "incorrect_cvc": (
        "INCORRECT_CVC",
        "Your card's security code is incorrect. Please check and try again.",
        PaymentAction.RETRY,
        "low",
    ),
    "processing_error": (
        "PROCESSING_ERROR",
        "An error occurred while processing your card. Please try again.",
        PaymentAction.RETRY,
        "medium",
    ),
    "rate_limit": (
        "RATE_LIMIT",
        "Too many requests. Please wait a moment and try again.",
        PaymentAction.RETRY,
        "low",
    ),
    "api_key_expired": (
        "AUTHENTICATION_ERROR",
        "Payment system authentication error. Please contact support.",
        PaymentAction.CONTACT_SUPPORT,
        "critical",
    ),
    "authentication_required": (
        "AUTHENTICATION_ERROR",
        "Payment system authentication error. Please contact support.",
        PaymentAction.CONTACT_SUPPORT,
        "critical",
    ),
    "payment_method_unactivated": (
        "PAYMENT_METHOD_UNACTIVATED",
        "Your payment method is not activated. Please use a different method.",
        PaymentAction.UPDATE_PAYMENT_METHOD,
        "medium",
    ),
    "payment_intent_authentication_failure": (
        "AUTHENTICATION_FAILURE",
        "Payment authentication failed. Please try again.",
        PaymentAction.RETRY,
        "medium",
    ),
}

_MISSING_RESOURCES: dict[str, tuple[str, str]] = {
    "customer": ("CUSTOMER_NOT_FOUND", "Customer account not found. Please contact support."),
    "subscription": ("SUBSCRIPTION_NOT_FOUND", "Subscription not found. Please contact support."),
    "invoice": ("INVOICE_NOT_FOUND", "Invoice not found. Please contact support."),
}

SUPPORTED_CURRENCIES = frozenset({"usd", "eur", "gbp", "cad", "aud"})
MIN_AMOUNT = 50
MAX_AMOUNT = 99_999_999


def _missing_resource(exc: Any) -> Optional[tuple[str, str]]:
    haystack = " ".join(
        str(part).lower()
        for part in (getattr(exc, "param", None), getattr(exc, "message", None) or str(exc))
        if part
    )
    for resource, mapped in _MISSING_RESOURCES.items():
        if resource in haystack:
            return mapped
    return None


def handle_stripe_error(exc: BaseException) -> PaymentErrorDetails:
    """Classify a payment failure."""
    stripe_type = getattr(exc, "stripe_type", None)
    message = getattr(exc, "message", None) or str(exc) or type(exc).__name__

    if stripe_type is not None:
        code = getattr(exc, "code", None)
        if code in _STRIPE_CODE_MAP:
            our_code, user_message, action, severity = _STRIPE_CODE_MAP[code]
            return PaymentErrorDetails(
                code=our_code,
                message=message,
                user_message=user_message,
                action=action,
                retryable=action is PaymentAction.RETRY,
                severity=severity,
            )

        if stripe_type == "authentication_error":
            return PaymentErrorDetails(
                code="AUTHENTICATION_ERROR",
                message=message,
                user_message="Payment system authentication error. Please contact support.",
                action=PaymentAction.CONTACT_SUPPORT,
                retryable=False,
                severity="critical",
            )

        if code == "resource_missing":
            missing = _missing_resource(exc)
            if missing:
                our_code, user_message = missing
                return PaymentErrorDetails(
                    code=our_code,
                    message=message,
                    user_message=user_message,
                    action=PaymentAction.CONTACT_SUPPORT,
                    retryable=False,
                    severity="high",
                )

        return PaymentErrorDetails(
            code=str(code).upper() if code else "STRIPE_ERROR",
            message=message,
            user_message="A payment processing error occurred. Please try again.",
            action=PaymentAction.RETRY,
            retryable=True,
        )

    if isinstance(exc, (httpx.TimeoutException, TimeoutError, asyncio.TimeoutError)):
        return PaymentErrorDetails(
            code="TIMEOUT_ERROR",
            message=message,
            user_message="The request timed out. Please try again.",
            action=PaymentAction.RETRY,
            retryable=True,
        )

    if isinstance(exc, (httpx.TransportError, ConnectionError)):
        return PaymentErrorDetails(
            code="NETWORK_ERROR",
            message=message,
            user_message="Network error. Please check your connection and try again.",
            action=PaymentAction.RETRY,
            retryable=True,
        )

    return PaymentErrorDetails(
        code="UNKNOWN_ERROR",
        message=message,
        user_message="An unexpected error occurred. Please try again or contact support.",
        action=PaymentAction.CONTACT_SUPPORT,
        retryable=False,
        severity="high",
    )


def is_retryable_payment_error(exc: BaseException) -> bool:
    return handle_stripe_error(exc).retryable


def get_error_message(exc: BaseException) -> str:
    return handle_stripe_error(exc).user_message


def get_error_action(exc: BaseException) -> str:
    return handle_stripe_error(exc).action.value


class PaymentRetryManager:
    """Re-runs payment operations whose failure maps to the retry action."""

    def __init__(self, config: Optional[dict[str, Any]] = None):
        self.config = config or RETRY_CONFIGS["payment"]

    async def execute_with_retry(
        self,
        operation: Callable[[], Awaitable[T]],
        context: str = "payment_operation",
    ) -> T:
        max_attempts = int(self.config["max_attempts"])
        for attempt in range(max_attempts):
            try:
                return await operation()
            except Exception as e:
                details = handle_stripe_error(e)
                last_attempt = attempt >= max_attempts - 1
                logger.warning(
                    "payment_operation_failed",
                    context=context,
                    attempt=attempt + 1,
                    max_attempts=max_attempts,
                    code=details.code,
                    action=details.action.value,
                )
                if details.action is not PaymentAction.RETRY or last_attempt:
                    raise
                await asyncio.sleep(calculate_retry_delay(attempt, self.config))

        raise RuntimeError("unreachable")  # pragma: no cover


def validate_payment_amount(amount: int, currency: str = "usd") -> None:
    """Raise BillingError when a charge falls outside processor limits."""
    if amount < MIN_AMOUNT:
        raise BillingError(
            "Payment amount must be at least $0.50",
            code="AMOUNT_TOO_SMALL",
            details={"amount": amount, "action": PaymentAction.RETRY.value},
        )
    if amount > MAX_AMOUNT:
        raise BillingError(
            "Payment amount exceeds maximum limit",
            code="AMOUNT_TOO_LARGE",
            details={"amount": amount, "action": PaymentAction.CONTACT_SUPPORT.value},
        )
    if currency.lower() not in SUPPORTED_CURRENCIES:
        raise BillingError(
            f"Currency {currency} is not supported",
            code="UNSUPPORTED_CURRENCY",
            details={"currency": currency, "action": PaymentAction.CONTACT_SUPPORT.value},
        )
