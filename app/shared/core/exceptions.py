from typing import Optional, Dict, Any


class WayfarerException(Exception):
    """Base exception for all Wayfarer errors."""

    def __init__(
        self,
        message: str,
        code: str = "internal_error",
        status_code: int = 500,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.status_code = status_code
        self.details = details or {}


class AuthError(WayfarerException):
    """Raised when authentication or authorization fails."""

    def __init__(
        self, message: str, code: str = "auth_error", details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message, code=code, status_code=401, details=details)


class ConfigurationError(WayfarerException):
    """Raised when application configuration is invalid or missing."""

    def __init__(
        self, message: str, code: str = "config_error", details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message, code=code, status_code=500, details=details)


class ResourceNotFoundError(WayfarerException):
    """Raised when a requested resource is not found."""

    def __init__(
        self, message: str, code: str = "not_found", details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message, code=code, status_code=404, details=details)


class BillingError(WayfarerException):
    """Raised when payment or subscription processing fails permanently."""

    def __init__(
        self, message: str, code: str = "billing_error", details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message, code=code, status_code=400, details=details)


class ExternalAPIError(WayfarerException):
    """Raised when an upstream API (payments processor, auth provider) fails."""

    def __init__(
        self,
        message: str,
        code: str = "external_api_error",
        status_code: int = 502,
        details: Optional[Dict[str, Any]] = None,
        retry_after: Optional[float] = None,
    ):
        super().__init__(message, code=code, status_code=status_code, details=details)
        self.retry_after = retry_after


class WebhookSignatureError(WayfarerException):
    """Raised when an inbound webhook cannot be authenticated."""

    def __init__(
        self, message: str, code: str = "invalid_signature", details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message, code=code, status_code=400, details=details)


class UsageLimitExceededError(WayfarerException):
    """Raised when an action would exceed the subscription tier's limits."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="usage_limit_exceeded", status_code=402, details=details)
