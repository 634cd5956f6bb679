from functools import lru_cache
from threading import Lock
from typing import Optional
import structlog
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import model_validator

# Environment Constants
ENV_PRODUCTION = "production"
ENV_STAGING = "staging"
ENV_DEVELOPMENT = "development"
ENV_LOCAL = "local"


@lru_cache
def get_settings() -> "Settings":
    """Returns a singleton instance of the application settings."""
    return Settings()


_settings_reload_lock = Lock()


def reload_settings_from_environment() -> "Settings":
    """
    Atomically rebuild and replace cached settings from environment values.

    This avoids mutating the cached singleton instance in-place.
    """
    logger = structlog.get_logger()
    with _settings_reload_lock:
        logger.info("settings_reload_started")
        get_settings.cache_clear()
        refreshed = get_settings()
        logger.info("settings_reload_completed")
        return refreshed


class Settings(BaseSettings):
    """
    Main configuration for the Wayfarer billing backend.
    Uses Pydantic-Settings for environment variable parsing from .env.
    """

    APP_NAME: str = "Wayfarer"
    VERSION: str = "0.1.0"
    DEBUG: bool = False
    # ENVIRONMENT options: local, development, staging, production
    ENVIRONMENT: str = ENV_DEVELOPMENT
    API_URL: str = "http://localhost:8000"
    TESTING: bool = False
    RATELIMIT_ENABLED: bool = True
    # In staging/production, distributed rate limiting is required by default.
    ALLOW_IN_MEMORY_RATE_LIMITS: bool = False
    ALLOW_REDIS_IN_TESTS: bool = False
    # Number of trusted reverse-proxy hops when resolving client IP from XFF.
    TRUSTED_PROXY_HOPS: int = 1

    @model_validator(mode="after")
    def validate_all_config(self) -> "Settings":
        """
        Centralized validation orchestrator.
        Groups validation by concern for clarity and specificity.
        """
        if self.TESTING and self.ENVIRONMENT in {ENV_PRODUCTION, ENV_STAGING}:
            raise ValueError(
                "TESTING must be false in staging/production runtime environments."
            )
        if self.TESTING:
            return self

        self._validate_core_secrets()
        self._validate_database_config()
        self._validate_billing_config()
        self._validate_retry_config()
        self._validate_environment_safety()

        return self

    def _validate_core_secrets(self) -> None:
        """Validates the JWT secret shared with the auth provider."""
        secret = self.SUPABASE_JWT_SECRET
        if not secret or len(secret) < 32:
            raise ValueError(
                "SUPABASE_JWT_SECRET must be set to a secure value (>= 32 chars)."
            )

    def _validate_database_config(self) -> None:
        """Validates database and redis connectivity settings."""
        if self.is_production:
            if not self.DATABASE_URL:
                raise ValueError("DATABASE_URL is required in production.")
            if self.DB_SSL_MODE not in ["require", "verify-ca", "verify-full"]:
                raise ValueError(
                    f"SECURITY ERROR: DB_SSL_MODE must be secure in production (current: {self.DB_SSL_MODE})."
                )
            if (
                self.DB_SSL_MODE in {"verify-ca", "verify-full"}
                and not self.DB_SSL_CA_CERT_PATH
            ):
                raise ValueError(
                    "DB_SSL_CA_CERT_PATH is mandatory when DB_SSL_MODE is verify-ca or verify-full in production."
                )

        # Redis URL construction fallback
        if not self.REDIS_URL and self.REDIS_HOST and self.REDIS_PORT:
            self.REDIS_URL = f"redis://{self.REDIS_HOST}:{self.REDIS_PORT}"

        if self.DB_SLOW_QUERY_THRESHOLD_SECONDS <= 0:
            raise ValueError("DB_SLOW_QUERY_THRESHOLD_SECONDS must be > 0.")

    def _validate_billing_config(self) -> None:
        """Validates Stripe credentials."""
        if self.STRIPE_WEBHOOK_TOLERANCE_SECONDS < 0:
            raise ValueError("STRIPE_WEBHOOK_TOLERANCE_SECONDS must be >= 0.")

        if self.is_production:
            if not self.STRIPE_SECRET_KEY or not self.STRIPE_SECRET_KEY.startswith(
                ("sk_live_", "rk_live_")
            ):
                raise ValueError(
                    "STRIPE_SECRET_KEY must be a live key (sk_live_...) in production."
                )
            if not self.STRIPE_WEBHOOK_SECRET or not self.STRIPE_WEBHOOK_SECRET.startswith(
                "whsec_"
            ):
                raise ValueError(
                    "STRIPE_WEBHOOK_SECRET (whsec_...) is required in production."
                )
            if not self.STRIPE_PUBLISHABLE_KEY:
                raise ValueError("STRIPE_PUBLISHABLE_KEY is required in production.")
        elif not self.STRIPE_SECRET_KEY:
            structlog.get_logger().info("stripe_secret_key_missing_non_prod")

    def _validate_retry_config(self) -> None:
        """Validates webhook retry policy bounds."""
        if self.WEBHOOK_MAX_RETRIES < 0 or self.WEBHOOK_MAX_RETRIES > 10:
            raise ValueError("WEBHOOK_MAX_RETRIES must be between 0 and 10.")
        if self.WEBHOOK_RETRY_BASE_DELAY_SECONDS <= 0:
            raise ValueError("WEBHOOK_RETRY_BASE_DELAY_SECONDS must be > 0.")
        if self.WEBHOOK_RETRY_MAX_DELAY_SECONDS < self.WEBHOOK_RETRY_BASE_DELAY_SECONDS:
            raise ValueError(
                "WEBHOOK_RETRY_MAX_DELAY_SECONDS must be >= WEBHOOK_RETRY_BASE_DELAY_SECONDS."
            )
        if self.WEBHOOK_RETRY_MULTIPLIER < 1:
            raise ValueError("WEBHOOK_RETRY_MULTIPLIER must be >= 1.")
        if self.WEBHOOK_DEAD_LETTER_THRESHOLD < 1:
            raise ValueError("WEBHOOK_DEAD_LETTER_THRESHOLD must be >= 1.")

    def _validate_environment_safety(self) -> None:
        """Validates network and deployment safety."""
        if self.TRUSTED_PROXY_HOPS < 1 or self.TRUSTED_PROXY_HOPS > 5:
            raise ValueError("TRUSTED_PROXY_HOPS must be between 1 and 5.")

        if self.is_production or self.ENVIRONMENT == ENV_STAGING:
            if (
                self.RATELIMIT_ENABLED
                and not self.REDIS_URL
                and not self.ALLOW_IN_MEMORY_RATE_LIMITS
            ):
                raise ValueError(
                    "REDIS_URL is required for distributed rate limiting in "
                    "staging/production. Set ALLOW_IN_MEMORY_RATE_LIMITS=true only "
                    "for temporary break-glass usage."
                )

            logger = structlog.get_logger()
            if any("localhost" in o or "127.0.0.1" in o for o in self.CORS_ORIGINS):
                logger.warning("cors_localhost_in_production")

            for url in [self.API_URL, self.FRONTEND_URL]:
                if url and url.startswith("http://"):
                    logger.warning("insecure_url_in_production", url=url)

    CORS_ORIGINS: list[str] = []  # Empty by default - restricted in prod
    FRONTEND_URL: str = "http://localhost:3000"  # Used for checkout/portal returns

    DATABASE_URL: Optional[str] = None  # Required in prod, optional in dev/test
    DB_SSL_MODE: str = "require"  # Options: disable, require, verify-ca, verify-full
    DB_SSL_CA_CERT_PATH: Optional[str] = None
    DB_POOL_SIZE: int = 20
    DB_MAX_OVERFLOW: int = 10
    DB_POOL_TIMEOUT: int = 30
    DB_POOL_RECYCLE: int = 3600
    DB_ECHO: bool = False
    DB_SLOW_QUERY_THRESHOLD_SECONDS: float = 0.2
    DB_USE_NULL_POOL: bool = False
    ALLOW_TEST_DATABASE_URL: bool = False

    SUPABASE_URL: Optional[str] = None
    SUPABASE_JWT_SECRET: Optional[str] = None  # Required for auth dependency

    REDIS_URL: Optional[str] = None
    REDIS_HOST: Optional[str] = None
    REDIS_PORT: Optional[str] = None

    # Stripe
    STRIPE_SECRET_KEY: Optional[str] = None
    STRIPE_PUBLISHABLE_KEY: Optional[str] = None
    STRIPE_WEBHOOK_SECRET: Optional[str] = None
    STRIPE_API_BASE_URL: str = "https://api.stripe.com/v1"
    STRIPE_API_VERSION: Optional[str] = None
    STRIPE_WEBHOOK_TOLERANCE_SECONDS: int = 300
    STRIPE_TIMEOUT_SECONDS: float = 20.0

    # Webhook reconciliation policy
    WEBHOOK_MAX_RETRIES: int = 3
    WEBHOOK_RETRY_BASE_DELAY_SECONDS: float = 2.0
    WEBHOOK_RETRY_MAX_DELAY_SECONDS: float = 30.0
    WEBHOOK_RETRY_MULTIPLIER: float = 2.0
    WEBHOOK_DEAD_LETTER_THRESHOLD: int = 3
    WEBHOOK_FAILED_EVENTS_WARNING_THRESHOLD: int = 5

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore", env_ignore_empty=True
    )

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == ENV_PRODUCTION
