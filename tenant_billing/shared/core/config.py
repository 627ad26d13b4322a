from functools import lru_cache
from threading import Lock
from typing import Optional

import structlog
from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Environment Constants
ENV_PRODUCTION = "production"
ENV_STAGING = "staging"
ENV_DEVELOPMENT = "development"
ENV_LOCAL = "local"

ASAAS_ENV_SANDBOX = "sandbox"
ASAAS_ENV_PRODUCTION = "production"


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
    Main configuration for the tenant billing reconciler.
    Uses Pydantic-Settings for environment variable parsing from .env.
    """

    APP_NAME: str = "Tenant Billing Reconciler"
    VERSION: str = "0.1.0"
    DEBUG: bool = False
    # ENVIRONMENT options: local, development, staging, production
    ENVIRONMENT: str = ENV_DEVELOPMENT
    TESTING: bool = False

    # Database
    DATABASE_URL: Optional[str] = None
    DB_ECHO: bool = False
    DB_POOL_SIZE: int = 10
    DB_MAX_OVERFLOW: int = 20

    # ASAAS payment processor
    ASAAS_API_KEY: Optional[str] = None
    ASAAS_ENVIRONMENT: str = ASAAS_ENV_SANDBOX
    ASAAS_TIMEOUT_SECONDS: float = 30.0
    # Attempts for idempotent reads on transport errors; writes are never retried.
    ASAAS_MAX_RETRIES: int = 3
    # Shared secret ASAAS sends in the `asaas-access-token` header.
    ASAAS_WEBHOOK_TOKEN: Optional[str] = None

    # Billing policy
    BILLING_SUSPENSION_THRESHOLD_DAYS: int = 15
    BILLING_SYNC_PRESERVE_TRIAL_ON_REMOTE_ACTIVE: bool = True
    BILLING_DEFAULT_BILLING_TYPE: str = "BOLETO"
    BILLING_CURRENCY: str = "BRL"

    # Webhook ledger
    WEBHOOK_SOURCE: str = "asaas"
    WEBHOOK_MAX_ATTEMPTS: int = 3
    WEBHOOK_STALE_LOCK_MINUTES: int = 30
    WEBHOOK_RETRY_BATCH_SIZE: int = 50

    # Internal scheduler authentication for retry sweeps.
    INTERNAL_JOB_SECRET: Optional[str] = None

    @model_validator(mode="after")
    def validate_all_config(self) -> "Settings":
        """Centralized validation orchestrator, grouped by concern."""
        if self.TESTING and self.ENVIRONMENT in {ENV_PRODUCTION, ENV_STAGING}:
            raise ValueError(
                "TESTING must be false in staging/production runtime environments."
            )

        self._validate_billing_config()
        self._validate_webhook_config()
        if self.TESTING:
            return self

        self._validate_environment_safety()
        return self

    def _validate_billing_config(self) -> None:
        """Validates processor selection and billing policy knobs."""
        if self.ASAAS_ENVIRONMENT not in {ASAAS_ENV_SANDBOX, ASAAS_ENV_PRODUCTION}:
            raise ValueError(
                f"ASAAS_ENVIRONMENT must be 'sandbox' or 'production' (got {self.ASAAS_ENVIRONMENT!r})."
            )
        if self.BILLING_SUSPENSION_THRESHOLD_DAYS < 1:
            raise ValueError("BILLING_SUSPENSION_THRESHOLD_DAYS must be >= 1.")
        if self.ASAAS_TIMEOUT_SECONDS <= 0:
            raise ValueError("ASAAS_TIMEOUT_SECONDS must be > 0.")
        if self.ASAAS_MAX_RETRIES < 1:
            raise ValueError("ASAAS_MAX_RETRIES must be >= 1.")

    def _validate_webhook_config(self) -> None:
        """Validates webhook ledger retry bounds."""
        if self.WEBHOOK_MAX_ATTEMPTS < 1:
            raise ValueError("WEBHOOK_MAX_ATTEMPTS must be >= 1.")
        if self.WEBHOOK_STALE_LOCK_MINUTES < 1:
            raise ValueError("WEBHOOK_STALE_LOCK_MINUTES must be >= 1.")
        if self.WEBHOOK_RETRY_BATCH_SIZE < 1:
            raise ValueError("WEBHOOK_RETRY_BATCH_SIZE must be >= 1.")

    def _validate_environment_safety(self) -> None:
        """Production must not run with placeholder processor credentials."""
        if not self.is_production:
            return

        if not self.DATABASE_URL:
            raise ValueError("DATABASE_URL is required in production.")
        if not self.ASAAS_API_KEY:
            raise ValueError("ASAAS_API_KEY is required in production.")
        if self.ASAAS_ENVIRONMENT != ASAAS_ENV_PRODUCTION:
            raise ValueError(
                "ASAAS_ENVIRONMENT must be 'production' when ENVIRONMENT is production."
            )
        if not self.ASAAS_WEBHOOK_TOKEN:
            raise ValueError(
                "ASAAS_WEBHOOK_TOKEN is required in production to authenticate webhooks."
            )
        if not self.INTERNAL_JOB_SECRET or len(self.INTERNAL_JOB_SECRET) < 32:
            raise ValueError(
                "INTERNAL_JOB_SECRET must be set to a secure value (>= 32 chars)."
            )

    model_config = SettingsConfigDict(env_file=".env", env_ignore_empty=True)

    @property
    def is_production(self) -> bool:
        """True only when ENVIRONMENT is explicitly set to 'production'."""
        return self.ENVIRONMENT == ENV_PRODUCTION
