"""Application settings using Pydantic for environment-based configuration."""
from decimal import Decimal
from functools import lru_cache
from typing import Dict, List

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Stripe Configuration (card processor)
    stripe_secret_key: str = Field(..., description="Stripe secret API key (sk_test_...)")
    stripe_webhook_secret: str = Field(..., description="Stripe webhook signing secret")
    stripe_api_version: str = Field(default="2023-10-16", description="Stripe API version")

    # PayPal Configuration (wallet processor)
    paypal_client_id: str = Field(default="", description="PayPal REST client id")
    paypal_client_secret: str = Field(default="", description="PayPal REST client secret")
    paypal_webhook_id: str = Field(default="", description="PayPal webhook id used for verification")
    paypal_environment: str = Field(default="sandbox", description="PayPal environment (sandbox/live)")
    paypal_brand_name: str = Field(
        default="Payment Gateway Hub", description="Brand name shown on the PayPal approval page"
    )

    # Database Configuration
    database_url: str = Field(..., description="Database connection URL")
    database_pool_size: int = Field(default=20, description="Database connection pool size")
    database_max_overflow: int = Field(default=50, description="Max database connection overflow")
    database_echo: bool = Field(default=False, description="Echo SQL queries (debug)")

    # Redis Configuration
    redis_url: str = Field(..., description="Redis connection URL")
    redis_lock_timeout: int = Field(default=30, description="Per-transaction lock timeout (seconds)")
    redis_lock_blocking_timeout: float = Field(
        default=10.0, description="How long to wait for a per-transaction lock (seconds)"
    )

    # Application Configuration
    app_name: str = Field(default="payment-gateway-hub", description="Application name")
    app_env: str = Field(default="development", description="Environment (development/test/production)")
    log_level: str = Field(default="INFO", description="Logging level")
    debug: bool = Field(default=False, description="Debug mode")

    # API Configuration
    api_host: str = Field(default="0.0.0.0", description="API host")
    api_port: int = Field(default=8000, description="API port")
    api_workers: int = Field(default=4, description="Number of API workers")
    allowed_origins: str = Field(
        default="http://localhost:3000,http://localhost:8000",
        description="CORS allowed origins (comma-separated)"
    )

    # Provider calls
    provider_timeout_seconds: float = Field(default=10.0, description="Timeout for a single provider call")
    provider_max_attempts: int = Field(
        default=3, description="Inline attempts for transient provider errors"
    )
    provider_retry_wait_min: float = Field(default=0.5, description="Min inline retry wait (seconds)")
    provider_retry_wait_max: float = Field(default=8.0, description="Max inline retry wait (seconds)")
    circuit_breaker_failure_threshold: int = Field(
        default=5, description="Consecutive failures before a provider circuit opens"
    )
    circuit_breaker_reset_seconds: int = Field(
        default=60, description="Seconds before an open circuit is probed again"
    )

    # Retry scheduling
    retry_max_attempts: int = Field(default=3, description="Max confirmation attempts per transaction")
    retry_initial_delay_seconds: float = Field(default=1.0, description="Initial retry backoff (seconds)")
    retry_max_delay_seconds: float = Field(default=30.0, description="Retry backoff ceiling (seconds)")
    retry_batch_size: int = Field(default=50, description="Transactions or events handled per sweep")
    retry_transaction_interval_seconds: float = Field(
        default=60.0, description="Interval between transaction retry sweeps"
    )
    retry_failed_event_interval_seconds: float = Field(
        default=300.0, description="Interval between failed webhook replays"
    )
    retry_scheduler_enabled: bool = Field(
        default=True, description="Run the retry scheduler inside the API process"
    )

    # Webhooks
    webhook_lock_ttl_seconds: int = Field(default=300, description="Webhook processing lock TTL")
    webhook_processed_ttl_seconds: int = Field(
        default=30 * 24 * 3600, description="Processed webhook marker TTL"
    )
    webhook_failed_ttl_seconds: int = Field(
        default=7 * 24 * 3600, description="Failed webhook event TTL"
    )

    # Tokenization
    tokenization_key: str = Field(default="", description="Active AES-256 key (64 hex characters)")
    tokenization_key_id: str = Field(default="primary", description="Identifier of the active key")
    tokenization_retired_keys: Dict[str, str] = Field(
        default_factory=dict, description="Retired keys by id (hex), kept for decryption only"
    )
    token_ttl_seconds: int = Field(default=365 * 24 * 3600, description="Token lifetime (seconds)")

    # Refunds
    refund_tolerance: Decimal = Field(
        default=Decimal("0.01"), description="Amount difference still treated as a full refund"
    )
    refund_tolerance_overrides: Dict[str, Decimal] = Field(
        default_factory=dict, description="Per-currency refund tolerance overrides"
    )

    # Security
    api_key_header: str = Field(default="X-API-Key", description="API key header name")
    api_keys: str = Field(default="", description="Accepted API keys (comma-separated); empty disables auth")
    admin_api_keys: str = Field(default="", description="API keys allowed on admin routes (comma-separated)")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @field_validator("stripe_secret_key")
    @classmethod
    def validate_stripe_key(cls, v: str) -> str:
        """Validate that Stripe secret key starts with sk_test_ or sk_live_."""
        if not v.startswith("sk_test_") and not v.startswith("sk_live_"):
            raise ValueError(
                "Invalid Stripe secret key format. Must start with 'sk_test_' or 'sk_live_'"
            )
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v.upper()

    @field_validator("paypal_environment")
    @classmethod
    def validate_paypal_environment(cls, v: str) -> str:
        """Validate PayPal environment."""
        if v.lower() not in ("sandbox", "live"):
            raise ValueError("PayPal environment must be 'sandbox' or 'live'")
        return v.lower()

    @field_validator("tokenization_key")
    @classmethod
    def validate_tokenization_key(cls, v: str) -> str:
        """An empty key is allowed here; production startup rejects it later."""
        if v and len(v) != 64:
            raise ValueError("Tokenization key must be 32 bytes encoded as 64 hex characters")
        if v:
            bytes.fromhex(v)
        return v

    def get_allowed_origins_list(self) -> List[str]:
        """Parse allowed origins from comma-separated string."""
        return [origin.strip() for origin in self.allowed_origins.split(",")]

    def get_api_keys(self) -> List[str]:
        """Parse accepted API keys."""
        return [key.strip() for key in self.api_keys.split(",") if key.strip()]

    def get_admin_api_keys(self) -> List[str]:
        """Parse admin API keys."""
        return [key.strip() for key in self.admin_api_keys.split(",") if key.strip()]

    def refund_tolerance_for(self, currency: str) -> Decimal:
        """Refund tolerance for a currency, falling back to the global default."""
        return self.refund_tolerance_overrides.get(currency.upper(), self.refund_tolerance)

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.app_env.lower() == "production"

    @property
    def is_test_mode(self) -> bool:
        """Check if using Stripe test mode."""
        return self.stripe_secret_key.startswith("sk_test_")

    @property
    def paypal_configured(self) -> bool:
        """Check if PayPal credentials are present."""
        return bool(self.paypal_client_id and self.paypal_client_secret)


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()
