"""Application configuration.

Loads settings from environment variables with sensible defaults.
"""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # API
    api_version: str = "0.1.0"
    debug: bool = False

    # Database
    database_url: str = "postgresql+asyncpg://settlement:settlement_dev_password@db:5432/settlement"
    # Write repository changes and webhook events through to the database
    persistence_enabled: bool = False

    # Authentication (admin and monitoring routes)
    admin_api_key: str = "dev-api-key-change-in-production"

    # Stripe
    stripe_secret_key: str = ""
    stripe_api_base: str = "https://api.stripe.com"
    stripe_api_version: str = "2024-06-20"
    stripe_timeout_seconds: float = 10.0
    stripe_webhook_secret: str = ""
    stripe_preorder_webhook_secret: str = ""
    stripe_webhook_tolerance_seconds: int = 300

    # Pre-order estimation
    estimate_multiplier: str = "1.1"

    # Retry policy for Stripe verification calls
    retry_max_attempts: int = 3
    retry_base_delay_ms: int = 1000
    retry_max_delay_ms: int = 10000
    retry_backoff_multiplier: float = 2.0

    # Monitoring
    monitor_enabled: bool = True
    monitor_interval_seconds: int = 120

    # Logging
    log_level: str = "INFO"
    log_json: bool = False

    class Config:
        """Pydantic configuration."""

        env_file = ".env"
        env_file_encoding = "utf-8"

    @property
    def webhook_signing_secret(self) -> str:
        """Secret for the pre-order webhook endpoint, falling back to the shared one."""
        return self.stripe_preorder_webhook_secret or self.stripe_webhook_secret

    @property
    def stripe_enabled(self) -> bool:
        return bool(self.stripe_secret_key)


settings = Settings()
