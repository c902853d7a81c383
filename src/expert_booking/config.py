"""Configuration management using pydantic-settings."""

import logging
import warnings
from enum import Enum
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(str, Enum):
    """Application environment."""

    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"


class DatabaseSettings(BaseSettings):
    """Database configuration."""

    model_config = SettingsConfigDict(env_prefix="DATABASE_", case_sensitive=False)

    url: str = Field(
        default="postgresql://localhost:5432/expert_booking",
        description="Database connection URL",
    )
    pool_size: int = Field(default=10, description="Connection pool size")
    max_overflow: int = Field(default=20, description="Maximum pool overflow")
    pool_timeout: int = Field(default=30, description="Pool timeout in seconds")
    pool_recycle: int = Field(default=3600, description="Pool recycle time in seconds")
    echo: bool = Field(default=False, description="Echo SQL queries (for debugging)")

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate database URL format."""
        if not v.startswith(("postgresql://", "postgresql+psycopg2://", "postgresql+asyncpg://")):
            raise ValueError(
                "Database URL must start with postgresql://, postgresql+psycopg2:// "
                "or postgresql+asyncpg://"
            )
        return v


class RedisSettings(BaseSettings):
    """Redis configuration (Celery broker and result backend)."""

    model_config = SettingsConfigDict(env_prefix="REDIS_", case_sensitive=False)

    url: str = Field(default="redis://localhost:6379/0", description="Redis connection URL")


class SchedulingSettings(BaseSettings):
    """Slot resolution and reservation rules."""

    model_config = SettingsConfigDict(env_prefix="SCHEDULING_", case_sensitive=False)

    default_granularity_minutes: int = Field(
        default=30, ge=5, le=240, description="Step between candidate slot starts"
    )
    min_lead_minutes: int = Field(
        default=60, ge=0, description="No slot may start sooner than this from now"
    )
    min_window_minutes: int = Field(
        default=15, ge=5, description="Shortest availability window an expert may create"
    )
    reservation_timeout_minutes: int = Field(
        default=15, ge=1, description="Pending reservations expire after this many minutes"
    )
    max_query_days: int = Field(
        default=62, ge=1, description="Longest date range a single slot query may span"
    )
    platform_fee_percent: int = Field(
        default=10, ge=0, le=100, description="Platform share of each booking, in percent"
    )
    currency: str = Field(default="usd", description="ISO currency code for charges")


class StripeSettings(BaseSettings):
    """Stripe payment gateway configuration."""

    model_config = SettingsConfigDict(env_prefix="STRIPE_", case_sensitive=False)

    secret_key: Optional[str] = Field(default=None, description="Stripe secret API key")
    api_version: Optional[str] = Field(default=None, description="Pinned Stripe API version")
    timeout_seconds: float = Field(
        default=10.0, gt=0, description="Upper bound for a single gateway call"
    )
    max_attempts: int = Field(
        default=3, ge=1, description="Attempts for a gateway call that reports unavailability"
    )
    retry_backoff_seconds: float = Field(
        default=0.5, ge=0, description="Base delay for exponential backoff between attempts"
    )

    @property
    def is_configured(self) -> bool:
        """Check if Stripe is configured."""
        return bool(self.secret_key)


class GoogleCalendarSettings(BaseSettings):
    """Google Calendar configuration for the busy-time overlay."""

    model_config = SettingsConfigDict(env_prefix="GOOGLE_", case_sensitive=False)

    client_id: Optional[str] = Field(default=None, description="OAuth client ID")
    client_secret: Optional[str] = Field(default=None, description="OAuth client secret")
    token_url: str = Field(
        default="https://oauth2.googleapis.com/token", description="OAuth token endpoint"
    )
    timeout_seconds: float = Field(default=5.0, gt=0, description="Free/busy request timeout")
    sync_lookahead_days: int = Field(default=30, ge=1, description="How far ahead to sync")
    stale_after_minutes: int = Field(
        default=60, ge=1, description="Cached overlay older than this is reported degraded"
    )

    @property
    def is_configured(self) -> bool:
        """Check if Google OAuth is configured."""
        return bool(self.client_id and self.client_secret)


class SendGridSettings(BaseSettings):
    """SendGrid e-mail delivery configuration."""

    model_config = SettingsConfigDict(env_prefix="SENDGRID_", case_sensitive=False)

    api_key: Optional[str] = Field(default=None, description="SendGrid API key")
    api_url: str = Field(
        default="https://api.sendgrid.com/v3/mail/send", description="SendGrid send endpoint"
    )
    from_email: str = Field(
        default="bookings@example.com", description="Sender address for booking e-mails"
    )

    @property
    def is_configured(self) -> bool:
        """Check if SendGrid is configured."""
        return bool(self.api_key)


class TwilioSettings(BaseSettings):
    """Twilio SMS delivery configuration."""

    model_config = SettingsConfigDict(env_prefix="TWILIO_", case_sensitive=False)

    account_sid: Optional[str] = Field(default=None, description="Twilio account SID")
    auth_token: Optional[str] = Field(default=None, description="Twilio auth token")
    from_number: Optional[str] = Field(default=None, description="Sending phone number")

    @property
    def is_configured(self) -> bool:
        """Check if Twilio is configured."""
        return bool(self.account_sid and self.auth_token and self.from_number)


class NotificationSettings(BaseSettings):
    """Reminder and delivery retry configuration."""

    model_config = SettingsConfigDict(env_prefix="NOTIFICATIONS_", case_sensitive=False)

    default_reminder_minutes: int = Field(
        default=60, ge=0, description="Reminder lead time when a user has no preference"
    )
    max_attempts: int = Field(default=5, ge=1, description="Delivery attempts before giving up")
    retry_backoff_seconds: int = Field(
        default=60, ge=1, description="Base delay for exponential delivery backoff"
    )
    dispatch_batch_size: int = Field(
        default=100, ge=1, description="Notifications delivered per dispatch run"
    )


class Settings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application settings
    app_name: str = Field(default="expert-booking", description="Application name")
    environment: Environment = Field(
        default=Environment.DEVELOPMENT, description="Application environment"
    )
    debug: bool = Field(default=False, description="Enable debug mode")
    log_level: str = Field(default="INFO", description="Logging level")

    # API settings
    api_v1_prefix: str = Field(default="/api/v1", description="API v1 prefix")

    # Sub-settings
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    redis: RedisSettings = Field(default_factory=RedisSettings)
    scheduling: SchedulingSettings = Field(default_factory=SchedulingSettings)
    stripe: StripeSettings = Field(default_factory=StripeSettings)
    google: GoogleCalendarSettings = Field(default_factory=GoogleCalendarSettings)
    sendgrid: SendGridSettings = Field(default_factory=SendGridSettings)
    twilio: TwilioSettings = Field(default_factory=TwilioSettings)
    notifications: NotificationSettings = Field(default_factory=NotificationSettings)

    @field_validator("environment", mode="before")
    @classmethod
    def parse_environment(cls, v):
        """Parse environment from string."""
        if isinstance(v, str):
            try:
                return Environment(v.lower())
            except ValueError:
                return Environment.DEVELOPMENT
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Log level must be one of {valid_levels}")
        return v.upper()

    @property
    def is_development(self) -> bool:
        """Check if running in development environment."""
        return self.environment == Environment.DEVELOPMENT

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment == Environment.PRODUCTION

    @property
    def is_staging(self) -> bool:
        """Check if running in staging environment."""
        return self.environment == Environment.STAGING

    def validate_production_settings(self) -> None:
        """Validate that production settings are usable."""
        if self.is_production:
            if self.debug:
                raise ValueError("DEBUG must be False in production")
            if not self.stripe.is_configured:
                raise ValueError("STRIPE_SECRET_KEY must be set in production.")
            if not self.sendgrid.is_configured:
                warnings.warn(
                    "SendGrid is not configured in production. "
                    "Booking e-mails will fail and be retried until they are marked failed.",
                    UserWarning,
                )


# Global settings instance
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get the global settings instance."""
    global _settings
    if _settings is None:
        _settings = Settings()
        try:
            _settings.validate_production_settings()
        except ValueError as e:
            logging.error(f"Configuration validation failed: {e}")
            if _settings.is_production:
                raise  # Fail fast in production
    return _settings
