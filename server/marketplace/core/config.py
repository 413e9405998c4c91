"""Configuration settings for the marketplace service."""

from decimal import Decimal
from typing import Annotated

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

ENVIRONMENTS = frozenset({"development", "test", "staging", "production"})
LOG_LEVELS = frozenset({"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"})
PLACEHOLDER_JWT_SECRET = "change-me"


class Settings(BaseSettings):
    """Service settings, read from the environment and an optional .env file."""

    # Local store (persistent cache tier, idempotency records)
    database_url: str = Field(
        default="sqlite+aiosqlite:///./marketplace_store.db",
        description="Async SQLAlchemy URL for the local store"
    )

    environment: str = Field(default="development", description="development, test, staging or production")
    log_level: str = Field(default="INFO", description="Root log level")

    # Backend platform settings
    backend_url: str = Field(
        default="http://localhost:54321",
        description="Base URL of the backend platform (REST, RPC and functions)"
    )

    backend_service_key: str = Field(
        default="service-role-key",
        description="Service role key sent as apikey and bearer token"
    )

    backend_timeout_seconds: float = Field(
        default=10.0,
        description="Timeout for backend requests in seconds"
    )

    # Auth
    jwt_secret: str = Field(
        default=PLACEHOLDER_JWT_SECRET,
        description="Secret used to validate HS256 bearer tokens"
    )

    # Payment processor
    stripe_secret_key: str = Field(
        default="",
        description="Stripe secret API key"
    )

    # Notification providers
    twilio_account_sid: str = Field(default="", description="Twilio account SID")
    twilio_auth_token: str = Field(default="", description="Twilio auth token")
    twilio_from_number: str = Field(default="", description="Twilio sender number (E.164)")
    twilio_api_base: str = Field(
        default="https://api.twilio.com/2010-04-01",
        description="Twilio REST API base URL"
    )

    resend_api_key: str = Field(default="", description="Resend API key")
    email_from_address: str = Field(
        default="Marketplace <receipts@example.com>",
        description="Sender address for outgoing email"
    )

    # HTTP
    cors_origins: Annotated[list[str], NoDecode] = Field(
        default=["http://localhost:8081", "http://localhost:19006", "http://localhost:3000"],
        description="Allowed CORS origins"
    )

    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8000, description="Server port")

    # Cache settings
    cache_max_memory_entries: int = Field(
        default=100,
        ge=1,
        description="Maximum number of entries held in the memory cache tier"
    )

    cache_default_ttl_seconds: int = Field(
        default=300,
        ge=1,
        description="Default cache entry lifetime in seconds"
    )

    shipping_rate_ttl_seconds: int = Field(
        default=3600,
        ge=1,
        description="Lifetime of cached shipping rate quotes"
    )

    # Money movement
    platform_fee_percentage: Decimal = Field(
        default=Decimal("10"),
        ge=0,
        le=100,
        description="Fallback platform fee percentage for bookings"
    )

    escrow_hold_days: int = Field(
        default=30,
        description="Days after which a completed booking's escrow auto-releases"
    )

    # Workers
    workers_enabled: bool = Field(default=True, description="Run background workers")
    escrow_release_interval_seconds: int = Field(default=3600, description="Escrow auto-release period")
    maintenance_interval_seconds: int = Field(default=900, description="Local store maintenance period")
    recurring_booking_interval_seconds: int = Field(default=3600, description="Recurring booking materialisation period")

    idempotency_ttl_hours: int = Field(default=24, ge=1, description="How long a stored response is replayed")

    # Observability
    otlp_endpoint: str | None = Field(default=None, description="OTLP gRPC collector endpoint")

    @field_validator("environment")
    @classmethod
    def known_environment(cls, value: str) -> str:
        value = value.lower()
        if value not in ENVIRONMENTS:
            raise ValueError(f"environment must be one of {sorted(ENVIRONMENTS)}")
        return value

    @field_validator("log_level")
    @classmethod
    def known_log_level(cls, value: str) -> str:
        value = value.upper()
        if value not in LOG_LEVELS:
            raise ValueError(f"log_level must be one of {sorted(LOG_LEVELS)}")
        return value

    @field_validator("cors_origins", mode="before")
    @classmethod
    def split_origins(cls, value: str | list[str]) -> list[str]:
        """Accept a comma separated string from the environment."""
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @model_validator(mode="after")
    def no_placeholder_secret_in_production(self) -> "Settings":
        if self.is_production and self.jwt_secret == PLACEHOLDER_JWT_SECRET:
            raise ValueError("jwt_secret must be set in production")
        return self

    @property
    def debug(self) -> bool:
        """Docs, console logs and request body logging are on in development only."""
        return self.environment == "development"

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )


settings = Settings()
