# backend/careslot/core/config.py
import logging
import os
from pathlib import Path
from typing import Literal

from dotenv import load_dotenv
from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
import pytz


logger = logging.getLogger(__name__)

# Load .env file only if not in CI
if not os.getenv("CI"):
    env_path = Path(__file__).parent.parent.parent / ".env"  # Goes up to backend/.env
    logger.debug(f"[CONFIG] Looking for .env at: {env_path}")
    load_dotenv(env_path)


class Settings(BaseSettings):
    environment: Literal["development", "test", "staging", "production"] = Field(
        default="development",
        description="Deployment environment name",
    )
    log_level: str = Field(default="INFO", description="Root log level")

    # Database
    database_url: str = Field(
        default="sqlite:///./careslot.db",
        description="SQLAlchemy URL for the primary database",
    )
    database_echo: bool = Field(default=False, description="Echo SQL statements")

    # Booking rules
    booking_timezone: str = Field(
        default="UTC",
        description="Timezone in which appointment dates and times are expressed",
    )
    cancellation_grace_hours: float = Field(
        default=2,
        description="Cancellations are refused inside this many hours before the start",
    )
    default_duration_minutes: int = Field(default=30, description="Default consultation length")
    booking_write_attempts: int = Field(
        default=2,
        description="Attempts for a booking write before a persistence conflict is surfaced",
    )

    # Payments
    default_currency: str = Field(default="USD", description="Fallback payment currency")
    payment_gateway: Literal["simulated", "intasend"] = Field(
        default="simulated",
        description="Gateway implementation used to initiate payments",
    )
    intasend_api_key: SecretStr = Field(
        default=SecretStr(""),
        description="IntaSend secret API key",
    )
    intasend_base_url: str = Field(
        default="https://api.intasend.com",
        description="IntaSend API base URL",
    )
    gateway_timeout_seconds: float = Field(
        default=10.0,
        description="Upper bound for any single payment gateway HTTP call",
    )
    payment_attempt_lease_seconds: int = Field(
        default=60,
        description="How long an unacknowledged payment attempt stays claimed before it may be resumed",
    )
    callback_base_url: str = Field(
        default="http://localhost:8000",
        description="Public base URL the gateway posts settlement callbacks to",
    )
    frontend_url: str = Field(default="http://localhost:3000", description="Frontend URL")
    simulated_settlement_delay_seconds: int = Field(
        default=5,
        description="Delay before a simulated payment settles",
    )
    reconcile_max_attempts: int = Field(
        default=3,
        description="Attempts to apply a notification when writes race",
    )

    # Background jobs
    settlement_batch_size: int = Field(default=25, description="Settlement jobs drained per run")
    redrive_batch_size: int = Field(default=50, description="Confirmations re-driven per run")
    jobs_backoff_base: int = Field(default=30, description="Base retry backoff in seconds")
    jobs_backoff_cap: int = Field(default=1800, description="Maximum retry backoff in seconds")
    settlement_poll_interval_seconds: int = Field(
        default=5,
        description="Beat interval for draining settlement jobs",
    )
    redrive_interval_seconds: int = Field(
        default=60,
        description="Beat interval for the confirmation re-drive sweep",
    )
    redis_url: str = Field(default="redis://localhost:6379", description="Redis URL")
    celery_broker_url: str | None = Field(default=None, description="Celery broker override")

    model_config = SettingsConfigDict(
        env_file=".env" if not os.getenv("CI") else None,
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("booking_timezone")
    @classmethod
    def _validate_timezone(cls, value: str) -> str:
        try:
            pytz.timezone(value)
        except pytz.UnknownTimeZoneError as exc:
            raise ValueError(f"Unknown timezone: {value}") from exc
        return value

    @field_validator("default_currency")
    @classmethod
    def _normalize_currency(cls, value: str) -> str:
        return value.strip().upper()

    @property
    def is_production(self) -> bool:
        return self.environment == "production"


settings = Settings()
