"""Configuration for the reservation-expiration scheduler."""
from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from apscheduler.triggers.cron import CronTrigger
from pydantic import AliasChoices, Field, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings

from .constants import BackoffStrategy, RetryDefaults, SchedulerDefaults
from .exceptions import ConfigurationError
from .logging import mask_sensitive_data
from .retry import RetryPolicy


class ExpirySettings(BaseSettings):
    """Scheduler configuration, read from FLEET_* environment variables."""

    # Trigger
    expiration_cron: str = Field(
        default=SchedulerDefaults.CRON_EXPRESSION,
        validation_alias=AliasChoices("FLEET_EXPIRATION_CRON", "BOOKING_EXPIRATION_CRON"),
    )
    timezone: str = SchedulerDefaults.TIMEZONE

    # Batching
    batch_size: int = Field(
        default=SchedulerDefaults.BATCH_SIZE,
        validation_alias=AliasChoices("FLEET_BATCH_SIZE", "BOOKING_BATCH_SIZE"),
    )

    # Retry
    max_retries: int = Field(default=RetryDefaults.MAX_RETRIES, ge=0)
    retry_base_delay_ms: int = Field(default=RetryDefaults.BASE_DELAY_MS, gt=0)
    retry_backoff: BackoffStrategy = BackoffStrategy.EXPONENTIAL
    retry_max_delay_ms: int = RetryDefaults.MAX_DELAY_MS

    # Storage. Empty means in-memory stores.
    database_url: str = Field(
        default="",
        validation_alias=AliasChoices("FLEET_DATABASE_URL", "DATABASE_URL"),
    )

    # Redis for the run lease and push relay. Empty means process-local.
    redis_url: str = ""
    lease_ttl_seconds: int = Field(default=SchedulerDefaults.LEASE_TTL_SECONDS, gt=0)

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    log_json: bool = True

    class Config:
        env_prefix = "FLEET_"
        env_file = ".env"
        extra = "ignore"
        populate_by_name = True

    @field_validator("batch_size")
    @classmethod
    def validate_batch_size(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("batch_size must be a positive integer")
        return v

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, v: str) -> str:
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"Unknown timezone: {v}") from e
        return v

    @field_validator("log_level", mode="before")
    @classmethod
    def normalize_log_level(cls, v):
        if isinstance(v, str):
            return v.upper()
        return v

    @field_validator("database_url", mode="before")
    @classmethod
    def normalize_database_url(cls, v: str) -> str:
        """asyncpg wants the postgresql:// scheme."""
        v = (v or "").strip()
        if not v:
            return v
        if v.startswith("postgres://"):
            v = "postgresql://" + v[len("postgres://"):]
        if not v.startswith("postgresql://"):
            raise ValueError("database_url must be a postgresql:// URL")
        return v

    @model_validator(mode="after")
    def validate_schedule_and_delays(self) -> "ExpirySettings":
        try:
            CronTrigger.from_crontab(self.expiration_cron, timezone=self.timezone)
        except ValueError as e:
            raise ValueError(f"Invalid cron expression '{self.expiration_cron}': {e}") from e
        if self.retry_max_delay_ms < self.retry_base_delay_ms:
            raise ValueError("retry_max_delay_ms must be >= retry_base_delay_ms")
        return self

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_retries=self.max_retries,
            base_delay=self.retry_base_delay_ms / 1000,
            max_delay=self.retry_max_delay_ms / 1000,
            backoff=self.retry_backoff,
        )

    def masked(self) -> dict:
        """Settings as a dict with connection secrets masked."""
        return mask_sensitive_data(self.model_dump(mode="json"))


@lru_cache
def load_settings(env_file: str | None = None) -> ExpirySettings:
    """Load ExpirySettings once per process.

    Without an explicit ``env_file`` the ``.env`` in the working directory is
    read, if there is one.
    """
    if env_file:
        return ExpirySettings(_env_file=Path(env_file))
    return ExpirySettings()


def load_settings_or_fail(env_file: str | None = None) -> ExpirySettings:
    """Load settings, turning validation errors into a ConfigurationError."""
    try:
        return load_settings(env_file)
    except ValidationError as e:
        problems = [
            {"field": ".".join(str(p) for p in err["loc"]) or "settings", "error": err["msg"]}
            for err in e.errors()
        ]
        raise ConfigurationError(
            "Invalid scheduler configuration",
            details={"errors": problems},
        ) from e
