"""
Environment-driven settings for the key tracker.

DATABASE_URL is read by keytrack.database when the engine is built; every
other knob lives here.
"""
from functools import lru_cache

from pydantic import field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """
    Process-wide settings, one field per environment variable.

    grace_period_days is recorded in the first overdue alert only;
    escalation_threshold_days alone decides escalation.
    """

    # Lifecycle policy
    grace_period_days: int = 3
    escalation_threshold_days: int = 7

    # Job trigger; empty disables it
    service_token: str = ""

    # Notifier
    security_webhook_url: str = ""
    notifier_timeout_seconds: int = 10
    notifier_max_attempts: int = 3

    # Worker
    check_interval_seconds: int = 3600

    log_level: str = "INFO"

    @field_validator("escalation_threshold_days", "notifier_max_attempts")
    @classmethod
    def must_be_at_least_one(cls, v: int, info) -> int:
        if v < 1:
            raise ValueError(f"{info.field_name.upper()} must be at least 1")
        return v

    @field_validator("grace_period_days", "check_interval_seconds")
    @classmethod
    def must_not_be_negative(cls, v: int, info) -> int:
        if v < 0:
            raise ValueError(f"{info.field_name.upper()} cannot be negative")
        return v

    @field_validator("log_level")
    @classmethod
    def normalize_log_level(cls, v: str) -> str:
        return v.upper()

    class Config:
        extra = "ignore"


@lru_cache
def get_settings() -> Settings:
    """
    Settings built once per process. FastAPI dependency.

    Raises:
        ValidationError: if an environment variable is not a valid value
    """
    return Settings()
