"""Application configuration from environment variables."""
from dataclasses import dataclass
from datetime import timedelta

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _clean_str(value: str | None) -> str | None:
    if value is None:
        return None
    # Replace non-breaking spaces with normal spaces
    return value.replace("\u00a0", " ")


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    PROJECT_NAME: str = "Telebill"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"
    ADMIN_TOKEN: str | None = None

    # Database Settings
    DATABASE_URL: str | None = None
    POSTGRES_USER: str = "postgres"
    POSTGRES_PASSWORD: str = "postgres"
    POSTGRES_DB: str = "telebill"
    POSTGRES_HOST: str = "postgres"
    POSTGRES_PORT: int = 5432
    DB_POOL_SIZE: int = 5

    # Scheduler
    BILLING_INTERVAL_SECONDS: int = 60 * 60
    LIFECYCLE_INTERVAL_SECONDS: int = 6 * 60 * 60
    FAILURE_BACKOFF_SECONDS: int = 5 * 60
    FAILED_PAYMENT_THRESHOLD: int = 3
    PAST_DUE_RETRY_SECONDS: int = 6 * 60 * 60
    PAST_DUE_GRACE_SECONDS: int = 7 * 24 * 60 * 60
    EXPIRATION_GRACE_SECONDS: int = 7 * 24 * 60 * 60
    BILLING_BATCH_SIZE: int = 500

    # Payments
    STRIPE_SECRET_KEY: str | None = None
    DEFAULT_CURRENCY: str = "usd"

    # Notifications / Email
    ENABLE_EMAIL_NOTIFICATIONS: bool = False
    NOTIFICATIONS_POLL_SECONDS: int = 5
    NOTIFICATIONS_BATCH_SIZE: int = 25
    ADMIN_EMAIL: str | None = None

    SMTP_HOST: str | None = None
    SMTP_PORT: int = 587

    SMTP_USERNAME: str | None = Field(default=None, alias="SMTP_USERNAME")
    SMTP_PASSWORD: str | None = Field(default=None, alias="SMTP_PASSWORD")

    SMTP_USE_TLS: bool = True  # STARTTLS

    SMTP_FROM_EMAIL: str | None = Field(default=None, alias="SMTP_FROM_EMAIL")
    SMTP_FROM_NAME: str = Field(default="Telebill", alias="SMTP_FROM_NAME")
    SMTP_REPLY_TO: str | None = None

    @field_validator(
        "SMTP_USERNAME",
        "SMTP_PASSWORD",
        "SMTP_FROM_EMAIL",
        "SMTP_FROM_NAME",
        mode="before",
    )
    @classmethod
    def clean_smtp_strings(cls, v):
        return _clean_str(v)

    @field_validator(
        "BILLING_INTERVAL_SECONDS",
        "LIFECYCLE_INTERVAL_SECONDS",
        "FAILURE_BACKOFF_SECONDS",
        "FAILED_PAYMENT_THRESHOLD",
        "BILLING_BATCH_SIZE",
    )
    @classmethod
    def must_be_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be a positive integer")
        return v

    @field_validator("PAST_DUE_RETRY_SECONDS", "PAST_DUE_GRACE_SECONDS", "EXPIRATION_GRACE_SECONDS")
    @classmethod
    def must_not_be_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("must not be negative")
        return v

    @property
    def database_url(self) -> str:
        """Construct database URL from components."""
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return (
            f"postgresql+psycopg://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}"
            f"@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
        )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
    )


settings = Settings()


@dataclass(frozen=True)
class SchedulerConfig:
    """Timing and policy knobs handed to the scheduler and its passes."""

    billing_interval: timedelta = timedelta(hours=1)
    lifecycle_interval: timedelta = timedelta(hours=6)
    failure_backoff: timedelta = timedelta(minutes=5)
    failed_payment_threshold: int = 3
    past_due_retry_after: timedelta = timedelta(hours=6)
    past_due_grace: timedelta = timedelta(days=7)
    expiration_grace: timedelta = timedelta(days=7)
    batch_size: int = 500

    @classmethod
    def from_settings(cls, s: Settings) -> "SchedulerConfig":
        return cls(
            billing_interval=timedelta(seconds=s.BILLING_INTERVAL_SECONDS),
            lifecycle_interval=timedelta(seconds=s.LIFECYCLE_INTERVAL_SECONDS),
            failure_backoff=timedelta(seconds=s.FAILURE_BACKOFF_SECONDS),
            failed_payment_threshold=s.FAILED_PAYMENT_THRESHOLD,
            past_due_retry_after=timedelta(seconds=s.PAST_DUE_RETRY_SECONDS),
            past_due_grace=timedelta(seconds=s.PAST_DUE_GRACE_SECONDS),
            expiration_grace=timedelta(seconds=s.EXPIRATION_GRACE_SECONDS),
            batch_size=s.BILLING_BATCH_SIZE,
        )
