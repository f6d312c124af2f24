from __future__ import annotations

from pydantic import BaseModel, Field, ValidationInfo, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from mediasub_core.circuit_breaker import CircuitBreakerConfig
from mediasub_core.logging import get_log_level_value
from mediasub_core.retry import RetryBackoffPolicy


def prefixed_settings_config(prefix: str) -> SettingsConfigDict:
    """Build standard Pydantic settings config for prefixed environments."""
    return SettingsConfigDict(
        env_prefix=prefix,
        env_nested_delimiter="__",
        case_sensitive=False,
    )


def _blank_to_none(value: object) -> object:
    if isinstance(value, str):
        normalized = value.strip()
        return normalized or None
    return value


class BreakerSettings(BaseModel):
    """Circuit breaker thresholds, in the millisecond units of the environment."""

    error_threshold_percentage: float = 50.0
    reset_timeout_ms: int = 30_000
    volume_threshold: int = 5
    rolling_window_ms: int = 10_000

    @model_validator(mode="after")
    def _validate_breaker_settings(self) -> BreakerSettings:
        if not 0 < self.error_threshold_percentage <= 100:
            raise ValueError("error_threshold_percentage must be in (0, 100]")
        if self.reset_timeout_ms < 0:
            raise ValueError("reset_timeout_ms must be >= 0")
        if self.volume_threshold < 1:
            raise ValueError("volume_threshold must be >= 1")
        if self.rolling_window_ms <= 0:
            raise ValueError("rolling_window_ms must be > 0")
        return self

    def to_config(self) -> CircuitBreakerConfig:
        return CircuitBreakerConfig(
            error_threshold_percentage=self.error_threshold_percentage,
            reset_timeout=self.reset_timeout_ms / 1000.0,
            volume_threshold=self.volume_threshold,
            rolling_window=self.rolling_window_ms / 1000.0,
        )


class RetrySettings(BaseModel):
    """Retry attempt budget and exponential backoff base."""

    max_attempts: int = 3
    base_delay_ms: int = 1_000

    @model_validator(mode="after")
    def _validate_retry_settings(self) -> RetrySettings:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay_ms < 0:
            raise ValueError("base_delay_ms must be >= 0")
        return self

    def to_policy(self) -> RetryBackoffPolicy:
        return RetryBackoffPolicy(
            attempts=self.max_attempts,
            base_delay_seconds=self.base_delay_ms / 1000.0,
        )


def _validate_timeouts(*values: tuple[str, int]) -> None:
    for field_name, value in values:
        if value <= 0:
            raise ValueError(f"{field_name} must be > 0")


class DirectorySettings(BaseSettings):
    """Media-directory endpoint settings (``MEDIA_DIRECTORY_*``)."""

    model_config = prefixed_settings_config("MEDIA_DIRECTORY_")

    url: str | None = None
    api_key: str | None = None
    timeout_ms: int = 10_000
    health_check_timeout_ms: int = 5_000
    breaker: BreakerSettings = Field(default_factory=BreakerSettings)
    retry: RetrySettings = Field(default_factory=RetrySettings)

    @field_validator("url", "api_key", mode="before")
    @classmethod
    def _normalize_optional_string(cls, value: object) -> object:
        return _blank_to_none(value)

    @field_validator("url")
    @classmethod
    def _validate_url(cls, value: str | None, info: ValidationInfo) -> str | None:
        if value is None:
            return None
        if not value.startswith(("http://", "https://")):
            raise ValueError(f"{info.field_name} must be an http(s) URL")
        return value.rstrip("/")

    @model_validator(mode="after")
    def _validate_directory_settings(self) -> DirectorySettings:
        _validate_timeouts(
            ("timeout_ms", self.timeout_ms),
            ("health_check_timeout_ms", self.health_check_timeout_ms),
        )
        return self

    @property
    def is_configured(self) -> bool:
        return bool(self.url and self.api_key)


class MailSettings(BaseSettings):
    """SMTP relay settings (``SMTP_*``)."""

    model_config = prefixed_settings_config("SMTP_")

    host: str | None = None
    port: int = 587
    secure: bool = False
    starttls: bool = True
    user: str | None = None
    password: str | None = None
    from_name: str = "Rflix API"
    from_address: str | None = None
    timeout_ms: int = 20_000
    health_check_timeout_ms: int = 10_000
    breaker: BreakerSettings = Field(default_factory=BreakerSettings)
    retry: RetrySettings = Field(default_factory=RetrySettings)

    @field_validator("host", "user", "password", "from_address", mode="before")
    @classmethod
    def _normalize_optional_string(cls, value: object) -> object:
        return _blank_to_none(value)

    @model_validator(mode="after")
    def _validate_mail_settings(self) -> MailSettings:
        if not 0 < self.port < 65536:
            raise ValueError("port must be between 1 and 65535")
        if self.secure and self.starttls:
            # Implicit TLS already encrypts the session.
            self.starttls = False
        _validate_timeouts(
            ("timeout_ms", self.timeout_ms),
            ("health_check_timeout_ms", self.health_check_timeout_ms),
        )
        return self

    @property
    def is_configured(self) -> bool:
        return bool(self.host and self.user and self.password)


class LoggingSettings(BaseSettings):
    """Log output settings (``LOG_*``)."""

    model_config = prefixed_settings_config("LOG_")

    level: str = "INFO"

    @field_validator("level")
    @classmethod
    def _validate_level(cls, value: str) -> str:
        get_log_level_value(value)
        return value.strip().upper()
