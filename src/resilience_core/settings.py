from __future__ import annotations

from pydantic import ValidationInfo, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from resilience_core.batch import BoundedBatchExecutor
from resilience_core.circuit_breaker import CircuitBreakerConfig
from resilience_core.logging import get_log_level_value
from resilience_core.rate_limiter import RateLimiterConfig
from resilience_core.retry import RetryObserver, RetryPolicy

ENV_PREFIX = "RESILIENCE_"


def prefixed_settings_config(prefix: str) -> SettingsConfigDict:
    """Build standard Pydantic settings config for prefixed environments."""
    return SettingsConfigDict(env_prefix=prefix, case_sensitive=False)


class ResilienceSettings(BaseSettings):
    """Environment-driven defaults for one guarded dependency."""

    model_config = prefixed_settings_config(ENV_PREFIX)

    retry_max_attempts: int = 3
    retry_initial_delay_seconds: float = 1.0
    retry_max_delay_seconds: float = 10.0
    retry_backoff_multiplier: float = 2.0
    retry_jitter: bool = False
    breaker_failure_threshold: int = 5
    breaker_reset_timeout_seconds: float = 30.0
    rate_limit_max_requests: int | None = None
    rate_limit_window_seconds: float = 1.0
    timeout_seconds: float | None = None
    batch_concurrency: int = 5
    log_level: str = "INFO"

    @field_validator("log_level", mode="before")
    @classmethod
    def _normalize_log_level(cls, value: object) -> object:
        if not isinstance(value, str):
            return value
        normalized = value.strip().upper()
        get_log_level_value(normalized)
        return normalized

    @field_validator(
        "retry_max_attempts",
        "breaker_failure_threshold",
        "rate_limit_max_requests",
        "batch_concurrency",
    )
    @classmethod
    def _validate_positive_int(
        cls, value: int | None, info: ValidationInfo
    ) -> int | None:
        if value is not None and value < 1:
            raise ValueError(f"{info.field_name} must be >= 1")
        return value

    @field_validator(
        "retry_initial_delay_seconds",
        "retry_max_delay_seconds",
        "breaker_reset_timeout_seconds",
    )
    @classmethod
    def _validate_non_negative_seconds(
        cls, value: float, info: ValidationInfo
    ) -> float:
        if value < 0:
            raise ValueError(f"{info.field_name} must be >= 0")
        return value

    @field_validator("rate_limit_window_seconds", "timeout_seconds")
    @classmethod
    def _validate_positive_seconds(
        cls, value: float | None, info: ValidationInfo
    ) -> float | None:
        if value is not None and value <= 0:
            raise ValueError(f"{info.field_name} must be > 0")
        return value

    @model_validator(mode="after")
    def _validate_resilience_settings(self) -> ResilienceSettings:
        if self.retry_max_delay_seconds < self.retry_initial_delay_seconds:
            raise ValueError(
                "retry_max_delay_seconds must be >= retry_initial_delay_seconds"
            )
        if self.retry_backoff_multiplier <= 1:
            raise ValueError("retry_backoff_multiplier must be > 1")
        return self

    def retry_policy(self, *, on_retry: RetryObserver | None = None) -> RetryPolicy:
        """Build the retry policy described by these settings."""
        return RetryPolicy(
            max_attempts=self.retry_max_attempts,
            initial_delay=self.retry_initial_delay_seconds,
            max_delay=self.retry_max_delay_seconds,
            backoff_multiplier=self.retry_backoff_multiplier,
            on_retry=on_retry,
            jitter=self.retry_jitter,
        )

    def breaker_config(self) -> CircuitBreakerConfig:
        """Build the circuit breaker configuration."""
        return CircuitBreakerConfig(
            failure_threshold=self.breaker_failure_threshold,
            reset_timeout=self.breaker_reset_timeout_seconds,
        )

    def batch_executor(self, *, cancel_pending: bool = False) -> BoundedBatchExecutor:
        """Build a batch executor bounded by ``batch_concurrency``."""
        return BoundedBatchExecutor(
            self.batch_concurrency, cancel_pending=cancel_pending
        )

    def rate_limiter_config(self) -> RateLimiterConfig | None:
        """Build the rate limiter configuration, or ``None`` when disabled."""
        if self.rate_limit_max_requests is None:
            return None
        return RateLimiterConfig(
            max_requests=self.rate_limit_max_requests,
            window=self.rate_limit_window_seconds,
        )
