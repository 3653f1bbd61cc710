from __future__ import annotations

from pathlib import Path

from pydantic import ValidationInfo, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from settings_dispatch.circuit_breaker import CircuitBreakerConfig
from settings_dispatch.logging import get_log_level_value
from settings_dispatch.retry import RetryBackoffPolicy

ENV_PREFIX = "SETTINGS_DISPATCH_"

# Options accepted by ``RequestOrchestrator.configure`` at runtime.
RUNTIME_OPTIONS = frozenset(
    {
        "max_concurrent_requests",
        "max_retries",
        "base_delay_ms",
        "max_delay_ms",
        "jitter_factor",
        "circuit_failure_threshold",
        "circuit_cooldown_ms",
        "circuit_max_cooldown_ms",
        "default_timeout_ms",
        "max_history_size",
        "batch_window_ms",
        "max_batch_size",
    }
)


def prefixed_settings_config(prefix: str) -> SettingsConfigDict:
    """Build standard Pydantic settings config for prefixed environments."""
    return SettingsConfigDict(env_prefix=prefix, case_sensitive=False, extra="forbid")


class DispatchSettings(BaseSettings):
    """Settings for the request orchestration layer."""

    model_config = prefixed_settings_config(ENV_PREFIX)

    endpoint_url: str = "http://localhost/wp-admin/admin-ajax.php"
    action_prefix: str = "las_"
    token: str | None = None
    refresh_action: str = "refresh_nonce"

    max_concurrent_requests: int = 5
    max_retries: int = 3
    base_delay_ms: int = 1_000
    max_delay_ms: int = 30_000
    jitter_factor: float = 0.2
    circuit_failure_threshold: int = 5
    circuit_cooldown_ms: int = 60_000
    circuit_max_cooldown_ms: int = 600_000
    default_timeout_ms: int = 10_000
    max_history_size: int = 200
    batch_window_ms: int = 1_000
    max_batch_size: int = 10
    batchable_actions: frozenset[str] = frozenset(
        {"save_settings", "load_settings", "get_preview_css"}
    )

    backlog_path: Path | None = None
    backlog_max_age_seconds: float = 3_600.0
    log_level: str = "INFO"

    @field_validator("endpoint_url", "refresh_action", mode="before")
    @classmethod
    def _validate_required_string(cls, value: object, info: ValidationInfo) -> object:
        if not isinstance(value, str):
            return value
        normalized = value.strip()
        if not normalized:
            raise ValueError(f"{info.field_name} must be non-empty")
        return normalized

    @field_validator("log_level", mode="before")
    @classmethod
    def _normalize_log_level(cls, value: object) -> object:
        if isinstance(value, str):
            get_log_level_value(value)
            return value.strip().upper()
        return value

    @model_validator(mode="after")
    def _validate_dispatch_settings(self) -> DispatchSettings:
        if self.max_concurrent_requests < 1:
            raise ValueError("max_concurrent_requests must be >= 1")
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.base_delay_ms < 0:
            raise ValueError("base_delay_ms must be >= 0")
        if self.max_delay_ms < self.base_delay_ms:
            raise ValueError("max_delay_ms must be >= base_delay_ms")
        if not 0.0 <= self.jitter_factor < 1.0:
            raise ValueError("jitter_factor must be >= 0 and < 1")
        if self.circuit_failure_threshold < 1:
            raise ValueError("circuit_failure_threshold must be >= 1")
        if self.circuit_cooldown_ms < 0:
            raise ValueError("circuit_cooldown_ms must be >= 0")
        if self.circuit_max_cooldown_ms < self.circuit_cooldown_ms:
            raise ValueError("circuit_max_cooldown_ms must be >= circuit_cooldown_ms")
        if self.default_timeout_ms <= 0:
            raise ValueError("default_timeout_ms must be > 0")
        if self.max_history_size < 1:
            raise ValueError("max_history_size must be >= 1")
        if self.batch_window_ms < 0:
            raise ValueError("batch_window_ms must be >= 0")
        if self.max_batch_size < 1:
            raise ValueError("max_batch_size must be >= 1")
        if self.backlog_max_age_seconds <= 0:
            raise ValueError("backlog_max_age_seconds must be > 0")
        return self

    @property
    def default_timeout(self) -> float:
        """Default per-call timeout in seconds."""
        return self.default_timeout_ms / 1000

    @property
    def batch_window(self) -> float:
        """Coalescing window in seconds. Zero disables coalescing."""
        return self.batch_window_ms / 1000

    def retry_policy(self) -> RetryBackoffPolicy:
        """Build the retry backoff policy described by these settings."""
        return RetryBackoffPolicy(
            max_retries=self.max_retries,
            base_seconds=self.base_delay_ms / 1000,
            max_seconds=self.max_delay_ms / 1000,
            jitter_factor=self.jitter_factor,
        )

    def breaker_config(self) -> CircuitBreakerConfig:
        """Build the per-action circuit breaker configuration."""
        return CircuitBreakerConfig(
            failure_threshold=self.circuit_failure_threshold,
            recovery_timeout=self.circuit_cooldown_ms / 1000,
            max_recovery_timeout=self.circuit_max_cooldown_ms / 1000,
        )

    def with_options(self, **options: object) -> DispatchSettings:
        """Return validated settings with runtime ``options`` applied.

        Raises:
            ValueError: When an option is not a runtime option.
            pydantic.ValidationError: When an option value is invalid.
        """
        unknown = sorted(set(options) - RUNTIME_OPTIONS)
        if unknown:
            raise ValueError(f"unsupported configuration options: {', '.join(unknown)}")
        values = self.model_dump()
        values.update(options)
        return DispatchSettings.model_validate(values)
