"""Configuration system for the pipeline core.

Settings are plain values handed to the orchestrator, dispatcher and fan-out
coordinator at construction time. Nothing in the runtime reads global settings
on its own; ``get_settings`` exists for process entry-points such as the CLI.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from Memory_KG.resilience.errors import ConfigurationError, ErrorCategory
from Memory_KG.resilience.policy import RetryPolicy


class LoggingSettings(BaseModel):
    """Structured logging configuration."""

    level: str = Field(default="INFO", description="Log level for application output")
    json_output: bool = Field(default=True, description="Render events as JSON lines")
    scrub_fields: Sequence[str] = Field(
        default_factory=lambda: ["password", "token", "secret", "authorization", "api_key"],
        description="Fields that should be redacted in logs",
    )


class MetricsSettings(BaseModel):
    """Prometheus metrics configuration."""

    enabled: bool = False
    port: int = Field(default=9464, ge=1, le=65535, description="Port for the metrics endpoint")


class PipelineSettings(BaseModel):
    """Tuning knobs for dispatch, fan-out, retries and run retention."""

    embedding_concurrency_limit: int = Field(
        default=5,
        ge=1,
        description="Maximum provider calls in flight for one dispatcher",
    )
    embedding_batch_size: int = Field(
        default=16,
        ge=1,
        description="Maximum items per provider call",
    )
    embedding_inter_batch_delay_seconds: float = Field(
        default=0.1,
        ge=0.0,
        description="Pause between consecutive dispatches from one worker slot",
    )
    embedding_call_timeout_seconds: float = Field(
        default=30.0,
        gt=0.0,
        description="Timeout applied to each provider call",
    )
    task_parallel_concurrency_limit: int = Field(
        default=4,
        ge=1,
        description="Maximum concurrent partitions for parallel-safe tasks",
    )
    storage_write_timeout_seconds: float = Field(
        default=30.0,
        gt=0.0,
        description="Timeout applied to each backend write and health probe",
    )
    max_attempts: int = Field(default=3, ge=1, description="Attempts per unit of work")
    base_delay: float = Field(default=0.5, ge=0.0, description="Initial backoff delay")
    backoff_multiplier: float = Field(default=2.0, ge=1.0, description="Exponential factor")
    max_delay: float = Field(default=10.0, ge=0.0, description="Backoff delay cap")
    jitter: float = Field(default=0.0, ge=0.0, le=1.0, description="Random delay spread")
    retry_unknown_errors: bool = Field(
        default=True,
        description="Treat exceptions outside the taxonomy as transient",
    )
    partial_failure_threshold: float = Field(
        default=0.5,
        ge=0.0,
        le=1.0,
        description="Failed batch fraction above which a run is marked failed",
    )
    health_check_before_run: bool = Field(
        default=True,
        description="Probe storage backends before the first task executes",
    )
    run_retention_seconds: float = Field(
        default=3600.0,
        ge=0.0,
        description="How long terminal runs stay queryable",
    )

    def retry_policy(self) -> RetryPolicy:
        """Return the shared retry policy described by these settings."""
        return RetryPolicy(
            max_attempts=self.max_attempts,
            base_delay=self.base_delay,
            backoff_multiplier=self.backoff_multiplier,
            max_delay=self.max_delay,
            jitter=self.jitter,
            unknown_category=(
                ErrorCategory.TRANSIENT if self.retry_unknown_errors else ErrorCategory.FATAL
            ),
        )


class AppSettings(BaseSettings):
    """Top-level application settings."""

    service_name: str = "memory-kg"
    debug: bool = False
    pipeline: PipelineSettings = Field(default_factory=PipelineSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    metrics: MetricsSettings = Field(default_factory=MetricsSettings)

    model_config = SettingsConfigDict(env_prefix="MEMKG_", env_nested_delimiter="__")


def _deep_update(target: dict[str, Any], updates: Mapping[str, Any]) -> dict[str, Any]:
    for key, value in updates.items():
        current = target.get(key)
        if isinstance(current, dict) and isinstance(value, Mapping):
            target[key] = _deep_update(dict(current), value)
        else:
            target[key] = value
    return target


def _read_yaml(path: str | Path) -> dict[str, Any]:
    resolved = Path(path).expanduser()
    if not resolved.exists():
        raise ConfigurationError(
            "Configuration file not found",
            detail=str(resolved),
        )
    raw = yaml.safe_load(resolved.read_text()) or {}
    if not isinstance(raw, Mapping):
        raise ConfigurationError(
            "Configuration file must contain a mapping",
            detail=str(resolved),
        )
    return dict(raw)


def load_settings(path: str | Path | None = None, **overrides: Any) -> AppSettings:
    """Load settings from the environment, an optional YAML file and overrides.

    Precedence is environment < YAML file < keyword overrides.

    Raises:
        ConfigurationError: If the merged configuration fails validation.
    """
    try:
        base = AppSettings()
        merged = base.model_dump()
        if path is not None:
            merged = _deep_update(merged, _read_yaml(path))
        if overrides:
            merged = _deep_update(merged, overrides)
        return AppSettings.model_validate(merged)
    except ValidationError as err:
        raise ConfigurationError("Invalid configuration", detail=str(err)) from err


@lru_cache(maxsize=1)
def get_settings() -> AppSettings:
    """Cached accessor used by process entry-points."""
    return load_settings()


__all__ = [
    "AppSettings",
    "LoggingSettings",
    "MetricsSettings",
    "PipelineSettings",
    "get_settings",
    "load_settings",
]
