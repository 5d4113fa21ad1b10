"""Lightweight configuration package exports."""

from __future__ import annotations

from .settings import (
    AppSettings,
    LoggingSettings,
    MetricsSettings,
    PipelineSettings,
    get_settings,
    load_settings,
)


__all__ = [
    "AppSettings",
    "LoggingSettings",
    "MetricsSettings",
    "PipelineSettings",
    "get_settings",
    "load_settings",
]
