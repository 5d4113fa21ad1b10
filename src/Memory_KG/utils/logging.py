"""Logging configuration for the pipeline core.

Key Responsibilities:
    - Route stdlib and structlog output to stderr as JSON lines, keeping stdout
      free for command output
    - Redact sensitive keys (tokens, API keys) before anything is rendered
    - Carry the active run's correlation id into every event

Collaborators:
    - Upstream: The CLI calls ``configure_logging`` once at start-up; the
      orchestrator binds a correlation id for each executing run
    - Downstream: ``logging`` and ``structlog``

Thread Safety:
    - ``configure_logging`` mutates global state and belongs to process start-up
    - Correlation ids live in ``contextvars`` and follow asyncio tasks
"""

# ==============================================================================
# IMPORTS
# ==============================================================================

from __future__ import annotations

import json
import logging
import sys
from collections.abc import Iterable
from contextvars import ContextVar, Token
from typing import Any, Callable

import structlog

from Memory_KG.config.settings import LoggingSettings

# ==============================================================================
# CONTEXT VARIABLES
# ==============================================================================

_correlation_id: ContextVar[str | None] = ContextVar("correlation_id", default=None)

# attributes every LogRecord carries; anything else came in through ``extra=``
_STANDARD_ATTRS = frozenset(vars(logging.LogRecord("", logging.INFO, "", 0, "", None, None))) | {
    "message",
    "asctime",
    "taskName",
}

_REDACTED = "***"

# ==============================================================================
# FORMATTERS
# ==============================================================================


def _redact(value: Any, keys: frozenset[str]) -> Any:
    if isinstance(value, dict):
        return {
            key: _REDACTED if str(key).lower() in keys else _redact(item, keys)
            for key, item in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [_redact(item, keys) for item in value]
    return value


class JsonFormatter(logging.Formatter):
    """Render stdlib records as one JSON object per line."""

    def __init__(self, *, scrub_fields: Iterable[str] | None = None) -> None:
        super().__init__(datefmt="%Y-%m-%dT%H:%M:%S%z")
        self._keys = frozenset(field.lower() for field in scrub_fields or ())

    def format(self, record: logging.LogRecord) -> str:
        extras = {
            key: value for key, value in vars(record).items() if key not in _STANDARD_ATTRS
        }
        payload: dict[str, Any] = {
            **_redact(extras, self._keys),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "time": self.formatTime(record, self.datefmt),
        }
        correlation_id = _correlation_id.get()
        if correlation_id:
            payload["correlation_id"] = correlation_id
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, sort_keys=True, default=str)


# ==============================================================================
# STRUCTLOG PROCESSORS
# ==============================================================================


def _structlog_scrubber(
    scrub_fields: Iterable[str] | None,
) -> Callable[[Any, str, dict[str, Any]], dict[str, Any]]:
    """Build a processor that redacts sensitive keys and adds the correlation id."""
    keys = frozenset(field.lower() for field in scrub_fields or ())

    def processor(_: Any, __: str, event_dict: dict[str, Any]) -> dict[str, Any]:
        correlation_id = _correlation_id.get()
        if correlation_id:
            event_dict.setdefault("correlation_id", correlation_id)
        return _redact(event_dict, keys)

    return processor


def _resolve_level(level: int | str | None) -> int:
    if isinstance(level, str):
        resolved = logging.getLevelName(level.upper())
        return resolved if isinstance(resolved, int) else logging.INFO
    if isinstance(level, int):
        return level
    return logging.INFO


def configure_logging(
    level: int | str | None = None,
    *,
    settings: LoggingSettings | None = None,
) -> None:
    """Install JSON logging on stderr for stdlib and structlog loggers.

    ``settings`` takes precedence over ``level``. Reconfigures the root logger,
    so call it once at process start-up.
    """
    if settings is None:
        settings = LoggingSettings()
    else:
        level = settings.level
    level_value = _resolve_level(level)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JsonFormatter(scrub_fields=settings.scrub_fields))
    logging.basicConfig(level=level_value, handlers=[handler], force=True)

    renderer: Any = (
        structlog.processors.JSONRenderer(sort_keys=True, default=str)
        if settings.json_output
        else structlog.dev.ConsoleRenderer()
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            _structlog_scrubber(settings.scrub_fields),
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level_value),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )


# ==============================================================================
# CORRELATION ID HELPERS
# ==============================================================================


def bind_correlation_id(value: str) -> Token[str | None]:
    """Bind a correlation identifier to the current execution context.

    Returns:
        Context variable token that can be used to restore the previous value.
    """
    token = _correlation_id.set(value)
    structlog.contextvars.bind_contextvars(correlation_id=value)
    return token


def reset_correlation_id(token: Token[str | None] | None) -> None:
    """Reset the correlation identifier context."""
    if token is not None:
        _correlation_id.reset(token)
    previous = _correlation_id.get()
    if previous:
        structlog.contextvars.bind_contextvars(correlation_id=previous)
    else:
        structlog.contextvars.unbind_contextvars("correlation_id")


def get_correlation_id() -> str | None:
    """Return the currently bound correlation identifier, if any."""
    return _correlation_id.get()


__all__ = [
    "JsonFormatter",
    "bind_correlation_id",
    "configure_logging",
    "get_correlation_id",
    "reset_correlation_id",
]
