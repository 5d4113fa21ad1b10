"""Failure taxonomy shared by the dispatcher, the fan-out coordinator and the orchestrator.

Key Responsibilities:
    - Define the typed failure signals raised by providers, backends and tasks
    - Classify arbitrary exceptions into ``TRANSIENT``, ``DATA`` or ``FATAL``
    - Convert exceptions into :class:`ProblemDetail` records for the run ledger

Collaborators:
    - Upstream: Provider and backend collaborators raise these exceptions
    - Downstream: :mod:`Memory_KG.resilience.policy` uses ``classify`` to decide
      retry eligibility; the ledger stores ``to_problem`` output

Thread Safety:
    - Thread-safe; exceptions are immutable after construction
"""

from __future__ import annotations

import asyncio
from enum import Enum
from typing import Any, Mapping

from Memory_KG.utils.errors import FoundationError, ProblemDetail


class ErrorCategory(str, Enum):
    """Coarse classification driving retry and propagation decisions."""

    TRANSIENT = "transient"
    DATA = "data"
    FATAL = "fatal"


class PipelineError(FoundationError):
    """Base class for every failure signal understood by the pipeline core."""

    category: ErrorCategory = ErrorCategory.TRANSIENT
    default_status: int = 500

    def __init__(
        self,
        message: str,
        *,
        detail: str | None = None,
        status: int | None = None,
        extra: Mapping[str, Any] | None = None,
    ) -> None:
        payload = {"category": self.category.value, "kind": type(self).__name__}
        payload.update(extra or {})
        super().__init__(
            message,
            status=status or self.default_status,
            detail=detail,
            extra=payload,
        )

    @property
    def retryable(self) -> bool:
        return self.category is not ErrorCategory.FATAL


# ---------------------------------------------------------------------------
# Provider signals
# ---------------------------------------------------------------------------


class ProviderUnavailable(PipelineError):
    """The embedding/LLM provider refused or dropped the connection."""

    default_status = 503


class ProviderTimeout(PipelineError):
    """A provider call exceeded its per-call timeout."""

    default_status = 504


class RateLimited(PipelineError):
    """The provider asked the caller to slow down."""

    default_status = 429

    def __init__(
        self,
        message: str = "Provider rate limit reached",
        *,
        retry_after: float | None = None,
        detail: str | None = None,
    ) -> None:
        super().__init__(message, detail=detail, extra={"retry_after": retry_after})
        self.retry_after = retry_after


class EmptyVectorReturned(PipelineError):
    """The provider answered with an empty or degenerate embedding."""

    category = ErrorCategory.DATA
    default_status = 502


class MalformedInput(PipelineError):
    """Input handed to a task, provider or backend cannot be processed."""

    category = ErrorCategory.FATAL
    default_status = 422


class AuthenticationFailure(PipelineError):
    """Credentials were rejected by a provider or backend."""

    category = ErrorCategory.FATAL
    default_status = 401


class ConfigurationError(PipelineError):
    """Settings are invalid or a required collaborator is missing."""

    category = ErrorCategory.FATAL


# ---------------------------------------------------------------------------
# Backend signals
# ---------------------------------------------------------------------------


class BackendUnavailable(PipelineError):
    """A storage backend failed temporarily."""

    default_status = 503


class BackendUnreachable(PipelineError):
    """A storage backend is permanently unreachable (health check failed)."""

    category = ErrorCategory.FATAL
    default_status = 503


class FatalWriteFailure(PipelineError):
    """A backend answered a run's write with a non-retryable error.

    ``problem`` is the backend's own problem detail so the run records the
    original cause.
    """

    category = ErrorCategory.FATAL
    default_status = 502

    def __init__(self, problem: ProblemDetail) -> None:
        super().__init__("Fatal storage write failure", detail=problem.detail or problem.title)
        self.problem = problem


# ---------------------------------------------------------------------------
# Orchestration signals
# ---------------------------------------------------------------------------


class TaskTimeout(PipelineError):
    """A task invocation exceeded its configured timeout."""

    default_status = 504


class PartialFailureThresholdExceeded(PipelineError):
    """Too many storage batches failed for the run to be considered complete."""

    category = ErrorCategory.FATAL
    default_status = 502


_TRANSIENT_BUILTINS: tuple[type[BaseException], ...] = (
    asyncio.TimeoutError,
    TimeoutError,
    ConnectionError,
)


def classify(exc: BaseException, *, unknown: ErrorCategory = ErrorCategory.TRANSIENT) -> ErrorCategory:
    """Return the :class:`ErrorCategory` for ``exc``.

    Pipeline errors carry their own category. Timeouts and connection errors
    from the standard library are transient. Anything else falls back to
    ``unknown``. Cancellation and other ``BaseException`` signals are fatal.
    """
    if not isinstance(exc, Exception):
        return ErrorCategory.FATAL
    if isinstance(exc, PipelineError):
        return exc.category
    if isinstance(exc, _TRANSIENT_BUILTINS):
        return ErrorCategory.TRANSIENT
    if isinstance(exc, (ValueError, TypeError)):
        return ErrorCategory.FATAL
    return unknown


def to_problem(exc: BaseException, **extra: Any) -> ProblemDetail:
    """Convert ``exc`` into a problem detail suitable for the ledger."""
    if isinstance(exc, FoundationError):
        problem = exc.problem
    else:
        problem = ProblemDetail(
            title=type(exc).__name__,
            status=500,
            detail=str(exc) or None,
            extra={"category": classify(exc).value, "kind": type(exc).__name__},
        )
    if extra:
        problem = problem.with_extra(**extra)
    return problem


__all__ = [
    "AuthenticationFailure",
    "BackendUnavailable",
    "BackendUnreachable",
    "ConfigurationError",
    "EmptyVectorReturned",
    "ErrorCategory",
    "FatalWriteFailure",
    "MalformedInput",
    "PartialFailureThresholdExceeded",
    "PipelineError",
    "ProviderTimeout",
    "ProviderUnavailable",
    "RateLimited",
    "TaskTimeout",
    "classify",
    "to_problem",
]
