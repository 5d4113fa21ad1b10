"""Retry/backoff policy shared by the dispatcher, fan-out coordinator and orchestrator.

The policy decides three things for a failed unit of work: whether it may be
retried, how long to wait before the next attempt, and when to give up. Retries
are always applied to the smallest meaningful unit (a provider batch, a single
backend write, a single task invocation) so committed work is never redone.

The implementation builds :class:`tenacity.AsyncRetrying` instances so callers
get attempt numbering, ``before_sleep`` hooks and ``reraise`` semantics from
``tenacity`` rather than a hand rolled loop.
"""

from __future__ import annotations

import asyncio
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

import structlog
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt

from Memory_KG.observability.metrics import record_retry

from .errors import ErrorCategory, RateLimited, classify

logger = structlog.get_logger(__name__)

SleepFn = Callable[[float], Awaitable[None]]


@dataclass(slots=True, frozen=True)
class RetryPolicy:
    """Exponential backoff policy with failure classification.

    Attributes:
        max_attempts: Total attempts including the first call.
        base_delay: Delay in seconds before the second attempt.
        backoff_multiplier: Exponential growth factor applied per attempt.
        max_delay: Upper bound for any single delay.
        jitter: Fraction of the computed delay added or removed at random.
        unknown_category: Category assigned to exceptions outside the taxonomy.
    """

    max_attempts: int = 3
    base_delay: float = 0.5
    backoff_multiplier: float = 2.0
    max_delay: float = 10.0
    jitter: float = 0.0
    unknown_category: ErrorCategory = ErrorCategory.TRANSIENT
    _rng: random.Random = field(default_factory=random.Random, compare=False, repr=False)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must be non-negative")
        if self.backoff_multiplier < 1.0:
            raise ValueError("backoff_multiplier must be >= 1.0")
        if not 0.0 <= self.jitter <= 1.0:
            raise ValueError("jitter must be within [0, 1]")

    # ------------------------------------------------------------------
    # Classification
    # ------------------------------------------------------------------
    def category(self, exc: BaseException) -> ErrorCategory:
        return classify(exc, unknown=self.unknown_category)

    def is_retryable(self, exc: BaseException) -> bool:
        """Return ``True`` when ``exc`` may be retried under this policy."""
        return self.category(exc) is not ErrorCategory.FATAL

    # ------------------------------------------------------------------
    # Delay computation
    # ------------------------------------------------------------------
    def delay(self, attempt: int, exc: BaseException | None = None) -> float:
        """Return the delay to apply after failed attempt number ``attempt``.

        ``RateLimited`` failures carrying a ``retry_after`` hint override the
        exponential schedule; the hint is still capped at ``max_delay``.
        """
        if isinstance(exc, RateLimited) and exc.retry_after is not None:
            return min(max(exc.retry_after, 0.0), self.max_delay)
        attempt = max(attempt, 1)
        computed = self.base_delay * (self.backoff_multiplier ** (attempt - 1))
        computed = min(computed, self.max_delay)
        if self.jitter and computed:
            spread = computed * self.jitter
            computed = max(0.0, computed + self._rng.uniform(-spread, spread))
        return computed

    def _wait(self, retry_state: RetryCallState) -> float:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        return self.delay(retry_state.attempt_number, exc)

    # ------------------------------------------------------------------
    # tenacity integration
    # ------------------------------------------------------------------
    def build_async_retrying(
        self,
        *,
        scope: str,
        sleep: SleepFn | None = None,
        max_attempts: int | None = None,
        on_retry: Callable[[RetryCallState], None] | None = None,
        **log_fields: Any,
    ) -> AsyncRetrying:
        """Build an ``AsyncRetrying`` controller for one unit of work.

        Args:
            scope: Metric/log label (``dispatch``, ``storage``, ``task``).
            sleep: Optional sleep coroutine, injectable for tests.
            max_attempts: Override for ``self.max_attempts``.
            on_retry: Extra callback invoked before each backoff sleep.
            **log_fields: Fields attached to the retry log event.
        """

        def _before_sleep(retry_state: RetryCallState) -> None:
            exc = retry_state.outcome.exception() if retry_state.outcome else None
            record_retry(scope)
            logger.warning(
                "resilience.retry.scheduled",
                scope=scope,
                attempt=retry_state.attempt_number,
                delay=round(retry_state.upcoming_sleep, 3),
                error=str(exc) if exc else None,
                error_type=type(exc).__name__ if exc else None,
                **log_fields,
            )
            if on_retry is not None:
                on_retry(retry_state)

        return AsyncRetrying(
            stop=stop_after_attempt(max_attempts or self.max_attempts),
            wait=self._wait,
            retry=retry_if_exception(self.is_retryable),
            before_sleep=_before_sleep,
            sleep=sleep or asyncio.sleep,
            reraise=True,
        )

    def with_overrides(self, **changes: Any) -> RetryPolicy:
        values = {
            "max_attempts": self.max_attempts,
            "base_delay": self.base_delay,
            "backoff_multiplier": self.backoff_multiplier,
            "max_delay": self.max_delay,
            "jitter": self.jitter,
            "unknown_category": self.unknown_category,
            "_rng": self._rng,
        }
        values.update(changes)
        return RetryPolicy(**values)


__all__ = ["RetryPolicy", "SleepFn"]
