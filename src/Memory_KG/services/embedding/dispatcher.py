"""Concurrency-bounded dispatch of embedding work to an external provider.

Key Responsibilities:
    - Group items into provider batches and run them through a shared
      :class:`BoundedWorkerPool` so the provider never sees more than the
      configured number of concurrent calls
    - Validate provider responses and retry failed batches under the shared
      retry policy
    - Resolve every input item to exactly one :class:`EmbeddingResult`, in
      input order

Collaborators:
    - Upstream: Tasks call the dispatcher through ``RunContext.embed``
    - Downstream: An :class:`EmbeddingProvider` implementation

Side Effects:
    - Emits Prometheus metrics for batch outcomes and provider latency
    - Logs batch failures and cancellations

Thread Safety:
    - Not thread-safe. One dispatcher belongs to one event loop; concurrent
      ``submit`` calls on that loop share the same concurrency bound.

Example:
    >>> dispatcher = EmbeddingDispatcher(HashingEmbeddingProvider(), batch_size=8)
    >>> results = await dispatcher.submit([("a", "first"), ("b", "second")])
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass

import structlog

from Memory_KG.config.settings import PipelineSettings
from Memory_KG.observability.metrics import observe_embedding_call, record_embedding_batch
from Memory_KG.resilience.errors import (
    EmptyVectorReturned,
    ProviderTimeout,
    to_problem,
)
from Memory_KG.resilience.policy import RetryPolicy, SleepFn
from Memory_KG.resilience.worker_pool import BoundedWorkerPool, PoolStats
from Memory_KG.utils.identifiers import new_batch_id

from .models import (
    EmbeddingRequest,
    EmbeddingResult,
    EmbeddingStatus,
    Vector,
    coerce_requests,
    validate_vector,
)
from .providers import EmbeddingProvider

logger = structlog.get_logger(__name__)

CancelCheck = Callable[[], bool]


@dataclass(slots=True)
class _Batch:
    batch_id: str
    requests: list[EmbeddingRequest]


class EmbeddingDispatcher:
    """Fan embedding requests out to a provider under a concurrency bound."""

    def __init__(
        self,
        provider: EmbeddingProvider,
        *,
        batch_size: int = 16,
        concurrency_limit: int = 5,
        inter_batch_delay: float = 0.1,
        call_timeout: float | None = 30.0,
        retry_policy: RetryPolicy | None = None,
        sleep: SleepFn | None = None,
        name: str = "embedding",
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self.provider = provider
        self.batch_size = batch_size
        self.call_timeout = call_timeout
        self.retry_policy = retry_policy or RetryPolicy()
        self._sleep = sleep
        self._pool = BoundedWorkerPool(
            concurrency_limit,
            name=name,
            inter_dispatch_delay=inter_batch_delay,
            sleep=sleep,
        )

    @classmethod
    def from_settings(
        cls,
        provider: EmbeddingProvider,
        settings: PipelineSettings,
        **overrides: object,
    ) -> EmbeddingDispatcher:
        options: dict[str, object] = {
            "batch_size": settings.embedding_batch_size,
            "concurrency_limit": settings.embedding_concurrency_limit,
            "inter_batch_delay": settings.embedding_inter_batch_delay_seconds,
            "call_timeout": settings.embedding_call_timeout_seconds,
            "retry_policy": settings.retry_policy(),
        }
        options.update(overrides)
        return cls(provider, **options)  # type: ignore[arg-type]

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------
    @property
    def concurrency_limit(self) -> int:
        return self._pool.limit

    @property
    def in_flight(self) -> int:
        return self._pool.in_flight

    def stats(self) -> PoolStats:
        return self._pool.stats()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    async def submit(
        self,
        items: Sequence[EmbeddingRequest | tuple[str, str]],
        *,
        should_cancel: CancelCheck | None = None,
    ) -> list[EmbeddingResult]:
        """Embed ``items`` and return one result per item in input order.

        Args:
            items: Requests or ``(item_id, text)`` pairs.
            should_cancel: Optional predicate checked at batch boundaries. When
                it returns ``True`` undispatched batches are cancelled and
                results of in-flight calls are discarded.

        Returns:
            Results aligned with ``items``. Failures are reported per item and
            never raised.
        """
        requests = coerce_requests(items)
        if not requests:
            return []
        batches = [
            _Batch(
                batch_id=new_batch_id("embed"),
                requests=requests[start : start + self.batch_size],
            )
            for start in range(0, len(requests), self.batch_size)
        ]
        logger.debug(
            "embedding.dispatch.start",
            items=len(requests),
            batches=len(batches),
            batch_size=self.batch_size,
            limit=self._pool.limit,
        )
        cancelled = should_cancel or _never

        async def _process(batch: _Batch) -> list[EmbeddingResult]:
            if cancelled():
                return self._settle([EmbeddingResult.cancelled(r.item_id) for r in batch.requests])
            return await self._pool.run(lambda: self._dispatch(batch, cancelled))

        grouped = await asyncio.gather(*(_process(batch) for batch in batches))
        results: list[EmbeddingResult] = [result for group in grouped for result in group]
        summary = {status.value: 0 for status in EmbeddingStatus}
        for result in results:
            summary[result.status.value] += 1
        logger.info("embedding.dispatch.completed", items=len(results), **summary)
        return results

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    async def _dispatch(self, batch: _Batch, cancelled: CancelCheck) -> list[EmbeddingResult]:
        if cancelled():
            return self._settle([EmbeddingResult.cancelled(r.item_id) for r in batch.requests])
        retrying = self.retry_policy.build_async_retrying(
            scope="dispatch",
            sleep=self._sleep,
            batch_id=batch.batch_id,
            items=len(batch.requests),
        )
        attempts = 0
        try:
            async for attempt in retrying:
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    if attempts > 1 and cancelled():
                        break
                    response = await self._call_provider(batch)
        except Exception as exc:
            logger.warning(
                "embedding.dispatch.batch_failed",
                batch_id=batch.batch_id,
                items=len(batch.requests),
                attempts=attempts,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            problem = to_problem(exc, batch_id=batch.batch_id)
            failed = [
                EmbeddingResult.failed(r.item_id, str(exc) or type(exc).__name__, error=problem, attempts=attempts)
                for r in batch.requests
            ]
            return self._settle(failed)
        else:
            if cancelled():
                logger.info(
                    "embedding.dispatch.batch_cancelled",
                    batch_id=batch.batch_id,
                    items=len(batch.requests),
                )
                return self._settle(
                    [EmbeddingResult.cancelled(r.item_id, attempts=attempts) for r in batch.requests],
                )
        results: list[EmbeddingResult] = []
        for request, entry in zip(batch.requests, response, strict=True):
            if isinstance(entry, BaseException):
                results.append(
                    EmbeddingResult.failed(
                        request.item_id,
                        str(entry) or type(entry).__name__,
                        error=to_problem(entry, batch_id=batch.batch_id),
                        attempts=attempts,
                    )
                )
            else:
                results.append(EmbeddingResult.success(request.item_id, entry, attempts=attempts))
        return self._settle(results)

    async def _call_provider(self, batch: _Batch) -> list[Vector | BaseException]:
        texts = [request.text for request in batch.requests]
        started = time.perf_counter()
        try:
            if self.call_timeout is None:
                raw = await self.provider.embed(texts)
            else:
                raw = await asyncio.wait_for(self.provider.embed(texts), timeout=self.call_timeout)
        except asyncio.TimeoutError as exc:
            raise ProviderTimeout(
                "Embedding provider call timed out",
                detail=f"{len(texts)} items after {self.call_timeout}s",
            ) from exc
        finally:
            observe_embedding_call(time.perf_counter() - started)
        entries = list(raw)
        if len(entries) != len(texts):
            raise EmptyVectorReturned(
                "Provider returned a mismatched number of vectors",
                detail=f"expected {len(texts)}, received {len(entries)}",
            )
        validated: list[Vector | BaseException] = []
        for request, entry in zip(batch.requests, entries):
            if isinstance(entry, BaseException):
                # retryable item errors retry the whole batch; fatal ones fail the item
                if self.retry_policy.is_retryable(entry):
                    raise entry
                validated.append(entry)
                continue
            validated.append(validate_vector(request.item_id, entry))
        return validated

    def _settle(self, results: list[EmbeddingResult]) -> list[EmbeddingResult]:
        if all(result.status is EmbeddingStatus.CANCELLED for result in results):
            status = EmbeddingStatus.CANCELLED
        elif any(result.ok for result in results):
            status = EmbeddingStatus.SUCCESS
        else:
            status = EmbeddingStatus.FAILED
        record_embedding_batch(status.value, len(results))
        return results


def _never() -> bool:
    return False


__all__ = ["CancelCheck", "EmbeddingDispatcher"]
