"""Composable processing tasks and the context handed to each invocation.

Key Responsibilities:
    - Define :class:`Task`, a frozen description of one processing step
    - Define :class:`RunContext`, the per-invocation handle through which a
      task reaches the embedding dispatcher and the storage fan-out
    - Normalise task output (values, awaitables, sync or async iterables)

Collaborators:
    - Upstream: :class:`~Memory_KG.orchestration.orchestrator.PipelineOrchestrator`
      builds a context for every attempt and calls :meth:`Task.execute`
    - Downstream: :class:`EmbeddingDispatcher` and :class:`StorageFanoutCoordinator`

Thread Safety:
    - Tasks are immutable and may be shared across runs. Contexts belong to a
      single invocation.

Example:
    >>> @task("chunk", parallel_safe=True)
    ... def chunk(documents, ctx):
    ...     return [WorkItem(item_id=doc.id, payload=doc.text) for doc in documents]
"""

from __future__ import annotations

import inspect
from collections.abc import AsyncIterable, Callable, Iterator, Mapping, Sequence
from dataclasses import dataclass, field, replace
from typing import Any

import structlog

from Memory_KG.resilience.errors import ConfigurationError, FatalWriteFailure
from Memory_KG.resilience.policy import RetryPolicy
from Memory_KG.services.embedding.dispatcher import EmbeddingDispatcher
from Memory_KG.services.embedding.models import EmbeddingRequest, EmbeddingResult
from Memory_KG.storage.fanout import StorageFanoutCoordinator
from Memory_KG.storage.models import StorageWriteBatch, WriteOutcome

TaskHandler = Callable[[Any, "RunContext"], Any]


# ==============================================================================
# DATA MODELS
# ==============================================================================


@dataclass(slots=True)
class WorkItem:
    """A unit of data flowing between tasks.

    Attributes:
        item_id: Stable identifier of the item within its run.
        payload: Task specific content (text, chunk, entity, ...).
        correlation_id: Identifier tying the item back to its source request.
        run_id: Run the item belongs to, when known.
        metadata: Free-form annotations added by tasks.
    """

    item_id: str
    payload: Any
    correlation_id: str | None = None
    run_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


def _never() -> bool:
    return False


@dataclass(slots=True)
class RunContext:
    """Per-invocation handle given to a task handler."""

    run_id: str
    task_name: str
    attempt: int = 1
    correlation_id: str | None = None
    metadata: Mapping[str, Any] = field(default_factory=dict)
    partition: int | None = None
    dispatcher: EmbeddingDispatcher | None = None
    coordinator: StorageFanoutCoordinator | None = None
    cancel_check: Callable[[], bool] = _never
    outcomes: list[WriteOutcome] = field(default_factory=list, init=False, repr=False)

    @property
    def cancel_requested(self) -> bool:
        return self.cancel_check()

    @property
    def logger(self) -> Any:
        return structlog.get_logger("Memory_KG.tasks").bind(
            run_id=self.run_id,
            task=self.task_name,
            attempt=self.attempt,
            partition=self.partition,
        )

    async def embed(
        self,
        items: Sequence[EmbeddingRequest | tuple[str, str]],
    ) -> list[EmbeddingResult]:
        """Embed ``items`` through the run's dispatcher, honouring cancellation."""
        if self.dispatcher is None:
            raise ConfigurationError("No embedding dispatcher configured", detail=self.task_name)
        return await self.dispatcher.submit(items, should_cancel=self.cancel_check)

    async def write(self, batch: StorageWriteBatch) -> WriteOutcome:
        """Fan ``batch`` out to storage on behalf of this run.

        Raises:
            FatalWriteFailure: A backend failed with a non-retryable error.
        """
        if self.coordinator is None:
            raise ConfigurationError("No storage coordinator configured", detail=self.task_name)
        outcome = await self.coordinator.write(batch.with_run_id(self.run_id))
        self.outcomes.append(outcome)
        problem = outcome.fatal_error
        if problem is not None:
            raise FatalWriteFailure(problem)
        return outcome

    def for_attempt(self, attempt: int, *, partition: int | None = None) -> RunContext:
        return replace(self, attempt=attempt, partition=partition)


@dataclass(slots=True, frozen=True)
class Task:
    """A named, stateless processing step.

    Attributes:
        name: Unique task name within a pipeline.
        handler: ``handler(input, context)`` returning a value, an awaitable or
            a finite iterable of work items.
        parallel_safe: Whether sequence input may be partitioned and processed
            concurrently.
        batch_compatible: Whether the handler accepts a batch of items. Purely
            descriptive; the orchestrator records it on task spans but never
            changes how the handler is invoked. Partitioning follows
            ``parallel_safe``.
        partition_size: Items per partition for parallel execution. Defaults to
            an even split over the parallel concurrency limit.
        retry_policy: Override for the orchestrator's retry policy.
        timeout_seconds: Upper bound for one invocation.
    """

    name: str
    handler: TaskHandler
    parallel_safe: bool = False
    batch_compatible: bool = False
    partition_size: int | None = None
    retry_policy: RetryPolicy | None = None
    timeout_seconds: float | None = None
    description: str = ""

    def __post_init__(self) -> None:
        if not self.name:
            raise ConfigurationError("Task name must not be empty")
        if not callable(self.handler):
            raise ConfigurationError("Task handler must be callable", detail=self.name)
        if self.partition_size is not None and self.partition_size < 1:
            raise ConfigurationError("partition_size must be at least 1", detail=self.name)
        if self.timeout_seconds is not None and self.timeout_seconds <= 0:
            raise ConfigurationError("timeout_seconds must be positive", detail=self.name)

    async def execute(self, data: Any, context: RunContext) -> Any:
        """Invoke the handler and materialise lazy output into a list."""
        return await materialise(self.handler(data, context))

    def partitions(self, data: Any, limit: int) -> list[Any] | None:
        """Split ``data`` for parallel execution or return ``None`` when it cannot be."""
        if not self.parallel_safe or not _is_partitionable(data):
            return None
        items = list(data)
        if len(items) < 2:
            return None
        size = self.partition_size or max(1, -(-len(items) // max(limit, 1)))
        return [items[start : start + size] for start in range(0, len(items), size)]


def task(
    name: str | None = None,
    **options: Any,
) -> Callable[[TaskHandler], Task]:
    """Decorator building a :class:`Task` from a handler function."""

    def decorator(func: TaskHandler) -> Task:
        return Task(
            name=name or func.__name__,
            handler=func,
            description=func.__doc__ or "",
            **options,
        )

    return decorator


# ==============================================================================
# HELPERS
# ==============================================================================


def _is_partitionable(data: Any) -> bool:
    return isinstance(data, Sequence) and not isinstance(data, (str, bytes, bytearray))


async def materialise(result: Any) -> Any:
    """Resolve awaitables and drain iterators/async iterables into lists.

    Concrete containers (lists, tuples, mappings) are returned unchanged.
    """
    if inspect.isawaitable(result):
        result = await result
    if isinstance(result, AsyncIterable):
        return [item async for item in result]
    if isinstance(result, Iterator):
        return list(result)
    return result


def combine_partitions(outputs: Sequence[Any]) -> Any:
    """Concatenate partition outputs in partition order."""
    combined: list[Any] = []
    for output in outputs:
        if output is None:
            continue
        if isinstance(output, (list, tuple)):
            combined.extend(output)
        else:
            combined.append(output)
    return combined


__all__ = [
    "RunContext",
    "Task",
    "TaskHandler",
    "WorkItem",
    "combine_partitions",
    "materialise",
    "task",
]
