"""Pipeline orchestrator sequencing tasks into tracked runs.

Key Responsibilities:
    - Register tasks and submit runs as ordered task sequences
    - Execute runs task by task with per-invocation retries and timeouts
    - Partition parallel-safe tasks over a bounded worker pool
    - Enforce the partial-failure threshold on recorded storage outcomes
    - Honour cooperative cancellation at task boundaries
    - Publish lifecycle events and expose non-blocking status queries

Collaborators:
    - Upstream: Ingestion front-ends and the CLI
    - Downstream: :class:`RunLedger`, :class:`EmbeddingDispatcher`,
      :class:`StorageFanoutCoordinator`, :class:`RunEventBus`

Side Effects:
    - Binds the run's correlation id to the logging context while it executes
    - Emits task duration metrics and OpenTelemetry spans

Thread Safety:
    - Runs execute on one event loop. Status queries go through the ledger and
      may be issued from any thread.
"""

from __future__ import annotations

# ==============================================================================
# IMPORTS
# ==============================================================================

import asyncio
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from time import perf_counter
from typing import Any

import structlog
from opentelemetry import trace

from Memory_KG.config.settings import PipelineSettings
from Memory_KG.observability.metrics import observe_task_duration
from Memory_KG.resilience.errors import (
    BackendUnreachable,
    ConfigurationError,
    ErrorCategory,
    FatalWriteFailure,
    PartialFailureThresholdExceeded,
    PipelineError,
    TaskTimeout,
    to_problem,
)
from Memory_KG.resilience.policy import RetryPolicy, SleepFn
from Memory_KG.resilience.worker_pool import BoundedWorkerPool
from Memory_KG.services.embedding.dispatcher import EmbeddingDispatcher
from Memory_KG.storage.fanout import StorageFanoutCoordinator
from Memory_KG.utils.errors import ProblemDetail
from Memory_KG.utils.identifiers import new_run_id
from Memory_KG.utils.logging import bind_correlation_id, reset_correlation_id
from Memory_KG.utils.time import utc_now

from . import events as run_events
from .events import RunEventBus
from .ledger import (
    PipelineRun,
    RunLedger,
    RunLedgerError,
    RunStatus,
    TaskExecutionRecord,
    TaskOutcome,
    WriteSummary,
)
from .tasks import RunContext, Task, combine_partitions

logger = structlog.get_logger(__name__)
_TRACER = trace.get_tracer(__name__)

# ==============================================================================
# DATA MODELS
# ==============================================================================


class RunCancelled(PipelineError):
    """Raised internally when a cancelled run must stop retrying a task."""

    category = ErrorCategory.FATAL
    default_status = 409


@dataclass(slots=True, frozen=True)
class RunStatusView:
    """Read-only status of a run, safe to hand to callers mid-run."""

    run_id: str
    status: RunStatus
    progress: float
    current_task: str | None
    error: ProblemDetail | None
    write_summary: WriteSummary
    cancel_requested: bool = False

    @classmethod
    def from_run(cls, run: PipelineRun) -> RunStatusView:
        return cls(
            run_id=run.run_id,
            status=run.status,
            progress=run.progress,
            current_task=run.current_task,
            error=run.error,
            write_summary=run.write_summary(),
            cancel_requested=run.cancel_requested,
        )

    @property
    def partial(self) -> bool:
        """``True`` when some storage writes failed although the run went on."""
        summary = self.write_summary
        return bool(summary.partial or summary.all_failed or summary.failed_items)

    def model_dump(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "run_id": self.run_id,
            "status": self.status.value,
            "progress": round(self.progress, 4),
            "current_task": self.current_task,
            "cancel_requested": self.cancel_requested,
            "partial": self.partial,
            "write_summary": self.write_summary.model_dump(),
        }
        if self.error is not None:
            payload["error"] = self.error.model_dump()
        return payload


@dataclass(slots=True)
class _RunPlan:
    tasks: tuple[Task, ...]
    data: Any
    correlation_id: str
    metadata: dict[str, Any] = field(default_factory=dict)


# ==============================================================================
# ORCHESTRATOR
# ==============================================================================


class PipelineOrchestrator:
    """Execute ordered task sequences as tracked, cancellable pipeline runs."""

    def __init__(
        self,
        *,
        dispatcher: EmbeddingDispatcher | None = None,
        coordinator: StorageFanoutCoordinator | None = None,
        ledger: RunLedger | None = None,
        events: RunEventBus | None = None,
        retry_policy: RetryPolicy | None = None,
        task_parallel_concurrency_limit: int = 4,
        partial_failure_threshold: float = 0.5,
        health_check_before_run: bool = True,
        sleep: SleepFn | None = None,
    ) -> None:
        if not 0.0 <= partial_failure_threshold <= 1.0:
            raise ConfigurationError(
                "partial_failure_threshold must be within [0, 1]",
                detail=str(partial_failure_threshold),
            )
        self.dispatcher = dispatcher
        self.coordinator = coordinator
        self.ledger = ledger or RunLedger()
        self.events = events or RunEventBus()
        self.retry_policy = retry_policy or RetryPolicy()
        self.partial_failure_threshold = partial_failure_threshold
        self.health_check_before_run = health_check_before_run
        self._sleep = sleep
        self._parallel_pool = BoundedWorkerPool(task_parallel_concurrency_limit, name="tasks")
        self._registry: dict[str, Task] = {}
        self._plans: dict[str, _RunPlan] = {}
        self._active: set[str] = set()
        if coordinator is not None and coordinator.recorder is None:
            coordinator.recorder = self.ledger

    @classmethod
    def from_settings(
        cls,
        settings: PipelineSettings,
        *,
        dispatcher: EmbeddingDispatcher | None = None,
        coordinator: StorageFanoutCoordinator | None = None,
        ledger: RunLedger | None = None,
        events: RunEventBus | None = None,
        sleep: SleepFn | None = None,
    ) -> PipelineOrchestrator:
        return cls(
            dispatcher=dispatcher,
            coordinator=coordinator,
            ledger=ledger or RunLedger(retention_seconds=settings.run_retention_seconds),
            events=events,
            retry_policy=settings.retry_policy(),
            task_parallel_concurrency_limit=settings.task_parallel_concurrency_limit,
            partial_failure_threshold=settings.partial_failure_threshold,
            health_check_before_run=settings.health_check_before_run,
            sleep=sleep,
        )

    # ------------------------------------------------------------------
    # Task registry
    # ------------------------------------------------------------------
    def register_task(self, task: Task) -> Task:
        existing = self._registry.get(task.name)
        if existing is not None and existing is not task:
            raise ConfigurationError("Task already registered", detail=task.name)
        self._registry[task.name] = task
        return task

    @property
    def tasks(self) -> dict[str, Task]:
        return dict(self._registry)

    def _resolve(self, tasks: Iterable[Task | str]) -> tuple[Task, ...]:
        resolved: list[Task] = []
        for entry in tasks:
            if isinstance(entry, Task):
                resolved.append(entry)
                continue
            registered = self._registry.get(entry)
            if registered is None:
                raise ConfigurationError("Unknown task", detail=str(entry))
            resolved.append(registered)
        if not resolved:
            raise ConfigurationError("A pipeline run requires at least one task")
        names = [task.name for task in resolved]
        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            raise ConfigurationError("Task names must be unique within a run", detail=", ".join(duplicates))
        return tuple(resolved)

    # ------------------------------------------------------------------
    # Submission & execution
    # ------------------------------------------------------------------
    def submit(
        self,
        tasks: Sequence[Task | str],
        data: Any = None,
        *,
        run_id: str | None = None,
        metadata: dict[str, Any] | None = None,
        correlation_id: str | None = None,
    ) -> PipelineRun:
        """Create a ``PENDING`` run executing ``tasks`` in order over ``data``."""
        resolved = self._resolve(tasks)
        run_id = run_id or new_run_id()
        run = self.ledger.create(
            run_id=run_id,
            task_names=[task.name for task in resolved],
            metadata=metadata,
        )
        self._plans[run_id] = _RunPlan(
            tasks=resolved,
            data=data,
            correlation_id=correlation_id or run_id,
            metadata=dict(metadata or {}),
        )
        self.events.publish(run_events.RUN_SUBMITTED, run_id, tasks=list(run.task_names))
        logger.info("orchestration.run.submitted", run_id=run_id, tasks=list(run.task_names))
        return run

    async def execute(
        self,
        tasks: Sequence[Task | str],
        data: Any = None,
        **options: Any,
    ) -> PipelineRun:
        """Submit a run and execute it to a terminal state."""
        run = self.submit(tasks, data, **options)
        return await self.run(run.run_id)

    def start(self, run_id: str) -> asyncio.Task[PipelineRun]:
        """Execute ``run_id`` in the background and return the asyncio task."""
        if run_id not in self._plans:
            raise RunLedgerError(f"Run {run_id} is not pending execution")
        return asyncio.create_task(self.run(run_id), name=f"pipeline-run-{run_id}")

    async def run(self, run_id: str) -> PipelineRun:
        """Execute a submitted run and return its terminal snapshot."""
        plan = self._plans.pop(run_id, None)
        if plan is None:
            existing = self.ledger.get(run_id)
            if existing is not None and existing.is_terminal():
                return existing
            raise RunLedgerError(f"Run {run_id} is not pending execution")
        token = bind_correlation_id(plan.correlation_id)
        self._active.add(run_id)
        try:
            with _TRACER.start_as_current_span("pipeline.run") as span:
                span.set_attribute("pipeline.run_id", run_id)
                span.set_attribute("pipeline.tasks", len(plan.tasks))
                result = await self._execute(run_id, plan)
                span.set_attribute("pipeline.status", result.status.value)
                return result
        except asyncio.CancelledError:
            current = self.ledger.get(run_id)
            if current is not None and not current.is_terminal():
                self._finish_cancelled(run_id, reason="execution cancelled")
            raise
        finally:
            self._active.discard(run_id)
            reset_correlation_id(token)

    async def _execute(self, run_id: str, plan: _RunPlan) -> PipelineRun:
        if self.ledger.is_cancel_requested(run_id):
            return self._finish_cancelled(run_id)

        if self.health_check_before_run and self.coordinator is not None:
            try:
                await self.coordinator.ensure_reachable()
            except BackendUnreachable as exc:
                return self._finish_failed(run_id, exc, task=None)

        self.ledger.mark_processing(run_id)
        self.events.publish(run_events.RUN_STARTED, run_id)
        logger.info("orchestration.run.start", run_id=run_id, tasks=len(plan.tasks))
        started = perf_counter()

        data = plan.data
        for index, task in enumerate(plan.tasks):
            if self.ledger.is_cancel_requested(run_id):
                return self._finish_cancelled(run_id)
            self.ledger.start_task(run_id, index)
            self.events.publish(run_events.TASK_STARTED, run_id, task=task.name, index=index)
            try:
                data = await self._run_task(run_id, plan, task, data)
            except RunCancelled:
                return self._finish_cancelled(run_id)
            except Exception as exc:
                self.events.publish(
                    run_events.TASK_FAILED,
                    run_id,
                    task=task.name,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
                return self._finish_failed(run_id, exc, task=task.name)
            self.ledger.complete_task(run_id, index)
            self.events.publish(run_events.TASK_COMPLETED, run_id, task=task.name, index=index)
            fatal = self._fatal_write(run_id)
            if fatal is not None:
                return self._finish_failed(run_id, fatal, task=task.name)
            breach = self._threshold_breach(run_id)
            if breach is not None:
                return self._finish_failed(run_id, breach, task=task.name)

        if self.ledger.is_cancel_requested(run_id):
            return self._finish_cancelled(run_id)
        completed = self.ledger.mark_completed(run_id)
        self.events.publish(run_events.RUN_COMPLETED, run_id)
        logger.info(
            "orchestration.run.completed",
            run_id=run_id,
            duration_ms=round((perf_counter() - started) * 1000, 3),
            **completed.write_summary().model_dump(),
        )
        return completed

    # ------------------------------------------------------------------
    # Task execution
    # ------------------------------------------------------------------
    async def _run_task(self, run_id: str, plan: _RunPlan, task: Task, data: Any) -> Any:
        policy = task.retry_policy or self.retry_policy
        partitions = task.partitions(data, self._parallel_pool.limit)
        started = perf_counter()
        with _TRACER.start_as_current_span(f"pipeline.task.{task.name}") as span:
            span.set_attribute("pipeline.run_id", run_id)
            span.set_attribute("pipeline.task", task.name)
            span.set_attribute("pipeline.task.batch_compatible", task.batch_compatible)
            logger.info("orchestration.task.start", run_id=run_id, task=task.name)
            try:
                if partitions is None:
                    result = await self._invoke_with_retries(run_id, plan, task, data, policy)
                else:
                    span.set_attribute("pipeline.partitions", len(partitions))

                    async def _partition(entry: tuple[int, Any]) -> Any:
                        index, chunk = entry
                        return await self._invoke_with_retries(
                            run_id, plan, task, chunk, policy, partition=index
                        )

                    outputs = await self._parallel_pool.map(_partition, enumerate(partitions))
                    result = combine_partitions(outputs)
            except RunCancelled:
                raise
            except Exception as exc:
                duration = perf_counter() - started
                observe_task_duration(task.name, "failed", duration)
                span.set_attribute("pipeline.task.status", "failed")
                logger.warning(
                    "orchestration.task.failure",
                    run_id=run_id,
                    task=task.name,
                    error=str(exc),
                    error_type=type(exc).__name__,
                    duration_ms=round(duration * 1000, 3),
                )
                raise
            duration = perf_counter() - started
            observe_task_duration(task.name, "success", duration)
            span.set_attribute("pipeline.task.status", "success")
            logger.info(
                "orchestration.task.success",
                run_id=run_id,
                task=task.name,
                duration_ms=round(duration * 1000, 3),
            )
            return result

    async def _invoke_with_retries(
        self,
        run_id: str,
        plan: _RunPlan,
        task: Task,
        data: Any,
        policy: RetryPolicy,
        *,
        partition: int | None = None,
    ) -> Any:
        retrying = policy.build_async_retrying(
            scope="task",
            sleep=self._sleep,
            run_id=run_id,
            task=task.name,
            partition=partition,
        )
        async for attempt in retrying:
            with attempt:
                number = attempt.retry_state.attempt_number
                if number > 1 and self.ledger.is_cancel_requested(run_id):
                    raise RunCancelled("Run cancelled between task attempts", detail=task.name)
                context = self._context(run_id, plan, task, number, partition)
                started_at = utc_now()
                try:
                    result = await self._invoke_once(task, data, context)
                except Exception as exc:
                    will_retry = policy.is_retryable(exc) and number < policy.max_attempts
                    self.ledger.record_attempt(
                        run_id,
                        TaskExecutionRecord(
                            task=task.name,
                            attempt=number,
                            started_at=started_at,
                            ended_at=utc_now(),
                            outcome=TaskOutcome.RETRIED if will_retry else TaskOutcome.FAILED,
                            error=to_problem(exc, task=task.name, attempt=number),
                            partition=partition,
                        ),
                    )
                    if will_retry:
                        # the retry rewrites these batches
                        self.ledger.discard_write_outcomes(run_id, context.outcomes)
                        self.events.publish(
                            run_events.TASK_RETRIED,
                            run_id,
                            task=task.name,
                            attempt=number,
                            partition=partition,
                            error=str(exc),
                        )
                    raise
                self.ledger.record_attempt(
                    run_id,
                    TaskExecutionRecord(
                        task=task.name,
                        attempt=number,
                        started_at=started_at,
                        ended_at=utc_now(),
                        outcome=TaskOutcome.SUCCESS,
                        partition=partition,
                    ),
                )
        return result

    async def _invoke_once(self, task: Task, data: Any, context: RunContext) -> Any:
        if task.timeout_seconds is None:
            return await task.execute(data, context)
        try:
            return await asyncio.wait_for(task.execute(data, context), timeout=task.timeout_seconds)
        except asyncio.TimeoutError as exc:
            raise TaskTimeout(
                "Task invocation timed out",
                detail=f"{task.name} exceeded {task.timeout_seconds}s",
            ) from exc

    def _context(
        self,
        run_id: str,
        plan: _RunPlan,
        task: Task,
        attempt: int,
        partition: int | None,
    ) -> RunContext:
        return RunContext(
            run_id=run_id,
            task_name=task.name,
            attempt=attempt,
            correlation_id=plan.correlation_id,
            metadata=plan.metadata,
            partition=partition,
            dispatcher=self.dispatcher,
            coordinator=self.coordinator,
            cancel_check=lambda: self.ledger.is_cancel_requested(run_id),
        )

    # ------------------------------------------------------------------
    # Partial failure
    # ------------------------------------------------------------------
    def _fatal_write(self, run_id: str) -> FatalWriteFailure | None:
        run = self.ledger.get(run_id)
        if run is None:
            return None
        for outcome in run.write_outcomes:
            problem = outcome.fatal_error
            if problem is not None:
                return FatalWriteFailure(problem)
        return None

    def _threshold_breach(self, run_id: str) -> PartialFailureThresholdExceeded | None:
        run = self.ledger.get(run_id)
        if run is None:
            return None
        summary = run.write_summary()
        scope, fraction = summary.worst_failure_fraction()
        if fraction <= self.partial_failure_threshold:
            return None
        return PartialFailureThresholdExceeded(
            "Partial failure threshold exceeded",
            detail=f"{scope} failed for {fraction:.0%} of {summary.batches} batches",
            extra={
                "scope": scope,
                "fraction": round(fraction, 4),
                "threshold": self.partial_failure_threshold,
            },
        )

    # ------------------------------------------------------------------
    # Terminal transitions
    # ------------------------------------------------------------------
    def _finish_failed(self, run_id: str, exc: BaseException, *, task: str | None) -> PipelineRun:
        problem = to_problem(exc, task=task)
        failed = self.ledger.mark_failed(run_id, error=problem)
        self.events.publish(
            run_events.RUN_FAILED,
            run_id,
            task=task,
            error=problem.title,
            category=problem.extra.get("category"),
        )
        logger.warning(
            "orchestration.run.failed",
            run_id=run_id,
            task=task,
            error=problem.title,
            detail=problem.detail,
            category=problem.extra.get("category"),
        )
        return failed

    def _finish_cancelled(self, run_id: str, *, reason: str | None = None) -> PipelineRun:
        current = self.ledger.get(run_id)
        reason = reason or (current.cancel_reason if current else None)
        cancelled = self.ledger.mark_cancelled(run_id, reason=reason)
        self.events.publish(run_events.RUN_CANCELLED, run_id, reason=reason)
        logger.info("orchestration.run.cancelled", run_id=run_id, reason=reason)
        return cancelled

    # ------------------------------------------------------------------
    # Control & queries
    # ------------------------------------------------------------------
    def cancel(self, run_id: str, *, reason: str | None = None) -> bool:
        """Request cancellation of ``run_id``.

        A run that has not started executing is cancelled immediately. A
        running run stops at the next task boundary. Returns ``False`` when the
        run is unknown or already terminal.
        """
        if run_id not in self.ledger:
            return False
        if not self.ledger.request_cancel(run_id, reason=reason):
            return False
        if run_id in self._plans and run_id not in self._active:
            self._plans.pop(run_id, None)
            self._finish_cancelled(run_id, reason=reason)
        return True

    def get_status(self, run_id: str) -> RunStatusView:
        run = self.ledger.get(run_id)
        if run is None:
            raise RunLedgerError(f"Run {run_id} not found")
        return RunStatusView.from_run(run)

    def get_run(self, run_id: str) -> PipelineRun | None:
        return self.ledger.get(run_id)

    def list_runs(self, *, status: RunStatus | None = None) -> list[PipelineRun]:
        return self.ledger.list(status=status)


__all__ = ["PipelineOrchestrator", "RunCancelled", "RunStatusView"]
