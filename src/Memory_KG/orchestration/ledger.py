"""Run ledger tracking pipeline run state.

This module keeps the authoritative record of every pipeline run: its status,
progress, the task currently executing, one execution record per task
attempt and the storage write outcomes recorded against it.

The ledger supports:
- Run creation with an ordered list of task names
- Status transitions validated against a monotonic state machine
- Append-only task execution records; write outcomes minus those of retried
  task attempts
- Cooperative cancellation flags
- Snapshot queries that never expose mutable state
- Lazy purging of terminal runs after a retention window

Thread Safety:
    Thread-safe. Every public method holds a re-entrant lock so status queries
    from other threads observe consistent snapshots.

Example:
    >>> ledger = RunLedger()
    >>> run = ledger.create(run_id="run-1", task_names=["chunk", "embed"])
    >>> ledger.mark_processing(run.run_id)
    >>> ledger.mark_completed(run.run_id)
"""

from __future__ import annotations

# ==============================================================================
# IMPORTS
# ==============================================================================
import builtins
import threading
from collections import Counter
from collections.abc import Callable, Iterable, Iterator
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

import structlog

from Memory_KG.observability.metrics import record_run_transition, update_run_status_metrics
from Memory_KG.storage.models import WRITE_ORDER, WriteOutcome
from Memory_KG.utils.errors import ProblemDetail
from Memory_KG.utils.time import utc_now

logger = structlog.get_logger(__name__)

# ==============================================================================
# TYPE DEFINITIONS
# ==============================================================================


class RunStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class TaskOutcome(str, Enum):
    SUCCESS = "success"
    RETRIED = "retried"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED})
ALLOWED_TRANSITIONS: dict[RunStatus, frozenset[RunStatus]] = {
    RunStatus.PENDING: frozenset({RunStatus.PROCESSING, RunStatus.CANCELLED, RunStatus.FAILED}),
    RunStatus.PROCESSING: frozenset({RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED}),
    RunStatus.COMPLETED: frozenset(),
    RunStatus.FAILED: frozenset(),
    RunStatus.CANCELLED: frozenset(),
}

# ==============================================================================
# DATA MODELS
# ==============================================================================


@dataclass(slots=True, frozen=True)
class RunTransition:
    """A status change in a run's lifecycle.

    Attributes:
        from_status: Previous run status.
        to_status: New run status.
        task: Task executing when the transition happened.
        reason: Optional reason for the transition.
        timestamp: When the transition occurred.
    """

    from_status: RunStatus
    to_status: RunStatus
    task: str | None
    reason: str | None
    timestamp: datetime = field(default_factory=utc_now)


@dataclass(slots=True, frozen=True)
class TaskExecutionRecord:
    """One attempt of one task within a run.

    Attributes:
        task: Task name.
        attempt: 1-based attempt number.
        started_at: When the attempt started.
        ended_at: When the attempt settled.
        outcome: ``RETRIED`` for attempts followed by another attempt,
            otherwise ``SUCCESS`` or ``FAILED``.
        error: Problem detail of the failure, if any.
        partition: Partition index for parallel-safe tasks.
    """

    task: str
    attempt: int
    started_at: datetime
    ended_at: datetime
    outcome: TaskOutcome
    error: ProblemDetail | None = None
    partition: int | None = None

    @property
    def duration_seconds(self) -> float:
        return (self.ended_at - self.started_at).total_seconds()


@dataclass(slots=True, frozen=True)
class WriteSummary:
    """Aggregate of the write outcomes recorded for a run."""

    batches: int = 0
    succeeded: int = 0
    partial: int = 0
    all_failed: int = 0
    failed_items: int = 0
    orphaned_rows: int = 0
    failed_by_backend: dict[str, int] = field(default_factory=dict)

    @classmethod
    def from_outcomes(cls, outcomes: Iterable[WriteOutcome]) -> WriteSummary:
        batches = succeeded = partial = all_failed = failed_items = orphaned = 0
        by_backend = {kind.value: 0 for kind in WRITE_ORDER}
        for outcome in outcomes:
            batches += 1
            if outcome.succeeded:
                succeeded += 1
            elif outcome.all_failed:
                all_failed += 1
            else:
                partial += 1
            for kind in outcome.failed_backends:
                by_backend[kind.value] += 1
            failed_items += sum(len(result.failed_items) for result in outcome.results.values())
            orphaned += len(outcome.orphaned_rows)
        return cls(
            batches=batches,
            succeeded=succeeded,
            partial=partial,
            all_failed=all_failed,
            failed_items=failed_items,
            orphaned_rows=orphaned,
            failed_by_backend=by_backend,
        )

    def worst_failure_fraction(self) -> tuple[str | None, float]:
        """Return the most significant failure fraction and what produced it.

        The label is ``"all"`` for batches that failed on every backend or the
        backend name for the backend with the most failed batches.
        """
        if not self.batches:
            return None, 0.0
        label: str | None = None
        fraction = 0.0
        if self.all_failed:
            label, fraction = "all", self.all_failed / self.batches
        for backend, failed in self.failed_by_backend.items():
            candidate = failed / self.batches
            if candidate > fraction:
                label, fraction = backend, candidate
        return label, fraction

    def model_dump(self) -> dict[str, Any]:
        return {
            "batches": self.batches,
            "succeeded": self.succeeded,
            "partial": self.partial,
            "all_failed": self.all_failed,
            "failed_items": self.failed_items,
            "orphaned_rows": self.orphaned_rows,
            "failed_by_backend": dict(self.failed_by_backend),
        }


@dataclass
class PipelineRun:
    """Complete state of one pipeline run.

    Attributes:
        run_id: Opaque run identifier.
        task_names: Ordered names of the tasks the run executes.
        status: Current run status.
        current_index: Index of the executing task, ``-1`` before the first.
        current_task: Name of the executing task.
        progress: Fraction of tasks with a terminal outcome.
        error: Problem detail describing why the run failed.
        cancel_requested: Whether cancellation has been requested.
        metadata: Caller supplied metadata.
        created_at: Run creation timestamp.
        started_at: When the run entered ``PROCESSING``.
        ended_at: When the run reached a terminal state.
        history: Transition history.
        records: Task execution records in append order.
        write_outcomes: Storage outcomes recorded against the run. Outcomes
            written by a task attempt that was retried are dropped.
    """

    run_id: str
    task_names: tuple[str, ...]
    status: RunStatus = RunStatus.PENDING
    current_index: int = -1
    current_task: str | None = None
    progress: float = 0.0
    error: ProblemDetail | None = None
    cancel_requested: bool = False
    cancel_reason: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    started_at: datetime | None = None
    ended_at: datetime | None = None
    history: list[RunTransition] = field(default_factory=list)
    records: list[TaskExecutionRecord] = field(default_factory=list)
    write_outcomes: list[WriteOutcome] = field(default_factory=list)

    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def duration_seconds(self) -> float | None:
        if self.started_at is None or self.ended_at is None:
            return None
        return (self.ended_at - self.started_at).total_seconds()

    def write_summary(self) -> WriteSummary:
        return WriteSummary.from_outcomes(self.write_outcomes)

    def records_for(self, task: str) -> builtins.list[TaskExecutionRecord]:
        return [record for record in self.records if record.task == task]

    def snapshot(self) -> PipelineRun:
        """Return a copy whose collections can be read without affecting the ledger."""
        return PipelineRun(
            run_id=self.run_id,
            task_names=self.task_names,
            status=self.status,
            current_index=self.current_index,
            current_task=self.current_task,
            progress=self.progress,
            error=self.error,
            cancel_requested=self.cancel_requested,
            cancel_reason=self.cancel_reason,
            metadata=dict(self.metadata),
            created_at=self.created_at,
            updated_at=self.updated_at,
            started_at=self.started_at,
            ended_at=self.ended_at,
            history=list(self.history),
            records=list(self.records),
            write_outcomes=list(self.write_outcomes),
        )


# ==============================================================================
# LEDGER
# ==============================================================================


class RunLedgerError(RuntimeError):
    """Raised when ledger operations fail due to invalid state or operations."""


class RunLedger:
    """In-memory, thread-safe ledger owning every :class:`PipelineRun`.

    Terminal runs stay queryable for ``retention_seconds`` after they end and
    are purged lazily on the next ledger access.
    """

    def __init__(
        self,
        *,
        retention_seconds: float = 3600.0,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._runs: dict[str, PipelineRun] = {}
        self._lock = threading.RLock()
        self._retention = timedelta(seconds=retention_seconds)
        self._clock = clock

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------
    def create(
        self,
        *,
        run_id: str,
        task_names: Iterable[str],
        metadata: dict[str, Any] | None = None,
    ) -> PipelineRun:
        with self._lock:
            self._purge_expired()
            if run_id in self._runs:
                raise RunLedgerError(f"Run {run_id} already exists")
            now = self._clock()
            run = PipelineRun(
                run_id=run_id,
                task_names=tuple(task_names),
                metadata=dict(metadata or {}),
                created_at=now,
                updated_at=now,
            )
            self._runs[run_id] = run
            self._refresh_metrics()
            return run.snapshot()

    # ------------------------------------------------------------------
    # Mutation helpers
    # ------------------------------------------------------------------
    def _entry(self, run_id: str) -> PipelineRun:
        run = self._runs.get(run_id)
        if run is None:
            raise RunLedgerError(f"Run {run_id} not found")
        return run

    def _writable(self, run_id: str) -> PipelineRun:
        run = self._entry(run_id)
        if run.is_terminal():
            raise RunLedgerError(f"Run {run_id} is {run.status.value} and can no longer change")
        return run

    def _transition(
        self,
        run_id: str,
        status: RunStatus,
        *,
        reason: str | None = None,
    ) -> PipelineRun:
        run = self._entry(run_id)
        if status not in ALLOWED_TRANSITIONS[run.status]:
            raise RunLedgerError(
                f"Invalid transition {run.status.value} -> {status.value} for run {run_id}"
            )
        now = self._clock()
        run.history.append(
            RunTransition(
                from_status=run.status,
                to_status=status,
                task=run.current_task,
                reason=reason,
                timestamp=now,
            )
        )
        record_run_transition(run.status.value, status.value)
        logger.debug(
            "orchestration.run.transition",
            run_id=run_id,
            from_status=run.status.value,
            to_status=status.value,
            reason=reason,
        )
        run.status = status
        run.updated_at = now
        if status is RunStatus.PROCESSING:
            run.started_at = now
        if status in TERMINAL_STATUSES:
            run.ended_at = now
        self._refresh_metrics()
        return run

    def mark_processing(self, run_id: str) -> PipelineRun:
        with self._lock:
            return self._transition(run_id, RunStatus.PROCESSING).snapshot()

    def start_task(self, run_id: str, index: int) -> PipelineRun:
        with self._lock:
            run = self._writable(run_id)
            if not 0 <= index < len(run.task_names):
                raise RunLedgerError(f"Task index {index} out of range for run {run_id}")
            if index < run.current_index:
                raise RunLedgerError(f"Run {run_id} cannot move back to task {index}")
            run.current_index = index
            run.current_task = run.task_names[index]
            run.updated_at = self._clock()
            return run.snapshot()

    def record_attempt(self, run_id: str, record: TaskExecutionRecord) -> None:
        with self._lock:
            run = self._writable(run_id)
            run.records.append(record)
            run.updated_at = self._clock()

    def complete_task(self, run_id: str, index: int) -> PipelineRun:
        """Advance progress after the task at ``index`` settled."""
        with self._lock:
            run = self._writable(run_id)
            total = len(run.task_names) or 1
            progress = min(1.0, (index + 1) / total)
            run.progress = max(run.progress, progress)
            run.updated_at = self._clock()
            return run.snapshot()

    def record_write_outcome(self, run_id: str, outcome: WriteOutcome) -> None:
        with self._lock:
            run = self._writable(run_id)
            run.write_outcomes.append(outcome)
            run.updated_at = self._clock()

    def discard_write_outcomes(self, run_id: str, outcomes: Iterable[WriteOutcome]) -> int:
        """Drop ``outcomes`` (matched by identity) from the run's write summary."""
        with self._lock:
            run = self._writable(run_id)
            dropped = {id(outcome) for outcome in outcomes}
            if not dropped:
                return 0
            kept = [outcome for outcome in run.write_outcomes if id(outcome) not in dropped]
            removed = len(run.write_outcomes) - len(kept)
            run.write_outcomes = kept
            run.updated_at = self._clock()
            return removed

    def request_cancel(self, run_id: str, *, reason: str | None = None) -> bool:
        """Flag ``run_id`` for cancellation. Returns ``False`` for terminal runs."""
        with self._lock:
            run = self._entry(run_id)
            if run.is_terminal():
                return False
            run.cancel_requested = True
            run.cancel_reason = reason
            run.updated_at = self._clock()
            return True

    def is_cancel_requested(self, run_id: str) -> bool:
        with self._lock:
            run = self._runs.get(run_id)
            return bool(run and run.cancel_requested)

    def mark_completed(self, run_id: str) -> PipelineRun:
        with self._lock:
            run = self._transition(run_id, RunStatus.COMPLETED)
            run.progress = 1.0
            run.current_task = None
            return run.snapshot()

    def mark_failed(self, run_id: str, *, error: ProblemDetail) -> PipelineRun:
        with self._lock:
            run = self._transition(run_id, RunStatus.FAILED, reason=error.title)
            run.error = error
            return run.snapshot()

    def mark_cancelled(self, run_id: str, *, reason: str | None = None) -> PipelineRun:
        with self._lock:
            run = self._transition(run_id, RunStatus.CANCELLED, reason=reason)
            return run.snapshot()

    # ------------------------------------------------------------------
    # Query helpers
    # ------------------------------------------------------------------
    def get(self, run_id: str) -> PipelineRun | None:
        with self._lock:
            self._purge_expired()
            run = self._runs.get(run_id)
            return run.snapshot() if run else None

    def list(self, *, status: RunStatus | None = None) -> builtins.list[PipelineRun]:
        with self._lock:
            self._purge_expired()
            items = [
                run.snapshot()
                for run in self._runs.values()
                if status is None or run.status is status
            ]
        return sorted(items, key=lambda item: item.created_at)

    def all(self) -> Iterator[PipelineRun]:
        yield from self.list()

    def __contains__(self, run_id: object) -> bool:
        with self._lock:
            return run_id in self._runs

    # ------------------------------------------------------------------
    # Retention
    # ------------------------------------------------------------------
    def purge_expired(self) -> int:
        with self._lock:
            return self._purge_expired()

    def _purge_expired(self) -> int:
        cutoff = self._clock() - self._retention
        expired = [
            run_id
            for run_id, run in self._runs.items()
            if run.is_terminal() and run.ended_at is not None and run.ended_at <= cutoff
        ]
        for run_id in expired:
            del self._runs[run_id]
        if expired:
            logger.debug("orchestration.ledger.purged", runs=len(expired))
            self._refresh_metrics()
        return len(expired)

    # ------------------------------------------------------------------
    # Metrics
    # ------------------------------------------------------------------
    def _refresh_metrics(self) -> None:
        counts = Counter(run.status.value for run in self._runs.values())
        update_run_status_metrics(counts, tuple(status.value for status in RunStatus))


# ==============================================================================
# EXPORTS
# ==============================================================================

__all__ = [
    "ALLOWED_TRANSITIONS",
    "PipelineRun",
    "RunLedger",
    "RunLedgerError",
    "RunStatus",
    "RunTransition",
    "TERMINAL_STATUSES",
    "TaskExecutionRecord",
    "TaskOutcome",
    "WriteSummary",
]
