"""Coordinated writes across the graph, vector and relational stores.

Key Responsibilities:
    - Write each batch to the three backends in a fixed order
    - Retry every backend write independently under the shared retry policy
    - Record per-backend and per-item outcomes without ever dropping a failure
    - Probe backend health ahead of a run

Collaborators:
    - Upstream: Tasks write through ``RunContext.write``; the orchestrator calls
      :meth:`StorageFanoutCoordinator.health_check` before a run starts
    - Downstream: One :class:`StorageBackend` per :class:`BackendKind`; an
      optional outcome recorder (the run ledger)

Side Effects:
    - Emits Prometheus counters and latency histograms per backend
    - Logs backend failures with the batch and run identifiers

Thread Safety:
    - Not thread-safe; intended for a single event loop
"""

# ==============================================================================
# IMPORTS
# ==============================================================================

from __future__ import annotations

import asyncio
import time
from collections.abc import Mapping
from typing import Protocol

import structlog

from Memory_KG.config.settings import PipelineSettings
from Memory_KG.observability.metrics import record_storage_write
from Memory_KG.resilience.errors import BackendUnavailable, BackendUnreachable, ConfigurationError, to_problem
from Memory_KG.resilience.policy import RetryPolicy, SleepFn

from .base import BackendItemResults, HealthStatus, StorageBackend
from .models import (
    WRITE_ORDER,
    BackendKind,
    BackendWriteResult,
    BackendWriteStatus,
    StorageWriteBatch,
    WriteOutcome,
)

logger = structlog.get_logger(__name__)


class OutcomeRecorder(Protocol):
    def record_write_outcome(self, run_id: str, outcome: WriteOutcome) -> None: ...


# ==============================================================================
# COORDINATOR
# ==============================================================================


class StorageFanoutCoordinator:
    """Fan one batch out to every backend and report what landed where."""

    def __init__(
        self,
        *,
        graph: StorageBackend,
        vector: StorageBackend,
        relational: StorageBackend,
        retry_policy: RetryPolicy | None = None,
        write_timeout: float | None = 30.0,
        recorder: OutcomeRecorder | None = None,
        sleep: SleepFn | None = None,
    ) -> None:
        supplied = {
            BackendKind.GRAPH: graph,
            BackendKind.VECTOR: vector,
            BackendKind.RELATIONAL: relational,
        }
        for kind, backend in supplied.items():
            actual = getattr(backend, "kind", None)
            if actual is not None and BackendKind(actual) is not kind:
                raise ConfigurationError(
                    "Storage backend supplied for the wrong kind",
                    detail=f"expected {kind.value}, got {BackendKind(actual).value}",
                )
        self._backends: Mapping[BackendKind, StorageBackend] = supplied
        self.retry_policy = retry_policy or RetryPolicy()
        self.write_timeout = write_timeout
        self.recorder = recorder
        self._sleep = sleep

    @classmethod
    def from_settings(
        cls,
        settings: PipelineSettings,
        *,
        graph: StorageBackend,
        vector: StorageBackend,
        relational: StorageBackend,
        **overrides: object,
    ) -> StorageFanoutCoordinator:
        options: dict[str, object] = {
            "retry_policy": settings.retry_policy(),
            "write_timeout": settings.storage_write_timeout_seconds,
        }
        options.update(overrides)
        return cls(graph=graph, vector=vector, relational=relational, **options)  # type: ignore[arg-type]

    def backend(self, kind: BackendKind) -> StorageBackend:
        return self._backends[kind]

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------
    async def write(self, batch: StorageWriteBatch) -> WriteOutcome:
        """Write ``batch`` to graph, vector and relational stores in that order.

        A failing backend never stops the remaining ones. When the batch
        carries a ``run_id`` and a recorder is attached, the outcome is
        recorded against that run before it is returned.
        """
        results: dict[BackendKind, BackendWriteResult] = {}
        for kind in WRITE_ORDER:
            item_ids = batch.item_ids(kind)
            if not item_ids:
                results[kind] = BackendWriteResult(backend=kind, status=BackendWriteStatus.SKIPPED)
                record_storage_write(kind.value, BackendWriteStatus.SKIPPED.value)
                continue
            results[kind] = await self._write_backend(kind, batch, item_ids)

        outcome = WriteOutcome(batch_id=batch.batch_id, run_id=batch.run_id, results=results)
        if outcome.orphaned_rows:
            logger.warning(
                "storage.fanout.orphaned_rows",
                batch_id=batch.batch_id,
                run_id=batch.run_id,
                rows=len(outcome.orphaned_rows),
            )
        logger.info(
            "storage.fanout.completed",
            batch_id=batch.batch_id,
            run_id=batch.run_id,
            succeeded=outcome.succeeded,
            failed_backends=[kind.value for kind in outcome.failed_backends],
        )
        if batch.run_id is not None and self.recorder is not None:
            self.recorder.record_write_outcome(batch.run_id, outcome)
        return outcome

    async def _write_backend(
        self,
        kind: BackendKind,
        batch: StorageWriteBatch,
        item_ids: list[str],
    ) -> BackendWriteResult:
        backend = self._backends[kind]
        retrying = self.retry_policy.build_async_retrying(
            scope="storage",
            sleep=self._sleep,
            backend=kind.value,
            batch_id=batch.batch_id,
        )
        attempts = 0
        started = time.perf_counter()
        try:
            async for attempt in retrying:
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    acknowledged = await self._call_backend(kind, backend, batch)
        except Exception as exc:
            duration = time.perf_counter() - started
            record_storage_write(kind.value, BackendWriteStatus.FAILED.value, duration)
            logger.warning(
                "storage.fanout.backend_failed",
                backend=kind.value,
                batch_id=batch.batch_id,
                run_id=batch.run_id,
                attempts=attempts,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            reason = str(exc) or type(exc).__name__
            return BackendWriteResult(
                backend=kind,
                status=BackendWriteStatus.FAILED,
                attempts=attempts,
                failed_items={item_id: reason for item_id in item_ids},
                error=to_problem(exc, backend=kind.value, batch_id=batch.batch_id),
            )

        duration = time.perf_counter() - started
        written = tuple(acknowledged.written)
        failed = dict(acknowledged.failed)
        # items the backend neither acknowledged nor rejected are failures too
        for item_id in item_ids:
            if item_id not in failed and item_id not in written:
                failed[item_id] = "not acknowledged by backend"
        status = BackendWriteStatus.SUCCEEDED if written else BackendWriteStatus.FAILED
        record_storage_write(kind.value, status.value, duration)
        if failed:
            logger.info(
                "storage.fanout.items_rejected",
                backend=kind.value,
                batch_id=batch.batch_id,
                rejected=len(failed),
            )
        return BackendWriteResult(
            backend=kind,
            status=status,
            attempts=attempts,
            written=written,
            failed_items=failed,
        )

    async def _call_backend(
        self,
        kind: BackendKind,
        backend: StorageBackend,
        batch: StorageWriteBatch,
    ) -> BackendItemResults:
        if self.write_timeout is None:
            return await backend.write(batch)
        try:
            return await asyncio.wait_for(backend.write(batch), timeout=self.write_timeout)
        except asyncio.TimeoutError as exc:
            raise BackendUnavailable(
                "Storage write timed out",
                detail=f"{kind.value} after {self.write_timeout}s",
            ) from exc

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------
    async def health_check(self) -> dict[BackendKind, HealthStatus]:
        """Probe every backend concurrently; errors and timeouts count as unreachable."""

        async def _probe(kind: BackendKind) -> HealthStatus:
            backend = self._backends[kind]
            try:
                if self.write_timeout is None:
                    status = await backend.health_check()
                else:
                    status = await asyncio.wait_for(backend.health_check(), timeout=self.write_timeout)
            except Exception as exc:
                logger.warning(
                    "storage.health.probe_failed",
                    backend=kind.value,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
                return HealthStatus.UNREACHABLE
            return HealthStatus(status)

        statuses = await asyncio.gather(*(_probe(kind) for kind in WRITE_ORDER))
        return dict(zip(WRITE_ORDER, statuses))

    async def ensure_reachable(self) -> None:
        """Raise :class:`BackendUnreachable` if any backend fails its health check."""
        report = await self.health_check()
        unreachable = [kind.value for kind, status in report.items() if status is HealthStatus.UNREACHABLE]
        if unreachable:
            raise BackendUnreachable(
                "Storage backend unreachable",
                detail=", ".join(unreachable),
                extra={"backends": unreachable},
            )


__all__ = ["OutcomeRecorder", "StorageFanoutCoordinator"]
