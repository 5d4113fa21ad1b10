"""Prometheus metrics for the pipeline core.

Key Responsibilities:
    - Define Prometheus metrics for dispatch, storage fan-out and orchestration
    - Expose small helper functions so call-sites never touch label plumbing

Collaborators:
    - Upstream: Worker pools, dispatcher, fan-out coordinator and run ledger
    - Downstream: Prometheus scraping via ``prometheus_client``

Thread Safety:
    - Thread-safe: All metric operations use atomic Prometheus operations

Example:
    >>> from Memory_KG.observability.metrics import record_storage_write
    >>> record_storage_write("graph", "succeeded")
"""

# ==============================================================================
# IMPORTS
# ==============================================================================

from collections.abc import Mapping

from prometheus_client import Counter, Gauge, Histogram

# ==============================================================================
# METRIC DEFINITIONS
# ==============================================================================

WORKER_POOL_IN_FLIGHT = Gauge(
    "memkg_worker_pool_in_flight",
    "Calls currently executing inside a bounded worker pool",
    ["pool"],
)

RETRIES_TOTAL = Counter(
    "memkg_retries_total",
    "Retries scheduled by the shared retry policy",
    ["scope"],
)

EMBEDDING_BATCHES_TOTAL = Counter(
    "memkg_embedding_batches_total",
    "Embedding batches dispatched to the provider by final status",
    ["status"],
)

EMBEDDING_ITEMS_TOTAL = Counter(
    "memkg_embedding_items_total",
    "Embedding items resolved by status",
    ["status"],
)

EMBEDDING_CALL_DURATION_SECONDS = Histogram(
    "memkg_embedding_call_duration_seconds",
    "Latency of individual provider calls",
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0],
)

STORAGE_WRITES_TOTAL = Counter(
    "memkg_storage_writes_total",
    "Backend writes performed by the fan-out coordinator",
    ["backend", "status"],
)

STORAGE_WRITE_DURATION_SECONDS = Histogram(
    "memkg_storage_write_duration_seconds",
    "Latency of backend writes including retries",
    ["backend"],
    buckets=[0.005, 0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 10.0],
)

TASK_DURATION_SECONDS = Histogram(
    "memkg_task_duration_seconds",
    "Task execution duration by terminal outcome",
    ["task", "outcome"],
    buckets=[0.01, 0.1, 0.5, 1.0, 5.0, 15.0, 60.0, 300.0],
)

RUN_TRANSITIONS_TOTAL = Counter(
    "memkg_run_transitions_total",
    "Pipeline run status transitions",
    ["from_status", "to_status"],
)

RUNS_BY_STATUS = Gauge(
    "memkg_runs",
    "Pipeline runs currently tracked by the ledger, by status",
    ["status"],
)

# ==============================================================================
# HELPERS
# ==============================================================================


def set_pool_in_flight(pool: str, value: int) -> None:
    WORKER_POOL_IN_FLIGHT.labels(pool=pool).set(value)


def record_retry(scope: str) -> None:
    RETRIES_TOTAL.labels(scope=scope).inc()


def record_embedding_batch(status: str, items: int) -> None:
    """Record a settled embedding batch and the items it resolved."""
    EMBEDDING_BATCHES_TOTAL.labels(status=status).inc()
    if items:
        EMBEDDING_ITEMS_TOTAL.labels(status=status).inc(items)


def observe_embedding_call(duration_seconds: float) -> None:
    EMBEDDING_CALL_DURATION_SECONDS.observe(duration_seconds)


def record_storage_write(backend: str, status: str, duration_seconds: float | None = None) -> None:
    STORAGE_WRITES_TOTAL.labels(backend=backend, status=status).inc()
    if duration_seconds is not None:
        STORAGE_WRITE_DURATION_SECONDS.labels(backend=backend).observe(duration_seconds)


def observe_task_duration(task: str, outcome: str, duration_seconds: float) -> None:
    TASK_DURATION_SECONDS.labels(task=task, outcome=outcome).observe(duration_seconds)


def record_run_transition(from_status: str, to_status: str) -> None:
    RUN_TRANSITIONS_TOTAL.labels(from_status=from_status, to_status=to_status).inc()


def update_run_status_metrics(counts: Mapping[str, int], statuses: tuple[str, ...]) -> None:
    """Publish the number of tracked runs per status, zeroing absent ones."""
    for status in statuses:
        RUNS_BY_STATUS.labels(status=status).set(counts.get(status, 0))


__all__ = [
    "observe_embedding_call",
    "observe_task_duration",
    "record_embedding_batch",
    "record_retry",
    "record_run_transition",
    "record_storage_write",
    "set_pool_in_flight",
    "update_run_status_metrics",
]
