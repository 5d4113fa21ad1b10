from __future__ import annotations

import pytest

from Memory_KG.resilience.errors import (
    AuthenticationFailure,
    BackendUnavailable,
    BackendUnreachable,
    ConfigurationError,
)
from Memory_KG.resilience.policy import RetryPolicy
from Memory_KG.storage import (
    BackendKind,
    BackendWriteStatus,
    GraphNode,
    HealthStatus,
    InMemoryGraphStore,
    InMemoryMetadataStore,
    InMemoryVectorStore,
    MetadataRow,
    StorageFanoutCoordinator,
    StorageWriteBatch,
    VectorEntry,
)


def _batch(count: int = 3, *, run_id: str | None = None, batch_id: str = "batch-1") -> StorageWriteBatch:
    ids = [f"item-{index}" for index in range(count)]
    return StorageWriteBatch(
        batch_id=batch_id,
        run_id=run_id,
        nodes=tuple(GraphNode(node_id=item_id, label="Chunk") for item_id in ids),
        vectors=tuple(VectorEntry(item_id=item_id, vector=(1.0, 0.5)) for item_id in ids),
        rows=tuple(MetadataRow(row_id=item_id, values={"n": index}) for index, item_id in enumerate(ids)),
    )


class _Recorder:
    def __init__(self) -> None:
        self.outcomes: list = []

    def record_write_outcome(self, run_id, outcome) -> None:
        self.outcomes.append((run_id, outcome))


@pytest.mark.asyncio
async def test_successful_write_reaches_every_backend(coordinator, stores) -> None:
    graph, vector, relational = stores

    outcome = await coordinator.write(_batch())

    assert outcome.succeeded
    assert set(graph.nodes) == {"item-0", "item-1", "item-2"}
    assert set(vector.vectors) == {"item-0", "item-1", "item-2"}
    assert ("items", "item-2") in relational.rows
    assert all(result.attempts == 1 for result in outcome.results.values())


@pytest.mark.asyncio
async def test_graph_failure_does_not_block_other_backends(coordinator, stores, sleep) -> None:
    graph, vector, relational = stores
    graph.inject_failure(BackendUnavailable("graph down"), times=3)

    outcome = await coordinator.write(_batch())

    assert outcome.failed_backends == (BackendKind.GRAPH,)
    graph_result = outcome.results[BackendKind.GRAPH]
    assert graph_result.status is BackendWriteStatus.FAILED
    assert graph_result.attempts == 3
    assert set(graph_result.failed_items) == {"item-0", "item-1", "item-2"}
    assert graph_result.error is not None
    assert graph_result.error.extra["backend"] == "graph"
    assert outcome.results[BackendKind.VECTOR].status is BackendWriteStatus.SUCCEEDED
    assert len(relational.rows) == 3 and len(vector.vectors) == 3
    assert outcome.orphaned_rows == ("item-0", "item-1", "item-2")
    assert outcome.partial
    assert sleep.delays == [pytest.approx(0.5), pytest.approx(1.0)]


@pytest.mark.asyncio
async def test_transient_backend_failure_is_retried(coordinator, stores) -> None:
    graph, _, _ = stores
    graph.inject_failure(ConnectionResetError("reset"), times=1)

    outcome = await coordinator.write(_batch())

    assert outcome.succeeded
    assert outcome.results[BackendKind.GRAPH].attempts == 2
    assert graph.write_calls == 2


@pytest.mark.asyncio
async def test_fatal_backend_failure_is_not_retried(coordinator, stores) -> None:
    _, vector, _ = stores
    vector.inject_failure(AuthenticationFailure("bad credentials"), times=3)

    outcome = await coordinator.write(_batch())

    assert outcome.failed_backends == (BackendKind.VECTOR,)
    assert vector.write_calls == 1
    assert outcome.results[BackendKind.VECTOR].attempts == 1


@pytest.mark.asyncio
async def test_rejected_items_are_reported_per_item(coordinator, stores) -> None:
    _, _, relational = stores
    relational.reject(["item-1"])

    outcome = await coordinator.write(_batch())

    result = outcome.results[BackendKind.RELATIONAL]
    assert result.status is BackendWriteStatus.SUCCEEDED
    assert result.written == ("item-0", "item-2")
    assert result.failed_items == {"item-1": "rejected by store"}
    assert not outcome.succeeded
    assert outcome.failed_backends == ()


@pytest.mark.asyncio
async def test_empty_vectors_are_rejected_by_vector_store(coordinator) -> None:
    batch = StorageWriteBatch(
        batch_id="b",
        vectors=(VectorEntry(item_id="ok", vector=(1.0,)), VectorEntry(item_id="bad", vector=())),
    )

    outcome = await coordinator.write(batch)

    vector_result = outcome.results[BackendKind.VECTOR]
    assert vector_result.written == ("ok",)
    assert vector_result.failed_items == {"bad": "empty vector"}
    assert outcome.results[BackendKind.GRAPH].status is BackendWriteStatus.SKIPPED
    assert outcome.results[BackendKind.RELATIONAL].status is BackendWriteStatus.SKIPPED


@pytest.mark.asyncio
async def test_backend_timeout_becomes_failure(sleep) -> None:
    graph = InMemoryGraphStore(latency=0.2)
    coordinator = StorageFanoutCoordinator(
        graph=graph,
        vector=InMemoryVectorStore(),
        relational=InMemoryMetadataStore(),
        retry_policy=RetryPolicy(max_attempts=2, base_delay=0.0),
        write_timeout=0.01,
        sleep=sleep,
    )

    outcome = await coordinator.write(_batch(1))

    result = outcome.results[BackendKind.GRAPH]
    assert result.status is BackendWriteStatus.FAILED
    assert result.attempts == 2
    assert result.error is not None
    assert result.error.extra["kind"] == "BackendUnavailable"
    assert outcome.results[BackendKind.RELATIONAL].status is BackendWriteStatus.SUCCEEDED


@pytest.mark.asyncio
async def test_outcome_is_recorded_for_run_batches(coordinator) -> None:
    recorder = _Recorder()
    coordinator.recorder = recorder

    await coordinator.write(_batch(run_id="run-1"))
    await coordinator.write(_batch(batch_id="adhoc"))

    assert [(run_id, outcome.batch_id) for run_id, outcome in recorder.outcomes] == [("run-1", "batch-1")]


@pytest.mark.asyncio
async def test_health_check_reports_each_backend(coordinator, stores) -> None:
    graph, _, relational = stores
    relational.reachable = False

    report = await coordinator.health_check()

    assert report == {
        BackendKind.GRAPH: HealthStatus.REACHABLE,
        BackendKind.VECTOR: HealthStatus.REACHABLE,
        BackendKind.RELATIONAL: HealthStatus.UNREACHABLE,
    }
    with pytest.raises(BackendUnreachable) as excinfo:
        await coordinator.ensure_reachable()
    assert excinfo.value.problem.extra["backends"] == ["relational"]
    graph.reachable = True
    relational.reachable = True
    await coordinator.ensure_reachable()


@pytest.mark.asyncio
async def test_health_probe_errors_count_as_unreachable(coordinator, stores) -> None:
    graph, _, _ = stores

    async def _boom():
        raise ConnectionError("refused")

    graph.health_check = _boom

    report = await coordinator.health_check()

    assert report[BackendKind.GRAPH] is HealthStatus.UNREACHABLE


def test_backend_kind_mismatch_is_rejected() -> None:
    with pytest.raises(ConfigurationError):
        StorageFanoutCoordinator(
            graph=InMemoryVectorStore(),
            vector=InMemoryVectorStore(),
            relational=InMemoryMetadataStore(),
        )
