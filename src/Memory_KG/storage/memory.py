"""In-memory storage backends for tests, dry runs and the CLI simulation.

Each store keeps its records in dictionaries and supports failure injection
so fan-out behaviour can be exercised without a database:

* ``inject_failure(exc, times)`` raises ``exc`` on the next ``times`` writes
* ``fail_when`` is a predicate returning an exception to raise for a batch
* ``reject(item_ids)`` makes the store report those items as failed
* ``reachable = False`` makes health checks report ``UNREACHABLE``
"""

from __future__ import annotations

import asyncio
import math
from collections.abc import Callable, Iterable
from typing import Any

from .base import BackendItemResults, HealthStatus
from .models import BackendKind, GraphEdge, GraphNode, MetadataRow, StorageWriteBatch, VectorEntry

FailurePredicate = Callable[[StorageWriteBatch], BaseException | None]


class _InMemoryStore:
    kind: BackendKind

    def __init__(
        self,
        *,
        latency: float = 0.0,
        fail_when: FailurePredicate | None = None,
    ) -> None:
        self.latency = latency
        self.fail_when = fail_when
        self.reachable = True
        self.write_calls = 0
        self.concurrent = 0
        self.max_concurrent = 0
        self._failures: list[BaseException] = []
        self._rejected: set[str] = set()

    # ------------------------------------------------------------------
    # Failure injection
    # ------------------------------------------------------------------
    def inject_failure(self, exc: BaseException, *, times: int = 1) -> None:
        self._failures.extend([exc] * times)

    def reject(self, item_ids: Iterable[str]) -> None:
        self._rejected.update(item_ids)

    # ------------------------------------------------------------------
    # Backend interface
    # ------------------------------------------------------------------
    async def write(self, batch: StorageWriteBatch) -> BackendItemResults:
        self.write_calls += 1
        self.concurrent += 1
        self.max_concurrent = max(self.max_concurrent, self.concurrent)
        try:
            if self.latency:
                await asyncio.sleep(self.latency)
            if self._failures:
                raise self._failures.pop(0)
            if self.fail_when is not None:
                failure = self.fail_when(batch)
                if failure is not None:
                    raise failure
            written: list[str] = []
            failed: dict[str, str] = {}
            for item_id, record in self._records(batch):
                if item_id in self._rejected:
                    failed[item_id] = "rejected by store"
                    continue
                reason = self._store(item_id, record)
                if reason is None:
                    written.append(item_id)
                else:
                    failed[item_id] = reason
            return BackendItemResults(written=tuple(written), failed=failed)
        finally:
            self.concurrent -= 1

    async def health_check(self) -> HealthStatus:
        return HealthStatus.REACHABLE if self.reachable else HealthStatus.UNREACHABLE

    def _records(self, batch: StorageWriteBatch) -> list[tuple[str, Any]]:
        raise NotImplementedError

    def _store(self, item_id: str, record: Any) -> str | None:
        raise NotImplementedError


class InMemoryGraphStore(_InMemoryStore):
    """Graph store holding nodes and edges keyed by identifier."""

    kind = BackendKind.GRAPH

    def __init__(self, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.nodes: dict[str, GraphNode] = {}
        self.edges: dict[str, GraphEdge] = {}

    def _records(self, batch: StorageWriteBatch) -> list[tuple[str, Any]]:
        records: list[tuple[str, Any]] = [(node.node_id, node) for node in batch.nodes]
        records.extend((edge.edge_id, edge) for edge in batch.edges)
        return records

    def _store(self, item_id: str, record: Any) -> str | None:
        if isinstance(record, GraphNode):
            self.nodes[item_id] = record
            return None
        if record.source not in self.nodes or record.target not in self.nodes:
            return "edge endpoint missing"
        self.edges[item_id] = record
        return None


class InMemoryVectorStore(_InMemoryStore):
    """Vector store rejecting empty or non-finite vectors per item."""

    kind = BackendKind.VECTOR

    def __init__(self, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.vectors: dict[str, VectorEntry] = {}

    def _records(self, batch: StorageWriteBatch) -> list[tuple[str, Any]]:
        return [(entry.item_id, entry) for entry in batch.vectors]

    def _store(self, item_id: str, record: VectorEntry) -> str | None:
        if not record.vector:
            return "empty vector"
        if not all(math.isfinite(value) for value in record.vector):
            return "non-finite vector"
        self.vectors[item_id] = record
        return None


class InMemoryMetadataStore(_InMemoryStore):
    """Relational metadata store keyed by ``(table, row_id)``."""

    kind = BackendKind.RELATIONAL

    def __init__(self, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.rows: dict[tuple[str, str], MetadataRow] = {}

    def _records(self, batch: StorageWriteBatch) -> list[tuple[str, Any]]:
        return [(row.row_id, row) for row in batch.rows]

    def _store(self, item_id: str, record: MetadataRow) -> str | None:
        self.rows[(record.table, item_id)] = record
        return None


__all__ = ["InMemoryGraphStore", "InMemoryMetadataStore", "InMemoryVectorStore"]
