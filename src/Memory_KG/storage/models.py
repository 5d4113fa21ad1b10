"""Write batches and per-backend write outcomes for the storage fan-out.

Key Responsibilities:
    - Describe one unit of fan-out (graph nodes/edges, vectors, metadata rows)
    - Record what each backend did with a batch, including item-level failures

Thread Safety:
    - Batches are frozen; outcomes are built once by the coordinator and then
      only read
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any

from Memory_KG.resilience.errors import ErrorCategory
from Memory_KG.utils.errors import ProblemDetail


class BackendKind(str, Enum):
    """Closed set of storage backends, in fan-out order."""

    GRAPH = "graph"
    VECTOR = "vector"
    RELATIONAL = "relational"


WRITE_ORDER: tuple[BackendKind, ...] = (
    BackendKind.GRAPH,
    BackendKind.VECTOR,
    BackendKind.RELATIONAL,
)


# ==============================================================================
# BATCH CONTENTS
# ==============================================================================


@dataclass(slots=True, frozen=True)
class GraphNode:
    node_id: str
    label: str
    properties: Mapping[str, Any] = field(default_factory=dict)


@dataclass(slots=True, frozen=True)
class GraphEdge:
    source: str
    target: str
    relation: str
    properties: Mapping[str, Any] = field(default_factory=dict)

    @property
    def edge_id(self) -> str:
        return f"{self.source}-[{self.relation}]->{self.target}"


@dataclass(slots=True, frozen=True)
class VectorEntry:
    item_id: str
    vector: Sequence[float]
    metadata: Mapping[str, Any] = field(default_factory=dict)


@dataclass(slots=True, frozen=True)
class MetadataRow:
    row_id: str
    values: Mapping[str, Any] = field(default_factory=dict)
    table: str = "items"


@dataclass(slots=True, frozen=True)
class StorageWriteBatch:
    """Records destined for the three stores, written together as one unit."""

    batch_id: str
    run_id: str | None = None
    nodes: tuple[GraphNode, ...] = ()
    edges: tuple[GraphEdge, ...] = ()
    vectors: tuple[VectorEntry, ...] = ()
    rows: tuple[MetadataRow, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "nodes", tuple(self.nodes))
        object.__setattr__(self, "edges", tuple(self.edges))
        object.__setattr__(self, "vectors", tuple(self.vectors))
        object.__setattr__(self, "rows", tuple(self.rows))

    def item_ids(self, kind: BackendKind) -> list[str]:
        """Return identifiers of the items ``kind`` is responsible for."""
        if kind is BackendKind.GRAPH:
            return [node.node_id for node in self.nodes] + [edge.edge_id for edge in self.edges]
        if kind is BackendKind.VECTOR:
            return [entry.item_id for entry in self.vectors]
        return [row.row_id for row in self.rows]

    @property
    def is_empty(self) -> bool:
        return not (self.nodes or self.edges or self.vectors or self.rows)

    def with_run_id(self, run_id: str) -> StorageWriteBatch:
        return replace(self, run_id=run_id)


# ==============================================================================
# OUTCOMES
# ==============================================================================


class BackendWriteStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(slots=True, frozen=True)
class BackendWriteResult:
    """What a single backend did with a batch.

    Attributes:
        backend: Backend the result belongs to.
        status: Final status after retries.
        attempts: Write attempts made (0 when skipped).
        written: Identifiers of items the backend acknowledged.
        failed_items: Item identifier to failure reason.
        error: Problem detail of the last batch-level failure, if any.
    """

    backend: BackendKind
    status: BackendWriteStatus
    attempts: int = 0
    written: tuple[str, ...] = ()
    failed_items: Mapping[str, str] = field(default_factory=dict)
    error: ProblemDetail | None = None

    @property
    def items_written(self) -> int:
        return len(self.written)

    def model_dump(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "backend": self.backend.value,
            "status": self.status.value,
            "attempts": self.attempts,
            "items_written": self.items_written,
            "failed_items": dict(self.failed_items),
        }
        if self.error is not None:
            payload["error"] = self.error.model_dump()
        return payload


@dataclass(slots=True, frozen=True)
class WriteOutcome:
    """Per-backend outcome of fanning one batch out."""

    batch_id: str
    run_id: str | None
    results: Mapping[BackendKind, BackendWriteResult]

    @property
    def attempted(self) -> tuple[BackendKind, ...]:
        return tuple(
            kind
            for kind in WRITE_ORDER
            if kind in self.results and self.results[kind].status is not BackendWriteStatus.SKIPPED
        )

    @property
    def failed_backends(self) -> tuple[BackendKind, ...]:
        return tuple(
            kind
            for kind in WRITE_ORDER
            if kind in self.results and self.results[kind].status is BackendWriteStatus.FAILED
        )

    @property
    def succeeded(self) -> bool:
        """``True`` when no backend failed and no item was rejected."""
        return not self.failed_backends and not any(
            result.failed_items for result in self.results.values()
        )

    @property
    def all_failed(self) -> bool:
        attempted = self.attempted
        return bool(attempted) and len(self.failed_backends) == len(attempted)

    @property
    def partial(self) -> bool:
        """Some writes landed while others failed."""
        return not self.succeeded and not self.all_failed

    @property
    def fatal_error(self) -> ProblemDetail | None:
        """Problem of the first backend that failed with a fatal error."""
        for kind in self.failed_backends:
            error = self.results[kind].error
            if error is not None and error.extra.get("category") == ErrorCategory.FATAL.value:
                return error
        return None

    @property
    def orphaned_rows(self) -> tuple[str, ...]:
        """Relational rows written although the graph write for the batch failed."""
        graph = self.results.get(BackendKind.GRAPH)
        relational = self.results.get(BackendKind.RELATIONAL)
        if graph is None or relational is None:
            return ()
        if graph.status is not BackendWriteStatus.FAILED:
            return ()
        if relational.status is not BackendWriteStatus.SUCCEEDED:
            return ()
        return relational.written

    def model_dump(self) -> dict[str, Any]:
        return {
            "batch_id": self.batch_id,
            "run_id": self.run_id,
            "succeeded": self.succeeded,
            "partial": self.partial,
            "failed_backends": [kind.value for kind in self.failed_backends],
            "orphaned_rows": list(self.orphaned_rows),
            "results": {kind.value: result.model_dump() for kind, result in self.results.items()},
        }


__all__ = [
    "BackendKind",
    "BackendWriteResult",
    "BackendWriteStatus",
    "GraphEdge",
    "GraphNode",
    "MetadataRow",
    "StorageWriteBatch",
    "VectorEntry",
    "WRITE_ORDER",
    "WriteOutcome",
]
