"""Storage fan-out: write batches, backend interface and in-memory stores."""

from .base import BackendItemResults, HealthStatus, StorageBackend
from .fanout import StorageFanoutCoordinator
from .memory import InMemoryGraphStore, InMemoryMetadataStore, InMemoryVectorStore
from .models import (
    BackendKind,
    BackendWriteResult,
    BackendWriteStatus,
    GraphEdge,
    GraphNode,
    MetadataRow,
    StorageWriteBatch,
    VectorEntry,
    WriteOutcome,
)


__all__ = [
    "BackendItemResults",
    "BackendKind",
    "BackendWriteResult",
    "BackendWriteStatus",
    "GraphEdge",
    "GraphNode",
    "HealthStatus",
    "InMemoryGraphStore",
    "InMemoryMetadataStore",
    "InMemoryVectorStore",
    "MetadataRow",
    "StorageBackend",
    "StorageFanoutCoordinator",
    "StorageWriteBatch",
    "VectorEntry",
    "WriteOutcome",
]
