"""Collaborator interface implemented by graph, vector and relational stores."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Protocol, runtime_checkable

from .models import BackendKind, StorageWriteBatch


class HealthStatus(str, Enum):
    REACHABLE = "reachable"
    UNREACHABLE = "unreachable"


@dataclass(slots=True, frozen=True)
class BackendItemResults:
    """Per-item acknowledgement returned by a backend write.

    Attributes:
        written: Identifiers the backend persisted.
        failed: Identifier to reason for items the backend rejected.
    """

    written: Sequence[str] = ()
    failed: Mapping[str, str] = field(default_factory=dict)


@runtime_checkable
class StorageBackend(Protocol):
    """One backing store. Drivers for real databases live outside this package."""

    kind: BackendKind

    async def write(self, batch: StorageWriteBatch) -> BackendItemResults: ...

    async def health_check(self) -> HealthStatus: ...


__all__ = ["BackendItemResults", "HealthStatus", "StorageBackend"]
