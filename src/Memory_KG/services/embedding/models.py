"""Request and result types exchanged with the embedding dispatcher.

Key Responsibilities:
    - Describe a single item to embed and the per-item outcome
    - Validate provider vectors so degenerate embeddings never become results

Thread Safety:
    - Thread-safe: dataclasses are frozen
"""

from __future__ import annotations

import math
from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from Memory_KG.resilience.errors import EmptyVectorReturned
from Memory_KG.utils.errors import ProblemDetail

Vector = tuple[float, ...]


class EmbeddingStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(slots=True, frozen=True)
class EmbeddingRequest:
    """A single text to embed.

    Attributes:
        item_id: Identifier of the work item the text belongs to.
        text: Text handed to the provider.
    """

    item_id: str
    text: str


@dataclass(slots=True, frozen=True)
class EmbeddingResult:
    """Outcome for one :class:`EmbeddingRequest`.

    A ``SUCCESS`` result always carries a non-empty, finite vector. Failed and
    cancelled results carry a reason instead.
    """

    item_id: str
    status: EmbeddingStatus
    vector: Vector | None = None
    reason: str | None = None
    error: ProblemDetail | None = None
    attempts: int = 0
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.status is EmbeddingStatus.SUCCESS and not self.vector:
            raise ValueError("successful embedding results require a vector")

    @property
    def ok(self) -> bool:
        return self.status is EmbeddingStatus.SUCCESS

    @classmethod
    def success(cls, item_id: str, vector: Vector, *, attempts: int = 1) -> EmbeddingResult:
        return cls(item_id=item_id, status=EmbeddingStatus.SUCCESS, vector=vector, attempts=attempts)

    @classmethod
    def failed(
        cls,
        item_id: str,
        reason: str,
        *,
        error: ProblemDetail | None = None,
        attempts: int = 0,
    ) -> EmbeddingResult:
        return cls(
            item_id=item_id,
            status=EmbeddingStatus.FAILED,
            reason=reason,
            error=error,
            attempts=attempts,
        )

    @classmethod
    def cancelled(cls, item_id: str, *, attempts: int = 0) -> EmbeddingResult:
        return cls(
            item_id=item_id,
            status=EmbeddingStatus.CANCELLED,
            reason="cancelled",
            attempts=attempts,
        )


def coerce_requests(items: Sequence[EmbeddingRequest | tuple[str, str]]) -> list[EmbeddingRequest]:
    """Normalise ``(id, text)`` pairs into :class:`EmbeddingRequest` values."""
    requests: list[EmbeddingRequest] = []
    for item in items:
        if isinstance(item, EmbeddingRequest):
            requests.append(item)
            continue
        item_id, text = item
        requests.append(EmbeddingRequest(item_id=str(item_id), text=text))
    return requests


def validate_vector(item_id: str, values: Sequence[float] | None) -> Vector:
    """Return ``values`` as a tuple or raise :class:`EmptyVectorReturned`.

    Empty vectors, vectors containing NaN/inf and all-zero vectors are treated
    as provider failures.
    """
    if values is None or len(values) == 0:
        raise EmptyVectorReturned("Provider returned an empty vector", detail=item_id)
    try:
        vector = tuple(float(value) for value in values)
    except (TypeError, ValueError) as exc:
        raise EmptyVectorReturned("Provider returned a non-numeric vector", detail=item_id) from exc
    if not all(math.isfinite(value) for value in vector):
        raise EmptyVectorReturned("Provider returned a non-finite vector", detail=item_id)
    if not any(vector):
        raise EmptyVectorReturned("Provider returned a zero vector", detail=item_id)
    return vector


__all__ = [
    "EmbeddingRequest",
    "EmbeddingResult",
    "EmbeddingStatus",
    "Vector",
    "coerce_requests",
    "validate_vector",
]
