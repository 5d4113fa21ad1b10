"""Structured error records stored on runs, task attempts and write outcomes.

``ProblemDetail`` follows the RFC 7807 field names so recorded failures can be
serialised unchanged by any front-end that exposes run status.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Mapping

__all__ = ["ProblemDetail", "FoundationError"]


@dataclass(slots=True, frozen=True)
class ProblemDetail:
    """Immutable problem record.

    Attributes:
        title: Short summary, usually the exception message.
        status: HTTP-style status code for the failure class.
        detail: Occurrence specific explanation.
        type: Problem type URI.
        extra: Taxonomy fields (``category``, ``kind``) and call-site context
            such as ``batch_id``, ``backend`` or ``task``.
    """

    title: str
    status: int
    detail: str | None = None
    type: str = "about:blank"
    extra: Mapping[str, Any] = field(default_factory=dict)

    def model_dump(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"title": self.title, "status": self.status, "type": self.type}
        if self.detail is not None:
            payload["detail"] = self.detail
        if self.extra:
            payload["extra"] = dict(self.extra)
        return payload

    def with_extra(self, **values: Any) -> ProblemDetail:
        """Return a copy with ``values`` merged into ``extra``."""
        return replace(self, extra={**self.extra, **values})


class FoundationError(RuntimeError):
    """Exception carrying a :class:`ProblemDetail` in ``problem``."""

    def __init__(
        self,
        message: str,
        *,
        status: int = 500,
        detail: str | None = None,
        extra: Mapping[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.problem = ProblemDetail(
            title=message,
            status=status,
            detail=detail,
            extra=dict(extra or {}),
        )
