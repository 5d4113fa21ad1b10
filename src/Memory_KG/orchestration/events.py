"""Run lifecycle events published by the orchestrator."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from uuid import uuid4

import structlog

from Memory_KG.utils.time import utc_now

logger = structlog.get_logger(__name__)

RUN_SUBMITTED = "run.submitted"
RUN_STARTED = "run.started"
RUN_COMPLETED = "run.completed"
RUN_FAILED = "run.failed"
RUN_CANCELLED = "run.cancelled"
TASK_STARTED = "task.started"
TASK_RETRIED = "task.retried"
TASK_COMPLETED = "task.completed"
TASK_FAILED = "task.failed"

EVENT_TYPES = frozenset(
    {
        RUN_SUBMITTED,
        RUN_STARTED,
        RUN_COMPLETED,
        RUN_FAILED,
        RUN_CANCELLED,
        TASK_STARTED,
        TASK_RETRIED,
        TASK_COMPLETED,
        TASK_FAILED,
    }
)


@dataclass(slots=True, frozen=True)
class RunEvent:
    """A single lifecycle event."""

    type: str
    run_id: str
    task: str | None = None
    data: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: uuid4().hex)
    time: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "run_id": self.run_id,
            "task": self.task,
            "time": self.time.isoformat(),
            "data": dict(self.data),
        }


RunEventListener = Callable[[RunEvent], None]


class RunEventBus:
    """Synchronous publish/subscribe hub for :class:`RunEvent` values.

    Listener failures are logged and never interrupt the run that published
    the event.
    """

    def __init__(self) -> None:
        self._listeners: list[tuple[frozenset[str] | None, RunEventListener]] = []

    def subscribe(
        self,
        listener: RunEventListener,
        *,
        types: set[str] | frozenset[str] | None = None,
    ) -> Callable[[], None]:
        """Register ``listener`` and return a callable that unsubscribes it."""
        if types is not None:
            unknown = set(types) - EVENT_TYPES
            if unknown:
                raise ValueError(f"Unknown run event types: {sorted(unknown)}")
        entry = (frozenset(types) if types is not None else None, listener)
        self._listeners.append(entry)

        def _unsubscribe() -> None:
            if entry in self._listeners:
                self._listeners.remove(entry)

        return _unsubscribe

    def publish(self, event_type: str, run_id: str, *, task: str | None = None, **data: Any) -> RunEvent:
        event = RunEvent(type=event_type, run_id=run_id, task=task, data=data)
        for types, listener in list(self._listeners):
            if types is not None and event_type not in types:
                continue
            try:
                listener(event)
            except Exception as exc:
                logger.warning(
                    "orchestration.events.listener_failed",
                    event_type=event_type,
                    run_id=run_id,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
        return event


__all__ = [
    "EVENT_TYPES",
    "RUN_CANCELLED",
    "RUN_COMPLETED",
    "RUN_FAILED",
    "RUN_STARTED",
    "RUN_SUBMITTED",
    "RunEvent",
    "RunEventBus",
    "RunEventListener",
    "TASK_COMPLETED",
    "TASK_FAILED",
    "TASK_RETRIED",
    "TASK_STARTED",
]
