"""Task sequencing, run tracking and lifecycle events."""

from __future__ import annotations

from importlib import import_module
from typing import Any

_ATTRIBUTE_MAP: dict[str, tuple[str, str]] = {
    "PipelineOrchestrator": ("Memory_KG.orchestration.orchestrator", "PipelineOrchestrator"),
    "RunCancelled": ("Memory_KG.orchestration.orchestrator", "RunCancelled"),
    "RunStatusView": ("Memory_KG.orchestration.orchestrator", "RunStatusView"),
    "PipelineRun": ("Memory_KG.orchestration.ledger", "PipelineRun"),
    "RunLedger": ("Memory_KG.orchestration.ledger", "RunLedger"),
    "RunLedgerError": ("Memory_KG.orchestration.ledger", "RunLedgerError"),
    "RunStatus": ("Memory_KG.orchestration.ledger", "RunStatus"),
    "RunTransition": ("Memory_KG.orchestration.ledger", "RunTransition"),
    "TaskExecutionRecord": ("Memory_KG.orchestration.ledger", "TaskExecutionRecord"),
    "TaskOutcome": ("Memory_KG.orchestration.ledger", "TaskOutcome"),
    "WriteSummary": ("Memory_KG.orchestration.ledger", "WriteSummary"),
    "RunEvent": ("Memory_KG.orchestration.events", "RunEvent"),
    "RunEventBus": ("Memory_KG.orchestration.events", "RunEventBus"),
    "RunContext": ("Memory_KG.orchestration.tasks", "RunContext"),
    "Task": ("Memory_KG.orchestration.tasks", "Task"),
    "WorkItem": ("Memory_KG.orchestration.tasks", "WorkItem"),
    "task": ("Memory_KG.orchestration.tasks", "task"),
}

__all__ = sorted(_ATTRIBUTE_MAP)


def __getattr__(name: str) -> Any:
    try:
        module_name, attr_name = _ATTRIBUTE_MAP[name]
    except KeyError as exc:  # pragma: no cover - standard attribute error path
        raise AttributeError(f"module '{__name__}' has no attribute '{name}'") from exc

    module = import_module(module_name)
    value = getattr(module, attr_name)
    globals()[name] = value
    return value


def __dir__() -> list[str]:  # pragma: no cover - convenience helper
    return sorted(globals().keys() | _ATTRIBUTE_MAP.keys())
