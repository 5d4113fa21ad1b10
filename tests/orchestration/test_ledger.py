from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from Memory_KG.orchestration.ledger import (
    RunLedger,
    RunLedgerError,
    RunStatus,
    TaskExecutionRecord,
    TaskOutcome,
    WriteSummary,
)
from Memory_KG.storage.models import BackendKind, BackendWriteResult, BackendWriteStatus, WriteOutcome
from Memory_KG.utils.errors import ProblemDetail


class FakeClock:
    def __init__(self) -> None:
        self.now = datetime(2024, 1, 1, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


def _record(task: str, attempt: int, outcome: TaskOutcome) -> TaskExecutionRecord:
    now = datetime(2024, 1, 1, tzinfo=UTC)
    return TaskExecutionRecord(task=task, attempt=attempt, started_at=now, ended_at=now, outcome=outcome)


def _outcome(batch_id: str, graph: BackendWriteStatus) -> WriteOutcome:
    return WriteOutcome(
        batch_id=batch_id,
        run_id="run-1",
        results={
            BackendKind.GRAPH: BackendWriteResult(
                backend=BackendKind.GRAPH,
                status=graph,
                written=() if graph is BackendWriteStatus.FAILED else ("a",),
                failed_items={"a": "down"} if graph is BackendWriteStatus.FAILED else {},
            ),
            BackendKind.RELATIONAL: BackendWriteResult(
                backend=BackendKind.RELATIONAL,
                status=BackendWriteStatus.SUCCEEDED,
                written=("a",),
            ),
        },
    )


@pytest.fixture
def ledger() -> RunLedger:
    return RunLedger()


def test_run_lifecycle(ledger: RunLedger) -> None:
    run = ledger.create(run_id="run-1", task_names=["chunk", "embed"], metadata={"source": "test"})
    assert run.status is RunStatus.PENDING
    assert run.current_index == -1

    ledger.mark_processing("run-1")
    ledger.start_task("run-1", 0)
    ledger.record_attempt("run-1", _record("chunk", 1, TaskOutcome.SUCCESS))
    assert ledger.complete_task("run-1", 0).progress == pytest.approx(0.5)
    ledger.start_task("run-1", 1)
    assert ledger.get("run-1").current_task == "embed"
    completed = ledger.mark_completed("run-1")

    assert completed.status is RunStatus.COMPLETED
    assert completed.progress == 1.0
    assert completed.started_at is not None and completed.ended_at is not None
    assert [(t.from_status, t.to_status) for t in completed.history] == [
        (RunStatus.PENDING, RunStatus.PROCESSING),
        (RunStatus.PROCESSING, RunStatus.COMPLETED),
    ]
    assert completed.records_for("chunk")[0].outcome is TaskOutcome.SUCCESS


@pytest.mark.parametrize(
    ("setup", "target"),
    [
        ([], RunStatus.COMPLETED),
        ([RunStatus.PROCESSING], RunStatus.PROCESSING),
        ([RunStatus.CANCELLED], RunStatus.PROCESSING),
        ([RunStatus.PROCESSING, RunStatus.COMPLETED], RunStatus.FAILED),
    ],
)
def test_invalid_transitions_are_rejected(ledger: RunLedger, setup, target) -> None:
    ledger.create(run_id="run-1", task_names=["a"])
    actions = {
        RunStatus.PROCESSING: lambda: ledger.mark_processing("run-1"),
        RunStatus.COMPLETED: lambda: ledger.mark_completed("run-1"),
        RunStatus.CANCELLED: lambda: ledger.mark_cancelled("run-1"),
        RunStatus.FAILED: lambda: ledger.mark_failed("run-1", error=ProblemDetail(title="x", status=500)),
    }
    for status in setup:
        actions[status]()
    with pytest.raises(RunLedgerError):
        actions[target]()


def test_terminal_runs_are_read_only(ledger: RunLedger) -> None:
    ledger.create(run_id="run-1", task_names=["a"])
    ledger.mark_failed("run-1", error=ProblemDetail(title="Backend unreachable", status=503))

    with pytest.raises(RunLedgerError):
        ledger.record_attempt("run-1", _record("a", 1, TaskOutcome.FAILED))
    with pytest.raises(RunLedgerError):
        ledger.start_task("run-1", 0)
    assert ledger.request_cancel("run-1") is False
    assert ledger.get("run-1").error.title == "Backend unreachable"


def test_task_index_never_moves_backwards(ledger: RunLedger) -> None:
    ledger.create(run_id="run-1", task_names=["a", "b"])
    ledger.mark_processing("run-1")
    ledger.start_task("run-1", 1)

    with pytest.raises(RunLedgerError):
        ledger.start_task("run-1", 0)
    with pytest.raises(RunLedgerError):
        ledger.start_task("run-1", 2)


def test_duplicate_and_unknown_runs(ledger: RunLedger) -> None:
    ledger.create(run_id="run-1", task_names=["a"])
    with pytest.raises(RunLedgerError):
        ledger.create(run_id="run-1", task_names=["a"])
    with pytest.raises(RunLedgerError):
        ledger.mark_processing("missing")
    assert ledger.get("missing") is None
    assert "run-1" in ledger and "missing" not in ledger


def test_snapshots_are_isolated(ledger: RunLedger) -> None:
    ledger.create(run_id="run-1", task_names=["a"])
    ledger.mark_processing("run-1")
    snapshot = ledger.get("run-1")
    snapshot.records.append(_record("a", 1, TaskOutcome.SUCCESS))
    snapshot.metadata["mutated"] = True

    fresh = ledger.get("run-1")
    assert fresh.records == []
    assert "mutated" not in fresh.metadata


def test_cancel_flag(ledger: RunLedger) -> None:
    ledger.create(run_id="run-1", task_names=["a"])
    assert ledger.is_cancel_requested("run-1") is False
    assert ledger.request_cancel("run-1", reason="operator") is True
    assert ledger.is_cancel_requested("run-1") is True
    assert ledger.get("run-1").cancel_reason == "operator"
    assert ledger.is_cancel_requested("missing") is False


def test_terminal_runs_are_purged_after_retention() -> None:
    clock = FakeClock()
    ledger = RunLedger(retention_seconds=60, clock=clock)
    ledger.create(run_id="done", task_names=["a"])
    ledger.mark_cancelled("done")
    clock.advance(1)
    ledger.create(run_id="active", task_names=["a"])

    clock.advance(30)
    assert ledger.get("done") is not None
    clock.advance(31)
    assert ledger.get("done") is None
    assert [run.run_id for run in ledger.list()] == ["active"]
    clock.advance(3600)
    assert ledger.get("active") is not None


def test_list_filters_by_status(ledger: RunLedger) -> None:
    ledger.create(run_id="run-1", task_names=["a"])
    ledger.create(run_id="run-2", task_names=["a"])
    ledger.mark_processing("run-2")

    assert [run.run_id for run in ledger.list(status=RunStatus.PROCESSING)] == ["run-2"]
    assert {run.run_id for run in ledger.all()} == {"run-1", "run-2"}


def test_write_summary_tracks_worst_backend(ledger: RunLedger) -> None:
    ledger.create(run_id="run-1", task_names=["write"])
    ledger.mark_processing("run-1")
    ledger.record_write_outcome("run-1", _outcome("b1", BackendWriteStatus.FAILED))
    ledger.record_write_outcome("run-1", _outcome("b2", BackendWriteStatus.SUCCEEDED))
    ledger.record_write_outcome("run-1", _outcome("b3", BackendWriteStatus.FAILED))

    summary = ledger.get("run-1").write_summary()

    assert summary.batches == 3
    assert summary.succeeded == 1
    assert summary.partial == 2
    assert summary.orphaned_rows == 2
    assert summary.failed_by_backend["graph"] == 2
    label, fraction = summary.worst_failure_fraction()
    assert label == "graph"
    assert fraction == pytest.approx(2 / 3)
    assert WriteSummary().worst_failure_fraction() == (None, 0.0)


def test_discarded_outcomes_leave_the_summary(ledger: RunLedger) -> None:
    ledger.create(run_id="run-1", task_names=["write"])
    ledger.mark_processing("run-1")
    retried = [_outcome("b1", BackendWriteStatus.FAILED), _outcome("b2", BackendWriteStatus.FAILED)]
    for outcome in retried:
        ledger.record_write_outcome("run-1", outcome)
    # same batch id as a retried one, but a distinct outcome
    kept = _outcome("b1", BackendWriteStatus.SUCCEEDED)
    ledger.record_write_outcome("run-1", kept)

    assert ledger.discard_write_outcomes("run-1", retried) == 2
    assert ledger.discard_write_outcomes("run-1", []) == 0

    run = ledger.get("run-1")
    assert run.write_outcomes == [kept]
    assert run.write_summary().failed_by_backend["graph"] == 0
    ledger.mark_completed("run-1")
    with pytest.raises(RunLedgerError):
        ledger.discard_write_outcomes("run-1", [kept])
