from __future__ import annotations

from ops_workflow_engine.engine.models import ExecutionStatus
from ops_workflow_engine.engine.operations import OperationResult
from ops_workflow_engine.engine.stats import compute_stats


def _command(command: str):
    return {"type": "run_command", "config": {"command": command}}


def test_stats_on_empty_store(runtime) -> None:
    stats = compute_stats(runtime.store)

    assert stats.total_workflows == 0
    assert stats.total_executions == 0
    assert stats.success_rate == 0.0
    assert stats.average_duration_ms == 0.0
    assert stats.executions_by_status == {s.value: 0 for s in ExecutionStatus}
    assert stats.recent_executions == []


def test_stats_aggregate_executions(runtime, make_workflow, operations) -> None:
    good = make_workflow(_command("ok"), name="good")
    flaky = make_workflow(_command("bad"), name="flaky")
    make_workflow(_command("ok"), name="draft", activate=False)
    operations.script["bad"] = [OperationResult(stdout="", stderr="", exit_code=2)]

    for _ in range(3):
        runtime.engine.execute(good.id, actor="alice", wait=True)
    runtime.engine.execute(flaky.id, actor="alice", wait=True)
    runtime.engine.execute(flaky.id, actor="alice", wait=True)

    stats = runtime.stats()

    assert stats.total_workflows == 3
    assert stats.active_workflows == 2
    assert stats.total_executions == 5
    assert stats.executions_by_status["completed"] == 4
    assert stats.executions_by_status["failed"] == 1
    assert stats.success_rate == 80.0
    assert stats.average_duration_ms >= 0
    assert len(stats.recent_executions) == 5
    assert [s.workflow_id for s in stats.top_workflows] == [good.id, flaky.id]
    assert stats.top_workflows[0].success_rate == 100.0
    assert stats.top_workflows[1].success_rate == 50.0
    assert stats.top_workflows[1].name == "flaky"


def test_recent_executions_are_limited(runtime, make_workflow) -> None:
    wf = make_workflow(_command("ok"))
    ids = [runtime.engine.execute(wf.id, actor="alice", wait=True).id for _ in range(4)]

    stats = compute_stats(runtime.store, recent_limit=2)

    assert [e.id for e in stats.recent_executions] == ids[::-1][:2]
