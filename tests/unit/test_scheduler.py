from __future__ import annotations

from datetime import UTC, datetime, timedelta

from ops_workflow_engine.engine.models import ExecutionStatus, TriggerType

_ACTION = {"type": "run_command", "config": {"command": "report-gen"}}


def _hourly(runtime, *, activate: bool = True, enabled: bool = True):
    wf = runtime.workflows.create(
        {
            "name": "hourly",
            "actions": [_ACTION],
            "triggers": [{"type": "scheduled", "schedule": "0 * * * *", "enabled": enabled}],
        },
        actor="alice",
    )
    if activate:
        wf = runtime.workflows.activate(wf.id, actor="alice")
    return wf


def _next_fire(runtime, workflow_id: str) -> datetime:
    [trigger] = runtime.registry.triggers_for(workflow_id)
    return trigger.next_fire_at


def test_tick_runs_due_workflows_once(runtime) -> None:
    wf = _hourly(runtime)
    due_at = _next_fire(runtime, wf.id)

    assert runtime.scheduler.tick(due_at - timedelta(seconds=1)) == []
    started = runtime.scheduler.tick(due_at)
    assert runtime.scheduler.tick(due_at) == []

    assert [e.workflow_id for e in started] == [wf.id]
    finished = runtime.engine.wait_for(started[0].id, timeout=10)
    assert finished.status is ExecutionStatus.COMPLETED
    assert finished.triggered_by.type is TriggerType.SCHEDULED
    assert finished.triggered_by.actor == "scheduler"
    assert _next_fire(runtime, wf.id) == due_at + timedelta(hours=1)


def test_tick_skips_paused_workflows(runtime) -> None:
    wf = _hourly(runtime)
    due_at = _next_fire(runtime, wf.id)
    runtime.workflows.pause(wf.id, actor="alice")

    assert runtime.scheduler.tick(due_at) == []
    assert runtime.engine.list_executions(workflow_id=wf.id) == []


def test_disabled_trigger_never_fires(runtime) -> None:
    wf = _hourly(runtime, enabled=False)
    far_future = datetime(2100, 1, 1, tzinfo=UTC)

    assert runtime.scheduler.tick(far_future) == []
    assert runtime.engine.list_executions(workflow_id=wf.id) == []


def test_start_and_stop(runtime) -> None:
    runtime.scheduler.start()
    assert runtime.scheduler.is_running
    runtime.scheduler.start()

    runtime.scheduler.stop(timeout=5)
    assert not runtime.scheduler.is_running
