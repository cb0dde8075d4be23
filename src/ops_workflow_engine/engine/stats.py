"""Execution history aggregation.

Everything is recomputed from the store on every call; no counters are kept.
"""

from __future__ import annotations

from collections import Counter
from datetime import datetime

from pydantic import BaseModel, Field

from ops_workflow_engine.engine.models import ExecutionStatus, WorkflowStatus
from ops_workflow_engine.engine.store import WorkflowStore


class WorkflowExecutionSummary(BaseModel):
    workflow_id: str
    name: str
    execution_count: int
    success_rate: float = Field(description="Completed / finished executions, in percent")


class RecentExecution(BaseModel):
    id: str
    workflow_id: str
    status: ExecutionStatus
    created_at: datetime
    duration_ms: int | None = None


class WorkflowStats(BaseModel):
    total_workflows: int
    active_workflows: int
    total_executions: int
    executions_by_status: dict[str, int]
    average_duration_ms: float
    success_rate: float
    recent_executions: list[RecentExecution]
    top_workflows: list[WorkflowExecutionSummary]


def _rate(completed: int, finished: int) -> float:
    if finished == 0:
        return 0.0
    return round(completed / finished * 100, 2)


def compute_stats(
    store: WorkflowStore, *, recent_limit: int = 10, top_limit: int = 5
) -> WorkflowStats:
    workflows = list(store.list_workflows())
    executions = list(store.list_executions())

    by_status = Counter(e.status.value for e in executions)
    durations = [
        e.duration_ms
        for e in executions
        if e.status is ExecutionStatus.COMPLETED and e.duration_ms is not None
    ]
    finished = sum(1 for e in executions if e.status.is_terminal)

    per_workflow: dict[str, list[ExecutionStatus]] = {}
    for e in executions:
        per_workflow.setdefault(e.workflow_id, []).append(e.status)

    names = {w.id: w.name for w in workflows}
    summaries = []
    for workflow_id, statuses in per_workflow.items():
        done = [s for s in statuses if s.is_terminal]
        summaries.append(
            WorkflowExecutionSummary(
                workflow_id=workflow_id,
                name=names.get(workflow_id, workflow_id),
                execution_count=len(statuses),
                success_rate=_rate(done.count(ExecutionStatus.COMPLETED), len(done)),
            )
        )
    summaries.sort(key=lambda s: s.execution_count, reverse=True)

    return WorkflowStats(
        total_workflows=len(workflows),
        active_workflows=sum(1 for w in workflows if w.status is WorkflowStatus.ACTIVE),
        total_executions=len(executions),
        executions_by_status={s.value: by_status.get(s.value, 0) for s in ExecutionStatus},
        average_duration_ms=round(sum(durations) / len(durations), 2) if durations else 0.0,
        success_rate=_rate(by_status.get(ExecutionStatus.COMPLETED.value, 0), finished),
        recent_executions=[
            RecentExecution(
                id=e.id,
                workflow_id=e.workflow_id,
                status=e.status,
                created_at=e.created_at,
                duration_ms=e.duration_ms,
            )
            for e in executions[:recent_limit]
        ],
        top_workflows=summaries[:top_limit],
    )
