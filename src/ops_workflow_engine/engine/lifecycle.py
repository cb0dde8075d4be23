"""Explicit lifecycle state machines for workflows and executions.

Illegal transitions fail loudly with `IllegalTransitionError`.
"""

from __future__ import annotations

from ops_workflow_engine.core.errors import IllegalTransitionError
from ops_workflow_engine.engine.models import ExecutionStatus, WorkflowStatus

WORKFLOW_TRANSITIONS: dict[WorkflowStatus, set[WorkflowStatus]] = {
    WorkflowStatus.DRAFT: {WorkflowStatus.ACTIVE, WorkflowStatus.ARCHIVED},
    WorkflowStatus.ACTIVE: {WorkflowStatus.PAUSED, WorkflowStatus.ARCHIVED},
    WorkflowStatus.PAUSED: {WorkflowStatus.ACTIVE, WorkflowStatus.ARCHIVED},
    WorkflowStatus.ARCHIVED: set(),
}


EXECUTION_TRANSITIONS: dict[ExecutionStatus, set[ExecutionStatus]] = {
    ExecutionStatus.PENDING: {
        ExecutionStatus.RUNNING,
        ExecutionStatus.FAILED,
        ExecutionStatus.CANCELLED,
    },
    ExecutionStatus.RUNNING: {
        ExecutionStatus.COMPLETED,
        ExecutionStatus.FAILED,
        ExecutionStatus.CANCELLED,
    },
    ExecutionStatus.COMPLETED: set(),
    ExecutionStatus.FAILED: set(),
    ExecutionStatus.CANCELLED: set(),
}


def transition_workflow(current: WorkflowStatus, to: WorkflowStatus) -> WorkflowStatus:
    allowed = WORKFLOW_TRANSITIONS.get(current, set())
    if to not in allowed:
        raise IllegalTransitionError(f"Illegal workflow transition: {current.value} -> {to.value}")
    return to


def transition_execution(current: ExecutionStatus, to: ExecutionStatus) -> ExecutionStatus:
    allowed = EXECUTION_TRANSITIONS.get(current, set())
    if to not in allowed:
        raise IllegalTransitionError(
            f"Illegal execution transition: {current.value} -> {to.value}"
        )
    return to
