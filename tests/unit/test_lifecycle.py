"""Unit tests for the workflow and execution state machines.

Illegal transitions must fail loudly.
"""

from __future__ import annotations

import pytest

from ops_workflow_engine.core.errors import IllegalTransitionError, ValidationError
from ops_workflow_engine.engine.lifecycle import transition_execution, transition_workflow
from ops_workflow_engine.engine.models import ExecutionStatus, WorkflowStatus


def test_workflow_can_be_paused_and_resumed() -> None:
    status = transition_workflow(WorkflowStatus.DRAFT, WorkflowStatus.ACTIVE)
    status = transition_workflow(status, WorkflowStatus.PAUSED)
    assert transition_workflow(status, WorkflowStatus.ACTIVE) is WorkflowStatus.ACTIVE


@pytest.mark.parametrize("to", list(WorkflowStatus))
def test_archived_workflow_never_changes(to: WorkflowStatus) -> None:
    with pytest.raises(IllegalTransitionError):
        transition_workflow(WorkflowStatus.ARCHIVED, to)


def test_draft_cannot_be_paused() -> None:
    with pytest.raises(IllegalTransitionError):
        transition_workflow(WorkflowStatus.DRAFT, WorkflowStatus.PAUSED)


def test_illegal_transition_is_a_validation_error() -> None:
    with pytest.raises(ValidationError):
        transition_workflow(WorkflowStatus.ACTIVE, WorkflowStatus.DRAFT)


@pytest.mark.parametrize(
    "terminal", [ExecutionStatus.COMPLETED, ExecutionStatus.FAILED, ExecutionStatus.CANCELLED]
)
@pytest.mark.parametrize("to", list(ExecutionStatus))
def test_terminal_execution_status_is_final(terminal: ExecutionStatus, to: ExecutionStatus) -> None:
    with pytest.raises(IllegalTransitionError):
        transition_execution(terminal, to)


def test_execution_never_reenters_pending() -> None:
    with pytest.raises(IllegalTransitionError):
        transition_execution(ExecutionStatus.RUNNING, ExecutionStatus.PENDING)


def test_pending_execution_cannot_complete_without_running() -> None:
    with pytest.raises(IllegalTransitionError):
        transition_execution(ExecutionStatus.PENDING, ExecutionStatus.COMPLETED)
    assert (
        transition_execution(ExecutionStatus.PENDING, ExecutionStatus.CANCELLED)
        is ExecutionStatus.CANCELLED
    )
