"""Execution engine: turns "this workflow should run" into a finished record.

    pending --(start)--> running --(all steps succeed)--> completed
    running --(FatalError / ConfigError / retries exhausted)--> failed
    pending|running --(cancellation observed)--> cancelled

Each execution runs on its own worker thread; its steps run strictly in
action order. Cancellation is cooperative: it is observed at step boundaries
and during waits the engine owns (retry backoff, delay actions), never in the
middle of a dispatcher call.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Mapping
from typing import Any

from ops_workflow_engine.core.config import EngineSettings
from ops_workflow_engine.core.errors import NotFound, TransientError, ValidationError
from ops_workflow_engine.core.logging import execution_context
from ops_workflow_engine.engine.dispatcher import ActionDispatcher, build_namespace
from ops_workflow_engine.engine.lifecycle import transition_execution
from ops_workflow_engine.engine.models import (
    ExecutionStatus,
    StepError,
    StepStatus,
    Trigger,
    TriggeredBy,
    TriggerType,
    Workflow,
    WorkflowAction,
    WorkflowExecution,
    WorkflowExecutionStep,
    WorkflowStatus,
    utc_now,
)
from ops_workflow_engine.engine.retry import RetryPolicy
from ops_workflow_engine.engine.store import WorkflowStore
from ops_workflow_engine.engine.triggers import TriggerRegistry

logger = logging.getLogger(__name__)

# Wait on the cancellation event for up to `seconds`; True when cancelled.
Waiter = Callable[[threading.Event, float], bool]


def event_wait(event: threading.Event, seconds: float) -> bool:
    return event.wait(timeout=seconds)


class ExecutionEngine:
    def __init__(
        self,
        *,
        store: WorkflowStore,
        registry: TriggerRegistry,
        dispatcher: ActionDispatcher,
        settings: EngineSettings,
        waiter: Waiter = event_wait,
    ) -> None:
        self._store = store
        self._registry = registry
        self._dispatcher = dispatcher
        self._settings = settings
        self._retry = RetryPolicy.from_settings(settings)
        self._waiter = waiter

        self._slots = threading.BoundedSemaphore(settings.max_concurrent_executions)
        self._admission_lock = threading.Lock()
        self._lock = threading.Lock()
        self._cancel_events: dict[str, threading.Event] = {}
        self._threads: dict[str, threading.Thread] = {}

    # ------------------------------------------------------------------
    # Starting executions

    def execute(
        self,
        workflow_id: str,
        *,
        actor: str,
        input: Mapping[str, Any] | None = None,
        variables: Mapping[str, Any] | None = None,
        trigger: Trigger | None = None,
        event: str | None = None,
        wait: bool = False,
    ) -> WorkflowExecution:
        """Create an execution and run it.

        Raises `NotFound` / `ValidationError` when the workflow cannot run at
        all; once the record exists, every failure is reported through the
        record's terminal status and steps instead.

        With `wait=False` (default) the steps run on a worker thread and the
        freshly created pending record is returned.
        """

        triggered_by = TriggeredBy(
            type=trigger.type if trigger is not None else TriggerType.MANUAL,
            actor=actor,
            trigger_id=trigger.id if trigger is not None else None,
            event=event,
        )

        with self._admission_lock:
            workflow = self._store.get_workflow(workflow_id)
            self._check_executable(workflow, triggered_by, trigger)
            execution = self._store.create_execution(
                WorkflowExecution(
                    workflow_id=workflow.id,
                    workflow_version=workflow.version,
                    triggered_by=triggered_by,
                    input=dict(input or {}),
                    variables=dict(variables or {}),
                    actions=[a.model_copy(deep=True) for a in workflow.actions],
                )
            )

        with self._lock:
            self._cancel_events[execution.id] = threading.Event()

        logger.info(
            "Execution created",
            extra={
                "execution_id": execution.id,
                "workflow_id": workflow.id,
                "trigger_type": triggered_by.type.value,
                "actor": actor,
            },
        )

        if wait:
            self._run(execution.id)
            return self._store.get_execution(execution.id)

        thread = threading.Thread(
            target=self._run,
            name=f"workflow-exec-{execution.id}",
            daemon=True,
            kwargs={"execution_id": execution.id},
        )
        with self._lock:
            self._threads[execution.id] = thread
        thread.start()
        return execution

    def emit_event(
        self,
        event_name: str,
        payload: Mapping[str, Any] | None = None,
        *,
        actor: str,
    ) -> list[WorkflowExecution]:
        """Start every active workflow with an enabled trigger for `event_name`."""

        started: list[WorkflowExecution] = []
        for registered in self._registry.match_event(event_name):
            try:
                started.append(
                    self.execute(
                        registered.workflow_id,
                        actor=actor,
                        input=payload,
                        trigger=registered.trigger,
                        event=event_name,
                    )
                )
            except (NotFound, ValidationError) as e:
                logger.warning(
                    "Event trigger skipped",
                    extra={
                        "workflow_id": registered.workflow_id,
                        "event": event_name,
                        "reason": str(e),
                    },
                )
        return started

    def _check_executable(
        self, workflow: Workflow, triggered_by: TriggeredBy, trigger: Trigger | None
    ) -> None:
        if workflow.status is WorkflowStatus.ARCHIVED:
            raise ValidationError(f"Workflow {workflow.id} is archived and accepts no executions")
        if workflow.status is WorkflowStatus.DRAFT:
            raise ValidationError(f"Workflow {workflow.id} is a draft; activate it first")
        if workflow.status is WorkflowStatus.PAUSED:
            if triggered_by.type is not TriggerType.MANUAL:
                raise ValidationError(f"Workflow {workflow.id} is paused")
            if not self._settings.allow_manual_when_paused:
                raise ValidationError(
                    f"Workflow {workflow.id} is paused and manual runs of paused workflows "
                    "are disabled"
                )
        if not workflow.actions:
            raise ValidationError(f"Workflow {workflow.id} has no actions")
        if trigger is not None and not trigger.enabled:
            raise ValidationError(f"Trigger {trigger.id} is disabled")
        if self._settings.concurrency_policy == "forbid":
            for other in self._store.list_executions(workflow_id=workflow.id):
                if not other.status.is_terminal:
                    raise ValidationError(
                        f"Workflow {workflow.id} already has execution {other.id} in progress"
                    )

    # ------------------------------------------------------------------
    # Control and queries

    def cancel_execution(self, execution_id: str, *, actor: str) -> WorkflowExecution:
        """Request cancellation; a no-op for executions that already finished."""

        def _request(current: WorkflowExecution) -> WorkflowExecution | None:
            if current.status.is_terminal or current.cancel_requested:
                return None
            return current.model_copy(
                update={"cancel_requested": True, "cancel_requested_by": actor}
            )

        record = self._store.mutate_execution(execution_id, _request)
        with self._lock:
            event = self._cancel_events.get(execution_id)
        if event is not None and not record.status.is_terminal:
            event.set()
        logger.info(
            "Cancellation requested",
            extra={"execution_id": execution_id, "status": record.status.value, "actor": actor},
        )
        return record

    def get_execution(self, execution_id: str) -> WorkflowExecution:
        return self._store.get_execution(execution_id)

    def list_executions(
        self,
        *,
        workflow_id: str | None = None,
        status: ExecutionStatus | None = None,
        offset: int = 0,
        limit: int | None = 100,
    ) -> list[WorkflowExecution]:
        return list(
            self._store.list_executions(
                workflow_id=workflow_id, status=status, offset=offset, limit=limit
            )
        )

    def wait_for(self, execution_id: str, timeout: float | None = None) -> WorkflowExecution:
        """Block until the worker for `execution_id` exits (or `timeout`).

        Returns the stored record straight away when no worker is running.
        """

        with self._lock:
            thread = self._threads.get(execution_id)
        if thread is not None:
            thread.join(timeout)
        return self._store.get_execution(execution_id)

    def shutdown(self, timeout: float | None = None) -> None:
        with self._lock:
            threads = list(self._threads.values())
        for thread in threads:
            thread.join(timeout)

    def fail_interrupted_executions(self) -> int:
        """Mark records left pending/running by a previous process as failed.

        Interrupted executions are never resumed.
        """

        count = 0
        for execution in self._store.list_executions():
            if execution.status.is_terminal:
                continue
            with self._lock:
                if execution.id in self._cancel_events:
                    continue
            self._finish(
                execution.id,
                ExecutionStatus.FAILED,
                StepError(kind="interrupted", message="Process stopped before the execution finished"),
            )
            count += 1
        if count:
            logger.warning("Interrupted executions marked failed", extra={"count": count})
        return count

    # ------------------------------------------------------------------
    # Worker

    def _run(self, execution_id: str) -> None:
        workflow_id = self._store.get_execution(execution_id).workflow_id
        with self._slots, execution_context(execution_id=execution_id, workflow_id=workflow_id):
            try:
                self._run_steps(execution_id)
            except Exception as e:
                logger.exception("Execution crashed", extra={"execution_id": execution_id})
                current = self._store.get_execution(execution_id)
                if not current.status.is_terminal:
                    self._finish(
                        execution_id,
                        ExecutionStatus.FAILED,
                        StepError(kind="internal_error", message=str(e)),
                    )
            finally:
                with self._lock:
                    self._cancel_events.pop(execution_id, None)
                    self._threads.pop(execution_id, None)

    def _cancel_event(self, execution_id: str) -> threading.Event:
        with self._lock:
            event = self._cancel_events.get(execution_id)
            if event is None:
                event = threading.Event()
                self._cancel_events[execution_id] = event
            return event

    def _cancellation_requested(self, execution_id: str) -> bool:
        if self._cancel_event(execution_id).is_set():
            return True
        return self._store.get_execution(execution_id).cancel_requested

    def _run_steps(self, execution_id: str) -> None:
        execution = self._store.get_execution(execution_id)
        if self._cancellation_requested(execution_id):
            self._finish_cancelled(execution_id)
            return

        self._transition(execution_id, ExecutionStatus.RUNNING, started_at=utc_now())
        logger.info(
            "Execution started",
            extra={"execution_id": execution_id, "workflow_id": execution.workflow_id},
        )

        variables: dict[str, Any] = dict(execution.variables)
        step_outputs: dict[int, dict[str, Any]] = {}

        for index, action in enumerate(execution.actions):
            if self._cancellation_requested(execution_id):
                self._finish_cancelled(execution_id)
                return

            namespace = build_namespace(execution.input, variables, step_outputs)
            step, new_variables = self._attempt(execution_id, index, action, namespace)
            self._append_step(execution_id, step)

            if step.status is StepStatus.SUCCEEDED:
                step_outputs[index] = step.output or {}
                variables.update(new_variables)
                continue
            if step.status is StepStatus.SKIPPED:
                self._finish_cancelled(execution_id)
                return
            self._finish(execution_id, ExecutionStatus.FAILED, step.error)
            return

        self._finish(execution_id, ExecutionStatus.COMPLETED, None)

    def _attempt(
        self,
        execution_id: str,
        index: int,
        action: WorkflowAction,
        namespace: Mapping[str, Any],
    ) -> tuple[WorkflowExecutionStep, dict[str, Any]]:
        policy = self._retry.merged(action.retry)
        cancel_event = self._cancel_event(execution_id)
        started_at = utc_now()
        attempt = 0

        def _step(status: StepStatus, **fields: Any) -> WorkflowExecutionStep:
            return WorkflowExecutionStep(
                action_index=index,
                action_type=action.type,
                action_name=action.name,
                status=status,
                attempts=attempt,
                started_at=started_at,
                finished_at=utc_now(),
                **fields,
            )

        while True:
            attempt += 1
            outcome = self._dispatcher.dispatch(
                action, namespace, sleep=lambda seconds: self._waiter(cancel_event, seconds)
            )
            if outcome.ok:
                return _step(StepStatus.SUCCEEDED, output=outcome.output), outcome.variables

            if outcome.interrupted:
                return (
                    _step(
                        StepStatus.SKIPPED,
                        error=StepError(kind="cancelled", message="Cancelled while waiting"),
                    ),
                    {},
                )

            error = outcome.error
            if isinstance(error, TransientError) and attempt < policy.max_attempts:
                delay = policy.compute_backoff(attempt)
                logger.warning(
                    "Transient action failure; retrying",
                    extra={
                        "execution_id": execution_id,
                        "action_index": index,
                        "attempt": attempt,
                        "delay_seconds": delay,
                        "reason": str(error),
                    },
                )
                if self._waiter(cancel_event, delay):
                    return (
                        _step(
                            StepStatus.SKIPPED,
                            error=StepError(
                                kind="cancelled", message="Cancelled during retry backoff"
                            ),
                        ),
                        {},
                    )
                continue

            message = str(error)
            if isinstance(error, TransientError) and attempt > 1:
                message = f"{message} (gave up after {attempt} attempts)"
            logger.warning(
                "Action failed",
                extra={
                    "execution_id": execution_id,
                    "action_index": index,
                    "kind": error.kind if error else "unknown",
                    "reason": message,
                },
            )
            return (
                _step(
                    StepStatus.FAILED,
                    error=StepError(kind=error.kind if error else "unknown", message=message),
                ),
                {},
            )

    # ------------------------------------------------------------------
    # Record updates

    def _transition(self, execution_id: str, to: ExecutionStatus, **fields: Any) -> WorkflowExecution:
        def _apply(current: WorkflowExecution) -> WorkflowExecution:
            status = transition_execution(current.status, to)
            return current.model_copy(update={"status": status, **fields})

        return self._store.mutate_execution(execution_id, _apply)

    def _append_step(self, execution_id: str, step: WorkflowExecutionStep) -> None:
        def _apply(current: WorkflowExecution) -> WorkflowExecution:
            if len(current.steps) >= len(current.actions):
                raise ValidationError(f"Execution {execution_id} already has a step per action")
            return current.model_copy(update={"steps": [*current.steps, step]})

        self._store.mutate_execution(execution_id, _apply)

    def _finish_cancelled(self, execution_id: str) -> None:
        requested_by = self._store.get_execution(execution_id).cancel_requested_by
        message = f"Cancelled by {requested_by}" if requested_by else "Cancelled"
        self._finish(
            execution_id, ExecutionStatus.CANCELLED, StepError(kind="cancelled", message=message)
        )

    def _finish(self, execution_id: str, status: ExecutionStatus, error: StepError | None) -> None:
        finished_at = utc_now()

        def _apply(current: WorkflowExecution) -> WorkflowExecution:
            duration_ms = None
            if current.started_at is not None:
                duration_ms = int((finished_at - current.started_at).total_seconds() * 1000)
            return current.model_copy(
                update={
                    "status": transition_execution(current.status, status),
                    "finished_at": finished_at,
                    "duration_ms": duration_ms,
                    "error": error,
                }
            )

        record = self._store.mutate_execution(execution_id, _apply)
        log = logger.info if status is ExecutionStatus.COMPLETED else logger.warning
        log(
            "Execution finished",
            extra={
                "execution_id": execution_id,
                "workflow_id": record.workflow_id,
                "status": status.value,
                "steps": len(record.steps),
                "duration_ms": record.duration_ms,
                "reason": error.message if error else None,
            },
        )
