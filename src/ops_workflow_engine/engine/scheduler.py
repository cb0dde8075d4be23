"""Background scheduler for scheduled triggers."""

from __future__ import annotations

import logging
import threading
from datetime import datetime

from ops_workflow_engine.core.errors import NotFound, ValidationError
from ops_workflow_engine.engine.execution import ExecutionEngine
from ops_workflow_engine.engine.models import WorkflowExecution, utc_now
from ops_workflow_engine.engine.triggers import TriggerRegistry

logger = logging.getLogger(__name__)

SCHEDULER_ACTOR = "scheduler"


class Scheduler:
    """Polls the trigger registry and starts an execution for every due trigger.

    Each due occurrence fires at most once: the registry advances a trigger to
    its next occurrence as soon as it reports it due.
    """

    def __init__(
        self,
        *,
        registry: TriggerRegistry,
        engine: ExecutionEngine,
        interval_seconds: float = 30.0,
    ) -> None:
        self._registry = registry
        self._engine = engine
        self._interval_seconds = interval_seconds
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def tick(self, now: datetime | None = None) -> list[WorkflowExecution]:
        started: list[WorkflowExecution] = []
        for registered in self._registry.due_triggers(now or utc_now()):
            try:
                started.append(
                    self._engine.execute(
                        registered.workflow_id,
                        actor=SCHEDULER_ACTOR,
                        trigger=registered.trigger,
                    )
                )
            except (NotFound, ValidationError) as e:
                logger.info(
                    "Scheduled trigger skipped",
                    extra={
                        "workflow_id": registered.workflow_id,
                        "trigger_id": registered.trigger.id,
                        "reason": str(e),
                    },
                )
        return started

    def start(self) -> None:
        if self.is_running:
            logger.warning("Scheduler is already running")
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="workflow-scheduler", daemon=True)
        self._thread.start()
        logger.info("Scheduler started", extra={"interval_seconds": self._interval_seconds})

    def stop(self, timeout: float | None = 10.0) -> None:
        if self._thread is None:
            return
        self._stop.set()
        self._thread.join(timeout)
        self._thread = None
        logger.info("Scheduler stopped")

    def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                self.tick()
            except Exception:
                logger.exception("Scheduler tick failed")
            self._stop.wait(self._interval_seconds)
