"""Wiring of the engine components for one process."""

from __future__ import annotations

from dataclasses import dataclass

import requests

from ops_workflow_engine.core.config import EngineSettings
from ops_workflow_engine.engine.dispatcher import ActionDispatcher
from ops_workflow_engine.engine.execution import ExecutionEngine, Waiter, event_wait
from ops_workflow_engine.engine.operations import (
    LoggingNotifier,
    Notifier,
    OperationRunner,
    SubprocessOperationRunner,
)
from ops_workflow_engine.engine.scheduler import Scheduler
from ops_workflow_engine.engine.stats import WorkflowStats, compute_stats
from ops_workflow_engine.engine.store import WorkflowStore
from ops_workflow_engine.engine.triggers import TriggerRegistry
from ops_workflow_engine.engine.workflows import WorkflowService


@dataclass(slots=True)
class EngineRuntime:
    settings: EngineSettings
    store: WorkflowStore
    registry: TriggerRegistry
    workflows: WorkflowService
    engine: ExecutionEngine
    scheduler: Scheduler

    def stats(self) -> WorkflowStats:
        return compute_stats(self.store)


def build_runtime(
    settings: EngineSettings,
    *,
    store: WorkflowStore | None = None,
    operations: OperationRunner | None = None,
    notifier: Notifier | None = None,
    session: requests.Session | None = None,
    waiter: Waiter = event_wait,
) -> EngineRuntime:
    """Build a runtime whose registry reflects the triggers already in the store."""

    store = store or WorkflowStore.from_settings(settings)
    registry = TriggerRegistry(store)
    registry.load_from_store()

    dispatcher = ActionDispatcher(
        operations=operations
        or SubprocessOperationRunner(
            allowed=settings.parsed_allowed_commands(),
            default_timeout=settings.command_timeout_seconds,
        ),
        notifier=notifier or LoggingNotifier(),
        session=session,
        default_timeout=settings.command_timeout_seconds,
    )
    engine = ExecutionEngine(
        store=store,
        registry=registry,
        dispatcher=dispatcher,
        settings=settings,
        waiter=waiter,
    )
    return EngineRuntime(
        settings=settings,
        store=store,
        registry=registry,
        workflows=WorkflowService(store=store, registry=registry),
        engine=engine,
        scheduler=Scheduler(
            registry=registry,
            engine=engine,
            interval_seconds=settings.scheduler_interval_seconds,
        ),
    )
