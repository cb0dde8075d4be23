"""Keyed record storage for workflows and executions.

Records live in memory and, when a state directory is configured, are written
through to one JSON file per record kind so a restarted process can observe
history. Read-modify-write on a single record is serialised by a per-record
lock; different records never contend on it.
"""

from __future__ import annotations

import json
import logging
import threading
from collections.abc import Callable, Iterator, Mapping
from itertools import islice
from pathlib import Path
from typing import Any, Generic, TypeVar

import pydantic

from ops_workflow_engine.core.config import EngineSettings
from ops_workflow_engine.core.errors import NotFound, ValidationError
from ops_workflow_engine.engine.models import (
    ExecutionStatus,
    Workflow,
    WorkflowExecution,
    WorkflowStatus,
    new_id,
    utc_now,
)

logger = logging.getLogger(__name__)

RecordT = TypeVar("RecordT", Workflow, WorkflowExecution)


class RecordListing(Generic[RecordT]):
    """Lazy, finite, restartable listing ordered by `created_at` descending.

    Nothing is read until iteration starts, and every new iteration reflects the
    collection as it is at that moment.
    """

    def __init__(
        self,
        collection: RecordCollection[RecordT],
        predicate: Callable[[RecordT], bool] | None = None,
        *,
        offset: int = 0,
        limit: int | None = None,
    ) -> None:
        self._collection = collection
        self._predicate = predicate
        self._offset = offset
        self._limit = limit

    def __iter__(self) -> Iterator[RecordT]:
        ordered = sorted(
            enumerate(self._collection.snapshot()),
            key=lambda pair: (pair[1].created_at, pair[0]),
            reverse=True,
        )
        matching = (r for _idx, r in ordered if self._predicate is None or self._predicate(r))
        stop = None if self._limit is None else self._offset + self._limit
        return islice(matching, self._offset, stop)


class RecordCollection(Generic[RecordT]):
    """A document collection keyed by opaque string id."""

    def __init__(
        self,
        *,
        kind: str,
        model: type[RecordT],
        id_prefix: str,
        path: Path | None = None,
    ) -> None:
        self._kind = kind
        self._model = model
        self._id_prefix = id_prefix
        self._path = path
        self._lock = threading.Lock()
        self._record_locks: dict[str, threading.RLock] = {}
        self._records: dict[str, RecordT] = self._load()

    # ------------------------------------------------------------------
    def _load(self) -> dict[str, RecordT]:
        if self._path is None or not self._path.exists():
            return {}
        try:
            raw = json.loads(self._path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            logger.warning(
                "State file is not valid JSON; treating as empty",
                extra={"path": str(self._path), "kind": self._kind},
            )
            return {}
        if not isinstance(raw, list):
            logger.warning(
                "State file has unexpected shape; treating as empty",
                extra={"path": str(self._path), "kind": self._kind},
            )
            return {}
        records: dict[str, RecordT] = {}
        for position, item in enumerate(raw):
            try:
                record = self._model.model_validate(item)
            except pydantic.ValidationError as e:
                logger.warning(
                    "Skipping invalid record in state file",
                    extra={
                        "path": str(self._path),
                        "kind": self._kind,
                        "position": position,
                        "reason": str(e),
                    },
                )
                continue
            records[record.id] = record
        return records

    def _save_unlocked(self) -> None:
        if self._path is None:
            return
        self._path.parent.mkdir(parents=True, exist_ok=True)
        payload = [r.model_dump(mode="json") for r in self._records.values()]
        self._path.write_text(
            json.dumps(payload, indent=2, ensure_ascii=False) + "\n", encoding="utf-8"
        )

    def _record_lock(self, record_id: str) -> threading.RLock:
        with self._lock:
            lock = self._record_locks.get(record_id)
            if lock is None:
                lock = threading.RLock()
                self._record_locks[record_id] = lock
            return lock

    def _put(self, record: RecordT) -> None:
        with self._lock:
            self._records[record.id] = record
            self._save_unlocked()

    def _validate(self, data: Mapping[str, Any]) -> RecordT:
        try:
            return self._model.model_validate(dict(data))
        except pydantic.ValidationError as e:
            raise ValidationError(f"Invalid {self._kind}: {e}") from e

    # ------------------------------------------------------------------
    def snapshot(self) -> list[RecordT]:
        with self._lock:
            return [r.model_copy(deep=True) for r in self._records.values()]

    def create(self, record: RecordT) -> RecordT:
        """Store a new record, assigning its id and timestamps."""

        now = utc_now()
        created = record.model_copy(
            update={"id": new_id(self._id_prefix), "created_at": now, "updated_at": now},
            deep=True,
        )
        self._put(created)
        return created.model_copy(deep=True)

    def get(self, record_id: str) -> RecordT:
        with self._lock:
            record = self._records.get(record_id)
            if record is None:
                raise NotFound(self._kind, record_id)
            return record.model_copy(deep=True)

    def update(self, record_id: str, patch: Mapping[str, Any]) -> RecordT:
        """Merge `patch` into the record and bump `updated_at`."""

        def _merge(current: RecordT) -> RecordT:
            return self._validate({**current.model_dump(), **patch})

        return self.mutate(record_id, _merge)

    def mutate(self, record_id: str, fn: Callable[[RecordT], RecordT | None]) -> RecordT:
        """Atomic read-modify-write of one record.

        `fn` receives a private copy of the current record and returns the
        replacement, or None to leave the record untouched.
        """

        with self._record_lock(record_id):
            current = self.get(record_id)
            replacement = fn(current)
            if replacement is None:
                return current
            merged = self._validate(
                {
                    **replacement.model_dump(),
                    "id": current.id,
                    "created_at": current.created_at,
                    "updated_at": utc_now(),
                }
            )
            self._put(merged)
            return merged.model_copy(deep=True)

    def list(
        self,
        predicate: Callable[[RecordT], bool] | None = None,
        *,
        offset: int = 0,
        limit: int | None = None,
    ) -> RecordListing[RecordT]:
        if offset < 0 or (limit is not None and limit < 0):
            raise ValidationError("offset and limit must not be negative")
        return RecordListing(self, predicate, offset=offset, limit=limit)


class WorkflowStore:
    """Persistence for Workflow and WorkflowExecution records."""

    def __init__(self, state_path: Path | None = None) -> None:
        self.workflows: RecordCollection[Workflow] = RecordCollection(
            kind="Workflow",
            model=Workflow,
            id_prefix="wf",
            path=state_path / "workflows.json" if state_path is not None else None,
        )
        self.executions: RecordCollection[WorkflowExecution] = RecordCollection(
            kind="Execution",
            model=WorkflowExecution,
            id_prefix="exec",
            path=state_path / "executions.json" if state_path is not None else None,
        )

    @classmethod
    def from_settings(cls, settings: EngineSettings) -> WorkflowStore:
        return cls(settings.state_path)

    # Workflows --------------------------------------------------------
    def create_workflow(self, workflow: Workflow) -> Workflow:
        if workflow.status not in (WorkflowStatus.DRAFT, WorkflowStatus.ACTIVE):
            raise ValidationError(
                f"Workflows are created as draft or active, not {workflow.status.value}"
            )
        if workflow.status is WorkflowStatus.ACTIVE and not workflow.actions:
            raise ValidationError("An active workflow needs at least one action")
        return self.workflows.create(workflow)

    def get_workflow(self, workflow_id: str) -> Workflow:
        return self.workflows.get(workflow_id)

    def update_workflow(self, workflow_id: str, patch: Mapping[str, Any]) -> Workflow:
        return self.workflows.update(workflow_id, patch)

    def mutate_workflow(
        self, workflow_id: str, fn: Callable[[Workflow], Workflow | None]
    ) -> Workflow:
        return self.workflows.mutate(workflow_id, fn)

    def list_workflows(
        self,
        *,
        status: WorkflowStatus | None = None,
        offset: int = 0,
        limit: int | None = None,
    ) -> RecordListing[Workflow]:
        predicate = None if status is None else (lambda w: w.status is status)
        return self.workflows.list(predicate, offset=offset, limit=limit)

    # Executions -------------------------------------------------------
    def create_execution(self, execution: WorkflowExecution) -> WorkflowExecution:
        return self.executions.create(execution)

    def get_execution(self, execution_id: str) -> WorkflowExecution:
        return self.executions.get(execution_id)

    def update_execution(self, execution_id: str, patch: Mapping[str, Any]) -> WorkflowExecution:
        return self.executions.update(execution_id, patch)

    def mutate_execution(
        self,
        execution_id: str,
        fn: Callable[[WorkflowExecution], WorkflowExecution | None],
    ) -> WorkflowExecution:
        return self.executions.mutate(execution_id, fn)

    def list_executions(
        self,
        *,
        workflow_id: str | None = None,
        status: ExecutionStatus | None = None,
        offset: int = 0,
        limit: int | None = None,
    ) -> RecordListing[WorkflowExecution]:
        def _matches(e: WorkflowExecution) -> bool:
            if workflow_id is not None and e.workflow_id != workflow_id:
                return False
            return status is None or e.status is status

        return self.executions.list(_matches, offset=offset, limit=limit)
