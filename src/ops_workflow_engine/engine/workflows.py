"""Workflow definitions: creation, edits, lifecycle transitions, duplication.

Every operation takes the acting identity explicitly (`actor`); there is no
process-wide "current user".
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

import pydantic

from ops_workflow_engine.core.errors import ValidationError
from ops_workflow_engine.engine.lifecycle import transition_workflow
from ops_workflow_engine.engine.models import Workflow, WorkflowStatus
from ops_workflow_engine.engine.store import WorkflowStore
from ops_workflow_engine.engine.triggers import TriggerRegistry, validate_trigger

logger = logging.getLogger(__name__)

_EDITABLE_FIELDS = frozenset({"name", "description", "actions", "triggers"})
_DUPLICATE_OVERRIDES = frozenset({"name", "description"})
_LIVE = (WorkflowStatus.ACTIVE, WorkflowStatus.PAUSED)


def _parse(data: Mapping[str, Any]) -> Workflow:
    try:
        return Workflow.model_validate(dict(data))
    except pydantic.ValidationError as e:
        raise ValidationError(f"Invalid workflow: {e}") from e


class WorkflowService:
    def __init__(self, *, store: WorkflowStore, registry: TriggerRegistry) -> None:
        self._store = store
        self._registry = registry

    def create(self, data: Mapping[str, Any] | Workflow, *, actor: str) -> Workflow:
        """Create a workflow (draft unless `status: active` is requested)."""

        accepted = _EDITABLE_FIELDS | {"status"}
        if isinstance(data, Workflow):
            payload = data.model_dump(include=set(accepted))
        else:
            payload = dict(data)
            unknown = set(payload) - accepted
            if unknown:
                raise ValidationError(f"Unknown workflow fields: {', '.join(sorted(unknown))}")
        workflow = _parse({**payload, "created_by": actor})
        for trigger in workflow.triggers:
            validate_trigger(trigger)

        created = self._store.create_workflow(workflow)
        if created.status is WorkflowStatus.ACTIVE:
            self._registry.sync_workflow(created)
        logger.info(
            "Workflow created",
            extra={"workflow_id": created.id, "status": created.status.value, "actor": actor},
        )
        return created

    def get(self, workflow_id: str) -> Workflow:
        return self._store.get_workflow(workflow_id)

    def list(
        self,
        *,
        status: WorkflowStatus | None = None,
        offset: int = 0,
        limit: int | None = 100,
    ) -> list[Workflow]:
        return list(self._store.list_workflows(status=status, offset=offset, limit=limit))

    def update(self, workflow_id: str, patch: Mapping[str, Any], *, actor: str) -> Workflow:
        """Apply a targeted update of name/description/actions/triggers.

        Changing `actions` or `triggers` bumps the workflow version. Status is
        changed only through activate/pause/archive.
        """

        forbidden = set(patch) - _EDITABLE_FIELDS
        if forbidden:
            raise ValidationError(f"Fields cannot be updated: {', '.join(sorted(forbidden))}")

        def _apply(current: Workflow) -> Workflow:
            if current.status is WorkflowStatus.ARCHIVED:
                raise ValidationError(f"Workflow {current.id} is archived")
            structural = "actions" in patch or "triggers" in patch
            candidate = _parse(
                {
                    **current.model_dump(),
                    **patch,
                    "version": current.version + 1 if structural else current.version,
                }
            )
            if current.status in _LIVE and not candidate.actions:
                raise ValidationError("An active or paused workflow needs at least one action")
            for trigger in candidate.triggers:
                validate_trigger(trigger)
            return candidate

        updated = self._store.mutate_workflow(workflow_id, _apply)
        if updated.status in _LIVE:
            self._registry.sync_workflow(updated)
        logger.info(
            "Workflow updated",
            extra={"workflow_id": workflow_id, "version": updated.version, "actor": actor},
        )
        return updated

    def activate(self, workflow_id: str, *, actor: str) -> Workflow:
        def _apply(current: Workflow) -> Workflow:
            if not current.actions:
                raise ValidationError("A workflow needs at least one action to be activated")
            status = transition_workflow(current.status, WorkflowStatus.ACTIVE)
            return current.model_copy(update={"status": status})

        updated = self._store.mutate_workflow(workflow_id, _apply)
        self._registry.sync_workflow(updated)
        logger.info("Workflow activated", extra={"workflow_id": workflow_id, "actor": actor})
        return updated

    def pause(self, workflow_id: str, *, actor: str) -> Workflow:
        """Pause a workflow; its triggers stay registered but cannot start runs."""

        def _apply(current: Workflow) -> Workflow:
            status = transition_workflow(current.status, WorkflowStatus.PAUSED)
            return current.model_copy(update={"status": status})

        updated = self._store.mutate_workflow(workflow_id, _apply)
        logger.info("Workflow paused", extra={"workflow_id": workflow_id, "actor": actor})
        return updated

    def archive(self, workflow_id: str, *, actor: str) -> Workflow:
        def _apply(current: Workflow) -> Workflow:
            status = transition_workflow(current.status, WorkflowStatus.ARCHIVED)
            return current.model_copy(update={"status": status})

        updated = self._store.mutate_workflow(workflow_id, _apply)
        self._registry.unregister_workflow(workflow_id)
        logger.info("Workflow archived", extra={"workflow_id": workflow_id, "actor": actor})
        return updated

    def duplicate(
        self,
        workflow_id: str,
        overrides: Mapping[str, Any] | None = None,
        *,
        actor: str,
    ) -> Workflow:
        """Copy actions and triggers into a new draft workflow.

        Execution history is never copied.
        """

        overrides = dict(overrides or {})
        unknown = set(overrides) - _DUPLICATE_OVERRIDES
        if unknown:
            raise ValidationError(f"Fields cannot be overridden: {', '.join(sorted(unknown))}")

        original = self._store.get_workflow(workflow_id)
        copy = _parse(
            {
                "name": overrides.get("name") or f"{original.name} (Copy)",
                "description": overrides.get("description", original.description),
                "status": WorkflowStatus.DRAFT,
                "actions": [a.model_dump() for a in original.actions],
                "triggers": [
                    t.model_dump(exclude={"next_fire_at"}) for t in original.triggers
                ],
                "created_by": actor,
            }
        )
        created = self._store.create_workflow(copy)
        logger.info(
            "Workflow duplicated",
            extra={"workflow_id": created.id, "source_workflow_id": workflow_id, "actor": actor},
        )
        return created
