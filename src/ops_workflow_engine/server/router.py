"""Workflow REST API.

All routes are mounted under `/api`. The acting identity comes from the
`X-Actor` header.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Header, HTTPException, Query, Request

from ops_workflow_engine.engine.catalog import list_action_templates
from ops_workflow_engine.engine.models import ExecutionStatus, WorkflowStatus
from ops_workflow_engine.engine.runtime import EngineRuntime
from ops_workflow_engine.server.models import DuplicateRequest, EmitEventRequest, ExecuteRequest

router = APIRouter()

# Fields a full replacement (PUT) resets when the body omits them.
_REPLACE_DEFAULTS: dict[str, Any] = {"description": "", "actions": [], "triggers": []}


def _runtime(request: Request) -> EngineRuntime:
    runtime = getattr(request.app.state, "runtime", None)
    if not isinstance(runtime, EngineRuntime):
        raise HTTPException(status_code=500, detail="Engine runtime not configured")
    return runtime


@router.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


# Workflows ------------------------------------------------------------


@router.get("/workflows")
def list_workflows(
    request: Request,
    status: WorkflowStatus | None = None,
    limit: int = Query(default=100, ge=0, le=1000),
    offset: int = Query(default=0, ge=0),
) -> list[dict[str, Any]]:
    workflows = _runtime(request).workflows.list(status=status, offset=offset, limit=limit)
    return [w.model_dump(mode="json") for w in workflows]


@router.post("/workflows", status_code=201)
def create_workflow(
    request: Request,
    payload: dict[str, Any],
    x_actor: str = Header(default="anonymous"),
) -> dict[str, Any]:
    created = _runtime(request).workflows.create(payload, actor=x_actor)
    return created.model_dump(mode="json")


@router.get("/workflows/{workflow_id}")
def get_workflow(request: Request, workflow_id: str) -> dict[str, Any]:
    return _runtime(request).workflows.get(workflow_id).model_dump(mode="json")


@router.patch("/workflows/{workflow_id}")
def update_workflow(
    request: Request,
    workflow_id: str,
    payload: dict[str, Any],
    x_actor: str = Header(default="anonymous"),
) -> dict[str, Any]:
    updated = _runtime(request).workflows.update(workflow_id, payload, actor=x_actor)
    return updated.model_dump(mode="json")


@router.put("/workflows/{workflow_id}")
def replace_workflow(
    request: Request,
    workflow_id: str,
    payload: dict[str, Any],
    x_actor: str = Header(default="anonymous"),
) -> dict[str, Any]:
    replacement = {**_REPLACE_DEFAULTS, **payload}
    updated = _runtime(request).workflows.update(workflow_id, replacement, actor=x_actor)
    return updated.model_dump(mode="json")


@router.post("/workflows/{workflow_id}/activate")
def activate_workflow(
    request: Request, workflow_id: str, x_actor: str = Header(default="anonymous")
) -> dict[str, Any]:
    return _runtime(request).workflows.activate(workflow_id, actor=x_actor).model_dump(mode="json")


@router.post("/workflows/{workflow_id}/pause")
def pause_workflow(
    request: Request, workflow_id: str, x_actor: str = Header(default="anonymous")
) -> dict[str, Any]:
    return _runtime(request).workflows.pause(workflow_id, actor=x_actor).model_dump(mode="json")


@router.post("/workflows/{workflow_id}/archive")
def archive_workflow(
    request: Request, workflow_id: str, x_actor: str = Header(default="anonymous")
) -> dict[str, Any]:
    return _runtime(request).workflows.archive(workflow_id, actor=x_actor).model_dump(mode="json")


@router.post("/workflows/{workflow_id}/duplicate", status_code=201)
def duplicate_workflow(
    request: Request,
    workflow_id: str,
    req: DuplicateRequest | None = None,
    x_actor: str = Header(default="anonymous"),
) -> dict[str, Any]:
    overrides = req.model_dump(exclude_none=True) if req is not None else {}
    copy = _runtime(request).workflows.duplicate(workflow_id, overrides, actor=x_actor)
    return copy.model_dump(mode="json")


@router.post("/workflows/{workflow_id}/execute", status_code=202)
def execute_workflow(
    request: Request,
    workflow_id: str,
    req: ExecuteRequest | None = None,
    x_actor: str = Header(default="anonymous"),
) -> dict[str, Any]:
    req = req or ExecuteRequest()
    execution = _runtime(request).engine.execute(
        workflow_id,
        actor=x_actor,
        input=req.input,
        variables=req.variables,
        wait=req.wait,
    )
    return execution.model_dump(mode="json")


# Executions -----------------------------------------------------------


@router.get("/executions")
def list_executions(
    request: Request,
    workflow_id: str | None = None,
    status: ExecutionStatus | None = None,
    limit: int = Query(default=100, ge=0, le=1000),
    offset: int = Query(default=0, ge=0),
) -> list[dict[str, Any]]:
    executions = _runtime(request).engine.list_executions(
        workflow_id=workflow_id, status=status, offset=offset, limit=limit
    )
    return [e.model_dump(mode="json") for e in executions]


@router.get("/executions/{execution_id}")
def get_execution(request: Request, execution_id: str) -> dict[str, Any]:
    return _runtime(request).engine.get_execution(execution_id).model_dump(mode="json")


@router.post("/executions/{execution_id}/cancel")
def cancel_execution(
    request: Request, execution_id: str, x_actor: str = Header(default="anonymous")
) -> dict[str, Any]:
    record = _runtime(request).engine.cancel_execution(execution_id, actor=x_actor)
    return record.model_dump(mode="json")


# Events, stats and catalog -------------------------------------------


@router.post("/events/{event_name}", status_code=202)
def emit_event(
    request: Request,
    event_name: str,
    req: EmitEventRequest | None = None,
    x_actor: str = Header(default="anonymous"),
) -> list[dict[str, Any]]:
    payload = req.payload if req is not None else {}
    started = _runtime(request).engine.emit_event(event_name, payload, actor=x_actor)
    return [e.model_dump(mode="json") for e in started]


@router.get("/stats")
def get_stats(request: Request) -> dict[str, Any]:
    return _runtime(request).stats().model_dump(mode="json")


@router.get("/action-templates")
def get_action_templates(category: str | None = None) -> list[dict[str, Any]]:
    return [t.to_json() for t in list_action_templates(category)]
