"""CLI entrypoint for the workflow engine.

Operates directly on the state directory (`WORKFLOW_STATE_PATH`). Do not point
the CLI at a state directory that a running server is using.
"""

from __future__ import annotations

import argparse
import getpass
import json
import logging
import sys
from pathlib import Path
from typing import Any

import uvicorn
from pydantic import BaseModel, ValidationError

from ops_workflow_engine import __version__
from ops_workflow_engine.core.config import EngineSettings
from ops_workflow_engine.core.errors import NotFound
from ops_workflow_engine.core.errors import ValidationError as EngineValidationError
from ops_workflow_engine.core.logging import configure_logging
from ops_workflow_engine.engine.catalog import CATEGORIES, list_action_templates
from ops_workflow_engine.engine.models import ExecutionStatus, WorkflowStatus
from ops_workflow_engine.engine.runtime import build_runtime
from ops_workflow_engine.server.app import create_app
from ops_workflow_engine.server.config import ServerSettings

logger = logging.getLogger(__name__)


def _default_actor() -> str:
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return "cli"


def _load_json_object(value: str | None, *, what: str) -> dict[str, Any]:
    if value is None:
        return {}
    try:
        data = json.loads(value)
    except json.JSONDecodeError as e:
        raise EngineValidationError(f"{what} is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise EngineValidationError(f"{what} must be a JSON object")
    return data


def _emit(value: BaseModel | list[BaseModel] | dict[str, Any] | list[dict[str, Any]]) -> None:
    if isinstance(value, BaseModel):
        data: Any = value.model_dump(mode="json")
    elif isinstance(value, list):
        data = [v.model_dump(mode="json") if isinstance(v, BaseModel) else v for v in value]
    else:
        data = value
    print(json.dumps(data, indent=2, ensure_ascii=False))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="workflow-engine",
        description="Run and manage operational workflows",
    )
    parser.add_argument(
        "--version", action="version", version=f"ops-workflow-engine {__version__}"
    )
    parser.add_argument(
        "--actor",
        default=None,
        help="Identity recorded on changes and executions (defaults to the OS user)",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    templates = subparsers.add_parser("templates", help="List supported action types")
    templates.add_argument("--category", choices=CATEGORIES, default=None)

    create = subparsers.add_parser("create", help="Create a workflow from a JSON file")
    create.add_argument("path", type=Path, help="JSON file with name/description/actions/triggers")
    create.add_argument(
        "--activate", action="store_true", help="Activate the workflow right after creation"
    )

    list_cmd = subparsers.add_parser("list", help="List workflows")
    list_cmd.add_argument("--status", choices=[s.value for s in WorkflowStatus], default=None)
    list_cmd.add_argument("--limit", type=int, default=100)
    list_cmd.add_argument("--offset", type=int, default=0)

    for name, help_text in (
        ("activate", "Activate a workflow"),
        ("pause", "Pause an active workflow"),
        ("archive", "Archive a workflow (terminal)"),
    ):
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument("workflow_id")

    duplicate = subparsers.add_parser("duplicate", help="Copy a workflow into a new draft")
    duplicate.add_argument("workflow_id")
    duplicate.add_argument("--name", default=None)
    duplicate.add_argument("--description", default=None)

    run = subparsers.add_parser("run", help="Execute a workflow and wait for the result")
    run.add_argument("workflow_id")
    run.add_argument("--input", default=None, help="JSON object exposed as {{input.*}}")
    run.add_argument("--variables", default=None, help="JSON object exposed as {{variables.*}}")

    cancel = subparsers.add_parser("cancel", help="Request cancellation of an execution")
    cancel.add_argument("execution_id")

    executions = subparsers.add_parser("executions", help="List executions")
    executions.add_argument("--workflow-id", default=None)
    executions.add_argument(
        "--status", choices=[s.value for s in ExecutionStatus], default=None
    )
    executions.add_argument("--limit", type=int, default=20)
    executions.add_argument("--offset", type=int, default=0)

    show = subparsers.add_parser("show", help="Show a workflow or execution by id")
    show.add_argument("record_id")

    subparsers.add_parser("stats", help="Show execution statistics")

    emit = subparsers.add_parser("emit", help="Emit an event to event-triggered workflows")
    emit.add_argument("event")
    emit.add_argument("--payload", default=None, help="JSON object passed as execution input")
    emit.add_argument(
        "--no-wait", action="store_true", help="Return without waiting for executions to finish"
    )

    tick = subparsers.add_parser("tick", help="Run scheduled triggers that are due now")
    tick.add_argument(
        "--no-wait", action="store_true", help="Return without waiting for executions to finish"
    )

    serve = subparsers.add_parser("serve", help="Run the REST API server (uvicorn)")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8000)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        settings = EngineSettings()
    except ValidationError as e:
        # Logging isn't configured yet; keep it simple and actionable.
        print("Configuration error (check your .env):", file=sys.stderr)
        print(e, file=sys.stderr)
        return 2

    configure_logging(settings.log_level)
    actor = args.actor or _default_actor()

    try:
        if args.command == "templates":
            _emit([t.to_json() for t in list_action_templates(args.category)])
            return 0

        if args.command == "serve":
            app = create_app(ServerSettings())
            # Keep our JSON logging instead of uvicorn's default config.
            uvicorn.run(app, host=args.host, port=args.port, log_config=None)
            return 0

        runtime = build_runtime(settings)
        workflows = runtime.workflows
        engine = runtime.engine

        if args.command == "create":
            data = _load_json_object(args.path.read_text(encoding="utf-8"), what=str(args.path))
            workflow = workflows.create(data, actor=actor)
            if args.activate:
                workflow = workflows.activate(workflow.id, actor=actor)
            _emit(workflow)
            return 0

        if args.command == "list":
            status = WorkflowStatus(args.status) if args.status else None
            _emit(workflows.list(status=status, offset=args.offset, limit=args.limit))
            return 0

        if args.command == "activate":
            _emit(workflows.activate(args.workflow_id, actor=actor))
            return 0

        if args.command == "pause":
            _emit(workflows.pause(args.workflow_id, actor=actor))
            return 0

        if args.command == "archive":
            _emit(workflows.archive(args.workflow_id, actor=actor))
            return 0

        if args.command == "duplicate":
            overrides = {
                k: v
                for k, v in (("name", args.name), ("description", args.description))
                if v is not None
            }
            _emit(workflows.duplicate(args.workflow_id, overrides, actor=actor))
            return 0

        if args.command == "run":
            execution = engine.execute(
                args.workflow_id,
                actor=actor,
                input=_load_json_object(args.input, what="--input"),
                variables=_load_json_object(args.variables, what="--variables"),
                wait=True,
            )
            _emit(execution)
            return 0 if execution.status is ExecutionStatus.COMPLETED else 4

        if args.command == "cancel":
            _emit(engine.cancel_execution(args.execution_id, actor=actor))
            return 0

        if args.command == "executions":
            status = ExecutionStatus(args.status) if args.status else None
            _emit(
                engine.list_executions(
                    workflow_id=args.workflow_id,
                    status=status,
                    offset=args.offset,
                    limit=args.limit,
                )
            )
            return 0

        if args.command == "show":
            if args.record_id.startswith("exec-"):
                _emit(engine.get_execution(args.record_id))
            else:
                _emit(workflows.get(args.record_id))
            return 0

        if args.command == "stats":
            _emit(runtime.stats())
            return 0

        if args.command == "emit":
            payload = _load_json_object(args.payload, what="--payload")
            started = engine.emit_event(args.event, payload, actor=actor)
            if not args.no_wait:
                started = [engine.wait_for(e.id) for e in started]
            _emit(started)
            return 0

        if args.command == "tick":
            started = runtime.scheduler.tick()
            if not args.no_wait:
                started = [engine.wait_for(e.id) for e in started]
            _emit(started)
            return 0

        logger.error("Unknown command", extra={"command": args.command})
        return 2

    except (NotFound, EngineValidationError) as e:
        logger.warning(str(e), extra={"command": args.command})
        print(str(e), file=sys.stderr)
        return 3

    except Exception:
        logger.exception("Command failed")
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
