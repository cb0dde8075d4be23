#!/usr/bin/env python3
"""Programmatic workflow example.

This demonstrates using the engine components directly:

* load settings from `.env`
* create and activate a workflow with two actions
* run it synchronously and print the recorded steps

The command to run is passed as an argument; it must be on PATH.
"""

from __future__ import annotations

import argparse
from typing import Sequence

from ops_workflow_engine.core.config import EngineSettings
from ops_workflow_engine.core.logging import configure_logging
from ops_workflow_engine.engine.models import ExecutionStatus
from ops_workflow_engine.engine.runtime import build_runtime


def _parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run a two-step workflow (programmatic example).")
    parser.add_argument("--command", default="uptime", help="Command for the run_command step")
    parser.add_argument("--notify", default="all", help="Comma-separated notification targets")
    parser.add_argument("--actor", default="example", help="Identity recorded on the execution")
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    args = _parse_args(argv)

    settings = EngineSettings()
    configure_logging(settings.log_level)
    runtime = build_runtime(settings)

    workflow = runtime.workflows.create(
        {
            "name": "Example: command then notify",
            "actions": [
                {"type": "run_command", "name": "probe", "config": {"command": args.command}},
                {
                    "type": "notification",
                    "name": "report",
                    "config": {
                        "title": "{{input.title}}",
                        "message": "{{steps.0.stdout}}",
                        "target_users": "{{input.targets}}",
                    },
                },
            ],
        },
        actor=args.actor,
    )
    runtime.workflows.activate(workflow.id, actor=args.actor)

    execution = runtime.engine.execute(
        workflow.id,
        actor=args.actor,
        input={"title": f"Output of {args.command}", "targets": args.notify},
        wait=True,
    )

    print(f"Execution {execution.id}: {execution.status.value}")
    for step in execution.steps:
        detail = step.error.message if step.error else step.output
        print(f"  [{step.action_index}] {step.action_type}: {step.status.value} {detail}")
    print(f"Persisted to: {settings.executions_state_file}")
    return 0 if execution.status is ExecutionStatus.COMPLETED else 1


if __name__ == "__main__":
    raise SystemExit(main())
