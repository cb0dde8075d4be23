"""Error taxonomy for the workflow engine.

Store and lifecycle operations raise `ValidationError` / `NotFound` directly to
their callers. Action failures are classified by the dispatcher into
`ConfigError`, `TransientError` or `FatalError`; the execution engine decides
whether to retry and records the classification on the failed step.
"""

from __future__ import annotations


class WorkflowEngineError(Exception):
    """Base class for every error raised by this package."""


class ValidationError(WorkflowEngineError):
    """Malformed input to a store or engine operation. Never retried."""


class NotFound(WorkflowEngineError):
    """A referenced workflow or execution does not exist."""

    def __init__(self, kind: str, record_id: str) -> None:
        super().__init__(f"{kind} not found: {record_id}")
        self.kind = kind
        self.record_id = record_id


class IllegalTransitionError(ValidationError):
    """A lifecycle transition that the state machine does not allow."""


class InvalidScheduleError(ValidationError):
    """A schedule expression rejected at trigger registration."""


class ActionError(WorkflowEngineError):
    """Classified failure of a single action."""

    kind = "action_error"


class ConfigError(ActionError):
    """Invalid action configuration or unresolved variable. Never retried."""

    kind = "config_error"


class TransientError(ActionError):
    """External operation failed in a way that may succeed on retry."""

    kind = "transient_error"


class FatalError(ActionError):
    """Failure that aborts the whole execution without retry."""

    kind = "fatal_error"
