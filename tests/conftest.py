"""Test configuration and fixtures."""

from __future__ import annotations

import threading
from collections.abc import Callable, Iterator, Sequence
from pathlib import Path
from typing import Any

import pytest

from ops_workflow_engine.core.config import EngineSettings
from ops_workflow_engine.engine.operations import (
    Email,
    Notification,
    NotificationDeliveryError,
    OperationResult,
)
from ops_workflow_engine.engine.runtime import EngineRuntime, build_runtime


class FakeOperationRunner:
    """Scripted stand-in for external commands.

    `script[name]` is a list consumed one entry per call; an entry is either an
    `OperationResult` or an exception instance to raise. Unscripted calls
    succeed with empty output.
    """

    def __init__(self) -> None:
        self.script: dict[str, list[OperationResult | Exception]] = {}
        self.calls: list[tuple[str, list[str]]] = []
        self.on_run: Callable[[str, list[str]], None] | None = None

    def run(
        self,
        operation_name: str,
        args: Sequence[str],
        *,
        timeout: float | None = None,
        cwd: str | None = None,
    ) -> OperationResult:
        self.calls.append((operation_name, list(args)))
        if self.on_run is not None:
            self.on_run(operation_name, list(args))
        queue = self.script.get(operation_name)
        if queue:
            entry = queue.pop(0)
            if isinstance(entry, Exception):
                raise entry
            return entry
        return OperationResult(stdout=f"{operation_name} ok\n", stderr="", exit_code=0)


class RecordingNotifier:
    def __init__(self) -> None:
        self.sent: list[Notification] = []
        self.emails: list[Email] = []
        self.failures_left = 0

    def _maybe_fail(self) -> None:
        if self.failures_left > 0:
            self.failures_left -= 1
            raise NotificationDeliveryError("notification service unavailable")

    def send(self, notification: Notification) -> str:
        self._maybe_fail()
        self.sent.append(notification)
        return f"n-{len(self.sent)}"

    def send_email(self, email: Email) -> str:
        self._maybe_fail()
        self.emails.append(email)
        return f"m-{len(self.emails)}"


class RecordingWaiter:
    """Returns immediately; reports cancellation if it was already requested."""

    def __init__(self) -> None:
        self.waits: list[float] = []
        self.before_wait: Callable[[], None] | None = None

    def __call__(self, event: threading.Event, seconds: float) -> bool:
        self.waits.append(seconds)
        if self.before_wait is not None:
            self.before_wait()
        return event.is_set()


class FakeResponse:
    def __init__(self, status_code: int, body: Any = None) -> None:
        self.status_code = status_code
        self._body = body

    def json(self) -> Any:
        if self._body is None:
            raise ValueError("no JSON body")
        return self._body

    @property
    def text(self) -> str:
        return "" if self._body is None else str(self._body)


class FakeSession:
    def __init__(self) -> None:
        self.responses: list[FakeResponse | Exception] = []
        self.requests: list[tuple[str, str, dict[str, Any]]] = []

    def respond(self, status_code: int, body: Any = None) -> None:
        self.responses.append(FakeResponse(status_code, body))

    def request(self, method: str, url: str, **kwargs: Any) -> FakeResponse:
        self.requests.append((method, url, kwargs))
        if self.responses:
            entry = self.responses.pop(0)
            if isinstance(entry, Exception):
                raise entry
            return entry
        return FakeResponse(200, {"ok": True})


@pytest.fixture
def temp_state_dir(tmp_path: Path) -> Path:
    """Provide a temporary state directory."""
    state_dir = tmp_path / ".state"
    state_dir.mkdir()
    return state_dir


@pytest.fixture
def settings(temp_state_dir: Path) -> EngineSettings:
    """Engine settings isolated from the developer's environment and `.env`."""
    return EngineSettings(
        _env_file=None,
        log_level="DEBUG",
        state_path=temp_state_dir,
        retry_max_attempts=3,
        retry_initial_delay_seconds=0.5,
        retry_backoff_multiplier=2.0,
    )


@pytest.fixture
def operations() -> FakeOperationRunner:
    return FakeOperationRunner()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def waiter() -> RecordingWaiter:
    return RecordingWaiter()


@pytest.fixture
def session() -> FakeSession:
    return FakeSession()


@pytest.fixture
def runtime(
    settings: EngineSettings,
    operations: FakeOperationRunner,
    notifier: RecordingNotifier,
    session: FakeSession,
    waiter: RecordingWaiter,
) -> Iterator[EngineRuntime]:
    rt = build_runtime(
        settings,
        operations=operations,
        notifier=notifier,
        session=session,  # type: ignore[arg-type]
        waiter=waiter,
    )
    yield rt
    rt.scheduler.stop()
    rt.engine.shutdown(timeout=5.0)


@pytest.fixture
def make_workflow(runtime: EngineRuntime) -> Callable[..., Any]:
    """Create (and by default activate) a workflow from action dicts."""

    def _make(
        *actions: dict[str, Any],
        name: str = "Nightly report",
        triggers: list[dict[str, Any]] | None = None,
        activate: bool = True,
    ):
        workflow = runtime.workflows.create(
            {"name": name, "actions": list(actions), "triggers": triggers or []},
            actor="alice",
        )
        if activate:
            workflow = runtime.workflows.activate(workflow.id, actor="alice")
        return workflow

    return _make
