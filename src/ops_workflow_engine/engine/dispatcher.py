"""Action dispatcher: perform one action and classify its outcome.

The dispatcher knows nothing about workflows, executions or steps. It maps
`(action, variables)` to a `DispatchOutcome`:

- success with an output payload
- `ConfigError`    invalid config or unresolved `{{variable}}`; never retried
- `TransientError` the external operation may succeed on retry
- `FatalError`     abort the whole execution

Variable substitution replaces `{{path}}` tokens inside string config values
with the value found at the dotted `path` in the variables namespace, e.g.
`{{input.to}}`, `{{variables.region}}` or `{{steps.0.stdout}}`. A `run_command`
command line is split into arguments before substitution, so a resolved value
always stays a single argument.
"""

from __future__ import annotations

import json
import logging
import math
import re
import shlex
import subprocess
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

import pydantic
import requests

from ops_workflow_engine.core.errors import ActionError, ConfigError, FatalError, TransientError
from ops_workflow_engine.engine.catalog import get_action_template
from ops_workflow_engine.engine.models import (
    ComparisonOperator,
    ConditionConfig,
    DelayConfig,
    EmailConfig,
    HttpRequestConfig,
    NotificationConfig,
    RunCommandConfig,
    SetVariableConfig,
    TransformDataConfig,
    WorkflowAction,
)
from ops_workflow_engine.engine.operations import (
    Email,
    Notification,
    NotificationDeliveryError,
    Notifier,
    OperationRejected,
    OperationRunner,
)

logger = logging.getLogger(__name__)

_TOKEN = re.compile(r"\{\{\s*([A-Za-z0-9_\-]+(?:\.[A-Za-z0-9_\-]+)*)\s*\}\}")

_UNIT_SECONDS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}

# Config keys substituted by the handler itself rather than up front.
_DEFERRED_KEYS = {"run_command": frozenset({"command", "args"})}

# Returns True when the wait was cut short (cancellation).
Sleeper = Callable[[float], bool]


def _plain_sleep(seconds: float) -> bool:
    time.sleep(seconds)
    return False


@dataclass(frozen=True, slots=True)
class DispatchOutcome:
    ok: bool
    output: dict[str, Any] | None = None
    error: ActionError | None = None
    variables: dict[str, Any] = field(default_factory=dict)
    interrupted: bool = False


class _Interrupted(Exception):
    pass


def build_namespace(
    input_data: Mapping[str, Any],
    variables: Mapping[str, Any],
    step_outputs: Mapping[int, Mapping[str, Any]],
) -> dict[str, Any]:
    """Namespace visible to `{{path}}` tokens; step outputs keyed by action index."""

    return {
        "input": dict(input_data),
        "variables": dict(variables),
        "steps": {str(idx): dict(output) for idx, output in step_outputs.items()},
    }


def resolve_path(path: str, namespace: Mapping[str, Any]) -> Any:
    current: Any = namespace
    for part in path.split("."):
        if isinstance(current, Mapping) and part in current:
            current = current[part]
        elif isinstance(current, list) and part.isdigit() and int(part) < len(current):
            current = current[int(part)]
        else:
            raise ConfigError(f"Unresolved variable '{{{{{path}}}}}'")
    if current is None:
        raise ConfigError(f"Variable '{{{{{path}}}}}' resolved to null")
    return current


def _render(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value, ensure_ascii=False)


def substitute(value: Any, namespace: Mapping[str, Any]) -> Any:
    """Replace `{{path}}` tokens in every string found in `value`."""

    if isinstance(value, str):
        return _TOKEN.sub(lambda m: _render(resolve_path(m.group(1), namespace)), value)
    if isinstance(value, list):
        return [substitute(v, namespace) for v in value]
    if isinstance(value, dict):
        return {k: substitute(v, namespace) for k, v in value.items()}
    return value


class ActionDispatcher:
    """Executes a single action against the external collaborators."""

    def __init__(
        self,
        *,
        operations: OperationRunner,
        notifier: Notifier,
        session: requests.Session | None = None,
        default_timeout: float = 300.0,
    ) -> None:
        self._operations = operations
        self._notifier = notifier
        self._session = session or requests.Session()
        self._default_timeout = default_timeout
        self._handlers: dict[str, Callable[[Any, Any, Mapping[str, Any], Sleeper], DispatchOutcome]] = {
            "run_command": self._run_command,
            "notification": self._notification,
            "email": self._email,
            "http_request": self._http_request,
            "delay": self._delay,
            "set_variable": self._set_variable,
            "condition": self._condition,
            "transform_data": self._transform_data,
        }

    def dispatch(
        self,
        action: WorkflowAction,
        namespace: Mapping[str, Any],
        *,
        sleep: Sleeper = _plain_sleep,
    ) -> DispatchOutcome:
        handler = self._handlers.get(action.type)
        if handler is None:
            return DispatchOutcome(ok=False, error=ConfigError(f"Unknown action type: {action.type}"))

        try:
            config = self._resolve_config(action, namespace)
            return handler(action, config, namespace, sleep)
        except ActionError as e:
            return DispatchOutcome(ok=False, error=e)
        except _Interrupted:
            return DispatchOutcome(ok=False, interrupted=True)
        except Exception as e:
            logger.exception("Action handler raised unexpectedly", extra={"action_type": action.type})
            return DispatchOutcome(ok=False, error=FatalError(f"Unexpected error: {e}"))

    def _resolve_config(self, action: WorkflowAction, namespace: Mapping[str, Any]) -> Any:
        deferred = _DEFERRED_KEYS.get(action.type, frozenset())
        raw = {
            key: value if key in deferred else substitute(value, namespace)
            for key, value in action.config.model_dump().items()
        }
        model = get_action_template(action.type).config_model
        try:
            return model.model_validate(raw)
        except pydantic.ValidationError as e:
            raise ConfigError(f"Invalid {action.type} config after substitution: {e}") from e

    # ------------------------------------------------------------------
    def _run_command(
        self,
        action: WorkflowAction,
        config: RunCommandConfig,
        namespace: Mapping[str, Any],
        _sleep: Sleeper,
    ) -> DispatchOutcome:
        try:
            template = shlex.split(config.command)
        except ValueError as e:
            raise ConfigError(f"Cannot parse command: {e}") from e
        argv = [substitute(token, namespace) for token in [*template, *config.args]]
        if not argv or not argv[0]:
            raise ConfigError("Command is empty")

        timeout = action.timeout_seconds or self._default_timeout
        try:
            result = self._operations.run(
                argv[0], argv[1:], timeout=timeout, cwd=config.working_directory
            )
        except OperationRejected as e:
            raise ConfigError(str(e)) from e
        except (FileNotFoundError, PermissionError, NotADirectoryError) as e:
            raise ConfigError(f"Cannot run {argv[0]!r}: {e}") from e
        except subprocess.TimeoutExpired as e:
            raise TransientError(f"{argv[0]!r} timed out after {timeout:g}s") from e
        except OSError as e:
            raise TransientError(f"Cannot run {argv[0]!r}: {e}") from e

        if result.exit_code != 0:
            detail = (result.stderr or result.stdout).strip()[-500:]
            message = f"{argv[0]!r} exited with status {result.exit_code}"
            if detail:
                message = f"{message}: {detail}"
            if result.exit_code in config.transient_exit_codes:
                raise TransientError(message)
            raise FatalError(message)

        output: dict[str, Any] = {"exit_code": result.exit_code}
        if config.capture_output:
            output["stdout"] = result.stdout
            output["stderr"] = result.stderr
        return DispatchOutcome(ok=True, output=output)

    def _notification(
        self, _action: WorkflowAction, config: NotificationConfig, _ns: Mapping[str, Any], _sleep: Sleeper
    ) -> DispatchOutcome:
        targets = [t.strip() for t in config.target_users.split(",") if t.strip()]
        if not targets:
            raise ConfigError("Notification has no target users")
        notification = Notification(
            level=config.level,
            title=config.title,
            message=config.message,
            channel=config.channel,
            target_users=targets,
        )
        try:
            notification_id = self._notifier.send(notification)
        except NotificationDeliveryError as e:
            raise TransientError(f"Notification not delivered: {e}") from e
        return DispatchOutcome(
            ok=True,
            output={
                "notification_id": notification_id,
                "channel": config.channel,
                "level": config.level,
                "title": config.title,
                "target_users": targets,
            },
        )

    def _email(
        self, _action: WorkflowAction, config: EmailConfig, _ns: Mapping[str, Any], _sleep: Sleeper
    ) -> DispatchOutcome:
        to = _addresses(config.to, "to")
        if not to:
            raise ConfigError("Email has no recipients")
        email = Email(
            to=to,
            subject=config.subject,
            body=config.body,
            cc=_addresses(config.cc, "cc"),
            bcc=_addresses(config.bcc, "bcc"),
            is_html=config.is_html,
        )
        try:
            message_id = self._notifier.send_email(email)
        except NotificationDeliveryError as e:
            raise TransientError(f"Email not delivered: {e}") from e
        return DispatchOutcome(
            ok=True, output={"message_id": message_id, "to": to, "subject": config.subject}
        )

    def _http_request(
        self, action: WorkflowAction, config: HttpRequestConfig, _ns: Mapping[str, Any], _sleep: Sleeper
    ) -> DispatchOutcome:
        kwargs: dict[str, Any] = {
            "headers": config.headers,
            "timeout": action.timeout_seconds or self._default_timeout,
        }
        if isinstance(config.body, dict):
            kwargs["json"] = config.body
        elif config.body is not None:
            kwargs["data"] = config.body

        try:
            response = self._session.request(config.method, config.url, **kwargs)
        except (
            requests.exceptions.MissingSchema,
            requests.exceptions.InvalidSchema,
            requests.exceptions.InvalidURL,
        ) as e:
            raise ConfigError(f"Invalid URL {config.url!r}: {e}") from e
        except requests.exceptions.RequestException as e:
            raise TransientError(f"{config.method} {config.url} failed: {e}") from e

        status = response.status_code
        if status == 429 or status >= 500:
            raise TransientError(f"{config.method} {config.url} returned {status}")
        if status >= 400:
            raise FatalError(f"{config.method} {config.url} returned {status}")

        try:
            body: Any = response.json()
        except ValueError:
            body = response.text
        return DispatchOutcome(ok=True, output={"status_code": status, "body": body})

    def _delay(
        self, _action: WorkflowAction, config: DelayConfig, _ns: Mapping[str, Any], sleep: Sleeper
    ) -> DispatchOutcome:
        try:
            amount = float(config.duration)
        except ValueError as e:
            raise ConfigError(f"Delay duration is not a number: {config.duration!r}") from e
        if not math.isfinite(amount) or amount < 0:
            raise ConfigError(f"Delay duration must be a finite, non-negative number: {amount!r}")
        seconds = amount * _UNIT_SECONDS[config.unit]
        if sleep(seconds):
            raise _Interrupted()
        return DispatchOutcome(ok=True, output={"waited_seconds": seconds})

    def _set_variable(
        self, _action: WorkflowAction, config: SetVariableConfig, _ns: Mapping[str, Any], _sleep: Sleeper
    ) -> DispatchOutcome:
        value = _coerce(config.value, config.value_type)
        return DispatchOutcome(
            ok=True,
            output={"name": config.name, "value": value},
            variables={config.name: value},
        )

    def _condition(
        self, _action: WorkflowAction, config: ConditionConfig, _ns: Mapping[str, Any], _sleep: Sleeper
    ) -> DispatchOutcome:
        result = compare(config.left, config.operator, config.right)
        branch = config.true_label if result else config.false_label
        variables = {config.output_variable: result} if config.output_variable else {}
        return DispatchOutcome(
            ok=True, output={"result": result, "branch": branch}, variables=variables
        )

    def _transform_data(
        self,
        _action: WorkflowAction,
        config: TransformDataConfig,
        namespace: Mapping[str, Any],
        _sleep: Sleeper,
    ) -> DispatchOutcome:
        items = resolve_path(config.source, namespace)
        if not isinstance(items, list):
            raise ConfigError(f"{config.source} is not a list")

        result = _transform(items, config)
        output: dict[str, Any] = {"output_key": config.output_key, "result": result}
        if isinstance(result, list):
            output["count"] = len(result)
        return DispatchOutcome(ok=True, output=output, variables={config.output_key: result})


_ADDRESS = re.compile(r"^[^@\s]+@[^@\s]+$")


def _addresses(value: str, header: str) -> list[str]:
    addresses = [a.strip() for a in value.split(",") if a.strip()]
    for address in addresses:
        if not _ADDRESS.match(address):
            raise ConfigError(f"Invalid {header} address: {address!r}")
    return addresses


_FALSY = frozenset({"", "0", "false", "no", "null", "none"})

_MISSING = object()


def _as_number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int | float):
        return float(value)
    if isinstance(value, str):
        try:
            number = float(value)
        except ValueError:
            return None
        return number if math.isfinite(number) else None
    return None


def _text(value: Any) -> str:
    return value if isinstance(value, str) else _render(value)


def compare(left: Any, operator: ComparisonOperator, right: Any = None) -> bool:
    """Evaluate `left <operator> right`.

    Both sides are compared as numbers when both read as numbers, otherwise
    as text. Ordering operators on non-numbers raise `ConfigError`.
    """

    if operator == "truthy":
        if isinstance(left, str):
            return left.strip().lower() not in _FALSY
        return bool(left)
    if operator == "contains":
        if isinstance(left, list):
            return any(_text(item) == _text(right) for item in left)
        if isinstance(left, Mapping):
            return _text(right) in left
        return _text(right) in _text(left)

    a: Any = _as_number(left)
    b: Any = _as_number(right)
    if a is None or b is None:
        if operator not in ("eq", "ne"):
            raise ConfigError(f"Cannot order {left!r} and {right!r}: both must be numbers")
        a, b = _text(left), _text(right)

    if operator == "eq":
        return a == b
    if operator == "ne":
        return a != b
    if operator == "gt":
        return a > b
    if operator == "gte":
        return a >= b
    if operator == "lt":
        return a < b
    return a <= b


def _pick(item: Any, path: str | None) -> Any:
    if not path:
        return item
    current = item
    for part in path.split("."):
        if isinstance(current, Mapping) and part in current:
            current = current[part]
        elif isinstance(current, list) and part.isdigit() and int(part) < len(current):
            current = current[int(part)]
        else:
            return _MISSING
    return current


def _picked(items: list[Any], path: str | None) -> list[Any]:
    values = []
    for idx, item in enumerate(items):
        value = _pick(item, path)
        if value is _MISSING:
            raise ConfigError(f"Item {idx} has no field {path!r}")
        values.append(value)
    return values


def _transform(items: list[Any], config: TransformDataConfig) -> Any:
    kind = config.transform_type
    if kind == "count":
        return len(items)
    if kind == "map":
        return _picked(items, config.field)
    if kind == "filter":
        kept = []
        for item in items:
            value = _pick(item, config.field)
            if value is not _MISSING and compare(value, config.operator, config.value):
                kept.append(item)
        return kept
    if kind == "sort":
        keys = _picked(items, config.field)
        try:
            order = sorted(range(len(items)), key=keys.__getitem__, reverse=config.descending)
        except TypeError as e:
            raise ConfigError(f"Cannot sort values of mixed types: {e}") from e
        return [items[i] for i in order]
    if kind == "unique":
        seen: set[str] = set()
        unique = []
        for item in items:
            key = json.dumps(item, sort_keys=True, default=str)
            if key not in seen:
                seen.add(key)
                unique.append(item)
        return unique

    values = _picked(items, config.field)
    if any(isinstance(v, bool) or not isinstance(v, int | float) for v in values):
        raise ConfigError(f"sum needs numeric values at {config.field or 'each item'}")
    return sum(values)


def _coerce(value: str | int | float | bool, value_type: str) -> Any:
    try:
        if value_type == "string":
            return value if isinstance(value, str) else _render(value)
        if value_type == "number":
            if isinstance(value, bool):
                raise ValueError("boolean is not a number")
            number = float(value)
            return int(number) if number.is_integer() else number
        if value_type == "boolean":
            if isinstance(value, bool):
                return value
            lowered = str(value).strip().lower()
            if lowered in {"true", "1", "yes"}:
                return True
            if lowered in {"false", "0", "no"}:
                return False
            raise ValueError(f"not a boolean: {value!r}")
        return json.loads(value) if isinstance(value, str) else value
    except ValueError as e:
        raise ConfigError(f"Cannot read value as {value_type}: {e}") from e
