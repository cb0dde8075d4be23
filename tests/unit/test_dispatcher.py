from __future__ import annotations

import subprocess

import pytest
import requests

from ops_workflow_engine.core.errors import ConfigError, FatalError, TransientError
from ops_workflow_engine.engine.dispatcher import (
    ActionDispatcher,
    build_namespace,
    compare,
    resolve_path,
    substitute,
)
from ops_workflow_engine.engine.models import (
    ConditionAction,
    DelayAction,
    EmailAction,
    HttpRequestAction,
    NotificationAction,
    RunCommandAction,
    SetVariableAction,
    TransformDataAction,
)
from ops_workflow_engine.engine.operations import OperationRejected, OperationResult


@pytest.fixture
def dispatcher(operations, notifier, session) -> ActionDispatcher:
    return ActionDispatcher(operations=operations, notifier=notifier, session=session)


def _ns(**input_data):
    return build_namespace(input_data, {"region": "eu-west"}, {0: {"stdout": "42"}})


def test_substitute_resolves_input_variables_and_step_outputs() -> None:
    value = substitute(
        {"to": "{{input.to}}", "msg": ["in {{ variables.region }}", "got {{steps.0.stdout}}"]},
        _ns(to="a@b.com"),
    )
    assert value == {"to": "a@b.com", "msg": ["in eu-west", "got 42"]}


def test_substitute_renders_non_strings_as_json() -> None:
    assert substitute("n={{input.n}} f={{input.flags}}", _ns(n=3, flags=[1, 2])) == "n=3 f=[1, 2]"


@pytest.mark.parametrize("path", ["input.missing", "steps.7.stdout", "nope"])
def test_unresolved_path_is_a_config_error(path: str) -> None:
    with pytest.raises(ConfigError):
        resolve_path(path, _ns())


def test_null_value_is_a_config_error() -> None:
    with pytest.raises(ConfigError):
        resolve_path("input.to", _ns(to=None))


def test_notification_recipient_is_resolved(dispatcher, notifier) -> None:
    action = NotificationAction(
        config={"title": "Report for {{input.to}}", "message": "done", "target_users": "{{input.to}}"}
    )
    outcome = dispatcher.dispatch(action, _ns(to="a@b.com"))

    assert outcome.ok
    assert notifier.sent[0].target_users == ["a@b.com"]
    assert notifier.sent[0].title == "Report for a@b.com"


def test_notification_with_undefined_recipient_never_sends(dispatcher, notifier) -> None:
    action = NotificationAction(
        config={"title": "t", "message": "m", "target_users": "{{input.to}}"}
    )
    outcome = dispatcher.dispatch(action, _ns())

    assert not outcome.ok
    assert isinstance(outcome.error, ConfigError)
    assert notifier.sent == []


def test_notification_delivery_failure_is_transient(dispatcher, notifier) -> None:
    notifier.failures_left = 1
    outcome = dispatcher.dispatch(NotificationAction(config={"title": "t", "message": "m"}), _ns())
    assert isinstance(outcome.error, TransientError)


def test_run_command_success_captures_output(dispatcher, operations) -> None:
    operations.script["backup"] = [OperationResult(stdout="saved\n", stderr="", exit_code=0)]
    action = RunCommandAction(config={"command": "backup --target {{variables.region}}"})

    outcome = dispatcher.dispatch(action, _ns())

    assert outcome.ok
    assert outcome.output == {"exit_code": 0, "stdout": "saved\n", "stderr": ""}
    assert operations.calls == [("backup", ["--target", "eu-west"])]


@pytest.mark.parametrize(
    ("result", "error_type"),
    [
        (OperationResult(stdout="", stderr="busy", exit_code=75), TransientError),
        (OperationResult(stdout="", stderr="boom", exit_code=1), FatalError),
        (OperationRejected("Operation not allowed: rm"), ConfigError),
        (FileNotFoundError("no such file"), ConfigError),
        (subprocess.TimeoutExpired(cmd="backup", timeout=1), TransientError),
    ],
)
def test_run_command_failures_are_classified(dispatcher, operations, result, error_type) -> None:
    operations.script["backup"] = [result]
    outcome = dispatcher.dispatch(RunCommandAction(config={"command": "backup"}), _ns())

    assert not outcome.ok
    assert type(outcome.error) is error_type


def test_run_command_with_unbalanced_quotes_is_a_config_error(dispatcher) -> None:
    outcome = dispatcher.dispatch(RunCommandAction(config={"command": "echo 'oops"}), _ns())
    assert isinstance(outcome.error, ConfigError)


@pytest.mark.parametrize(
    ("status", "error_type"), [(503, TransientError), (429, TransientError), (404, FatalError)]
)
def test_http_status_classification(dispatcher, session, status, error_type) -> None:
    session.respond(status)
    outcome = dispatcher.dispatch(HttpRequestAction(config={"url": "https://hooks.test/x"}), _ns())
    assert type(outcome.error) is error_type


def test_http_request_sends_json_body(dispatcher, session) -> None:
    session.respond(201, {"id": 7})
    action = HttpRequestAction(
        config={"method": "POST", "url": "https://hooks.test/{{input.path}}", "body": {"k": "v"}}
    )

    outcome = dispatcher.dispatch(action, _ns(path="deploys"))

    assert outcome.output == {"status_code": 201, "body": {"id": 7}}
    method, url, kwargs = session.requests[0]
    assert (method, url, kwargs["json"]) == ("POST", "https://hooks.test/deploys", {"k": "v"})


def test_http_connection_error_is_transient(dispatcher, session) -> None:
    session.responses.append(requests.exceptions.ConnectionError("refused"))
    outcome = dispatcher.dispatch(HttpRequestAction(config={"url": "https://hooks.test"}), _ns())
    assert isinstance(outcome.error, TransientError)


def test_http_malformed_url_is_a_config_error(dispatcher, session) -> None:
    session.responses.append(requests.exceptions.MissingSchema("no scheme"))
    outcome = dispatcher.dispatch(HttpRequestAction(config={"url": "hooks.test"}), _ns())
    assert isinstance(outcome.error, ConfigError)


def test_delay_uses_sleeper_and_converts_units(dispatcher) -> None:
    slept: list[float] = []
    action = DelayAction(config={"duration": "{{input.wait}}", "unit": "s"})

    outcome = dispatcher.dispatch(action, _ns(wait=2), sleep=lambda s: slept.append(s) or False)

    assert outcome.ok
    assert slept == [2.0]


def test_interrupted_delay_is_reported(dispatcher) -> None:
    outcome = dispatcher.dispatch(
        DelayAction(config={"duration": 5, "unit": "m"}), _ns(), sleep=lambda _s: True
    )
    assert not outcome.ok
    assert outcome.interrupted
    assert outcome.error is None


def test_delay_with_non_numeric_placeholder_is_a_config_error(dispatcher) -> None:
    outcome = dispatcher.dispatch(
        DelayAction(config={"duration": "{{input.wait}}"}), _ns(wait="later"), sleep=lambda _s: False
    )
    assert isinstance(outcome.error, ConfigError)


@pytest.mark.parametrize(
    ("value", "value_type", "expected"),
    [("42", "number", 42), ("yes", "boolean", True), ('{"a": 1}', "json", {"a": 1}), (7, "string", "7")],
)
def test_set_variable_coerces_value(dispatcher, value, value_type, expected) -> None:
    action = SetVariableAction(config={"name": "x", "value": value, "value_type": value_type})
    outcome = dispatcher.dispatch(action, _ns())

    assert outcome.variables == {"x": expected}


def test_set_variable_with_bad_number_is_a_config_error(dispatcher) -> None:
    action = SetVariableAction(config={"name": "x", "value": "many", "value_type": "number"})
    assert isinstance(dispatcher.dispatch(action, _ns()).error, ConfigError)


def test_unexpected_handler_exception_is_fatal(dispatcher, operations) -> None:
    operations.script["backup"] = [RuntimeError("driver bug")]
    outcome = dispatcher.dispatch(RunCommandAction(config={"command": "backup"}), _ns())
    assert isinstance(outcome.error, FatalError)


@pytest.mark.parametrize(
    "name", ["svc --force --target=prod", "O'Brien", 'say "hi"; rm -rf /', ""]
)
def test_resolved_value_stays_a_single_argument(dispatcher, operations, name: str) -> None:
    action = RunCommandAction(
        config={
            "command": "deploy {{input.name}} --note='by {{input.name}}'",
            "args": ["{{input.name}}"],
        }
    )

    outcome = dispatcher.dispatch(action, _ns(name=name))

    assert outcome.ok, outcome.error
    assert operations.calls == [("deploy", [name, f"--note=by {name}", name])]


@pytest.mark.parametrize("duration", [float("inf"), float("nan"), "inf"])
def test_non_finite_delay_is_rejected_at_creation(duration) -> None:
    with pytest.raises(ValueError):
        DelayAction(config={"duration": duration})


def test_non_finite_delay_from_variable_is_a_config_error(dispatcher) -> None:
    slept: list[float] = []
    outcome = dispatcher.dispatch(
        DelayAction(config={"duration": "{{input.wait}}"}),
        _ns(wait="inf"),
        sleep=lambda s: slept.append(s) or False,
    )

    assert isinstance(outcome.error, ConfigError)
    assert slept == []


def test_email_goes_through_notifier(dispatcher, notifier) -> None:
    action = EmailAction(
        config={
            "to": "{{input.to}}, ops@example.com",
            "cc": "lead@example.com",
            "subject": "Backup in {{variables.region}}",
            "body": "done",
        }
    )

    outcome = dispatcher.dispatch(action, _ns(to="a@b.com"))

    assert outcome.ok
    [email] = notifier.emails
    assert email.to == ["a@b.com", "ops@example.com"]
    assert email.cc == ["lead@example.com"]
    assert email.subject == "Backup in eu-west"
    assert outcome.output == {
        "message_id": "m-1",
        "to": ["a@b.com", "ops@example.com"],
        "subject": "Backup in eu-west",
    }


def test_email_with_bad_address_never_sends(dispatcher, notifier) -> None:
    action = EmailAction(config={"to": "not-an-address", "subject": "s", "body": "b"})

    outcome = dispatcher.dispatch(action, _ns())

    assert isinstance(outcome.error, ConfigError)
    assert notifier.emails == []


def test_email_delivery_failure_is_transient(dispatcher, notifier) -> None:
    notifier.failures_left = 1
    action = EmailAction(config={"to": "a@b.com", "subject": "s", "body": "b"})
    assert isinstance(dispatcher.dispatch(action, _ns()).error, TransientError)


@pytest.mark.parametrize(
    ("left", "operator", "right", "expected"),
    [
        ("42", "gt", 10, True),
        ("9", "gte", "10", False),
        ("eu-west", "eq", "eu-west", True),
        ("true", "eq", True, True),
        ("saved to disk", "contains", "disk", True),
        (["a", "b"], "contains", "c", False),
        ("0", "truthy", None, False),
        ("yes", "truthy", None, True),
    ],
)
def test_compare(left, operator, right, expected) -> None:
    assert compare(left, operator, right) is expected


def test_ordering_non_numbers_is_a_config_error() -> None:
    with pytest.raises(ConfigError):
        compare("abc", "lt", "abd")


def test_condition_exposes_boolean_output(dispatcher) -> None:
    action = ConditionAction(
        config={
            "left": "{{steps.0.stdout}}",
            "operator": "gte",
            "right": 40,
            "output_variable": "enough",
        }
    )

    outcome = dispatcher.dispatch(action, _ns())

    assert outcome.output == {"result": True, "branch": "yes"}
    assert outcome.variables == {"enough": True}


def test_condition_requires_right_value_unless_truthy() -> None:
    with pytest.raises(ValueError):
        ConditionAction(config={"left": "{{input.x}}", "operator": "eq"})
    ConditionAction(config={"left": "{{input.x}}", "operator": "truthy"})


_HOSTS = [
    {"name": "db1", "load": 0.9, "role": "db"},
    {"name": "web1", "load": 0.2, "role": "web"},
    {"name": "db2", "load": 0.4, "role": "db"},
]


@pytest.mark.parametrize(
    ("config", "expected"),
    [
        ({"transform_type": "map", "field": "name"}, ["db1", "web1", "db2"]),
        (
            {"transform_type": "filter", "field": "role", "value": "db"},
            [_HOSTS[0], _HOSTS[2]],
        ),
        (
            {"transform_type": "filter", "field": "load", "operator": "gt", "value": "{{input.limit}}"},
            [_HOSTS[0]],
        ),
        ({"transform_type": "sort", "field": "load", "descending": True}, [_HOSTS[0], _HOSTS[2], _HOSTS[1]]),
        ({"transform_type": "count"}, 3),
        ({"transform_type": "sum", "field": "load"}, pytest.approx(1.5)),
    ],
)
def test_transform_data(dispatcher, config, expected) -> None:
    action = TransformDataAction(config={"source": "input.hosts", "output_key": "hosts", **config})

    outcome = dispatcher.dispatch(action, _ns(hosts=_HOSTS, limit=0.5))

    assert outcome.ok, outcome.error
    assert outcome.output["result"] == expected
    assert outcome.variables == {"hosts": outcome.output["result"]}


def test_transform_unique_keeps_first_occurrence(dispatcher) -> None:
    action = TransformDataAction(config={"transform_type": "unique", "source": "input.tags"})

    outcome = dispatcher.dispatch(action, _ns(tags=["b", "a", "b", {"k": 1}, {"k": 1}]))

    assert outcome.variables == {"transformed_data": ["b", "a", {"k": 1}]}


@pytest.mark.parametrize(
    ("config", "data"),
    [
        ({"transform_type": "count", "source": "input.hosts"}, "not-a-list"),
        ({"transform_type": "map", "field": "missing", "source": "input.hosts"}, _HOSTS),
        ({"transform_type": "sum", "field": "name", "source": "input.hosts"}, _HOSTS),
        ({"transform_type": "count", "source": "input.nothing"}, _HOSTS),
    ],
)
def test_transform_bad_input_is_a_config_error(dispatcher, config, data) -> None:
    outcome = dispatcher.dispatch(TransformDataAction(config=config), _ns(hosts=data))
    assert isinstance(outcome.error, ConfigError)


def test_transform_map_needs_a_field() -> None:
    with pytest.raises(ValueError):
        TransformDataAction(config={"transform_type": "map", "source": "input.hosts"})
