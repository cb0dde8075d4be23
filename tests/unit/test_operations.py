from __future__ import annotations

import logging
import sys

import pytest

from ops_workflow_engine.engine.operations import (
    Email,
    LoggingNotifier,
    Notification,
    OperationRejected,
    SubprocessOperationRunner,
)


def test_subprocess_runner_captures_output_and_exit_code() -> None:
    runner = SubprocessOperationRunner()
    result = runner.run(sys.executable, ["-c", "import sys; print('hi'); sys.exit(3)"], timeout=30)

    assert result.stdout.strip() == "hi"
    assert result.exit_code == 3


def test_subprocess_runner_enforces_allow_list() -> None:
    runner = SubprocessOperationRunner(allowed=["backup"])
    with pytest.raises(OperationRejected):
        runner.run("rm", ["-rf", "/tmp/x"])


def test_subprocess_runner_missing_binary() -> None:
    with pytest.raises(FileNotFoundError):
        SubprocessOperationRunner().run("definitely-not-a-real-binary-xyz", [])


def test_logging_notifier_logs_at_level(caplog: pytest.LogCaptureFixture) -> None:
    notification = Notification(
        level="warning", title="Disk almost full", message="92%", channel="app", target_users=["all"]
    )
    with caplog.at_level(logging.INFO):
        notification_id = LoggingNotifier().send(notification)

    assert notification_id
    [record] = [r for r in caplog.records if r.getMessage() == "Disk almost full"]
    assert record.levelno == logging.WARNING


def test_logging_notifier_logs_email_without_bcc_addresses(caplog: pytest.LogCaptureFixture) -> None:
    email = Email(
        to=["ops@example.com"],
        subject="Nightly backup finished",
        body="ok",
        bcc=["audit@example.com", "cto@example.com"],
    )
    with caplog.at_level(logging.INFO):
        message_id = LoggingNotifier().send_email(email)

    assert message_id
    [record] = [r for r in caplog.records if r.getMessage() == "Nightly backup finished"]
    assert record.to == ["ops@example.com"]
    assert record.bcc_count == 2
    assert "audit@example.com" not in str(vars(record))
