"""External collaborators used by the action dispatcher.

- `OperationRunner`: run an external operation by name with arguments.
- `Notifier`: deliver an in-app / push notification or an email.

The default implementations are a subprocess runner with an optional
allow-list and a notifier that writes to the log.
"""

from __future__ import annotations

import logging
import subprocess
import uuid
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Protocol

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class OperationResult:
    stdout: str
    stderr: str
    exit_code: int


class OperationRejected(ValueError):
    """The operation name is not permitted by the runner."""


class OperationRunner(Protocol):
    def run(
        self,
        operation_name: str,
        args: Sequence[str],
        *,
        timeout: float | None = None,
        cwd: str | None = None,
    ) -> OperationResult: ...


class SubprocessOperationRunner:
    """Runs operations as child processes.

    Raises `OperationRejected` for names outside the allow-list, and lets
    `FileNotFoundError` / `subprocess.TimeoutExpired` propagate for the
    dispatcher to classify.
    """

    def __init__(self, *, allowed: Sequence[str] = (), default_timeout: float = 300.0) -> None:
        self._allowed = frozenset(allowed)
        self._default_timeout = default_timeout

    def run(
        self,
        operation_name: str,
        args: Sequence[str],
        *,
        timeout: float | None = None,
        cwd: str | None = None,
    ) -> OperationResult:
        if self._allowed and operation_name not in self._allowed:
            raise OperationRejected(f"Operation not allowed: {operation_name}")

        logger.info(
            "Running external operation",
            extra={"operation": operation_name, "arg_count": len(args), "cwd": cwd},
        )
        completed = subprocess.run(
            [operation_name, *args],
            capture_output=True,
            text=True,
            timeout=timeout or self._default_timeout,
            cwd=cwd,
            check=False,
        )
        return OperationResult(
            stdout=completed.stdout,
            stderr=completed.stderr,
            exit_code=completed.returncode,
        )


@dataclass(frozen=True, slots=True)
class Notification:
    level: str
    title: str
    message: str
    channel: str
    target_users: list[str]


@dataclass(frozen=True, slots=True)
class Email:
    to: list[str]
    subject: str
    body: str
    cc: list[str] = field(default_factory=list)
    bcc: list[str] = field(default_factory=list)
    is_html: bool = False


class NotificationDeliveryError(RuntimeError):
    """The notification layer could not accept the notification right now."""


class Notifier(Protocol):
    def send(self, notification: Notification) -> str:
        """Deliver the notification and return its id."""
        ...

    def send_email(self, email: Email) -> str:
        """Hand the email to the mail service and return its message id."""
        ...


_LOG_LEVELS = {
    "info": logging.INFO,
    "success": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


class LoggingNotifier:
    """Notifier for deployments without a notification or mail layer."""

    def send(self, notification: Notification) -> str:
        notification_id = uuid.uuid4().hex
        logger.log(
            _LOG_LEVELS.get(notification.level, logging.INFO),
            notification.title,
            extra={
                "notification_id": notification_id,
                "channel": notification.channel,
                "target_users": notification.target_users,
                "body": notification.message,
            },
        )
        return notification_id

    def send_email(self, email: Email) -> str:
        message_id = uuid.uuid4().hex
        logger.info(
            email.subject,
            extra={
                "message_id": message_id,
                "to": email.to,
                "cc": email.cc,
                "bcc_count": len(email.bcc),
                "is_html": email.is_html,
            },
        )
        return message_id
