"""Trigger registry: which scheduled triggers are due, which react to an event.

Schedules are cron expressions evaluated with `croniter` in the trigger's
timezone. A malformed expression is rejected when the trigger is registered.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import UTC, datetime
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import croniter

from ops_workflow_engine.core.errors import InvalidScheduleError, NotFound
from ops_workflow_engine.engine.models import (
    Trigger,
    TriggerType,
    Workflow,
    WorkflowStatus,
    utc_now,
)
from ops_workflow_engine.engine.store import WorkflowStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class RegisteredTrigger:
    workflow_id: str
    trigger: Trigger


def _zone(trigger: Trigger) -> ZoneInfo:
    try:
        return ZoneInfo(trigger.timezone)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise InvalidScheduleError(f"Unknown timezone: {trigger.timezone!r}") from e


def validate_trigger(trigger: Trigger) -> None:
    """Reject a scheduled trigger whose expression or timezone cannot be used."""

    if trigger.type is not TriggerType.SCHEDULED:
        return
    schedule = (trigger.schedule or "").strip()
    if not croniter.is_valid(schedule):
        raise InvalidScheduleError(f"Invalid schedule expression: {trigger.schedule!r}")
    _zone(trigger)


def next_fire_time(trigger: Trigger, after: datetime) -> datetime:
    """First occurrence of the trigger's schedule strictly after `after` (UTC)."""

    validate_trigger(trigger)
    local = after.astimezone(_zone(trigger))
    upcoming = croniter((trigger.schedule or "").strip(), local).get_next(datetime)
    return upcoming.astimezone(UTC)


class TriggerRegistry:
    """In-memory index of the triggers bound to workflows.

    Keys are (workflow id, trigger id), so registering the same trigger twice
    simply replaces the entry.
    """

    def __init__(self, store: WorkflowStore) -> None:
        self._store = store
        self._lock = threading.Lock()
        self._triggers: dict[tuple[str, str], Trigger] = {}

    def register(self, workflow_id: str, trigger: Trigger, *, now: datetime | None = None) -> Trigger:
        validate_trigger(trigger)
        registered = trigger.model_copy(deep=True)
        if trigger.type is TriggerType.SCHEDULED:
            registered.next_fire_at = next_fire_time(trigger, now or utc_now())
        with self._lock:
            self._triggers[(workflow_id, trigger.id)] = registered
        logger.debug(
            "Trigger registered",
            extra={
                "workflow_id": workflow_id,
                "trigger_id": trigger.id,
                "trigger_type": trigger.type.value,
                "next_fire_at": registered.next_fire_at,
            },
        )
        return registered.model_copy(deep=True)

    def unregister(self, workflow_id: str, trigger_id: str) -> None:
        with self._lock:
            self._triggers.pop((workflow_id, trigger_id), None)

    def unregister_workflow(self, workflow_id: str) -> None:
        with self._lock:
            for key in [k for k in self._triggers if k[0] == workflow_id]:
                del self._triggers[key]

    def get(self, workflow_id: str, trigger_id: str) -> Trigger | None:
        with self._lock:
            trigger = self._triggers.get((workflow_id, trigger_id))
            return trigger.model_copy(deep=True) if trigger is not None else None

    def triggers_for(self, workflow_id: str) -> list[Trigger]:
        with self._lock:
            return [t.model_copy(deep=True) for (wf, _), t in self._triggers.items() if wf == workflow_id]

    def sync_workflow(self, workflow: Workflow, *, now: datetime | None = None) -> None:
        """Make the registry mirror `workflow.triggers`.

        Unchanged scheduled triggers keep their pending `next_fire_at`, so an
        unrelated edit does not skip an occurrence that is already due.
        """

        for trigger in workflow.triggers:
            validate_trigger(trigger)

        wanted = {t.id: t for t in workflow.triggers}
        with self._lock:
            stale = [k for k in self._triggers if k[0] == workflow.id and k[1] not in wanted]
            for key in stale:
                del self._triggers[key]
            existing = {k[1]: t for k, t in self._triggers.items() if k[0] == workflow.id}

        for trigger_id, trigger in wanted.items():
            current = existing.get(trigger_id)
            if current is not None and _same_definition(current, trigger):
                continue
            self.register(workflow.id, trigger, now=now)

    def load_from_store(self, *, now: datetime | None = None) -> int:
        """Register the triggers of every live workflow. Returns the count."""

        count = 0
        for workflow in self._store.list_workflows():
            if workflow.status not in (WorkflowStatus.ACTIVE, WorkflowStatus.PAUSED):
                continue
            self.sync_workflow(workflow, now=now)
            count += len(workflow.triggers)
        logger.info("Triggers loaded from store", extra={"count": count})
        return count

    def due_triggers(self, now: datetime | None = None) -> list[RegisteredTrigger]:
        """Enabled scheduled triggers whose `next_fire_at <= now`.

        Every returned trigger is advanced to its next occurrence before this
        returns, so a second call with the same `now` yields nothing.
        """

        now = now or utc_now()
        due: list[RegisteredTrigger] = []
        with self._lock:
            for (workflow_id, trigger_id), trigger in self._triggers.items():
                if trigger.type is not TriggerType.SCHEDULED or not trigger.enabled:
                    continue
                if trigger.next_fire_at is None or trigger.next_fire_at > now:
                    continue
                due.append(RegisteredTrigger(workflow_id, trigger.model_copy(deep=True)))
                trigger.next_fire_at = next_fire_time(trigger, now)
                logger.debug(
                    "Trigger due",
                    extra={
                        "workflow_id": workflow_id,
                        "trigger_id": trigger_id,
                        "next_fire_at": trigger.next_fire_at,
                    },
                )
        return due

    def match_event(self, event_name: str) -> list[RegisteredTrigger]:
        """Enabled event triggers for `event_name` on currently active workflows."""

        with self._lock:
            candidates = [
                RegisteredTrigger(workflow_id, trigger.model_copy(deep=True))
                for (workflow_id, _), trigger in self._triggers.items()
                if trigger.type is TriggerType.EVENT
                and trigger.enabled
                and trigger.event == event_name
            ]

        matched: list[RegisteredTrigger] = []
        for candidate in candidates:
            try:
                workflow = self._store.get_workflow(candidate.workflow_id)
            except NotFound:
                continue
            if workflow.status is WorkflowStatus.ACTIVE:
                matched.append(candidate)
        return matched


def _same_definition(a: Trigger, b: Trigger) -> bool:
    return a.model_dump(exclude={"next_fire_at"}) == b.model_dump(exclude={"next_fire_at"})
