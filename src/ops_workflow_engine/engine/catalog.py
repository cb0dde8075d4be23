"""Static catalog of supported action types.

Required keys and the config schema are derived from the config models in
`models.py`, so the catalog cannot drift from what validation enforces.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Literal

from pydantic import BaseModel

from ops_workflow_engine.core.errors import NotFound, ValidationError
from ops_workflow_engine.engine.models import (
    ConditionConfig,
    DelayConfig,
    EmailConfig,
    HttpRequestConfig,
    NotificationConfig,
    RunCommandConfig,
    SetVariableConfig,
    TransformDataConfig,
)

ActionCategory = Literal["communication", "data", "control", "integration", "utility"]

CATEGORIES: tuple[str, ...] = ("communication", "data", "control", "integration", "utility")


@dataclass(frozen=True, slots=True)
class ActionTemplate:
    type: str
    name: str
    description: str
    category: ActionCategory
    config_model: type[BaseModel]

    @property
    def required_keys(self) -> list[str]:
        return [
            name for name, field in self.config_model.model_fields.items() if field.is_required()
        ]

    def to_json(self) -> dict[str, Any]:
        schema = self.config_model.model_json_schema()
        return {
            "type": self.type,
            "name": self.name,
            "description": self.description,
            "category": self.category,
            "required_keys": self.required_keys,
            "config_schema": schema,
        }


ACTION_TEMPLATES: tuple[ActionTemplate, ...] = (
    ActionTemplate(
        type="run_command",
        name="Run Command",
        description="Run an external command and capture its output",
        category="utility",
        config_model=RunCommandConfig,
    ),
    ActionTemplate(
        type="notification",
        name="Send Notification",
        description="Send an in-app or push notification",
        category="communication",
        config_model=NotificationConfig,
    ),
    ActionTemplate(
        type="email",
        name="Send Email",
        description="Send an email through the configured mail service",
        category="communication",
        config_model=EmailConfig,
    ),
    ActionTemplate(
        type="http_request",
        name="HTTP Request",
        description="Call a webhook or external HTTP API",
        category="integration",
        config_model=HttpRequestConfig,
    ),
    ActionTemplate(
        type="delay",
        name="Delay / Wait",
        description="Pause the execution for a fixed duration",
        category="control",
        config_model=DelayConfig,
    ),
    ActionTemplate(
        type="condition",
        name="Condition",
        description="Compare two values; the boolean result is exposed as the step output",
        category="control",
        config_model=ConditionConfig,
    ),
    ActionTemplate(
        type="set_variable",
        name="Set Variable",
        description="Store a value for later steps under {{variables.<name>}}",
        category="data",
        config_model=SetVariableConfig,
    ),
    ActionTemplate(
        type="transform_data",
        name="Transform Data",
        description="Map, filter, sort or aggregate a list from an earlier step or the input",
        category="data",
        config_model=TransformDataConfig,
    ),
)


def list_action_templates(category: str | None = None) -> list[ActionTemplate]:
    if category is None:
        return list(ACTION_TEMPLATES)
    if category not in CATEGORIES:
        raise ValidationError(f"Unknown action category: {category!r}")
    return [t for t in ACTION_TEMPLATES if t.category == category]


def get_action_template(action_type: str) -> ActionTemplate:
    for template in ACTION_TEMPLATES:
        if template.type == action_type:
            return template
    raise NotFound("ActionTemplate", action_type)
