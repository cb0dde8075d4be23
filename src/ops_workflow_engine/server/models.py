"""Pydantic request models for the REST server."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class ExecuteRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    input: dict[str, Any] = Field(default_factory=dict)
    variables: dict[str, Any] = Field(default_factory=dict)
    wait: bool = Field(
        default=False,
        description="If true, respond with the finished execution instead of the pending one",
    )


class DuplicateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str | None = Field(default=None, min_length=1)
    description: str | None = None


class EmitEventRequest(BaseModel):
    payload: dict[str, Any] = Field(default_factory=dict)
