"""Configuration for the workflow engine.

Configuration is loaded from:
- environment variables
- and a local `.env` file (if present)

Tests override values by passing keyword arguments, or the env file via
`EngineSettings(_env_file=path_to_env)`.
"""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class EngineSettings(BaseSettings):
    """Settings for the workflow execution engine.

    Environment variables:
    - WORKFLOW_LOG_LEVEL                     (optional)
    - WORKFLOW_STATE_PATH                    (optional)
    - WORKFLOW_RETRY_*                       (optional, transient-failure retry policy)
    - WORKFLOW_ALLOW_MANUAL_WHEN_PAUSED      (optional)
    - WORKFLOW_CONCURRENCY_POLICY            (optional)
    - WORKFLOW_ALLOWED_COMMANDS              (optional)
    """

    log_level: str = Field(
        default="INFO",
        description="Root logging level",
    )

    state_path: Path = Field(
        default=Path("workflow_state"),
        description="Directory where workflow and execution records are persisted",
    )

    retry_max_attempts: int = Field(
        default=3,
        ge=1,
        le=20,
        description="Total attempts (including the first) for an action that fails transiently",
    )
    retry_initial_delay_seconds: float = Field(
        default=0.5,
        ge=0,
        description="Backoff before the second attempt",
    )
    retry_backoff_multiplier: float = Field(
        default=2.0,
        ge=1.0,
        description="Factor applied to the backoff after every failed attempt",
    )
    retry_max_delay_seconds: float = Field(
        default=30.0,
        ge=0,
        description="Upper bound for a single backoff wait",
    )
    retry_jitter_seconds: float = Field(
        default=0.0,
        ge=0,
        description="Random extra delay (0..N seconds) added to every backoff wait",
    )

    allow_manual_when_paused: bool = Field(
        default=True,
        description=(
            "If true, operators may still run a paused workflow by hand. "
            "Trigger-sourced executions of paused workflows are always rejected."
        ),
    )

    concurrency_policy: Literal["allow", "forbid"] = Field(
        default="allow",
        description=(
            "'allow' lets several executions of one workflow overlap; 'forbid' rejects a new "
            "execution while another one of the same workflow is pending or running."
        ),
    )
    max_concurrent_executions: int = Field(
        default=8,
        ge=1,
        description="Maximum number of executions whose steps run at the same time",
    )

    scheduler_interval_seconds: float = Field(
        default=30.0,
        gt=0,
        description="Polling interval (seconds) for scheduled triggers.",
    )

    allowed_commands: str = Field(
        default="",
        description="Comma-separated allow-list of command names for run_command (empty = any).",
    )
    command_timeout_seconds: float = Field(
        default=300.0,
        gt=0,
        description="Default timeout for external commands without an explicit timeout.",
    )

    model_config = SettingsConfigDict(
        env_prefix="WORKFLOW_",
        env_file=".env",
        extra="ignore",
    )

    def parsed_allowed_commands(self) -> list[str]:
        return [c.strip() for c in self.allowed_commands.split(",") if c.strip()]

    @property
    def workflows_state_file(self) -> Path:
        """Path where workflow definitions are persisted."""

        return self.state_path / "workflows.json"

    @property
    def executions_state_file(self) -> Path:
        """Path where execution records are persisted."""

        return self.state_path / "executions.json"
