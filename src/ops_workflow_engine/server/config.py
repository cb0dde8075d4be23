"""Configuration for the REST server."""

from __future__ import annotations

from pydantic import Field
from pydantic_settings import SettingsConfigDict

from ops_workflow_engine.core.config import EngineSettings


class ServerSettings(EngineSettings):
    """Engine settings plus the HTTP-only knobs.

    Environment variables:
    - WORKFLOW_CORS_ORIGINS       (optional)
    - WORKFLOW_SCHEDULER_ENABLED  (optional)
    """

    # Dev-friendly CORS. Override via WORKFLOW_CORS_ORIGINS=...
    cors_origins: str = Field(
        default="http://localhost:5173,http://127.0.0.1:5173",
        description="Comma-separated list of allowed CORS origins.",
    )

    scheduler_enabled: bool = Field(
        default=True,
        description="If true, the server polls scheduled triggers in a background thread.",
    )

    model_config = SettingsConfigDict(env_prefix="WORKFLOW_", env_file=".env", extra="ignore")

    def parsed_cors_origins(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]
