"""Retry policy for transient action failures.

The engine retries only `TransientError`. The wait before attempt `n + 1` is
`initial_delay * multiplier ** (n - 1)`, capped at `max_delay`, plus a random
spread of up to `jitter_seconds`.
"""

from __future__ import annotations

import random
from dataclasses import dataclass, replace

from ops_workflow_engine.core.config import EngineSettings
from ops_workflow_engine.engine.models import RetryOverride


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Bounded retry with exponential backoff for transient action failures."""

    max_attempts: int = 3
    initial_delay_seconds: float = 0.5
    backoff_multiplier: float = 2.0
    max_delay_seconds: float = 30.0
    jitter_seconds: float = 0.0

    @classmethod
    def from_settings(cls, settings: EngineSettings) -> RetryPolicy:
        return cls(
            max_attempts=settings.retry_max_attempts,
            initial_delay_seconds=settings.retry_initial_delay_seconds,
            backoff_multiplier=settings.retry_backoff_multiplier,
            max_delay_seconds=settings.retry_max_delay_seconds,
            jitter_seconds=settings.retry_jitter_seconds,
        )

    def merged(self, override: RetryOverride | None) -> RetryPolicy:
        if override is None:
            return self
        updates = {
            k: v for k, v in override.model_dump().items() if v is not None
        }
        return replace(self, **updates)

    def compute_backoff(self, attempt: int) -> float:
        """Delay after the `attempt`-th failed attempt (1-based), with jitter."""

        delay = self.initial_delay_seconds * self.backoff_multiplier ** (attempt - 1)
        delay = min(delay, self.max_delay_seconds)
        if self.jitter_seconds:
            delay += random.uniform(0, self.jitter_seconds)
        return delay
