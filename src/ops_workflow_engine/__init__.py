"""Ops Workflow Engine.

Runs operational workflows: ordered sequences of typed actions started by a
manual call, a cron schedule or a named event, with every run recorded as an
inspectable execution.
"""

__version__ = "0.1.0"

from ops_workflow_engine.core.config import EngineSettings

__all__ = ["__version__", "EngineSettings"]
