"""FastAPI server adapter for ops-workflow-engine.

Routes are thin calls into `ops_workflow_engine.engine.*`; HTTP status mapping
for engine errors lives here.
"""

from __future__ import annotations

__all__ = ["create_app"]

from ops_workflow_engine.server.app import create_app
