"""Workflow execution engine.

- `store`: workflow and execution records
- `triggers`: schedule and event triggers
- `dispatcher`: performs one action and classifies its outcome
- `execution`: the execution state machine
- `workflows`: workflow lifecycle operations
"""

__all__: list[str] = []
