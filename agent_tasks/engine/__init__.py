"""Execution engine -- runs step handlers and drives tasks to completion.

Public API::

    from agent_tasks.engine import (
        RunResult,
        StepExecutor,
        StepOutcome,
        TaskOrchestrator,
    )
"""

from agent_tasks.engine.executor import StepExecutor, StepOutcome
from agent_tasks.engine.orchestrator import RunResult, TaskOrchestrator

__all__ = [
    "RunResult",
    "StepExecutor",
    "StepOutcome",
    "TaskOrchestrator",
]
