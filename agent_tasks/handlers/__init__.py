"""Step handlers -- the business logic that runs inside a started step."""

from agent_tasks.handlers.base import BaseStepHandler
from agent_tasks.handlers.builtin import EchoHandler
from agent_tasks.handlers.registry import StepHandlerRegistry

__all__ = [
    "BaseStepHandler",
    "EchoHandler",
    "StepHandlerRegistry",
]
