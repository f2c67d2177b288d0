"""Central registry that stores and looks up step handlers."""

from __future__ import annotations

from agent_tasks.core.task.models import TaskStep
from agent_tasks.handlers.base import BaseStepHandler
from agent_tasks.utils.exceptions import HandlerNotFoundError
from agent_tasks.utils.logging import get_logger

logger = get_logger(__name__)


class StepHandlerRegistry:
    """Registry of the handlers available to the orchestrator.

    Typical lifecycle::

        registry = StepHandlerRegistry()
        registry.register(EchoHandler())
        handler = registry.resolve(step)
        output = await handler.execute(step.input_data, context)
    """

    def __init__(self) -> None:
        self._handlers: dict[str, BaseStepHandler] = {}

    def register(self, handler: BaseStepHandler) -> None:
        """Add *handler* keyed by its name.

        A handler registered under an existing name replaces the old one.
        """
        name = handler.name
        if name in self._handlers:
            logger.warning("handler_overwritten", handler_name=name)
        self._handlers[name] = handler
        logger.debug("handler_registered", handler_name=name)

    def get(self, name: str) -> BaseStepHandler:
        """Return the handler registered under *name*.

        Raises :class:`HandlerNotFoundError` if no such handler exists.
        """
        handler = self._handlers.get(name)
        if handler is None:
            raise HandlerNotFoundError(name)
        return handler

    def resolve(self, step: TaskStep) -> BaseStepHandler:
        """Find the handler for *step*: ``input_data["tool_name"]`` first, then the step name."""
        tool_name = step.input_data.get("tool_name")
        if not isinstance(tool_name, str) or not tool_name:
            tool_name = None

        if tool_name in self._handlers:
            return self._handlers[tool_name]
        if step.step_name in self._handlers:
            return self._handlers[step.step_name]
        raise HandlerNotFoundError(tool_name or step.step_name)

    def list_all(self) -> list[str]:
        return sorted(self._handlers)

    def __len__(self) -> int:
        return len(self._handlers)

    def __contains__(self, name: str) -> bool:
        return name in self._handlers
