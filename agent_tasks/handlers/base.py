"""Abstract base class for step handlers.

A handler supplies the business logic that runs inside a started step.  The
lifecycle engine has no opinion on what it does; it only needs an output
mapping on success or an exception on failure.
"""

from abc import ABC, abstractmethod
from typing import Any


class BaseStepHandler(ABC):
    """Base class that every step handler must inherit from.

    Handlers are registered under :attr:`name` and resolved for a step by its
    ``input_data["tool_name"]`` (falling back to the step name).
    """

    description: str = ""

    @property
    @abstractmethod
    def name(self) -> str:
        """Return the name steps use to address this handler."""
        ...

    @abstractmethod
    async def execute(self, input_data: dict[str, Any], context: dict[str, Any]) -> dict[str, Any]:
        """Run the step and return its output mapping.

        Parameters
        ----------
        input_data:
            The step's immutable ``input_data``.
        context:
            Execution context: ``task_id``, ``step_id``, ``sequence_number``,
            ``step_name`` and the task's current ``gathered_info``.

        Raise any exception to fail the step; its message becomes the step's
        ``error``.  An output containing a ``gathered_info`` mapping is merged
        into the owning task's gathered info.
        """
        ...
