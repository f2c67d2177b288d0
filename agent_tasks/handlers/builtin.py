"""Handlers that ship with the engine."""

from typing import Any

from agent_tasks.handlers.base import BaseStepHandler


class EchoHandler(BaseStepHandler):
    """Return the step's tool arguments unchanged.

    Useful for dry runs of a plan and for exercising the orchestration loop.
    """

    description = "Echo the step's tool_args back as its output"

    @property
    def name(self) -> str:
        return "echo"

    async def execute(self, input_data: dict[str, Any], context: dict[str, Any]) -> dict[str, Any]:
        return {"echo": input_data.get("tool_args", {}), "step_name": context.get("step_name")}
