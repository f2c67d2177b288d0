"""Step executor -- resolves a handler for a started step and runs it.

The :class:`StepExecutor` is the bridge between the lifecycle engine and the
handler registry.  For every started :class:`TaskStep` it:

1. Resolves the handler by tool name or step name.
2. Runs :meth:`BaseStepHandler.execute` under a timeout.
3. Returns a :class:`StepOutcome` summarising the result.

It never changes step state itself; recording the outcome is the
orchestrator's job.
"""

from __future__ import annotations

import asyncio
import time
import traceback
from typing import Any

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from agent_tasks.core.task.models import JsonMapping, TaskStep
from agent_tasks.handlers.registry import StepHandlerRegistry
from agent_tasks.utils.exceptions import HandlerNotFoundError
from agent_tasks.utils.logging import get_logger


class StepOutcome(BaseModel):
    """Outcome of executing a single :class:`TaskStep`.

    Attributes:
        step_id: The executed step's identifier.
        sequence_number: Position of the step within its task.
        success: Whether the handler returned normally.
        output: The handler's output mapping on success.
        error: Human-readable error message on failure.
        duration_seconds: Wall-clock time taken to execute.
    """

    step_id: str
    sequence_number: int
    success: bool = False
    output: JsonMapping = {}
    error: str = ""
    duration_seconds: float = 0.0


class StepExecutor:
    """Execute individual steps by delegating to the handler registry.

    Parameters
    ----------
    registry:
        The :class:`StepHandlerRegistry` from which handlers are resolved.
    timeout_seconds:
        Upper bound on a single handler call; ``None`` disables the limit.
    context:
        Extra context forwarded to every ``handler.execute()`` call.
    """

    def __init__(
        self,
        registry: StepHandlerRegistry,
        timeout_seconds: float | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        self.registry = registry
        self.timeout_seconds = timeout_seconds
        self.context = context or {}
        self.logger = get_logger("engine.executor")

    async def execute_step(
        self,
        step: TaskStep,
        gathered_info: dict[str, Any] | None = None,
    ) -> StepOutcome:
        """Run the handler for *step* and report the outcome.

        Handler errors and timeouts are returned inside the
        :class:`StepOutcome` rather than propagated.
        """
        start = time.monotonic()
        self.logger.info(
            "step_execute_start", task_id=step.task_id, step_id=step.id, step_name=step.step_name
        )

        try:
            handler = self.registry.resolve(step)
        except HandlerNotFoundError as exc:
            return self._fail(step, str(exc), start)

        context = {
            **self.context,
            "task_id": step.task_id,
            "step_id": step.id,
            "step_name": step.step_name,
            "sequence_number": step.sequence_number,
            "gathered_info": dict(gathered_info or {}),
        }

        try:
            output = await asyncio.wait_for(
                handler.execute(dict(step.input_data), context),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError:
            return self._fail(
                step, f"Step '{step.step_name}' timed out after {self.timeout_seconds}s", start
            )
        except Exception as exc:
            self.logger.error(
                "step_handler_error",
                task_id=step.task_id,
                step_id=step.id,
                error=str(exc),
                traceback=traceback.format_exc(),
            )
            return self._fail(step, str(exc) or type(exc).__name__, start)

        if not isinstance(output, dict):
            return self._fail(
                step,
                f"Handler '{handler.name}' returned {type(output).__name__}, expected a mapping",
                start,
            )

        duration = round(time.monotonic() - start, 4)
        try:
            outcome = StepOutcome(
                step_id=step.id,
                sequence_number=step.sequence_number,
                success=True,
                output=output,
                duration_seconds=duration,
            )
        except PydanticValidationError as exc:
            return self._fail(
                step, f"Handler '{handler.name}' returned non-JSON output: {exc}", start
            )

        self.logger.info(
            "step_execute_complete", task_id=step.task_id, step_id=step.id, duration=duration
        )
        return outcome

    def _fail(self, step: TaskStep, error_msg: str, start: float) -> StepOutcome:
        duration = round(time.monotonic() - start, 4)
        self.logger.warning(
            "step_execute_failed",
            task_id=step.task_id,
            step_id=step.id,
            error=error_msg,
            duration=duration,
        )
        return StepOutcome(
            step_id=step.id,
            sequence_number=step.sequence_number,
            success=False,
            error=error_msg,
            duration_seconds=duration,
        )
