"""Task orchestrator -- drives a task's steps to a terminal state.

The :class:`TaskOrchestrator` runs the execution loop for one task:

1. Starts the task and moves it into the execution phase.
2. Materialises steps from the execution plan when none exist yet.
3. Repeatedly claims the lowest pending step, executes it through the
   :class:`StepExecutor`, and records completion or failure.
4. Folds step output back into the task: ``gathered_info`` mappings are
   merged and progress follows the share of completed steps.
5. Completes the task when no pending step is left and none failed, or fails
   it otherwise.

A task abandoned while a step runs stops the loop without recording that
step's outcome.  A run interrupted by an error or by cancellation fails the
step it had claimed before the exception propagates.

Each iteration retires exactly one pending step, so the loop always ends.
"""

from __future__ import annotations

from pydantic import BaseModel

from agent_tasks.core.task.models import (
    StepStatus,
    StepStatusCounts,
    Task,
    TaskPhase,
    TaskStatus,
    TaskStep,
)
from agent_tasks.core.task.steps import can_complete, should_fail
from agent_tasks.engine.executor import StepExecutor, StepOutcome
from agent_tasks.services.task_service import TaskService
from agent_tasks.utils.exceptions import ConflictError, InvalidTransitionError, TaskEngineError
from agent_tasks.utils.logging import get_logger

ABANDONED_MESSAGE = "Task abandoned"


class RunResult(BaseModel):
    """Result of driving a task through :meth:`TaskOrchestrator.run`.

    Attributes:
        task: The task as it was left by the run.
        counts: Step status counts at the end of the run.
        outcomes: Outcomes of the steps executed by this run, in order.
    """

    task: Task
    counts: StepStatusCounts
    outcomes: list[StepOutcome] = []

    @property
    def success(self) -> bool:
        return self.task.status == TaskStatus.COMPLETED


class TaskOrchestrator:
    """Top-level driver for executing a task's steps.

    Parameters
    ----------
    service:
        The :class:`TaskService` holding task and step state.
    executor:
        The :class:`StepExecutor` running each step's handler.
    stop_on_failure:
        When ``True`` the task fails as soon as one step fails and later
        steps stay pending.  When ``False`` the remaining steps still run and
        the task fails once none is pending.
    """

    def __init__(
        self,
        service: TaskService,
        executor: StepExecutor,
        stop_on_failure: bool = True,
    ) -> None:
        self.service = service
        self.executor = executor
        self.stop_on_failure = stop_on_failure
        self._running: set[str] = set()
        self.logger = get_logger("engine.orchestrator")

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def run(self, task_id: str) -> RunResult:
        """Execute every pending step of *task_id* in sequence order.

        Only one run per task may be in flight; a second concurrent call
        raises :class:`ConflictError`.  Running a task that is already
        terminal returns its current state without executing anything.
        """
        if task_id in self._running:
            raise ConflictError(f"Task {task_id} is already being executed")

        self._running.add(task_id)
        try:
            return await self._run(task_id)
        finally:
            self._running.discard(task_id)

    async def abandon(self, task_id: str, reason: str = ABANDONED_MESSAGE) -> Task:
        """Stop tracking *task_id* as live work by failing it with *reason*."""
        self.logger.info("task_abandoned", task_id=task_id, reason=reason)
        return await self.service.fail_task(task_id, reason)

    def is_running(self, task_id: str) -> bool:
        return task_id in self._running

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _run(self, task_id: str) -> RunResult:
        task = await self.service.get_task(task_id)
        if task.is_terminal:
            self.logger.info("run_skipped_terminal", task_id=task_id, status=task.status.value)
            return RunResult(task=task, counts=await self.service.status_counts(task_id))

        task = await self.service.start_task(task_id)
        if task.phase != TaskPhase.EXECUTION:
            task = await self.service.advance_phase(task_id, TaskPhase.EXECUTION)

        if not await self.service.list_steps(task_id) and task.execution_plan:
            await self.service.create_steps_from_plan(task_id)

        self.logger.info(
            "run_start",
            task_id=task_id,
            steps=(await self.service.status_counts(task_id)).total,
        )

        # A step failed by an earlier, interrupted run.
        if self.stop_on_failure and should_fail(await self.service.status_counts(task_id)):
            return await self._finish(task_id, [])

        outcomes: list[StepOutcome] = []
        while True:
            step = await self.service.claim_next_step(task_id)
            if step is None:
                break

            try:
                outcome = await self._execute_and_record(task_id, step)
            except BaseException as exc:
                # Covers cancellation too; a claimed step must not stay in_progress.
                await self._release_step(step, exc)
                raise

            if outcome is None:
                return await self._stopped(task_id, outcomes)
            outcomes.append(outcome)
            if not outcome.success and self.stop_on_failure:
                break

        return await self._finish(task_id, outcomes)

    async def _execute_and_record(self, task_id: str, step: TaskStep) -> StepOutcome | None:
        """Run *step* and record its outcome.

        Returns ``None`` when the task was made terminal by someone else
        (e.g. :meth:`abandon`) while the step ran; the outcome is then dropped.
        """
        task = await self.service.get_task(task_id)
        outcome = await self.executor.execute_step(step, task.gathered_info)

        if (await self.service.get_task(task_id)).is_terminal:
            return None

        try:
            if outcome.success:
                await self.service.complete_step(step.id, outcome.output)
                gathered = outcome.output.get("gathered_info")
                if isinstance(gathered, dict) and gathered:
                    await self.service.merge_gathered_info(task_id, gathered)
                await self.service.update_progress_from_steps(task_id)
            else:
                await self.service.fail_step(step.id, outcome.error)
        except InvalidTransitionError:
            if (await self.service.get_task(task_id)).is_terminal:
                return None
            raise
        return outcome

    async def _release_step(self, step: TaskStep, exc: BaseException) -> None:
        error = f"Step interrupted: {type(exc).__name__}"
        try:
            current = await self.service.get_step(step.id)
            if current.status == StepStatus.IN_PROGRESS:
                await self.service.fail_step(step.id, error)
        except TaskEngineError as release_error:
            self.logger.error(
                "step_release_failed",
                task_id=step.task_id,
                step_id=step.id,
                error=str(release_error),
            )
            return
        self.logger.warning(
            "run_interrupted", task_id=step.task_id, step_id=step.id, error=error
        )

    async def _stopped(self, task_id: str, outcomes: list[StepOutcome]) -> RunResult:
        task = await self.service.get_task(task_id)
        counts = await self.service.status_counts(task_id)
        self.logger.info("run_stopped_task_terminal", task_id=task_id, status=task.status.value)
        return RunResult(task=task, counts=counts, outcomes=outcomes)

    async def _finish(self, task_id: str, outcomes: list[StepOutcome]) -> RunResult:
        counts = await self.service.status_counts(task_id)

        if should_fail(counts):
            task = await self.service.fail_task(task_id, await self._failure_message(task_id))
        elif can_complete(counts):
            task = await self.service.complete_task(task_id)
        else:
            task = await self.service.get_task(task_id)

        self.logger.info(
            "run_complete",
            task_id=task_id,
            status=task.status.value,
            completed=counts.completed,
            failed=counts.failed,
            pending=counts.pending,
        )
        return RunResult(task=task, counts=counts, outcomes=outcomes)

    async def _failure_message(self, task_id: str) -> str:
        for step in await self.service.list_steps(task_id):
            if step.status == StepStatus.FAILED:
                error = (step.output_data or {}).get("error", "unknown error")
                return f"Step {step.sequence_number} ({step.step_name}) failed: {error}"
        return "Step failed"
