"""Task service -- id-based operations over the task and step state machines.

The service is the single entry point the orchestrator and the HTTP layer use
to drive tasks.  It loads records from the injected
:class:`~agent_tasks.core.task.repository.TaskRepository`, applies a
transition from :mod:`~agent_tasks.core.task.lifecycle` or
:mod:`~agent_tasks.core.task.steps`, and saves the result.

Every mutating call runs inside the repository's per-task lock, so
read-modify-write sequences such as merging gathered info, or finding and
starting the next pending step, never interleave for the same task.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping, Sequence
from typing import Any

from agent_tasks.core.task import lifecycle, steps as step_machine
from agent_tasks.core.task.models import (
    PlanStep,
    ProgressSummary,
    StepSpec,
    StepStatus,
    StepStatusCounts,
    Task,
    TaskPhase,
    TaskStatus,
    TaskStep,
    TaskWithSteps,
)
from agent_tasks.core.task.repository import TaskRepository
from agent_tasks.utils.exceptions import (
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from agent_tasks.utils.logging import get_logger


class TaskService:
    """Drive tasks and their steps through the lifecycle.

    Parameters
    ----------
    repository:
        Persistence collaborator holding tasks and steps.
    enforce_single_active_task:
        When ``True``, :meth:`create_task` refuses to create a second pending
        or in-progress task for the same ``(session_id, task_type)``.
    """

    def __init__(
        self,
        repository: TaskRepository,
        enforce_single_active_task: bool = True,
    ) -> None:
        self.repository = repository
        self.enforce_single_active_task = enforce_single_active_task
        self.logger = get_logger("services.task")

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _load_task(self, task_id: str) -> Task:
        task = await self.repository.get_task(task_id)
        if task is None:
            raise NotFoundError("Task", task_id)
        return task

    async def _load_step(self, step_id: str) -> TaskStep:
        step = await self.repository.get_step(step_id)
        if step is None:
            raise NotFoundError("TaskStep", step_id)
        return step

    async def _ensure_task_active(self, task_id: str, action: str) -> Task:
        task = await self._load_task(task_id)
        if task.is_terminal:
            raise InvalidTransitionError("task", task.status.value, action)
        return task

    async def _update_task(self, task_id: str, mutate: Callable[[Task], Any]) -> Task:
        async with self.repository.lock(task_id):
            task = await self._load_task(task_id)
            mutate(task)
            return await self.repository.save_task(task)

    @staticmethod
    def _creation_key(session_id: str, task_type: str) -> str:
        return f"session:{session_id}:{task_type}"

    # ------------------------------------------------------------------
    # Task creation and lookup
    # ------------------------------------------------------------------

    async def create_task(self, session_id: str, task_type: str) -> Task:
        """Create a pending task in the clarification phase.

        Raises :class:`ConflictError` if single-active enforcement is on and
        the session already has an active task of this type.  The lookup and
        the insert happen under one lock, so two concurrent calls cannot both
        succeed.
        """
        task = lifecycle.new_task(session_id, task_type)
        async with self.repository.lock(self._creation_key(task.session_id, task.task_type)):
            if self.enforce_single_active_task:
                existing = await self.repository.find_active_task(task.session_id, task.task_type)
                if existing is not None:
                    raise ConflictError(
                        f"Session {task.session_id} already has an active "
                        f"'{task.task_type}' task: {existing.id}"
                    )
            stored = await self.repository.add_task(task)

        self.logger.info(
            "task_created",
            task_id=stored.id,
            session_id=stored.session_id,
            task_type=stored.task_type,
        )
        return stored

    async def get_or_create_task(self, session_id: str, task_type: str) -> Task:
        """Return the session's active task of *task_type*, creating one if needed."""
        task = lifecycle.new_task(session_id, task_type)
        async with self.repository.lock(self._creation_key(task.session_id, task.task_type)):
            existing = await self.repository.find_active_task(task.session_id, task.task_type)
            if existing is not None:
                self.logger.debug("task_found", task_id=existing.id, session_id=session_id)
                return existing
            stored = await self.repository.add_task(task)

        self.logger.info(
            "task_created",
            task_id=stored.id,
            session_id=stored.session_id,
            task_type=stored.task_type,
        )
        return stored

    async def get_task(self, task_id: str) -> Task:
        return await self._load_task(task_id)

    async def get_task_with_details(self, task_id: str) -> TaskWithSteps:
        task = await self._load_task(task_id)
        return TaskWithSteps(task=task, steps=await self.repository.list_steps(task_id))

    async def list_session_tasks(self, session_id: str) -> list[Task]:
        """All tasks of a session, newest first."""
        return await self.repository.list_tasks_by_session(session_id)

    async def get_active_task(self, session_id: str, task_type: str | None = None) -> Task | None:
        return await self.repository.find_active_task(session_id, task_type)

    # ------------------------------------------------------------------
    # Task transitions
    # ------------------------------------------------------------------

    async def start_task(self, task_id: str) -> Task:
        task = await self._update_task(task_id, lifecycle.start_task)
        self.logger.info("task_started", task_id=task_id)
        return task

    async def advance_phase(self, task_id: str, phase: TaskPhase | str) -> Task:
        task = await self._update_task(task_id, lambda t: lifecycle.advance_phase(t, phase))
        self.logger.info("task_phase_changed", task_id=task_id, phase=task.phase.value)
        return task

    async def merge_gathered_info(self, task_id: str, partial: Mapping[str, Any]) -> Task:
        task = await self._update_task(
            task_id, lambda t: lifecycle.merge_gathered_info(t, partial)
        )
        self.logger.debug("gathered_info_merged", task_id=task_id, keys=sorted(partial))
        return task

    async def replace_gathered_info(self, task_id: str, full: Mapping[str, Any]) -> Task:
        task = await self._update_task(
            task_id, lambda t: lifecycle.replace_gathered_info(t, full)
        )
        self.logger.debug("gathered_info_replaced", task_id=task_id, keys=sorted(full))
        return task

    async def set_execution_plan(
        self,
        task_id: str,
        plan: Sequence[PlanStep | Mapping[str, Any]],
    ) -> Task:
        """Store the plan; an empty plan completes the task immediately."""
        async with self.repository.lock(task_id):
            task = await self._load_task(task_id)
            existing_steps = await self.repository.list_steps(task_id)
            lifecycle.set_execution_plan(task, plan, steps_exist=bool(existing_steps))
            task = await self.repository.save_task(task)

        self.logger.info(
            "execution_plan_set",
            task_id=task_id,
            steps=len(task.execution_plan or []),
            status=task.status.value,
        )
        return task

    async def update_progress(self, task_id: str, value: float) -> Task:
        return await self._update_task(task_id, lambda t: lifecycle.update_progress(t, value))

    async def update_progress_from_steps(self, task_id: str) -> Task:
        """Raise progress to the share of completed steps; never lowers it."""
        async with self.repository.lock(task_id):
            task = await self._load_task(task_id)
            counts = step_machine.status_counts(await self.repository.list_steps(task_id))
            lifecycle.update_progress(
                task, max(task.progress, step_machine.progress_from_counts(counts))
            )
            return await self.repository.save_task(task)

    async def complete_task(self, task_id: str, result: Any = None) -> Task:
        """Complete the task, optionally recording *result* in gathered info.

        Refused while any step is unfinished or failed.  Completing an already
        completed task returns it unchanged.
        """
        async with self.repository.lock(task_id):
            task = await self._load_task(task_id)
            if task.status == TaskStatus.COMPLETED:
                return task

            counts = step_machine.status_counts(await self.repository.list_steps(task_id))
            if not step_machine.can_complete(counts):
                raise InvalidTransitionError(
                    "task with unfinished or failed steps", task.status.value, "complete"
                )

            if result is not None:
                lifecycle.merge_gathered_info(task, {"result": result})
            lifecycle.complete_task(task)
            task = await self.repository.save_task(task)

        self.logger.info("task_completed", task_id=task_id, steps=counts.total)
        return task

    async def fail_task(self, task_id: str, error_message: str | None = None) -> Task:
        """Fail the task, keeping gathered info and adding ``error``.  Idempotent.

        Steps still running are failed with the same message, since their
        outcome can no longer be recorded against the task.
        """
        async with self.repository.lock(task_id):
            task = await self._load_task(task_id)
            if task.status == TaskStatus.FAILED:
                return task
            lifecycle.fail_task(task, error_message)
            task = await self.repository.save_task(task)

            error = task.gathered_info["error"]
            running = await self.repository.list_steps(task_id, status=StepStatus.IN_PROGRESS)
            for step in running:
                step_machine.fail_step(step, error)
                await self.repository.save_step(step)

        self.logger.warning(
            "task_failed", task_id=task_id, error=error, interrupted_steps=len(running)
        )
        return task

    async def persist_state(
        self,
        task_id: str,
        phase: TaskPhase | str,
        gathered_info: Mapping[str, Any] | None = None,
        execution_plan: Sequence[PlanStep | Mapping[str, Any]] | None = None,
        progress: float | None = None,
    ) -> Task:
        """Apply a phase change plus optional merge, plan and progress as one unit."""
        async with self.repository.lock(task_id):
            task = await self._load_task(task_id)
            lifecycle.advance_phase(task, phase)
            if gathered_info:
                lifecycle.merge_gathered_info(task, gathered_info)
            if execution_plan is not None:
                existing_steps = await self.repository.list_steps(task_id)
                lifecycle.set_execution_plan(task, execution_plan, steps_exist=bool(existing_steps))
            if progress is not None and not task.is_terminal:
                lifecycle.update_progress(task, progress)
            task = await self.repository.save_task(task)

        self.logger.debug("task_state_persisted", task_id=task_id, phase=task.phase.value)
        return task

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    async def create_step(
        self,
        task_id: str,
        step_name: str,
        sequence_number: int,
        input_data: Mapping[str, Any] | None = None,
    ) -> TaskStep:
        step = step_machine.new_step(task_id, step_name, sequence_number, input_data)
        async with self.repository.lock(task_id):
            task = await self._load_task(task_id)
            if task.is_terminal:
                raise InvalidTransitionError("task", task.status.value, "add steps to")
            await self.repository.add_steps(task_id, [step])

        self.logger.debug(
            "step_created", task_id=task_id, step_id=step.id, sequence=sequence_number
        )
        return step

    async def create_steps(
        self,
        task_id: str,
        specs: Sequence[StepSpec | Mapping[str, Any]],
    ) -> int:
        """Create a batch of steps all-or-nothing; returns how many were created."""
        parsed = [s if isinstance(s, StepSpec) else StepSpec.model_validate(s) for s in specs]
        new_steps = [
            step_machine.new_step(task_id, s.step_name, s.sequence_number, s.input_data)
            for s in parsed
        ]
        async with self.repository.lock(task_id):
            task = await self._load_task(task_id)
            if task.is_terminal:
                raise InvalidTransitionError("task", task.status.value, "add steps to")
            count = await self.repository.add_steps(task_id, new_steps)

        self.logger.info("steps_created", task_id=task_id, count=count)
        return count

    async def create_steps_from_plan(self, task_id: str) -> int:
        """Materialise the task's execution plan as steps numbered from 1."""
        async with self.repository.lock(task_id):
            task = await self._load_task(task_id)
            if task.is_terminal:
                raise InvalidTransitionError("task", task.status.value, "add steps to")
            if task.execution_plan is None:
                raise ValidationError(f"Task {task_id} has no execution plan")
            new_steps = step_machine.steps_from_plan(task_id, task.execution_plan)
            count = await self.repository.add_steps(task_id, new_steps)

        self.logger.info("steps_created_from_plan", task_id=task_id, count=count)
        return count

    async def start_step(self, step_id: str) -> TaskStep:
        step = await self._load_step(step_id)
        async with self.repository.lock(step.task_id):
            await self._ensure_task_active(step.task_id, "start a step of")
            step = await self._load_step(step_id)
            step_machine.start_step(step)
            step = await self.repository.save_step(step)

        self.logger.info(
            "step_started", task_id=step.task_id, step_id=step.id, sequence=step.sequence_number
        )
        return step

    async def complete_step(
        self, step_id: str, output_data: Mapping[str, Any] | None = None
    ) -> TaskStep:
        step = await self._load_step(step_id)
        async with self.repository.lock(step.task_id):
            await self._ensure_task_active(step.task_id, "complete a step of")
            step = await self._load_step(step_id)
            step_machine.complete_step(step, output_data)
            step = await self.repository.save_step(step)

        self.logger.info(
            "step_completed", task_id=step.task_id, step_id=step.id, sequence=step.sequence_number
        )
        return step

    async def fail_step(self, step_id: str, error_message: str) -> TaskStep:
        step = await self._load_step(step_id)
        async with self.repository.lock(step.task_id):
            await self._ensure_task_active(step.task_id, "fail a step of")
            step = await self._load_step(step_id)
            step_machine.fail_step(step, error_message)
            step = await self.repository.save_step(step)

        self.logger.warning(
            "step_failed",
            task_id=step.task_id,
            step_id=step.id,
            sequence=step.sequence_number,
            error=error_message,
        )
        return step

    async def get_step(self, step_id: str) -> TaskStep:
        return await self._load_step(step_id)

    async def list_steps(self, task_id: str) -> list[TaskStep]:
        await self._load_task(task_id)
        return await self.repository.list_steps(task_id)

    async def find_next_pending(self, task_id: str) -> TaskStep | None:
        """The pending step with the lowest sequence number, or ``None``."""
        await self._load_task(task_id)
        return step_machine.find_next_pending(await self.repository.list_steps(task_id))

    async def claim_next_step(self, task_id: str) -> TaskStep | None:
        """Find the next pending step and start it in one serialised unit.

        Two workers calling this for the same task never receive the same step.
        """
        async with self.repository.lock(task_id):
            task = await self._load_task(task_id)
            if task.is_terminal:
                raise InvalidTransitionError("task", task.status.value, "claim a step of")
            step = step_machine.find_next_pending(await self.repository.list_steps(task_id))
            if step is None:
                return None
            step_machine.start_step(step)
            step = await self.repository.save_step(step)

        self.logger.info(
            "step_claimed", task_id=task_id, step_id=step.id, sequence=step.sequence_number
        )
        return step

    async def status_counts(self, task_id: str) -> StepStatusCounts:
        await self._load_task(task_id)
        return step_machine.status_counts(await self.repository.list_steps(task_id))

    async def get_progress_summary(self, task_id: str) -> ProgressSummary:
        task = await self._load_task(task_id)
        counts = step_machine.status_counts(await self.repository.list_steps(task_id))
        return ProgressSummary(
            task_id=task.id,
            status=task.status,
            phase=task.phase,
            progress=task.progress,
            completed_steps=counts.completed,
            total_steps=counts.total,
            is_complete=task.status == TaskStatus.COMPLETED,
        )

    async def reset_steps(self, task_id: str) -> int:
        """Delete every step of the task as one unit; returns how many were removed."""
        async with self.repository.lock(task_id):
            await self._load_task(task_id)
            removed = await self.repository.delete_steps(task_id)

        self.logger.info("steps_reset", task_id=task_id, removed=removed)
        return removed
