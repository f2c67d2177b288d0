"""Task state machine.

Status moves ``pending -> in_progress -> {completed, failed}``; a pending task
may also go straight to a terminal status.  The phase advances independently
through clarification, planning and execution while the task is active and
only reaches ``complete``/``error`` together with the terminal status write,
so ``phase == complete`` always implies ``status == completed`` and
``phase == error`` implies ``status == failed``.

Every function here mutates the given :class:`Task` in place and returns it.
Persisting the result, and serialising concurrent writers of the same task,
is the caller's job (see :class:`~agent_tasks.services.task_service.TaskService`).
"""

from __future__ import annotations

import math
from collections.abc import Mapping, Sequence
from typing import Any

from agent_tasks.core.task.models import PlanStep, Task, TaskPhase, TaskStatus, utc_now
from agent_tasks.utils.exceptions import InvalidTransitionError, ValidationError

DEFAULT_FAILURE_MESSAGE = "Task failed"

_PLANNABLE_PHASES = (TaskPhase.PLANNING, TaskPhase.EXECUTION)


def new_task(session_id: str, task_type: str) -> Task:
    """Build a fresh task in ``pending`` / ``clarification`` with zero progress."""
    if not session_id or not session_id.strip():
        raise ValidationError("session_id is required")
    if not task_type or not task_type.strip():
        raise ValidationError("task_type is required")
    return Task(session_id=session_id.strip(), task_type=task_type.strip())


def parse_phase(value: TaskPhase | str) -> TaskPhase:
    try:
        return TaskPhase(value)
    except ValueError:
        allowed = ", ".join(p.value for p in TaskPhase)
        raise ValidationError(f"Invalid phase '{value}'; expected one of: {allowed}") from None


def parse_status(value: TaskStatus | str) -> TaskStatus:
    try:
        return TaskStatus(value)
    except ValueError:
        allowed = ", ".join(s.value for s in TaskStatus)
        raise ValidationError(f"Invalid status '{value}'; expected one of: {allowed}") from None


def _ensure_active(task: Task, action: str) -> None:
    if task.status.is_terminal:
        raise InvalidTransitionError("task", task.status.value, action)


def start_task(task: Task) -> Task:
    """Move a pending task to ``in_progress``.  A running task is left as is."""
    _ensure_active(task, "start")
    if task.status == TaskStatus.PENDING:
        task.status = TaskStatus.IN_PROGRESS
    return task


def advance_phase(task: Task, phase: TaskPhase | str) -> Task:
    """Set the task's phase without touching its status.

    Phase ordering is the caller's concern.  The terminal phases are reserved
    for :func:`complete_task` and :func:`fail_task`.
    """
    new_phase = parse_phase(phase)
    _ensure_active(task, f"move phase to '{new_phase.value}' for")
    if new_phase.is_terminal:
        raise InvalidTransitionError(
            "task", task.status.value, f"set phase '{new_phase.value}' directly on"
        )
    task.phase = new_phase
    return task


def merge_gathered_info(task: Task, partial: Mapping[str, Any]) -> Task:
    """Shallow-union *partial* into ``gathered_info``; *partial* wins on conflicts."""
    _ensure_active(task, "merge gathered info into")
    task.gathered_info = {**task.gathered_info, **dict(partial)}
    return task


def replace_gathered_info(task: Task, full: Mapping[str, Any]) -> Task:
    _ensure_active(task, "replace gathered info of")
    task.gathered_info = dict(full)
    return task


def set_execution_plan(
    task: Task,
    plan: Sequence[PlanStep | Mapping[str, Any]],
    *,
    steps_exist: bool = False,
) -> Task:
    """Store the ordered execution plan.

    Only allowed during planning or execution and only until execution has
    begun, i.e. before any step exists for the task.  An empty plan leaves
    nothing to execute, so the task completes right away.
    """
    _ensure_active(task, "set the execution plan of")
    if task.phase not in _PLANNABLE_PHASES:
        raise InvalidTransitionError("task", task.phase.value, "set the execution plan of")
    if steps_exist:
        raise InvalidTransitionError("task with existing steps", task.status.value, "re-plan")

    entries = [p if isinstance(p, PlanStep) else PlanStep.model_validate(p) for p in plan]
    task.execution_plan = entries
    if not entries:
        complete_task(task)
    return task


def clamp_progress(value: float) -> int:
    value = float(value)
    if math.isnan(value):
        raise ValidationError("progress must be a number, got NaN")
    return int(round(max(0.0, min(100.0, value))))


def update_progress(task: Task, value: float) -> Task:
    """Write ``value`` clamped into ``[0, 100]``.

    Out-of-range input, including infinities, is clamped rather than rejected;
    NaN has no position on the scale and raises :class:`ValidationError`.
    """
    _ensure_active(task, "update progress of")
    task.progress = clamp_progress(value)
    return task


def complete_task(task: Task) -> Task:
    """Mark the task completed.  Calling it again on a completed task is a no-op."""
    if task.status == TaskStatus.COMPLETED:
        return task
    _ensure_active(task, "complete")
    task.status = TaskStatus.COMPLETED
    task.phase = TaskPhase.COMPLETE
    task.progress = 100
    task.completed_at = utc_now()
    return task


def fail_task(task: Task, error_message: str | None = None) -> Task:
    """Mark the task failed, recording ``error`` in ``gathered_info``.

    Previously gathered keys are kept.  Calling it again on a failed task is
    a no-op, so the first error message and ``completed_at`` survive.
    """
    if task.status == TaskStatus.FAILED:
        return task
    _ensure_active(task, "fail")
    task.status = TaskStatus.FAILED
    task.phase = TaskPhase.ERROR
    task.completed_at = utc_now()
    task.gathered_info = {
        **task.gathered_info,
        "error": error_message or DEFAULT_FAILURE_MESSAGE,
    }
    return task
