"""TaskStep state machine and step aggregation.

A step moves ``pending -> in_progress -> {completed, failed}`` and never
re-enters ``pending``; there are no automatic retries.  Steps of one task run
strictly in ``sequence_number`` order: :func:`find_next_pending` always hands
out the smallest pending sequence number, even when a later step happens to
be ready first.

The aggregate helpers at the bottom fold step outcomes into task-level
decisions.  Whether a failed step fails the task is left to the caller.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from typing import Any

from agent_tasks.core.task.models import (
    PlanStep,
    StepStatus,
    StepStatusCounts,
    TaskStep,
    utc_now,
)
from agent_tasks.utils.exceptions import InvalidTransitionError, ValidationError


def new_step(
    task_id: str,
    step_name: str,
    sequence_number: int,
    input_data: Mapping[str, Any] | None = None,
) -> TaskStep:
    if not step_name or not step_name.strip():
        raise ValidationError("step_name is required")
    if sequence_number < 0:
        raise ValidationError(f"sequence_number must be >= 0, got {sequence_number}")
    return TaskStep(
        task_id=task_id,
        step_name=step_name.strip(),
        sequence_number=sequence_number,
        input_data=dict(input_data or {}),
    )


def steps_from_plan(task_id: str, plan: Sequence[PlanStep]) -> list[TaskStep]:
    """Decompose an execution plan into pending steps numbered from 1 in plan order."""
    return [
        new_step(task_id, entry.name, index + 1, entry.to_input_data())
        for index, entry in enumerate(plan)
    ]


# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------


def start_step(step: TaskStep) -> TaskStep:
    if step.status != StepStatus.PENDING:
        raise InvalidTransitionError("step", step.status.value, "start")
    step.status = StepStatus.IN_PROGRESS
    step.started_at = utc_now()
    return step


def complete_step(step: TaskStep, output_data: Mapping[str, Any] | None = None) -> TaskStep:
    """Finish a running step with *output_data*.

    A step must be started first.  Completing an already completed step is a
    no-op that keeps the original output.
    """
    if step.status == StepStatus.COMPLETED:
        return step
    if step.status != StepStatus.IN_PROGRESS:
        raise InvalidTransitionError("step", step.status.value, "complete")
    step.status = StepStatus.COMPLETED
    step.output_data = dict(output_data or {})
    step.completed_at = utc_now()
    return step


def fail_step(step: TaskStep, error_message: str) -> TaskStep:
    """Fail a pending or running step, merging ``error`` into its output."""
    if step.status == StepStatus.FAILED:
        return step
    if step.status == StepStatus.COMPLETED:
        raise InvalidTransitionError("step", step.status.value, "fail")
    step.status = StepStatus.FAILED
    step.output_data = {**(step.output_data or {}), "error": error_message}
    step.completed_at = utc_now()
    return step


# ---------------------------------------------------------------------------
# Aggregation
# ---------------------------------------------------------------------------


def find_next_pending(steps: Iterable[TaskStep]) -> TaskStep | None:
    """Return the pending step with the lowest sequence number, if any."""
    pending = [s for s in steps if s.status == StepStatus.PENDING]
    if not pending:
        return None
    return min(pending, key=lambda s: s.sequence_number)


def status_counts(steps: Iterable[TaskStep]) -> StepStatusCounts:
    counts = StepStatusCounts()
    for step in steps:
        field = step.status.value
        setattr(counts, field, getattr(counts, field) + 1)
    return counts


def progress_from_counts(counts: StepStatusCounts) -> int:
    """Percentage of completed steps, rounded down so 100 means all done."""
    if counts.total == 0:
        return 0
    return counts.completed * 100 // counts.total


def can_complete(counts: StepStatusCounts) -> bool:
    """A task may complete only when every step completed and none failed."""
    return counts.all_completed and not counts.has_failures


def should_fail(counts: StepStatusCounts) -> bool:
    return counts.has_failures
