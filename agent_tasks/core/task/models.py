"""Task and step data models for the lifecycle engine.

Defines the closed status/phase enumerations, the :class:`Task` and
:class:`TaskStep` records tracked by the state machines, the
:class:`PlanStep` entries of an execution plan, and the small aggregate
views (:class:`StepStatusCounts`, :class:`ProgressSummary`) derived from them.
"""

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, Field, JsonValue

import uuid

# Open key/value mapping used for gathered info and step input/output.
JsonMapping = dict[str, JsonValue]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class TaskStatus(str, Enum):
    """Coarse execution state shared by tasks and steps."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.FAILED)

    @property
    def is_active(self) -> bool:
        return self in (TaskStatus.PENDING, TaskStatus.IN_PROGRESS)


# Steps use the same four states.
StepStatus = TaskStatus


class TaskPhase(str, Enum):
    """Coarse-grained stage of a task's lifecycle."""

    CLARIFICATION = "clarification"
    PLANNING = "planning"
    EXECUTION = "execution"
    COMPLETE = "complete"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskPhase.COMPLETE, TaskPhase.ERROR)


class PlanStep(BaseModel):
    """One entry of a task's execution plan.

    Attributes:
        name: Step name, copied to :attr:`TaskStep.step_name`.
        description: Human-readable summary of what the step does.
        tool_name: Handler responsible for running the step.  Falls back to
            *name* when empty.
        tool_args: Arguments forwarded to the handler.
    """

    name: str = Field(..., min_length=1)
    description: str = ""
    tool_name: str = ""
    tool_args: JsonMapping = Field(default_factory=dict)

    def to_input_data(self) -> JsonMapping:
        """Return the ``input_data`` mapping for the step created from this entry."""
        return {
            "tool_name": self.tool_name or self.name,
            "tool_args": dict(self.tool_args),
            "description": self.description,
        }


class Task(BaseModel):
    """A unit of multi-step work tracked through phases to completion or failure.

    Attributes:
        id: Unique identifier assigned at creation.
        session_id: Owning conversation/session.
        task_type: Kind of work; immutable after creation.
        status: Current execution state.
        phase: Current lifecycle stage.
        progress: Integer percentage in ``[0, 100]``.
        gathered_info: Accumulated findings, merge-updated.
        execution_plan: Ordered plan computed during planning, or ``None``.
        created_at: Creation timestamp.
        updated_at: Timestamp of the last saved change.
        completed_at: Set once, when the task reaches a terminal status.
        version: Incremented by the repository on every save.
    """

    id: str = Field(default_factory=new_id)
    session_id: str
    task_type: str
    status: TaskStatus = TaskStatus.PENDING
    phase: TaskPhase = TaskPhase.CLARIFICATION
    progress: int = Field(default=0, ge=0, le=100)
    gathered_info: JsonMapping = Field(default_factory=dict)
    execution_plan: list[PlanStep] | None = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    completed_at: datetime | None = None
    version: int = 0

    model_config = {"validate_assignment": True}

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


class TaskStep(BaseModel):
    """One ordered unit of execution belonging to a :class:`Task`."""

    id: str = Field(default_factory=new_id)
    task_id: str
    sequence_number: int = Field(..., ge=0)
    step_name: str
    status: StepStatus = StepStatus.PENDING
    input_data: JsonMapping = Field(default_factory=dict)
    output_data: JsonMapping | None = None
    created_at: datetime = Field(default_factory=utc_now)
    started_at: datetime | None = None
    completed_at: datetime | None = None

    model_config = {"validate_assignment": True}

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


class StepSpec(BaseModel):
    """Specification of a step to create in a batch."""

    step_name: str = Field(..., min_length=1)
    sequence_number: int = Field(..., ge=0)
    input_data: JsonMapping = Field(default_factory=dict)


class StepStatusCounts(BaseModel):
    """Number of a task's steps in each status."""

    pending: int = 0
    in_progress: int = 0
    completed: int = 0
    failed: int = 0

    @property
    def total(self) -> int:
        return self.pending + self.in_progress + self.completed + self.failed

    @property
    def all_completed(self) -> bool:
        return self.completed == self.total

    @property
    def has_failures(self) -> bool:
        return self.failed > 0


class ProgressSummary(BaseModel):
    """Compact progress view of a task and its steps."""

    task_id: str
    status: TaskStatus
    phase: TaskPhase
    progress: int
    completed_steps: int
    total_steps: int
    is_complete: bool


class TaskWithSteps(BaseModel):
    """A task together with its steps in sequence order."""

    task: Task
    steps: list[TaskStep] = []
