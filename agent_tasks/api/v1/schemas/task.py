"""Request/response schemas for task creation, inspection and control."""

from datetime import datetime

from pydantic import BaseModel, Field, JsonValue

from agent_tasks.core.task.models import PlanStep, StepStatusCounts, Task, TaskStep


class CreateTaskRequest(BaseModel):
    """Request body to open a task for a session."""

    session_id: str = Field(..., min_length=1)
    task_type: str = Field(..., min_length=1)
    reuse_active: bool = Field(
        default=False,
        description="Return the session's active task of this type instead of failing",
    )


class PhaseRequest(BaseModel):
    # Plain string so unknown phases reach the lifecycle validation.
    phase: str


class GatheredInfoRequest(BaseModel):
    info: dict[str, JsonValue] = Field(default_factory=dict)


class PlanRequest(BaseModel):
    plan: list[PlanStep]


class ProgressRequest(BaseModel):
    progress: float


class CompleteRequest(BaseModel):
    result: JsonValue = None


class FailRequest(BaseModel):
    error: str | None = None


class StepInfo(BaseModel):
    """Status summary for a single step."""

    id: str
    name: str
    sequence_number: int
    status: str
    input_data: dict[str, JsonValue]
    output_data: dict[str, JsonValue] | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @classmethod
    def from_step(cls, step: TaskStep) -> "StepInfo":
        return cls(
            id=step.id,
            name=step.step_name,
            sequence_number=step.sequence_number,
            status=step.status.value,
            input_data=step.input_data,
            output_data=step.output_data,
            started_at=step.started_at,
            completed_at=step.completed_at,
        )


class TaskInfo(BaseModel):
    """Serialised view of a task suitable for the API consumer."""

    id: str
    session_id: str
    type: str
    status: str
    phase: str
    progress: int
    gathered_info: dict[str, JsonValue]
    execution_plan: list[PlanStep] | None = None
    created_at: datetime
    completed_at: datetime | None = None

    @classmethod
    def from_task(cls, task: Task) -> "TaskInfo":
        return cls(
            id=task.id,
            session_id=task.session_id,
            type=task.task_type,
            status=task.status.value,
            phase=task.phase.value,
            progress=task.progress,
            gathered_info=task.gathered_info,
            execution_plan=task.execution_plan,
            created_at=task.created_at,
            completed_at=task.completed_at,
        )


class TaskDetailResponse(BaseModel):
    task: TaskInfo
    steps: list[StepInfo]


class SessionTasksResponse(BaseModel):
    session_id: str
    tasks: list[TaskInfo]


class ResetStepsResponse(BaseModel):
    task_id: str
    removed: int


class RunResponse(BaseModel):
    """Outcome of running a task's steps."""

    task: TaskInfo
    counts: StepStatusCounts
    success: bool
    errors: list[str] = []
