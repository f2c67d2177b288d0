"""Task lifecycle endpoints.

Thin HTTP layer over :class:`~agent_tasks.services.task_service.TaskService`
and :class:`~agent_tasks.engine.orchestrator.TaskOrchestrator`.  Lifecycle
errors propagate to :class:`ErrorHandlerMiddleware`, which turns them into
JSON error responses.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends

from agent_tasks.api.v1.schemas.common import ErrorResponse
from agent_tasks.api.v1.schemas.task import (
    CompleteRequest,
    CreateTaskRequest,
    FailRequest,
    GatheredInfoRequest,
    PhaseRequest,
    PlanRequest,
    ProgressRequest,
    ResetStepsResponse,
    RunResponse,
    SessionTasksResponse,
    StepInfo,
    TaskDetailResponse,
    TaskInfo,
)
from agent_tasks.core.task.models import ProgressSummary, StepStatus
from agent_tasks.dependencies import get_orchestrator, get_task_service
from agent_tasks.engine.orchestrator import TaskOrchestrator
from agent_tasks.services.task_service import TaskService
from agent_tasks.utils.logging import get_logger

logger = get_logger(__name__)

router = APIRouter()

_NOT_FOUND = {404: {"model": ErrorResponse}}
_TRANSITION_ERRORS = {
    404: {"model": ErrorResponse},
    409: {"model": ErrorResponse},
    422: {"model": ErrorResponse},
}


@router.post(
    "/tasks",
    response_model=TaskInfo,
    status_code=201,
    responses={409: {"model": ErrorResponse}, 422: {"model": ErrorResponse}},
    summary="Create a task",
    description=(
        "Open a task for a session.  Fails with 409 when the session already "
        "has an active task of the same type, unless ``reuse_active`` is set."
    ),
)
async def create_task(
    request: CreateTaskRequest,
    service: TaskService = Depends(get_task_service),
) -> TaskInfo:
    if request.reuse_active:
        task = await service.get_or_create_task(request.session_id, request.task_type)
    else:
        task = await service.create_task(request.session_id, request.task_type)
    return TaskInfo.from_task(task)


@router.get(
    "/tasks/{task_id}",
    response_model=TaskDetailResponse,
    responses=_NOT_FOUND,
    summary="Get a task and its steps",
)
async def get_task(
    task_id: str,
    service: TaskService = Depends(get_task_service),
) -> TaskDetailResponse:
    details = await service.get_task_with_details(task_id)
    return TaskDetailResponse(
        task=TaskInfo.from_task(details.task),
        steps=[StepInfo.from_step(s) for s in details.steps],
    )


@router.get(
    "/tasks/{task_id}/progress",
    response_model=ProgressSummary,
    responses=_NOT_FOUND,
    summary="Get task progress",
)
async def get_progress(
    task_id: str,
    service: TaskService = Depends(get_task_service),
) -> ProgressSummary:
    return await service.get_progress_summary(task_id)


@router.get(
    "/sessions/{session_id}/tasks",
    response_model=SessionTasksResponse,
    summary="List a session's tasks",
    description="All tasks of the session, newest first.",
)
async def get_session_tasks(
    session_id: str,
    service: TaskService = Depends(get_task_service),
) -> SessionTasksResponse:
    tasks = await service.list_session_tasks(session_id)
    return SessionTasksResponse(
        session_id=session_id,
        tasks=[TaskInfo.from_task(t) for t in tasks],
    )


@router.post(
    "/tasks/{task_id}/phase",
    response_model=TaskInfo,
    responses=_TRANSITION_ERRORS,
    summary="Advance the task phase",
)
async def advance_phase(
    task_id: str,
    request: PhaseRequest,
    service: TaskService = Depends(get_task_service),
) -> TaskInfo:
    return TaskInfo.from_task(await service.advance_phase(task_id, request.phase))


@router.post(
    "/tasks/{task_id}/gathered-info",
    response_model=TaskInfo,
    responses=_TRANSITION_ERRORS,
    summary="Merge gathered info",
    description="Shallow-merge the given keys into the task's gathered info.",
)
async def merge_gathered_info(
    task_id: str,
    request: GatheredInfoRequest,
    service: TaskService = Depends(get_task_service),
) -> TaskInfo:
    return TaskInfo.from_task(await service.merge_gathered_info(task_id, request.info))


@router.put(
    "/tasks/{task_id}/gathered-info",
    response_model=TaskInfo,
    responses=_TRANSITION_ERRORS,
    summary="Replace gathered info",
)
async def replace_gathered_info(
    task_id: str,
    request: GatheredInfoRequest,
    service: TaskService = Depends(get_task_service),
) -> TaskInfo:
    return TaskInfo.from_task(await service.replace_gathered_info(task_id, request.info))


@router.post(
    "/tasks/{task_id}/plan",
    response_model=TaskInfo,
    responses=_TRANSITION_ERRORS,
    summary="Set the execution plan",
    description="Only allowed in the planning or execution phase, before any step exists.",
)
async def set_plan(
    task_id: str,
    request: PlanRequest,
    service: TaskService = Depends(get_task_service),
) -> TaskInfo:
    return TaskInfo.from_task(await service.set_execution_plan(task_id, request.plan))


@router.post(
    "/tasks/{task_id}/progress",
    response_model=TaskInfo,
    responses=_TRANSITION_ERRORS,
    summary="Update progress",
    description="The value is clamped into [0, 100].",
)
async def update_progress(
    task_id: str,
    request: ProgressRequest,
    service: TaskService = Depends(get_task_service),
) -> TaskInfo:
    return TaskInfo.from_task(await service.update_progress(task_id, request.progress))


@router.post(
    "/tasks/{task_id}/run",
    response_model=RunResponse,
    responses=_TRANSITION_ERRORS,
    summary="Execute the task's steps",
    description=(
        "Create steps from the plan if needed, then run pending steps in "
        "sequence order until the task completes or fails."
    ),
)
async def run_task(
    task_id: str,
    orchestrator: TaskOrchestrator = Depends(get_orchestrator),
    service: TaskService = Depends(get_task_service),
) -> RunResponse:
    result = await orchestrator.run(task_id)

    errors = [
        f"Step {s.sequence_number} ({s.step_name}) failed: {(s.output_data or {}).get('error')}"
        for s in await service.list_steps(task_id)
        if s.status == StepStatus.FAILED
    ]
    return RunResponse(
        task=TaskInfo.from_task(result.task),
        counts=result.counts,
        success=result.success,
        errors=errors,
    )


@router.post(
    "/tasks/{task_id}/complete",
    response_model=TaskInfo,
    responses=_TRANSITION_ERRORS,
    summary="Complete the task",
)
async def complete_task(
    task_id: str,
    request: CompleteRequest,
    service: TaskService = Depends(get_task_service),
) -> TaskInfo:
    return TaskInfo.from_task(await service.complete_task(task_id, request.result))


@router.post(
    "/tasks/{task_id}/fail",
    response_model=TaskInfo,
    responses=_TRANSITION_ERRORS,
    summary="Fail the task",
)
async def fail_task(
    task_id: str,
    request: FailRequest,
    service: TaskService = Depends(get_task_service),
) -> TaskInfo:
    return TaskInfo.from_task(await service.fail_task(task_id, request.error))


@router.delete(
    "/tasks/{task_id}/steps",
    response_model=ResetStepsResponse,
    responses=_NOT_FOUND,
    summary="Delete all steps of a task",
)
async def reset_steps(
    task_id: str,
    service: TaskService = Depends(get_task_service),
) -> ResetStepsResponse:
    removed = await service.reset_steps(task_id)
    logger.info("task_steps_reset_via_api", task_id=task_id, removed=removed)
    return ResetStepsResponse(task_id=task_id, removed=removed)
