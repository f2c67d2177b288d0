"""FastAPI dependency functions for injection into endpoint handlers.

The repository, service, handler registry and orchestrator are built once
during the app lifespan (see :func:`build_engine`) and stored on
``app.state``; the functions here simply look them up.  Nothing is held in
module-level globals, so tests can wire their own instances onto a fresh app.
"""

from __future__ import annotations

from dataclasses import dataclass

from fastapi import Request

from agent_tasks.config import Settings
from agent_tasks.core.task.repository import InMemoryTaskRepository, TaskRepository
from agent_tasks.engine.executor import StepExecutor
from agent_tasks.engine.orchestrator import TaskOrchestrator
from agent_tasks.handlers import EchoHandler, StepHandlerRegistry
from agent_tasks.services.task_service import TaskService


@dataclass
class Engine:
    """The collaborating objects that make up one running engine."""

    repository: TaskRepository
    service: TaskService
    registry: StepHandlerRegistry
    orchestrator: TaskOrchestrator


def build_engine(
    settings: Settings,
    repository: TaskRepository | None = None,
    registry: StepHandlerRegistry | None = None,
) -> Engine:
    """Wire repository, service, handlers and orchestrator from *settings*."""
    repository = repository or InMemoryTaskRepository()
    if registry is None:
        registry = StepHandlerRegistry()
        registry.register(EchoHandler())

    service = TaskService(
        repository,
        enforce_single_active_task=settings.enforce_single_active_task,
    )
    executor = StepExecutor(registry, timeout_seconds=settings.step_timeout_seconds)
    orchestrator = TaskOrchestrator(
        service,
        executor,
        stop_on_failure=settings.stop_on_failure,
    )
    return Engine(
        repository=repository,
        service=service,
        registry=registry,
        orchestrator=orchestrator,
    )


def install_engine(app, engine: Engine) -> None:
    app.state.engine = engine


def get_task_service(request: Request) -> TaskService:
    """Return the task service stored on ``app.state``."""
    return request.app.state.engine.service


def get_orchestrator(request: Request) -> TaskOrchestrator:
    """Return the orchestrator stored on ``app.state``."""
    return request.app.state.engine.orchestrator


def get_handler_registry(request: Request) -> StepHandlerRegistry:
    return request.app.state.engine.registry
