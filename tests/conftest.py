import asyncio

import pytest

from agent_tasks.core.task.repository import InMemoryTaskRepository
from agent_tasks.engine.executor import StepExecutor
from agent_tasks.engine.orchestrator import TaskOrchestrator
from agent_tasks.handlers import BaseStepHandler, EchoHandler, StepHandlerRegistry
from agent_tasks.services.task_service import TaskService


class RecordingHandler(BaseStepHandler):
    """Records the order in which steps ran and returns configurable output."""

    def __init__(self, name="record", output=None):
        self._name = name
        self.output = output or {}
        self.calls = []

    @property
    def name(self):
        return self._name

    async def execute(self, input_data, context):
        self.calls.append(context["sequence_number"])
        return {"ran": context["step_name"], **self.output}


class FailingHandler(BaseStepHandler):
    @property
    def name(self):
        return "explode"

    async def execute(self, input_data, context):
        raise RuntimeError("network timeout")


class SlowHandler(BaseStepHandler):
    @property
    def name(self):
        return "slow"

    async def execute(self, input_data, context):
        await asyncio.sleep(5)
        return {}


@pytest.fixture
def repository():
    return InMemoryTaskRepository()


@pytest.fixture
def service(repository):
    return TaskService(repository)


@pytest.fixture
def recorder():
    return RecordingHandler()


@pytest.fixture
def registry(recorder):
    reg = StepHandlerRegistry()
    reg.register(EchoHandler())
    reg.register(recorder)
    reg.register(FailingHandler())
    reg.register(SlowHandler())
    return reg


@pytest.fixture
def executor(registry):
    return StepExecutor(registry, timeout_seconds=0.2)


@pytest.fixture
def orchestrator(service, executor):
    return TaskOrchestrator(service, executor)


@pytest.fixture
def sample_plan():
    return [
        {"name": "search", "tool_name": "record", "tool_args": {"q": "flights"}},
        {"name": "compare", "tool_name": "record"},
        {"name": "summarise", "tool_name": "echo", "tool_args": {"style": "short"}},
    ]
