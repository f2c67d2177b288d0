"""Tests for the handler registry and the step executor."""
import pytest

from agent_tasks.core.task import steps
from agent_tasks.engine.executor import StepExecutor
from agent_tasks.handlers import BaseStepHandler, EchoHandler, StepHandlerRegistry
from agent_tasks.utils.exceptions import HandlerNotFoundError


class ConstantHandler(BaseStepHandler):
    def __init__(self, name, output):
        self._name = name
        self._output = output
        self.seen_context = None

    @property
    def name(self):
        return self._name

    async def execute(self, input_data, context):
        self.seen_context = context
        return self._output


def _started_step(name="search", seq=0, input_data=None):
    step = steps.new_step("task-1", name, seq, input_data)
    return steps.start_step(step)


class TestRegistry:
    def test_register_and_get(self):
        registry = StepHandlerRegistry()
        registry.register(EchoHandler())
        assert "echo" in registry
        assert len(registry) == 1
        assert isinstance(registry.get("echo"), EchoHandler)

    def test_get_unknown(self):
        with pytest.raises(HandlerNotFoundError, match="missing"):
            StepHandlerRegistry().get("missing")

    def test_register_replaces(self):
        registry = StepHandlerRegistry()
        first = ConstantHandler("x", {})
        second = ConstantHandler("x", {})
        registry.register(first)
        registry.register(second)
        assert registry.get("x") is second
        assert len(registry) == 1

    def test_list_all_sorted(self):
        registry = StepHandlerRegistry()
        for name in ("zeta", "alpha", "mid"):
            registry.register(ConstantHandler(name, {}))
        assert registry.list_all() == ["alpha", "mid", "zeta"]

    def test_resolve_prefers_tool_name(self):
        registry = StepHandlerRegistry()
        web = ConstantHandler("web", {})
        registry.register(web)
        registry.register(ConstantHandler("search", {}))
        step = _started_step("search", input_data={"tool_name": "web"})
        assert registry.resolve(step) is web

    def test_resolve_falls_back_to_step_name(self):
        registry = StepHandlerRegistry()
        search = ConstantHandler("search", {})
        registry.register(search)
        assert registry.resolve(_started_step("search")) is search
        assert registry.resolve(_started_step("search", input_data={"tool_name": "gone"})) is search

    def test_resolve_unknown(self):
        step = _started_step("search", input_data={"tool_name": "web"})
        with pytest.raises(HandlerNotFoundError, match="web"):
            StepHandlerRegistry().resolve(step)


class TestExecutor:
    @pytest.mark.asyncio
    async def test_success(self):
        handler = ConstantHandler("search", {"hits": [1, 2]})
        registry = StepHandlerRegistry()
        registry.register(handler)
        executor = StepExecutor(registry, context={"locale": "en"})

        outcome = await executor.execute_step(_started_step(seq=4), {"city": "Rome"})

        assert outcome.success
        assert outcome.output == {"hits": [1, 2]}
        assert outcome.sequence_number == 4
        assert outcome.duration_seconds >= 0
        assert handler.seen_context["gathered_info"] == {"city": "Rome"}
        assert handler.seen_context["locale"] == "en"
        assert handler.seen_context["task_id"] == "task-1"

    @pytest.mark.asyncio
    async def test_non_mapping_output(self):
        registry = StepHandlerRegistry()
        registry.register(ConstantHandler("search", ["not", "a", "dict"]))

        outcome = await StepExecutor(registry).execute_step(_started_step())

        assert not outcome.success
        assert "expected a mapping" in outcome.error

    @pytest.mark.asyncio
    async def test_non_json_output(self):
        registry = StepHandlerRegistry()
        registry.register(ConstantHandler("search", {"value": object()}))

        outcome = await StepExecutor(registry).execute_step(_started_step())

        assert not outcome.success
        assert "non-JSON output" in outcome.error

    @pytest.mark.asyncio
    async def test_handler_exception(self, executor):
        step = _started_step("book", input_data={"tool_name": "explode"})

        outcome = await executor.execute_step(step)

        assert not outcome.success
        assert outcome.error == "network timeout"

    @pytest.mark.asyncio
    async def test_echo(self, executor):
        step = _started_step("summarise", input_data={"tool_name": "echo", "tool_args": {"n": 1}})

        outcome = await executor.execute_step(step)

        assert outcome.output == {"echo": {"n": 1}, "step_name": "summarise"}
