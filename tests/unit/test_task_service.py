"""Tests for TaskService operations over the in-memory repository."""
import asyncio

import pytest

from agent_tasks.core.task.models import StepSpec, StepStatus, TaskPhase, TaskStatus
from agent_tasks.services.task_service import TaskService
from agent_tasks.utils.exceptions import (
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)


async def _task_with_steps(service, count=3):
    task = await service.create_task("s1", "build")
    await service.create_steps(
        task.id,
        [{"step_name": f"step-{i}", "sequence_number": i} for i in range(count)],
    )
    return task


class TestCreate:
    @pytest.mark.asyncio
    async def test_create_task(self, service):
        task = await service.create_task("s1", "build")
        assert task.status == TaskStatus.PENDING
        assert task.phase == TaskPhase.CLARIFICATION
        assert (await service.get_task(task.id)).id == task.id

    @pytest.mark.asyncio
    async def test_second_active_task_rejected(self, service):
        await service.create_task("s1", "build")
        with pytest.raises(ConflictError):
            await service.create_task("s1", "build")
        other = await service.create_task("s1", "travel")
        assert other.task_type == "travel"

    @pytest.mark.asyncio
    async def test_concurrent_creates_admit_one(self, service):
        results = await asyncio.gather(
            service.create_task("s1", "build"),
            service.create_task("s1", "build"),
            return_exceptions=True,
        )
        assert sum(isinstance(r, ConflictError) for r in results) == 1
        assert len(await service.list_session_tasks("s1")) == 1

    @pytest.mark.asyncio
    async def test_new_task_allowed_after_terminal(self, service):
        first = await service.create_task("s1", "build")
        await service.fail_task(first.id, "gave up")
        second = await service.create_task("s1", "build")
        assert second.id != first.id

    @pytest.mark.asyncio
    async def test_enforcement_can_be_disabled(self, repository):
        service = TaskService(repository, enforce_single_active_task=False)
        await service.create_task("s1", "build")
        await service.create_task("s1", "build")
        assert len(await service.list_session_tasks("s1")) == 2

    @pytest.mark.asyncio
    async def test_get_or_create_reuses_active(self, service):
        first = await service.get_or_create_task("s1", "build")
        again = await service.get_or_create_task("s1", "build")
        assert again.id == first.id

    @pytest.mark.asyncio
    async def test_unknown_task(self, service):
        with pytest.raises(NotFoundError):
            await service.get_task("missing")
        with pytest.raises(NotFoundError):
            await service.merge_gathered_info("missing", {"a": 1})

    @pytest.mark.asyncio
    async def test_get_active_task(self, service):
        task = await service.create_task("s1", "build")
        assert (await service.get_active_task("s1")).id == task.id
        await service.complete_task(task.id)
        assert await service.get_active_task("s1") is None


class TestTaskTransitions:
    @pytest.mark.asyncio
    async def test_gathered_info_merges_across_calls(self, service):
        task = await service.create_task("s1", "build")
        await service.merge_gathered_info(task.id, {"a": 1})
        await service.merge_gathered_info(task.id, {"b": 2})
        task = await service.merge_gathered_info(task.id, {"a": 3})
        assert task.gathered_info == {"a": 3, "b": 2}

    @pytest.mark.asyncio
    async def test_concurrent_merges_are_not_lost(self, service):
        task = await service.create_task("s1", "build")
        await asyncio.gather(
            *(service.merge_gathered_info(task.id, {f"k{i}": i}) for i in range(10))
        )
        stored = await service.get_task(task.id)
        assert stored.gathered_info == {f"k{i}": i for i in range(10)}

    @pytest.mark.asyncio
    async def test_fail_keeps_info(self, service):
        task = await service.create_task("s1", "build")
        await service.merge_gathered_info(task.id, {"a": 3})
        task = await service.fail_task(task.id, "network timeout")
        assert task.status == TaskStatus.FAILED
        assert task.phase == TaskPhase.ERROR
        assert task.gathered_info == {"a": 3, "error": "network timeout"}

        again = await service.fail_task(task.id, "second")
        assert again.gathered_info["error"] == "network timeout"

    @pytest.mark.asyncio
    async def test_terminal_task_rejects_mutation(self, service):
        task = await service.create_task("s1", "build")
        await service.complete_task(task.id)
        with pytest.raises(InvalidTransitionError):
            await service.merge_gathered_info(task.id, {"a": 1})
        with pytest.raises(InvalidTransitionError):
            await service.fail_task(task.id, "late")

    @pytest.mark.asyncio
    async def test_complete_records_result(self, service):
        task = await service.create_task("s1", "build")
        task = await service.complete_task(task.id, result={"url": "https://example.test"})
        assert task.status == TaskStatus.COMPLETED
        assert task.progress == 100
        assert task.gathered_info == {"result": {"url": "https://example.test"}}

    @pytest.mark.asyncio
    async def test_complete_refused_with_unfinished_steps(self, service):
        task = await _task_with_steps(service, 2)
        with pytest.raises(InvalidTransitionError):
            await service.complete_task(task.id)
        assert (await service.get_task(task.id)).status == TaskStatus.PENDING

    @pytest.mark.asyncio
    async def test_plan_rejected_after_steps_exist(self, service):
        task = await _task_with_steps(service, 1)
        await service.advance_phase(task.id, "planning")
        with pytest.raises(InvalidTransitionError):
            await service.set_execution_plan(task.id, [{"name": "x"}])

    @pytest.mark.asyncio
    async def test_empty_plan_completes(self, service):
        task = await service.create_task("s1", "build")
        await service.advance_phase(task.id, TaskPhase.PLANNING)
        task = await service.set_execution_plan(task.id, [])
        assert task.status == TaskStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_persist_state(self, service, sample_plan):
        task = await service.create_task("s1", "build")
        task = await service.persist_state(
            task.id,
            "planning",
            gathered_info={"destination": "Lisbon"},
            execution_plan=sample_plan,
            progress=10,
        )
        assert task.phase == TaskPhase.PLANNING
        assert task.gathered_info == {"destination": "Lisbon"}
        assert [p.name for p in task.execution_plan] == ["search", "compare", "summarise"]
        assert task.progress == 10

    @pytest.mark.asyncio
    async def test_persist_state_is_all_or_nothing(self, service):
        task = await service.create_task("s1", "build")
        with pytest.raises(InvalidTransitionError):
            # plans are only accepted in planning or execution
            await service.persist_state(
                task.id, "clarification", gathered_info={"a": 1}, execution_plan=[{"name": "x"}]
            )
        assert (await service.get_task(task.id)).gathered_info == {}


class TestSteps:
    @pytest.mark.asyncio
    async def test_step_sequence(self, service):
        task = await _task_with_steps(service, 3)

        step = await service.find_next_pending(task.id)
        assert step.sequence_number == 0

        await service.start_step(step.id)
        done = await service.complete_step(step.id, {"result": "ok"})
        assert done.status == StepStatus.COMPLETED
        assert done.output_data == {"result": "ok"}

        assert (await service.find_next_pending(task.id)).sequence_number == 1

    @pytest.mark.asyncio
    async def test_create_steps_accepts_specs(self, service):
        task = await service.create_task("s1", "build")
        count = await service.create_steps(
            task.id, [StepSpec(step_name="a", sequence_number=0, input_data={"x": 1})]
        )
        assert count == 1
        (step,) = await service.list_steps(task.id)
        assert step.input_data == {"x": 1}

    @pytest.mark.asyncio
    async def test_create_steps_duplicate_sequence(self, service):
        task = await _task_with_steps(service, 2)
        with pytest.raises(ConflictError):
            await service.create_step(task.id, "again", 1)
        assert len(await service.list_steps(task.id)) == 2

    @pytest.mark.asyncio
    async def test_steps_from_plan(self, service, sample_plan):
        task = await service.create_task("s1", "build")
        await service.advance_phase(task.id, "planning")
        await service.set_execution_plan(task.id, sample_plan)
        assert await service.create_steps_from_plan(task.id) == 3

        steps = await service.list_steps(task.id)
        assert [s.sequence_number for s in steps] == [1, 2, 3]
        assert steps[0].input_data == {
            "tool_name": "record",
            "tool_args": {"q": "flights"},
            "description": "",
        }

    @pytest.mark.asyncio
    async def test_steps_from_plan_without_plan(self, service):
        task = await service.create_task("s1", "build")
        with pytest.raises(ValidationError):
            await service.create_steps_from_plan(task.id)

    @pytest.mark.asyncio
    async def test_failed_step_records_error(self, service):
        task = await _task_with_steps(service, 2)
        step = await service.claim_next_step(task.id)
        failed = await service.fail_step(step.id, "network timeout")
        assert failed.status == StepStatus.FAILED
        assert failed.output_data == {"error": "network timeout"}

        counts = await service.status_counts(task.id)
        assert (counts.pending, counts.failed) == (1, 1)

    @pytest.mark.asyncio
    async def test_claim_next_step(self, service):
        task = await _task_with_steps(service, 2)
        first = await service.claim_next_step(task.id)
        second = await service.claim_next_step(task.id)
        assert (first.sequence_number, second.sequence_number) == (0, 1)
        assert first.status == StepStatus.IN_PROGRESS
        assert await service.claim_next_step(task.id) is None

    @pytest.mark.asyncio
    async def test_concurrent_claims_never_share_a_step(self, service):
        task = await _task_with_steps(service, 3)
        claimed = await asyncio.gather(*(service.claim_next_step(task.id) for _ in range(5)))
        started = [s for s in claimed if s is not None]
        assert sorted(s.sequence_number for s in started) == [0, 1, 2]
        assert len({s.id for s in started}) == 3

    @pytest.mark.asyncio
    async def test_steps_of_terminal_task_cannot_start(self, service):
        task = await _task_with_steps(service, 1)
        step = await service.find_next_pending(task.id)
        await service.fail_task(task.id, "stop")
        with pytest.raises(InvalidTransitionError):
            await service.start_step(step.id)
        with pytest.raises(InvalidTransitionError):
            await service.claim_next_step(task.id)

    @pytest.mark.asyncio
    async def test_unknown_step(self, service):
        with pytest.raises(NotFoundError):
            await service.start_step("missing")

    @pytest.mark.asyncio
    async def test_progress_from_steps(self, service):
        task = await _task_with_steps(service, 3)
        step = await service.claim_next_step(task.id)
        await service.complete_step(step.id, {})
        task = await service.update_progress_from_steps(task.id)
        assert task.progress == 33

        summary = await service.get_progress_summary(task.id)
        assert summary.completed_steps == 1
        assert summary.total_steps == 3
        assert summary.progress == 33
        assert summary.is_complete is False

    @pytest.mark.asyncio
    async def test_reset_steps(self, service):
        task = await _task_with_steps(service, 3)
        assert await service.reset_steps(task.id) == 3
        assert await service.list_steps(task.id) == []
        assert await service.find_next_pending(task.id) is None

    @pytest.mark.asyncio
    async def test_task_details(self, service):
        task = await _task_with_steps(service, 2)
        details = await service.get_task_with_details(task.id)
        assert details.task.id == task.id
        assert [s.sequence_number for s in details.steps] == [0, 1]

    @pytest.mark.asyncio
    async def test_create_steps_returns_batch_size(self, service):
        task = await service.create_task("s1", "build")
        specs = [{"step_name": f"s{i}", "sequence_number": i} for i in range(3)]
        assert await service.create_steps(task.id, specs) == 3
        assert len(await service.list_steps(task.id)) == 3

    @pytest.mark.asyncio
    async def test_complete_refused_with_failed_step(self, service):
        task = await _task_with_steps(service, 2)
        first = await service.claim_next_step(task.id)
        await service.complete_step(first.id, {})
        second = await service.claim_next_step(task.id)
        await service.fail_step(second.id, "boom")

        with pytest.raises(InvalidTransitionError):
            await service.complete_task(task.id)
        failed = await service.fail_task(task.id, "boom")
        assert failed.status == TaskStatus.FAILED

    @pytest.mark.asyncio
    async def test_failing_task_retires_running_step(self, service):
        task = await _task_with_steps(service, 2)
        running = await service.claim_next_step(task.id)

        await service.fail_task(task.id, "abandoned")

        step = await service.get_step(running.id)
        assert step.status == StepStatus.FAILED
        assert step.output_data == {"error": "abandoned"}
        assert (await service.find_next_pending(task.id)).sequence_number == 1

    @pytest.mark.asyncio
    async def test_step_outcome_rejected_once_task_terminal(self, service):
        task = await _task_with_steps(service, 2)
        running = await service.claim_next_step(task.id)
        pending = await service.find_next_pending(task.id)
        await service.fail_task(task.id, "abandoned")

        with pytest.raises(InvalidTransitionError):
            await service.complete_step(running.id, {"late": True})
        with pytest.raises(InvalidTransitionError):
            await service.fail_step(pending.id, "late")
        assert (await service.get_step(running.id)).output_data == {"error": "abandoned"}

    @pytest.mark.asyncio
    async def test_progress_from_steps_never_lowers(self, service):
        task = await _task_with_steps(service, 4)
        await service.update_progress(task.id, 60)
        step = await service.claim_next_step(task.id)
        await service.complete_step(step.id, {})

        task = await service.update_progress_from_steps(task.id)
        assert task.progress == 60

        for _ in range(2):
            step = await service.claim_next_step(task.id)
            await service.complete_step(step.id, {})
        task = await service.update_progress_from_steps(task.id)
        assert task.progress == 75
