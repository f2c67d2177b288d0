"""Persistence boundary for tasks and their steps.

:class:`TaskRepository` is the contract the service layer relies on;
:class:`InMemoryTaskRepository` implements it with plain dictionaries.  A
database-backed implementation would swap the dicts for tables but must keep
the same guarantees:

* reads return copies, so nothing is visible to others until it is saved;
* :meth:`save_task` rejects stale writes using the task's ``version``;
* :meth:`add_steps` inserts a batch all-or-nothing;
* :meth:`delete_steps` removes every step of a task as one unit;
* :meth:`lock` provides a per-key mutual-exclusion scope.
"""

from __future__ import annotations

import asyncio
from collections import defaultdict
from collections.abc import AsyncIterator, Sequence
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from typing import Protocol

from agent_tasks.core.task.models import StepStatus, Task, TaskStep, utc_now
from agent_tasks.utils.exceptions import ConcurrencyError, ConflictError, NotFoundError
from agent_tasks.utils.logging import get_logger

logger = get_logger(__name__)


class TaskRepository(Protocol):
    def lock(self, key: str) -> AbstractAsyncContextManager[None]: ...

    async def add_task(self, task: Task) -> Task: ...

    async def get_task(self, task_id: str) -> Task | None: ...

    async def save_task(self, task: Task) -> Task: ...

    async def list_tasks_by_session(self, session_id: str) -> list[Task]: ...

    async def find_active_task(
        self, session_id: str, task_type: str | None = None
    ) -> Task | None: ...

    async def add_steps(self, task_id: str, steps: Sequence[TaskStep]) -> int: ...

    async def get_step(self, step_id: str) -> TaskStep | None: ...

    async def save_step(self, step: TaskStep) -> TaskStep: ...

    async def list_steps(
        self, task_id: str, status: StepStatus | None = None
    ) -> list[TaskStep]: ...

    async def find_step_by_sequence(
        self, task_id: str, sequence_number: int
    ) -> TaskStep | None: ...

    async def delete_steps(self, task_id: str) -> int: ...


class InMemoryTaskRepository:
    """Dictionary-backed repository, suitable for tests and single-process use.

    Tasks and steps are stored as private copies; callers always work on
    their own copies and must call the ``save_*`` methods to publish changes.
    """

    def __init__(self) -> None:
        self._tasks: dict[str, Task] = {}
        self._steps: dict[str, TaskStep] = {}
        self._steps_by_task: dict[str, list[str]] = defaultdict(list)
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = defaultdict(int)

    # ------------------------------------------------------------------
    # Serialisation
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def lock(self, key: str) -> AsyncIterator[None]:
        """Hold the mutual-exclusion scope for *key* (a task id or any other key).

        A key's lock lives only while someone holds or waits for it, so the
        lock map is bounded by the number of in-flight operations.
        """
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._lock_users[key] += 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[key] -= 1
            if not self._lock_users[key]:
                del self._lock_users[key]
                del self._locks[key]

    @property
    def active_lock_count(self) -> int:
        return len(self._locks)

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    async def add_task(self, task: Task) -> Task:
        if task.id in self._tasks:
            raise ConflictError(f"Task already exists: {task.id}")
        stored = task.model_copy(deep=True)
        self._tasks[stored.id] = stored
        logger.debug("task_inserted", task_id=stored.id)
        return stored.model_copy(deep=True)

    async def get_task(self, task_id: str) -> Task | None:
        task = self._tasks.get(task_id)
        return task.model_copy(deep=True) if task else None

    async def save_task(self, task: Task) -> Task:
        """Publish *task*, failing if someone else saved it since it was read."""
        current = self._tasks.get(task.id)
        if current is None:
            raise NotFoundError("Task", task.id)
        if current.version != task.version:
            raise ConcurrencyError(task.id, expected=task.version, actual=current.version)

        stored = task.model_copy(
            deep=True,
            update={"version": task.version + 1, "updated_at": utc_now()},
        )
        self._tasks[stored.id] = stored
        return stored.model_copy(deep=True)

    async def list_tasks_by_session(self, session_id: str) -> list[Task]:
        tasks = [t for t in self._tasks.values() if t.session_id == session_id]
        tasks.sort(key=lambda t: t.created_at, reverse=True)
        return [t.model_copy(deep=True) for t in tasks]

    async def find_active_task(
        self, session_id: str, task_type: str | None = None
    ) -> Task | None:
        """Newest pending or in-progress task of the session, optionally of one type."""
        for task in await self.list_tasks_by_session(session_id):
            if task_type is not None and task.task_type != task_type:
                continue
            if task.status.is_active:
                return task
        return None

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    async def add_steps(self, task_id: str, steps: Sequence[TaskStep]) -> int:
        """Insert *steps* for *task_id* as one batch; nothing is written on error."""
        if task_id not in self._tasks:
            raise NotFoundError("Task", task_id)

        taken = {self._steps[sid].sequence_number for sid in self._steps_by_task[task_id]}
        for step in steps:
            if step.task_id != task_id:
                raise ConflictError(
                    f"Step {step.id} belongs to task {step.task_id}, not {task_id}"
                )
            if step.id in self._steps:
                raise ConflictError(f"Step already exists: {step.id}")
            if step.sequence_number in taken:
                raise ConflictError(
                    f"Sequence number {step.sequence_number} already used in task {task_id}"
                )
            taken.add(step.sequence_number)

        for step in steps:
            self._steps[step.id] = step.model_copy(deep=True)
            self._steps_by_task[task_id].append(step.id)

        logger.debug("steps_inserted", task_id=task_id, count=len(steps))
        return len(steps)

    async def get_step(self, step_id: str) -> TaskStep | None:
        step = self._steps.get(step_id)
        return step.model_copy(deep=True) if step else None

    async def save_step(self, step: TaskStep) -> TaskStep:
        if step.id not in self._steps:
            raise NotFoundError("TaskStep", step.id)
        self._steps[step.id] = step.model_copy(deep=True)
        return step.model_copy(deep=True)

    async def list_steps(
        self, task_id: str, status: StepStatus | None = None
    ) -> list[TaskStep]:
        """Steps of *task_id* in ascending sequence order."""
        steps = [self._steps[sid] for sid in self._steps_by_task.get(task_id, [])]
        if status is not None:
            steps = [s for s in steps if s.status == status]
        steps.sort(key=lambda s: s.sequence_number)
        return [s.model_copy(deep=True) for s in steps]

    async def find_step_by_sequence(
        self, task_id: str, sequence_number: int
    ) -> TaskStep | None:
        for sid in self._steps_by_task.get(task_id, []):
            step = self._steps[sid]
            if step.sequence_number == sequence_number:
                return step.model_copy(deep=True)
        return None

    async def delete_steps(self, task_id: str) -> int:
        """Remove every step owned by *task_id*; returns how many were removed."""
        step_ids = self._steps_by_task.pop(task_id, [])
        for sid in step_ids:
            del self._steps[sid]
        logger.debug("steps_deleted", task_id=task_id, count=len(step_ids))
        return len(step_ids)

    def __len__(self) -> int:
        return len(self._tasks)
