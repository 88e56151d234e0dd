"""
Task Store contract and in-memory implementation.

A store only persists and retrieves ``Task`` values by id. It never changes
their content; every mutation goes through the lifecycle engine first.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Dict, List, Optional

from .a2a.models import Task, TaskState

logger = logging.getLogger(__name__)


class TaskStore(ABC):
    """Keyed storage of ``Task`` entities."""

    @abstractmethod
    async def save(self, task: Task) -> None:
        """Upsert ``task`` by id, replacing any previous value atomically."""

    @abstractmethod
    async def get(self, task_id: str) -> Optional[Task]:
        """Return the stored task, or ``None`` when the id is unknown."""

    @abstractmethod
    async def delete(self, task_id: str) -> bool:
        """Remove a task. Returns ``True`` when something was deleted."""

    @abstractmethod
    async def list_tasks(
        self,
        context_id: Optional[str] = None,
        state: Optional[TaskState] = None,
    ) -> List[Task]:
        """List stored tasks, oldest first, optionally filtered."""

    async def exists(self, task_id: str) -> bool:
        return await self.get(task_id) is not None

    async def close(self) -> None:
        """Release resources held by the store."""


class InMemoryTaskStore(TaskStore):
    """Dict-backed store.

    Tasks are copied on the way in and on the way out, so callers can never
    observe a partially written value or mutate what is stored.
    """

    def __init__(self) -> None:
        self._tasks: Dict[str, Task] = {}
        self._lock: Optional[asyncio.Lock] = None

    def _get_lock(self) -> asyncio.Lock:
        if self._lock is None:
            self._lock = asyncio.Lock()
        return self._lock

    async def save(self, task: Task) -> None:
        snapshot = task.model_copy(deep=True)
        async with self._get_lock():
            self._tasks[task.id] = snapshot
        logger.debug(
            "Saved task",
            extra={"task_id": task.id, "state": task.status.state.value},
        )

    async def get(self, task_id: str) -> Optional[Task]:
        async with self._get_lock():
            task = self._tasks.get(task_id)
        return task.model_copy(deep=True) if task is not None else None

    async def delete(self, task_id: str) -> bool:
        async with self._get_lock():
            removed = self._tasks.pop(task_id, None)
        return removed is not None

    async def list_tasks(
        self,
        context_id: Optional[str] = None,
        state: Optional[TaskState] = None,
    ) -> List[Task]:
        async with self._get_lock():
            tasks = list(self._tasks.values())

        if context_id is not None:
            tasks = [task for task in tasks if task.contextId == context_id]
        if state is not None:
            tasks = [task for task in tasks if task.status.state == state]
        return [task.model_copy(deep=True) for task in tasks]

    async def close(self) -> None:
        async with self._get_lock():
            self._tasks.clear()
