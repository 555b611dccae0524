"""
BackgroundTaskQueue - Fire-and-forget execution with pollable status.

Work is run as asyncio tasks inside the current process. Nothing survives a
restart; callers poll status(task_id) or await wait(task_id).
"""

import asyncio
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable

from loguru import logger

from aigate.services.errors import TaskNotFoundError


class TaskStatus(str, Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


@dataclass
class TaskHandle:
    id: str


class BackgroundTaskQueue:
    """
    Runs coroutine factories in the background and tracks their outcome.

    Usage:
        queue = BackgroundTaskQueue()
        handle = queue.enqueue(lambda: orchestrator.generate(request))
        ...
        if queue.status(handle.id) == TaskStatus.COMPLETED:
            result = queue.result(handle.id)
    """

    def __init__(self, max_finished: int = 1000, debug: bool = False):
        self._tasks: dict[str, asyncio.Task[Any]] = {}
        self._max_finished = max_finished
        self._debug = debug
        self._stats = TaskQueueStats()

    def enqueue(self, fn: Callable[[], Awaitable[Any]]) -> TaskHandle:
        """Schedule fn() on the running loop and return its handle."""
        task_id = uuid.uuid4().hex
        task = asyncio.get_running_loop().create_task(self._run(task_id, fn))
        self._tasks[task_id] = task
        self._stats.enqueued += 1
        self._log(f"ENQUEUE: {task_id[:8]}")
        self._prune_finished()
        return TaskHandle(id=task_id)

    def status(self, task_id: str) -> TaskStatus:
        task = self._get(task_id)
        if not task.done():
            return TaskStatus.PENDING
        if task.cancelled() or task.exception() is not None:
            return TaskStatus.FAILED
        return TaskStatus.COMPLETED

    def result(self, task_id: str) -> Any:
        """Return a finished task's result, re-raising its error if it failed."""
        task = self._get(task_id)
        if not task.done():
            raise RuntimeError(f"Background task '{task_id}' is still pending")
        return task.result()

    async def wait(self, task_id: str) -> Any:
        """Wait for a task and return its result."""
        return await asyncio.shield(self._get(task_id))

    async def cancel_all(self) -> int:
        """Cancel all pending tasks."""
        pending = [t for t in self._tasks.values() if not t.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            self._log(f"CANCEL_ALL: {len(pending)} tasks cancelled")
        return len(pending)

    def get_stats(self) -> "TaskQueueStats":
        self._stats.pending = sum(1 for t in self._tasks.values() if not t.done())
        return self._stats

    async def _run(self, task_id: str, fn: Callable[[], Awaitable[Any]]) -> Any:
        try:
            result = await fn()
        except Exception as e:
            self._stats.failed += 1
            logger.error(f"Background task {task_id[:8]} failed: {type(e).__name__}: {e}")
            raise
        self._stats.completed += 1
        self._log(f"DONE: {task_id[:8]}")
        return result

    def _get(self, task_id: str) -> asyncio.Task[Any]:
        task = self._tasks.get(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    def _prune_finished(self) -> None:
        """Forget the oldest finished tasks once more than max_finished are kept."""
        finished = [tid for tid, t in self._tasks.items() if t.done()]
        for task_id in finished[: max(0, len(finished) - self._max_finished)]:
            del self._tasks[task_id]

    def _log(self, message: str) -> None:
        """Log debug message if debug mode is enabled."""
        if self._debug:
            logger.debug(f"[TaskQueue] {message}")


class TaskQueueStats:
    """Statistics for background tasks."""

    def __init__(self):
        self.enqueued: int = 0
        self.completed: int = 0
        self.failed: int = 0
        self.pending: int = 0

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "enqueued": self.enqueued,
            "completed": self.completed,
            "failed": self.failed,
            "pending": self.pending,
        }
