"""Background task runners for out-of-band run execution.

The orchestrator only needs ``submit``; how and when the work runs is the
runner's business. ``BackgroundTaskRunner`` schedules asyncio tasks in the
serving process. ``DeferredTaskRunner`` queues work until ``drain`` is
awaited, which makes test interleavings deterministic.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Protocol

logger = logging.getLogger(__name__)

TaskFactory = Callable[[], Awaitable[None]]


class TaskRunner(Protocol):
    def submit(self, key: str, factory: TaskFactory) -> bool:
        """Schedule work under ``key``. Returns False if work for it is already pending."""
        ...

    def is_running(self, key: str) -> bool:
        ...

    async def drain(self) -> None:
        ...


class BackgroundTaskRunner:
    """Runs each submitted factory as an asyncio task.

    Submitting under a key whose task is still running chains the factory
    to run in the same task once the current one returns.
    """

    def __init__(self) -> None:
        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._followups: dict[str, TaskFactory] = {}

    def submit(self, key: str, factory: TaskFactory) -> bool:
        if self.is_running(key):
            if key in self._followups:
                return False
            self._followups[key] = factory
            return True
        task = asyncio.create_task(self._run(key, factory), name=f"payroll-run-{key}")
        self._tasks[key] = task
        task.add_done_callback(lambda t, k=key: self._forget(k, t))
        return True

    def is_running(self, key: str) -> bool:
        task = self._tasks.get(key)
        return task is not None and not task.done()

    async def drain(self) -> None:
        """Wait for every scheduled task to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)

    async def shutdown(self) -> None:
        """Cancel outstanding tasks; they resume from checkpoint on restart."""
        self._followups.clear()
        for task in list(self._tasks.values()):
            task.cancel()
        await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)
        self._tasks.clear()

    async def _run(self, key: str, factory: TaskFactory | None) -> None:
        while factory is not None:
            try:
                await factory()
            except asyncio.CancelledError:
                logger.info("background_task_cancelled", extra={"task_key": key})
                raise
            except Exception:
                logger.exception("Background task %s failed", key)
            factory = self._followups.pop(key, None)
            if factory is not None:
                logger.info("background_task_followup", extra={"task_key": key})

    def _forget(self, key: str, task: asyncio.Task[None]) -> None:
        if self._tasks.get(key) is task:
            del self._tasks[key]


class DeferredTaskRunner:
    """Queues submitted work and runs it, in order, when drained.

    Work submitted for a key that is currently running is queued behind it.
    """

    def __init__(self) -> None:
        self._queue: list[tuple[str, TaskFactory]] = []
        self._running: set[str] = set()

    def submit(self, key: str, factory: TaskFactory) -> bool:
        if any(k == key for k, _ in self._queue):
            return False
        self._queue.append((key, factory))
        return True

    def is_running(self, key: str) -> bool:
        return key in self._running or any(k == key for k, _ in self._queue)

    @property
    def pending(self) -> int:
        return len(self._queue)

    async def drain(self) -> None:
        while self._queue:
            key, factory = self._queue.pop(0)
            self._running.add(key)
            try:
                await factory()
            finally:
                self._running.discard(key)
