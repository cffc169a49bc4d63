"""Handler tasks spawned off a connection's read loop."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Coroutine
from typing import Any

logger = logging.getLogger(__name__)


class TaskSet:
    """Runs handlers as tasks so the read loop keeps reading.

    Tasks are held until they finish. Failures are logged, never raised.
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self._tasks: set[asyncio.Task[Any]] = set()

    def __len__(self) -> int:
        return len(self._tasks)

    def spawn(self, coro: Coroutine[Any, Any, Any], label: str) -> asyncio.Task[Any]:
        task = asyncio.create_task(coro, name=f"{self.name}:{label}")
        self._tasks.add(task)
        task.add_done_callback(self._finished)
        return task

    def cancel_all(self) -> int:
        if not self._tasks:
            return 0
        current = asyncio.current_task()
        cancelled = 0
        for task in list(self._tasks):
            if task is not current and not task.done():
                task.cancel()
                cancelled += 1
        if cancelled:
            logger.debug(f"[{self.name}] cancelled {cancelled} handler task(s)")
        return cancelled

    async def join(self) -> None:
        """Wait for the tasks running right now."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _finished(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"[{self.name}] {task.get_name()} failed: {error!r}", exc_info=error)
