from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Optional

logger = logging.getLogger(__name__)


class BackgroundTaskManager:
    """Own detached post-turn tasks for the lifetime of the application.

    Failures are logged and dropped, a background task never surfaces an
    exception to anyone. ``shutdown()`` cancels whatever is still running.
    """

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task] = set()
        self._closed = False

    def spawn(self, coro: Awaitable[None], *, name: str) -> Optional[asyncio.Task]:
        if self._closed:
            logger.warning("Background task %s dropped: manager is shut down", name)
            close = getattr(coro, "close", None)
            if close is not None:
                close()
            return None
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(lambda done: self._on_done(done, name))
        return task

    async def drain(self) -> None:
        """Wait for every task spawned so far to finish."""

        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self) -> None:
        """Cancel all active background tasks."""

        self._closed = True
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()

    @property
    def active_count(self) -> int:
        return len(self._tasks)

    def _on_done(self, task: asyncio.Task, name: str) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Background task %s failed", name, exc_info=exc)
