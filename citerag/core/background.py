"""
Supervised fire-and-forget tasks (e.g. saving chat messages after a response).

The response path never awaits these; failures are logged here and never reach the client.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)


class BackgroundDispatcher:
    """Keeps strong references to detached tasks and logs how each one ended."""

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task] = set()

    def dispatch(self, name: str, fn: Callable[..., Any], *args: Any) -> asyncio.Task:
        """
        Schedule fn(*args) on the running loop. Coroutine functions are awaited;
        plain callables run in a worker thread.
        """
        if asyncio.iscoroutinefunction(fn):
            coro: Awaitable[Any] = fn(*args)
        else:
            coro = asyncio.to_thread(fn, *args)
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            logger.warning("[background] task=%s cancelled", task.get_name())
            return
        exc = task.exception()
        if exc is not None:
            logger.error("[background] task=%s failed: %s", task.get_name(), exc, exc_info=exc)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait for all pending tasks (used on shutdown and in tests)."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
