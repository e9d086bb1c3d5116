"""Tracked background work for fire-and-forget persistence and periodic sweeps."""

import asyncio
import logging
from typing import Awaitable, Callable, Optional, Set

logger = logging.getLogger(__name__)


class BackgroundTasks:
    """
    Owns the tasks a component spawns without awaiting.

    Failures are logged, never propagated to the caller that spawned them.
    ``drain()`` waits for everything still running; ``cancel()`` stops it.
    """

    def __init__(self, name: str):
        self.name = name
        self._tasks: Set[asyncio.Task] = set()

    def spawn(self, coro: Awaitable[None], description: str) -> Optional[asyncio.Task]:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # Nothing to schedule on; close the coroutine so it is not leaked
            coro.close()
            logger.warning(f"[{self.name}] No running event loop, dropped: {description}")
            return None

        task = loop.create_task(coro)
        task.set_name(f"{self.name}:{description}")
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"[{self.name}] Background task {task.get_name()} failed: {exc}")

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def cancel(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)


async def run_periodically(interval_seconds: float, sweep: Callable[[], Awaitable[object]], name: str) -> None:
    """Run ``sweep`` every ``interval_seconds`` until cancelled."""
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            await sweep()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Periodic sweep '{name}' failed: {e}", exc_info=True)
