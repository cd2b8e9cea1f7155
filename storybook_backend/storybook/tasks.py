import asyncio, logging
from typing import Awaitable, Optional, Set

logger = logging.getLogger(__name__)


class TaskSupervisor:
    """
    Owner of the pipeline's background tasks.

    asyncio only keeps weak references to running tasks, so every spawned
    task is held here until it finishes. A task that dies with an exception
    is logged instead of vanishing with "Task exception was never retrieved".
    """

    def __init__(self):
        self._tasks: Set[asyncio.Task] = set()

    def spawn(self, coro: Awaitable, name: Optional[str] = None) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        if name:
            task.set_name(name)
        self._tasks.add(task)
        task.add_done_callback(self._finished)
        return task

    def _finished(self, task: asyncio.Task):
        self._tasks.discard(task)
        if task.cancelled():
            logger.warning(f"Background task {task.get_name()} was cancelled")
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Background task {task.get_name()} failed: {exc!r}", exc_info=exc)

    async def join(self):
        """Wait for every task spawned so far, including ones spawned while waiting."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def __len__(self) -> int:
        return len(self._tasks)
