import asyncio
from typing import Callable, Coroutine, Optional


class DetachedTasks:
    """Holds fire-and-forget tasks until they finish so they are not collected mid-flight."""

    def __init__(self):
        self._tasks: set[asyncio.Task] = set()

    def __len__(self) -> int:
        return len(self._tasks)

    def spawn(self, coro: Coroutine, on_done: Callable[[asyncio.Task], None]) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        task.add_done_callback(on_done)
        return task

    async def drain(self, timeout: Optional[float] = None) -> None:
        if not self._tasks:
            return
        await asyncio.wait(set(self._tasks), timeout=timeout)


def task_failure(task: asyncio.Task) -> Optional[str]:
    """Why a finished task produced no result, or None if it did."""
    if task.cancelled():
        return "cancelled"
    exc = task.exception()
    return repr(exc) if exc is not None else None
