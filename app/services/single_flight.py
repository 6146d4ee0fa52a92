"""Coalesce concurrent identical work onto one in-flight task."""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Generic, TypeVar

T = TypeVar("T")


class SingleFlight(Generic[T]):
    """Run at most one task per key; later callers await the same task.

    The key is forgotten as soon as the task settles, whatever the outcome.
    Callers wait through :func:`asyncio.shield`, so a caller that times out
    or is cancelled leaves the shared task running for everyone else.
    """

    def __init__(self) -> None:
        self._tasks: dict[str, asyncio.Task[T]] = {}

    def __contains__(self, key: object) -> bool:
        return key in self._tasks

    def __len__(self) -> int:
        return len(self._tasks)

    def task_for(self, key: str, factory: Callable[[], Awaitable[T]]) -> asyncio.Task[T]:
        task = self._tasks.get(key)
        if task is None:
            task = asyncio.ensure_future(factory())
            self._tasks[key] = task
            task.add_done_callback(lambda done, key=key: self._forget(key, done))
        return task

    async def run(
        self,
        key: str,
        factory: Callable[[], Awaitable[T]],
        *,
        timeout: float | None = None,
    ) -> T:
        """Join (or start) the task for ``key`` and wait up to ``timeout`` seconds."""

        task = self.task_for(key, factory)
        if timeout is None:
            return await asyncio.shield(task)
        return await asyncio.wait_for(asyncio.shield(task), timeout)

    def _forget(self, key: str, task: asyncio.Task[T]) -> None:
        if self._tasks.get(key) is task:
            del self._tasks[key]
        # Mark the outcome as retrieved when every waiter has given up.
        if not task.cancelled():
            task.exception()

    async def cancel_all(self) -> None:
        """Cancel every in-flight task and wait for them to unwind."""

        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
