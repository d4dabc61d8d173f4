"""Single-flight registry for in-progress operations.

Maps a resource key (``account:id`` for message details) to the asyncio task
doing the work. A second caller for the same key joins the existing task
instead of starting a duplicate fetch.

The registry entry is removed exactly once, when the task settles. Removal is
identity-guarded: after ``clear()`` (account switch) a late-finishing task
must not evict a newer task registered under the same key.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Coroutine
from typing import Any, Generic, TypeVar

from mailsync.core.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class InFlightRegistry(Generic[T]):
    """Registry of pending operations keyed by resource identity.

    Example:
        registry: InFlightRegistry[dict] = InFlightRegistry("message_detail")

        existing = registry.get(key)
        if existing is not None:
            await InFlightRegistry.join(existing)
        else:
            task = registry.start(key, lambda: fetch(key))
            result = await InFlightRegistry.join(task)
    """

    def __init__(self, name: str = "inflight"):
        self.name = name
        self._tasks: dict[str, asyncio.Task[T]] = {}

    def get(self, key: str) -> asyncio.Task[T] | None:
        """Return the pending task for ``key``, if any."""
        return self._tasks.get(key)

    def start(self, key: str, factory: Callable[[], Coroutine[Any, Any, T]]) -> asyncio.Task[T]:
        """Start ``factory()`` as a task and register it under ``key``.

        If a task is already registered for the key it is returned unchanged
        and ``factory`` is not called.
        """
        existing = self._tasks.get(key)
        if existing is not None:
            return existing

        task = asyncio.ensure_future(factory())
        self._tasks[key] = task
        task.add_done_callback(lambda done, k=key: self._settle(k, done))
        logger.debug("inflight_started", registry=self.name, key=key, pending=len(self._tasks))
        return task

    def _settle(self, key: str, task: asyncio.Task[T]) -> None:
        # Only remove the entry if it still points at this task
        if self._tasks.get(key) is task:
            del self._tasks[key]
        if not task.cancelled() and task.exception() is not None:
            logger.debug(
                "inflight_failed",
                registry=self.name,
                key=key,
                error=str(task.exception()),
            )

    @staticmethod
    async def join(task: asyncio.Task[T]) -> T:
        """Await a shared task without letting one caller's cancellation kill it."""
        return await asyncio.shield(task)

    def clear(self) -> None:
        """Forget every pending entry. The tasks themselves keep running."""
        if self._tasks:
            logger.debug("inflight_cleared", registry=self.name, dropped=len(self._tasks))
        self._tasks.clear()

    def __contains__(self, key: object) -> bool:
        return key in self._tasks

    def __len__(self) -> int:
        return len(self._tasks)
