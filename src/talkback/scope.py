"""Cancellable execution scope shared by all tasks of one session."""

import asyncio
import logging
from collections.abc import Coroutine
from typing import Any

logger = logging.getLogger(__name__)


class CancelScope:
    """Owns the background tasks of a session and stops them together.

    ``cancel()`` is idempotent: it sets the shared ``cancelled`` flag that every
    loop checks between bounded reads, then cancels the tasks so any await in
    progress is interrupted as well.
    """

    def __init__(self, name: str = "") -> None:
        self._name = name
        self._cancelled = asyncio.Event()
        self._tasks: set[asyncio.Task[Any]] = set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    @property
    def tasks(self) -> frozenset[asyncio.Task[Any]]:
        return frozenset(self._tasks)

    def spawn(self, coro: Coroutine[Any, Any, Any], name: str) -> asyncio.Task[Any]:
        """Start ``coro`` as a task owned by this scope.

        Raises:
            RuntimeError: If the scope was already cancelled
        """
        if self.cancelled:
            coro.close()
            raise RuntimeError(f"Cannot spawn '{name}' in cancelled scope {self._name}")

        task = asyncio.create_task(coro, name=f"{self._name}:{name}")
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)
        return task

    def _on_task_done(self, task: asyncio.Task[Any]) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "Session task failed",
                extra={"scope": self._name, "task": task.get_name(), "error": str(exc)},
                exc_info=exc,
            )

    def cancel(self) -> None:
        """Signal every task in the scope to stop. Safe to call repeatedly."""
        if self.cancelled:
            return
        self._cancelled.set()
        for task in self._tasks:
            task.cancel()

    async def wait(self, timeout: float | None = None) -> bool:
        """Wait for all tasks to finish.

        Args:
            timeout: Upper bound in seconds

        Returns:
            True if every task finished within the timeout
        """
        pending = [t for t in self._tasks if not t.done()]
        if not pending:
            return True

        _, still_pending = await asyncio.wait(pending, timeout=timeout)
        if still_pending:
            logger.warning(
                "Session tasks did not stop in time",
                extra={
                    "scope": self._name,
                    "tasks": sorted(t.get_name() for t in still_pending),
                },
            )
        return not still_pending

    async def sleep(self, delay: float) -> bool:
        """Sleep for ``delay`` seconds unless the scope is cancelled first.

        Returns:
            True if the scope was cancelled during the sleep
        """
        try:
            await asyncio.wait_for(self._cancelled.wait(), delay)
        except TimeoutError:
            return False
        return True
