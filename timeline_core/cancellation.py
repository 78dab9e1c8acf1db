"""
================================================================================
COOPERATIVE TASK MODULE
================================================================================
Cancellation tokens and a small task wrapper for long-running engine work
(FPS detection, sprite generation).

Everything runs on one asyncio event loop. Cancellation is cooperative:
loops check their token each iteration, and pending awaits are interrupted
through asyncio task cancellation. Cancelling twice is always safe.
================================================================================
"""

import asyncio
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, List, Optional

logger = logging.getLogger(__name__)


class TaskStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    DONE = "done"
    CANCELLED = "cancelled"
    FAILED = "failed"


class CancellationToken:
    """
    Shared abort flag with callbacks.

    Example:
        >>> token = CancellationToken()
        >>> token.cancel()
        >>> token.cancelled
        True
    """

    def __init__(self):
        self._cancelled = False
        self._callbacks: List[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            callback()

    def add_callback(self, callback: Callable[[], None]) -> None:
        """Run callback on cancel (immediately if already cancelled)."""
        if self._cancelled:
            callback()
        else:
            self._callbacks.append(callback)

    def remove_callback(self, callback: Callable[[], None]) -> None:
        if callback in self._callbacks:
            self._callbacks.remove(callback)

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise asyncio.CancelledError()


class CancellableTask:
    """
    An asyncio task paired with a cancellation token.

    The coroutine factory receives the token so it can poll it between
    awaits. ``cancel()`` flips the token and cancels the underlying task,
    which interrupts whatever the coroutine is currently awaiting.

    Example:
        >>> task = CancellableTask(lambda token: generator.generate(source, token))
        >>> task.cancel()
        >>> await task.wait()   # -> None
    """

    def __init__(
        self,
        factory: Callable[[CancellationToken], Awaitable[Any]],
        name: Optional[str] = None,
    ):
        self.token = CancellationToken()
        self.name = name or "task"
        self.status = TaskStatus.RUNNING
        self.error: Optional[BaseException] = None
        self._task: asyncio.Task = asyncio.ensure_future(factory(self.token))
        self._task.add_done_callback(self._on_done)

    def _on_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            self.status = TaskStatus.CANCELLED
            return
        error = task.exception()
        if error is None:
            self.status = TaskStatus.DONE
        elif isinstance(error, asyncio.CancelledError):
            self.status = TaskStatus.CANCELLED
        else:
            self.status = TaskStatus.FAILED
            self.error = error
            logger.debug("Task %s failed: %s", self.name, error)

    @property
    def done(self) -> bool:
        return self._task.done()

    @property
    def cancelled(self) -> bool:
        return self.token.cancelled

    def cancel(self) -> None:
        """Request cancellation. Idempotent."""
        if self.token.cancelled and self._task.done():
            return
        self.token.cancel()
        if not self._task.done():
            self._task.cancel()

    async def wait(self) -> Any:
        """
        Wait for completion.

        Returns:
            The coroutine's result, or None when the task was cancelled.

        Raises:
            Whatever the coroutine raised when it failed.
        """
        try:
            return await asyncio.shield(self._task)
        except asyncio.CancelledError:
            if self._task.cancelled() or self.token.cancelled:
                return None
            raise
