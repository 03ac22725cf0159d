"""Cancellation token shared by a batch of agent calls.

A token covers one group turn or one discussion. Cancelling it cancels
every registered task and makes guarded callbacks no-ops, so nothing the
batch started can touch shared state afterwards.
"""

import asyncio
from functools import wraps
from typing import Any, Awaitable, Callable, Optional, TypeVar

from shared.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class CancellationToken:
    """
    Cooperative cancellation for the calls of one batch.

    Usage:
        token = CancellationToken()
        token.track(asyncio.create_task(call()))
        ...
        token.cancel()
    """

    def __init__(self, reason: Optional[str] = None) -> None:
        self._event = asyncio.Event()
        self._tasks: set[asyncio.Task] = set()
        self.reason = reason

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def track(self, task: asyncio.Task) -> asyncio.Task:
        """
        Register a task so that ``cancel()`` reaches it.

        A task registered after cancellation is cancelled immediately.
        """
        if self.cancelled:
            task.cancel()
            return task

        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def cancel(self, reason: Optional[str] = None) -> None:
        """Signal cancellation and cancel every pending registered task."""
        if self.cancelled:
            return

        self.reason = reason or self.reason
        self._event.set()

        pending = [t for t in self._tasks if not t.done()]
        for task in pending:
            task.cancel()

        logger.info("Batch cancelled", pending_tasks=len(pending), reason=self.reason)

    def raise_if_cancelled(self) -> None:
        """Raise ``asyncio.CancelledError`` if the token is set."""
        if self.cancelled:
            raise asyncio.CancelledError(self.reason)

    async def wait(self) -> None:
        """Block until the token is cancelled."""
        await self._event.wait()

    def guard(
        self,
        callback: Callable[..., Awaitable[T]]
    ) -> Callable[..., Awaitable[Optional[T]]]:
        """Wrap an async callback so it does nothing once the token is set."""

        @wraps(callback)
        async def guarded(*args: Any, **kwargs: Any) -> Optional[T]:
            if self.cancelled:
                return None
            return await callback(*args, **kwargs)

        return guarded
