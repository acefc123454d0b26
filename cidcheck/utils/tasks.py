"""Task helpers for tracking, cancelling and racing asyncio work."""

from __future__ import annotations

import asyncio
import contextlib
from typing import Any, Awaitable, Coroutine, TypeVar

from cidcheck.utils.exceptions import ProbeCancelledError

T = TypeVar("T")


class BackgroundTaskGroup:
    """Tracks background tasks for easier cancellation and cleanup."""

    def __init__(self) -> None:
        """Initialize empty task group."""
        self._tasks: set[asyncio.Task[Any]] = set()

    def __len__(self) -> int:
        return len(self._tasks)

    def create(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task[Any]:
        """Create and track an asyncio task from a coroutine."""
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def wait(self) -> None:
        """Wait until every tracked task (including ones added meanwhile) finishes."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def cancel_and_wait(self, timeout: float | None = None) -> None:
        """Cancel all tracked tasks and wait for completion (with optional timeout)."""
        if not self._tasks:
            return
        for t in list(self._tasks):
            if not t.done():
                t.cancel()
        if timeout is None:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        else:
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(
                    asyncio.gather(*self._tasks, return_exceptions=True),
                    timeout=timeout,
                )
        self._tasks.clear()


async def await_or_cancel(
    awaitable: Awaitable[T],
    cancel_event: asyncio.Event,
    timeout: float | None = None,
) -> T:
    """Await ``awaitable`` unless ``cancel_event`` fires or ``timeout`` elapses.

    Raises:
        ProbeCancelledError: ``cancel_event`` was set first.
        asyncio.TimeoutError: ``timeout`` elapsed first.

    The losing side is cancelled before returning, so no task outlives the
    call.
    """
    if cancel_event.is_set():
        if asyncio.iscoroutine(awaitable):
            awaitable.close()
        raise ProbeCancelledError("run cancelled")

    main = asyncio.ensure_future(awaitable)
    stopper = asyncio.ensure_future(cancel_event.wait())
    try:
        done, _ = await asyncio.wait(
            {main, stopper},
            timeout=timeout,
            return_when=asyncio.FIRST_COMPLETED,
        )
    finally:
        for task in (main, stopper):
            if not task.done():
                task.cancel()

    if main in done:
        return main.result()
    if stopper in done:
        raise ProbeCancelledError("run cancelled")
    raise asyncio.TimeoutError
