"""Bounded polling and delayed task scheduling.

`poll_until` is the single polling primitive used for receipt confirmation,
allowance checks after an approval, and the balance arrival monitor.
`DelayedTaskScheduler` runs fire-and-forget coroutines after a delay and can
cancel them as a group.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections.abc import Awaitable, Callable
from typing import TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class PollTimeoutError(Exception):
    """Raised when a bounded poll exceeds its timeout."""

    def __init__(self, timeout_seconds: float, attempts: int) -> None:
        super().__init__(f"Condition not met after {timeout_seconds:.1f}s ({attempts} attempts)")
        self.timeout_seconds = timeout_seconds
        self.attempts = attempts


class PollCancelledError(Exception):
    """Raised when the cancellation event fires during a bounded poll."""


async def poll_until(
    check: Callable[[], Awaitable[T | None]],
    *,
    interval: float,
    timeout: float,
    cancel_event: asyncio.Event | None = None,
    max_attempts: int | None = None,
) -> T:
    """Call `check` at a fixed interval until it returns a non-None value.

    The first check runs immediately. There is no backoff: the interval is
    fixed and the timeout is a hard wall-clock bound.

    Args:
        check: Coroutine factory returning a value when done, or None to keep polling.
        interval: Seconds between checks.
        timeout: Total seconds before giving up.
        cancel_event: Optional event; when set the poll stops with PollCancelledError.
        max_attempts: Optional cap on the number of checks.

    Returns:
        The first non-None value returned by `check`.

    Raises:
        PollTimeoutError: If the timeout or attempt cap is reached first.
        PollCancelledError: If `cancel_event` is set.
    """
    if interval <= 0:
        raise ValueError("interval must be > 0")
    if timeout < 0:
        raise ValueError("timeout must be >= 0")

    deadline = time.monotonic() + timeout
    attempts = 0
    while True:
        if cancel_event is not None and cancel_event.is_set():
            raise PollCancelledError("poll cancelled")

        attempts += 1
        result = await check()
        if result is not None:
            return result

        remaining = deadline - time.monotonic()
        if remaining <= 0 or (max_attempts is not None and attempts >= max_attempts):
            raise PollTimeoutError(timeout, attempts)

        sleep_for = min(interval, remaining)
        logger.debug("Poll attempt %d pending, next check in %.2fs", attempts, sleep_for)
        if cancel_event is None:
            await asyncio.sleep(sleep_for)
            continue
        try:
            await asyncio.wait_for(cancel_event.wait(), timeout=sleep_for)
            raise PollCancelledError("poll cancelled")
        except TimeoutError:
            pass


class DelayedTaskScheduler:
    """Runs coroutines after a delay as tracked background tasks.

    Failures inside a scheduled coroutine are logged and never propagate to
    whoever scheduled it.

    Example:
        ```python
        scheduler = DelayedTaskScheduler()
        scheduler.schedule(2.0, refresh_builders, name="refresh+2s")
        ...
        await scheduler.aclose()
        ```
    """

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def pending(self) -> int:
        """Number of scheduled tasks that have not finished."""
        return sum(1 for t in self._tasks if not t.done())

    def schedule(
        self,
        delay_seconds: float,
        factory: Callable[[], Awaitable[None]],
        *,
        name: str | None = None,
    ) -> asyncio.Task[None]:
        """Schedule `factory()` to run after `delay_seconds`."""
        if delay_seconds < 0:
            raise ValueError("delay_seconds must be >= 0")

        async def runner() -> None:
            if delay_seconds:
                await asyncio.sleep(delay_seconds)
            try:
                await factory()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning("Scheduled task %s failed: %s", name or "<unnamed>", e)

        task = asyncio.create_task(runner(), name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def cancel_all(self) -> int:
        """Cancel every pending task. Returns the number cancelled."""
        cancelled = 0
        for task in list(self._tasks):
            if not task.done():
                task.cancel()
                cancelled += 1
        return cancelled

    async def aclose(self) -> None:
        """Cancel pending tasks and wait for them to unwind."""
        tasks = list(self._tasks)
        self.cancel_all()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._tasks.clear()
