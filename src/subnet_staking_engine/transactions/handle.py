"""Caller-facing handle for a running transaction intent."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable, Generator

from subnet_staking_engine.transactions.models import IntentEvent, IntentState, TransactionIntent

logger = logging.getLogger(__name__)

TransitionCallback = Callable[[IntentEvent], None]
ResumeFn = Callable[[], Awaitable[None]]


class IntentHandle:
    """Observe, await, cancel and resume one transaction intent.

    Transitions are delivered to callbacks registered with `on_transition`
    and to every active `async for` iterator. Awaiting the handle returns a
    copy of the intent once it finishes; failures are reported on
    `intent.error` rather than raised.

    Example:
        ```python
        handle = await engine.deposit(user, "MOR", 10**18, subnet_id=subnet)
        async for event in handle:
            print(event.state)
        intent = await handle
        intent.raise_for_error()
        ```
    """

    def __init__(self, intent: TransactionIntent) -> None:
        self._intent = intent.snapshot()
        self._events: list[IntentEvent] = []
        self._callbacks: list[TransitionCallback] = []
        self._queues: list[asyncio.Queue[IntentEvent | None]] = []
        self._done = asyncio.Event()
        self._cancel_event = asyncio.Event()
        self._task: asyncio.Task[None] | None = None
        self._resume: ResumeFn | None = None
        if self._intent.is_finished:
            self._done.set()

    @property
    def intent(self) -> TransactionIntent:
        return self._intent.snapshot()

    @property
    def intent_id(self) -> str:
        return self._intent.intent_id

    @property
    def state(self) -> IntentState:
        return self._intent.state

    @property
    def events(self) -> list[IntentEvent]:
        return list(self._events)

    @property
    def done(self) -> bool:
        return self._done.is_set()

    @property
    def cancel_event(self) -> asyncio.Event:
        return self._cancel_event

    def on_transition(self, callback: TransitionCallback) -> Callable[[], None]:
        """Register a transition callback; returns an unsubscribe function."""
        self._callbacks.append(callback)

        def unsubscribe() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return unsubscribe

    def _attach(self, task: asyncio.Task[None], resume: ResumeFn | None) -> None:
        self._task = task
        self._resume = resume

    def _emit(self, event: IntentEvent) -> None:
        self._intent = event.intent
        self._events.append(event)
        for callback in list(self._callbacks):
            try:
                callback(event)
            except Exception as e:
                logger.warning(f"Transition callback failed: {e}")
        for queue in self._queues:
            queue.put_nowait(event)
        if event.intent.is_finished:
            self._finish()

    def _finish(self) -> None:
        self._done.set()
        for queue in self._queues:
            queue.put_nowait(None)

    async def _iterate(self) -> AsyncIterator[IntentEvent]:
        queue: asyncio.Queue[IntentEvent | None] = asyncio.Queue()
        for event in self._events:
            queue.put_nowait(event)
        if self._done.is_set():
            queue.put_nowait(None)
        self._queues.append(queue)
        try:
            while True:
                event = await queue.get()
                if event is None:
                    return
                yield event
        finally:
            self._queues.remove(queue)

    def __aiter__(self) -> AsyncIterator[IntentEvent]:
        return self._iterate()

    async def result(self) -> TransactionIntent:
        """Wait until the intent finishes and return a copy of it."""
        await self._done.wait()
        return self.intent

    def __await__(self) -> Generator[None, None, TransactionIntent]:
        return self.result().__await__()

    def cancel(self) -> bool:
        """Ask the orchestrator to abandon the flow.

        Returns:
            False if the intent had already finished.
        """
        if self._done.is_set():
            return False
        self._cancel_event.set()
        return True

    async def poll_again(self) -> IntentHandle:
        """Resume waiting for a receipt after a confirmation timeout.

        Raises:
            RuntimeError: If the intent is not in the confirmation-timeout state.
        """
        if self._intent.state != IntentState.CONFIRMATION_TIMEOUT or self._resume is None:
            raise RuntimeError(f"Cannot poll again from state {self._intent.state.value}")
        self._done.clear()
        self._cancel_event.clear()
        try:
            await self._resume()
        except Exception:
            self._done.set()
            raise
        return self
