"""Balance arrival monitor for cross-chain claims.

After a claim confirms on its source network the rewards are minted on the
destination network some time later. The monitor polls the destination
balance at a fixed interval until it rises above the pre-claim baseline or
a hard timeout passes.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Protocol

from subnet_staking_engine.errors import StakingEngineError
from subnet_staking_engine.positions.chain import ChainClientError
from subnet_staking_engine.scheduling import PollCancelledError, PollTimeoutError, poll_until

logger = logging.getLogger(__name__)

# Default configuration
DEFAULT_INTERVAL_SECONDS = 5.0
DEFAULT_TIMEOUT_SECONDS = 300.0


class BalanceSource(Protocol):
    async def get_balance(self, address: str, token_address: str, network_id: str) -> int: ...


class ArrivalOutcome(str, Enum):
    """How a monitoring run ended."""

    ARRIVED = "arrived"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class ArrivalResult:
    outcome: ArrivalOutcome
    delta: int = 0
    balance: int | None = None


ArrivedCallback = Callable[[int], None]
TimedOutCallback = Callable[[], None]


class BalanceArrivalMonitor:
    """Watches destination balances; at most one watch per (user, asset).

    Example:
        ```python
        monitor = BalanceArrivalMonitor(chain_clients)
        task = monitor.watch("0xUser...", "MOR", token, "arbitrum", baseline=before)
        result = await task
        if result.outcome is ArrivalOutcome.ARRIVED:
            print("received", result.delta)
        ```
    """

    def __init__(
        self,
        balances: BalanceSource,
        *,
        interval_seconds: float = DEFAULT_INTERVAL_SECONDS,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
    ) -> None:
        self._balances = balances
        self._interval = interval_seconds
        self._timeout = timeout_seconds
        self._active: dict[tuple[str, str], asyncio.Task[ArrivalResult]] = {}

    @property
    def timeout_seconds(self) -> float:
        return self._timeout

    def is_watching(self, user: str, asset: str) -> bool:
        task = self._active.get((user.lower(), asset))
        return task is not None and not task.done()

    def watch(
        self,
        user: str,
        asset: str,
        token_address: str,
        network_id: str,
        baseline: int,
        *,
        on_arrived: ArrivedCallback | None = None,
        on_timed_out: TimedOutCallback | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> asyncio.Task[ArrivalResult]:
        """Start watching, cancelling any earlier watch for the same user and asset."""
        key = (user.lower(), asset)
        previous = self._active.pop(key, None)
        if previous is not None and not previous.done():
            logger.info("Replacing balance monitor for %s/%s", user, asset)
            previous.cancel()

        task = asyncio.create_task(
            self._run(user, token_address, network_id, baseline, on_arrived, on_timed_out, cancel_event),
            name=f"balance-monitor:{asset}:{user}",
        )
        self._active[key] = task

        def _forget(done: asyncio.Task[ArrivalResult]) -> None:
            if self._active.get(key) is done:
                del self._active[key]

        task.add_done_callback(_forget)
        return task

    async def _run(
        self,
        user: str,
        token_address: str,
        network_id: str,
        baseline: int,
        on_arrived: ArrivedCallback | None,
        on_timed_out: TimedOutCallback | None,
        cancel_event: asyncio.Event | None,
    ) -> ArrivalResult:
        async def check() -> int | None:
            try:
                balance = await self._balances.get_balance(user, token_address, network_id)
            except (ChainClientError, StakingEngineError) as e:
                logger.warning("Balance read on %s failed, will retry: %s", network_id, e)
                return None
            logger.debug("Balance on %s for %s: %d (baseline %d)", network_id, user, balance, baseline)
            return balance if balance > baseline else None

        try:
            balance = await poll_until(
                check,
                interval=self._interval,
                timeout=self._timeout,
                cancel_event=cancel_event,
            )
        except PollTimeoutError:
            logger.warning("No balance increase on %s for %s after %.0fs", network_id, user, self._timeout)
            if on_timed_out:
                try:
                    on_timed_out()
                except Exception as e:
                    logger.warning(f"Timed-out callback failed: {e}")
            return ArrivalResult(ArrivalOutcome.TIMED_OUT)
        except PollCancelledError:
            return ArrivalResult(ArrivalOutcome.CANCELLED)

        delta = balance - baseline
        logger.info("Detected %d arriving on %s for %s", delta, network_id, user)
        if on_arrived:
            try:
                on_arrived(delta)
            except Exception as e:
                logger.warning(f"Arrived callback failed: {e}")
        return ArrivalResult(ArrivalOutcome.ARRIVED, delta=delta, balance=balance)

    async def aclose(self) -> None:
        """Cancel every active watch."""
        tasks = list(self._active.values())
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._active.clear()
