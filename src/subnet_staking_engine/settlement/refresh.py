"""Post-transaction cache refresh.

Indexers lag the chain by a few seconds, so one refetch right after a
confirmation often returns the old state. The coordinator invalidates
immediately and then refetches on a short staggered schedule.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Any, Protocol

from subnet_staking_engine.scheduling import DelayedTaskScheduler

logger = logging.getLogger(__name__)

DEFAULT_DELAYS_SECONDS = (2.0, 4.0, 6.0)


class BuilderCache(Protocol):
    def invalidate(self) -> None: ...

    async def run_pass(self) -> Any: ...


class PositionCache(Protocol):
    async def invalidate(
        self,
        *,
        user: str | None = None,
        subnet_id: str | None = None,
        asset_symbol: str | None = None,
    ) -> int: ...

    async def refresh(self, user: str, subnet_id: str | None, asset_symbol: str) -> Any: ...


class CacheRefreshCoordinator:
    """Invalidates and re-fetches builder and position caches after a transaction."""

    def __init__(
        self,
        scheduler: DelayedTaskScheduler,
        *,
        builders: BuilderCache | None = None,
        positions: PositionCache | None = None,
        delays_seconds: Sequence[float] = DEFAULT_DELAYS_SECONDS,
    ) -> None:
        self._scheduler = scheduler
        self._builders = builders
        self._positions = positions
        self._delays = tuple(delays_seconds)

    async def invalidate(self, user: str, asset: str, subnet_id: str | None) -> None:
        if self._builders is not None:
            self._builders.invalidate()
        if self._positions is not None:
            await self._positions.invalidate(user=user, subnet_id=subnet_id, asset_symbol=asset)

    async def _refetch(self, user: str, asset: str, subnet_id: str | None) -> None:
        if self._builders is not None:
            await self._builders.run_pass()
        if self._positions is not None:
            await self._positions.refresh(user, subnet_id, asset)

    async def refresh_after(self, user: str, asset: str, subnet_id: str | None = None) -> int:
        """Invalidate now and schedule the staggered refetches.

        Returns:
            Number of refetches scheduled.
        """
        await self.invalidate(user, asset, subnet_id)
        for delay in self._delays:
            self._scheduler.schedule(
                delay,
                lambda: self._refetch(user, asset, subnet_id),
                name=f"refresh:{asset}:{user}:+{delay:g}s",
            )
        logger.debug("Scheduled %d refetches for %s/%s", len(self._delays), user, asset)
        return len(self._delays)
