"""Tests for the post-transaction cache refresh coordinator."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from subnet_staking_engine.scheduling import DelayedTaskScheduler
from subnet_staking_engine.settlement import CacheRefreshCoordinator


@pytest.fixture
def builders() -> MagicMock:
    cache = MagicMock()
    cache.invalidate = MagicMock()
    cache.run_pass = AsyncMock()
    return cache


@pytest.fixture
def positions() -> MagicMock:
    cache = MagicMock()
    cache.invalidate = AsyncMock(return_value=1)
    cache.refresh = AsyncMock()
    return cache


class TestCacheRefreshCoordinator:
    """Tests for CacheRefreshCoordinator."""

    @pytest.mark.asyncio
    async def test_invalidates_immediately(self, builders: MagicMock, positions: MagicMock) -> None:
        scheduler = DelayedTaskScheduler()
        coordinator = CacheRefreshCoordinator(scheduler, builders=builders, positions=positions)

        scheduled = await coordinator.refresh_after("0xuser", "MOR", "0xsubnet")

        assert scheduled == 3
        builders.invalidate.assert_called_once_with()
        positions.invalidate.assert_awaited_once_with(user="0xuser", subnet_id="0xsubnet", asset_symbol="MOR")
        builders.run_pass.assert_not_awaited()
        assert scheduler.pending == 3
        await scheduler.aclose()

    @pytest.mark.asyncio
    async def test_staggered_refetches_run(self, builders: MagicMock, positions: MagicMock) -> None:
        scheduler = DelayedTaskScheduler()
        coordinator = CacheRefreshCoordinator(
            scheduler, builders=builders, positions=positions, delays_seconds=(0.0, 0.01)
        )

        await coordinator.refresh_after("0xuser", "MOR")
        await asyncio.sleep(0.1)

        assert builders.run_pass.await_count == 2
        assert positions.refresh.await_count == 2
        positions.refresh.assert_awaited_with("0xuser", None, "MOR")

    @pytest.mark.asyncio
    async def test_refetch_failure_contained(self, builders: MagicMock) -> None:
        builders.run_pass = AsyncMock(side_effect=RuntimeError("indexer down"))
        scheduler = DelayedTaskScheduler()
        coordinator = CacheRefreshCoordinator(scheduler, builders=builders, delays_seconds=(0.0,))

        await coordinator.refresh_after("0xuser", "MOR")
        await asyncio.sleep(0.05)

        builders.run_pass.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_without_caches(self) -> None:
        scheduler = DelayedTaskScheduler()
        coordinator = CacheRefreshCoordinator(scheduler, delays_seconds=())

        assert await coordinator.refresh_after("0xuser", "MOR") == 0
