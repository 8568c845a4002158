"""Staking position reader.

Reads per-user contract state for a (subnet, asset) pair and keeps the
results in an in-memory snapshot that is replaced, never mutated, so
readers never block on a refresh. Redis is used as an optional shared
cache in front of the contracts.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import Mapping, Sequence
from typing import Any

from redis.asyncio import Redis

from subnet_staking_engine.config import AssetConfig
from subnet_staking_engine.errors import PositionReadError, TransactionReverted
from subnet_staking_engine.positions.calculator import evaluate_eligibility
from subnet_staking_engine.positions.chain import ChainClientError, ChainClients
from subnet_staking_engine.positions.contracts import ContractCall, subnet_id_bytes
from subnet_staking_engine.positions.models import Eligibility, LockConfig, StakePosition

logger = logging.getLogger(__name__)

DEFAULT_POSITION_CACHE_TTL_SECONDS = 30
DEFAULT_MAX_CONCURRENT_READS = 8

PositionKey = tuple[str, str, str]  # (user, subnet, asset)


class StakePositionReader:
    """Reads `StakePosition`s and `LockConfig`s from the staking contracts.

    Example:
        ```python
        reader = StakePositionReader(chain_clients, settings.assets.assets, redis=redis)
        position = await reader.get_position("0xUser...", "0xSubnet...", "MOR")
        eligibility = await reader.get_eligibility("0xUser...", "0xSubnet...", "MOR")
        ```
    """

    def __init__(
        self,
        chain: ChainClients,
        assets: Mapping[str, AssetConfig],
        *,
        redis: Redis | None = None,
        cache_ttl_seconds: int = DEFAULT_POSITION_CACHE_TTL_SECONDS,
        max_concurrent_reads: int = DEFAULT_MAX_CONCURRENT_READS,
    ) -> None:
        self._chain = chain
        self._assets = dict(assets)
        self._redis = redis
        self._cache_ttl = cache_ttl_seconds
        self._semaphore = asyncio.Semaphore(max_concurrent_reads)
        self._positions: Mapping[PositionKey, StakePosition] = {}
        self._lock_configs: Mapping[tuple[str, str], LockConfig] = {}

    def asset(self, symbol: str) -> AssetConfig:
        try:
            return self._assets[symbol]
        except KeyError:
            raise PositionReadError(f"Unknown asset: {symbol}") from None

    @staticmethod
    def subnet_key(asset: AssetConfig, subnet_id: str | None) -> str:
        """Identifier of the pool a position lives in (the subnet id, or the pool index)."""
        if asset.contract_style == "builders":
            if not subnet_id:
                raise PositionReadError(f"{asset.symbol} positions require a subnet id")
            return subnet_id.lower()
        return subnet_id.lower() if subnet_id else f"pool-{asset.pool_index}"

    def _redis_key(self, key: PositionKey) -> str:
        user, subnet, asset = key
        return f"staking:position:{asset}:{subnet}:{user.lower()}"

    async def _get_cached(self, key: PositionKey) -> StakePosition | None:
        if self._redis is None:
            return None
        try:
            raw = await self._redis.get(self._redis_key(key))
        except Exception as e:
            logger.warning("Position cache get failed: %s", e)
            return None
        if not raw:
            return None
        try:
            return StakePosition.from_dict(json.loads(raw))
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            logger.warning("Failed to parse cached position %s: %s", key, e)
            return None

    async def _set_cached(self, key: PositionKey, position: StakePosition) -> None:
        if self._redis is None:
            return
        try:
            await self._redis.set(self._redis_key(key), json.dumps(position.to_dict()), ex=self._cache_ttl)
        except Exception as e:
            logger.warning("Position cache set failed: %s", e)

    async def _call(self, call: ContractCall) -> Any:
        async with self._semaphore:
            try:
                return await self._chain.call(call)
            except (ChainClientError, TransactionReverted) as e:
                raise PositionReadError(f"{call.describe()} failed: {e}") from e

    async def _read_deposit_pool(self, user: str, subnet: str, asset: AssetConfig) -> tuple[StakePosition, LockConfig]:
        contract = asset.staking_contract
        data, reward, details = await asyncio.gather(
            self._call(ContractCall(asset.network, contract, "deposit_pool", "usersData", (user, asset.pool_index))),
            self._call(
                ContractCall(asset.network, contract, "deposit_pool", "getLatestUserReward", (asset.pool_index, user))
            ),
            self._call(
                ContractCall(asset.network, contract, "deposit_pool", "rewardPoolsProtocolDetails", (asset.pool_index,))
            ),
        )
        position = StakePosition(
            user=user,
            subnet_id=subnet,
            asset=asset.symbol,
            deposited=int(data[1]),
            virtual_deposited=int(data[6]),
            last_stake_timestamp=int(data[0]),
            claim_lock_start=int(data[4]),
            claim_lock_end=int(data[5]),
            last_claim_timestamp=int(data[7]),
            pending_reward=int(reward),
        )
        config = LockConfig(
            payout_start=asset.payout_start,
            withdraw_lock_period=asset.withdraw_lock_period,
            claim_lock_period=asset.claim_lock_period,
            withdraw_lock_period_after_deposit=int(details[0]),
            claim_lock_period_after_stake=int(details[1]),
            claim_lock_period_after_claim=int(details[2]),
        )
        return position, config

    async def _read_builders(self, user: str, subnet: str, asset: AssetConfig) -> tuple[StakePosition, LockConfig]:
        contract = asset.staking_contract
        pool_id = subnet_id_bytes(subnet)
        data, pool = await asyncio.gather(
            self._call(ContractCall(asset.network, contract, "builders", "usersData", (user, pool_id))),
            self._call(ContractCall(asset.network, contract, "builders", "builderPools", (pool_id,))),
        )
        pool_start, claim_lock_end = int(pool[2]), int(pool[4])
        pending = 0
        if str(pool[1]).lower() == user.lower():
            # Builder rewards accrue to the pool admin.
            pending = int(
                await self._call(
                    ContractCall(asset.network, contract, "builders", "getCurrentBuilderReward", (pool_id,))
                )
            )
        position = StakePosition(
            user=user,
            subnet_id=subnet,
            asset=asset.symbol,
            deposited=int(data[2]),
            virtual_deposited=int(data[3]),
            last_stake_timestamp=int(data[0]),
            claim_lock_start=int(data[1]),
            claim_lock_end=claim_lock_end,
            pending_reward=pending,
        )
        config = LockConfig(
            payout_start=pool_start,
            withdraw_lock_period_after_deposit=int(pool[3]),
            claim_lock_period=max(0, claim_lock_end - pool_start),
        )
        return position, config

    async def _read(self, user: str, subnet: str, asset: AssetConfig) -> tuple[StakePosition, LockConfig]:
        if asset.contract_style == "builders":
            return await self._read_builders(user, subnet, asset)
        return await self._read_deposit_pool(user, subnet, asset)

    def _store(self, key: PositionKey, position: StakePosition, config: LockConfig) -> None:
        self._positions = {**self._positions, key: position}
        self._lock_configs = {**self._lock_configs, (key[1], key[2]): config}

    async def refresh(self, user: str, subnet_id: str | None, asset_symbol: str) -> StakePosition:
        """Read a position from the contracts, bypassing every cache."""
        asset = self.asset(asset_symbol)
        key = (user.lower(), self.subnet_key(asset, subnet_id), asset.symbol)
        position, config = await self._read(user, key[1], asset)
        self._store(key, position, config)
        await self._set_cached(key, position)
        return position

    async def get_position(self, user: str, subnet_id: str | None, asset_symbol: str) -> StakePosition:
        """Cache-first position lookup.

        Raises:
            PositionReadError: If the contracts cannot be read.
        """
        asset = self.asset(asset_symbol)
        key = (user.lower(), self.subnet_key(asset, subnet_id), asset.symbol)
        position = self._positions.get(key)
        if position is not None:
            return position
        position = await self._get_cached(key)
        if position is not None and (key[1], key[2]) in self._lock_configs:
            self._positions = {**self._positions, key: position}
            return position
        return await self.refresh(user, subnet_id, asset_symbol)

    async def get_positions(
        self,
        user: str,
        targets: Sequence[tuple[str | None, str]],
    ) -> dict[tuple[str | None, str], StakePosition]:
        """Read several (subnet, asset) positions concurrently; failed reads are omitted and logged."""
        results = await asyncio.gather(
            *(self.get_position(user, subnet, asset) for subnet, asset in targets),
            return_exceptions=True,
        )
        positions: dict[tuple[str | None, str], StakePosition] = {}
        for target, result in zip(targets, results, strict=True):
            if isinstance(result, BaseException):
                logger.warning("Position read failed for %s %s: %s", user, target, result)
                continue
            positions[target] = result
        return positions

    async def get_lock_config(self, user: str, subnet_id: str | None, asset_symbol: str) -> LockConfig:
        asset = self.asset(asset_symbol)
        subnet = self.subnet_key(asset, subnet_id)
        config = self._lock_configs.get((subnet, asset.symbol))
        if config is None:
            await self.refresh(user, subnet_id, asset_symbol)
            config = self._lock_configs[(subnet, asset.symbol)]
        return config

    async def get_eligibility(
        self,
        user: str,
        subnet_id: str | None,
        asset_symbol: str,
        *,
        now: int | None = None,
    ) -> Eligibility:
        position = await self.get_position(user, subnet_id, asset_symbol)
        config = await self.get_lock_config(user, subnet_id, asset_symbol)
        return evaluate_eligibility(position, config, int(time.time()) if now is None else now)

    async def invalidate(
        self,
        *,
        user: str | None = None,
        subnet_id: str | None = None,
        asset_symbol: str | None = None,
    ) -> int:
        """Drop cached positions matching every given field; returns how many were dropped."""
        subnet = subnet_id.lower() if subnet_id else None

        def matches(key: PositionKey) -> bool:
            return (
                (user is None or key[0] == user.lower())
                and (subnet is None or key[1] == subnet)
                and (asset_symbol is None or key[2] == asset_symbol)
            )

        dropped = [k for k in self._positions if matches(k)]
        self._positions = {k: v for k, v in self._positions.items() if not matches(k)}

        redis_keys = {self._redis_key(k) for k in dropped}
        if user is not None and asset_symbol in self._assets:
            asset = self._assets[asset_symbol]
            if asset.contract_style != "builders" or subnet_id:
                redis_keys.add(self._redis_key((user.lower(), self.subnet_key(asset, subnet_id), asset_symbol)))
        if self._redis is not None and redis_keys:
            try:
                await self._redis.delete(*redis_keys)
            except Exception as e:
                logger.warning("Position cache delete failed: %s", e)
        return len(dropped)
