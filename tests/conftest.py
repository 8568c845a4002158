"""Pytest configuration and fixtures."""

from unittest.mock import AsyncMock

import pytest

from subnet_staking_engine.config import AssetConfig

USER = "0x1111111111111111111111111111111111111111"
TOKEN = "0x2222222222222222222222222222222222222222"
POOL = "0x3333333333333333333333333333333333333333"
BUILDERS = "0x4444444444444444444444444444444444444444"
REWARD_TOKEN = "0x5555555555555555555555555555555555555555"


@pytest.fixture
def user_address() -> str:
    """Sample wallet address for testing."""
    return USER


@pytest.fixture
def deposit_pool_asset() -> AssetConfig:
    """Deposit-pool style asset whose rewards are minted on another network."""
    return AssetConfig(
        symbol="stETH",
        network="ethereum",
        token_address=TOKEN,
        staking_contract=POOL,
        contract_style="deposit_pool",
        decimals=18,
        pool_index=0,
        reward_network="arbitrum",
        reward_token_address=REWARD_TOKEN,
    )


@pytest.fixture
def builders_asset() -> AssetConfig:
    """Builders style asset staked per subnet on a single network."""
    return AssetConfig(
        symbol="MOR",
        network="base",
        token_address=TOKEN,
        staking_contract=BUILDERS,
        contract_style="builders",
        decimals=18,
    )


@pytest.fixture
def mock_redis() -> AsyncMock:
    """Create a mock Redis client."""
    redis = AsyncMock()
    redis.get = AsyncMock(return_value=None)
    redis.setex = AsyncMock()
    redis.delete = AsyncMock(return_value=1)
    return redis
