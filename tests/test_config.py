"""Tests for the settings layer."""

import json

import pytest
from pydantic import ValidationError

from subnet_staking_engine.config import (
    AssetConfig,
    AssetSettings,
    DatabaseSettings,
    NetworkSettings,
    RedisSettings,
    RefreshSettings,
    Settings,
)

ENDPOINTS = {
    "base": {"indexer_url": "https://indexer.example/base/", "rpc_url": "https://rpc.example/base"},
    "arbitrum": {"indexer_url": "https://indexer.example/arb", "indexer_dialect": "subnets"},
}


class TestNetworkSettings:
    """Tests for per-network endpoint configuration."""

    def test_endpoints_from_json(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test that endpoints are parsed from a JSON environment variable."""
        monkeypatch.setenv("NETWORK_ENDPOINTS", json.dumps(ENDPOINTS))
        settings = NetworkSettings(_env_file=None)

        assert settings.endpoints["base"].indexer_url == "https://indexer.example/base"
        assert settings.endpoints["arbitrum"].indexer_dialect == "subnets"
        assert settings.endpoints["arbitrum"].rpc_url is None

    def test_enabled_defaults_to_all(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test that every configured network is enabled by default."""
        monkeypatch.setenv("NETWORK_ENDPOINTS", json.dumps(ENDPOINTS))
        settings = NetworkSettings(_env_file=None)

        assert settings.enabled_networks() == ("base", "arbitrum")

    def test_enabled_subset(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test restricting the fan-out to a subset."""
        monkeypatch.setenv("NETWORK_ENDPOINTS", json.dumps(ENDPOINTS))
        monkeypatch.setenv("ENABLED_NETWORKS", "arbitrum")
        settings = NetworkSettings(_env_file=None)

        assert settings.enabled_networks() == ("arbitrum",)

    def test_enabled_unknown_network(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test that enabling a network without endpoints is an error."""
        monkeypatch.setenv("NETWORK_ENDPOINTS", json.dumps(ENDPOINTS))
        monkeypatch.setenv("ENABLED_NETWORKS", "base,ethereum")
        settings = NetworkSettings(_env_file=None)

        with pytest.raises(ValueError, match="ethereum"):
            settings.enabled_networks()

    def test_environment_filters_registered_networks(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test that the default fan-out only covers the configured environment."""
        endpoints = {
            **ENDPOINTS,
            "base_sepolia": {"indexer_url": "https://indexer.example/base-sepolia"},
            "devnet": {"indexer_url": "https://indexer.example/devnet"},
        }
        monkeypatch.setenv("NETWORK_ENDPOINTS", json.dumps(endpoints))

        assert NetworkSettings(_env_file=None).enabled_networks() == ("base", "arbitrum", "devnet")

        monkeypatch.setenv("NETWORK_ENVIRONMENT", "testnet")
        assert NetworkSettings(_env_file=None).enabled_networks() == ("base_sepolia", "devnet")

    def test_enabled_network_from_other_environment(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test that explicitly enabling a testnet on mainnet is an error."""
        endpoints = {**ENDPOINTS, "base_sepolia": {"indexer_url": "https://indexer.example/base-sepolia"}}
        monkeypatch.setenv("NETWORK_ENDPOINTS", json.dumps(endpoints))
        monkeypatch.setenv("ENABLED_NETWORKS", "base,base_sepolia")
        settings = NetworkSettings(_env_file=None)

        with pytest.raises(ValueError, match="base_sepolia"):
            settings.enabled_networks()

    def test_rejects_non_http_endpoint(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test that endpoint URLs must be HTTP(S)."""
        monkeypatch.setenv("NETWORK_ENDPOINTS", json.dumps({"base": {"indexer_url": "ftp://x"}}))
        with pytest.raises(ValidationError):
            NetworkSettings(_env_file=None)


class TestAssetConfig:
    """Tests for asset definitions."""

    def test_destination_defaults_to_staking_network(self, builders_asset: AssetConfig) -> None:
        assert builders_asset.destination_network == "base"
        assert builders_asset.is_cross_chain_claim is False

    def test_cross_chain_destination(self, deposit_pool_asset: AssetConfig) -> None:
        assert deposit_pool_asset.destination_network == "arbitrum"
        assert deposit_pool_asset.is_cross_chain_claim is True

    def test_assets_from_json(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test that assets are parsed from STAKING_ASSETS."""
        monkeypatch.setenv(
            "STAKING_ASSETS",
            json.dumps(
                {
                    "MOR": {
                        "symbol": "MOR",
                        "network": "base",
                        "token_address": "0xabc",
                        "staking_contract": "0xdef",
                        "contract_style": "builders",
                    }
                }
            ),
        )
        settings = AssetSettings(_env_file=None)

        assert settings.assets["MOR"].contract_style == "builders"
        assert settings.assets["MOR"].decimals == 18


class TestConnectionSettings:
    """Tests for database and Redis URL validation."""

    def test_database_url_validation(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("DATABASE_URL", "mysql://nope")
        with pytest.raises(ValidationError):
            DatabaseSettings(_env_file=None)

    def test_database_sqlite_allowed(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("DATABASE_URL", "sqlite+aiosqlite:///journal.db")
        assert DatabaseSettings(_env_file=None).url == "sqlite+aiosqlite:///journal.db"

    def test_redis_url_validation(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("REDIS_URL", "http://localhost:6379")
        with pytest.raises(ValidationError):
            RedisSettings(_env_file=None)


class TestRefreshSettings:
    """Tests for staggered refresh delays."""

    def test_delays_sorted(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("REFRESH_DELAYS_SECONDS", "[6, 2, 4]")
        assert RefreshSettings(_env_file=None).delays_seconds == (2.0, 4.0, 6.0)

    def test_negative_delay_rejected(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("REFRESH_DELAYS_SECONDS", "[-1]")
        with pytest.raises(ValidationError):
            RefreshSettings(_env_file=None)


class TestSettings:
    """Tests for the top-level Settings object."""

    def test_redacted_summary(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test that credentials never appear in the summary."""
        monkeypatch.setenv("DATABASE_URL", "postgresql+asyncpg://staker:secret@db:5432/staking")
        monkeypatch.setenv("METADATA_STORE_API_KEY", "very-secret")
        settings = Settings(_env_file=None)

        summary = settings.redacted_summary()
        assert summary["database_url"] == "postgresql+asyncpg://staker:***@db:5432/staking"
        assert "secret" not in json.dumps(summary)

    def test_logging_level(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("LOG_LEVEL", "DEBUG")
        assert Settings(_env_file=None).get_logging_level() == 10
