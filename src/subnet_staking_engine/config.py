"""Configuration management service with Pydantic Settings.

This module provides centralized configuration management for the
staking engine, loading and validating environment variables at startup.
"""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import Literal

from pydantic import BaseModel, Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from subnet_staking_engine.networks import KNOWN_NETWORKS

logger = logging.getLogger(__name__)

_ENV_FILE = ".env"
_ENV_FILE_ENCODING = "utf-8"


class NetworkEndpoint(BaseModel):
    """Endpoints for a single network."""

    indexer_url: str
    indexer_dialect: Literal["projects", "subnets", "testnet_subnets"] = "projects"
    rpc_url: str | None = None
    fallback_rpc_url: str | None = None

    @field_validator("indexer_url", "rpc_url", "fallback_rpc_url")
    @classmethod
    def validate_url(cls, v: str | None) -> str | None:
        if v is None:
            return v
        if not v.startswith(("http://", "https://")):
            raise ValueError("Endpoint URLs must be HTTP(S)")
        return v.rstrip("/")


class AssetConfig(BaseModel):
    """A stakeable asset and the contract it is staked into."""

    symbol: str
    network: str = Field(description="Network the staking contract lives on")
    token_address: str
    staking_contract: str
    contract_style: Literal["deposit_pool", "builders"] = "deposit_pool"
    decimals: int = Field(default=18, ge=0, le=36)
    pool_index: int = Field(default=0, ge=0)
    reward_network: str | None = Field(
        default=None,
        description="Network where claimed rewards are minted (defaults to `network`)",
    )
    reward_token_address: str | None = None
    payout_start: int = Field(default=0, ge=0)
    withdraw_lock_period: int = Field(default=0, ge=0)
    claim_lock_period: int = Field(default=0, ge=0)

    @property
    def destination_network(self) -> str:
        return self.reward_network or self.network

    @property
    def is_cross_chain_claim(self) -> bool:
        return self.destination_network != self.network


class DatabaseSettings(BaseSettings):
    """Database connection settings for the intent journal."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str | None = Field(
        default=None,
        alias="DATABASE_URL",
        description="PostgreSQL (or sqlite+aiosqlite) connection string; journal disabled when unset",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str | None) -> str | None:
        """Validate database URL format."""
        if v is None:
            return v
        if not v.startswith(("postgresql://", "postgresql+asyncpg://", "sqlite+aiosqlite://")):
            raise ValueError("DATABASE_URL must be a PostgreSQL or sqlite+aiosqlite connection string")
        return v


class RedisSettings(BaseSettings):
    """Redis connection settings."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str | None = Field(
        default=None,
        alias="REDIS_URL",
        description="Redis connection string; caching disabled when unset",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str | None) -> str | None:
        """Validate Redis URL format."""
        if v is None:
            return v
        if not v.startswith(("redis://", "rediss://")):
            raise ValueError("REDIS_URL must start with redis:// or rediss://")
        return v


class NetworkSettings(BaseSettings):
    """Per-network indexer and RPC endpoints."""

    model_config = SettingsConfigDict(env_prefix="NETWORK_", extra="ignore")

    environment: Literal["mainnet", "testnet"] = Field(
        default="mainnet",
        alias="NETWORK_ENVIRONMENT",
        description="Which family of networks to serve",
    )
    endpoints: dict[str, NetworkEndpoint] = Field(
        default_factory=dict,
        alias="NETWORK_ENDPOINTS",
        description='JSON mapping, e.g. {"base": {"indexer_url": "...", "rpc_url": "..."}}',
    )
    enabled: str = Field(
        default="",
        alias="ENABLED_NETWORKS",
        description="Comma-separated network ids to fan out to (default: every configured endpoint)",
    )
    max_requests_per_second: float = Field(
        default=10.0,
        alias="NETWORK_MAX_REQUESTS_PER_SECOND",
        gt=0,
        le=1000,
        description="Per-client request rate limit",
    )

    def _matches_environment(self, network_id: str) -> bool:
        # Networks outside the registry are assumed to belong to the configured family.
        info = KNOWN_NETWORKS.get(network_id)
        return info is None or info.testnet == (self.environment == "testnet")

    def enabled_networks(self) -> tuple[str, ...]:
        """Networks to query, in declaration order.

        Without `ENABLED_NETWORKS`, every configured endpoint of the current
        `NETWORK_ENVIRONMENT` is used; registered networks of the other family
        are skipped.

        Raises:
            ValueError: If an enabled network has no endpoint or belongs to the
                other environment.
        """
        names = [p.strip() for p in self.enabled.split(",") if p.strip()]
        if not names:
            skipped = [n for n in self.endpoints if not self._matches_environment(n)]
            if skipped:
                logger.info("Skipping %s networks outside %s: %s", len(skipped), self.environment, skipped)
            return tuple(n for n in self.endpoints if self._matches_environment(n))
        unknown = [n for n in names if n not in self.endpoints]
        if unknown:
            raise ValueError(f"ENABLED_NETWORKS references networks without endpoints: {unknown}")
        mismatched = [n for n in names if not self._matches_environment(n)]
        if mismatched:
            raise ValueError(f"ENABLED_NETWORKS lists networks outside {self.environment}: {mismatched}")
        return tuple(names)


class AssetSettings(BaseSettings):
    """Stakeable asset definitions."""

    model_config = SettingsConfigDict(env_prefix="STAKING_", extra="ignore")

    assets: dict[str, AssetConfig] = Field(
        default_factory=dict,
        alias="STAKING_ASSETS",
        description="JSON mapping of asset symbol to asset configuration",
    )


class MetadataStoreSettings(BaseSettings):
    """Off-chain builder metadata store (PostgREST-style HTTP API)."""

    model_config = SettingsConfigDict(env_prefix="METADATA_STORE_", extra="ignore")

    url: str | None = Field(
        default=None,
        alias="METADATA_STORE_URL",
        description="Base URL of the metadata store REST API",
    )
    api_key: SecretStr | None = Field(
        default=None,
        alias="METADATA_STORE_API_KEY",
        description="API key sent as `apikey` and bearer token",
    )
    table: str = Field(
        default="builders",
        alias="METADATA_STORE_TABLE",
        description="Table holding builder profiles",
    )
    poll_interval_seconds: int = Field(
        default=60,
        alias="METADATA_STORE_POLL_INTERVAL_SECONDS",
        ge=1,
        le=86_400,
        description="How often to check the store for changes",
    )
    cache_ttl_seconds: int = Field(
        default=300,
        alias="METADATA_STORE_CACHE_TTL_SECONDS",
        ge=1,
        le=86_400,
        description="Redis TTL for the cached metadata snapshot",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str | None) -> str | None:
        if v is None:
            return v
        if not v.startswith(("http://", "https://")):
            raise ValueError("METADATA_STORE_URL must be an HTTP(S) endpoint")
        return v.rstrip("/")


class ReconcileSettings(BaseSettings):
    """Reconciliation pass settings."""

    model_config = SettingsConfigDict(env_prefix="RECONCILE_", extra="ignore")

    decimals: int = Field(
        default=18,
        alias="RECONCILE_DECIMALS",
        ge=0,
        le=36,
        description="Decimals used to scale raw on-chain amounts",
    )
    name_aliases: dict[str, str] = Field(
        default_factory=dict,
        alias="RECONCILE_NAME_ALIASES",
        description="JSON mapping of variant builder name to canonical name",
    )
    fetch_timeout_seconds: float = Field(
        default=15.0,
        alias="RECONCILE_FETCH_TIMEOUT_SECONDS",
        gt=0,
        le=300,
        description="Upper bound on a single network fetch",
    )
    page_size: int = Field(
        default=1000,
        alias="RECONCILE_PAGE_SIZE",
        ge=1,
        le=5000,
        description="Records requested per indexer query",
    )


class TransactionSettings(BaseSettings):
    """Transaction orchestration settings."""

    model_config = SettingsConfigDict(env_prefix="TX_", extra="ignore")

    confirmation_timeout_seconds: float = Field(
        default=180.0,
        alias="TX_CONFIRMATION_TIMEOUT_SECONDS",
        gt=0,
        le=3600,
        description="How long to wait for a receipt before reporting ConfirmationTimeout",
    )
    confirmation_poll_interval_seconds: float = Field(
        default=2.0,
        alias="TX_CONFIRMATION_POLL_INTERVAL_SECONDS",
        gt=0,
        le=60,
        description="Receipt polling interval",
    )
    allowance_poll_attempts: int = Field(
        default=10,
        alias="TX_ALLOWANCE_POLL_ATTEMPTS",
        ge=1,
        le=100,
        description="Allowance checks after an approval confirms",
    )
    allowance_poll_interval_seconds: float = Field(
        default=2.0,
        alias="TX_ALLOWANCE_POLL_INTERVAL_SECONDS",
        gt=0,
        le=60,
        description="Delay between allowance checks",
    )
    default_claim_lock_days: int = Field(
        default=90,
        alias="TX_DEFAULT_CLAIM_LOCK_DAYS",
        ge=0,
        le=6 * 365,
        description="Claim lock applied to deposits that do not specify one",
    )
    claim_fee_wei: int = Field(
        default=10**15,
        alias="TX_CLAIM_FEE_WEI",
        ge=0,
        description="Native value attached to cross-chain claims (bridge messaging fee)",
    )


class MonitorSettings(BaseSettings):
    """Balance arrival monitor settings."""

    model_config = SettingsConfigDict(env_prefix="BALANCE_MONITOR_", extra="ignore")

    interval_seconds: float = Field(
        default=5.0,
        alias="BALANCE_MONITOR_INTERVAL_SECONDS",
        gt=0,
        le=300,
        description="Destination balance polling interval",
    )
    timeout_seconds: float = Field(
        default=300.0,
        alias="BALANCE_MONITOR_TIMEOUT_SECONDS",
        gt=0,
        le=3600,
        description="Give up waiting for cross-chain settlement after this long",
    )


class RefreshSettings(BaseSettings):
    """Post-transaction cache refresh settings."""

    model_config = SettingsConfigDict(env_prefix="REFRESH_", extra="ignore")

    delays_seconds: tuple[float, ...] = Field(
        default=(2.0, 4.0, 6.0),
        alias="REFRESH_DELAYS_SECONDS",
        description="JSON list of staggered re-fetch delays after a confirmed transaction",
    )

    @field_validator("delays_seconds")
    @classmethod
    def validate_delays(cls, v: tuple[float, ...]) -> tuple[float, ...]:
        if any(d < 0 for d in v):
            raise ValueError("REFRESH_DELAYS_SECONDS must be non-negative")
        return tuple(sorted(v))


class Settings(BaseSettings):
    """Main application settings.

    Loads configuration from environment variables with support for
    .env files via python-dotenv.

    Example:
        ```python
        from subnet_staking_engine.config import get_settings

        settings = get_settings()
        print(settings.networks.enabled_networks())
        print(settings.log_level)
        ```
    """

    model_config = SettingsConfigDict(
        env_file=_ENV_FILE,
        env_file_encoding=_ENV_FILE_ENCODING,
        extra="ignore",
    )

    # Nested configuration groups
    #
    # NOTE: Each nested BaseSettings must be given the same env_file, otherwise it
    # will only read from the process environment (and ignore `.env`).
    database: DatabaseSettings = Field(
        default_factory=lambda: DatabaseSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    redis: RedisSettings = Field(
        default_factory=lambda: RedisSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    networks: NetworkSettings = Field(
        default_factory=lambda: NetworkSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    assets: AssetSettings = Field(
        default_factory=lambda: AssetSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    metadata_store: MetadataStoreSettings = Field(
        default_factory=lambda: MetadataStoreSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    reconcile: ReconcileSettings = Field(
        default_factory=lambda: ReconcileSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    transactions: TransactionSettings = Field(
        default_factory=lambda: TransactionSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    monitor: MonitorSettings = Field(
        default_factory=lambda: MonitorSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    refresh: RefreshSettings = Field(
        default_factory=lambda: RefreshSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )

    # Application settings
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        alias="LOG_LEVEL",
        description="Logging level",
    )

    def get_logging_level(self) -> int:
        """Get the numeric logging level."""
        level: int = getattr(logging, self.log_level)
        return level

    def redacted_summary(self) -> dict[str, str | dict[str, str]]:
        """Get a summary of settings with secrets redacted.

        Returns:
            Dictionary of settings with sensitive values masked.
        """
        return {
            "database_url": self._redact_url(self.database.url) if self.database.url else "(not set)",
            "redis_url": self._redact_url(self.redis.url) if self.redis.url else "(not set)",
            "networks": {
                "environment": self.networks.environment,
                "configured": ",".join(self.networks.endpoints) or "(none)",
                "enabled": self.networks.enabled or "(all configured)",
            },
            "assets": {symbol: asset.network for symbol, asset in self.assets.assets.items()},
            "metadata_store": {
                "url": self.metadata_store.url or "(not set)",
                "api_key": "(set)" if self.metadata_store.api_key else "(not set)",
                "table": self.metadata_store.table,
            },
            "reconcile": {
                "decimals": str(self.reconcile.decimals),
                "aliases": str(len(self.reconcile.name_aliases)),
            },
            "transactions": {
                "confirmation_timeout_seconds": str(self.transactions.confirmation_timeout_seconds),
                "default_claim_lock_days": str(self.transactions.default_claim_lock_days),
            },
            "monitor": {
                "interval_seconds": str(self.monitor.interval_seconds),
                "timeout_seconds": str(self.monitor.timeout_seconds),
            },
            "log_level": self.log_level,
        }

    @staticmethod
    def _redact_url(url: str) -> str:
        """Redact password from URL if present."""
        if "@" in url and "://" in url:
            # URL has credentials - redact the password
            protocol_end = url.index("://") + 3
            at_pos = url.index("@")
            creds_part = url[protocol_end:at_pos]
            if ":" in creds_part:
                username = creds_part.split(":")[0]
                return f"{url[:protocol_end]}{username}:***@{url[at_pos + 1 :]}"
        return url


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get the application settings singleton.

    Uses LRU cache to ensure settings are loaded only once and
    reused across the application.

    Returns:
        The Settings instance.

    Raises:
        ValidationError: If required environment variables are missing
            or have invalid values.
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache.

    Useful for testing when you need to reload settings with
    different environment variables.
    """
    get_settings.cache_clear()
