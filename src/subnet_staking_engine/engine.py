"""Staking engine facade.

Wires the ingestion, reconciliation, position, transaction and settlement
components together and exposes the read and command APIs.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Any

import httpx
from redis.asyncio import Redis

from subnet_staking_engine.config import Settings, get_settings
from subnet_staking_engine.ingestor.indexer_client import IndexerClient
from subnet_staking_engine.ingestor.metadata_store import MetadataStoreAdapter
from subnet_staking_engine.ingestor.source_adapter import IndexerDialect, SubnetSourceAdapter
from subnet_staking_engine.networks import transaction_url as explorer_tx_url
from subnet_staking_engine.positions.calculator import SECONDS_PER_DAY
from subnet_staking_engine.positions.chain import ChainClient, ChainClients
from subnet_staking_engine.positions.models import Eligibility, StakePosition
from subnet_staking_engine.positions.reader import StakePositionReader
from subnet_staking_engine.reconciler.aliases import NameAliasTable
from subnet_staking_engine.reconciler.engine import AdminResolver, ReconciliationEngine, totals
from subnet_staking_engine.reconciler.models import (
    Builder,
    BuilderFilter,
    BuilderListing,
    BuilderSort,
    BuilderTotals,
)
from subnet_staking_engine.scheduling import DelayedTaskScheduler
from subnet_staking_engine.settlement.monitor import BalanceArrivalMonitor
from subnet_staking_engine.settlement.refresh import CacheRefreshCoordinator
from subnet_staking_engine.storage.database import DatabaseManager
from subnet_staking_engine.storage.journal import DatabaseIntentJournal
from subnet_staking_engine.storage.repos import IntentDTO
from subnet_staking_engine.transactions.handle import IntentHandle
from subnet_staking_engine.transactions.orchestrator import TransactionOrchestrator

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


class EngineState(str, Enum):
    """Engine lifecycle states."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    ERROR = "error"


@dataclass
class EngineStats:
    started_at: datetime | None = None
    intents_started: int = 0
    last_error: str | None = None


class StakingEngine:
    """Read and command API over every configured network.

    Components passed to the constructor are used as-is and are not closed
    by `stop()`; anything missing is built from settings in `start()`.

    Example:
        ```python
        async with StakingEngine(get_settings()) as engine:
            listing = await engine.list_builders(sort=BuilderSort(SortKey.TOTAL_STAKED))
            handle = await engine.deposit(user, "MOR", 10**18, subnet_id=listing.builders[0].contract_id)
            intent = await handle
        ```
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        redis: Redis | None = None,
        db_manager: DatabaseManager | None = None,
        reconciler: ReconciliationEngine | None = None,
        metadata_store: MetadataStoreAdapter | None = None,
        chain: ChainClients | None = None,
        positions: StakePositionReader | None = None,
        orchestrator: TransactionOrchestrator | None = None,
        journal: DatabaseIntentJournal | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._state = EngineState.STOPPED
        self._stats = EngineStats()

        self._redis = redis
        self._db_manager = db_manager
        self._reconciler = reconciler
        self._metadata_store = metadata_store
        self._chain = chain
        self._positions = positions
        self._orchestrator = orchestrator
        self._journal = journal

        self._http: httpx.AsyncClient | None = None
        self._indexer: IndexerClient | None = None
        self._scheduler: DelayedTaskScheduler | None = None
        self._monitor: BalanceArrivalMonitor | None = None
        self._unsubscribe_metadata: Callable[[], None] | None = None
        self._owned: list[Callable[[], Awaitable[None]]] = []
        self._built: set[str] = set()
        self._stop_event: asyncio.Event | None = None

    @property
    def state(self) -> EngineState:
        return self._state

    @property
    def stats(self) -> EngineStats:
        return self._stats

    @property
    def is_running(self) -> bool:
        return self._state == EngineState.RUNNING

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Build missing components and start background sync.

        Raises:
            RuntimeError: If the engine is already running.
        """
        if self._state != EngineState.STOPPED:
            raise RuntimeError(f"Cannot start engine in state {self._state}")

        self._state = EngineState.STARTING
        self._stop_event = asyncio.Event()
        logger.info("Starting staking engine...")

        try:
            self._initialize_components()
            if self._metadata_store is not None:
                await self._metadata_store.start()
                self._owned.append(self._metadata_store.stop)
            self._stats.started_at = datetime.now(UTC)
            self._state = EngineState.RUNNING
            logger.info("Staking engine started: %s", self._settings.redacted_summary())
        except Exception as e:
            self._state = EngineState.ERROR
            self._stats.last_error = str(e)
            logger.error("Failed to start staking engine: %s", e)
            await self._cleanup()
            raise

    async def stop(self) -> None:
        if self._state == EngineState.STOPPED:
            return

        self._state = EngineState.STOPPING
        logger.info("Stopping staking engine...")
        if self._stop_event:
            self._stop_event.set()
        await self._cleanup()
        self._state = EngineState.STOPPED
        logger.info("Staking engine stopped")

    async def run(self) -> None:
        """Configure logging, start, and run until cancelled or stopped."""
        logging.basicConfig(level=self._settings.get_logging_level(), format=LOG_FORMAT)
        await self.start()
        try:
            if self._stop_event:
                await self._stop_event.wait()
        finally:
            await self.stop()

    async def __aenter__(self) -> StakingEngine:
        await self.start()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.stop()

    def _initialize_components(self) -> None:
        settings = self._settings

        if self._redis is None and settings.redis.url:
            logger.debug("Initializing Redis connection...")
            self._redis = Redis.from_url(settings.redis.url)
            self._built.add("_redis")
            self._owned.append(self._redis.aclose)

        if self._journal is None and settings.database.url:
            if self._db_manager is None:
                logger.debug("Initializing database manager...")
                self._db_manager = DatabaseManager(settings.database.url)
                self._built.add("_db_manager")
                self._owned.append(self._db_manager.dispose_async)
            self._journal = DatabaseIntentJournal(self._db_manager)
            self._built.add("_journal")

        if self._chain is None:
            self._chain = self._build_chain_clients()
            self._built.add("_chain")
            self._owned.append(self._chain.aclose)

        if self._reconciler is None:
            self._reconciler = self._build_reconciler()
            self._built.add("_reconciler")
        if self._metadata_store is not None:
            reconciler = self._reconciler
            self._unsubscribe_metadata = self._metadata_store.subscribe(lambda _records: reconciler.invalidate())

        if self._positions is None:
            self._positions = StakePositionReader(self._chain, settings.assets.assets, redis=self._redis)
            self._built.add("_positions")

        if self._orchestrator is None:
            self._orchestrator = self._build_orchestrator(self._chain, self._positions)
            self._built.add("_orchestrator")

    def _ensure_http(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient(timeout=self._settings.reconcile.fetch_timeout_seconds)
            self._owned.append(self._http.aclose)
        return self._http

    def _build_chain_clients(self) -> ChainClients:
        settings = self._settings
        clients = {
            network_id: ChainClient(
                network_id,
                endpoint.rpc_url,
                fallback_rpc_url=endpoint.fallback_rpc_url,
                redis=self._redis,
                max_requests_per_second=settings.networks.max_requests_per_second,
            )
            for network_id, endpoint in settings.networks.endpoints.items()
            if endpoint.rpc_url
        }
        logger.debug("Initialized RPC clients for %s", ",".join(clients) or "(none)")
        return ChainClients(clients)

    def _build_reconciler(self) -> ReconciliationEngine:
        settings = self._settings
        enabled = settings.networks.enabled_networks()
        endpoints = settings.networks.endpoints

        self._indexer = IndexerClient(
            {n: endpoints[n].indexer_url for n in enabled},
            http_client=self._ensure_http(),
            timeout_seconds=settings.reconcile.fetch_timeout_seconds,
            requests_per_second=settings.networks.max_requests_per_second,
        )
        self._owned.append(self._indexer.aclose)
        adapter = SubnetSourceAdapter(
            self._indexer,
            dialects={n: IndexerDialect(endpoints[n].indexer_dialect) for n in enabled},
            fetch_timeout_seconds=settings.reconcile.fetch_timeout_seconds,
            page_size=settings.reconcile.page_size,
        )

        store_settings = settings.metadata_store
        if self._metadata_store is None and store_settings.url:
            self._metadata_store = MetadataStoreAdapter(
                store_settings.url,
                api_key=store_settings.api_key.get_secret_value() if store_settings.api_key else None,
                table=store_settings.table,
                redis=self._redis,
                http_client=self._ensure_http(),
                poll_interval_seconds=store_settings.poll_interval_seconds,
                cache_ttl_seconds=store_settings.cache_ttl_seconds,
            )
            self._built.add("_metadata_store")

        return ReconciliationEngine(
            adapter,
            enabled,
            metadata_store=self._metadata_store,
            aliases=NameAliasTable(settings.reconcile.name_aliases),
            decimals=settings.reconcile.decimals,
            fetch_timeout_seconds=settings.reconcile.fetch_timeout_seconds,
            admin_resolver=self._build_admin_resolver(),
        )

    def _build_admin_resolver(self) -> AdminResolver | None:
        """Admin lookups go to the builders contract configured for each network."""
        contracts = {
            asset.network: asset.staking_contract
            for asset in self._settings.assets.assets.values()
            if asset.contract_style == "builders"
        }
        chain = self._chain
        if not contracts or chain is None:
            return None

        async def resolve(network_id: str, contract_id: str) -> str | None:
            contract = contracts.get(network_id)
            if contract is None or network_id not in chain.networks:
                return None
            return await chain.client(network_id).get_builder_admin(contract, contract_id)

        return resolve

    def _build_orchestrator(self, chain: ChainClients, positions: StakePositionReader) -> TransactionOrchestrator:
        settings = self._settings

        self._scheduler = DelayedTaskScheduler()
        self._owned.append(self._scheduler.aclose)
        self._monitor = BalanceArrivalMonitor(
            chain,
            interval_seconds=settings.monitor.interval_seconds,
            timeout_seconds=settings.monitor.timeout_seconds,
        )
        self._owned.append(self._monitor.aclose)
        refresher = CacheRefreshCoordinator(
            self._scheduler,
            builders=self._reconciler,
            positions=positions,
            delays_seconds=settings.refresh.delays_seconds,
        )
        tx = settings.transactions
        orchestrator = TransactionOrchestrator(
            chain,
            positions,
            settings.assets.assets,
            monitor=self._monitor,
            refresher=refresher,
            journal=self._journal,
            confirmation_timeout_seconds=tx.confirmation_timeout_seconds,
            confirmation_poll_interval_seconds=tx.confirmation_poll_interval_seconds,
            allowance_poll_attempts=tx.allowance_poll_attempts,
            allowance_poll_interval_seconds=tx.allowance_poll_interval_seconds,
            default_claim_lock_seconds=tx.default_claim_lock_days * SECONDS_PER_DAY,
            claim_fee_wei=tx.claim_fee_wei,
        )
        self._owned.append(orchestrator.aclose)
        return orchestrator

    async def _cleanup(self) -> None:
        if self._unsubscribe_metadata is not None:
            self._unsubscribe_metadata()
            self._unsubscribe_metadata = None
        # Close in reverse order of creation.
        while self._owned:
            close = self._owned.pop()
            try:
                await close()
            except Exception as e:
                logger.warning("Error while closing engine component: %s", e)
        for name in self._built | {"_http", "_indexer", "_scheduler", "_monitor"}:
            setattr(self, name, None)
        self._built.clear()
        logger.debug("Resources cleaned up")

    # ------------------------------------------------------------------
    # Read API
    # ------------------------------------------------------------------

    def _require(self, component: Any, name: str) -> Any:
        if component is None:
            raise RuntimeError(f"{name} is not available; call start() or inject it")
        return component

    async def list_builders(
        self,
        builder_filter: BuilderFilter | None = None,
        sort: BuilderSort | None = None,
    ) -> BuilderListing:
        reconciler: ReconciliationEngine = self._require(self._reconciler, "Reconciliation engine")
        return await reconciler.list_builders(builder_filter, sort)

    async def get_builder(self, builder_id: str) -> Builder | None:
        reconciler: ReconciliationEngine = self._require(self._reconciler, "Reconciliation engine")
        return await reconciler.get_builder(builder_id)

    async def totals(self, builder_filter: BuilderFilter | None = None) -> BuilderTotals:
        listing = await self.list_builders(builder_filter)
        return totals(listing.builders)

    async def get_stake_position(self, user: str, subnet_id: str | None, asset: str) -> StakePosition:
        positions: StakePositionReader = self._require(self._positions, "Position reader")
        return await positions.get_position(user, subnet_id, asset)

    async def get_eligibility(
        self,
        user: str,
        subnet_id: str | None,
        asset: str,
        *,
        now: int | None = None,
    ) -> Eligibility:
        positions: StakePositionReader = self._require(self._positions, "Position reader")
        return await positions.get_eligibility(user, subnet_id, asset, now=now)

    async def list_open_intents(self, user: str | None = None) -> list[IntentDTO]:
        """Journaled intents that had not finished; empty without a database."""
        if self._journal is None:
            return []
        return await self._journal.list_open(user)

    def transaction_url(self, network_id: str, tx_hash: str) -> str | None:
        return explorer_tx_url(network_id, tx_hash)

    # ------------------------------------------------------------------
    # Command API
    # ------------------------------------------------------------------

    def _commands(self) -> TransactionOrchestrator:
        orchestrator: TransactionOrchestrator = self._require(self._orchestrator, "Transaction orchestrator")
        self._stats.intents_started += 1
        return orchestrator

    async def deposit(
        self,
        user: str,
        asset: str,
        amount: int,
        *,
        lock_seconds: int | None = None,
        subnet_id: str | None = None,
        current_network: str | None = None,
    ) -> IntentHandle:
        return await self._commands().deposit(
            user,
            asset,
            amount,
            lock_seconds=lock_seconds,
            subnet_id=subnet_id,
            current_network=current_network,
        )

    async def withdraw(
        self,
        user: str,
        asset: str,
        amount: int,
        *,
        subnet_id: str | None = None,
        current_network: str | None = None,
    ) -> IntentHandle:
        return await self._commands().withdraw(
            user, asset, amount, subnet_id=subnet_id, current_network=current_network
        )

    async def claim(
        self,
        user: str,
        asset: str,
        *,
        subnet_id: str | None = None,
        current_network: str | None = None,
    ) -> IntentHandle:
        return await self._commands().claim(user, asset, subnet_id=subnet_id, current_network=current_network)

    async def lock_change(
        self,
        user: str,
        asset: str,
        lock_seconds: int,
        *,
        subnet_id: str | None = None,
        current_network: str | None = None,
    ) -> IntentHandle:
        return await self._commands().lock_change(
            user, asset, lock_seconds, subnet_id=subnet_id, current_network=current_network
        )
