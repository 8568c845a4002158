"""Off-chain builder metadata store adapter with Redis caching.

The store is a PostgREST-style HTTP API keyed by builder name. Reads are
cache-first; a background poll loop detects changes by fingerprinting each
snapshot and notifies subscribers when it differs from the last one.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum

import httpx
from redis.asyncio import Redis

from .models import OffChainMetadataRecord, metadata_fingerprint

logger = logging.getLogger(__name__)


# Default configuration
DEFAULT_POLL_INTERVAL_SECONDS = 60
DEFAULT_CACHE_TTL_SECONDS = 300
DEFAULT_TIMEOUT_SECONDS = 10.0
DEFAULT_TABLE = "builders"
REDIS_CACHE_KEY = "staking:metadata:builders"

_SELECT_COLUMNS = "name,description,long_description,image_src,website,tags,admin,networks,reward_types"


class SyncState(str, Enum):
    """State of the metadata poller."""

    STOPPED = "stopped"
    STARTING = "starting"
    SYNCING = "syncing"
    IDLE = "idle"
    STOPPING = "stopping"
    ERROR = "error"


@dataclass
class SyncStats:
    """Statistics for the metadata poll loop."""

    total_syncs: int = 0
    successful_syncs: int = 0
    failed_syncs: int = 0
    changes_detected: int = 0
    records_cached: int = 0
    last_sync_time: datetime | None = None
    last_error: str | None = None


MetadataSubscriber = Callable[[list[OffChainMetadataRecord]], None]


class MetadataStoreError(Exception):
    """Raised when the metadata store cannot be read."""


class MetadataStoreAdapter:
    """Reads builder profiles from the off-chain metadata store.

    Example:
        ```python
        store = MetadataStoreAdapter("https://store.example", api_key="...", redis=redis)
        unsubscribe = store.subscribe(lambda records: print(len(records)))
        await store.start()
        records = await store.list()
        unsubscribe()
        await store.stop()
        ```
    """

    def __init__(
        self,
        base_url: str,
        *,
        api_key: str | None = None,
        table: str = DEFAULT_TABLE,
        redis: Redis | None = None,
        http_client: httpx.AsyncClient | None = None,
        poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
        cache_ttl_seconds: int = DEFAULT_CACHE_TTL_SECONDS,
    ) -> None:
        self._url = f"{base_url.rstrip('/')}/rest/v1/{table}"
        headers = {"Accept": "application/json"}
        if api_key:
            headers["apikey"] = api_key
            headers["Authorization"] = f"Bearer {api_key}"
        self._headers = headers
        self._redis = redis
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=DEFAULT_TIMEOUT_SECONDS)
        self._poll_interval = poll_interval_seconds
        self._cache_ttl = cache_ttl_seconds

        self._subscribers: list[MetadataSubscriber] = []
        self._fingerprint: str | None = None
        self._state = SyncState.STOPPED
        self._stats = SyncStats()
        self._poll_task: asyncio.Task[None] | None = None
        self._stop_event = asyncio.Event()

    @property
    def state(self) -> SyncState:
        return self._state

    @property
    def stats(self) -> SyncStats:
        return self._stats

    async def fetch(self) -> list[OffChainMetadataRecord]:
        """Fetch the full snapshot from the store, bypassing the cache.

        Rows without a name are skipped.

        Raises:
            MetadataStoreError: On transport failure, HTTP error or a non-list body.
        """
        try:
            response = await self._http.get(
                self._url,
                params={"select": _SELECT_COLUMNS},
                headers=self._headers,
            )
            response.raise_for_status()
            rows = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise MetadataStoreError(f"Metadata store request failed: {e}") from e
        if not isinstance(rows, list):
            raise MetadataStoreError("Metadata store returned a non-list body")

        records: list[OffChainMetadataRecord] = []
        for row in rows:
            if not isinstance(row, dict):
                continue
            try:
                records.append(OffChainMetadataRecord.from_row(row))
            except KeyError:
                logger.debug("Skipping metadata row without a name")
        return records

    async def list(self) -> list[OffChainMetadataRecord]:
        """Return all builder profiles, cache-first."""
        cached = await self._get_cached()
        if cached is not None:
            return cached
        records = await self.fetch()
        await self._set_cached(records)
        return records

    def subscribe(self, callback: MetadataSubscriber) -> Callable[[], None]:
        """Register a change callback; returns a function that unregisters it."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            with contextlib.suppress(ValueError):
                self._subscribers.remove(callback)

        return unsubscribe

    async def _get_cached(self) -> list[OffChainMetadataRecord] | None:
        if self._redis is None:
            return None
        try:
            raw = await self._redis.get(REDIS_CACHE_KEY)
        except Exception as e:
            logger.warning("Metadata cache read failed: %s", e)
            return None
        if not raw:
            return None
        try:
            if isinstance(raw, bytes):
                raw = raw.decode()
            return [OffChainMetadataRecord.from_row(row) for row in json.loads(raw)]
        except (json.JSONDecodeError, KeyError, TypeError) as e:
            logger.warning("Failed to parse cached metadata snapshot: %s", e)
            return None

    async def _set_cached(self, records: list[OffChainMetadataRecord]) -> None:
        if self._redis is None:
            return
        try:
            await self._redis.setex(
                REDIS_CACHE_KEY,
                self._cache_ttl,
                json.dumps([r.to_dict() for r in records]),
            )
        except Exception as e:
            logger.warning("Metadata cache write failed: %s", e)

    def _set_state(self, new_state: SyncState) -> None:
        self._state = new_state

    def _notify(self, records: list[OffChainMetadataRecord]) -> None:
        for callback in list(self._subscribers):
            try:
                callback(records)
            except Exception as e:
                logger.warning(f"Metadata subscriber failed: {e}")

    async def sync_once(self) -> bool:
        """Fetch a fresh snapshot and notify subscribers if it changed.

        Returns:
            True if the snapshot differs from the previous one.
        """
        self._set_state(SyncState.SYNCING)
        self._stats.total_syncs += 1
        try:
            records = await self.fetch()
        except MetadataStoreError as e:
            self._stats.failed_syncs += 1
            self._stats.last_error = str(e)
            self._set_state(SyncState.ERROR)
            raise

        await self._set_cached(records)
        fingerprint = metadata_fingerprint(records)
        changed = self._fingerprint is not None and fingerprint != self._fingerprint
        self._fingerprint = fingerprint

        self._stats.successful_syncs += 1
        self._stats.records_cached = len(records)
        self._stats.last_sync_time = datetime.now(UTC)
        self._stats.last_error = None
        self._set_state(SyncState.IDLE)

        if changed:
            self._stats.changes_detected += 1
            logger.info("Builder metadata changed (%d records)", len(records))
            self._notify(records)
        return changed

    async def start(self) -> None:
        """Take an initial snapshot and start the background poll loop."""
        if self._state != SyncState.STOPPED:
            logger.warning(f"Cannot start metadata poller: already in state {self._state}")
            return

        self._set_state(SyncState.STARTING)
        self._stop_event.clear()
        try:
            await self.sync_once()
        except MetadataStoreError as e:
            # The poll loop keeps retrying; readers fall back to on-chain data meanwhile.
            logger.error(f"Initial metadata sync failed: {e}")

        self._poll_task = asyncio.create_task(self._poll_loop())
        logger.info("Metadata store poller started")

    async def stop(self) -> None:
        if self._state == SyncState.STOPPED:
            return

        self._set_state(SyncState.STOPPING)
        self._stop_event.set()

        if self._poll_task:
            self._poll_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._poll_task
            self._poll_task = None

        self._set_state(SyncState.STOPPED)
        logger.info("Metadata store poller stopped")

    async def _poll_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=self._poll_interval)
                    break
                except TimeoutError:
                    pass

                await self.sync_once()

            except asyncio.CancelledError:
                break
            except MetadataStoreError as e:
                logger.warning(f"Metadata poll failed: {e}")

    async def aclose(self) -> None:
        await self.stop()
        if self._owns_client:
            await self._http.aclose()
