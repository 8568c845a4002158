"""Tests for the off-chain metadata store adapter."""

import asyncio
import json
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from subnet_staking_engine.ingestor.metadata_store import (
    REDIS_CACHE_KEY,
    MetadataStoreAdapter,
    MetadataStoreError,
    SyncState,
)
from subnet_staking_engine.ingestor.models import OffChainMetadataRecord, metadata_fingerprint

BASE_URL = "https://store.example"


def _rows(description: str = "Agents for everyone") -> list[dict[str, Any]]:
    return [
        {
            "name": "Atlas",
            "description": description,
            "image_src": "https://img.example/atlas.png",
            "website": "https://atlas.example",
            "tags": '["ai", "agents"]',
            "admin": "0x" + "aa" * 20,
            "networks": ["base", "arbitrum"],
            "reward_types": None,
            "long_description": None,
        },
        {"name": None, "description": "nameless"},
    ]


class FakeStore:
    """Serves a mutable snapshot through an httpx mock transport."""

    def __init__(self) -> None:
        self.rows: list[dict[str, Any]] | dict[str, Any] = _rows()
        self.status = 200
        self.requests: list[httpx.Request] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.status != 200:
            return httpx.Response(self.status)
        return httpx.Response(200, json=self.rows)

    def adapter(self, redis: Any = None, **kwargs: Any) -> MetadataStoreAdapter:
        http = httpx.AsyncClient(transport=httpx.MockTransport(self.handler))
        return MetadataStoreAdapter(BASE_URL, api_key="key-123", redis=redis, http_client=http, **kwargs)


@pytest.fixture
def store() -> FakeStore:
    return FakeStore()


class TestOffChainMetadataRecord:
    """Tests for parsing metadata rows."""

    def test_from_row(self) -> None:
        record = OffChainMetadataRecord.from_row(_rows()[0])

        assert record.name == "Atlas"
        assert record.image == "https://img.example/atlas.png"
        assert record.tags == ("ai", "agents")
        assert record.networks == ("base", "arbitrum")
        assert record.reward_types == ()
        assert record.admin_override == "0x" + "aa" * 20

    def test_comma_separated_tags(self) -> None:
        record = OffChainMetadataRecord.from_row({"name": "Atlas", "tags": "ai, agents,"})
        assert record.tags == ("ai", "agents")

    def test_missing_name(self) -> None:
        with pytest.raises(KeyError):
            OffChainMetadataRecord.from_row({"name": "  "})

    def test_fingerprint_ignores_order(self) -> None:
        a = OffChainMetadataRecord(name="A")
        b = OffChainMetadataRecord(name="B", description="x")
        assert metadata_fingerprint([a, b]) == metadata_fingerprint([b, a])
        assert metadata_fingerprint([a]) != metadata_fingerprint([a, b])


class TestMetadataStoreAdapter:
    """Tests for MetadataStoreAdapter."""

    @pytest.mark.asyncio
    async def test_fetch_skips_nameless_rows(self, store: FakeStore) -> None:
        records = await store.adapter().fetch()

        assert [r.name for r in records] == ["Atlas"]
        request = store.requests[0]
        assert request.url.path == "/rest/v1/builders"
        assert request.headers["apikey"] == "key-123"
        assert request.headers["Authorization"] == "Bearer key-123"

    @pytest.mark.asyncio
    async def test_fetch_http_error(self, store: FakeStore) -> None:
        store.status = 500
        with pytest.raises(MetadataStoreError):
            await store.adapter().fetch()

    @pytest.mark.asyncio
    async def test_fetch_non_list_body(self, store: FakeStore) -> None:
        store.rows = {"message": "nope"}
        with pytest.raises(MetadataStoreError):
            await store.adapter().fetch()

    @pytest.mark.asyncio
    async def test_list_populates_cache(self, store: FakeStore, mock_redis: AsyncMock) -> None:
        adapter = store.adapter(redis=mock_redis, cache_ttl_seconds=120)
        records = await adapter.list()

        assert len(records) == 1
        mock_redis.setex.assert_awaited_once()
        key, ttl, payload = mock_redis.setex.call_args.args
        assert key == REDIS_CACHE_KEY
        assert ttl == 120
        assert json.loads(payload)[0]["name"] == "Atlas"

    @pytest.mark.asyncio
    async def test_list_served_from_cache(self, store: FakeStore, mock_redis: AsyncMock) -> None:
        cached = [OffChainMetadataRecord(name="Cached").to_dict()]
        mock_redis.get = AsyncMock(return_value=json.dumps(cached).encode())

        records = await store.adapter(redis=mock_redis).list()

        assert [r.name for r in records] == ["Cached"]
        assert store.requests == []

    @pytest.mark.asyncio
    async def test_cache_failure_falls_through(self, store: FakeStore, mock_redis: AsyncMock) -> None:
        mock_redis.get = AsyncMock(side_effect=ConnectionError("redis down"))
        mock_redis.setex = AsyncMock(side_effect=ConnectionError("redis down"))

        records = await store.adapter(redis=mock_redis).list()

        assert [r.name for r in records] == ["Atlas"]

    @pytest.mark.asyncio
    async def test_sync_notifies_only_on_change(self, store: FakeStore) -> None:
        adapter = store.adapter()
        callback = MagicMock()
        adapter.subscribe(callback)

        assert await adapter.sync_once() is False
        assert await adapter.sync_once() is False
        callback.assert_not_called()

        store.rows = _rows(description="Now with more agents")
        assert await adapter.sync_once() is True
        callback.assert_called_once()
        assert callback.call_args.args[0][0].description == "Now with more agents"
        assert adapter.stats.changes_detected == 1
        assert adapter.state == SyncState.IDLE

    @pytest.mark.asyncio
    async def test_unsubscribe(self, store: FakeStore) -> None:
        adapter = store.adapter()
        callback = MagicMock()
        unsubscribe = adapter.subscribe(callback)
        await adapter.sync_once()

        unsubscribe()
        unsubscribe()
        store.rows = _rows(description="changed")
        await adapter.sync_once()

        callback.assert_not_called()

    @pytest.mark.asyncio
    async def test_failing_subscriber_does_not_block_others(self, store: FakeStore) -> None:
        adapter = store.adapter()
        adapter.subscribe(MagicMock(side_effect=RuntimeError("boom")))
        healthy = MagicMock()
        adapter.subscribe(healthy)
        await adapter.sync_once()

        store.rows = _rows(description="changed")
        await adapter.sync_once()

        healthy.assert_called_once()

    @pytest.mark.asyncio
    async def test_sync_failure_recorded(self, store: FakeStore) -> None:
        store.status = 503
        adapter = store.adapter()

        with pytest.raises(MetadataStoreError):
            await adapter.sync_once()
        assert adapter.state == SyncState.ERROR
        assert adapter.stats.failed_syncs == 1

    @pytest.mark.asyncio
    async def test_poll_loop_detects_change(self, store: FakeStore) -> None:
        adapter = store.adapter(poll_interval_seconds=0.02)
        changed = asyncio.Event()
        adapter.subscribe(lambda records: changed.set())

        await adapter.start()
        store.rows = _rows(description="changed")
        await asyncio.wait_for(changed.wait(), timeout=2.0)
        await adapter.aclose()

        assert adapter.state == SyncState.STOPPED

    @pytest.mark.asyncio
    async def test_start_survives_initial_failure(self, store: FakeStore) -> None:
        store.status = 500
        adapter = store.adapter(poll_interval_seconds=60)

        await adapter.start()
        assert adapter.state == SyncState.ERROR
        await adapter.stop()
        assert adapter.state == SyncState.STOPPED
