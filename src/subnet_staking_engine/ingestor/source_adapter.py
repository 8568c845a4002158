"""Per-network source adapter over the indexing services.

Every fetch is independent and time-bounded. Failures come back as a tagged
`AdapterResult` instead of an exception so one unreachable network never
aborts a reconciliation pass.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from enum import Enum
from typing import Any

from subnet_staking_engine.errors import SchemaMismatch
from subnet_staking_engine.ingestor.indexer_client import IndexerClient, IndexerClientError
from subnet_staking_engine.ingestor.models import AdapterResult, OnChainSubnetRecord, SchemaVersion
from subnet_staking_engine.ingestor.schema import extract_rows, parse_record

logger = logging.getLogger(__name__)

DEFAULT_FETCH_TIMEOUT_SECONDS = 15.0
DEFAULT_PAGE_SIZE = 1000
MAX_PAGES = 50


class IndexerDialect(str, Enum):
    """Which collection and field names a network's indexer exposes."""

    PROJECTS = "projects"
    SUBNETS = "subnets"
    TESTNET_SUBNETS = "testnet_subnets"


PROJECTS_QUERY = """
query BuildersProjects($first: Int!, $skip: Int!, $where: BuildersProject_filter) {
  buildersProjects(first: $first, skip: $skip, orderBy: totalStaked, orderDirection: desc, where: $where) {
    id
    name
    admin
    minimalDeposit
    totalStaked
    totalUsers
    totalClaimed
    startsAt
    withdrawLockPeriodAfterDeposit
  }
}
"""

SUBNETS_QUERY = """
query BuilderSubnets($first: Int!, $skip: Int!, $where: BuilderSubnet_filter) {
  builderSubnets(first: $first, skip: $skip, orderBy: totalStaked, orderDirection: desc, where: $where) {
    id
    name
    admin
    minimalDeposit
    totalStaked
    totalUsers
    totalClaimed
    withdrawLockPeriodAfterDeposit
    slug
    description
    website
    image
  }
}
"""

TESTNET_SUBNETS_QUERY = """
query TestnetBuilderSubnets($first: Int!, $skip: Int!, $where: BuilderSubnet_filter) {
  builderSubnets(first: $first, skip: $skip, orderBy: totalStaked, orderDirection: desc, where: $where) {
    id
    name
    owner
    minStake
    fee
    feeTreasury
    startsAt
    totalClaimed
    totalStaked
    totalUsers
    withdrawLockPeriodAfterStake
    slug
    description
    website
    image
  }
}
"""

_QUERIES = {
    IndexerDialect.PROJECTS: PROJECTS_QUERY,
    IndexerDialect.SUBNETS: SUBNETS_QUERY,
    IndexerDialect.TESTNET_SUBNETS: TESTNET_SUBNETS_QUERY,
}


class SubnetSourceAdapter:
    """Fetches `OnChainSubnetRecord`s for one network at a time.

    Example:
        ```python
        adapter = SubnetSourceAdapter(indexer, dialects={"base": IndexerDialect.PROJECTS})
        result = await adapter.fetch("base")
        if result.ok:
            print(len(result.records))
        ```
    """

    def __init__(
        self,
        indexer: IndexerClient,
        *,
        dialects: dict[str, IndexerDialect] | None = None,
        fetch_timeout_seconds: float = DEFAULT_FETCH_TIMEOUT_SECONDS,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> None:
        self._indexer = indexer
        self._dialects = dict(dialects or {})
        self._timeout = fetch_timeout_seconds
        self._page_size = page_size

    def dialect_for(self, network_id: str) -> IndexerDialect:
        return self._dialects.get(network_id, IndexerDialect.PROJECTS)

    async def _fetch_rows(
        self,
        network_id: str,
        name_filter: Sequence[str] | None,
    ) -> tuple[list[dict[str, Any]], SchemaVersion]:
        query = _QUERIES[self.dialect_for(network_id)]
        where: dict[str, Any] = {"name_in": list(name_filter)} if name_filter else {}

        rows: list[dict[str, Any]] = []
        version = SchemaVersion.V4
        for page in range(MAX_PAGES):
            data = await self._indexer.query(
                network_id,
                query,
                {"first": self._page_size, "skip": page * self._page_size, "where": where},
            )
            page_rows, version = extract_rows(data)
            rows.extend(page_rows)
            if len(page_rows) < self._page_size:
                break
        else:
            logger.warning("Stopped paging %s after %d pages", network_id, MAX_PAGES)
        return rows, version

    async def fetch(
        self,
        network_id: str,
        name_filter: Sequence[str] | None = None,
    ) -> AdapterResult:
        """Fetch all subnet records for a network.

        Args:
            network_id: Network to query.
            name_filter: Optional exact names to restrict the query to.

        Returns:
            A successful result with parsed records (malformed rows dropped and
            counted), or a `NetworkUnavailable` failure.
        """
        try:
            rows, version = await asyncio.wait_for(
                self._fetch_rows(network_id, name_filter),
                timeout=self._timeout,
            )
        except TimeoutError:
            logger.warning("Indexer fetch for %s timed out after %.1fs", network_id, self._timeout)
            return AdapterResult.failure(network_id, f"timed out after {self._timeout:.1f}s")
        except IndexerClientError as e:
            logger.warning("Indexer fetch for %s failed: %s", network_id, e)
            return AdapterResult.failure(network_id, str(e))
        except SchemaMismatch as e:
            logger.warning("Indexer response for %s has an unknown shape: %s", network_id, e.detail)
            return AdapterResult.failure(network_id, f"unrecognized response: {e.detail}")

        records: list[OnChainSubnetRecord] = []
        dropped = 0
        for row in rows:
            try:
                records.append(parse_record(network_id, row))
            except SchemaMismatch as e:
                dropped += 1
                logger.warning("SchemaMismatch: %s", e)

        logger.debug(
            "Fetched %d %s records from %s (%d dropped)", len(records), version.value, network_id, dropped
        )
        return AdapterResult.success(network_id, records, dropped=dropped)
