"""Reconciliation of per-network on-chain records with off-chain metadata.

`reconcile` is a pure merge. `ReconciliationEngine` drives it: it fans out
to every network's source adapter concurrently, merges the results with
the latest metadata snapshot, and atomically swaps in the new listing.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from collections.abc import Awaitable, Callable, Iterable, Mapping, Sequence
from dataclasses import replace
from decimal import Decimal
from typing import Protocol

from subnet_staking_engine.errors import IdentityCollision
from subnet_staking_engine.ingestor.models import (
    AdapterResult,
    OffChainMetadataRecord,
    OnChainSubnetRecord,
    SchemaVersion,
)
from subnet_staking_engine.reconciler.aliases import NameAliasTable, slugify
from subnet_staking_engine.reconciler.descriptions import parse_structured_description
from subnet_staking_engine.reconciler.models import (
    Builder,
    BuilderFilter,
    BuilderListing,
    BuilderSort,
    BuilderTotals,
    SortKey,
)

logger = logging.getLogger(__name__)

DEFAULT_DECIMALS = 18
DEFAULT_FETCH_TIMEOUT_SECONDS = 15.0
MAX_CONCURRENT_ADMIN_LOOKUPS = 8

AdminResolver = Callable[[str, str], Awaitable[str | None]]


class SourceAdapter(Protocol):
    async def fetch(self, network_id: str, name_filter: Sequence[str] | None = None) -> AdapterResult: ...


class MetadataSource(Protocol):
    async def list(self) -> list[OffChainMetadataRecord]: ...


def scale_amount(raw: int, decimals: int) -> Decimal:
    """Convert a raw integer token amount to its decimal value."""
    return Decimal(raw).scaleb(-decimals)


def _merge_text(schema_version: SchemaVersion, on_chain: str | None, off_chain: str | None) -> str | None:
    match schema_version:
        case SchemaVersion.V4:
            return on_chain or off_chain
        case SchemaVersion.V1:
            return off_chain or on_chain


def _build_on_chain(
    record: OnChainSubnetRecord,
    builder_id: str,
    meta: OffChainMetadataRecord | None,
    decimals: int,
    stale: bool,
) -> Builder:
    chain_meta = record.metadata
    description = _merge_text(
        record.schema_version,
        chain_meta.description if chain_meta else None,
        meta.description if meta else None,
    )
    description, structured = parse_structured_description(description)
    return Builder(
        id=builder_id,
        name=record.name,
        networks=(record.network_id,),
        admin=(meta.admin_override if meta else None) or record.admin,
        total_staked=scale_amount(record.total_staked_raw, decimals),
        total_claimed=scale_amount(record.total_claimed_raw, decimals),
        staking_count=record.staker_count,
        min_deposit=scale_amount(record.min_deposit_raw, decimals),
        lock_period_seconds=record.withdraw_lock_period_seconds,
        starts_at=record.starts_at,
        description=description,
        image=_merge_text(
            record.schema_version,
            chain_meta.image if chain_meta else None,
            meta.image if meta else None,
        ),
        website=_merge_text(
            record.schema_version,
            chain_meta.website if chain_meta else None,
            meta.website if meta else None,
        ),
        contract_id=record.contract_id,
        schema_version=record.schema_version,
        tags=meta.tags if meta else (),
        reward_types=meta.reward_types if meta else (),
        stale=stale,
        structured=structured,
    )


def _build_zero_state(meta: OffChainMetadataRecord, builder_id: str) -> Builder:
    description, structured = parse_structured_description(meta.description)
    return Builder(
        id=builder_id,
        name=meta.name,
        networks=meta.networks,
        admin=meta.admin_override,
        total_staked=Decimal(0),
        total_claimed=Decimal(0),
        staking_count=0,
        min_deposit=Decimal(0),
        lock_period_seconds=0,
        starts_at=None,
        description=description,
        image=meta.image,
        website=meta.website,
        tags=meta.tags,
        reward_types=meta.reward_types,
        structured=structured,
    )


def _unique_ids(builders: list[Builder]) -> list[Builder]:
    seen: set[str] = set()
    result = []
    for builder in builders:
        candidate = builder.id or "builder"
        n = 2
        while candidate in seen:
            candidate = f"{builder.id}-{n}"
            n += 1
        seen.add(candidate)
        result.append(builder if candidate == builder.id else replace(builder, id=candidate))
    return result


def reconcile(
    on_chain: Mapping[str, Sequence[OnChainSubnetRecord]],
    off_chain: Sequence[OffChainMetadataRecord],
    *,
    aliases: NameAliasTable | None = None,
    decimals: int = DEFAULT_DECIMALS,
    sort: BuilderSort | None = None,
    stale_networks: Iterable[str] = (),
) -> list[Builder]:
    """Merge per-network records and off-chain profiles into builders.

    Records are grouped by canonical name. A name present on more than one
    network gets its network appended to every instance's id; otherwise the
    id is the name's slug. Profile text follows schema-version precedence
    while numeric state always comes from the on-chain record. Off-chain
    profiles with no on-chain match become zero-state builders.

    Args:
        on_chain: Records per network id.
        off_chain: Profiles from the metadata store.
        aliases: Name alias table applied after normalization.
        decimals: Token decimals used to scale raw amounts.
        sort: Ordering of the result (default: total staked, descending).
        stale_networks: Networks whose records are carried over from an
            earlier pass; their builders are flagged `stale`.

    Returns:
        Builders with pairwise unique ids.
    """
    aliases = aliases or NameAliasTable()
    stale = frozenset(stale_networks)

    metadata: dict[str, OffChainMetadataRecord] = {}
    for meta in off_chain:
        key = aliases.canonical(meta.name)
        if key in metadata:
            logger.debug("Duplicate metadata profile for %r, keeping the first", meta.name)
            continue
        metadata[key] = meta

    groups: dict[str, list[OnChainSubnetRecord]] = defaultdict(list)
    for network_id, records in on_chain.items():
        for record in records:
            if record.network_id != network_id:
                record = replace(record, network_id=network_id)
            groups[aliases.canonical(record.name)].append(record)

    builders: list[Builder] = []
    for key, members in groups.items():
        networks = tuple(dict.fromkeys(r.network_id for r in members))
        spans_networks = len(networks) > 1
        if spans_networks:
            logger.info("%s", IdentityCollision(members[0].name, networks))
        meta = metadata.get(key)
        for record in members:
            slug = slugify(record.metadata.slug) if record.metadata and record.metadata.slug else ""
            base_id = slug or slugify(record.name)
            builder_id = f"{base_id}-{slugify(record.network_id)}" if spans_networks else base_id
            builders.append(_build_on_chain(record, builder_id, meta, decimals, record.network_id in stale))

    for key, meta in metadata.items():
        if key not in groups:
            builders.append(_build_zero_state(meta, slugify(meta.name)))

    return sort_builders(_unique_ids(builders), sort or BuilderSort())


def _sort_value(builder: Builder, key: SortKey) -> object:
    match key:
        case SortKey.NAME:
            return builder.name.casefold()
        case SortKey.TOTAL_STAKED:
            return builder.total_staked
        case SortKey.STAKING_COUNT:
            return builder.staking_count
        case SortKey.LOCK_PERIOD:
            return builder.lock_period_seconds
        case SortKey.MIN_DEPOSIT:
            return builder.min_deposit
        case SortKey.STARTS_AT:
            return builder.starts_at


def sort_builders(builders: Iterable[Builder], sort: BuilderSort) -> list[Builder]:
    """Stable sort by `sort.key`; ties break by name ascending, missing values last."""
    by_name = sorted(builders, key=lambda b: (b.name.casefold(), b.id))
    present = [b for b in by_name if _sort_value(b, sort.key) is not None]
    missing = [b for b in by_name if _sort_value(b, sort.key) is None]
    present.sort(key=lambda b: _sort_value(b, sort.key), reverse=sort.descending)
    return present + missing


def filter_builders(builders: Iterable[Builder], builder_filter: BuilderFilter | None) -> list[Builder]:
    if builder_filter is None:
        return list(builders)
    return [b for b in builders if builder_filter.matches(b)]


def totals(builders: Iterable[Builder]) -> BuilderTotals:
    """Aggregate counts and stake over a set of builders."""
    builders = list(builders)
    networks: dict[str, None] = {}
    for builder in builders:
        for network_id in builder.networks:
            networks.setdefault(network_id, None)
    return BuilderTotals(
        total_builders=len(builders),
        total_staked=sum((b.total_staked for b in builders), Decimal(0)),
        total_staking=sum(b.staking_count for b in builders),
        unique_networks=tuple(networks),
    )


async def resolve_admins(
    builders: Sequence[Builder],
    resolver: AdminResolver,
    *,
    max_concurrency: int = MAX_CONCURRENT_ADMIN_LOOKUPS,
) -> list[Builder]:
    """Fill in missing admins from the contracts, only for builders that have none.

    Lookup failures leave the admin as None.
    """
    semaphore = asyncio.Semaphore(max_concurrency)
    targets = [i for i, b in enumerate(builders) if b.admin is None and b.network_id is not None]
    if not targets:
        return list(builders)

    async def lookup(builder: Builder) -> str | None:
        async with semaphore:
            return await resolver(builder.networks[0], builder.contract_id or "")

    results = await asyncio.gather(*(lookup(builders[i]) for i in targets), return_exceptions=True)
    resolved = list(builders)
    for index, result in zip(targets, results, strict=True):
        if isinstance(result, BaseException):
            logger.warning("Admin lookup failed for %s: %s", builders[index].id, result)
            continue
        if result:
            resolved[index] = replace(builders[index], admin=result)
    return resolved


class ReconciliationEngine:
    """Runs reconciliation passes and serves the cached builder listing.

    The listing is an immutable snapshot replaced wholesale at the end of
    each pass, so readers never observe a partial merge.

    Example:
        ```python
        engine = ReconciliationEngine(adapter, ["base", "arbitrum"], metadata_store=store)
        listing = await engine.run_pass()
        if listing.stale:
            print("degraded:", listing.degraded_networks)
        ```
    """

    def __init__(
        self,
        adapter: SourceAdapter,
        networks: Sequence[str],
        *,
        metadata_store: MetadataSource | None = None,
        aliases: NameAliasTable | None = None,
        decimals: int = DEFAULT_DECIMALS,
        fetch_timeout_seconds: float = DEFAULT_FETCH_TIMEOUT_SECONDS,
        admin_resolver: AdminResolver | None = None,
        name_filter: Sequence[str] | None = None,
    ) -> None:
        self._adapter = adapter
        self._networks = tuple(networks)
        self._metadata_store = metadata_store
        self._aliases = aliases or NameAliasTable()
        self._decimals = decimals
        self._fetch_timeout = fetch_timeout_seconds
        self._admin_resolver = admin_resolver
        self._name_filter = tuple(name_filter) if name_filter else None

        self._listing: BuilderListing | None = None
        self._dirty = True
        self._last_good: dict[str, tuple[OnChainSubnetRecord, ...]] = {}
        self._last_metadata: list[OffChainMetadataRecord] = []
        self._pass_lock = asyncio.Lock()

    @property
    def networks(self) -> tuple[str, ...]:
        return self._networks

    @property
    def listing(self) -> BuilderListing | None:
        """The current snapshot, or None before the first pass."""
        return self._listing

    def invalidate(self) -> None:
        """Mark the snapshot out of date; the next read triggers a new pass."""
        self._dirty = True

    async def _fetch_network(self, network_id: str) -> AdapterResult:
        return await asyncio.wait_for(
            self._adapter.fetch(network_id, self._name_filter),
            timeout=self._fetch_timeout,
        )

    async def _fetch_metadata(self) -> list[OffChainMetadataRecord]:
        if self._metadata_store is None:
            return []
        try:
            records = await asyncio.wait_for(self._metadata_store.list(), timeout=self._fetch_timeout)
        except Exception as e:
            logger.warning("Metadata store unavailable, reusing last snapshot: %s", e)
            return self._last_metadata
        self._last_metadata = list(records)
        return self._last_metadata

    async def run_pass(self) -> BuilderListing:
        """Fetch every network and the metadata store, merge, and swap the snapshot in."""
        async with self._pass_lock:
            fetches = await asyncio.gather(
                *(self._fetch_network(n) for n in self._networks),
                self._fetch_metadata(),
                return_exceptions=True,
            )
            *network_results, metadata = fetches
            if isinstance(metadata, BaseException):
                logger.warning("Metadata fetch failed: %s", metadata)
                metadata = self._last_metadata

            on_chain: dict[str, Sequence[OnChainSubnetRecord]] = {}
            degraded: list[str] = []
            dropped = 0
            for network_id, result in zip(self._networks, network_results, strict=True):
                if isinstance(result, BaseException):
                    reason = "timed out" if isinstance(result, TimeoutError) else str(result)
                    result = AdapterResult.failure(network_id, reason)
                if result.ok:
                    on_chain[network_id] = result.records
                    self._last_good[network_id] = result.records
                    dropped += result.dropped
                    continue
                logger.warning("Network degraded for this pass: %s", result.error)
                degraded.append(network_id)
                if network_id in self._last_good:
                    on_chain[network_id] = self._last_good[network_id]

            builders = reconcile(
                on_chain,
                metadata,
                aliases=self._aliases,
                decimals=self._decimals,
                stale_networks=degraded,
            )
            if self._admin_resolver is not None:
                builders = await resolve_admins(builders, self._admin_resolver)

            listing = BuilderListing(
                builders=tuple(builders),
                degraded_networks=tuple(degraded),
                dropped_records=dropped,
            )
            self._listing = listing
            self._dirty = False
            logger.info(
                "Reconciled %d builders from %d networks (%d degraded, %d records dropped)",
                len(builders),
                len(self._networks),
                len(degraded),
                dropped,
            )
            return listing

    async def list_builders(
        self,
        builder_filter: BuilderFilter | None = None,
        sort: BuilderSort | None = None,
    ) -> BuilderListing:
        """Return the filtered, sorted listing, running a pass if the snapshot is out of date."""
        listing = self._listing
        if listing is None or self._dirty:
            listing = await self.run_pass()
        builders = sort_builders(filter_builders(listing.builders, builder_filter), sort or BuilderSort())
        return replace(listing, builders=tuple(builders))

    async def get_builder(self, builder_id: str) -> Builder | None:
        listing = await self.list_builders()
        return listing.get(builder_id)
