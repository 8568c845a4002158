"""Data models for the reconciliation engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from subnet_staking_engine.errors import StaleCacheRead
from subnet_staking_engine.ingestor.models import SchemaVersion
from subnet_staking_engine.reconciler.descriptions import StructuredDescription


@dataclass(frozen=True)
class Builder:
    """Canonical, merged view of one subnet on one network.

    Builders with no on-chain record (profiles that only exist in the
    metadata store) have zero numeric state and no `contract_id`.
    """

    id: str
    name: str
    networks: tuple[str, ...]
    admin: str | None
    total_staked: Decimal
    total_claimed: Decimal
    staking_count: int
    min_deposit: Decimal
    lock_period_seconds: int
    starts_at: int | None
    description: str | None = None
    image: str | None = None
    website: str | None = None
    contract_id: str | None = None
    schema_version: SchemaVersion = SchemaVersion.V1
    tags: tuple[str, ...] = ()
    reward_types: tuple[str, ...] = ()
    stale: bool = False
    structured: StructuredDescription | None = None

    @property
    def network_id(self) -> str | None:
        """Network of the backing contract, if any."""
        if self.contract_id is None or not self.networks:
            return None
        return self.networks[0]

    @property
    def is_on_chain(self) -> bool:
        return self.contract_id is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "networks": list(self.networks),
            "admin": self.admin,
            "total_staked": str(self.total_staked),
            "total_claimed": str(self.total_claimed),
            "staking_count": self.staking_count,
            "min_deposit": str(self.min_deposit),
            "lock_period_seconds": self.lock_period_seconds,
            "starts_at": self.starts_at,
            "description": self.description,
            "image": self.image,
            "website": self.website,
            "contract_id": self.contract_id,
            "schema_version": self.schema_version.value,
            "tags": list(self.tags),
            "reward_types": list(self.reward_types),
            "stale": self.stale,
        }


class SortKey(str, Enum):
    """Fields a builder listing can be ordered by."""

    NAME = "name"
    TOTAL_STAKED = "total_staked"
    STAKING_COUNT = "staking_count"
    LOCK_PERIOD = "lock_period"
    MIN_DEPOSIT = "min_deposit"
    STARTS_AT = "starts_at"


@dataclass(frozen=True)
class BuilderSort:
    """Sort order for a listing; ties always fall back to name ascending."""

    key: SortKey = SortKey.TOTAL_STAKED
    descending: bool = True


@dataclass(frozen=True)
class BuilderFilter:
    """Optional constraints applied to a listing. Unset fields match everything."""

    name_contains: str | None = None
    network: str | None = None
    has_description: bool | None = None
    reward_type: str | None = None
    min_total_staked: Decimal | None = None

    def matches(self, builder: Builder) -> bool:
        if self.name_contains and self.name_contains.casefold() not in builder.name.casefold():
            return False
        if self.network and self.network not in builder.networks:
            return False
        if self.has_description is not None and bool(builder.description) != self.has_description:
            return False
        if self.reward_type and self.reward_type.casefold() not in (r.casefold() for r in builder.reward_types):
            return False
        if self.min_total_staked is not None and builder.total_staked < self.min_total_staked:
            return False
        return True


@dataclass(frozen=True)
class BuilderTotals:
    """Aggregates over a set of builders."""

    total_builders: int
    total_staked: Decimal
    total_staking: int
    unique_networks: tuple[str, ...]


@dataclass(frozen=True)
class BuilderListing:
    """Result of a builder query.

    `stale` is set when one or more networks could not be reached during
    the pass that produced the listing; their builders are the last known
    good values and carry `Builder.stale`.
    """

    builders: tuple[Builder, ...]
    degraded_networks: tuple[str, ...] = ()
    dropped_records: int = 0
    generated_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def stale(self) -> StaleCacheRead | None:
        if not self.degraded_networks:
            return None
        return StaleCacheRead(self.degraded_networks)

    def get(self, builder_id: str) -> Builder | None:
        for builder in self.builders:
            if builder.id == builder_id:
                return builder
        return None

    def __len__(self) -> int:
        return len(self.builders)
