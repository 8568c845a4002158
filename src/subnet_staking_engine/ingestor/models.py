"""Data models for the ingestor module."""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass
from enum import Enum
from typing import Any

from subnet_staking_engine.errors import NetworkUnavailable


class SchemaVersion(str, Enum):
    """Where a subnet's authoritative profile metadata lives."""

    V1 = "v1"  # off-chain metadata store
    V4 = "v4"  # on-chain fields


@dataclass(frozen=True)
class SubnetMetadata:
    """Profile fields published on-chain alongside a subnet."""

    description: str | None = None
    website: str | None = None
    image: str | None = None
    slug: str | None = None

    @property
    def has_content(self) -> bool:
        return any((self.description, self.website, self.image, self.slug))

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SubnetMetadata:
        def text(key: str) -> str | None:
            value = data.get(key)
            if value is None:
                return None
            value = str(value).strip()
            return value or None

        return cls(
            description=text("description"),
            website=text("website"),
            image=text("image"),
            slug=text("slug"),
        )


@dataclass(frozen=True)
class OnChainSubnetRecord:
    """A subnet as reported by one network's indexing service.

    Amounts are raw integer token units; scale by the asset decimals to get
    display values.
    """

    network_id: str
    contract_id: str
    name: str
    admin: str | None
    total_staked_raw: int
    total_claimed_raw: int
    min_deposit_raw: int
    withdraw_lock_period_seconds: int
    staker_count: int
    starts_at: int | None
    schema_version: SchemaVersion
    metadata: SubnetMetadata | None = None


def _string_list(value: Any) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        # Some rows store arrays as JSON text.
        try:
            parsed = json.loads(value)
        except json.JSONDecodeError:
            return tuple(p.strip() for p in value.split(",") if p.strip())
        value = parsed if isinstance(parsed, list) else [parsed]
    if isinstance(value, (list, tuple)):
        return tuple(str(v).strip() for v in value if v is not None and str(v).strip())
    return ()


def _optional_text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


@dataclass(frozen=True)
class OffChainMetadataRecord:
    """A human-authored builder profile from the metadata store, keyed by name."""

    name: str
    description: str | None = None
    image: str | None = None
    website: str | None = None
    tags: tuple[str, ...] = ()
    admin_override: str | None = None
    networks: tuple[str, ...] = ()
    reward_types: tuple[str, ...] = ()
    long_description: str | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> OffChainMetadataRecord:
        """Create a record from a metadata store row.

        Raises:
            KeyError: If the row has no name.
        """
        name = _optional_text(row["name"])
        if name is None:
            raise KeyError("name")
        return cls(
            name=name,
            description=_optional_text(row.get("description")),
            image=_optional_text(row.get("image_src") or row.get("image")),
            website=_optional_text(row.get("website")),
            tags=_string_list(row.get("tags")),
            admin_override=_optional_text(row.get("admin")),
            networks=_string_list(row.get("networks")),
            reward_types=_string_list(row.get("reward_types")),
            long_description=_optional_text(row.get("long_description")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "image_src": self.image,
            "website": self.website,
            "tags": list(self.tags),
            "admin": self.admin_override,
            "networks": list(self.networks),
            "reward_types": list(self.reward_types),
            "long_description": self.long_description,
        }


def metadata_fingerprint(records: list[OffChainMetadataRecord]) -> str:
    """Stable digest of a metadata snapshot, used for change detection."""
    payload = json.dumps(
        sorted((r.to_dict() for r in records), key=lambda d: d["name"]),
        sort_keys=True,
    )
    return hashlib.sha256(payload.encode()).hexdigest()


@dataclass(frozen=True)
class AdapterResult:
    """Outcome of one source adapter fetch.

    Exactly one of `records` (success) or `error` (failure) is meaningful;
    a failed fetch carries an empty record tuple.
    """

    network_id: str
    records: tuple[OnChainSubnetRecord, ...] = ()
    error: NetworkUnavailable | None = None
    dropped: int = 0

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(
        cls,
        network_id: str,
        records: list[OnChainSubnetRecord],
        *,
        dropped: int = 0,
    ) -> AdapterResult:
        return cls(
            network_id=network_id,
            records=tuple(records),
            dropped=dropped,
        )

    @classmethod
    def failure(cls, network_id: str, reason: str) -> AdapterResult:
        return cls(network_id=network_id, error=NetworkUnavailable(network_id, reason))
