"""Parsing of indexer responses into on-chain subnet records.

Indexers answer in one of two shapes: the newer `buildersProjects`
collection (optionally wrapped in `items`) or the older flat
`builderSubnets` array. Testnet deployments of the latter rename several
fields (`owner`, `minStake`, `withdrawLockPeriodAfterStake`). Each parsed
record is classified once into a `SchemaVersion`.
"""

from __future__ import annotations

import re
from typing import Any

from subnet_staking_engine.errors import SchemaMismatch
from subnet_staking_engine.ingestor.models import OnChainSubnetRecord, SchemaVersion, SubnetMetadata

_HEX_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")

# Field name variants across indexer generations, first match wins.
_ADMIN_FIELDS = ("admin", "owner")
_MIN_DEPOSIT_FIELDS = ("minimalDeposit", "minStake")
_WITHDRAW_LOCK_FIELDS = ("withdrawLockPeriodAfterDeposit", "withdrawLockPeriodAfterStake")
_STAKER_COUNT_FIELDS = ("totalUsers", "stakersCount")

_COLLECTION_KEYS = (
    ("buildersProjects", SchemaVersion.V4),
    ("builderSubnets", SchemaVersion.V1),
)


def classify_schema_version(contract_id: str, metadata: SubnetMetadata | None) -> SchemaVersion:
    """Decide where a record's authoritative metadata lives.

    Records that publish any profile field on-chain are V4. Without on-chain
    metadata, a contract-address-shaped id (20-byte hex) marks a V4
    deployment and anything else (generated hash ids) a V1 one.
    """
    if metadata is not None and metadata.has_content:
        return SchemaVersion.V4
    if _HEX_ADDRESS_RE.match(contract_id):
        return SchemaVersion.V4
    return SchemaVersion.V1


def extract_rows(data: dict[str, Any]) -> tuple[list[dict[str, Any]], SchemaVersion]:
    """Pull the record list out of a GraphQL `data` object.

    Raises:
        SchemaMismatch: If no known collection is present.
    """
    for key, version in _COLLECTION_KEYS:
        if key not in data:
            continue
        collection = data[key]
        if isinstance(collection, dict):
            collection = collection.get("items")
        if collection is None:
            return [], version
        if not isinstance(collection, list):
            raise SchemaMismatch("<response>", None, f"{key} is not a list")
        return [row for row in collection if isinstance(row, dict)], version
    raise SchemaMismatch("<response>", None, f"no known collection in keys {sorted(data)}")


def _first(row: dict[str, Any], names: tuple[str, ...]) -> Any:
    for name in names:
        value = row.get(name)
        if value is not None and value != "":
            return value
    return None


def _to_int(value: Any) -> int:
    if isinstance(value, bool):
        raise ValueError("boolean is not an amount")
    if isinstance(value, int):
        return value
    text = str(value).strip()
    if text.startswith(("0x", "0X")):
        return int(text, 16)
    if "." in text:
        # Some indexers serialize BigInt as "123.0".
        whole, _, frac = text.partition(".")
        if frac.strip("0"):
            raise ValueError(f"non-integer amount {text!r}")
        text = whole
    return int(text)


def _required_int(network_id: str, record_id: str | None, row: dict[str, Any], names: tuple[str, ...]) -> int:
    value = _first(row, names)
    if value is None:
        raise SchemaMismatch(network_id, record_id, f"missing {names[0]}")
    try:
        parsed = _to_int(value)
    except (TypeError, ValueError) as e:
        raise SchemaMismatch(network_id, record_id, f"bad {names[0]}: {e}") from e
    if parsed < 0:
        raise SchemaMismatch(network_id, record_id, f"negative {names[0]}")
    return parsed


def _optional_int(network_id: str, record_id: str | None, row: dict[str, Any], names: tuple[str, ...]) -> int | None:
    if _first(row, names) is None:
        return None
    return _required_int(network_id, record_id, row, names)


def parse_record(network_id: str, row: dict[str, Any]) -> OnChainSubnetRecord:
    """Parse one indexer row.

    `totalStaked`, the minimum deposit and the withdraw lock period are
    required; counts and timestamps default when absent.

    Raises:
        SchemaMismatch: If the row is missing an id, a name or a required numeric field.
    """
    raw_id = row.get("id")
    record_id = str(raw_id).strip() if raw_id is not None else None
    if not record_id:
        raise SchemaMismatch(network_id, None, "missing id")
    name = str(row.get("name") or "").strip()
    if not name:
        raise SchemaMismatch(network_id, record_id, "missing name")

    total_staked = _required_int(network_id, record_id, row, ("totalStaked",))
    min_deposit = _required_int(network_id, record_id, row, _MIN_DEPOSIT_FIELDS)
    withdraw_lock = _required_int(network_id, record_id, row, _WITHDRAW_LOCK_FIELDS)
    total_claimed = _optional_int(network_id, record_id, row, ("totalClaimed",)) or 0
    staker_count = _optional_int(network_id, record_id, row, _STAKER_COUNT_FIELDS) or 0
    starts_at = _optional_int(network_id, record_id, row, ("startsAt",))

    admin = _first(row, _ADMIN_FIELDS)
    metadata = SubnetMetadata.from_dict(row)
    if not metadata.has_content:
        metadata = None

    return OnChainSubnetRecord(
        network_id=network_id,
        contract_id=record_id,
        name=name,
        admin=str(admin) if admin is not None else None,
        total_staked_raw=total_staked,
        total_claimed_raw=total_claimed,
        min_deposit_raw=min_deposit,
        withdraw_lock_period_seconds=withdraw_lock,
        staker_count=staker_count,
        starts_at=starts_at,
        schema_version=classify_schema_version(record_id, metadata),
        metadata=metadata,
    )
