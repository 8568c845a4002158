"""Data models for staking positions and lock configuration."""

from __future__ import annotations

from dataclasses import asdict, dataclass, fields
from typing import Any


@dataclass(frozen=True)
class StakePosition:
    """A user's state in one subnet (or deposit pool) for one asset.

    Amounts are raw token units; timestamps are unix seconds. Unlock times
    are derived by the calculator and never stored here.
    """

    user: str
    subnet_id: str
    asset: str
    deposited: int = 0
    virtual_deposited: int = 0
    last_stake_timestamp: int = 0
    claim_lock_start: int = 0
    claim_lock_end: int = 0
    last_claim_timestamp: int = 0
    pending_reward: int = 0

    def __post_init__(self) -> None:
        for name in (
            "deposited",
            "virtual_deposited",
            "last_stake_timestamp",
            "claim_lock_start",
            "claim_lock_end",
            "last_claim_timestamp",
            "pending_reward",
        ):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must be >= 0")

    @property
    def is_empty(self) -> bool:
        return self.deposited == 0 and self.pending_reward == 0

    def to_dict(self) -> dict[str, Any]:
        """Serialize for caching; integers are kept as strings to survive JSON."""
        data = asdict(self)
        for key, value in data.items():
            if isinstance(value, int):
                data[key] = str(value)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StakePosition:
        return cls(
            user=data["user"],
            subnet_id=data["subnet_id"],
            asset=data["asset"],
            **{
                f.name: int(data.get(f.name, 0))
                for f in fields(cls)
                if f.name not in ("user", "subnet_id", "asset")
            },
        )


@dataclass(frozen=True)
class LockConfig:
    """Protocol-level lock parameters for one pool or subnet, in seconds."""

    payout_start: int = 0
    withdraw_lock_period: int = 0
    claim_lock_period: int = 0
    withdraw_lock_period_after_deposit: int = 0
    claim_lock_period_after_claim: int = 0
    claim_lock_period_after_stake: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LockConfig:
        return cls(**{f.name: int(data.get(f.name, 0)) for f in fields(cls)})


@dataclass(frozen=True)
class Eligibility:
    """Whether a position can be withdrawn or claimed at `evaluated_at`."""

    can_withdraw: bool
    can_claim: bool
    withdraw_unlock_at: int
    claim_unlock_at: int
    withdraw_time_remaining: str
    claim_time_remaining: str
    evaluated_at: int
