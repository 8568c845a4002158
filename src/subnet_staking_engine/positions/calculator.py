"""Unlock and eligibility arithmetic.

A position is locked by several overlapping constraints; each unlock time
is the latest of them. Everything here is pure and takes `now` explicitly.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

from subnet_staking_engine.positions.models import Eligibility, LockConfig, StakePosition

SECONDS_PER_MINUTE = 60
SECONDS_PER_HOUR = 3600
SECONDS_PER_DAY = 86400
DAYS_PER_MONTH = 30
DAYS_PER_YEAR = 365

MAX_LOCK_YEARS = 6
MIN_POWER_FACTOR_MONTHS = 6

TimeUnit = Literal["days", "months", "years"]


def withdraw_unlock_at(position: StakePosition, config: LockConfig) -> int:
    return max(
        config.payout_start + config.withdraw_lock_period,
        position.last_stake_timestamp + config.withdraw_lock_period_after_deposit,
    )


def claim_unlock_at(position: StakePosition, config: LockConfig) -> int:
    return max(
        position.claim_lock_end,
        config.payout_start + config.claim_lock_period,
        position.last_claim_timestamp + config.claim_lock_period_after_claim,
        position.last_stake_timestamp + config.claim_lock_period_after_stake,
    )


def can_withdraw(position: StakePosition, config: LockConfig, now: int) -> bool:
    return position.deposited > 0 and now >= withdraw_unlock_at(position, config)


def can_claim(position: StakePosition, config: LockConfig, now: int) -> bool:
    return position.pending_reward > 0 and now >= claim_unlock_at(position, config)


def _plural(count: int, unit: str) -> str:
    return f"{count} {unit}{'' if count == 1 else 's'}"


def format_lock_period(seconds: int | None) -> str:
    """Render a lock period ("3 days", "1 hour", "5 min", "30 sec"); zero or missing is "-"."""
    if not seconds:
        return "-"
    if seconds >= SECONDS_PER_DAY:
        return _plural(seconds // SECONDS_PER_DAY, "day")
    if seconds >= SECONDS_PER_HOUR:
        return _plural(seconds // SECONDS_PER_HOUR, "hour")
    if seconds >= SECONDS_PER_MINUTE:
        return f"{seconds // SECONDS_PER_MINUTE} min"
    return f"{seconds} sec"


def format_time_remaining(unlock_at: int, now: int) -> str:
    """Human-readable time until `unlock_at`, or "Unlocked" once it has passed."""
    remaining = unlock_at - now
    if remaining <= 0:
        return "Unlocked"
    if remaining >= SECONDS_PER_DAY:
        return _plural(remaining // SECONDS_PER_DAY, "day")
    if remaining >= SECONDS_PER_HOUR:
        return _plural(remaining // SECONDS_PER_HOUR, "hour")
    return _plural(max(1, remaining // SECONDS_PER_MINUTE), "minute")


def evaluate_eligibility(position: StakePosition, config: LockConfig, now: int) -> Eligibility:
    withdraw_at = withdraw_unlock_at(position, config)
    claim_at = claim_unlock_at(position, config)
    return Eligibility(
        can_withdraw=can_withdraw(position, config, now),
        can_claim=can_claim(position, config, now),
        withdraw_unlock_at=withdraw_at,
        claim_unlock_at=claim_at,
        withdraw_time_remaining=format_time_remaining(withdraw_at, now),
        claim_time_remaining=format_time_remaining(claim_at, now),
        evaluated_at=now,
    )


def duration_to_seconds(value: int, unit: TimeUnit) -> int:
    """Lock duration in seconds as the contracts expect it (30-day months, 365-day years).

    Non-positive values give 0.
    """
    if value <= 0:
        return 0
    match unit:
        case "days":
            days = value
        case "months":
            days = value * DAYS_PER_MONTH
        case "years":
            days = value * DAYS_PER_YEAR
        case _:
            raise ValueError(f"Unknown time unit: {unit}")
    return days * SECONDS_PER_DAY


@dataclass(frozen=True)
class LockDurationCheck:
    valid: bool
    error: str | None = None
    warning: str | None = None


def validate_lock_duration(seconds: int) -> LockDurationCheck:
    """Check a requested claim lock against the protocol's bounds.

    Locks longer than six years are rejected. Locks shorter than six months
    are allowed but earn no power factor multiplier.
    """
    if seconds <= 0:
        return LockDurationCheck(False, error="Please enter a valid positive duration")
    if seconds > MAX_LOCK_YEARS * DAYS_PER_YEAR * SECONDS_PER_DAY:
        return LockDurationCheck(False, error=f"Maximum lock period is {MAX_LOCK_YEARS} years")
    if seconds < MIN_POWER_FACTOR_MONTHS * DAYS_PER_MONTH * SECONDS_PER_DAY:
        return LockDurationCheck(
            True,
            warning=(
                f"Power factor starts after {MIN_POWER_FACTOR_MONTHS} months. "
                "This period will have 1.0x multiplier."
            ),
        )
    return LockDurationCheck(True)
