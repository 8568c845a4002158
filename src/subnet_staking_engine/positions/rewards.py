"""Power factor and reward estimate helpers."""

from __future__ import annotations

from decimal import ROUND_DOWN, ROUND_HALF_UP, Decimal, InvalidOperation

# Contract multipliers are fixed-point with 21 decimals, then divided by 10_000.
MULTIPLIER_SCALE = 10**21
REWARDS_DIVIDER = 10_000
MAX_POWER_FACTOR = Decimal("9.7")
RATE_PRECISION = 10**25
TOKEN_DECIMALS = 18


def power_factor_value(multiplier_raw: int) -> Decimal:
    """Power factor as a decimal, capped at the contract maximum."""
    value = Decimal(multiplier_raw) / MULTIPLIER_SCALE / REWARDS_DIVIDER
    return min(value, MAX_POWER_FACTOR)


def format_power_factor(multiplier_raw: int) -> str:
    """Format a raw contract multiplier as "x2.5"."""
    value = power_factor_value(multiplier_raw).quantize(Decimal("0.1"), rounding=ROUND_HALF_UP)
    return f"x{value}"


def estimate_base_rewards(amount_wei: int, pool_rate: int, user_rate: int = 0) -> int:
    """Rewards accrued by `amount_wei` between `user_rate` and `pool_rate`, before power factor."""
    return amount_wei * (pool_rate - user_rate) // RATE_PRECISION


def apply_power_factor(rewards: int, power_factor: str | Decimal) -> int:
    """Scale rewards by a power factor ("x2.5" or Decimal), at 1/1000 precision.

    An unparseable or non-positive factor leaves the rewards unchanged.
    """
    try:
        factor = Decimal(power_factor.lstrip("x")) if isinstance(power_factor, str) else Decimal(power_factor)
    except InvalidOperation:
        return rewards
    if factor <= 0:
        return rewards
    scaled = int((factor * 1000).to_integral_value(rounding=ROUND_DOWN))
    return rewards * scaled // 1000


def format_rewards(amount_wei: int, decimals: int = TOKEN_DECIMALS) -> str:
    """Compact display of a reward amount ("< 0.01", "12.50", "3.20K", "1.05M")."""
    value = Decimal(amount_wei).scaleb(-decimals)
    if value <= 0:
        return "0.00"
    if value < Decimal("0.01"):
        return "< 0.01"
    if value >= 1_000_000:
        return f"{value / 1_000_000:.2f}M"
    if value >= 1000:
        return f"{value / 1000:.2f}K"
    return f"{value:.2f}"
