"""Staking position reads, unlock arithmetic and chain access."""

from subnet_staking_engine.positions.calculator import (
    can_claim,
    can_withdraw,
    claim_unlock_at,
    evaluate_eligibility,
    format_lock_period,
    format_time_remaining,
    withdraw_unlock_at,
)
from subnet_staking_engine.positions.chain import ChainClient, ChainClients, Receipt, TxHandle
from subnet_staking_engine.positions.models import Eligibility, LockConfig, StakePosition
from subnet_staking_engine.positions.reader import StakePositionReader

__all__ = [
    "ChainClient",
    "ChainClients",
    "Eligibility",
    "LockConfig",
    "Receipt",
    "StakePosition",
    "StakePositionReader",
    "TxHandle",
    "can_claim",
    "can_withdraw",
    "claim_unlock_at",
    "evaluate_eligibility",
    "format_lock_period",
    "format_time_remaining",
    "withdraw_unlock_at",
]
