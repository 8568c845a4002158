"""Cross-chain settlement monitoring and post-transaction cache refresh."""

from subnet_staking_engine.settlement.monitor import ArrivalOutcome, ArrivalResult, BalanceArrivalMonitor
from subnet_staking_engine.settlement.refresh import CacheRefreshCoordinator

__all__ = [
    "ArrivalOutcome",
    "ArrivalResult",
    "BalanceArrivalMonitor",
    "CacheRefreshCoordinator",
]
