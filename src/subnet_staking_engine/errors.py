"""Error taxonomy shared by the read and command paths.

Adapter and merge-level errors are recovered locally: a failing network
degrades only its own contribution and malformed records are dropped.
Transaction-level errors always reach the caller, attached to the intent
that produced them.
"""

from __future__ import annotations


class StakingEngineError(Exception):
    """Base exception for all engine errors."""


# ---------------------------------------------------------------------------
# Read path
# ---------------------------------------------------------------------------


class NetworkUnavailable(StakingEngineError):
    """An indexer or RPC endpoint for one network could not be reached."""

    def __init__(self, network_id: str, reason: str) -> None:
        super().__init__(f"Network {network_id} unavailable: {reason}")
        self.network_id = network_id
        self.reason = reason


class SchemaMismatch(StakingEngineError):
    """A record is missing a required field or carries an unparseable value."""

    def __init__(self, network_id: str, record_id: str | None, detail: str) -> None:
        super().__init__(f"Malformed record {record_id or '<unknown>'} on {network_id}: {detail}")
        self.network_id = network_id
        self.record_id = record_id
        self.detail = detail


class IdentityCollision(StakingEngineError):
    """The same builder name appeared on several networks.

    Resolved by suffixing each id with its network; only ever logged.
    """

    def __init__(self, name: str, networks: tuple[str, ...]) -> None:
        super().__init__(f"Builder name {name!r} present on networks {', '.join(networks)}")
        self.name = name
        self.networks = networks


class StaleCacheRead(StakingEngineError):
    """Attached to a listing served from a pass with degraded networks.

    This is a flag carried on read results and is not raised.
    """

    def __init__(self, degraded_networks: tuple[str, ...]) -> None:
        super().__init__(f"Listing contains stale data for: {', '.join(degraded_networks)}")
        self.degraded_networks = degraded_networks


class PositionReadError(StakingEngineError):
    """A staking position could not be read from its contract."""


# ---------------------------------------------------------------------------
# Command path
# ---------------------------------------------------------------------------


class TransactionError(StakingEngineError):
    """Base class for errors surfaced on a transaction intent."""


class InvalidAmount(TransactionError):
    """Requested amount is zero or negative."""


class InvalidLockDuration(TransactionError):
    """Requested claim lock duration is outside the allowed range."""


class InsufficientBalance(TransactionError):
    """Requested amount exceeds the wallet or deposited balance."""

    def __init__(self, requested: int, available: int) -> None:
        super().__init__(f"Requested {requested} exceeds available {available}")
        self.requested = requested
        self.available = available


class InsufficientAllowance(TransactionError):
    """Allowance still below the requested amount after approval."""

    def __init__(self, requested: int, allowance: int) -> None:
        super().__init__(f"Allowance {allowance} is below requested {requested}")
        self.requested = requested
        self.allowance = allowance


class NetworkSwitchRequired(TransactionError):
    """Caller is connected to a different network than the intent requires."""

    def __init__(self, current_network: str | None, required_network: str) -> None:
        super().__init__(
            f"Switch network from {current_network or '<none>'} to {required_network} and retry"
        )
        self.current_network = current_network
        self.required_network = required_network


class IntentInFlight(TransactionError):
    """Another intent for the same user, asset and kind has not finished."""

    def __init__(self, user: str, asset: str, kind: str) -> None:
        super().__init__(f"A {kind} intent for {asset} is already in flight for {user}")
        self.user = user
        self.asset = asset
        self.kind = kind


class NothingToClaim(TransactionError):
    """Claim requested while no reward is pending or claims are still locked."""


class WithdrawLocked(TransactionError):
    """Withdraw requested before the deposit unlocks."""

    def __init__(self, unlock_at: int) -> None:
        super().__init__(f"Withdrawal not allowed until {unlock_at}")
        self.unlock_at = unlock_at


class TransactionRejected(TransactionError):
    """The signer declined the transaction."""


class TransactionReverted(TransactionError):
    """The transaction was included but reverted; `reason` is verbatim."""

    def __init__(self, reason: str, tx_hash: str | None = None) -> None:
        super().__init__(f"Transaction reverted: {reason}")
        self.reason = reason
        self.tx_hash = tx_hash


class ConfirmationTimeout(TransactionError):
    """No receipt observed within the confirmation window."""

    def __init__(self, tx_hash: str, timeout_seconds: float) -> None:
        super().__init__(f"Transaction {tx_hash} not confirmed after {timeout_seconds:.0f}s")
        self.tx_hash = tx_hash
        self.timeout_seconds = timeout_seconds


class SettlementTimeout(TransactionError):
    """Claim confirmed but the destination balance has not increased yet.

    Funds are most likely still in transit between networks.
    """

    def __init__(self, destination_network: str, timeout_seconds: float) -> None:
        super().__init__(
            f"Rewards not yet visible on {destination_network} after {timeout_seconds:.0f}s; "
            "they are likely still in transit"
        )
        self.destination_network = destination_network
        self.timeout_seconds = timeout_seconds


class IntentCancelled(TransactionError):
    """The caller abandoned the flow."""
