"""Transaction intent data models."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import Enum


class IntentKind(str, Enum):
    STAKE = "stake"
    WITHDRAW = "withdraw"
    CLAIM = "claim"
    LOCK_CHANGE = "lock_change"


class IntentState(str, Enum):
    """States of the orchestrator's per-intent state machine."""

    IDLE = "idle"
    VALIDATING = "validating"
    NEEDS_APPROVAL = "needs_approval"
    APPROVING = "approving"
    APPROVAL_CONFIRMED = "approval_confirmed"
    SUBMITTING = "submitting"
    PENDING_CONFIRMATION = "pending_confirmation"
    CONFIRMED = "confirmed"
    AWAITING_SETTLEMENT = "awaiting_settlement"
    SETTLED = "settled"

    # Failures
    INVALID = "invalid"
    REJECTED = "rejected"
    REVERTED = "reverted"
    CONFIRMATION_TIMEOUT = "confirmation_timeout"
    SETTLEMENT_TIMEOUT = "settlement_timeout"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES

    @property
    def is_failure(self) -> bool:
        return self in FAILURE_STATES


FAILURE_STATES = frozenset(
    {
        IntentState.INVALID,
        IntentState.REJECTED,
        IntentState.REVERTED,
        IntentState.CONFIRMATION_TIMEOUT,
        IntentState.SETTLEMENT_TIMEOUT,
        IntentState.CANCELLED,
    }
)

# A non-claim intent finishes at CONFIRMED; claims continue to settlement.
# CONFIRMATION_TIMEOUT is terminal until the caller polls again.
TERMINAL_STATES = FAILURE_STATES | {IntentState.SETTLED}


def _now() -> datetime:
    return datetime.now(UTC)


@dataclass
class TransactionIntent:
    """One user-initiated transaction flow.

    Owned by the orchestrator; callers only ever see copies via
    `IntentHandle.intent` and `IntentEvent.intent`.
    """

    kind: IntentKind
    user: str
    asset: str
    required_network: str
    amount: int | None = None
    subnet_id: str | None = None
    lock_seconds: int | None = None
    state: IntentState = IntentState.IDLE
    tx_hash: str | None = None
    approval_tx_hash: str | None = None
    error: Exception | None = None
    settled_amount: int | None = None
    intent_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)

    @property
    def key(self) -> tuple[str, str, IntentKind]:
        """Single-flight key."""
        return (self.user.lower(), self.asset, self.kind)

    @property
    def is_finished(self) -> bool:
        """True once no further transitions will happen without caller action."""
        if self.state in TERMINAL_STATES:
            return True
        return self.state == IntentState.CONFIRMED and self.kind != IntentKind.CLAIM

    @property
    def succeeded(self) -> bool:
        if self.kind == IntentKind.CLAIM:
            return self.state == IntentState.SETTLED
        return self.state == IntentState.CONFIRMED

    def raise_for_error(self) -> None:
        if self.error is not None:
            raise self.error

    def snapshot(self) -> TransactionIntent:
        return replace(self)


@dataclass(frozen=True)
class IntentEvent:
    """A single state transition."""

    intent: TransactionIntent
    previous: IntentState
    state: IntentState
    at: datetime = field(default_factory=_now)
    detail: str | None = None
