"""Transaction orchestrator.

Drives approve, stake, withdraw, claim and lock-change flows through the
intent state machine:

    Idle -> Validating -> [NeedsApproval -> Approving -> ApprovalConfirmed]
         -> Submitting -> PendingConfirmation -> Confirmed
         -> [AwaitingSettlement -> Settled]

Every failure ends in exactly one terminal state with the matching error
recorded on the intent. Only one intent per (user, asset, kind) may be live.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Protocol

from subnet_staking_engine.config import AssetConfig
from subnet_staking_engine.errors import (
    ConfirmationTimeout,
    InsufficientAllowance,
    InsufficientBalance,
    IntentCancelled,
    IntentInFlight,
    InvalidAmount,
    InvalidLockDuration,
    NetworkSwitchRequired,
    NetworkUnavailable,
    NothingToClaim,
    SettlementTimeout,
    StakingEngineError,
    TransactionError,
    TransactionRejected,
    TransactionReverted,
    WithdrawLocked,
)
from subnet_staking_engine.positions.calculator import (
    SECONDS_PER_DAY,
    can_claim,
    can_withdraw,
    claim_unlock_at,
    validate_lock_duration,
    withdraw_unlock_at,
)
from subnet_staking_engine.positions.chain import ChainClientError, Receipt, TxHandle
from subnet_staking_engine.positions.contracts import (
    ContractCall,
    approve_call,
    claim_call,
    deposit_call,
    lock_claim_call,
    withdraw_call,
)
from subnet_staking_engine.positions.models import LockConfig, StakePosition
from subnet_staking_engine.scheduling import PollCancelledError, PollTimeoutError, poll_until
from subnet_staking_engine.settlement.monitor import ArrivalOutcome, BalanceArrivalMonitor
from subnet_staking_engine.settlement.refresh import CacheRefreshCoordinator
from subnet_staking_engine.transactions.handle import IntentHandle
from subnet_staking_engine.transactions.models import (
    IntentEvent,
    IntentKind,
    IntentState,
    TransactionIntent,
)

logger = logging.getLogger(__name__)

# Default configuration
DEFAULT_CONFIRMATION_TIMEOUT_SECONDS = 180.0
DEFAULT_CONFIRMATION_POLL_INTERVAL_SECONDS = 2.0
DEFAULT_ALLOWANCE_POLL_ATTEMPTS = 10
DEFAULT_ALLOWANCE_POLL_INTERVAL_SECONDS = 2.0
DEFAULT_CLAIM_LOCK_SECONDS = 90 * SECONDS_PER_DAY
DEFAULT_CLAIM_FEE_WEI = 10**15

IntentJournal = Callable[[IntentEvent], Awaitable[None]]

_FAILURE_STATES: tuple[tuple[type[Exception], IntentState], ...] = (
    (TransactionRejected, IntentState.REJECTED),
    (TransactionReverted, IntentState.REVERTED),
    (ConfirmationTimeout, IntentState.CONFIRMATION_TIMEOUT),
    (SettlementTimeout, IntentState.SETTLEMENT_TIMEOUT),
    (IntentCancelled, IntentState.CANCELLED),
)


def failure_state(error: Exception) -> IntentState:
    """Terminal state for an error raised while driving an intent."""
    for error_type, state in _FAILURE_STATES:
        if isinstance(error, error_type):
            return state
    return IntentState.INVALID


class ChainGateway(Protocol):
    async def get_balance(self, address: str, token_address: str, network_id: str) -> int: ...

    async def get_allowance(self, owner: str, token_address: str, spender: str, network_id: str) -> int: ...

    async def submit(self, call: ContractCall, sender: str) -> TxHandle: ...

    async def wait_for_receipt(
        self,
        handle: TxHandle,
        timeout: float,
        *,
        interval: float = ...,
        cancel_event: asyncio.Event | None = None,
    ) -> Receipt: ...

    async def revert_reason(self, handle: TxHandle, receipt: Receipt) -> str: ...


class PositionSource(Protocol):
    async def refresh(self, user: str, subnet_id: str | None, asset_symbol: str) -> StakePosition: ...

    async def get_lock_config(self, user: str, subnet_id: str | None, asset_symbol: str) -> LockConfig: ...


@dataclass
class _Flow:
    """Per-intent working state kept across `poll_again` resumes."""

    asset: AssetConfig
    validated: bool = False
    approved: bool = False
    baseline: int | None = None
    confirmed: bool = False


class TransactionOrchestrator:
    """Runs transaction intents and reports their progress through `IntentHandle`s.

    Example:
        ```python
        orchestrator = TransactionOrchestrator(chain_clients, reader, settings.assets.assets)
        handle = await orchestrator.deposit(user, "MOR", 10**18, subnet_id=subnet)
        intent = await handle
        ```
    """

    def __init__(
        self,
        chain: ChainGateway,
        positions: PositionSource,
        assets: Mapping[str, AssetConfig],
        *,
        monitor: BalanceArrivalMonitor | None = None,
        refresher: CacheRefreshCoordinator | None = None,
        journal: IntentJournal | None = None,
        confirmation_timeout_seconds: float = DEFAULT_CONFIRMATION_TIMEOUT_SECONDS,
        confirmation_poll_interval_seconds: float = DEFAULT_CONFIRMATION_POLL_INTERVAL_SECONDS,
        allowance_poll_attempts: int = DEFAULT_ALLOWANCE_POLL_ATTEMPTS,
        allowance_poll_interval_seconds: float = DEFAULT_ALLOWANCE_POLL_INTERVAL_SECONDS,
        default_claim_lock_seconds: int = DEFAULT_CLAIM_LOCK_SECONDS,
        claim_fee_wei: int = DEFAULT_CLAIM_FEE_WEI,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._chain = chain
        self._positions = positions
        self._assets = dict(assets)
        self._monitor = monitor
        self._refresher = refresher
        self._journal = journal
        self._confirmation_timeout = confirmation_timeout_seconds
        self._confirmation_interval = confirmation_poll_interval_seconds
        self._allowance_attempts = allowance_poll_attempts
        self._allowance_interval = allowance_poll_interval_seconds
        self._default_claim_lock = default_claim_lock_seconds
        self._claim_fee_wei = claim_fee_wei
        self._clock = clock
        self._live: dict[tuple[str, str, IntentKind], IntentHandle] = {}
        self._tasks: set[asyncio.Task[None]] = set()

    # ------------------------------------------------------------------
    # Command API
    # ------------------------------------------------------------------

    def in_flight(self, user: str, asset: str, kind: IntentKind) -> IntentHandle | None:
        return self._live.get((user.lower(), asset, kind))

    @property
    def live_intents(self) -> list[TransactionIntent]:
        return [handle.intent for handle in self._live.values()]

    async def deposit(
        self,
        user: str,
        asset: str,
        amount: int,
        *,
        lock_seconds: int | None = None,
        subnet_id: str | None = None,
        current_network: str | None = None,
    ) -> IntentHandle:
        """Stake `amount` (raw units), approving the staking contract first if needed."""
        return await self._start(
            IntentKind.STAKE,
            user,
            asset,
            amount=amount,
            subnet_id=subnet_id,
            lock_seconds=self._default_claim_lock if lock_seconds is None else lock_seconds,
            current_network=current_network,
        )

    async def withdraw(
        self,
        user: str,
        asset: str,
        amount: int,
        *,
        subnet_id: str | None = None,
        current_network: str | None = None,
    ) -> IntentHandle:
        return await self._start(
            IntentKind.WITHDRAW,
            user,
            asset,
            amount=amount,
            subnet_id=subnet_id,
            current_network=current_network,
        )

    async def claim(
        self,
        user: str,
        asset: str,
        *,
        subnet_id: str | None = None,
        current_network: str | None = None,
    ) -> IntentHandle:
        """Claim pending rewards and wait for them to arrive on the destination network."""
        return await self._start(
            IntentKind.CLAIM,
            user,
            asset,
            subnet_id=subnet_id,
            current_network=current_network,
        )

    async def lock_change(
        self,
        user: str,
        asset: str,
        lock_seconds: int,
        *,
        subnet_id: str | None = None,
        current_network: str | None = None,
    ) -> IntentHandle:
        return await self._start(
            IntentKind.LOCK_CHANGE,
            user,
            asset,
            subnet_id=subnet_id,
            lock_seconds=lock_seconds,
            current_network=current_network,
        )

    async def aclose(self) -> None:
        """Cancel every live intent and wait for the drivers to finish."""
        for handle in list(self._live.values()):
            handle.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    # ------------------------------------------------------------------
    # Driver
    # ------------------------------------------------------------------

    def _asset(self, symbol: str) -> AssetConfig:
        try:
            return self._assets[symbol]
        except KeyError:
            raise TransactionError(f"Unknown asset: {symbol}") from None

    async def _start(
        self,
        kind: IntentKind,
        user: str,
        asset_symbol: str,
        *,
        amount: int | None = None,
        subnet_id: str | None = None,
        lock_seconds: int | None = None,
        current_network: str | None = None,
    ) -> IntentHandle:
        asset = self._asset(asset_symbol)
        intent = TransactionIntent(
            kind=kind,
            user=user,
            asset=asset.symbol,
            required_network=asset.network,
            amount=amount,
            subnet_id=subnet_id,
            lock_seconds=lock_seconds,
        )
        handle = IntentHandle(intent)

        if intent.key in self._live:
            await self._transition(handle, intent, IntentState.VALIDATING)
            await self._fail(handle, intent, IntentInFlight(user, asset.symbol, kind.value))
            return handle

        self._live[intent.key] = handle
        flow = _Flow(asset=asset)
        self._launch(handle, intent, flow, current_network)
        return handle

    def _launch(
        self,
        handle: IntentHandle,
        intent: TransactionIntent,
        flow: _Flow,
        current_network: str | None,
    ) -> None:
        async def resume() -> None:
            if self._live.get(intent.key, handle) is not handle:
                raise IntentInFlight(intent.user, intent.asset, intent.kind.value)
            self._live[intent.key] = handle
            intent.error = None
            resumed = IntentState.APPROVING if intent.tx_hash is None else IntentState.PENDING_CONFIRMATION
            await self._transition(handle, intent, resumed, detail="poll again")
            self._launch(handle, intent, flow, None)

        task = asyncio.create_task(
            self._drive(handle, intent, flow, current_network),
            name=f"intent:{intent.kind.value}:{intent.intent_id}",
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        handle._attach(task, resume)

    async def _drive(
        self,
        handle: IntentHandle,
        intent: TransactionIntent,
        flow: _Flow,
        current_network: str | None,
    ) -> None:
        cancel = handle.cancel_event
        try:
            if not flow.validated:
                await self._transition(handle, intent, IntentState.VALIDATING)
                await self._validate(intent, flow, current_network)
                flow.validated = True

            if intent.kind == IntentKind.STAKE and not flow.approved:
                await self._ensure_approval(handle, intent, flow)
                flow.approved = True

            if intent.tx_hash is None:
                self._check_cancelled(cancel)
                await self._transition(handle, intent, IntentState.SUBMITTING)
                tx = await self._chain.submit(self._build_call(intent, flow), intent.user)
                intent.tx_hash = tx.tx_hash
            else:
                tx = TxHandle(intent.required_network, intent.tx_hash)

            if not flow.confirmed:
                if intent.state != IntentState.PENDING_CONFIRMATION:
                    await self._transition(handle, intent, IntentState.PENDING_CONFIRMATION, detail=tx.tx_hash)
                await self._confirm(tx, cancel)
                flow.confirmed = True
                await self._transition(handle, intent, IntentState.CONFIRMED, detail=tx.tx_hash)
                await self._refresh(intent)

            if intent.kind == IntentKind.CLAIM:
                await self._settle(handle, intent, flow)
        except StakingEngineError as e:
            await self._fail(handle, intent, e)
        except ChainClientError as e:
            await self._fail(handle, intent, NetworkUnavailable(intent.required_network, str(e)))
        except Exception as e:
            logger.exception("Intent %s failed unexpectedly", intent.intent_id)
            await self._fail(handle, intent, e)
        finally:
            if self._live.get(intent.key) is handle:
                del self._live[intent.key]

    def _check_cancelled(self, cancel: asyncio.Event) -> None:
        if cancel.is_set():
            raise IntentCancelled("Cancelled by caller")

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    async def _validate(self, intent: TransactionIntent, flow: _Flow, current_network: str | None) -> None:
        amount = intent.amount or 0
        if intent.kind in (IntentKind.STAKE, IntentKind.WITHDRAW) and amount <= 0:
            raise InvalidAmount(f"Amount must be greater than zero, got {intent.amount}")

        if current_network is not None and current_network != intent.required_network:
            raise NetworkSwitchRequired(current_network, intent.required_network)

        if intent.kind in (IntentKind.STAKE, IntentKind.LOCK_CHANGE):
            check = validate_lock_duration(intent.lock_seconds or 0)
            if not check.valid:
                raise InvalidLockDuration(check.error or "Invalid lock duration")
            if check.warning:
                logger.info("Lock duration warning for %s: %s", intent.intent_id, check.warning)
            if intent.kind == IntentKind.LOCK_CHANGE and flow.asset.contract_style == "builders":
                raise InvalidLockDuration(f"{flow.asset.symbol} does not support changing the claim lock")

        if flow.asset.contract_style == "builders" and not intent.subnet_id:
            raise TransactionError(f"{flow.asset.symbol} intents require a subnet id")

        if intent.kind == IntentKind.STAKE:
            balance = await self._chain.get_balance(intent.user, flow.asset.token_address, flow.asset.network)
            if amount > balance:
                raise InsufficientBalance(amount, balance)

        elif intent.kind == IntentKind.WITHDRAW:
            position = await self._positions.refresh(intent.user, intent.subnet_id, intent.asset)
            if amount > position.deposited:
                raise InsufficientBalance(amount, position.deposited)
            config = await self._positions.get_lock_config(intent.user, intent.subnet_id, intent.asset)
            if not can_withdraw(position, config, int(self._clock())):
                raise WithdrawLocked(withdraw_unlock_at(position, config))

        elif intent.kind == IntentKind.CLAIM:
            position = await self._positions.refresh(intent.user, intent.subnet_id, intent.asset)
            config = await self._positions.get_lock_config(intent.user, intent.subnet_id, intent.asset)
            now = int(self._clock())
            if not can_claim(position, config, now):
                if position.pending_reward <= 0:
                    raise NothingToClaim("No rewards to claim")
                raise NothingToClaim(f"Rewards are locked until {claim_unlock_at(position, config)}")
            flow.baseline = await self._chain.get_balance(
                intent.user, self._reward_token(flow.asset), flow.asset.destination_network
            )

    async def _ensure_approval(self, handle: IntentHandle, intent: TransactionIntent, flow: _Flow) -> None:
        asset = flow.asset
        amount = intent.amount or 0

        if intent.approval_tx_hash is None:
            allowance = await self._chain.get_allowance(
                intent.user, asset.token_address, asset.staking_contract, asset.network
            )
            if allowance >= amount:
                return
            await self._transition(handle, intent, IntentState.NEEDS_APPROVAL, detail=f"allowance {allowance}")
            self._check_cancelled(handle.cancel_event)
            await self._transition(handle, intent, IntentState.APPROVING)
            tx = await self._chain.submit(approve_call(asset, amount), intent.user)
            intent.approval_tx_hash = tx.tx_hash
        else:
            tx = TxHandle(asset.network, intent.approval_tx_hash)

        await self._confirm(tx, handle.cancel_event)

        async def allowance_reached() -> int | None:
            current = await self._chain.get_allowance(
                intent.user, asset.token_address, asset.staking_contract, asset.network
            )
            return current if current >= amount else None

        try:
            await poll_until(
                allowance_reached,
                interval=self._allowance_interval,
                timeout=self._allowance_interval * self._allowance_attempts,
                cancel_event=handle.cancel_event,
                max_attempts=self._allowance_attempts,
            )
        except PollTimeoutError as e:
            allowance = await self._chain.get_allowance(
                intent.user, asset.token_address, asset.staking_contract, asset.network
            )
            raise InsufficientAllowance(amount, allowance) from e
        except PollCancelledError as e:
            raise IntentCancelled("Cancelled while waiting for allowance") from e

        await self._transition(handle, intent, IntentState.APPROVAL_CONFIRMED, detail=tx.tx_hash)

    def _build_call(self, intent: TransactionIntent, flow: _Flow) -> ContractCall:
        asset = flow.asset
        if intent.kind == IntentKind.STAKE:
            return deposit_call(
                asset,
                intent.amount or 0,
                claim_lock_end=self._claim_lock_end(intent),
                subnet_id=intent.subnet_id,
            )
        if intent.kind == IntentKind.WITHDRAW:
            return withdraw_call(asset, intent.amount or 0, subnet_id=intent.subnet_id)
        if intent.kind == IntentKind.CLAIM:
            return claim_call(asset, intent.user, subnet_id=intent.subnet_id, fee_wei=self._claim_fee_wei)
        if intent.kind == IntentKind.LOCK_CHANGE:
            return lock_claim_call(asset, self._claim_lock_end(intent))
        raise TransactionError(f"Unsupported intent kind: {intent.kind.value}")

    def _claim_lock_end(self, intent: TransactionIntent) -> int:
        return int(self._clock()) + (intent.lock_seconds or 0)

    async def _confirm(self, tx: TxHandle, cancel: asyncio.Event) -> Receipt:
        try:
            receipt = await self._chain.wait_for_receipt(
                tx,
                self._confirmation_timeout,
                interval=self._confirmation_interval,
                cancel_event=cancel,
            )
        except PollCancelledError as e:
            raise IntentCancelled(f"Stopped waiting for {tx.tx_hash}") from e
        except ChainClientError as e:
            logger.warning("Receipt lookup for %s failed: %s", tx.tx_hash, e)
            raise ConfirmationTimeout(tx.tx_hash, self._confirmation_timeout) from e

        if not receipt.succeeded:
            reason = await self._chain.revert_reason(tx, receipt)
            raise TransactionReverted(reason, tx_hash=tx.tx_hash)
        return receipt

    async def _settle(self, handle: IntentHandle, intent: TransactionIntent, flow: _Flow) -> None:
        asset = flow.asset
        await self._transition(handle, intent, IntentState.AWAITING_SETTLEMENT, detail=asset.destination_network)
        if self._monitor is None:
            await self._transition(handle, intent, IntentState.SETTLED)
            return

        task = self._monitor.watch(
            intent.user,
            intent.asset,
            self._reward_token(asset),
            asset.destination_network,
            flow.baseline or 0,
            cancel_event=handle.cancel_event,
        )
        try:
            result = await task
        except asyncio.CancelledError:
            driver = asyncio.current_task()
            if driver is not None and driver.cancelling():
                raise
            # A newer watch for the same user and asset replaced this one.
            raise IntentCancelled("Settlement watch was replaced") from None
        if result.outcome == ArrivalOutcome.ARRIVED:
            intent.settled_amount = result.delta
            await self._transition(handle, intent, IntentState.SETTLED, detail=str(result.delta))
            await self._refresh(intent)
        elif result.outcome == ArrivalOutcome.TIMED_OUT:
            raise SettlementTimeout(asset.destination_network, self._monitor.timeout_seconds)
        else:
            raise IntentCancelled("Stopped waiting for settlement")

    @staticmethod
    def _reward_token(asset: AssetConfig) -> str:
        return asset.reward_token_address or asset.token_address

    async def _refresh(self, intent: TransactionIntent) -> None:
        if self._refresher is None:
            return
        try:
            await self._refresher.refresh_after(intent.user, intent.asset, intent.subnet_id)
        except Exception as e:
            logger.warning("Cache refresh after %s failed: %s", intent.intent_id, e)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def _fail(self, handle: IntentHandle, intent: TransactionIntent, error: Exception) -> None:
        intent.error = error
        if isinstance(error, TransactionReverted) and error.tx_hash is None:
            error.tx_hash = intent.tx_hash
        state = failure_state(error)
        logger.warning("Intent %s (%s %s) failed: %s", intent.intent_id, intent.kind.value, intent.asset, error)
        await self._transition(handle, intent, state, detail=str(error))

    async def _transition(
        self,
        handle: IntentHandle,
        intent: TransactionIntent,
        state: IntentState,
        *,
        detail: str | None = None,
    ) -> None:
        previous = intent.state
        intent.state = state
        intent.updated_at = datetime.now(UTC)
        event = IntentEvent(intent=intent.snapshot(), previous=previous, state=state, detail=detail)
        logger.info(
            "Intent %s %s/%s: %s -> %s",
            intent.intent_id,
            intent.kind.value,
            intent.asset,
            previous.value,
            state.value,
        )
        if self._journal is not None:
            try:
                await self._journal(event)
            except Exception as e:
                logger.warning(f"Failed to journal intent transition: {e}")
        if intent.is_finished and self._live.get(intent.key) is handle:
            del self._live[intent.key]
        handle._emit(event)

