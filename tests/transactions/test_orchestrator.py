"""Tests for the transaction orchestrator state machine."""

import asyncio
from collections.abc import Callable
from unittest.mock import AsyncMock, MagicMock

import pytest

from subnet_staking_engine.errors import (
    ConfirmationTimeout,
    InsufficientAllowance,
    InsufficientBalance,
    IntentCancelled,
    IntentInFlight,
    InvalidAmount,
    InvalidLockDuration,
    NetworkSwitchRequired,
    NothingToClaim,
    SettlementTimeout,
    TransactionError,
    TransactionRejected,
    TransactionReverted,
    WithdrawLocked,
)
from subnet_staking_engine.positions.calculator import SECONDS_PER_DAY
from subnet_staking_engine.positions.contracts import ZERO_ADDRESS
from subnet_staking_engine.positions.models import LockConfig, StakePosition
from subnet_staking_engine.settlement import BalanceArrivalMonitor
from subnet_staking_engine.transactions import (
    IntentHandle,
    IntentKind,
    IntentState,
    TransactionOrchestrator,
)
from subnet_staking_engine.transactions.orchestrator import failure_state

USER = "0x1111111111111111111111111111111111111111"
TOKEN = "0x2222222222222222222222222222222222222222"
REWARD_TOKEN = "0x5555555555555555555555555555555555555555"

AMOUNT = 10**18
SUBNET = "0x" + "ab" * 32
S = IntentState

OrchestratorFactory = Callable[..., TransactionOrchestrator]


def states(handle: IntentHandle) -> list[IntentState]:
    return [event.state for event in handle.events]


async def wait_for_state(handle: IntentHandle, state: IntentState) -> None:
    for _ in range(400):
        if handle.state == state:
            return
        await asyncio.sleep(0.005)
    raise AssertionError(f"intent never reached {state.value}, stuck at {handle.state.value}")


@pytest.fixture(autouse=True)
def funded(chain) -> None:
    chain.set_balance(TOKEN, "ethereum", 10 * AMOUNT)
    chain.set_balance(TOKEN, "base", 10 * AMOUNT)


class TestStake:
    """Tests for deposit intents."""

    @pytest.mark.asyncio
    async def test_approval_confirmed_before_stake(self, chain, make_orchestrator: OrchestratorFactory) -> None:
        orchestrator = make_orchestrator()

        handle = await orchestrator.deposit(USER, "stETH", AMOUNT)
        intent = await handle

        assert intent.state == S.CONFIRMED
        assert intent.succeeded
        assert states(handle) == [
            S.VALIDATING,
            S.NEEDS_APPROVAL,
            S.APPROVING,
            S.APPROVAL_CONFIRMED,
            S.SUBMITTING,
            S.PENDING_CONFIRMATION,
            S.CONFIRMED,
        ]
        assert [c.function for c in chain.submitted] == ["approve", "stake"]
        assert intent.approval_tx_hash is not None
        assert intent.tx_hash is not None
        assert intent.tx_hash != intent.approval_tx_hash

    @pytest.mark.asyncio
    async def test_stake_call_uses_lock_end(self, chain, make_orchestrator: OrchestratorFactory) -> None:
        chain.allowance = 10 * AMOUNT
        orchestrator = make_orchestrator()

        await (await orchestrator.deposit(USER, "stETH", AMOUNT, lock_seconds=365 * SECONDS_PER_DAY))

        stake = chain.submitted[-1]
        assert stake.args == (0, AMOUNT, 10_000 + 365 * SECONDS_PER_DAY, ZERO_ADDRESS)

    @pytest.mark.asyncio
    async def test_default_claim_lock(self, chain, make_orchestrator: OrchestratorFactory) -> None:
        chain.allowance = 10 * AMOUNT
        orchestrator = make_orchestrator(default_claim_lock_seconds=200 * SECONDS_PER_DAY)

        intent = await (await orchestrator.deposit(USER, "stETH", AMOUNT))

        assert intent.lock_seconds == 200 * SECONDS_PER_DAY
        assert chain.submitted[-1].args[2] == 10_000 + 200 * SECONDS_PER_DAY

    @pytest.mark.asyncio
    async def test_sufficient_allowance_skips_approval(
        self, chain, make_orchestrator: OrchestratorFactory
    ) -> None:
        chain.allowance = AMOUNT
        handle = await make_orchestrator().deposit(USER, "stETH", AMOUNT)
        await handle

        assert S.NEEDS_APPROVAL not in states(handle)
        assert [c.function for c in chain.submitted] == ["stake"]

    @pytest.mark.asyncio
    async def test_allowance_never_reached(self, chain, make_orchestrator: OrchestratorFactory) -> None:
        chain.approve_sets_allowance = False
        intent = await (await make_orchestrator().deposit(USER, "stETH", AMOUNT))

        assert intent.state == S.INVALID
        assert isinstance(intent.error, InsufficientAllowance)
        assert [c.function for c in chain.submitted] == ["approve"]

    @pytest.mark.asyncio
    async def test_builders_deposit(self, chain, make_orchestrator: OrchestratorFactory) -> None:
        chain.allowance = 10 * AMOUNT
        intent = await (await make_orchestrator().deposit(USER, "MOR", AMOUNT, subnet_id=SUBNET))

        assert intent.state == S.CONFIRMED
        assert chain.submitted[-1].function == "deposit"
        assert chain.submitted[-1].network_id == "base"


class TestValidation:
    """Tests for intents rejected before anything is submitted."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", [0, -5])
    async def test_invalid_amount(self, chain, make_orchestrator: OrchestratorFactory, amount: int) -> None:
        handle = await make_orchestrator().deposit(USER, "stETH", amount)
        intent = await handle

        assert intent.state == S.INVALID
        assert isinstance(intent.error, InvalidAmount)
        assert states(handle) == [S.VALIDATING, S.INVALID]
        assert chain.submitted == []

    @pytest.mark.asyncio
    async def test_network_switch_required(self, chain, make_orchestrator: OrchestratorFactory) -> None:
        intent = await (await make_orchestrator().deposit(USER, "stETH", AMOUNT, current_network="base"))

        assert intent.state == S.INVALID
        assert isinstance(intent.error, NetworkSwitchRequired)
        assert intent.error.required_network == "ethereum"
        assert intent.error.current_network == "base"

    @pytest.mark.asyncio
    async def test_matching_network_accepted(self, chain, make_orchestrator: OrchestratorFactory) -> None:
        chain.allowance = AMOUNT
        intent = await (await make_orchestrator().deposit(USER, "stETH", AMOUNT, current_network="ethereum"))
        assert intent.state == S.CONFIRMED

    @pytest.mark.asyncio
    async def test_insufficient_balance(self, chain, make_orchestrator: OrchestratorFactory) -> None:
        chain.set_balance(TOKEN, "ethereum", AMOUNT - 1)
        intent = await (await make_orchestrator().deposit(USER, "stETH", AMOUNT))

        assert isinstance(intent.error, InsufficientBalance)
        assert intent.error.available == AMOUNT - 1
        assert chain.submitted == []

    @pytest.mark.asyncio
    async def test_lock_too_long(self, make_orchestrator: OrchestratorFactory) -> None:
        handle = await make_orchestrator().deposit(USER, "stETH", AMOUNT, lock_seconds=7 * 365 * SECONDS_PER_DAY)
        intent = await handle

        assert intent.state == S.INVALID
        assert isinstance(intent.error, InvalidLockDuration)

    @pytest.mark.asyncio
    async def test_builders_require_subnet(self, make_orchestrator: OrchestratorFactory) -> None:
        intent = await (await make_orchestrator().deposit(USER, "MOR", AMOUNT))

        assert intent.state == S.INVALID
        assert isinstance(intent.error, TransactionError)

    @pytest.mark.asyncio
    async def test_unknown_asset(self, make_orchestrator: OrchestratorFactory) -> None:
        with pytest.raises(TransactionError):
            await make_orchestrator().deposit(USER, "DAI", AMOUNT)


class TestWithdraw:
    """Tests for withdraw intents."""

    @pytest.mark.asyncio
    async def test_withdraw(self, chain, positions, make_orchestrator: OrchestratorFactory) -> None:
        positions.position = StakePosition(user=USER, subnet_id="pool-0", asset="stETH", deposited=AMOUNT)

        handle = await make_orchestrator().withdraw(USER, "stETH", AMOUNT)
        intent = await handle

        assert intent.state == S.CONFIRMED
        assert states(handle) == [S.VALIDATING, S.SUBMITTING, S.PENDING_CONFIRMATION, S.CONFIRMED]
        assert chain.submitted[0].function == "withdraw"
        assert chain.submitted[0].args == (0, AMOUNT)

    @pytest.mark.asyncio
    async def test_withdraw_more_than_deposited(self, positions, make_orchestrator: OrchestratorFactory) -> None:
        positions.position = StakePosition(user=USER, subnet_id="pool-0", asset="stETH", deposited=AMOUNT)

        intent = await (await make_orchestrator().withdraw(USER, "stETH", AMOUNT + 1))

        assert isinstance(intent.error, InsufficientBalance)
        assert intent.error.available == AMOUNT

    @pytest.mark.asyncio
    async def test_withdraw_locked(self, chain, positions, make_orchestrator: OrchestratorFactory) -> None:
        positions.position = StakePosition(
            user=USER, subnet_id="pool-0", asset="stETH", deposited=AMOUNT, last_stake_timestamp=1000
        )
        positions.config = LockConfig(withdraw_lock_period_after_deposit=50_000)

        intent = await (await make_orchestrator().withdraw(USER, "stETH", AMOUNT // 2))

        assert intent.state == S.INVALID
        assert isinstance(intent.error, WithdrawLocked)
        assert intent.error.unlock_at == 51_000
        assert chain.submitted == []


class TestClaim:
    """Tests for claim intents and cross-chain settlement."""

    @pytest.fixture(autouse=True)
    def claimable(self, positions) -> None:
        positions.position = StakePosition(user=USER, subnet_id="pool-0", asset="stETH", deposited=AMOUNT, pending_reward=5)
        positions.config = LockConfig()

    @pytest.mark.asyncio
    async def test_settlement_timeout(self, chain, make_orchestrator: OrchestratorFactory) -> None:
        """A confirmed claim whose destination balance never rises ends in a settlement timeout."""
        chain.set_balance(REWARD_TOKEN, "arbitrum", 100)
        monitor = BalanceArrivalMonitor(chain, interval_seconds=0.01, timeout_seconds=0.05)

        handle = await make_orchestrator(monitor=monitor).claim(USER, "stETH")
        intent = await handle

        assert intent.state == S.SETTLEMENT_TIMEOUT
        assert not intent.succeeded
        assert isinstance(intent.error, SettlementTimeout)
        assert intent.error.destination_network == "arbitrum"
        assert states(handle)[-3:] == [S.CONFIRMED, S.AWAITING_SETTLEMENT, S.SETTLEMENT_TIMEOUT]

    @pytest.mark.asyncio
    async def test_settled(self, chain, make_orchestrator: OrchestratorFactory) -> None:
        chain.set_balance(REWARD_TOKEN, "arbitrum", 100, 100, 150)
        monitor = BalanceArrivalMonitor(chain, interval_seconds=0.01, timeout_seconds=1.0)

        handle = await make_orchestrator(monitor=monitor, claim_fee_wei=7).claim(USER, "stETH")
        intent = await handle

        assert intent.state == S.SETTLED
        assert intent.succeeded
        assert intent.settled_amount == 50
        assert chain.submitted[0].function == "claim"
        assert chain.submitted[0].value == 7
        assert states(handle)[-3:] == [S.CONFIRMED, S.AWAITING_SETTLEMENT, S.SETTLED]

    @pytest.mark.asyncio
    async def test_settled_without_monitor(self, make_orchestrator: OrchestratorFactory) -> None:
        handle = await make_orchestrator().claim(USER, "stETH")
        intent = await handle

        assert intent.state == S.SETTLED
        assert S.AWAITING_SETTLEMENT in states(handle)

    @pytest.mark.asyncio
    async def test_nothing_to_claim(self, chain, positions, make_orchestrator: OrchestratorFactory) -> None:
        positions.position = StakePosition(user=USER, subnet_id="pool-0", asset="stETH", pending_reward=0)

        intent = await (await make_orchestrator().claim(USER, "stETH"))

        assert intent.state == S.INVALID
        assert isinstance(intent.error, NothingToClaim)
        assert chain.submitted == []

    @pytest.mark.asyncio
    async def test_claim_locked(self, positions, make_orchestrator: OrchestratorFactory) -> None:
        positions.position = StakePosition(
            user=USER, subnet_id="pool-0", asset="stETH", pending_reward=5, claim_lock_end=20_000
        )

        intent = await (await make_orchestrator().claim(USER, "stETH"))

        assert isinstance(intent.error, NothingToClaim)
        assert "20000" in str(intent.error)

    @pytest.mark.asyncio
    async def test_cancel_while_awaiting_settlement(self, chain, make_orchestrator: OrchestratorFactory) -> None:
        chain.set_balance(REWARD_TOKEN, "arbitrum", 100)
        monitor = BalanceArrivalMonitor(chain, interval_seconds=0.01, timeout_seconds=5.0)
        try:
            handle = await make_orchestrator(monitor=monitor).claim(USER, "stETH")
            await wait_for_state(handle, S.AWAITING_SETTLEMENT)
            assert handle.cancel() is True
            intent = await handle

            assert intent.state == S.CANCELLED
            assert isinstance(intent.error, IntentCancelled)
            assert states(handle)[-2:] == [S.AWAITING_SETTLEMENT, S.CANCELLED]
        finally:
            await monitor.aclose()

    @pytest.mark.asyncio
    async def test_replaced_settlement_watch_cancels_claim(self, chain, make_orchestrator: OrchestratorFactory) -> None:
        chain.set_balance(REWARD_TOKEN, "arbitrum", 100)
        monitor = BalanceArrivalMonitor(chain, interval_seconds=0.01, timeout_seconds=5.0)
        try:
            handle = await make_orchestrator(monitor=monitor).claim(USER, "stETH")
            await wait_for_state(handle, S.AWAITING_SETTLEMENT)
            assert monitor.is_watching(USER, "stETH")

            monitor.watch(USER, "stETH", REWARD_TOKEN, "arbitrum", 100)
            await wait_for_state(handle, S.CANCELLED)
            intent = await handle

            assert intent.state == S.CANCELLED
            assert isinstance(intent.error, IntentCancelled)
        finally:
            await monitor.aclose()


class TestFailures:
    """Tests for rejection, revert and confirmation timeouts."""

    @pytest.fixture(autouse=True)
    def approved(self, chain) -> None:
        chain.allowance = 10 * AMOUNT

    @pytest.mark.asyncio
    async def test_rejected(self, chain, make_orchestrator: OrchestratorFactory) -> None:
        chain.reject = True
        intent = await (await make_orchestrator().deposit(USER, "stETH", AMOUNT))

        assert intent.state == S.REJECTED
        assert isinstance(intent.error, TransactionRejected)
        assert intent.tx_hash is None

    @pytest.mark.asyncio
    async def test_reverted(self, chain, make_orchestrator: OrchestratorFactory) -> None:
        chain.receipt_status = 0
        chain.revert_message = "DS: pool doesn't exist"

        intent = await (await make_orchestrator().deposit(USER, "stETH", AMOUNT))

        assert intent.state == S.REVERTED
        assert isinstance(intent.error, TransactionReverted)
        assert intent.error.reason == "DS: pool doesn't exist"
        assert intent.error.tx_hash == intent.tx_hash

    @pytest.mark.asyncio
    async def test_confirmation_timeout_then_poll_again(self, chain, make_orchestrator: OrchestratorFactory) -> None:
        chain.receipt_timeouts = 1
        orchestrator = make_orchestrator()

        handle = await orchestrator.deposit(USER, "stETH", AMOUNT)
        intent = await handle
        assert intent.state == S.CONFIRMATION_TIMEOUT
        assert isinstance(intent.error, ConfirmationTimeout)
        assert intent.tx_hash is not None
        assert orchestrator.in_flight(USER, "stETH", IntentKind.STAKE) is None

        await handle.poll_again()
        intent = await handle

        assert intent.state == S.CONFIRMED
        assert intent.error is None
        assert [c.function for c in chain.submitted] == ["stake"]
        assert states(handle)[-3:] == [S.CONFIRMATION_TIMEOUT, S.PENDING_CONFIRMATION, S.CONFIRMED]

    @pytest.mark.asyncio
    async def test_poll_again_requires_timeout(self, make_orchestrator: OrchestratorFactory) -> None:
        handle = await make_orchestrator().deposit(USER, "stETH", AMOUNT)
        await handle

        with pytest.raises(RuntimeError):
            await handle.poll_again()

    def test_failure_state_mapping(self) -> None:
        assert failure_state(TransactionRejected("no")) == S.REJECTED
        assert failure_state(TransactionReverted("r")) == S.REVERTED
        assert failure_state(ConfirmationTimeout("0x1", 1)) == S.CONFIRMATION_TIMEOUT
        assert failure_state(SettlementTimeout("arbitrum", 1)) == S.SETTLEMENT_TIMEOUT
        assert failure_state(IntentCancelled("stop")) == S.CANCELLED
        assert failure_state(InvalidAmount("zero")) == S.INVALID
        assert failure_state(WithdrawLocked(51_000)) == S.INVALID
        assert failure_state(RuntimeError("bug")) == S.INVALID


class TestSingleFlight:
    """Tests for one live intent per (user, asset, kind)."""

    @pytest.fixture(autouse=True)
    def approved(self, chain) -> None:
        chain.allowance = 10 * AMOUNT

    @pytest.mark.asyncio
    async def test_second_intent_rejected_while_first_live(
        self, chain, make_orchestrator: OrchestratorFactory
    ) -> None:
        chain.receipt_gate = asyncio.Event()
        orchestrator = make_orchestrator()

        first = await orchestrator.deposit(USER, "stETH", AMOUNT)
        await wait_for_state(first, S.PENDING_CONFIRMATION)
        assert orchestrator.in_flight(USER.upper(), "stETH", IntentKind.STAKE) is first

        second = await orchestrator.deposit(USER, "stETH", AMOUNT)
        rejected = await second
        assert rejected.state == S.INVALID
        assert isinstance(rejected.error, IntentInFlight)

        chain.receipt_gate.set()
        assert (await first).state == S.CONFIRMED
        assert orchestrator.in_flight(USER, "stETH", IntentKind.STAKE) is None

        third = await orchestrator.deposit(USER, "stETH", AMOUNT)
        assert (await third).state == S.CONFIRMED

    @pytest.mark.asyncio
    async def test_other_asset_not_blocked(self, chain, make_orchestrator: OrchestratorFactory) -> None:
        chain.receipt_gate = asyncio.Event()
        orchestrator = make_orchestrator()

        first = await orchestrator.deposit(USER, "stETH", AMOUNT)
        await wait_for_state(first, S.PENDING_CONFIRMATION)
        other = await orchestrator.deposit(USER, "MOR", AMOUNT, subnet_id=SUBNET)
        await wait_for_state(other, S.PENDING_CONFIRMATION)

        assert len(orchestrator.live_intents) == 2
        chain.receipt_gate.set()
        assert (await first).state == S.CONFIRMED
        assert (await other).state == S.CONFIRMED

    @pytest.mark.asyncio
    async def test_cancel(self, chain, make_orchestrator: OrchestratorFactory) -> None:
        chain.receipt_gate = asyncio.Event()
        orchestrator = make_orchestrator()

        handle = await orchestrator.deposit(USER, "stETH", AMOUNT)
        await wait_for_state(handle, S.PENDING_CONFIRMATION)
        assert handle.cancel() is True
        intent = await handle

        assert intent.state == S.CANCELLED
        assert isinstance(intent.error, IntentCancelled)
        assert handle.cancel() is False


class TestLockChange:
    """Tests for claim lock changes."""

    @pytest.mark.asyncio
    async def test_lock_change(self, chain, make_orchestrator: OrchestratorFactory) -> None:
        intent = await (await make_orchestrator().lock_change(USER, "stETH", 365 * SECONDS_PER_DAY))

        assert intent.state == S.CONFIRMED
        assert chain.submitted[0].function == "lockClaim"
        assert chain.submitted[0].args == (0, 10_000 + 365 * SECONDS_PER_DAY)

    @pytest.mark.asyncio
    async def test_lock_change_unsupported_for_builders(self, make_orchestrator: OrchestratorFactory) -> None:
        intent = await (await make_orchestrator().lock_change(USER, "MOR", 365 * SECONDS_PER_DAY, subnet_id=SUBNET))

        assert intent.state == S.INVALID
        assert isinstance(intent.error, InvalidLockDuration)


class TestObservers:
    """Tests for journaling, refresh and event delivery."""

    @pytest.fixture(autouse=True)
    def approved(self, chain) -> None:
        chain.allowance = 10 * AMOUNT

    @pytest.mark.asyncio
    async def test_journal_sees_every_transition(self, make_orchestrator: OrchestratorFactory) -> None:
        journal = AsyncMock()
        handle = await make_orchestrator(journal=journal).deposit(USER, "stETH", AMOUNT)
        await handle

        journaled = [call.args[0].state for call in journal.await_args_list]
        assert journaled == states(handle)

    @pytest.mark.asyncio
    async def test_journal_failure_does_not_fail_intent(self, make_orchestrator: OrchestratorFactory) -> None:
        journal = AsyncMock(side_effect=RuntimeError("db down"))
        intent = await (await make_orchestrator(journal=journal).deposit(USER, "stETH", AMOUNT))
        assert intent.state == S.CONFIRMED

    @pytest.mark.asyncio
    async def test_refresh_after_confirmation(self, make_orchestrator: OrchestratorFactory) -> None:
        refresher = MagicMock()
        refresher.refresh_after = AsyncMock(return_value=3)

        await (await make_orchestrator(refresher=refresher).deposit(USER, "MOR", AMOUNT, subnet_id=SUBNET))

        refresher.refresh_after.assert_awaited_once_with(USER, "MOR", SUBNET)

    @pytest.mark.asyncio
    async def test_async_iteration(self, make_orchestrator: OrchestratorFactory) -> None:
        handle = await make_orchestrator().deposit(USER, "stETH", AMOUNT)

        seen = [event.state async for event in handle]

        assert seen[0] == S.VALIDATING
        assert seen[-1] == S.CONFIRMED
        assert [event.state async for event in handle] == seen

    @pytest.mark.asyncio
    async def test_transition_callbacks(self, make_orchestrator: OrchestratorFactory) -> None:
        orchestrator = make_orchestrator()
        seen: list[IntentState] = []
        handle = await orchestrator.deposit(USER, "stETH", AMOUNT)
        handle.on_transition(lambda event: seen.append(event.state))
        handle.on_transition(MagicMock(side_effect=RuntimeError("boom")))

        await handle

        assert seen
        assert seen[-1] == S.CONFIRMED
        assert [e.previous for e in handle.events][0] == S.IDLE
