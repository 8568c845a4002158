"""Tests for intent models and the caller-facing handle."""

import asyncio
from unittest.mock import MagicMock

import pytest

from subnet_staking_engine.errors import NothingToClaim
from subnet_staking_engine.transactions import (
    FAILURE_STATES,
    TERMINAL_STATES,
    IntentEvent,
    IntentHandle,
    IntentKind,
    IntentState,
    TransactionIntent,
)


def make_intent(kind: IntentKind = IntentKind.STAKE, **kwargs) -> TransactionIntent:
    return TransactionIntent(kind=kind, user="0xABCD", asset="MOR", required_network="base", **kwargs)


def emit(handle: IntentHandle, intent: TransactionIntent, state: IntentState) -> IntentEvent:
    previous = intent.state
    intent.state = state
    event = IntentEvent(intent=intent.snapshot(), previous=previous, state=state)
    handle._emit(event)
    return event


class TestIntentState:
    """Tests for terminal and failure classification."""

    def test_failures_are_terminal(self) -> None:
        assert FAILURE_STATES < TERMINAL_STATES
        assert IntentState.SETTLED.is_terminal
        assert not IntentState.SETTLED.is_failure

    @pytest.mark.parametrize(
        "state",
        [IntentState.VALIDATING, IntentState.APPROVING, IntentState.PENDING_CONFIRMATION, IntentState.CONFIRMED],
    )
    def test_in_progress_states(self, state: IntentState) -> None:
        assert not state.is_terminal
        assert not state.is_failure


class TestTransactionIntent:
    """Tests for TransactionIntent."""

    def test_key_lowercases_user(self) -> None:
        assert make_intent().key == ("0xabcd", "MOR", IntentKind.STAKE)

    def test_approval_is_not_a_kind(self) -> None:
        # Approval runs inside a stake intent.
        assert [kind.value for kind in IntentKind] == ["stake", "withdraw", "claim", "lock_change"]

    def test_confirmed_finishes_non_claims(self) -> None:
        intent = make_intent(state=IntentState.CONFIRMED)
        assert intent.is_finished
        assert intent.succeeded

    def test_confirmed_claim_still_settling(self) -> None:
        intent = make_intent(IntentKind.CLAIM, state=IntentState.CONFIRMED)
        assert not intent.is_finished
        assert not intent.succeeded

        intent.state = IntentState.SETTLED
        assert intent.is_finished
        assert intent.succeeded

    def test_raise_for_error(self) -> None:
        intent = make_intent(IntentKind.CLAIM, state=IntentState.INVALID, error=NothingToClaim("none"))
        with pytest.raises(NothingToClaim):
            intent.raise_for_error()
        make_intent().raise_for_error()

    def test_snapshot_is_independent(self) -> None:
        intent = make_intent()
        copy = intent.snapshot()
        intent.state = IntentState.SUBMITTING
        assert copy.state == IntentState.IDLE
        assert copy.intent_id == intent.intent_id

    def test_unique_ids(self) -> None:
        assert make_intent().intent_id != make_intent().intent_id


class TestIntentHandle:
    """Tests for IntentHandle."""

    @pytest.mark.asyncio
    async def test_await_returns_final_copy(self) -> None:
        intent = make_intent()
        handle = IntentHandle(intent)
        emit(handle, intent, IntentState.VALIDATING)
        assert not handle.done

        emit(handle, intent, IntentState.INVALID)

        result = await handle
        assert result.state == IntentState.INVALID
        assert handle.done
        assert [e.state for e in handle.events] == [IntentState.VALIDATING, IntentState.INVALID]

    @pytest.mark.asyncio
    async def test_intent_property_returns_copy(self) -> None:
        handle = IntentHandle(make_intent())
        handle.intent.state = IntentState.SETTLED
        assert handle.state == IntentState.IDLE

    def test_callbacks_and_unsubscribe(self) -> None:
        intent = make_intent()
        handle = IntentHandle(intent)
        callback = MagicMock()
        unsubscribe = handle.on_transition(callback)

        first = emit(handle, intent, IntentState.VALIDATING)
        unsubscribe()
        unsubscribe()
        emit(handle, intent, IntentState.SUBMITTING)

        callback.assert_called_once_with(first)

    def test_failing_callback_does_not_block_others(self) -> None:
        intent = make_intent()
        handle = IntentHandle(intent)
        good = MagicMock()
        handle.on_transition(MagicMock(side_effect=ValueError("bad")))
        handle.on_transition(good)

        emit(handle, intent, IntentState.VALIDATING)

        good.assert_called_once()

    @pytest.mark.asyncio
    async def test_iteration_replays_then_follows(self) -> None:
        intent = make_intent()
        handle = IntentHandle(intent)
        emit(handle, intent, IntentState.VALIDATING)

        async def collect() -> list[IntentState]:
            return [event.state async for event in handle]

        collector = asyncio.create_task(collect())
        await asyncio.sleep(0)
        emit(handle, intent, IntentState.SUBMITTING)
        emit(handle, intent, IntentState.REJECTED)

        assert await collector == [IntentState.VALIDATING, IntentState.SUBMITTING, IntentState.REJECTED]

    def test_cancel(self) -> None:
        intent = make_intent()
        handle = IntentHandle(intent)

        assert handle.cancel() is True
        assert handle.cancel_event.is_set()

        emit(handle, intent, IntentState.CANCELLED)
        assert handle.cancel() is False

    @pytest.mark.asyncio
    async def test_poll_again_requires_confirmation_timeout(self) -> None:
        intent = make_intent()
        handle = IntentHandle(intent)
        emit(handle, intent, IntentState.REVERTED)

        with pytest.raises(RuntimeError, match="reverted"):
            await handle.poll_again()
