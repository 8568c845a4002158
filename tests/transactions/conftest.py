"""Fixtures for transaction orchestration tests."""

import asyncio
from collections.abc import AsyncIterator, Callable
from typing import Any

import pytest

from subnet_staking_engine.config import AssetConfig
from subnet_staking_engine.errors import ConfirmationTimeout, TransactionRejected
from subnet_staking_engine.positions.chain import Receipt, TxHandle
from subnet_staking_engine.positions.contracts import ContractCall
from subnet_staking_engine.positions.models import LockConfig, StakePosition
from subnet_staking_engine.scheduling import PollCancelledError
from subnet_staking_engine.transactions import TransactionOrchestrator


class FakeChain:
    """In-memory chain: balances, allowances, submissions and receipts."""

    def __init__(self) -> None:
        self.balances: dict[tuple[str, str], list[int]] = {}
        self.allowance = 0
        self.approve_sets_allowance = True
        self.submitted: list[ContractCall] = []
        self.receipt_status = 1
        self.reject = False
        self.receipt_timeouts = 0
        self.receipt_gate: asyncio.Event | None = None
        self.revert_message = "execution reverted"

    def set_balance(self, token: str, network: str, *values: int) -> None:
        """Successive reads return `values` in order, repeating the last one."""
        self.balances[(token.lower(), network)] = list(values)

    async def get_balance(self, address: str, token_address: str, network_id: str) -> int:
        values = self.balances.get((token_address.lower(), network_id), [0])
        return values.pop(0) if len(values) > 1 else values[0]

    async def get_allowance(self, owner: str, token_address: str, spender: str, network_id: str) -> int:
        return self.allowance

    async def submit(self, call: ContractCall, sender: str) -> TxHandle:
        if self.reject:
            raise TransactionRejected("user rejected the request")
        self.submitted.append(call)
        if call.function == "approve" and self.approve_sets_allowance:
            self.allowance = call.args[1]
        return TxHandle(call.network_id, f"0x{len(self.submitted):064x}")

    async def wait_for_receipt(
        self,
        handle: TxHandle,
        timeout: float,
        *,
        interval: float = 0.01,
        cancel_event: asyncio.Event | None = None,
    ) -> Receipt:
        if self.receipt_gate is not None:
            waiters = [asyncio.ensure_future(self.receipt_gate.wait())]
            if cancel_event is not None:
                waiters.append(asyncio.ensure_future(cancel_event.wait()))
            _, pending = await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
            for waiter in pending:
                waiter.cancel()
            if cancel_event is not None and cancel_event.is_set():
                raise PollCancelledError("poll cancelled")
        if self.receipt_timeouts > 0:
            self.receipt_timeouts -= 1
            raise ConfirmationTimeout(handle.tx_hash, timeout)
        return Receipt(tx_hash=handle.tx_hash, status=self.receipt_status, block_number=1)

    async def revert_reason(self, handle: TxHandle, receipt: Receipt) -> str:
        return self.revert_message


class FakePositions:
    """Position source returning a fixed position and lock configuration."""

    def __init__(self) -> None:
        self.position = StakePosition(user="", subnet_id="", asset="", deposited=0, pending_reward=0)
        self.config = LockConfig()
        self.refreshed: list[tuple[str, str | None, str]] = []

    async def refresh(self, user: str, subnet_id: str | None, asset_symbol: str) -> StakePosition:
        self.refreshed.append((user, subnet_id, asset_symbol))
        return self.position

    async def get_lock_config(self, user: str, subnet_id: str | None, asset_symbol: str) -> LockConfig:
        return self.config


@pytest.fixture
def chain() -> FakeChain:
    return FakeChain()


@pytest.fixture
def positions() -> FakePositions:
    return FakePositions()


@pytest.fixture
async def make_orchestrator(
    chain: FakeChain,
    positions: FakePositions,
    deposit_pool_asset: AssetConfig,
    builders_asset: AssetConfig,
) -> AsyncIterator[Callable[..., TransactionOrchestrator]]:
    created: list[TransactionOrchestrator] = []

    def factory(**kwargs: Any) -> TransactionOrchestrator:
        options: dict[str, Any] = {
            "confirmation_timeout_seconds": 1.0,
            "confirmation_poll_interval_seconds": 0.01,
            "allowance_poll_attempts": 3,
            "allowance_poll_interval_seconds": 0.01,
            "clock": lambda: 10_000.0,
        }
        options.update(kwargs)
        orchestrator = TransactionOrchestrator(
            chain,
            positions,
            {"stETH": deposit_pool_asset, "MOR": builders_asset},
            **options,
        )
        created.append(orchestrator)
        return orchestrator

    yield factory

    for orchestrator in created:
        await orchestrator.aclose()
