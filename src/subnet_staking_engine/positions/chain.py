"""Per-network EVM client with rate limiting, retries and failover.

This module provides the chain access used by the position reader and the
transaction orchestrator:
- Contract reads with retry, exponential backoff and fallback RPC
- Transaction submission through the provider-managed account
- Receipt polling and revert reason extraction
- Optional Redis caching for slow-changing contract state
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from typing import Any

from redis.asyncio import Redis
from web3 import AsyncWeb3
from web3.exceptions import ContractLogicError, TransactionNotFound, Web3Exception, Web3RPCError
from web3.middleware import ExtraDataToPOAMiddleware
from web3.providers import AsyncHTTPProvider

from subnet_staking_engine.errors import ConfirmationTimeout, TransactionRejected, TransactionReverted
from subnet_staking_engine.positions.contracts import ABIS, BUILDER_POOL_ADMIN_INDEX, ContractCall, subnet_id_bytes
from subnet_staking_engine.scheduling import PollTimeoutError, poll_until

logger = logging.getLogger(__name__)

# Default configuration
DEFAULT_CACHE_TTL_SECONDS = 300  # 5 minutes
DEFAULT_MAX_REQUESTS_PER_SECOND = 25
DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAY_SECONDS = 1.0
DEFAULT_RECEIPT_POLL_INTERVAL_SECONDS = 2.0

USER_REJECTED_CODE = 4001

_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")
_REASON_STRING_RE = re.compile(r"reverted with reason string '([^']*)'")
_EXECUTION_REVERTED_RE = re.compile(r"execution reverted:?\s*(.*)", re.IGNORECASE | re.DOTALL)


def extract_revert_reason(message: str) -> str:
    """Pull the contract's revert reason out of a provider error message.

    Falls back to the full message when no known pattern matches.
    """
    match = _REASON_STRING_RE.search(message)
    if match:
        return match.group(1)
    match = _EXECUTION_REVERTED_RE.search(message)
    if match and match.group(1).strip():
        return match.group(1).strip().strip("'\"")
    return message


class ChainClientError(Exception):
    """Base exception for chain client errors."""


class RPCError(ChainClientError):
    """Raised when an RPC call fails after all retries."""


@dataclass
class RateLimiter:
    """Token bucket rate limiter."""

    max_tokens: float
    refill_rate: float  # tokens per second
    tokens: float
    last_refill: float

    @classmethod
    def create(cls, max_requests_per_second: float) -> RateLimiter:
        return cls(
            max_tokens=max_requests_per_second,
            refill_rate=max_requests_per_second,
            tokens=max_requests_per_second,
            last_refill=time.monotonic(),
        )

    def _refill(self) -> None:
        now = time.monotonic()
        elapsed = now - self.last_refill
        self.tokens = min(self.max_tokens, self.tokens + elapsed * self.refill_rate)
        self.last_refill = now

    async def acquire(self, tokens: float = 1.0) -> None:
        """Acquire tokens, waiting if necessary."""
        while True:
            self._refill()
            if self.tokens >= tokens:
                self.tokens -= tokens
                return
            wait_time = (tokens - self.tokens) / self.refill_rate
            await asyncio.sleep(wait_time)


@dataclass(frozen=True)
class TxHandle:
    """A submitted transaction."""

    network_id: str
    tx_hash: str


@dataclass(frozen=True)
class Receipt:
    """The parts of a transaction receipt the engine cares about."""

    tx_hash: str
    status: int
    block_number: int
    gas_used: int = 0

    @property
    def succeeded(self) -> bool:
        return self.status == 1


def _to_hex(value: Any) -> str:
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    hex_method = getattr(value, "to_0x_hex", None)
    if callable(hex_method):
        return str(hex_method())
    return str(value)


def _normalize_arg(value: Any) -> Any:
    if isinstance(value, str) and _ADDRESS_RE.match(value):
        return AsyncWeb3.to_checksum_address(value)
    return value


def _is_user_rejection(error: Exception) -> bool:
    message = str(error).lower()
    if "user rejected" in message or "user denied" in message:
        return True
    response = getattr(error, "rpc_response", None)
    if isinstance(response, Mapping):
        err = response.get("error")
        if isinstance(err, Mapping) and err.get("code") == USER_REJECTED_CODE:
            return True
    return False


class ChainClient:
    """EVM client for one network with caching and rate limiting.

    Example:
        ```python
        client = ChainClient("base", "https://mainnet.base.org", redis=redis)
        balance = await client.get_token_balance("0xUser...", "0xToken...")
        handle = await client.send_transaction(call, sender="0xUser...")
        receipt = await client.get_transaction_receipt(handle.tx_hash)
        ```
    """

    def __init__(
        self,
        network_id: str,
        rpc_url: str,
        *,
        fallback_rpc_url: str | None = None,
        redis: Redis | None = None,
        cache_ttl_seconds: int = DEFAULT_CACHE_TTL_SECONDS,
        max_requests_per_second: float = DEFAULT_MAX_REQUESTS_PER_SECOND,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delay_seconds: float = DEFAULT_RETRY_DELAY_SECONDS,
    ) -> None:
        """Initialize the chain client.

        Args:
            network_id: Network this client talks to.
            rpc_url: Primary RPC endpoint URL.
            fallback_rpc_url: Optional fallback RPC URL for failover.
            redis: Optional Redis client for caching.
            cache_ttl_seconds: Cache TTL in seconds.
            max_requests_per_second: Rate limit for RPC calls.
            max_retries: Maximum retry attempts on failure.
            retry_delay_seconds: Initial delay between retries.
        """
        self.network_id = network_id
        self._redis = redis
        self._cache_ttl = cache_ttl_seconds
        self._max_retries = max_retries
        self._retry_delay = retry_delay_seconds

        self._w3 = self._new_web3_client(rpc_url)
        self._w3_fallback: AsyncWeb3[AsyncHTTPProvider] | None = None
        if fallback_rpc_url:
            self._w3_fallback = self._new_web3_client(fallback_rpc_url)

        self._rate_limiter = RateLimiter.create(max_requests_per_second)

        # Track primary RPC health
        self._primary_healthy = True
        self._last_primary_check = 0.0
        self._primary_recovery_interval = 60.0

        self._cache_prefix = f"staking:chain:{network_id}:"

    def _new_web3_client(self, rpc_url: str) -> AsyncWeb3[AsyncHTTPProvider]:
        client = AsyncWeb3(AsyncHTTPProvider(rpc_url))
        try:
            client.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)
        except Exception as e:
            logger.warning("Failed to inject PoA middleware (rpc=%s): %s", rpc_url, e)
        return client

    async def _get_cached(self, key: str) -> str | None:
        if not self._redis:
            return None
        try:
            value = await self._redis.get(f"{self._cache_prefix}{key}")
            if isinstance(value, bytes):
                return value.decode()
            return str(value) if value is not None else None
        except Exception as e:
            logger.warning("Cache get failed: %s", e)
            return None

    async def _set_cached(self, key: str, value: str, ttl: int | None = None) -> None:
        if not self._redis:
            return
        try:
            await self._redis.set(f"{self._cache_prefix}{key}", value, ex=ttl or self._cache_ttl)
        except Exception as e:
            logger.warning("Cache set failed: %s", e)

    def _should_try_primary(self) -> bool:
        if self._primary_healthy:
            return True
        now = time.monotonic()
        if now - self._last_primary_check > self._primary_recovery_interval:
            self._last_primary_check = now
            return True
        return False

    async def _execute_with_retry(
        self,
        label: str,
        operation: Callable[[AsyncWeb3[AsyncHTTPProvider]], Awaitable[Any]],
    ) -> Any:
        """Run a read operation with retry and failover logic.

        Args:
            label: Name used in log messages.
            operation: Coroutine factory taking the web3 instance to use.

        Raises:
            TransactionReverted: If the call reverts (not retried).
            RPCError: If all retries and failover fail.
        """
        await self._rate_limiter.acquire()

        last_error: Exception | None = None
        targets: list[tuple[str, AsyncWeb3[AsyncHTTPProvider]]] = []
        if self._should_try_primary():
            targets.append(("Primary", self._w3))
        if self._w3_fallback is not None:
            targets.append(("Fallback", self._w3_fallback))

        for name, w3 in targets:
            delay = self._retry_delay
            for attempt in range(self._max_retries):
                try:
                    result = await operation(w3)
                    if w3 is self._w3:
                        self._primary_healthy = True
                    else:
                        logger.info("Fallback RPC succeeded for %s", label)
                    return result
                except ContractLogicError as e:
                    raise TransactionReverted(extract_revert_reason(str(e))) from e
                except Web3Exception as e:
                    last_error = e
                    logger.warning(
                        "%s RPC %s failed on %s (attempt %d/%d): %s",
                        name,
                        label,
                        self.network_id,
                        attempt + 1,
                        self._max_retries,
                        e,
                    )
                    if attempt < self._max_retries - 1:
                        await asyncio.sleep(delay)
                        delay *= 2
            if w3 is self._w3:
                self._primary_healthy = False
                self._last_primary_check = time.monotonic()

        raise RPCError(f"RPC call {label} failed on {self.network_id} after all retries: {last_error}")

    def _contract_function(self, w3: AsyncWeb3[AsyncHTTPProvider], call: ContractCall) -> Any:
        contract = w3.eth.contract(address=AsyncWeb3.to_checksum_address(call.address), abi=ABIS[call.abi])
        args = [_normalize_arg(a) for a in call.args]
        return getattr(contract.functions, call.function)(*args)

    async def call_function(self, call: ContractCall) -> Any:
        """Execute a read-only contract call."""
        return await self._execute_with_retry(
            call.describe(),
            lambda w3: self._contract_function(w3, call).call(),
        )

    async def get_token_balance(self, address: str, token_address: str) -> int:
        """Latest ERC20 balance in raw units (never cached)."""
        call = ContractCall(self.network_id, token_address, "erc20", "balanceOf", (address,))
        return int(await self.call_function(call))

    async def get_allowance(self, owner: str, token_address: str, spender: str) -> int:
        call = ContractCall(self.network_id, token_address, "erc20", "allowance", (owner, spender))
        return int(await self.call_function(call))

    async def get_builder_admin(self, contract_address: str, subnet_id: str) -> str | None:
        """Admin address of a builder pool, as reported by the contract."""
        cache_key = f"builder_admin:{contract_address.lower()}:{subnet_id.lower()}"
        cached = await self._get_cached(cache_key)
        if cached is not None:
            return cached or None

        call = ContractCall(
            self.network_id,
            contract_address,
            "builders",
            "builderPools",
            (subnet_id_bytes(subnet_id),),
        )
        pool = await self.call_function(call)
        admin = str(pool[BUILDER_POOL_ADMIN_INDEX])
        if int(admin, 16) == 0:
            admin = ""
        await self._set_cached(cache_key, admin)
        return admin or None

    async def send_transaction(self, call: ContractCall, sender: str) -> TxHandle:
        """Submit a write call from `sender` through the provider-managed account.

        Writes are not retried: a failed submission may still have been broadcast.

        Raises:
            TransactionRejected: If the signer declined.
            TransactionReverted: If gas estimation shows the call would revert.
            RPCError: On any other provider failure.
        """
        await self._rate_limiter.acquire()
        tx: dict[str, Any] = {"from": AsyncWeb3.to_checksum_address(sender)}
        if call.value:
            tx["value"] = call.value
        try:
            tx_hash = await self._contract_function(self._w3, call).transact(tx)
        except ContractLogicError as e:
            raise TransactionReverted(extract_revert_reason(str(e))) from e
        except Web3RPCError as e:
            if _is_user_rejection(e):
                raise TransactionRejected(str(e)) from e
            raise RPCError(f"Failed to submit {call.describe()}: {e}") from e
        except Web3Exception as e:
            raise RPCError(f"Failed to submit {call.describe()}: {e}") from e

        handle = TxHandle(self.network_id, _to_hex(tx_hash))
        logger.info("Submitted %s: %s", call.describe(), handle.tx_hash)
        return handle

    async def get_transaction_receipt(self, tx_hash: str) -> Receipt | None:
        """Receipt for `tx_hash`, or None while it is still pending."""
        async def fetch(w3: AsyncWeb3[AsyncHTTPProvider]) -> Any:
            try:
                return await w3.eth.get_transaction_receipt(tx_hash)  # type: ignore[arg-type]
            except TransactionNotFound:
                return None

        receipt = await self._execute_with_retry("get_transaction_receipt", fetch)
        if receipt is None:
            return None
        return Receipt(
            tx_hash=tx_hash,
            status=int(receipt["status"]),
            block_number=int(receipt["blockNumber"]),
            gas_used=int(receipt.get("gasUsed", 0)),
        )

    async def get_revert_reason(self, tx_hash: str, block_number: int) -> str:
        """Replay a reverted transaction with `eth_call` to recover its reason."""
        try:
            tx = await self._execute_with_retry("get_transaction", lambda w3: w3.eth.get_transaction(tx_hash))
            replay = {"from": tx["from"], "to": tx["to"], "data": tx["input"], "value": tx.get("value", 0)}
            await self._execute_with_retry(
                "call",
                lambda w3: w3.eth.call(replay, block_identifier=block_number),
            )
        except TransactionReverted as e:
            return e.reason
        except RPCError as e:
            logger.warning("Could not replay %s for a revert reason: %s", tx_hash, e)
        return "execution reverted"

    async def aclose(self) -> None:
        """Close async HTTP provider sessions to avoid leaked aiohttp sessions."""
        providers = [self._w3.provider]
        if self._w3_fallback is not None:
            providers.append(self._w3_fallback.provider)

        for provider in providers:
            disconnect = getattr(provider, "disconnect", None)
            if not callable(disconnect):
                continue
            try:
                result = disconnect()
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.warning("Failed to close RPC provider session: %s", e)


class ChainClients:
    """Registry of per-network clients implementing balance reads and chain writes."""

    def __init__(self, clients: Mapping[str, ChainClient]) -> None:
        self._clients = dict(clients)

    @property
    def networks(self) -> tuple[str, ...]:
        return tuple(self._clients)

    def client(self, network_id: str) -> ChainClient:
        try:
            return self._clients[network_id]
        except KeyError:
            raise ChainClientError(f"No RPC endpoint configured for {network_id}") from None

    async def get_balance(self, address: str, token_address: str, network_id: str) -> int:
        return await self.client(network_id).get_token_balance(address, token_address)

    async def get_allowance(self, owner: str, token_address: str, spender: str, network_id: str) -> int:
        return await self.client(network_id).get_allowance(owner, token_address, spender)

    async def call(self, call: ContractCall) -> Any:
        return await self.client(call.network_id).call_function(call)

    async def submit(self, call: ContractCall, sender: str) -> TxHandle:
        return await self.client(call.network_id).send_transaction(call, sender)

    async def wait_for_receipt(
        self,
        handle: TxHandle,
        timeout: float,
        *,
        interval: float = DEFAULT_RECEIPT_POLL_INTERVAL_SECONDS,
        cancel_event: asyncio.Event | None = None,
    ) -> Receipt:
        """Poll for a receipt.

        Raises:
            ConfirmationTimeout: If no receipt appears within `timeout` seconds.
            PollCancelledError: If `cancel_event` fires first.
        """
        client = self.client(handle.network_id)

        async def check() -> Receipt | None:
            receipt = await client.get_transaction_receipt(handle.tx_hash)
            if receipt is None:
                logger.debug("No receipt yet for %s", handle.tx_hash)
            return receipt

        try:
            return await poll_until(check, interval=interval, timeout=timeout, cancel_event=cancel_event)
        except PollTimeoutError as e:
            raise ConfirmationTimeout(handle.tx_hash, timeout) from e

    async def revert_reason(self, handle: TxHandle, receipt: Receipt) -> str:
        return await self.client(handle.network_id).get_revert_reason(handle.tx_hash, receipt.block_number)

    async def aclose(self) -> None:
        for client in self._clients.values():
            await client.aclose()
