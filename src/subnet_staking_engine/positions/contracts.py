"""Contract ABIs and call descriptions for staking contracts.

Two contract styles are supported:

- `deposit_pool`: a pooled staking contract addressed by pool index, with
  per-user claim locks (`stake`, `withdraw`, `claim`, `lockClaim`).
- `builders`: a per-subnet contract addressed by a bytes32 pool id
  (`deposit`, `withdraw`, `claim`).
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from subnet_staking_engine.config import AssetConfig

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


def _fn(
    name: str,
    inputs: list[tuple[str, str]],
    outputs: list[tuple[str, str]] | None = None,
    *,
    mutability: str = "nonpayable",
) -> dict[str, Any]:
    return {
        "type": "function",
        "name": name,
        "stateMutability": mutability,
        "inputs": [{"name": n, "type": t} for n, t in inputs],
        "outputs": [{"name": n, "type": t} for n, t in outputs or []],
    }


ERC20_ABI: list[dict[str, Any]] = [
    _fn("balanceOf", [("account", "address")], [("", "uint256")], mutability="view"),
    _fn("allowance", [("owner", "address"), ("spender", "address")], [("", "uint256")], mutability="view"),
    _fn("approve", [("spender", "address"), ("amount", "uint256")], [("", "bool")]),
]

DEPOSIT_POOL_ABI: list[dict[str, Any]] = [
    _fn(
        "stake",
        [("rewardPoolIndex_", "uint256"), ("amount_", "uint256"), ("claimLockEnd_", "uint128"), ("referrer_", "address")],
    ),
    _fn("withdraw", [("rewardPoolIndex_", "uint256"), ("amount_", "uint256")]),
    _fn("claim", [("rewardPoolIndex_", "uint256"), ("receiver_", "address")], mutability="payable"),
    _fn("lockClaim", [("rewardPoolIndex_", "uint256"), ("claimLockEnd_", "uint128")]),
    _fn(
        "usersData",
        [("user", "address"), ("rewardPoolIndex", "uint256")],
        [
            ("lastStake", "uint128"),
            ("deposited", "uint256"),
            ("rate", "uint256"),
            ("pendingRewards", "uint256"),
            ("claimLockStart", "uint128"),
            ("claimLockEnd", "uint128"),
            ("virtualDeposited", "uint256"),
            ("lastClaim", "uint128"),
            ("referrer", "address"),
        ],
        mutability="view",
    ),
    _fn(
        "rewardPoolsProtocolDetails",
        [("rewardPoolIndex", "uint256")],
        [
            ("withdrawLockPeriodAfterStake", "uint128"),
            ("claimLockPeriodAfterStake", "uint128"),
            ("claimLockPeriodAfterClaim", "uint128"),
            ("minimalStake", "uint256"),
            ("distributedRewards", "uint256"),
        ],
        mutability="view",
    ),
    _fn(
        "getLatestUserReward",
        [("rewardPoolIndex_", "uint256"), ("user_", "address")],
        [("", "uint256")],
        mutability="view",
    ),
]

BUILDERS_ABI: list[dict[str, Any]] = [
    _fn("deposit", [("builderPoolId_", "bytes32"), ("amount_", "uint256")]),
    _fn("withdraw", [("builderPoolId_", "bytes32"), ("amount_", "uint256")]),
    _fn("claim", [("builderPoolId_", "bytes32"), ("receiver_", "address")], mutability="payable"),
    _fn(
        "usersData",
        [("user", "address"), ("builderPoolId", "bytes32")],
        [
            ("lastDeposit", "uint128"),
            ("claimLockStart", "uint128"),
            ("deposited", "uint256"),
            ("virtualDeposited", "uint256"),
        ],
        mutability="view",
    ),
    _fn(
        "builderPools",
        [("builderPoolId", "bytes32")],
        [
            ("name", "string"),
            ("admin", "address"),
            ("poolStart", "uint128"),
            ("withdrawLockPeriodAfterDeposit", "uint128"),
            ("claimLockEnd", "uint128"),
            ("minimalDeposit", "uint256"),
        ],
        mutability="view",
    ),
    _fn(
        "getCurrentBuilderReward",
        [("builderPoolId_", "bytes32")],
        [("", "uint256")],
        mutability="view",
    ),
]

ABIS: dict[str, list[dict[str, Any]]] = {
    "erc20": ERC20_ABI,
    "deposit_pool": DEPOSIT_POOL_ABI,
    "builders": BUILDERS_ABI,
}

# Output index of `admin` in `builderPools`.
BUILDER_POOL_ADMIN_INDEX = 1


@dataclass(frozen=True)
class ContractCall:
    """A single contract function invocation on one network."""

    network_id: str
    address: str
    abi: str
    function: str
    args: tuple[Any, ...] = ()
    value: int = 0

    def describe(self) -> str:
        return f"{self.function}@{self.address} on {self.network_id}"


def subnet_id_bytes(subnet_id: str) -> bytes:
    """Convert a hex pool id into the bytes32 argument the builders contract expects."""
    text = subnet_id[2:] if subnet_id.startswith(("0x", "0X")) else subnet_id
    raw = bytes.fromhex(text)
    if len(raw) > 32:
        raise ValueError(f"subnet id {subnet_id!r} is longer than 32 bytes")
    return raw.rjust(32, b"\x00")


def approve_call(asset: AssetConfig, amount: int) -> ContractCall:
    return ContractCall(asset.network, asset.token_address, "erc20", "approve", (asset.staking_contract, amount))


def deposit_call(asset: AssetConfig, amount: int, *, claim_lock_end: int, subnet_id: str | None) -> ContractCall:
    if asset.contract_style == "builders":
        return ContractCall(
            asset.network,
            asset.staking_contract,
            "builders",
            "deposit",
            (subnet_id_bytes(_require_subnet(subnet_id)), amount),
        )
    return ContractCall(
        asset.network,
        asset.staking_contract,
        "deposit_pool",
        "stake",
        (asset.pool_index, amount, claim_lock_end, ZERO_ADDRESS),
    )


def withdraw_call(asset: AssetConfig, amount: int, *, subnet_id: str | None) -> ContractCall:
    if asset.contract_style == "builders":
        return ContractCall(
            asset.network,
            asset.staking_contract,
            "builders",
            "withdraw",
            (subnet_id_bytes(_require_subnet(subnet_id)), amount),
        )
    return ContractCall(asset.network, asset.staking_contract, "deposit_pool", "withdraw", (asset.pool_index, amount))


def claim_call(asset: AssetConfig, receiver: str, *, subnet_id: str | None, fee_wei: int) -> ContractCall:
    """Claim call; cross-chain claims carry `fee_wei` to pay for the bridge message."""
    value = fee_wei if asset.is_cross_chain_claim else 0
    if asset.contract_style == "builders":
        return ContractCall(
            asset.network,
            asset.staking_contract,
            "builders",
            "claim",
            (subnet_id_bytes(_require_subnet(subnet_id)), receiver),
            value=value,
        )
    return ContractCall(
        asset.network,
        asset.staking_contract,
        "deposit_pool",
        "claim",
        (asset.pool_index, receiver),
        value=value,
    )


def lock_claim_call(asset: AssetConfig, claim_lock_end: int) -> ContractCall:
    if asset.contract_style == "builders":
        raise ValueError(f"{asset.symbol} does not support changing the claim lock")
    return ContractCall(
        asset.network,
        asset.staking_contract,
        "deposit_pool",
        "lockClaim",
        (asset.pool_index, claim_lock_end),
    )


def _require_subnet(subnet_id: str | None) -> str:
    if not subnet_id:
        raise ValueError("subnet_id is required for builder subnets")
    return subnet_id
