"""Registry of known networks.

Network ids are plain strings; reconciliation accepts ids that are not in
this registry, but chain reads, writes and explorer links need an entry.
"""

from __future__ import annotations

from dataclasses import dataclass

NetworkId = str


@dataclass(frozen=True)
class NetworkInfo:
    """Static facts about a supported network."""

    network_id: NetworkId
    chain_id: int
    display_name: str
    explorer_url: str
    testnet: bool = False


KNOWN_NETWORKS: dict[NetworkId, NetworkInfo] = {
    info.network_id: info
    for info in (
        NetworkInfo("ethereum", 1, "Ethereum", "https://etherscan.io"),
        NetworkInfo("arbitrum", 42161, "Arbitrum One", "https://arbiscan.io"),
        NetworkInfo("base", 8453, "Base", "https://basescan.org"),
        NetworkInfo("sepolia", 11155111, "Sepolia", "https://sepolia.etherscan.io", testnet=True),
        NetworkInfo(
            "arbitrum_sepolia",
            421614,
            "Arbitrum Sepolia",
            "https://sepolia.arbiscan.io",
            testnet=True,
        ),
        NetworkInfo("base_sepolia", 84532, "Base Sepolia", "https://sepolia.basescan.org", testnet=True),
    )
}

def get_network(network_id: NetworkId) -> NetworkInfo:
    """Look up a known network.

    Raises:
        KeyError: If the network is not registered.
    """
    try:
        return KNOWN_NETWORKS[network_id]
    except KeyError:
        raise KeyError(f"Unknown network: {network_id}") from None


def transaction_url(network_id: NetworkId, tx_hash: str) -> str | None:
    """Block explorer link for a transaction, or None for unknown networks."""
    info = KNOWN_NETWORKS.get(network_id)
    if info is None:
        return None
    return f"{info.explorer_url}/tx/{tx_hash}"
