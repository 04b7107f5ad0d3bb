"""
RPC endpoint pools per Solana network.

Each pool is an ordered tuple: optional operator override first, then public
fallbacks in fixed priority order. Pools are built once and never mutated.
"""

from __future__ import annotations

from dataclasses import dataclass

from portion_backend.config.env import NETWORK_DEVNET, NETWORK_MAINNET, get_rpc_override

PUBLIC_RPC_ENDPOINTS: dict[str, tuple[str, ...]] = {
    NETWORK_MAINNET: (
        "https://api.mainnet-beta.solana.com",
        "https://solana-mainnet.rpc.extrnode.com",
        "https://rpc.ankr.com/solana",
        "https://solana.public-rpc.com",
    ),
    NETWORK_DEVNET: (
        "https://api.devnet.solana.com",
        "https://rpc.ankr.com/solana_devnet",
    ),
}


@dataclass(frozen=True)
class EndpointPool:
    """Priority-ordered RPC endpoints for one network."""

    network: str
    endpoints: tuple[str, ...]

    def __post_init__(self) -> None:
        if not self.endpoints:
            raise ValueError(f"endpoint pool for {self.network} must be non-empty")

    def __iter__(self):
        return iter(self.endpoints)

    def __len__(self) -> int:
        return len(self.endpoints)


def build_pool(network: str, override: str | None = None) -> EndpointPool:
    endpoints: list[str] = []
    # A mainnet override never leads the devnet pool
    if override and not (network == NETWORK_DEVNET and "mainnet" in override):
        endpoints.append(override.rstrip("/"))
    for url in PUBLIC_RPC_ENDPOINTS[network]:
        if url not in endpoints:
            endpoints.append(url)
    return EndpointPool(network=network, endpoints=tuple(endpoints))


def build_endpoint_pools() -> dict[str, EndpointPool]:
    """Build both pools from env (overrides read once, at call time)."""
    return {
        network: build_pool(network, get_rpc_override(network))
        for network in (NETWORK_MAINNET, NETWORK_DEVNET)
    }
