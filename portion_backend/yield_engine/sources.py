"""
Yield sources queried by the aggregator.

Each source lists opportunities for one token. A source either returns its
listings or raises; the aggregator contains the failure.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

import httpx

from portion_backend.yield_engine.apy_oracle import ApyOracle
from portion_backend.yield_engine.models import (
    RISK_HIGH,
    RISK_LOW,
    RISK_MEDIUM,
    TYPE_LENDING,
    TYPE_LIQUIDITY,
    TYPE_STAKING,
    YieldOpportunity,
)

SOLO_MINT = "SoLo9oxzLDpcq1dpqAgMwgce5WqkRDtNXK7EPnbmeta"
METADAO_POOL_URL = "https://v1.metadao.fi/trading/DzYtzoNvPbyFCzwZA6cSm9eDEEmxEB9f8AGkJXUXgnSA"
METEORA_VAULT_API = "https://merv2-api.meteora.ag/apy_state/{mint}"
GECKO_POOLS_API = "https://api.geckoterminal.com/api/v2/networks/solana/tokens/{mint}/pools"

METEORA_VAULT_DEFAULT_APY = 4.2
METEORA_POOL_DEFAULT_APY = 12.5
METEORA_FEE_SHARE = 0.1
RAYDIUM_MIN_TVL = 50_000.0
RAYDIUM_LISTED_APY = 14.2
RAYDIUM_LISTED_APR = 12.5


class YieldSource(ABC):
    """One provider of yield listings."""

    name: str = "source"
    priority: int = 100

    @abstractmethod
    async def fetch(self, client: httpx.AsyncClient) -> list[YieldOpportunity]:
        """Return this source's listings; raise on failure."""


class SolomonStakingSource(YieldSource):
    """sUSDV staking vault, priced by the APY oracle."""

    name = "solomon-susdv"
    priority = 0

    def __init__(self, oracle: ApyOracle) -> None:
        self._oracle = oracle

    async def fetch(self, client: httpx.AsyncClient) -> list[YieldOpportunity]:
        quote = await self._oracle.fetch_current_apy("solomon")
        return [
            YieldOpportunity(
                id="solomon-susdv",
                protocol="Solomon Labs",
                name="sUSDV Staking",
                apy=quote.apy,
                apr=quote.apy * 0.95,
                tvl=45_000_000,
                risk=RISK_LOW,
                type=TYPE_STAKING,
                token="USDV",
                link="https://app.solomonlabs.org",
                priority=self.priority,
            )
        ]


class StaticListingSource(YieldSource):
    """Curated listings that need no network access."""

    def __init__(self, name: str, listings: list[YieldOpportunity]) -> None:
        self.name = name
        self._listings = list(listings)

    async def fetch(self, client: httpx.AsyncClient) -> list[YieldOpportunity]:
        return list(self._listings)


class MeteoraVaultSource(YieldSource):
    """Meteora dynamic vault APY for a mint."""

    name = "meteora-vault"
    priority = 10

    def __init__(self, mint: str) -> None:
        self._mint = mint

    async def fetch(self, client: httpx.AsyncClient) -> list[YieldOpportunity]:
        resp = await client.get(METEORA_VAULT_API.format(mint=self._mint))
        resp.raise_for_status()
        data = resp.json()
        best = METEORA_VAULT_DEFAULT_APY
        closest = data.get("closest_apy") if isinstance(data, dict) else None
        if isinstance(closest, list) and closest and isinstance(closest[0], dict):
            value = closest[0].get("apy")
            if isinstance(value, (int, float)) and not isinstance(value, bool) and value > 0:
                best = float(value)
        return [
            YieldOpportunity(
                id="meteora-solo-vault",
                protocol="Meteora",
                name="SOLO Dynamic Vault",
                apy=best,
                apr=best * 0.9,
                tvl=150_000,
                risk=RISK_LOW,
                type=TYPE_LENDING,
                token="SOLO",
                link=f"https://app.meteora.ag/vault/{self._mint}",
                priority=self.priority,
            )
        ]


def _to_float(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def pools_from_gecko(payload: Any, mint: str, priority: int = 20) -> list[YieldOpportunity]:
    """Normalize GeckoTerminal token pools into Meteora and Raydium listings."""
    pools = payload.get("data") if isinstance(payload, dict) else None
    if not isinstance(pools, list):
        return []
    out: list[YieldOpportunity] = []
    for pool in pools:
        attrs = pool.get("attributes") or {}
        dex = ((pool.get("relationships") or {}).get("dex") or {}).get("data") or {}
        dex_id = str(dex.get("id") or "")
        address = attrs.get("address") or pool.get("id") or ""
        tvl = _to_float(attrs.get("reserve_in_usd"))

        if "meteora" in dex_id:
            name = attrs.get("name") or "SOLO Pool"
            vol24h = _to_float((attrs.get("volume_usd") or {}).get("h24"))
            apy = (vol24h / tvl) * METEORA_FEE_SHARE * 365 * 100 if tvl > 0 else METEORA_POOL_DEFAULT_APY
            out.append(
                YieldOpportunity(
                    id=f"meteora-pool-{address}",
                    protocol="Meteora",
                    name=f"{name} (DLMM)",
                    apy=apy,
                    apr=apy * 0.8,
                    tvl=tvl,
                    risk=RISK_HIGH,
                    type=TYPE_LIQUIDITY,
                    token=name.split(" / ")[0] if "/" in name else "SOLO",
                    link=f"https://app.meteora.ag/dlmm/{address}",
                    priority=priority,
                )
            )

        if "raydium" in dex_id and tvl > RAYDIUM_MIN_TVL:
            out.append(
                YieldOpportunity(
                    id=f"raydium-pool-{address}",
                    protocol="Raydium",
                    name=f"{attrs.get('name')} CLMM",
                    apy=RAYDIUM_LISTED_APY,
                    apr=RAYDIUM_LISTED_APR,
                    tvl=tvl,
                    risk=RISK_MEDIUM,
                    type=TYPE_LIQUIDITY,
                    token="SOLO",
                    link=f"https://raydium.io/liquidity/pool/?inputMint={mint}",
                    priority=priority + 1,
                )
            )
    return out


class GeckoTerminalPoolsSource(YieldSource):
    """Pool discovery for a mint via GeckoTerminal."""

    name = "geckoterminal"
    priority = 20

    def __init__(self, mint: str) -> None:
        self._mint = mint

    async def fetch(self, client: httpx.AsyncClient) -> list[YieldOpportunity]:
        resp = await client.get(
            GECKO_POOLS_API.format(mint=self._mint),
            headers={"Accept": "application/json;version=20230203"},
        )
        resp.raise_for_status()
        return pools_from_gecko(resp.json(), self._mint, self.priority)


USDV_LISTINGS = [
    YieldOpportunity(
        id="orca-usdv-usdc",
        protocol="Orca",
        name="USDV/USDC Whirlpool",
        apy=13.3,
        apr=12.5,
        tvl=1_200_000,
        risk=RISK_MEDIUM,
        type=TYPE_LIQUIDITY,
        token="USDV-USDC",
        link="https://www.orca.so",
        priority=1,
    ),
    YieldOpportunity(
        id="meteora-usdv-sol",
        protocol="Meteora",
        name="USDV/SOL Dynamic",
        apy=27.5,
        apr=24.2,
        tvl=850_000,
        risk=RISK_HIGH,
        type=TYPE_LIQUIDITY,
        token="USDV-SOL",
        link="https://meteora.ag",
        priority=2,
    ),
    YieldOpportunity(
        id="metadao-futarchy",
        protocol="MetaDAO",
        name="Futarchy AMM Pool",
        apy=51.2,
        apr=42.8,
        tvl=2_100_000,
        risk=RISK_HIGH,
        type=TYPE_LIQUIDITY,
        token="SOLO-USDV",
        link=METADAO_POOL_URL,
        priority=3,
    ),
    YieldOpportunity(
        id="kamino-usdv-lend",
        protocol="Kamino",
        name="USDV Lending",
        apy=8.5,
        apr=8.2,
        tvl=12_400_000,
        risk=RISK_LOW,
        type=TYPE_LENDING,
        token="USDV",
        link="https://app.kamino.finance",
        priority=4,
    ),
]

SOLO_LISTINGS = [
    YieldOpportunity(
        id="metadao-solo-usdv",
        protocol="MetaDAO",
        name="SOLO/USDV AMM",
        apy=51.2,
        apr=42.8,
        tvl=2_100_000,
        risk=RISK_HIGH,
        type=TYPE_LIQUIDITY,
        token="SOLO-USDV",
        link=METADAO_POOL_URL,
        priority=30,
    ),
]


def default_sources(oracle: ApyOracle, solo_mint: str = SOLO_MINT) -> dict[str, list[YieldSource]]:
    """Sources per token symbol, in priority order."""
    return {
        "USDV": [
            SolomonStakingSource(oracle),
            StaticListingSource("curated-usdv", USDV_LISTINGS),
        ],
        "SOLO": [
            MeteoraVaultSource(solo_mint),
            GeckoTerminalPoolsSource(solo_mint),
            StaticListingSource("curated-solo", SOLO_LISTINGS),
        ],
    }
