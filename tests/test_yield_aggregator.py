"""
Pytest tests for YieldAggregator and its sources.

Ranking is deterministic: APY descending, then source priority, then id.
A failing source is omitted, never fatal.
"""

from __future__ import annotations

import httpx
import pytest

from portion_backend.yield_engine.aggregator import YieldAggregator, rank_opportunities
from portion_backend.yield_engine.apy_oracle import ApyOracle
from portion_backend.yield_engine.models import YieldOpportunity
from portion_backend.yield_engine.sources import (
    SOLO_MINT,
    StaticListingSource,
    YieldSource,
    default_sources,
    pools_from_gecko,
)


def _opp(id, apy, priority=100, protocol="P"):
    return YieldOpportunity(
        id=id,
        protocol=protocol,
        name=id,
        apy=apy,
        apr=apy,
        type="Staking",
        token="USDV",
        link="https://example.com",
        priority=priority,
    )


class BrokenSource(YieldSource):
    name = "broken"

    async def fetch(self, client):
        raise httpx.ConnectError("down")


@pytest.fixture
def aggregator(net, clock):
    oracle = ApyOracle(transport=net.transport, clock=clock)
    return YieldAggregator(default_sources(oracle), transport=net.transport, clock=clock)


# --- ranking ---


def test_rank_by_apy_then_priority_then_id():
    ranked = rank_opportunities([_opp("b", 5.0, 2), _opp("a", 5.0, 2), _opp("c", 5.0, 1), _opp("d", 9.0)])
    assert [o.id for o in ranked] == ["d", "c", "a", "b"]


def test_rank_dedup_last_wins():
    ranked = rank_opportunities([_opp("x", 1.0), _opp("x", 2.0)])
    assert len(ranked) == 1
    assert ranked[0].apy == 2.0


# --- aggregation ---


@pytest.mark.asyncio
async def test_usdv_listings_sorted(aggregator):
    opps = await aggregator.get_aggregated_yields("usdv")
    assert [o.id for o in opps] == [
        "metadao-futarchy",
        "meteora-usdv-sol",
        "orca-usdv-usdc",
        "solomon-susdv",
        "kamino-usdv-lend",
    ]
    solomon = next(o for o in opps if o.id == "solomon-susdv")
    assert solomon.apy == 11.2
    assert solomon.apr == pytest.approx(11.2 * 0.95)
    assert solomon.to_dict()["riskScore"] == "Low"


@pytest.mark.asyncio
async def test_unsupported_token_is_empty(aggregator, net):
    assert await aggregator.get_aggregated_yields("BONK") == []
    assert net.requests == []
    assert aggregator.supported_tokens == ["SOLO", "USDV"]


@pytest.mark.asyncio
async def test_failing_source_omitted(net, clock):
    agg = YieldAggregator(
        {"USDV": [BrokenSource(), StaticListingSource("s", [_opp("ok", 3.0)])]},
        transport=net.transport,
        clock=clock,
    )
    opps = await agg.get_aggregated_yields()
    assert [o.id for o in opps] == ["ok"]


@pytest.mark.asyncio
async def test_all_sources_failing_not_cached(net, clock):
    agg = YieldAggregator({"USDV": [BrokenSource()]}, transport=net.transport, clock=clock)
    assert await agg.get_aggregated_yields() == []
    agg._sources["USDV"].append(StaticListingSource("late", [_opp("late", 1.0)]))
    assert [o.id for o in await agg.get_aggregated_yields()] == ["late"]


@pytest.mark.asyncio
async def test_results_cached_until_ttl(aggregator, net, clock):
    await aggregator.get_aggregated_yields("SOLO")
    first = net.count("merv2-api.meteora.ag")
    await aggregator.get_aggregated_yields("SOLO")
    assert net.count("merv2-api.meteora.ag") == first
    clock.advance(301)
    await aggregator.get_aggregated_yields("SOLO")
    assert net.count("merv2-api.meteora.ag") == first + 1
    aggregator.clear_cache()
    await aggregator.get_aggregated_yields("SOLO")
    assert net.count("merv2-api.meteora.ag") == first + 2


@pytest.mark.asyncio
async def test_solo_sources(aggregator, net):
    """Meteora vault from apy_state; gecko pool APY from 24h volume over TVL."""
    net.gecko = {
        "data": [
            {
                "id": "solana_PoolM",
                "attributes": {
                    "address": "PoolM",
                    "name": "SOLO / USDC",
                    "reserve_in_usd": "100000",
                    "volume_usd": {"h24": "50000"},
                },
                "relationships": {"dex": {"data": {"id": "meteora"}}},
            }
        ]
    }
    opps = await aggregator.get_aggregated_yields("SOLO")
    by_id = {o.id: o for o in opps}
    assert by_id["meteora-solo-vault"].apy == 6.1
    assert by_id["meteora-pool-PoolM"].apy == pytest.approx(0.5 * 0.1 * 365 * 100)
    assert by_id["meteora-pool-PoolM"].token == "SOLO"
    assert "metadao-solo-usdv" in by_id


@pytest.mark.asyncio
async def test_meteora_vault_default_and_gecko_failure(aggregator, net):
    net.meteora_vault = {"closest_apy": []}
    net.gecko = 429
    opps = await aggregator.get_aggregated_yields("SOLO")
    by_id = {o.id: o for o in opps}
    assert by_id["meteora-solo-vault"].apy == 4.2
    assert set(by_id) == {"meteora-solo-vault", "metadao-solo-usdv"}


# --- gecko normalization ---


def test_pools_from_gecko_raydium_threshold():
    def pool(addr, tvl):
        return {
            "attributes": {"address": addr, "name": "SOLO / SOL", "reserve_in_usd": str(tvl)},
            "relationships": {"dex": {"data": {"id": "raydium-clmm"}}},
        }

    out = pools_from_gecko({"data": [pool("big", 60_000), pool("small", 50_000)]}, SOLO_MINT)
    assert [o.id for o in out] == ["raydium-pool-big"]
    assert out[0].apy == 14.2
    assert out[0].apr == 12.5


def test_pools_from_gecko_zero_tvl_uses_default():
    payload = {
        "data": [
            {
                "attributes": {"address": "Z", "name": "SOLO / USDV", "reserve_in_usd": None},
                "relationships": {"dex": {"data": {"id": "meteora"}}},
            }
        ]
    }
    out = pools_from_gecko(payload, SOLO_MINT)
    assert out[0].apy == 12.5
    assert pools_from_gecko({"errors": []}, SOLO_MINT) == []
