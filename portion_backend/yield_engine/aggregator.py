"""
Yield aggregator: ranked yield opportunities for a token across sources.

Sources run concurrently; a failing source is logged and omitted. Results
are deduplicated by id and ordered by APY descending, then source priority,
then id, so identical inputs always produce identical output. When every
source fails the result is an empty list, not an error.
"""

from __future__ import annotations

import asyncio
import time
from typing import Callable

import httpx

from portion_backend.core.cache import CacheEntry, is_fresh
from portion_backend.core.fallback import gather_settled
from portion_backend.portion_logging import get_logger
from portion_backend.yield_engine.models import YieldOpportunity
from portion_backend.yield_engine.sources import YieldSource

logger = get_logger(__name__)

AGGREGATE_CACHE_TTL_SEC = 300.0


def rank_opportunities(opportunities: list[YieldOpportunity]) -> list[YieldOpportunity]:
    unique: dict[str, YieldOpportunity] = {}
    for opp in opportunities:
        unique[opp.id] = opp
    return sorted(unique.values(), key=lambda o: (-o.apy, o.priority, o.id))


class YieldAggregator:
    def __init__(
        self,
        sources: dict[str, list[YieldSource]],
        *,
        cache_ttl_sec: float = AGGREGATE_CACHE_TTL_SEC,
        timeout_sec: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._sources = {k.upper(): list(v) for k, v in sources.items()}
        self._ttl = cache_ttl_sec
        self._timeout = timeout_sec
        self._transport = transport
        self._clock = clock
        self._cache: dict[str, CacheEntry[list[YieldOpportunity]]] = {}
        self._lock = asyncio.Lock()

    @property
    def supported_tokens(self) -> list[str]:
        return sorted(self._sources)

    async def get_aggregated_yields(self, token: str = "USDV") -> list[YieldOpportunity]:
        token = (token or "USDV").strip().upper()
        sources = self._sources.get(token)
        if not sources:
            logger.info("yield_token_unsupported", token=token)
            return []

        async with self._lock:
            entry = self._cache.get(token)
            if is_fresh(entry, self._clock(), self._ttl):
                return list(entry.value)

            async with httpx.AsyncClient(
                timeout=httpx.Timeout(self._timeout), transport=self._transport
            ) as client:
                ok, errors = await gather_settled(
                    sources, lambda s: s.fetch(client), label=lambda s: s.name
                )

            for err in errors:
                logger.warning("yield_source_failed", token=token, source=err.endpoint, error=err.error)

            ranked = rank_opportunities([opp for _, listings in ok for opp in listings])
            if ok:
                self._cache[token] = CacheEntry(value=ranked, fetched_at=self._clock())
            else:
                logger.error("yield_all_sources_failed", token=token, source_count=len(sources))
            logger.info(
                "yield_aggregated",
                token=token,
                opportunities=len(ranked),
                failed_sources=len(errors),
            )
            return list(ranked)

    def clear_cache(self) -> None:
        self._cache.clear()
