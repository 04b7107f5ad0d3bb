"""
APY oracle: a protocol's current annualized yield with graceful degradation.

Order of resolution for fetch_current_apy(protocol):
1. cached value younger than the freshness window (5 min)  -> source "cached"
2. primary source (protocol API)                             -> source "live"
3. secondary aggregator (DeFiLlama pools, name/symbol match) -> source "secondary"
4. last cached value, however old                            -> source "stale"
5. hard-coded default                                        -> source "fallback"

Never raises for provider failures; yield display is advisory.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Callable

import httpx

from portion_backend.core.cache import CacheEntry, is_fresh
from portion_backend.core.exceptions import InvalidRequest
from portion_backend.core.fallback import FallbackExhausted, first_success
from portion_backend.portion_logging import get_logger
from portion_backend.yield_engine.models import (
    APY_CACHED,
    APY_FALLBACK,
    APY_LIVE,
    APY_SECONDARY,
    APY_STALE,
    ApyQuote,
)

logger = get_logger(__name__)

APY_FRESH_SEC = 300.0
DEFAULT_APY = 10.3


@dataclass(frozen=True)
class ProtocolInfo:
    key: str
    name: str
    token: str
    primary_url: str | None = None


PROTOCOLS: dict[str, ProtocolInfo] = {
    "solomon": ProtocolInfo(
        key="solomon",
        name="Solomon Labs",
        token="sUSDV",
        primary_url="https://api.solomonlabs.org/v1/yield/susdv",
    ),
}


class ApySourceError(RuntimeError):
    """A single APY source returned nothing usable."""


def _as_apy(value: Any) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if value < 0:
        return None
    return float(value)


def parse_primary_apy(data: Any) -> float:
    """Solomon-style payload: {"apy": x} or {"yield": {"apy": x}}."""
    if isinstance(data, dict):
        apy = _as_apy(data.get("apy"))
        if apy is None and isinstance(data.get("yield"), dict):
            apy = _as_apy(data["yield"].get("apy"))
        if apy is not None:
            return apy
    raise ApySourceError("primary payload has no apy field")


def match_llama_pool(data: Any, protocol: str, symbol: str) -> float:
    """Find the protocol's pool in a DeFiLlama /pools payload by project or symbol."""
    pools = data.get("data") if isinstance(data, dict) else None
    if not isinstance(pools, list):
        raise ApySourceError("secondary payload has no pool list")
    protocol_l = protocol.lower()
    symbol_l = symbol.lower()
    for pool in pools:
        if not isinstance(pool, dict):
            continue
        project = str(pool.get("project") or "").lower()
        pool_symbol = str(pool.get("symbol") or "").lower()
        if protocol_l in project or symbol_l in pool_symbol:
            apy = _as_apy(pool.get("apy"))
            if apy is not None:
                return apy
    raise ApySourceError(f"no pool matching {protocol}/{symbol}")


class ApyOracle:
    """Cache-first APY lookups with primary/secondary sources and a default."""

    def __init__(
        self,
        *,
        primary_url: str | None = None,
        secondary_url: str = "https://yields.llama.fi/pools",
        default_apy: float = DEFAULT_APY,
        fresh_sec: float = APY_FRESH_SEC,
        timeout_sec: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._primary_url = primary_url
        self._secondary_url = secondary_url
        self._default_apy = default_apy
        self._fresh_sec = fresh_sec
        self._timeout = timeout_sec
        self._transport = transport
        self._clock = clock
        self._cache: dict[tuple[str, str], CacheEntry[ApyQuote]] = {}
        self._lock = asyncio.Lock()

    @property
    def default_apy(self) -> float:
        return self._default_apy

    def cached(self, protocol: str = "solomon", symbol: str | None = None) -> ApyQuote | None:
        info = self._protocol(protocol)
        entry = self._cache.get((info.key, (symbol or info.token).upper()))
        return entry.value if entry else None

    def _protocol(self, protocol: str) -> ProtocolInfo:
        info = PROTOCOLS.get(protocol.lower())
        if info is None:
            raise InvalidRequest(f"Unknown protocol: {protocol}")
        return info

    async def fetch_current_apy(self, protocol: str = "solomon", symbol: str | None = None) -> ApyQuote:
        """
        Current APY for a protocol pool, cached per (protocol, symbol).

        Never fails for a known protocol: live, secondary, stale cache, then
        the default APY. An unknown protocol name is a caller input error and
        raises InvalidRequest.
        """
        info = self._protocol(protocol)
        symbol = symbol or info.token
        key = (info.key, symbol.upper())
        async with self._lock:
            now = self._clock()
            entry = self._cache.get(key)
            if is_fresh(entry, now, self._fresh_sec):
                q = entry.value
                return ApyQuote(q.apy, q.protocol, q.token, APY_CACHED, q.fetched_at)

            sources = [
                (APY_LIVE, self._fetch_primary),
                (APY_SECONDARY, self._fetch_secondary),
            ]

            async def attempt(src: tuple[str, Callable[..., Any]]) -> tuple[str, float]:
                label, fetch = src
                return label, await fetch(info, symbol)

            def on_error(src: tuple[str, Callable[..., Any]], exc: Exception) -> None:
                logger.warning(
                    "apy_source_failed",
                    protocol=info.key,
                    source=src[0],
                    error=str(exc) or type(exc).__name__,
                )

            try:
                (source, apy), _ = await first_success(
                    sources, attempt, label=lambda s: s[0], on_error=on_error
                )
            except FallbackExhausted:
                if entry is not None:
                    q = entry.value
                    logger.warning("apy_serving_stale", protocol=info.key, apy=q.apy)
                    return ApyQuote(q.apy, q.protocol, q.token, APY_STALE, q.fetched_at)
                logger.warning("apy_using_default", protocol=info.key, apy=self._default_apy)
                return ApyQuote(self._default_apy, info.name, symbol, APY_FALLBACK, now)

            fetched_at = self._clock()
            quote = ApyQuote(apy, info.name, symbol, source, fetched_at)
            self._cache[key] = CacheEntry(value=quote, fetched_at=fetched_at)
            logger.info("apy_fetched", protocol=info.key, apy=apy, source=source)
            return quote

    async def _get_json(self, url: str) -> Any:
        async with httpx.AsyncClient(
            timeout=httpx.Timeout(self._timeout), transport=self._transport
        ) as client:
            resp = await client.get(url, headers={"Accept": "application/json"})
            resp.raise_for_status()
            return resp.json()

    async def _fetch_primary(self, info: ProtocolInfo, symbol: str) -> float:
        url = self._primary_url or info.primary_url
        if not url:
            raise ApySourceError(f"no primary source for {info.key}")
        return parse_primary_apy(await self._get_json(url))

    async def _fetch_secondary(self, info: ProtocolInfo, symbol: str) -> float:
        data = await self._get_json(self._secondary_url)
        return match_llama_pool(data, info.key, symbol)
