"""
Cached, periodically refreshed balance lookups.

Policy layered over BalanceResolver, for SOL and SPL token balances alike:
- readings younger than fresh_sec (15 s) are served from cache;
- on a miss, retry AllEndpointsUnavailable with exponential backoff
  (max_attempts, capped delay);
- when retries are exhausted, serve the last reading if younger than
  max_age_sec (5 min) and mark it stale; otherwise propagate;
- watched wallets are refreshed by run_refresh_loop() every interval.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterable

from portion_backend.core.cache import CacheEntry, is_fresh
from portion_backend.core.exceptions import AllEndpointsUnavailable
from portion_backend.portion_logging import get_logger, short_wallet
from portion_backend.solana_rpc.models import TokenBalance
from portion_backend.solana_rpc.resolver import BalanceResolver
from portion_backend.solana_rpc.validation import validate_address

logger = get_logger(__name__)

DEFAULT_FRESH_SEC = 15.0
DEFAULT_MAX_AGE_SEC = 300.0
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BASE_DELAY_SEC = 1.0
DEFAULT_MAX_DELAY_SEC = 10.0

SOURCE_LIVE = "live"
SOURCE_CACHED = "cached"
SOURCE_STALE = "stale"

SOL_ASSET = "SOL"

# (address, network, asset) where asset is SOL_ASSET or a token mint
CacheKey = tuple[str, str, str]


@dataclass(frozen=True)
class BalanceReading:
    """A SOL balance plus where it came from."""

    address: str
    network: str
    balance: float
    fetched_at: float
    source: str

    def to_dict(self) -> dict:
        return {
            "address": self.address,
            "network": self.network,
            "balance": self.balance,
            "fetchedAt": self.fetched_at,
            "source": self.source,
        }


@dataclass(frozen=True)
class TokenReading:
    address: str
    network: str
    mint: str
    token: TokenBalance
    fetched_at: float
    source: str

    @property
    def balance(self) -> float:
        return self.token.balance


class CachedBalanceResolver:
    """Balance cache keyed by (address, network, asset) with bounded retry and auto-refresh."""

    def __init__(
        self,
        resolver: BalanceResolver,
        *,
        fresh_sec: float = DEFAULT_FRESH_SEC,
        max_age_sec: float = DEFAULT_MAX_AGE_SEC,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        base_delay_sec: float = DEFAULT_BASE_DELAY_SEC,
        max_delay_sec: float = DEFAULT_MAX_DELAY_SEC,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if fresh_sec > max_age_sec:
            raise ValueError("fresh_sec must not exceed max_age_sec")
        self._resolver = resolver
        self._fresh_sec = fresh_sec
        self._max_age_sec = max_age_sec
        self._max_attempts = max_attempts
        self._base_delay = base_delay_sec
        self._max_delay = max_delay_sec
        self._clock = clock
        self._sleep = sleep
        self._entries: dict[CacheKey, CacheEntry[Any]] = {}
        self._locks: dict[CacheKey, asyncio.Lock] = {}
        self._watched: dict[tuple[str, str], set[str]] = {}

    async def get_balance(self, address: str, network: str, *, force: bool = False) -> BalanceReading:
        address = validate_address(address)
        network = self._resolver.pool(network).network
        value, fetched_at, source = await self._get(
            (address, network, SOL_ASSET),
            lambda: self._resolver.resolve_balance(address, network),
            force,
        )
        return BalanceReading(address, network, value, fetched_at, source)

    async def get_token_balance(
        self, address: str, mint: str, network: str, *, force: bool = False
    ) -> TokenReading:
        address = validate_address(address)
        network = self._resolver.pool(network).network
        value, fetched_at, source = await self._get(
            (address, network, mint),
            lambda: self._resolver.resolve_token_balance(address, mint, network),
            force,
        )
        return TokenReading(address, network, mint, value, fetched_at, source)

    async def _get(
        self, key: CacheKey, fetch: Callable[[], Awaitable[Any]], force: bool
    ) -> tuple[Any, float, str]:
        entry = self._entries.get(key)
        if not force and is_fresh(entry, self._clock(), self._fresh_sec):
            return entry.value, entry.fetched_at, SOURCE_CACHED

        lock = self._locks.setdefault(key, asyncio.Lock())
        async with lock:
            # Another caller may have refreshed while we waited
            entry = self._entries.get(key)
            if not force and is_fresh(entry, self._clock(), self._fresh_sec):
                return entry.value, entry.fetched_at, SOURCE_CACHED
            try:
                value = await self._fetch_with_retry(key, fetch)
            except AllEndpointsUnavailable:
                if entry is not None and is_fresh(entry, self._clock(), self._max_age_sec):
                    logger.warning(
                        "balance_serving_stale",
                        wallet_id=short_wallet(key[0]),
                        network=key[1],
                        asset=key[2],
                        age_sec=round(entry.age(self._clock()), 1),
                    )
                    return entry.value, entry.fetched_at, SOURCE_STALE
                self._entries.pop(key, None)
                raise
            fetched_at = self._clock()
            self._entries[key] = CacheEntry(value=value, fetched_at=fetched_at)
            return value, fetched_at, SOURCE_LIVE

    async def _fetch_with_retry(self, key: CacheKey, fetch: Callable[[], Awaitable[Any]]) -> Any:
        address, network, asset = key
        delay = self._base_delay
        for attempt in range(self._max_attempts):
            try:
                return await fetch()
            except AllEndpointsUnavailable as e:
                if attempt + 1 >= self._max_attempts:
                    logger.error(
                        "balance_retry_give_up",
                        wallet_id=short_wallet(address),
                        network=network,
                        asset=asset,
                        max_attempts=self._max_attempts,
                        error_count=len(e.errors),
                    )
                    raise
                logger.warning(
                    "balance_retry",
                    wallet_id=short_wallet(address),
                    network=network,
                    asset=asset,
                    attempt=attempt + 1,
                    delay_sec=delay,
                )
                await self._sleep(delay)
                delay = min(delay * 2, self._max_delay)
        raise AssertionError("unreachable")

    def watch(self, address: str, network: str, mints: Iterable[str] = ()) -> None:
        """Register a wallet's SOL balance (and any token mints) for periodic refresh."""
        address = validate_address(address)
        key = (address, self._resolver.pool(network).network)
        self._watched.setdefault(key, {SOL_ASSET}).update(mints)

    def unwatch(self, address: str, network: str) -> None:
        self._watched.pop((address.strip(), self._resolver.pool(network).network), None)

    @property
    def watched(self) -> frozenset[tuple[str, str]]:
        return frozenset(self._watched)

    def evict_expired(self) -> int:
        """Drop entries older than max_age_sec. Returns number evicted."""
        now = self._clock()
        expired = [k for k, e in self._entries.items() if not is_fresh(e, now, self._max_age_sec)]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def _refresh(self, address: str, network: str, asset: str) -> Awaitable[Any]:
        if asset == SOL_ASSET:
            return self.get_balance(address, network, force=True)
        return self.get_token_balance(address, asset, network, force=True)

    async def refresh_watched(self) -> int:
        """Force-refresh every watched reading concurrently. Returns number refreshed."""
        keys = sorted(
            (address, network, asset)
            for (address, network), assets in self._watched.items()
            for asset in assets
        )
        results = await asyncio.gather(
            *(self._refresh(*key) for key in keys),
            return_exceptions=True,
        )
        refreshed = 0
        for (address, network, asset), result in zip(keys, results):
            if isinstance(result, asyncio.CancelledError):
                raise result
            if isinstance(result, Exception):
                logger.warning(
                    "balance_refresh_failed",
                    wallet_id=short_wallet(address),
                    network=network,
                    asset=asset,
                    error=str(result),
                )
            else:
                refreshed += 1
        self.evict_expired()
        return refreshed

    async def run_refresh_loop(self, stop_event: asyncio.Event, interval_sec: float) -> None:
        """Refresh watched wallets every interval_sec until stop_event is set."""
        if interval_sec <= 0:
            raise ValueError("interval_sec must be positive")
        logger.info("balance_refresh_loop_started", interval_sec=interval_sec)
        while not stop_event.is_set():
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval_sec)
            except asyncio.TimeoutError:
                pass
            if stop_event.is_set():
                break
            try:
                count = await self.refresh_watched()
                logger.debug("balance_refresh_cycle", refreshed=count)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.exception("balance_refresh_cycle_error", error=str(e))
        logger.info("balance_refresh_loop_stopped")
