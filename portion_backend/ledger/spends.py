"""
Spend holds: yield committed to payments, per wallet.

A hold is recorded when a payment passes the spendable-yield check and is
released if the payment then fails; settled payments keep theirs.
Spendable yield nets out every hold inside the accrual window, so repeated
or concurrent payments cannot draw on principal.

The ledger also remembers when each wallet's staked position was first
observed; earned yield accrues from that moment.
"""

from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass
from typing import Any, Callable

from portion_backend.core.timefmt import now_ms
from portion_backend.ledger.storage import MemoryStateStore, StateStore
from portion_backend.portion_logging import get_logger, short_wallet

logger = get_logger(__name__)

SPENDS_KEY = "portion_spends_v1"
DAY_MS = 24 * 60 * 60 * 1000
DEFAULT_RETENTION_MS = 90 * DAY_MS


@dataclass(frozen=True)
class SpendRecord:
    id: str
    wallet: str
    service: str
    amount: float
    timestamp: int
    """Unix milliseconds."""

    def to_record(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "wallet": self.wallet,
            "service": self.service,
            "amount": self.amount,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_record(cls, data: dict[str, Any]) -> "SpendRecord":
        return cls(
            id=str(data["id"]),
            wallet=str(data["wallet"]),
            service=str(data.get("service", "")),
            amount=float(data["amount"]),
            timestamp=int(data["timestamp"]),
        )


def utc_day_start(ts_ms: int) -> int:
    return ts_ms - ts_ms % DAY_MS


class SpendLedger:
    def __init__(
        self,
        store: StateStore | None = None,
        *,
        key: str = SPENDS_KEY,
        retention_ms: int = DEFAULT_RETENTION_MS,
        clock_ms: Callable[[], int] = now_ms,
    ) -> None:
        self._store = store if store is not None else MemoryStateStore()
        self._key = key
        self._retention_ms = retention_ms
        self._clock_ms = clock_ms
        self._holds: list[SpendRecord] = []
        self._positions: dict[str, int] = {}
        self._lock = asyncio.Lock()

    async def load(self) -> int:
        async with self._lock:
            await asyncio.to_thread(self._store.purge_legacy, self._key)
            raw = await asyncio.to_thread(self._store.load, self._key)
            holds: list[SpendRecord] = []
            positions: dict[str, int] = {}
            if isinstance(raw, dict):
                for record in raw.get("holds") or []:
                    try:
                        holds.append(SpendRecord.from_record(record))
                    except (KeyError, TypeError, ValueError) as e:
                        logger.warning("spend_record_skipped", key=self._key, error=str(e))
                for wallet, since in (raw.get("positions") or {}).items():
                    if isinstance(since, int):
                        positions[wallet] = since
            self._holds = holds
            self._positions = positions
        logger.info("spends_loaded", key=self._key, holds=len(self._holds), positions=len(self._positions))
        return len(self._holds)

    def now_ms(self) -> int:
        return self._clock_ms()

    def spent_since(self, wallet: str, since_ms: int) -> float:
        return sum(h.amount for h in self._holds if h.wallet == wallet and h.timestamp >= since_ms)

    def spent_today(self, wallet: str) -> float:
        """Holds since 00:00 UTC."""
        return self.spent_since(wallet, utc_day_start(self._clock_ms()))

    def position_since(self, wallet: str) -> int | None:
        return self._positions.get(wallet)

    async def observe_position(self, wallet: str, staked: bool) -> int | None:
        """
        Track when a wallet's staked position was first seen.

        Returns the first-seen time while the wallet is staked. A wallet
        observed with nothing staked loses its start time.
        """
        async with self._lock:
            since = self._positions.get(wallet)
            if staked and since is None:
                since = self._clock_ms()
                positions = {**self._positions, wallet: since}
            elif not staked and since is not None:
                since = None
                positions = {w: t for w, t in self._positions.items() if w != wallet}
            else:
                return since
            await self._persist(self._holds, positions)
            self._positions = positions
        logger.info("spend_position_observed", wallet_id=short_wallet(wallet), staked=staked)
        return since

    async def record(self, wallet: str, service: str, amount: float) -> SpendRecord:
        async with self._lock:
            ts = self._clock_ms()
            hold = SpendRecord(
                id=f"spend-{ts}-{uuid.uuid4().hex[:8]}",
                wallet=wallet,
                service=service,
                amount=amount,
                timestamp=ts,
            )
            cutoff = ts - self._retention_ms
            holds = [hold, *(h for h in self._holds if h.timestamp > cutoff)]
            await self._persist(holds, self._positions)
            self._holds = holds
        logger.info(
            "spend_recorded",
            hold_id=hold.id,
            wallet_id=short_wallet(wallet),
            service=service,
            amount=amount,
        )
        return hold

    async def release(self, hold_id: str) -> bool:
        async with self._lock:
            holds = [h for h in self._holds if h.id != hold_id]
            if len(holds) == len(self._holds):
                return False
            await self._persist(holds, self._positions)
            self._holds = holds
        logger.info("spend_released", hold_id=hold_id)
        return True

    async def _persist(self, holds: list[SpendRecord], positions: dict[str, int]) -> None:
        document = {"holds": [h.to_record() for h in holds], "positions": dict(positions)}
        await asyncio.to_thread(self._store.save, self._key, document)
