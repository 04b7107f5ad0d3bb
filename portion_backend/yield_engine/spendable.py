"""
Spendable yield: the part of a staked position's yield eligible for payments.

Principal is never spendable. How much yield has accrued is decided by a
pluggable AccrualModel, over a rolling window (30 days by default):

- earned:   staked sUSDV compounded at the current APY for the days the
            position has been held, capped at the window
- reported: pending + claimable as reported by the staking contract
- fixed:    a constant (demo mode and tests)

spendable = max(0, accrued - spent - reserved), where spent is the sum of the
wallet's spend holds inside the window and reserved is the sum of its live
prepared payments.

Snapshots are spend decisions: they propagate balance failures instead of
treating an unreadable wallet as empty. get_yield_info() is display-only and
degrades to a zeroed record.
"""

from __future__ import annotations

import asyncio
import time
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Callable

from portion_backend.core.exceptions import AllEndpointsUnavailable
from portion_backend.ledger.spends import DAY_MS, SpendLedger
from portion_backend.portion_logging import get_logger, short_wallet
from portion_backend.solana_rpc.cached import CachedBalanceResolver
from portion_backend.solana_rpc.validation import validate_address
from portion_backend.yield_engine.aggregator import YieldAggregator
from portion_backend.yield_engine.apy_oracle import ApyOracle
from portion_backend.yield_engine.models import ApyQuote, SourceAmount, YieldInfo, YieldSnapshot

logger = get_logger(__name__)

STAKING_SOURCE = "Solomon sUSDV staking"
STAKING_OPPORTUNITY_ID = "solomon-susdv"
DEFAULT_WINDOW_DAYS = 30.0


def daily_rate(apy_percent: float) -> float:
    """Compound daily rate for an annual percentage yield."""
    return (1 + apy_percent / 100) ** (1 / 365) - 1


class AccrualModel(ABC):
    name = "accrual"
    needs_position = True

    def __init__(self, window_days: float = DEFAULT_WINDOW_DAYS) -> None:
        if window_days <= 0:
            raise ValueError("window_days must be positive")
        self.window_days = window_days

    @abstractmethod
    def accrued(self, info: YieldInfo, held_days: float) -> float:
        """Yield accrued over held_days (already capped at window_days)."""


class EarnedAccrual(AccrualModel):
    name = "earned"

    def accrued(self, info: YieldInfo, held_days: float) -> float:
        if held_days <= 0:
            return 0.0
        return info.staked_amount * ((1 + daily_rate(info.apy)) ** held_days - 1)


class ReportedAccrual(AccrualModel):
    name = "reported"

    def accrued(self, info: YieldInfo, held_days: float) -> float:
        return info.pending_yield + info.claimable_yield


class FixedAccrual(AccrualModel):
    name = "fixed"
    needs_position = False

    def __init__(self, amount: float, window_days: float = DEFAULT_WINDOW_DAYS) -> None:
        super().__init__(window_days)
        if amount < 0:
            raise ValueError("amount must be >= 0")
        self.amount = amount

    def accrued(self, info: YieldInfo, held_days: float) -> float:
        return self.amount


def accrual_from_name(name: str, *, window_days: float = DEFAULT_WINDOW_DAYS) -> AccrualModel:
    key = (name or "earned").strip().lower()
    if key == "earned":
        return EarnedAccrual(window_days)
    if key == "reported":
        return ReportedAccrual(window_days)
    raise ValueError(f"Unknown yield accrual model: {name!r}")


class YieldService:
    """Yield info and spendable-yield snapshots for wallets."""

    def __init__(
        self,
        balances: CachedBalanceResolver,
        oracle: ApyOracle,
        token_mints: dict[str, str],
        *,
        network: str,
        spends: SpendLedger | None = None,
        aggregator: YieldAggregator | None = None,
        accrual: AccrualModel | None = None,
        reserved_for: Callable[[str], float] | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._balances = balances
        self._oracle = oracle
        self._mints = dict(token_mints)
        self._network = network
        self._spends = spends if spends is not None else SpendLedger()
        self._aggregator = aggregator
        self._accrual = accrual or EarnedAccrual()
        self._reserved_for = reserved_for
        self._clock = clock

    @property
    def accrual(self) -> AccrualModel:
        return self._accrual

    @property
    def spends(self) -> SpendLedger:
        return self._spends

    async def _fetch_position(self, wallet: str, quote: ApyQuote) -> YieldInfo:
        usdv, susdv = await asyncio.gather(
            self._balances.get_token_balance(wallet, self._mints["USDV"], self._network),
            self._balances.get_token_balance(wallet, self._mints["sUSDV"], self._network),
        )
        staked = susdv.balance
        rate = daily_rate(quote.apy)
        return YieldInfo(
            wallet_address=wallet,
            usdv_balance=usdv.balance,
            susdv_balance=staked,
            staked_amount=staked,
            # Not exposed by the staking program yet
            pending_yield=0.0,
            claimable_yield=0.0,
            estimated_daily_yield=staked * rate,
            estimated_monthly_yield=staked * rate * 30,
            estimated_annual_yield=staked * (quote.apy / 100),
            apy=quote.apy,
            last_updated=datetime.now(timezone.utc),
        )

    async def get_yield_info(self, wallet: str) -> YieldInfo:
        """
        Position and yield estimates for a wallet, for display.

        Balance failures degrade to a zeroed record carrying the current APY.
        """
        wallet = validate_address(wallet)
        quote = await self._oracle.fetch_current_apy("solomon")
        try:
            return await self._fetch_position(wallet, quote)
        except AllEndpointsUnavailable as e:
            logger.warning(
                "yield_info_degraded",
                wallet_id=short_wallet(wallet),
                network=self._network,
                error=str(e),
            )
            return YieldInfo.zeroed(wallet, quote.apy)

    def reserved(self, wallet: str) -> float:
        if self._reserved_for is None:
            return 0.0
        return max(0.0, self._reserved_for(wallet))

    async def staking_source(self) -> str:
        """Display name of the staking listing, as ranked by the aggregator."""
        if self._aggregator is None:
            return STAKING_SOURCE
        for opp in await self._aggregator.get_aggregated_yields("USDV"):
            if opp.id == STAKING_OPPORTUNITY_ID:
                return f"{opp.protocol} {opp.name}"
        return STAKING_SOURCE

    async def snapshot(self, wallet: str, *, accrual: AccrualModel | None = None) -> YieldSnapshot:
        """
        Spendable yield for a spend decision.

        Raises AllEndpointsUnavailable when the position cannot be read.
        """
        wallet = validate_address(wallet)
        model = accrual or self._accrual
        if model.needs_position:
            quote = await self._oracle.fetch_current_apy("solomon")
            info = await self._fetch_position(wallet, quote)
        else:
            info = YieldInfo.zeroed(wallet, self._oracle.default_apy)
        return await self.snapshot_from_info(info, accrual=model)

    async def snapshot_from_info(
        self, info: YieldInfo, *, accrual: AccrualModel | None = None
    ) -> YieldSnapshot:
        """Spendable yield for an already-fetched position."""
        model = accrual or self._accrual
        wallet = info.wallet_address
        now_ms = self._spends.now_ms()
        window_ms = int(model.window_days * DAY_MS)

        if model.needs_position and not info.degraded:
            first_seen = await self._spends.observe_position(wallet, info.staked_amount > 0)
        else:
            first_seen = self._spends.position_since(wallet)
        held_days = 0.0
        if first_seen is not None:
            held_days = min(model.window_days, max(0, now_ms - first_seen) / DAY_MS)

        accrued = max(0.0, model.accrued(info, held_days))
        spent = self._spends.spent_since(wallet, now_ms - window_ms)
        reserved = self.reserved(wallet)
        spendable = max(0.0, accrued - spent - reserved)
        source = await self.staking_source()
        breakdown = [SourceAmount(source, accrued)] if accrued > 0 else []
        logger.debug(
            "yield_snapshot",
            wallet_id=short_wallet(wallet),
            model=model.name,
            held_days=round(held_days, 3),
            accrued=accrued,
            spent=spent,
            reserved=reserved,
            spendable=spendable,
        )
        return YieldSnapshot(
            wallet_address=wallet,
            spendable_yield=spendable,
            as_of=self._clock(),
            source_breakdown=breakdown,
            reserved=reserved,
            spent=spent,
        )
