"""
Data models for yield discovery and spendable-yield calculation.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

RISK_LOW = "Low"
RISK_MEDIUM = "Medium"
RISK_HIGH = "High"

TYPE_STAKING = "Staking"
TYPE_LIQUIDITY = "Liquidity"
TYPE_LENDING = "Lending"

# ApyQuote.source values
APY_LIVE = "live"
APY_SECONDARY = "secondary"
APY_CACHED = "cached"
APY_STALE = "stale"
APY_FALLBACK = "fallback"


@dataclass(frozen=True)
class YieldOpportunity:
    """One normalized yield listing from a protocol."""

    id: str
    protocol: str
    name: str
    apy: float
    apr: float
    type: str
    token: str
    link: str
    tvl: float | None = None
    risk: str | None = None
    priority: int = 100
    """Tie-breaker when two listings have the same APY (lower sorts first)."""

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "protocol": self.protocol,
            "name": self.name,
            "apr": self.apr,
            "apy": self.apy,
            "tvl": self.tvl,
            "riskScore": self.risk,
            "type": self.type,
            "token": self.token,
            "link": self.link,
        }


@dataclass(frozen=True)
class ApyQuote:
    apy: float
    protocol: str
    token: str
    source: str
    fetched_at: float

    @property
    def is_primary(self) -> bool:
        return self.source == APY_LIVE

    def to_dict(self) -> dict[str, Any]:
        return {
            "apy": self.apy,
            "protocol": self.protocol,
            "token": self.token,
            "source": self.source,
            "timestamp": datetime.fromtimestamp(self.fetched_at, tz=timezone.utc).isoformat(),
        }


@dataclass(frozen=True)
class YieldInfo:
    """Per-wallet staking position and yield estimates."""

    wallet_address: str
    usdv_balance: float
    susdv_balance: float
    staked_amount: float
    pending_yield: float
    claimable_yield: float
    estimated_daily_yield: float
    estimated_monthly_yield: float
    estimated_annual_yield: float
    apy: float
    last_updated: datetime
    degraded: bool = False
    """True when balances could not be read and the record is zeroed."""

    @classmethod
    def zeroed(cls, wallet_address: str, apy: float) -> "YieldInfo":
        return cls(
            wallet_address=wallet_address,
            usdv_balance=0.0,
            susdv_balance=0.0,
            staked_amount=0.0,
            pending_yield=0.0,
            claimable_yield=0.0,
            estimated_daily_yield=0.0,
            estimated_monthly_yield=0.0,
            estimated_annual_yield=0.0,
            apy=apy,
            last_updated=datetime.now(timezone.utc),
            degraded=True,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "walletAddress": self.wallet_address,
            "usdvBalance": self.usdv_balance,
            "susdvBalance": self.susdv_balance,
            "stakedAmount": self.staked_amount,
            "pendingYield": self.pending_yield,
            "claimableYield": self.claimable_yield,
            "estimatedDailyYield": self.estimated_daily_yield,
            "estimatedMonthlyYield": self.estimated_monthly_yield,
            "estimatedAnnualYield": self.estimated_annual_yield,
            "apy": self.apy,
            "lastUpdated": self.last_updated.isoformat(),
        }


@dataclass(frozen=True)
class SourceAmount:
    source: str
    amount: float

    def to_dict(self) -> dict[str, Any]:
        return {"source": self.source, "amount": self.amount}


@dataclass(frozen=True)
class YieldSnapshot:
    """
    Spendable yield for one wallet at one instant.

    Re-derived for every spend decision; never persisted.
    """

    wallet_address: str
    spendable_yield: float
    as_of: float
    source_breakdown: list[SourceAmount] = field(default_factory=list)
    reserved: float = 0.0
    spent: float = 0.0
    """Spend holds netted out inside the accrual window."""

    @property
    def primary_source(self) -> str:
        if not self.source_breakdown:
            return "sUSDV yield"
        return max(self.source_breakdown, key=lambda s: s.amount).source

    def to_dict(self) -> dict[str, Any]:
        return {
            "wallet": self.wallet_address,
            "spendableYield": self.spendable_yield,
            "asOf": self.as_of,
            "reserved": self.reserved,
            "spent": self.spent,
            "sourceBreakdown": [s.to_dict() for s in self.source_breakdown],
        }
