"""
Yield discovery and spendable-yield calculation.

ApyOracle resolves a protocol's APY (primary, secondary, cache, default);
YieldAggregator ranks opportunities across sources; YieldService derives
per-wallet yield info and spendable-yield snapshots.
"""

from portion_backend.yield_engine.aggregator import YieldAggregator
from portion_backend.yield_engine.apy_oracle import PROTOCOLS, ApyOracle
from portion_backend.yield_engine.models import ApyQuote, YieldInfo, YieldOpportunity, YieldSnapshot
from portion_backend.yield_engine.sources import default_sources
from portion_backend.yield_engine.spendable import (
    EarnedAccrual,
    FixedAccrual,
    ReportedAccrual,
    YieldService,
    accrual_from_name,
)

__all__ = [
    "PROTOCOLS",
    "ApyOracle",
    "ApyQuote",
    "EarnedAccrual",
    "FixedAccrual",
    "ReportedAccrual",
    "YieldAggregator",
    "YieldInfo",
    "YieldOpportunity",
    "YieldService",
    "YieldSnapshot",
    "accrual_from_name",
    "default_sources",
]
