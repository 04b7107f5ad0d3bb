"""
Solana RPC access: native and SPL token balances with endpoint failover.

Each lookup walks the network's endpoint pool in priority order (liveness check, then
fetch) and fails with AllEndpointsUnavailable only after every endpoint failed.
CachedBalanceResolver layers freshness, bounded retry and auto-refresh on top.
"""

from portion_backend.solana_rpc.cached import BalanceReading, CachedBalanceResolver, TokenReading
from portion_backend.solana_rpc.models import TokenBalance
from portion_backend.solana_rpc.resolver import BalanceResolver
from portion_backend.solana_rpc.validation import is_valid_wallet, validate_address

__all__ = [
    "BalanceReading",
    "BalanceResolver",
    "CachedBalanceResolver",
    "TokenBalance",
    "TokenReading",
    "is_valid_wallet",
    "validate_address",
]
