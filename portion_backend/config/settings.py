"""
Application settings and environment configuration.

Responsibilities:
- Load configuration from environment variables and .env files.
- Provide defaults for optional settings.
- Expose typed settings (network, RPC pools, facilitator URL, storage URL,
  ledger timings, CORS policy) for the resolver, yield engine, ledger,
  payments and API server.
"""

from __future__ import annotations

import functools
from dataclasses import dataclass, field

from portion_backend.config.env import env_bool, env_float, env_str, get_solana_network
from portion_backend.config.rpc import EndpointPool, build_endpoint_pools

DEFAULT_FACILITATOR_URL = "https://x402.org/facilitator"
DEFAULT_TREASURY_ADDRESS = "PoRTn1WzKQVfBPGjC7LU1RVrS6NkYSkKuSWLKsmDorP"
DEFAULT_SOLOMON_APY_URL = "https://api.solomonlabs.org/v1/yield/susdv"
DEFAULT_DEFILLAMA_POOLS_URL = "https://yields.llama.fi/pools"
DEFAULT_APY = 10.3
DEFAULT_DB_PATH = "portion.db"

# Token mints (mainnet)
DEFAULT_TOKEN_MINTS = {
    "USDV": "Ex5DaKYMCN6QWFA4n67TmMwsH8MJV68RX6YXTmVM532C",
    "sUSDV": "pTA4St7D5WshfLUPBXoaxn5m8e3k2ort2DVt3gUTa17",
    "USDC": "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v",
    "SOLO": "SoLo9oxzLDpcq1dpqAgMwgce5WqkRDtNXK7EPnbmeta",
}


@dataclass(frozen=True)
class Settings:
    """Typed, read-only view of the process configuration."""

    solana_network: str = "devnet"
    rpc_pools: dict[str, EndpointPool] = field(default_factory=build_endpoint_pools)
    rpc_timeout_sec: float = 10.0
    token_mints: dict[str, str] = field(default_factory=lambda: dict(DEFAULT_TOKEN_MINTS))

    facilitator_url: str = DEFAULT_FACILITATOR_URL
    facilitator_timeout_sec: float = 30.0
    treasury_address: str = DEFAULT_TREASURY_ADDRESS

    solomon_apy_url: str = DEFAULT_SOLOMON_APY_URL
    defillama_pools_url: str = DEFAULT_DEFILLAMA_POOLS_URL
    default_apy: float = DEFAULT_APY
    yield_accrual_model: str = "earned"
    yield_accrual_window_days: float = 30.0
    demo_spendable_yield: float = 10.0

    database_url: str = f"sqlite:///{DEFAULT_DB_PATH}"

    ledger_auto_progress: bool = True
    ledger_validate_delay_sec: float = 2.0
    ledger_settle_delay_sec: float = 4.5
    balance_refresh_interval_sec: float = 30.0
    balance_max_attempts: int = 3

    cors_origins: tuple[str, ...] = ("http://localhost:3000",)
    debug_cors: bool = False


def _database_url() -> str:
    """PORTION_DB_URL / DATABASE_URL if set; else SQLite at PORTION_DB_PATH (default portion.db)."""
    url = env_str("PORTION_DB_URL") or env_str("DATABASE_URL")
    if url:
        return url
    return f"sqlite:///{env_str('PORTION_DB_PATH', DEFAULT_DB_PATH)}"


def load_settings() -> Settings:
    """Build Settings from the current environment (uncached)."""
    mints = dict(DEFAULT_TOKEN_MINTS)
    for symbol in mints:
        override = env_str(f"{symbol.upper()}_MINT")
        if override:
            mints[symbol] = override
    origins = tuple(
        o.strip() for o in env_str("CORS_ORIGINS", "http://localhost:3000").split(",") if o.strip()
    )
    return Settings(
        solana_network=get_solana_network(),
        rpc_pools=build_endpoint_pools(),
        rpc_timeout_sec=env_float("RPC_TIMEOUT_SEC", 10.0),
        token_mints=mints,
        facilitator_url=env_str("X402_FACILITATOR_URL", DEFAULT_FACILITATOR_URL),
        facilitator_timeout_sec=env_float("FACILITATOR_TIMEOUT_SEC", 30.0),
        treasury_address=env_str("PORTION_TREASURY_ADDRESS", DEFAULT_TREASURY_ADDRESS),
        solomon_apy_url=env_str("SOLOMON_APY_URL", DEFAULT_SOLOMON_APY_URL),
        defillama_pools_url=env_str("DEFILLAMA_POOLS_URL", DEFAULT_DEFILLAMA_POOLS_URL),
        default_apy=env_float("DEFAULT_APY", DEFAULT_APY),
        yield_accrual_model=env_str("YIELD_ACCRUAL_MODEL", "earned").lower(),
        yield_accrual_window_days=env_float("YIELD_ACCRUAL_WINDOW_DAYS", 30.0),
        demo_spendable_yield=env_float("DEMO_SPENDABLE_YIELD", 10.0),
        database_url=_database_url(),
        ledger_auto_progress=env_bool("LEDGER_AUTO_PROGRESS", True),
        ledger_validate_delay_sec=env_float("LEDGER_VALIDATE_DELAY_SEC", 2.0),
        ledger_settle_delay_sec=env_float("LEDGER_SETTLE_DELAY_SEC", 4.5),
        balance_refresh_interval_sec=env_float("BALANCE_REFRESH_INTERVAL_SEC", 30.0),
        balance_max_attempts=max(1, int(env_float("BALANCE_MAX_ATTEMPTS", 3))),
        cors_origins=origins,
        debug_cors=env_bool("PORTION_DEBUG_CORS", False),
    )


@functools.lru_cache(maxsize=1)
def get_settings() -> Settings:
    """
    Return the process-wide settings, loaded once.

    Tests that change the environment call get_settings.cache_clear().
    """
    return load_settings()
