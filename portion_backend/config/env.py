"""
Environment variable loading for the Portion backend.

- SOLANA_NETWORK: devnet | mainnet (default: devnet; mainnet-beta accepted)
- SOLANA_RPC_URL / SOLANA_DEVNET_RPC_URL: operator RPC override per network
- HELIUS_API_KEY: builds the override URL when no explicit RPC URL is set
- Loads .env from project root when available.
"""

from __future__ import annotations

import os
from pathlib import Path

from dotenv import load_dotenv

# Project root: config is portion_backend/config/, root is 2 levels up
_CONFIG_DIR = Path(__file__).resolve().parent
_PACKAGE_DIR = _CONFIG_DIR.parent
_ROOT = _PACKAGE_DIR.parent
_ENV_PATH = _ROOT / ".env"

NETWORK_MAINNET = "mainnet"
NETWORK_DEVNET = "devnet"

HELIUS_MAINNET_URL_TEMPLATE = "https://mainnet.helius-rpc.com/?api-key={key}"
HELIUS_DEVNET_URL_TEMPLATE = "https://devnet.helius-rpc.com/?api-key={key}"


def load_portion_env() -> None:
    """Load .env from project root. Safe to call multiple times."""
    load_dotenv(_ENV_PATH)


def env_str(name: str, default: str = "") -> str:
    load_portion_env()
    return (os.getenv(name) or default).strip()


def env_float(name: str, default: float) -> float:
    raw = env_str(name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def env_bool(name: str, default: bool = False) -> bool:
    raw = env_str(name).lower()
    if not raw:
        return default
    return raw in ("1", "true", "yes", "on")


def normalize_network(raw: str | None) -> str:
    """
    Map user/env network names to devnet | mainnet.
    Raises ValueError for anything else.
    """
    value = (raw or "").strip().lower()
    if value in ("mainnet", "mainnet-beta"):
        return NETWORK_MAINNET
    if value == "devnet":
        return NETWORK_DEVNET
    raise ValueError(f"Unknown Solana network: {raw!r}")


def get_solana_network() -> str:
    """Return SOLANA_NETWORK from env: devnet | mainnet. Default: devnet."""
    raw = env_str("SOLANA_NETWORK") or env_str("SOLANA_CLUSTER") or NETWORK_DEVNET
    try:
        return normalize_network(raw)
    except ValueError:
        return NETWORK_DEVNET


def get_rpc_override(network: str) -> str | None:
    """
    Operator-supplied RPC URL for a network, or None.
    Order: SOLANA_RPC_URL (mainnet) / SOLANA_DEVNET_RPC_URL (devnet) > HELIUS_API_KEY.
    """
    var = "SOLANA_RPC_URL" if network == NETWORK_MAINNET else "SOLANA_DEVNET_RPC_URL"
    url = env_str(var)
    if url:
        return url
    key = env_str("HELIUS_API_KEY")
    if key:
        template = HELIUS_MAINNET_URL_TEMPLATE if network == NETWORK_MAINNET else HELIUS_DEVNET_URL_TEMPLATE
        return template.format(key=key)
    return None
