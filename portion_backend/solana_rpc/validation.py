"""Wallet address validation."""

from __future__ import annotations

from solders.pubkey import Pubkey

from portion_backend.core.exceptions import InvalidAddress

# Foreign-chain address formats (EVM hex)
FOREIGN_PREFIXES = ("0x", "0X")


def validate_address(address: str | None) -> str:
    """Return the stripped address or raise InvalidAddress. No I/O."""
    value = (address or "").strip()
    if not value:
        raise InvalidAddress("wallet address must be non-empty")
    if value.startswith(FOREIGN_PREFIXES):
        raise InvalidAddress("not a Solana address (foreign-chain prefix)")
    try:
        Pubkey.from_string(value)
    except Exception as e:
        raise InvalidAddress(f"Invalid Solana wallet address: {e}") from e
    return value


def is_valid_wallet(w: str) -> bool:
    """Return True if w is a valid Solana wallet (Pubkey) address."""
    try:
        validate_address(w)
        return True
    except InvalidAddress:
        return False
