"""
Data models for Solana RPC results.

Lamport/SOL conversion and SPL token amounts as returned by
getTokenAccountsByOwner (jsonParsed).
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

LAMPORTS_PER_SOL = 1_000_000_000
DEFAULT_TOKEN_DECIMALS = 6


@dataclass(frozen=True)
class TokenBalance:
    """SPL token balance for one owner and mint, summed over token accounts."""

    amount: int
    """Raw amount in base units."""
    decimals: int
    ui_amount: str
    """Human-readable amount string (as the RPC formats it)."""

    @property
    def balance(self) -> float:
        return float(self.ui_amount or "0")

    @classmethod
    def zero(cls) -> "TokenBalance":
        return cls(amount=0, decimals=DEFAULT_TOKEN_DECIMALS, ui_amount="0")

    @classmethod
    def from_rpc_accounts(cls, accounts: list[dict[str, Any]]) -> "TokenBalance":
        """Build from a getTokenAccountsByOwner result value list."""
        if not accounts:
            return cls.zero()
        total = 0
        decimals: int | None = None
        for item in accounts:
            token_amount = item["account"]["data"]["parsed"]["info"]["tokenAmount"]
            total += int(token_amount.get("amount") or "0")
            if decimals is None:
                decimals = int(token_amount.get("decimals", DEFAULT_TOKEN_DECIMALS))
        decimals = DEFAULT_TOKEN_DECIMALS if decimals is None else decimals
        if len(accounts) == 1:
            ui = accounts[0]["account"]["data"]["parsed"]["info"]["tokenAmount"].get("uiAmountString")
            if ui is not None:
                return cls(amount=total, decimals=decimals, ui_amount=str(ui))
        ui_amount = f"{total / 10 ** decimals:.{decimals}f}".rstrip("0").rstrip(".") or "0"
        return cls(amount=total, decimals=decimals, ui_amount=ui_amount)


def lamports_to_sol(lamports: int) -> float:
    return lamports / LAMPORTS_PER_SOL
