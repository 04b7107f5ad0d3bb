"""
x402 payment messages exchanged with the facilitator.

Requirements describe what the merchant accepts; the payload is the payer's
authorization. Amounts on the wire are atomic units of a 6-decimal stablecoin.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any

X402_VERSION = 2
SCHEME_EXACT = "exact"
ATOMIC_UNITS = 1_000_000
MAX_TIMEOUT_SECONDS = 300


def to_atomic(amount: float) -> str:
    """USD amount -> atomic units string, rounded up."""
    return str(math.ceil(round(amount * ATOMIC_UNITS, 6)))


@dataclass(frozen=True)
class PaymentRequirements:
    scheme: str
    network: str
    max_amount_required: str
    resource: str
    description: str
    pay_to: str
    asset: str
    max_timeout_seconds: int = MAX_TIMEOUT_SECONDS

    @classmethod
    def for_service(
        cls,
        *,
        service_id: str,
        description: str,
        amount: float,
        network: str,
        pay_to: str,
        asset: str,
    ) -> "PaymentRequirements":
        return cls(
            scheme=SCHEME_EXACT,
            network=f"solana:{network}",
            max_amount_required=to_atomic(amount),
            resource=f"/x402/execute/{service_id}",
            description=description,
            pay_to=pay_to,
            asset=asset,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "scheme": self.scheme,
            "network": self.network,
            "maxAmountRequired": self.max_amount_required,
            "resource": self.resource,
            "description": self.description,
            "payTo": self.pay_to,
            "asset": self.asset,
            "maxTimeoutSeconds": self.max_timeout_seconds,
        }


@dataclass(frozen=True)
class PaymentPayload:
    scheme: str
    network: str
    payload: dict[str, Any] = field(default_factory=dict)
    x402_version: int = X402_VERSION

    def to_dict(self) -> dict[str, Any]:
        return {
            "x402Version": self.x402_version,
            "scheme": self.scheme,
            "network": self.network,
            "payload": dict(self.payload),
        }


@dataclass(frozen=True)
class VerificationResult:
    is_valid: bool
    invalid_reason: str | None = None
    payer: str | None = None

    @classmethod
    def from_response(cls, data: dict[str, Any]) -> "VerificationResult":
        return cls(
            is_valid=bool(data.get("isValid")),
            invalid_reason=data.get("invalidReason"),
            payer=data.get("payer"),
        )


@dataclass(frozen=True)
class SettlementResult:
    success: bool
    error_reason: str | None = None
    transaction: str | None = None
    network: str | None = None

    @classmethod
    def from_response(cls, data: dict[str, Any]) -> "SettlementResult":
        return cls(
            success=bool(data.get("success")),
            error_reason=data.get("errorReason"),
            transaction=data.get("transaction"),
            network=data.get("network"),
        )
