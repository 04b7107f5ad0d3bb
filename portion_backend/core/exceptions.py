"""
Application-level exceptions.

Every domain error carries a stable ``code`` used by the API layer and logs.
Input and business-rule errors are raised before any I/O; facilitator errors
name the stage (verify or settle) that failed.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any


class PortionError(Exception):
    """Base class for domain errors."""

    code = "portion_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.code, "detail": self.message}


class InvalidRequest(PortionError):
    """Malformed caller input; never retried."""

    code = "invalid_request"


class InvalidAddress(InvalidRequest):
    code = "invalid_address"


class UnknownService(InvalidRequest):
    code = "unknown_service"

    def __init__(self, service_id: str) -> None:
        super().__init__(f"Unknown service: {service_id}")
        self.service_id = service_id


class UnknownPolicy(InvalidRequest):
    code = "unknown_policy"

    def __init__(self, policy_id: str) -> None:
        super().__init__(f"Unknown spending policy: {policy_id}")
        self.policy_id = policy_id


@dataclass(frozen=True)
class EndpointError:
    """One failed attempt against one endpoint or source."""

    endpoint: str
    error: str

    def to_dict(self) -> dict[str, str]:
        return {"endpoint": self.endpoint, "error": self.error}


class AllEndpointsUnavailable(PortionError):
    """Every RPC endpoint in the network's pool failed."""

    code = "all_endpoints_unavailable"

    def __init__(self, network: str, errors: list[EndpointError]) -> None:
        super().__init__(f"All {network} RPC endpoints failed ({len(errors)} errors)")
        self.network = network
        self.errors = list(errors)

    def to_dict(self) -> dict[str, Any]:
        out = super().to_dict()
        out["network"] = self.network
        out["errors"] = [e.to_dict() for e in self.errors]
        return out


class InsufficientYield(PortionError):
    """Requested amount exceeds spendable yield. Principal is never eligible."""

    code = "insufficient_yield"

    def __init__(self, requested: float, available: float) -> None:
        super().__init__(f"Insufficient yield: requested {requested}, spendable {available}")
        self.requested = requested
        self.available = available

    def to_dict(self) -> dict[str, Any]:
        out = super().to_dict()
        out["required"] = self.requested
        out["available"] = self.available
        return out


class FacilitatorError(PortionError):
    """The x402 facilitator rejected or could not process a payload."""

    code = "facilitator_error"

    def __init__(self, stage: str, reason: str, *, transaction_id: str | None = None) -> None:
        super().__init__(f"Facilitator {stage} failed: {reason}")
        self.stage = stage
        self.reason = reason
        self.transaction_id = transaction_id

    def to_dict(self) -> dict[str, Any]:
        out = super().to_dict()
        out["stage"] = self.stage
        if self.transaction_id:
            out["transactionId"] = self.transaction_id
        return out


class VerificationFailed(FacilitatorError):
    code = "verification_failed"

    def __init__(self, reason: str, *, transaction_id: str | None = None) -> None:
        super().__init__("verify", reason, transaction_id=transaction_id)


class SettlementFailed(FacilitatorError):
    code = "settlement_failed"

    def __init__(self, reason: str, *, transaction_id: str | None = None) -> None:
        super().__init__("settle", reason, transaction_id=transaction_id)


class PaymentNotPrepared(PortionError):
    """Execute called without a live prepared payment for this wallet and service."""

    code = "payment_not_prepared"


class UnverifiedSettlementError(RuntimeError):
    """settle() called for a payload/requirements pair without a successful verify()."""


class PolicyDenied(PortionError):
    """A spending policy (daily limit, merchant whitelist, max transaction) blocks the spend."""

    code = "policy_denied"

    def __init__(self, policy_id: str, reason: str) -> None:
        super().__init__(reason)
        self.policy_id = policy_id

    def to_dict(self) -> dict[str, Any]:
        out = super().to_dict()
        out["policy"] = self.policy_id
        return out


class StateStoreError(PortionError):
    """Durable state could not be read or written."""

    code = "storage_unavailable"
