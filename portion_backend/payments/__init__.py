"""
x402 payments: service catalog, spending policies, prepared payments,
facilitator client and the orchestrator that drives verify -> settle through the ledger.
"""

from portion_backend.payments.allocations import PreparedPayment, PreparedPayments
from portion_backend.payments.facilitator import FacilitatorClient
from portion_backend.payments.models import (
    PaymentPayload,
    PaymentRequirements,
    SettlementResult,
    VerificationResult,
)
from portion_backend.payments.orchestrator import PaymentOrchestrator, PaymentOutcome
from portion_backend.payments.policies import DEFAULT_POLICIES, SpendingPolicies, SpendingPolicy
from portion_backend.payments.services import SEED_SERVICES, ServiceCatalog, ServiceInfo

__all__ = [
    "DEFAULT_POLICIES",
    "SEED_SERVICES",
    "FacilitatorClient",
    "PaymentOrchestrator",
    "PaymentOutcome",
    "PaymentPayload",
    "PaymentRequirements",
    "PreparedPayment",
    "PreparedPayments",
    "ServiceCatalog",
    "ServiceInfo",
    "SettlementResult",
    "SpendingPolicies",
    "SpendingPolicy",
    "VerificationResult",
]
