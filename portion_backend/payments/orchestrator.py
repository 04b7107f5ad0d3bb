"""
Payment orchestrator: spend request -> verified, settled, audited payment.

execute_payment(wallet, service_id, amount):
1. validate wallet, service and amount (no network I/O before this passes;
   rejections are audited)
2. under the wallet's lock: spending policies, then a spendable-yield
   snapshot; PolicyDenied or InsufficientYield on failure, otherwise a spend
   hold is recorded so concurrent payments see the committed amount
3. ledger entry in Processing, excluded from timed auto-progression
4. facilitator verify -> Validated, or Failed + VerificationFailed
5. facilitator settle -> Settled, or Failed + SettlementFailed
6. audit event for whichever branch was taken; failed payments release
   their hold

Settlement is only reachable after a successful verify of the same
payload/requirements pair.
"""

from __future__ import annotations

import asyncio
import math
from dataclasses import dataclass
from typing import Any

import structlog

from portion_backend.core.exceptions import (
    AllEndpointsUnavailable,
    FacilitatorError,
    InsufficientYield,
    InvalidRequest,
    PolicyDenied,
    SettlementFailed,
    StateStoreError,
    VerificationFailed,
)
from portion_backend.ledger.audit import AuditStore
from portion_backend.ledger.models import Transaction, TransactionDraft, TransactionStatus
from portion_backend.ledger.spends import SpendRecord
from portion_backend.ledger.transactions import TransactionLedger
from portion_backend.payments.allocations import PreparedPayment, PreparedPayments
from portion_backend.payments.facilitator import FacilitatorClient
from portion_backend.payments.models import (
    SCHEME_EXACT,
    PaymentPayload,
    PaymentRequirements,
    SettlementResult,
)
from portion_backend.payments.policies import SpendingPolicies
from portion_backend.payments.services import ServiceCatalog, ServiceInfo
from portion_backend.portion_logging import get_logger, short_wallet
from portion_backend.solana_rpc.validation import validate_address
from portion_backend.yield_engine.models import YieldSnapshot
from portion_backend.yield_engine.spendable import YieldService

logger = get_logger(__name__)


def format_amount(amount: float, currency: str = "USDV") -> str:
    text = f"{amount:.6f}".rstrip("0").rstrip(".") or "0"
    return f"{text} {currency}"


def validate_amount(amount: Any) -> float:
    if isinstance(amount, bool) or not isinstance(amount, (int, float)):
        raise InvalidRequest("amount must be a number")
    if not math.isfinite(amount) or amount <= 0:
        raise InvalidRequest("amount must be greater than 0")
    return float(amount)


def describe_amount(amount: Any) -> str:
    """Audit text for a possibly malformed amount."""
    if isinstance(amount, (int, float)) and not isinstance(amount, bool) and math.isfinite(amount):
        return format_amount(amount)
    return repr(amount)


@dataclass(frozen=True)
class PaymentOutcome:
    transaction: Transaction
    settlement: SettlementResult
    requirements: PaymentRequirements
    snapshot: YieldSnapshot


@dataclass(frozen=True)
class PreparedQuote:
    payment: PreparedPayment
    requirements: PaymentRequirements
    service: ServiceInfo
    snapshot: YieldSnapshot


class PaymentOrchestrator:
    def __init__(
        self,
        yield_service: YieldService,
        facilitator: FacilitatorClient,
        ledger: TransactionLedger,
        audit: AuditStore,
        catalog: ServiceCatalog,
        prepared: PreparedPayments,
        policies: SpendingPolicies | None = None,
        *,
        network: str,
        treasury_address: str,
        asset_mint: str,
    ) -> None:
        self._yield = yield_service
        self._facilitator = facilitator
        self._ledger = ledger
        self._audit = audit
        self._catalog = catalog
        self._prepared = prepared
        self._policies = policies if policies is not None else SpendingPolicies()
        self._network = network
        self._treasury = treasury_address
        self._asset = asset_mint
        self._wallet_locks: dict[str, asyncio.Lock] = {}

    def build_requirements(self, service: ServiceInfo, amount: float) -> PaymentRequirements:
        return PaymentRequirements.for_service(
            service_id=service.id,
            description=service.description,
            amount=amount,
            network=self._network,
            pay_to=self._treasury,
            asset=self._asset,
        )

    def build_payload(
        self,
        wallet: str,
        requirements: PaymentRequirements,
        *,
        payment_id: str | None = None,
        signature: str | None = None,
    ) -> PaymentPayload:
        authorization: dict[str, Any] = {
            "from": wallet,
            "to": requirements.pay_to,
            "value": requirements.max_amount_required,
            "asset": requirements.asset,
            "resource": requirements.resource,
        }
        if payment_id:
            authorization["paymentId"] = payment_id
        body: dict[str, Any] = {"authorization": authorization}
        if signature:
            body["signature"] = signature
        return PaymentPayload(scheme=SCHEME_EXACT, network=requirements.network, payload=body)

    def _wallet_lock(self, wallet: str) -> asyncio.Lock:
        return self._wallet_locks.setdefault(wallet, asyncio.Lock())

    async def _rejected(self, service_id: Any, amount: str, error: InvalidRequest) -> None:
        logger.info("payment_rejected", error=error.code, detail=error.message)
        await self._audit.log_transaction_rejected(
            str(service_id) if service_id else "", amount, error.message
        )

    async def _check_spend(
        self,
        wallet: str,
        service: ServiceInfo,
        amount: float,
        display: str,
        log: structlog.BoundLogger,
    ) -> YieldSnapshot:
        """Policies, then spendable yield. Caller holds the wallet lock."""
        spent_today = self._yield.spends.spent_today(wallet)
        violation = self._policies.evaluate(service.merchant, amount, spent_today)
        if violation is not None:
            log.info("payment_denied_policy", policy=violation.policy_id)
            await self._audit.log_transaction_denied(
                service.id, display, violation.reason, violation.category
            )
            raise PolicyDenied(violation.policy_id, violation.reason)

        try:
            snapshot = await self._yield.snapshot(wallet)
        except AllEndpointsUnavailable as e:
            log.error("payment_yield_unavailable", error=str(e))
            await self._audit.log_transaction_failed(service.id, display, "yield", e.message)
            raise

        if amount > snapshot.spendable_yield:
            log.info("payment_denied_insufficient_yield", spendable=snapshot.spendable_yield)
            await self._audit.log_transaction_denied(
                service.id,
                display,
                f"requested {amount}, spendable {snapshot.spendable_yield}",
            )
            raise InsufficientYield(amount, snapshot.spendable_yield)
        return snapshot

    async def prepare_payment(self, wallet: str, service_id: str) -> PreparedQuote:
        """Check affordability of a service and reserve its total price."""
        try:
            wallet = validate_address(wallet)
            service = self._catalog.require(service_id)
        except InvalidRequest as e:
            await self._rejected(service_id, "unknown amount", e)
            raise
        total = service.total_price
        log = logger.bind(wallet_id=short_wallet(wallet), service=service.id, amount=total)
        async with self._wallet_lock(wallet):
            snapshot = await self._check_spend(wallet, service, total, format_amount(total), log)
            payment = self._prepared.prepare(wallet, service.id, total)
        return PreparedQuote(
            payment=payment,
            requirements=self.build_requirements(service, total),
            service=service,
            snapshot=snapshot,
        )

    async def execute_payment(self, wallet: str, service_id: str, amount: float) -> Transaction:
        outcome = await self.run_payment(wallet, service_id, amount)
        return outcome.transaction

    async def run_payment(
        self,
        wallet: str,
        service_id: str,
        amount: float,
        *,
        payment_id: str | None = None,
        signature: str | None = None,
    ) -> PaymentOutcome:
        try:
            wallet = validate_address(wallet)
            amount = validate_amount(amount)
            service = self._catalog.require(service_id)
        except InvalidRequest as e:
            await self._rejected(service_id, describe_amount(amount), e)
            raise
        display = format_amount(amount)
        log = logger.bind(wallet_id=short_wallet(wallet), service=service.id, amount=amount)

        async with self._wallet_lock(wallet):
            snapshot = await self._check_spend(wallet, service, amount, display, log)
            hold = await self._yield.spends.record(wallet, service.id, amount)

        try:
            tx = await self._ledger.add_transaction(
                TransactionDraft(
                    service=service.id,
                    amount=display,
                    source=snapshot.primary_source,
                    type=service.type,
                    wallet=wallet,
                ),
                auto_progress=False,
            )
        except StateStoreError:
            await self._release(hold)
            raise
        log = log.bind(tx_id=tx.id)

        requirements = self.build_requirements(service, amount)
        payload = self.build_payload(wallet, requirements, payment_id=payment_id, signature=signature)

        try:
            await self._facilitator.verify(payload, requirements)
        except FacilitatorError as e:
            await self._fail(tx, hold, service.id, display, "verify", e.reason)
            log.error("payment_verification_failed", stage="verify", error=e.reason)
            raise VerificationFailed(e.reason, transaction_id=tx.id) from e
        try:
            await self._ledger.update_transaction_status(tx.id, TransactionStatus.VALIDATED)
        except StateStoreError as e:
            await self._fail(tx, hold, service.id, display, "ledger", e.message)
            raise

        try:
            settlement = await self._facilitator.settle(payload, requirements)
        except FacilitatorError as e:
            await self._fail(tx, hold, service.id, display, "settle", e.reason)
            log.error("payment_settlement_failed", stage="settle", error=e.reason)
            raise SettlementFailed(e.reason, transaction_id=tx.id) from e

        # Settled on-chain: ledger write failures are logged, not raised
        settled = await self._set_status(tx, TransactionStatus.SETTLED)
        await self._audit.log_transaction_approved(service.id, display, settlement.transaction or tx.id)
        log.info("payment_settled", settlement_tx=settlement.transaction)
        return PaymentOutcome(
            # None if the entry was evicted or the write failed
            transaction=settled or tx.with_status(TransactionStatus.SETTLED),
            settlement=settlement,
            requirements=requirements,
            snapshot=snapshot,
        )

    async def _set_status(self, tx: Transaction, status: TransactionStatus) -> Transaction | None:
        try:
            return await self._ledger.update_transaction_status(tx.id, status)
        except StateStoreError as e:
            logger.error("ledger_update_failed", tx_id=tx.id, status=status.value, error=e.message)
            return None

    async def _release(self, hold: SpendRecord) -> None:
        try:
            await self._yield.spends.release(hold.id)
        except StateStoreError as e:
            logger.error("spend_release_failed", hold_id=hold.id, error=e.message)

    async def _fail(
        self,
        tx: Transaction,
        hold: SpendRecord,
        service_id: str,
        display: str,
        stage: str,
        reason: str,
    ) -> None:
        await self._set_status(tx, TransactionStatus.FAILED)
        await self._release(hold)
        try:
            await self._audit.log_transaction_failed(service_id, display, stage, reason)
        except StateStoreError as e:
            logger.error("audit_write_failed", tx_id=tx.id, stage=stage, error=e.message)
