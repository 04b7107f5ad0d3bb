"""
Pytest tests for PaymentOrchestrator.

The services fixture wires every component against FakeNetwork with a fixed
10.0 spendable yield per wallet and no ledger auto-progression. Settled and
in-flight payments draw that budget down through spend holds.
"""

from __future__ import annotations

import asyncio
import dataclasses
import math

import httpx
import pytest

from conftest import WALLET, FailingStore
from portion_backend.core.exceptions import (
    AllEndpointsUnavailable,
    InsufficientYield,
    InvalidAddress,
    InvalidRequest,
    PaymentNotPrepared,
    PolicyDenied,
    SettlementFailed,
    StateStoreError,
    UnknownService,
    VerificationFailed,
)
from portion_backend.ledger import AuditCategory, AuditStatus, TransactionStatus
from portion_backend.ledger.transactions import TRANSACTIONS_KEY
from portion_backend.payments.orchestrator import describe_amount, format_amount, validate_amount
from portion_backend.yield_engine.spendable import EarnedAccrual


@pytest.fixture
def orchestrator(services):
    return services.orchestrator


def test_format_amount():
    assert format_amount(5.0) == "5 USDV"
    assert format_amount(0.035) == "0.035 USDV"
    assert format_amount(1.25, "USDC") == "1.25 USDC"
    assert format_amount(0) == "0 USDV"


def test_validate_amount():
    assert validate_amount(3) == 3.0
    for bad in (0, -1, True, "5", None, math.nan, math.inf):
        with pytest.raises(InvalidRequest):
            validate_amount(bad)


def test_describe_amount():
    assert describe_amount(2) == "2 USDV"
    assert describe_amount("5") == "'5'"
    assert describe_amount(math.nan) == "nan"


# --- execute_payment ---


@pytest.mark.asyncio
async def test_payment_within_yield_settles(orchestrator, services, net):
    """5.0 of 10.0 spendable: verify, settle, ledger Settled, audit success."""
    tx = await orchestrator.execute_payment(WALLET, "gpt-4", 5.0)
    assert tx.status == TransactionStatus.SETTLED
    assert tx.amount == "5 USDV"
    assert tx.wallet == WALLET
    assert tx.source == "Solomon Labs sUSDV Staking"
    assert services.ledger.get(tx.id).status == TransactionStatus.SETTLED

    verify_body = net.facilitator_bodies("verify")[0]
    req = verify_body["paymentRequirements"]
    assert req["maxAmountRequired"] == "5000000"
    assert req["network"] == "solana:devnet"
    assert req["resource"] == "/x402/execute/gpt-4"
    assert verify_body["paymentPayload"]["payload"]["authorization"]["from"] == WALLET
    assert len(net.facilitator_bodies("settle")) == 1

    events = services.audit.list_events()
    assert events[0].action == "Transaction Approved"
    assert events[0].status == AuditStatus.SUCCESS
    assert "5xSettledSig" in events[0].detail


@pytest.mark.asyncio
async def test_run_payment_returns_outcome(orchestrator):
    outcome = await orchestrator.run_payment(WALLET, "claude-3", 0.029, payment_id="pay-1", signature="sig")
    assert outcome.settlement.transaction == "5xSettledSig"
    assert outcome.snapshot.spendable_yield == 10.0
    assert outcome.requirements.max_amount_required == "29000"


@pytest.mark.asyncio
async def test_payload_carries_payment_id_and_signature(orchestrator, net):
    await orchestrator.run_payment(WALLET, "whisper", 0.007, payment_id="pay-42", signature="SigXYZ")
    payload = net.facilitator_bodies("verify")[0]["paymentPayload"]["payload"]
    assert payload["authorization"]["paymentId"] == "pay-42"
    assert payload["signature"] == "SigXYZ"


@pytest.mark.asyncio
async def test_insufficient_yield_no_ledger_entry(orchestrator, services, net):
    """50.0 against 10.0 spendable is denied before any ledger entry or facilitator call."""
    with pytest.raises(InsufficientYield) as exc:
        await orchestrator.execute_payment(WALLET, "gpt-4", 50.0)
    assert exc.value.requested == 50.0
    assert exc.value.available == 10.0
    assert services.ledger.list_transactions() == []
    assert net.count("facilitator.test") == 0
    denied = services.audit.list_events(AuditCategory.POLICY)
    assert len(denied) == 1
    assert denied[0].action == "Transaction Denied"


@pytest.mark.asyncio
async def test_exact_spendable_allowed(orchestrator):
    tx = await orchestrator.execute_payment(WALLET, "gpt-4", 10.0)
    assert tx.status == TransactionStatus.SETTLED


@pytest.mark.asyncio
async def test_verification_failure_marks_failed(orchestrator, services, net):
    net.verify = {"isValid": False, "invalidReason": "invalid_signature"}
    with pytest.raises(VerificationFailed) as exc:
        await orchestrator.execute_payment(WALLET, "gpt-4", 1.0)
    tx = services.ledger.get(exc.value.transaction_id)
    assert tx.status == TransactionStatus.FAILED
    assert net.facilitator_bodies("settle") == []
    event = services.audit.list_events()[0]
    assert event.action == "Transaction Failed"
    assert "verify" in event.detail


@pytest.mark.asyncio
async def test_settlement_failure_marks_failed(orchestrator, services, net):
    net.settle = httpx.ReadTimeout
    with pytest.raises(SettlementFailed) as exc:
        await orchestrator.execute_payment(WALLET, "gpt-4", 1.0)
    assert exc.value.to_dict()["transactionId"] == exc.value.transaction_id
    assert services.ledger.get(exc.value.transaction_id).status == TransactionStatus.FAILED
    assert "settle" in services.audit.list_events()[0].detail


@pytest.mark.asyncio
async def test_invalid_input_rejected_before_io(orchestrator, services, net):
    """Malformed requests never reach the network or the ledger, but are audited."""
    with pytest.raises(InvalidAddress):
        await orchestrator.execute_payment("0xabc", "gpt-4", 1.0)
    with pytest.raises(InvalidRequest):
        await orchestrator.execute_payment(WALLET, "gpt-4", 0)
    with pytest.raises(UnknownService):
        await orchestrator.execute_payment(WALLET, "no-such-service", 1.0)
    assert net.requests == []
    assert services.ledger.list_transactions() == []
    rejected = services.audit.list_events(AuditCategory.POLICY)
    assert [e.action for e in rejected] == ["Transaction Rejected"] * 3
    assert all(e.status == AuditStatus.ERROR for e in rejected)
    assert "no-such-service" in rejected[0].detail
    assert "0 USDV" in rejected[1].detail


# --- prepare_payment ---


@pytest.mark.asyncio
async def test_prepare_reserves_yield(orchestrator, services):
    quote = await orchestrator.prepare_payment(WALLET, "dall-e-3")
    assert quote.payment.amount == pytest.approx(0.048)
    assert quote.requirements.max_amount_required == "48000"
    assert services.prepared.reserved_for(WALLET) == pytest.approx(0.048)
    snap = await services.yields.snapshot(WALLET)
    assert snap.spendable_yield == pytest.approx(10.0 - 0.048)

    consumed = services.prepared.consume(quote.payment.id, WALLET, "dall-e-3")
    assert consumed == quote.payment
    with pytest.raises(PaymentNotPrepared):
        services.prepared.consume(quote.payment.id, WALLET, "dall-e-3")


@pytest.mark.asyncio
async def test_prepare_denied_when_unaffordable(settings, memory_store, net):
    from portion_backend.api_server.dependencies import build_services
    from portion_backend.yield_engine.spendable import FixedAccrual

    poor = build_services(settings, store=memory_store, transport=net.transport, accrual=FixedAccrual(0.01))
    with pytest.raises(InsufficientYield):
        await poor.orchestrator.prepare_payment(WALLET, "gpt-4")
    assert len(poor.prepared) == 0
    assert poor.audit.list_events(AuditCategory.POLICY)[0].action == "Transaction Denied"


# --- spend holds ---


@pytest.mark.asyncio
async def test_repeated_payments_share_one_budget(orchestrator, services):
    """Each settled payment is netted out of the next snapshot."""
    await orchestrator.execute_payment(WALLET, "gpt-4", 6.0)
    with pytest.raises(InsufficientYield) as exc:
        await orchestrator.execute_payment(WALLET, "gpt-4", 6.0)
    assert exc.value.available == pytest.approx(4.0)
    assert services.spends.spent_today(WALLET) == pytest.approx(6.0)
    tx = await orchestrator.execute_payment(WALLET, "gpt-4", 4.0)
    assert tx.status == TransactionStatus.SETTLED


@pytest.mark.asyncio
async def test_concurrent_payments_cannot_overdraw(orchestrator, services, net):
    """Three 4.0 payments against 10.0 in flight together: exactly two settle."""
    net.facilitator_delay_sec = 0.05
    results = await asyncio.gather(
        *(orchestrator.execute_payment(WALLET, "gpt-4", 4.0) for _ in range(3)),
        return_exceptions=True,
    )
    settled = [r for r in results if not isinstance(r, Exception)]
    denied = [r for r in results if isinstance(r, InsufficientYield)]
    assert len(settled) == 2
    assert len(denied) == 1
    assert services.spends.spent_today(WALLET) == pytest.approx(8.0)
    assert len(net.facilitator_bodies("settle")) == 2


@pytest.mark.asyncio
async def test_failed_payment_releases_hold(orchestrator, services, net):
    net.verify = {"isValid": False, "invalidReason": "invalid_signature"}
    with pytest.raises(VerificationFailed):
        await orchestrator.execute_payment(WALLET, "gpt-4", 6.0)
    assert services.spends.spent_today(WALLET) == 0.0

    net.verify = {"isValid": True, "payer": WALLET}
    tx = await orchestrator.execute_payment(WALLET, "gpt-4", 10.0)
    assert tx.status == TransactionStatus.SETTLED


# --- ledger progression ---


@pytest.mark.asyncio
async def test_auto_progress_never_overrides_facilitator(settings, memory_store, net):
    """Timed progression is off for orchestrated entries; a slow rejected verify ends Failed."""
    from portion_backend.api_server.dependencies import build_services
    from portion_backend.yield_engine.spendable import FixedAccrual

    fast = dataclasses.replace(
        settings,
        ledger_auto_progress=True,
        ledger_validate_delay_sec=0.05,
        ledger_settle_delay_sec=0.1,
    )
    svc = build_services(fast, store=memory_store, transport=net.transport, accrual=FixedAccrual(10.0))
    net.verify = {"isValid": False, "invalidReason": "insufficient_funds"}
    net.facilitator_delay_sec = 0.5

    task = asyncio.create_task(svc.orchestrator.execute_payment(WALLET, "gpt-4", 1.0))
    await asyncio.sleep(0.3)
    [in_flight] = svc.ledger.list_transactions()
    assert in_flight.status == TransactionStatus.PROCESSING

    with pytest.raises(VerificationFailed):
        await task
    await asyncio.sleep(0.15)
    assert svc.ledger.get(in_flight.id).status == TransactionStatus.FAILED
    await svc.ledger.aclose()


# --- spending policies ---


@pytest.mark.asyncio
async def test_merchant_whitelist_denies(orchestrator, services, net):
    await services.policies.update_policy("merchant_whitelist", value=["Anthropic"])
    with pytest.raises(PolicyDenied) as exc:
        await orchestrator.execute_payment(WALLET, "gpt-4", 1.0)
    assert exc.value.policy_id == "merchant_whitelist"
    assert services.ledger.list_transactions() == []
    assert net.count("facilitator.test") == 0
    [event] = services.audit.list_events(AuditCategory.MERCHANT)
    assert event.action == "Transaction Denied"
    assert "OpenAI" in event.detail

    tx = await orchestrator.execute_payment(WALLET, "claude-3", 1.0)
    assert tx.status == TransactionStatus.SETTLED


@pytest.mark.asyncio
async def test_daily_limit_counts_settled_spend(orchestrator, services):
    await services.policies.update_policy("daily_limit", value=5.0)
    await orchestrator.execute_payment(WALLET, "gpt-4", 3.0)
    with pytest.raises(PolicyDenied) as exc:
        await orchestrator.execute_payment(WALLET, "gpt-4", 3.0)
    assert exc.value.policy_id == "daily_limit"
    assert exc.value.to_dict()["policy"] == "daily_limit"
    assert services.audit.list_events(AuditCategory.POLICY)[0].action == "Transaction Denied"


@pytest.mark.asyncio
async def test_max_transaction_applies_when_enabled(orchestrator, services):
    await services.policies.update_policy("max_transaction", enabled=True, value=2.0)
    with pytest.raises(PolicyDenied) as exc:
        await orchestrator.execute_payment(WALLET, "gpt-4", 3.0)
    assert exc.value.policy_id == "max_transaction"
    assert services.ledger.list_transactions() == []
    tx = await orchestrator.execute_payment(WALLET, "gpt-4", 2.0)
    assert tx.status == TransactionStatus.SETTLED


# --- degraded dependencies ---


@pytest.mark.asyncio
async def test_unreadable_position_is_not_zero_yield(settings, memory_store, net):
    """An RPC outage fails the payment with 503 semantics instead of denying it as unaffordable."""
    from portion_backend.api_server.dependencies import build_services

    svc = build_services(settings, store=memory_store, transport=net.transport, accrual=EarnedAccrual())
    net.fail_all_rpc = True
    with pytest.raises(AllEndpointsUnavailable):
        await svc.orchestrator.execute_payment(WALLET, "gpt-4", 1.0)
    assert svc.ledger.list_transactions() == []
    assert svc.spends.spent_today(WALLET) == 0.0
    [event] = svc.audit.list_events()
    assert event.action == "Transaction Failed"
    assert "failed at yield" in event.detail


@pytest.mark.asyncio
async def test_ledger_write_failure_releases_hold(settings, net):
    """A ledger entry that cannot be persisted aborts the payment before the facilitator."""
    from portion_backend.api_server.dependencies import build_services
    from portion_backend.yield_engine.spendable import FixedAccrual

    store = FailingStore(fail_keys={TRANSACTIONS_KEY})
    svc = build_services(settings, store=store, transport=net.transport, accrual=FixedAccrual(10.0))
    with pytest.raises(StateStoreError):
        await svc.orchestrator.execute_payment(WALLET, "gpt-4", 1.0)
    assert svc.ledger.list_transactions() == []
    assert svc.spends.spent_today(WALLET) == 0.0
    assert net.count("facilitator.test") == 0


@pytest.mark.asyncio
async def test_failure_status_write_error_keeps_facilitator_error(orchestrator, services, net, monkeypatch):
    async def broken_update(tx_id, status):
        raise StateStoreError("State store unavailable: OperationalError")

    monkeypatch.setattr(services.ledger, "update_transaction_status", broken_update)
    net.verify = {"isValid": False, "invalidReason": "invalid_signature"}
    with pytest.raises(VerificationFailed):
        await orchestrator.execute_payment(WALLET, "gpt-4", 1.0)
    assert services.audit.list_events()[0].action == "Transaction Failed"
    assert services.spends.spent_today(WALLET) == 0.0
