"""
Service container for the API: one instance of each component per app.

build_services() wires the resolver, balance cache, yield engine, ledger,
spend holds, audit store, spending policies and payments from Settings. Routes reach it through get_services().
"""

from __future__ import annotations

from dataclasses import dataclass

import httpx
from fastapi import Request

from portion_backend.config.settings import Settings
from portion_backend.ledger.audit import AuditStore
from portion_backend.ledger.spends import SpendLedger
from portion_backend.ledger.storage import SqlAlchemyStateStore, StateStore
from portion_backend.ledger.transactions import TransactionLedger
from portion_backend.payments.allocations import PreparedPayments
from portion_backend.payments.facilitator import FacilitatorClient
from portion_backend.payments.orchestrator import PaymentOrchestrator
from portion_backend.payments.policies import SpendingPolicies
from portion_backend.payments.services import ServiceCatalog
from portion_backend.solana_rpc.cached import CachedBalanceResolver
from portion_backend.solana_rpc.resolver import BalanceResolver
from portion_backend.yield_engine.aggregator import YieldAggregator
from portion_backend.yield_engine.apy_oracle import ApyOracle
from portion_backend.yield_engine.sources import default_sources
from portion_backend.yield_engine.spendable import (
    AccrualModel,
    FixedAccrual,
    YieldService,
    accrual_from_name,
)


@dataclass
class PortionServices:
    settings: Settings
    balances: CachedBalanceResolver
    oracle: ApyOracle
    aggregator: YieldAggregator
    yields: YieldService
    ledger: TransactionLedger
    spends: SpendLedger
    audit: AuditStore
    policies: SpendingPolicies
    catalog: ServiceCatalog
    prepared: PreparedPayments
    facilitator: FacilitatorClient
    orchestrator: PaymentOrchestrator

    @property
    def demo_accrual(self) -> FixedAccrual:
        return FixedAccrual(self.settings.demo_spendable_yield)


def build_services(
    settings: Settings,
    *,
    store: StateStore | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
    accrual: AccrualModel | None = None,
) -> PortionServices:
    """
    Wire all components.

    store defaults to a SqlAlchemyStateStore on settings.database_url; tests
    pass a MemoryStateStore, an httpx.MockTransport and a FixedAccrual.
    """
    if store is None:
        store = SqlAlchemyStateStore(settings.database_url)

    resolver = BalanceResolver(
        settings.rpc_pools, timeout_sec=settings.rpc_timeout_sec, transport=transport
    )
    oracle = ApyOracle(
        primary_url=settings.solomon_apy_url,
        secondary_url=settings.defillama_pools_url,
        default_apy=settings.default_apy,
        transport=transport,
    )
    aggregator = YieldAggregator(
        default_sources(oracle, settings.token_mints["SOLO"]), transport=transport
    )
    balances = CachedBalanceResolver(resolver, max_attempts=settings.balance_max_attempts)
    prepared = PreparedPayments()
    spends = SpendLedger(store)
    yields = YieldService(
        balances,
        oracle,
        settings.token_mints,
        network=settings.solana_network,
        spends=spends,
        aggregator=aggregator,
        accrual=accrual
        or accrual_from_name(
            settings.yield_accrual_model, window_days=settings.yield_accrual_window_days
        ),
        reserved_for=prepared.reserved_for,
    )
    ledger = TransactionLedger(
        store,
        auto_progress=settings.ledger_auto_progress,
        validate_delay_sec=settings.ledger_validate_delay_sec,
        settle_delay_sec=settings.ledger_settle_delay_sec,
    )
    audit = AuditStore(store)
    policies = SpendingPolicies(store)
    catalog = ServiceCatalog()
    facilitator = FacilitatorClient(
        settings.facilitator_url, timeout_sec=settings.facilitator_timeout_sec, transport=transport
    )
    orchestrator = PaymentOrchestrator(
        yields,
        facilitator,
        ledger,
        audit,
        catalog,
        prepared,
        policies,
        network=settings.solana_network,
        treasury_address=settings.treasury_address,
        asset_mint=settings.token_mints["USDV"],
    )
    return PortionServices(
        settings=settings,
        balances=balances,
        oracle=oracle,
        aggregator=aggregator,
        yields=yields,
        ledger=ledger,
        spends=spends,
        audit=audit,
        policies=policies,
        catalog=catalog,
        prepared=prepared,
        facilitator=facilitator,
        orchestrator=orchestrator,
    )


def get_services(request: Request) -> PortionServices:
    """FastAPI dependency: the app-scoped service container."""
    return request.app.state.services
