"""
FastAPI router for dashboard data: APY, yield, balances, aggregated yields,
health, the transaction ledger, the audit trail and spending policies.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from portion_backend.api_server.dependencies import PortionServices, get_services
from portion_backend.core.exceptions import AllEndpointsUnavailable, InvalidRequest
from portion_backend.ledger.audit import DAY_MS
from portion_backend.ledger.models import AuditCategory, AuditStatus
from portion_backend.portion_logging import get_logger, short_wallet
from portion_backend.solana_rpc.validation import validate_address

logger = get_logger(__name__)

router = APIRouter(tags=["api"])

SERVICE_NAME = "portion-backend"
MIN_WALLET_LENGTH = 32


def _iso_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _malformed_wallet(wallet: str) -> JSONResponse | None:
    if not wallet or len(wallet) < MIN_WALLET_LENGTH:
        return JSONResponse(status_code=400, content={"error": "invalid_address", "detail": "Invalid wallet address"})
    return None


@router.get("/health")
async def health(services: PortionServices = Depends(get_services)) -> dict[str, Any]:
    return {
        "status": "ok",
        "service": SERVICE_NAME,
        "network": services.settings.solana_network,
        "timestamp": _iso_now(),
    }


@router.get("/apy")
async def current_apy(services: PortionServices = Depends(get_services)) -> dict[str, Any]:
    quote = await services.oracle.fetch_current_apy("solomon")
    return quote.to_dict()


@router.get("/yield/{wallet}")
async def wallet_yield(wallet: str, services: PortionServices = Depends(get_services)):
    """Yield info merged with the spendable amount."""
    bad = _malformed_wallet(wallet)
    if bad is not None:
        return bad
    info = await services.yields.get_yield_info(wallet)
    snapshot = await services.yields.snapshot_from_info(info)
    body = info.to_dict()
    body["spendable"] = snapshot.spendable_yield
    body["reserved"] = snapshot.reserved
    body["spent"] = snapshot.spent
    body["accrualModel"] = services.yields.accrual.name
    return body


@router.get("/balances/{wallet}")
async def wallet_balances(wallet: str, services: PortionServices = Depends(get_services)):
    """SOL, USDV, sUSDV and SOLO balances for a wallet."""
    bad = _malformed_wallet(wallet)
    if bad is not None:
        return bad
    network = services.settings.solana_network
    mints = services.settings.token_mints
    try:
        sol, usdv, susdv, solo = await asyncio.gather(
            services.balances.get_balance(wallet, network),
            services.balances.get_token_balance(wallet, mints["USDV"], network),
            services.balances.get_token_balance(wallet, mints["sUSDV"], network),
            services.balances.get_token_balance(wallet, mints["SOLO"], network),
        )
    except AllEndpointsUnavailable as e:
        logger.error("balances_fetch_failed", wallet_id=short_wallet(wallet), network=network, error=str(e))
        return JSONResponse(
            status_code=500,
            content={"error": "Failed to fetch balances", "message": e.message},
        )
    services.balances.watch(wallet, network, mints=(mints["USDV"], mints["sUSDV"], mints["SOLO"]))
    return {
        "wallet": wallet,
        "network": network,
        "balances": {
            "SOL": {"balance": sol.balance, "symbol": "SOL", "formatted": f"{sol.balance:.4f}"},
            "USDV": {"balance": usdv.balance, "symbol": "USDV", "formatted": f"{usdv.balance:.2f}"},
            "sUSDV": {"balance": susdv.balance, "symbol": "sUSDV", "formatted": f"{susdv.balance:.2f}"},
            "SOLO": {"balance": solo.balance, "symbol": "SOLO", "formatted": f"{solo.balance:.2f}"},
        },
        "source": sol.source,
        "timestamp": _iso_now(),
    }


@router.get("/aggregator/yields")
async def aggregated_yields(
    token: str = Query("USDV"),
    services: PortionServices = Depends(get_services),
) -> dict[str, Any]:
    yields = await services.aggregator.get_aggregated_yields(token)
    return {
        "yields": [y.to_dict() for y in yields],
        "token": token.upper(),
        "timestamp": _iso_now(),
    }


@router.get("/transactions")
async def list_transactions(
    wallet: str | None = Query(None),
    services: PortionServices = Depends(get_services),
) -> dict[str, Any]:
    items = services.ledger.list_transactions(wallet)
    return {"transactions": [t.to_dict() for t in items], "count": len(items)}


@router.delete("/transactions")
async def clear_transactions(services: PortionServices = Depends(get_services)) -> dict[str, Any]:
    cleared = await services.ledger.clear()
    return {"cleared": cleared}


@router.get("/audit")
async def list_audit(
    category: str | None = Query(None),
    services: PortionServices = Depends(get_services),
) -> dict[str, Any]:
    events = services.audit.list_events(category)
    return {"events": [e.to_dict() for e in events], "count": len(events)}


@router.post("/audit/prune")
async def prune_audit(
    max_events: int = Query(500, alias="maxEvents", ge=0),
    retention_days: float = Query(30, alias="retentionDays", ge=0),
    services: PortionServices = Depends(get_services),
) -> dict[str, Any]:
    removed = await services.audit.prune_events(max_events, int(retention_days * DAY_MS))
    return {"removed": removed, "remaining": len(services.audit)}


class PolicyUpdate(BaseModel):
    """PATCH /api/policies/{policy_id} body."""

    enabled: bool | None = Field(None, description="Turn the policy on or off")
    value: float | list[str] | None = Field(None, description="New limit, or the merchant whitelist")


@router.get("/policies")
async def list_policies(
    wallet: str | None = Query(None),
    services: PortionServices = Depends(get_services),
) -> dict[str, Any]:
    """Spending policies, plus today's usage when a wallet is given."""
    body: dict[str, Any] = {"policies": [p.to_dict() for p in services.policies.list_policies()]}
    if wallet:
        wallet = validate_address(wallet)
        spent = services.spends.spent_today(wallet)
        limit = services.policies.daily_limit
        body["dailySpent"] = spent
        body["dailyLimit"] = limit
        body["dailyRemaining"] = max(0.0, limit - spent) if limit is not None else None
    return body


@router.patch("/policies/{policy_id}")
async def update_policy(
    policy_id: str,
    body: PolicyUpdate,
    services: PortionServices = Depends(get_services),
) -> dict[str, Any]:
    if body.enabled is None and body.value is None:
        raise InvalidRequest("Nothing to update: pass enabled and/or value")
    policy = await services.policies.update_policy(policy_id, enabled=body.enabled, value=body.value)
    state = "enabled" if policy.enabled else "disabled"
    await services.audit.add_event(
        "Policy Updated",
        f"{policy.name} {state}",
        AuditStatus.INFO,
        AuditCategory.POLICY,
    )
    return policy.to_dict()
