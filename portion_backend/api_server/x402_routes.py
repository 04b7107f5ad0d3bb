"""
FastAPI router for the x402 payment flow.

GET  /x402/services           service discovery
GET  /x402/service/{id}       one service (404 if unknown)
GET  /x402/discover/categories active service categories
GET  /x402/discover/pricing    min, max and mean service price
GET  /x402/yield/{wallet}     spendable yield (?demo=1 for the demo amount)
POST /x402/prepare            affordability check + reservation, answers 402
POST /x402/execute/{service}  consume reservation, verify + settle, receipt
GET  /x402/history/{wallet}   ledger entries for a wallet
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, Depends, Header, HTTPException, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from portion_backend.api_server.dependencies import PortionServices, get_services
from portion_backend.core.exceptions import InvalidRequest
from portion_backend.payments.models import X402_VERSION
from portion_backend.portion_logging import get_logger
from portion_backend.solana_rpc.validation import validate_address

logger = get_logger(__name__)

router = APIRouter(tags=["x402"])


class PrepareRequest(BaseModel):
    """POST /x402/prepare body."""

    service: str | None = Field(None, description="Service id from /x402/services")
    walletAddress: str | None = Field(None, description="Payer wallet (base58)")


class ExecuteRequest(BaseModel):
    """POST /x402/execute/{serviceId} body."""

    input: str | None = Field(None, description="Service input (not forwarded; receipt only)")
    paymentId: str | None = Field(None, description="Id returned by /x402/prepare")
    walletAddress: str | None = Field(None, description="Payer wallet (base58)")


def _iso_now() -> str:
    return datetime.now(timezone.utc).isoformat()


@router.get("/services")
async def list_services(
    category: str | None = Query(None),
    max_price: float | None = Query(None, alias="maxPrice"),
    services: PortionServices = Depends(get_services),
) -> dict[str, Any]:
    found = services.catalog.discover(category=category, max_price=max_price)
    return {
        "version": X402_VERSION,
        "network": services.settings.solana_network,
        "paymentMethod": "x402",
        "acceptedTokens": ["sUSDV-yield"],
        "services": [s.to_dict() for s in found],
        "total": len(found),
        "filters": {"category": category, "maxPrice": max_price},
    }


@router.get("/service/{service_id}")
async def get_service(service_id: str, services: PortionServices = Depends(get_services)) -> dict[str, Any]:
    service = services.catalog.get(service_id)
    if service is None:
        raise HTTPException(status_code=404, detail="Service not found")
    return service.to_dict()


@router.get("/discover/categories")
async def service_categories(services: PortionServices = Depends(get_services)) -> dict[str, Any]:
    categories = services.catalog.categories()
    return {"categories": categories, "total": len(categories)}


@router.get("/discover/pricing")
async def pricing_summary(services: PortionServices = Depends(get_services)) -> dict[str, Any]:
    return services.catalog.pricing_summary()


@router.get("/yield/{wallet}")
async def spendable_yield(
    wallet: str,
    demo: bool = Query(False),
    services: PortionServices = Depends(get_services),
) -> dict[str, Any]:
    wallet = validate_address(wallet)
    accrual = services.demo_accrual if demo else None
    snapshot = await services.yields.snapshot(wallet, accrual=accrual)
    return {
        "wallet": wallet,
        "spendableYield": snapshot.spendable_yield,
        "reserved": snapshot.reserved,
        "spent": snapshot.spent,
        "sourceBreakdown": [s.to_dict() for s in snapshot.source_breakdown],
        "currency": "USD",
        "source": "sUSDV appreciation",
        "demo": demo,
        "network": services.settings.solana_network,
        "timestamp": _iso_now(),
    }


@router.post("/prepare")
async def prepare_payment(body: PrepareRequest, services: PortionServices = Depends(get_services)):
    if not body.service or not body.walletAddress:
        raise InvalidRequest("Missing required fields: service, walletAddress")
    services.prepared.cleanup_expired()
    quote = await services.orchestrator.prepare_payment(body.walletAddress, body.service)
    service = quote.service
    total = quote.payment.amount
    return JSONResponse(
        status_code=402,
        content={
            "status": 402,
            "message": "Payment Required",
            "paymentId": quote.payment.id,
            "paymentMethod": "yield",
            "expiresAt": quote.payment.expires_at,
            "requirements": quote.requirements.to_dict(),
            "service": {"id": service.id, "price": service.base_price, "platformFee": service.fee},
            "yield": {
                "available": quote.snapshot.spendable_yield,
                "required": total,
                "remaining": quote.snapshot.spendable_yield - total,
            },
            "instructions": "Sign the payment authorization and call /x402/execute/:service with paymentId",
        },
    )


@router.post("/execute/{service_id}")
async def execute_service(
    service_id: str,
    body: ExecuteRequest,
    x_payment: str | None = Header(None),
    services: PortionServices = Depends(get_services),
) -> dict[str, Any]:
    """Consume a prepared payment, run it through verify and settle, return a receipt."""
    if not body.paymentId or not body.walletAddress:
        raise InvalidRequest("Missing required fields: paymentId, walletAddress")
    wallet = validate_address(body.walletAddress)
    service = services.catalog.require(service_id)
    payment = services.prepared.consume(body.paymentId, wallet, service.id)

    network = services.settings.solana_network
    receipt: dict[str, Any] = {
        "id": payment.id,
        "amount": payment.amount,
        "base": service.base_price,
        "fee": service.fee,
        "currency": "USD (from sUSDV yield)",
        "timestamp": _iso_now(),
        "network": network,
    }
    transaction = None
    if payment.amount > 0:
        outcome = await services.orchestrator.run_payment(
            wallet,
            service.id,
            payment.amount,
            payment_id=payment.id,
            signature=x_payment,
        )
        transaction = outcome.transaction.to_dict()
        receipt["settlement"] = outcome.settlement.transaction
    else:
        logger.info("execute_free_service", service=service.id, payment_id=payment.id)

    return {
        "success": True,
        "version": X402_VERSION,
        "paymentId": payment.id,
        "service": service.id,
        "cost": payment.amount,
        "paymentMethod": "yield",
        "transaction": transaction,
        "receipt": receipt,
        "result": {"status": "accepted", "service": service.id, "inputLength": len(body.input or "")},
    }


@router.get("/history/{wallet}")
async def payment_history(wallet: str, services: PortionServices = Depends(get_services)) -> dict[str, Any]:
    wallet = validate_address(wallet)
    items = services.ledger.list_transactions(wallet)
    return {"wallet": wallet, "payments": [t.to_dict() for t in items], "count": len(items)}
