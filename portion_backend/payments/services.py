"""
Catalog of pay-per-call services that accept x402 payments.

Prices and platform fees are USD decimal strings, as stored; total cost is
price + fee.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Any

from portion_backend.core.exceptions import UnknownService
from portion_backend.ledger.models import TransactionType


@dataclass(frozen=True)
class ServiceInfo:
    id: str
    name: str
    price: str
    platform_fee: str
    description: str
    category: str
    merchant: str
    """Provider the payment goes to; matched by the merchant whitelist."""
    type: TransactionType = TransactionType.API
    is_active: bool = True

    @property
    def base_price(self) -> float:
        return float(self.price)

    @property
    def fee(self) -> float:
        return float(self.platform_fee)

    @property
    def total_price(self) -> float:
        return float(Decimal(self.price) + Decimal(self.platform_fee))

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "price": self.base_price,
            "platformFee": self.fee,
            "totalPrice": self.total_price,
            "description": self.description,
            "category": self.category,
            "merchant": self.merchant,
            "type": self.type.value,
            "endpoint": f"/x402/execute/{self.id}",
            "x402Enabled": True,
        }


SEED_SERVICES: tuple[ServiceInfo, ...] = (
    ServiceInfo("gpt-4", "GPT-4", "0.030000", "0.005000", "GPT-4 text completion", "text", "OpenAI"),
    ServiceInfo("gpt-4-turbo", "GPT-4 Turbo", "0.010000", "0.002000", "GPT-4 Turbo completion", "text", "OpenAI"),
    ServiceInfo("claude-3", "Claude 3 Sonnet", "0.025000", "0.004000", "Claude 3 Sonnet completion", "text", "Anthropic"),
    ServiceInfo("dall-e-3", "DALL-E 3", "0.040000", "0.008000", "DALL-E 3 image generation", "image", "OpenAI"),
    ServiceInfo("whisper", "Whisper", "0.006000", "0.001000", "Whisper audio transcription", "audio", "OpenAI"),
    ServiceInfo("web-search", "Web Search", "0.000000", "0.000000", "Web search", "search", "Portion"),
    ServiceInfo(
        "solana-agent",
        "Solana Agent",
        "0.000000",
        "0.000000",
        "Solana transactions, purchases, and faucet",
        "agent",
        "Portion",
    ),
)


class ServiceCatalog:
    def __init__(self, services: tuple[ServiceInfo, ...] | list[ServiceInfo] = SEED_SERVICES) -> None:
        self._services = {s.id: s for s in services}

    def get(self, service_id: str) -> ServiceInfo | None:
        service = self._services.get(service_id)
        return service if service is not None and service.is_active else None

    def require(self, service_id: str) -> ServiceInfo:
        service = self.get(service_id)
        if service is None:
            raise UnknownService(service_id)
        return service

    def discover(self, category: str | None = None, max_price: float | None = None) -> list[ServiceInfo]:
        services = [s for s in self._services.values() if s.is_active]
        if category:
            services = [s for s in services if s.category == category]
        if max_price is not None:
            services = [s for s in services if s.base_price <= max_price]
        return services

    def categories(self) -> list[str]:
        return sorted({s.category for s in self._services.values() if s.is_active})

    def pricing_summary(self) -> dict[str, float | int]:
        """Min, max and mean base price across active services."""
        prices = [s.base_price for s in self._services.values() if s.is_active]
        if not prices:
            return {"minPrice": 0.0, "maxPrice": 0.0, "avgPrice": 0.0, "totalServices": 0}
        return {
            "minPrice": min(prices),
            "maxPrice": max(prices),
            "avgPrice": round(sum(prices) / len(prices), 6),
            "totalServices": len(prices),
        }
