"""
x402 facilitator client: verify, then settle.

POST {facilitator}/verify and {facilitator}/settle with
{x402Version, paymentPayload, paymentRequirements}. Rejections and transport
errors are logged and raised as VerificationFailed / SettlementFailed; nothing
is retried here.

settle() only accepts a payload/requirements pair that passed verify() on this
client, and each verified pair can be settled at most once.
"""

from __future__ import annotations

import hashlib
import json
from typing import Any

import httpx

from portion_backend.core.exceptions import (
    SettlementFailed,
    UnverifiedSettlementError,
    VerificationFailed,
)
from portion_backend.payments.models import (
    X402_VERSION,
    PaymentPayload,
    PaymentRequirements,
    SettlementResult,
    VerificationResult,
)
from portion_backend.portion_logging import get_logger

logger = get_logger(__name__)

DEFAULT_FACILITATOR_URL = "https://x402.org/facilitator"


def fingerprint(payload: PaymentPayload, requirements: PaymentRequirements) -> str:
    blob = json.dumps(
        {"payload": payload.to_dict(), "requirements": requirements.to_dict()},
        sort_keys=True,
        separators=(",", ":"),
    )
    return hashlib.sha256(blob.encode()).hexdigest()


class FacilitatorClient:
    def __init__(
        self,
        url: str = DEFAULT_FACILITATOR_URL,
        *,
        timeout_sec: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._url = url.rstrip("/")
        self._timeout = timeout_sec
        self._transport = transport
        self._verified: set[str] = set()

    @property
    def url(self) -> str:
        return self._url

    def is_verified(self, payload: PaymentPayload, requirements: PaymentRequirements) -> bool:
        return fingerprint(payload, requirements) in self._verified

    async def verify(self, payload: PaymentPayload, requirements: PaymentRequirements) -> VerificationResult:
        try:
            data = await self._post("verify", payload, requirements)
        except (httpx.HTTPError, ValueError) as e:
            logger.error("facilitator_verify_error", facilitator=self._url, error=str(e) or type(e).__name__)
            raise VerificationFailed(str(e) or type(e).__name__) from e
        result = VerificationResult.from_response(data)
        if not result.is_valid:
            reason = result.invalid_reason or "invalid payment"
            logger.warning("facilitator_verify_rejected", facilitator=self._url, reason=reason)
            raise VerificationFailed(reason)
        self._verified.add(fingerprint(payload, requirements))
        logger.info("facilitator_verified", resource=requirements.resource, payer=result.payer)
        return result

    async def settle(self, payload: PaymentPayload, requirements: PaymentRequirements) -> SettlementResult:
        key = fingerprint(payload, requirements)
        if key not in self._verified:
            raise UnverifiedSettlementError(
                f"settle called without a successful verify for {requirements.resource}"
            )
        self._verified.discard(key)
        try:
            data = await self._post("settle", payload, requirements)
        except (httpx.HTTPError, ValueError) as e:
            logger.error("facilitator_settle_error", facilitator=self._url, error=str(e) or type(e).__name__)
            raise SettlementFailed(str(e) or type(e).__name__) from e
        result = SettlementResult.from_response(data)
        if not result.success:
            reason = result.error_reason or "settlement rejected"
            logger.warning("facilitator_settle_rejected", facilitator=self._url, reason=reason)
            raise SettlementFailed(reason)
        logger.info("facilitator_settled", resource=requirements.resource, transaction=result.transaction)
        return result

    async def _post(
        self, action: str, payload: PaymentPayload, requirements: PaymentRequirements
    ) -> dict[str, Any]:
        body = {
            "x402Version": X402_VERSION,
            "paymentPayload": payload.to_dict(),
            "paymentRequirements": requirements.to_dict(),
        }
        async with httpx.AsyncClient(
            timeout=httpx.Timeout(self._timeout), transport=self._transport
        ) as client:
            resp = await client.post(f"{self._url}/{action}", json=body)
            resp.raise_for_status()
            data = resp.json()
        if not isinstance(data, dict):
            raise ValueError(f"unexpected {action} response type {type(data).__name__}")
        return data
