"""
Prepared payments: yield reserved between /x402/prepare and /x402/execute.

A prepared payment holds part of a wallet's spendable yield for five minutes.
Execute consumes it exactly once; expired entries are released by
cleanup_expired().
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable

from portion_backend.core.exceptions import PaymentNotPrepared
from portion_backend.portion_logging import get_logger, short_wallet

logger = get_logger(__name__)

PREPARED_TTL_SEC = 300.0


@dataclass(frozen=True)
class PreparedPayment:
    id: str
    wallet: str
    service_id: str
    amount: float
    created_at: float
    expires_at: float

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at

    def to_dict(self) -> dict[str, Any]:
        return {
            "paymentId": self.id,
            "walletAddress": self.wallet,
            "service": self.service_id,
            "amount": self.amount,
            "expiresAt": self.expires_at,
        }


class PreparedPayments:
    def __init__(self, *, ttl_sec: float = PREPARED_TTL_SEC, clock: Callable[[], float] = time.time) -> None:
        self._ttl = ttl_sec
        self._clock = clock
        self._items: dict[str, PreparedPayment] = {}

    def prepare(self, wallet: str, service_id: str, amount: float) -> PreparedPayment:
        now = self._clock()
        payment = PreparedPayment(
            id=f"pay-{int(now * 1000)}-{uuid.uuid4().hex[:8]}",
            wallet=wallet,
            service_id=service_id,
            amount=amount,
            created_at=now,
            expires_at=now + self._ttl,
        )
        self._items[payment.id] = payment
        logger.info(
            "payment_prepared",
            payment_id=payment.id,
            wallet_id=short_wallet(wallet),
            service=service_id,
            amount=amount,
        )
        return payment

    def consume(self, payment_id: str, wallet: str, service_id: str) -> PreparedPayment:
        """Remove and return a live prepared payment matching wallet and service."""
        payment = self._items.get(payment_id or "")
        if payment is None:
            raise PaymentNotPrepared("Payment not prepared. Call /x402/prepare first")
        if payment.is_expired(self._clock()):
            del self._items[payment_id]
            raise PaymentNotPrepared("Payment expired. Prepare a new payment")
        if payment.wallet != wallet or payment.service_id != service_id:
            raise PaymentNotPrepared("Prepared payment does not match wallet and service")
        del self._items[payment_id]
        logger.info("payment_consumed", payment_id=payment_id, service=service_id)
        return payment

    def reserved_for(self, wallet: str) -> float:
        now = self._clock()
        return sum(p.amount for p in self._items.values() if p.wallet == wallet and not p.is_expired(now))

    def cleanup_expired(self) -> int:
        now = self._clock()
        expired = [pid for pid, p in self._items.items() if p.is_expired(now)]
        for pid in expired:
            del self._items[pid]
        if expired:
            logger.info("prepared_payments_expired", count=len(expired))
        return len(expired)

    def __len__(self) -> int:
        return len(self._items)
