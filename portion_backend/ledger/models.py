"""
Ledger record types: Transaction (payment attempt) and AuditEvent.

The relative ``time`` label is derived from ``timestamp`` whenever a record is
serialized; it is never stored.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum
from typing import Any

from portion_backend.core.timefmt import format_time_ago


class TransactionStatus(str, Enum):
    PROCESSING = "Processing"
    VALIDATED = "Validated"
    SETTLED = "Settled"
    FAILED = "Failed"

    @property
    def is_terminal(self) -> bool:
        return self in (TransactionStatus.SETTLED, TransactionStatus.FAILED)


class TransactionType(str, Enum):
    API = "API"
    SAAS = "SaaS"
    CLOUD = "Cloud"
    CONTENT = "Content"
    OTHER = "Other"


ALLOWED_TRANSITIONS: dict[TransactionStatus, frozenset[TransactionStatus]] = {
    TransactionStatus.PROCESSING: frozenset({TransactionStatus.VALIDATED, TransactionStatus.FAILED}),
    TransactionStatus.VALIDATED: frozenset({TransactionStatus.SETTLED, TransactionStatus.FAILED}),
    TransactionStatus.SETTLED: frozenset(),
    TransactionStatus.FAILED: frozenset(),
}


def can_transition(current: TransactionStatus, target: TransactionStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


@dataclass(frozen=True)
class TransactionDraft:
    """Caller-supplied fields of a new transaction."""

    service: str
    amount: str
    source: str
    type: TransactionType = TransactionType.API
    wallet: str | None = None


@dataclass(frozen=True)
class Transaction:
    id: str
    service: str
    type: TransactionType
    amount: str
    status: TransactionStatus
    source: str
    timestamp: int
    """Creation time, Unix milliseconds."""
    wallet: str | None = None

    def with_status(self, status: TransactionStatus) -> "Transaction":
        return replace(self, status=status)

    def to_dict(self, now_ms: int | None = None) -> dict[str, Any]:
        out = self.to_record()
        out["time"] = format_time_ago(self.timestamp, now_ms)
        return out

    def to_record(self) -> dict[str, Any]:
        """Persisted form (no derived fields)."""
        out: dict[str, Any] = {
            "id": self.id,
            "service": self.service,
            "type": self.type.value,
            "amount": self.amount,
            "status": self.status.value,
            "source": self.source,
            "timestamp": self.timestamp,
        }
        if self.wallet:
            out["wallet"] = self.wallet
        return out

    @classmethod
    def from_record(cls, data: dict[str, Any]) -> "Transaction":
        return cls(
            id=str(data["id"]),
            service=str(data["service"]),
            type=TransactionType(data.get("type", TransactionType.OTHER.value)),
            amount=str(data["amount"]),
            status=TransactionStatus(data["status"]),
            source=str(data.get("source", "")),
            timestamp=int(data["timestamp"]),
            wallet=data.get("wallet"),
        )


class AuditStatus(str, Enum):
    SUCCESS = "success"
    ERROR = "error"
    INFO = "info"


class AuditCategory(str, Enum):
    POLICY = "policy"
    TRANSACTION = "transaction"
    WALLET = "wallet"
    MERCHANT = "merchant"
    SYSTEM = "system"


@dataclass(frozen=True)
class AuditEvent:
    id: str
    action: str
    detail: str
    timestamp: int
    status: AuditStatus
    category: AuditCategory

    def to_dict(self, now_ms: int | None = None) -> dict[str, Any]:
        out = self.to_record()
        out["time"] = format_time_ago(self.timestamp, now_ms)
        return out

    def to_record(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "action": self.action,
            "detail": self.detail,
            "timestamp": self.timestamp,
            "status": self.status.value,
            "category": self.category.value,
        }

    @classmethod
    def from_record(cls, data: dict[str, Any]) -> "AuditEvent":
        return cls(
            id=str(data["id"]),
            action=str(data["action"]),
            detail=str(data.get("detail", "")),
            timestamp=int(data["timestamp"]),
            status=AuditStatus(data["status"]),
            category=AuditCategory(data["category"]),
        )
