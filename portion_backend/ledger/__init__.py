"""
Transaction ledger, audit trail, spend holds and their durable storage.
"""

from portion_backend.ledger.audit import AUDIT_KEY, AuditStore
from portion_backend.ledger.models import (
    AuditCategory,
    AuditEvent,
    AuditStatus,
    Transaction,
    TransactionDraft,
    TransactionStatus,
    TransactionType,
)
from portion_backend.ledger.spends import SPENDS_KEY, SpendLedger, SpendRecord
from portion_backend.ledger.storage import MemoryStateStore, SqlAlchemyStateStore, StateStore
from portion_backend.ledger.transactions import TRANSACTIONS_KEY, TransactionLedger

__all__ = [
    "AUDIT_KEY",
    "SPENDS_KEY",
    "TRANSACTIONS_KEY",
    "AuditCategory",
    "AuditEvent",
    "AuditStatus",
    "AuditStore",
    "MemoryStateStore",
    "SpendLedger",
    "SpendRecord",
    "SqlAlchemyStateStore",
    "StateStore",
    "Transaction",
    "TransactionDraft",
    "TransactionLedger",
    "TransactionStatus",
    "TransactionType",
]
