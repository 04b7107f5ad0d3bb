"""
Audit store: append-only trail of policy and transaction events.

Pruning is explicit (prune_events); inserts never prune. Each change is
persisted before it becomes visible.
"""

from __future__ import annotations

import asyncio
import uuid
from typing import Callable

from portion_backend.core.exceptions import InvalidRequest
from portion_backend.core.timefmt import now_ms
from portion_backend.ledger.models import AuditCategory, AuditEvent, AuditStatus
from portion_backend.ledger.storage import MemoryStateStore, StateStore
from portion_backend.portion_logging import get_logger

logger = get_logger(__name__)

AUDIT_KEY = "portion_audit_trail_v1"
DAY_MS = 24 * 60 * 60 * 1000
DEFAULT_MAX_EVENTS = 500
DEFAULT_RETENTION_MS = 30 * DAY_MS


def prune(events: list[AuditEvent], max_events: int, retention_ms: int, now: int) -> list[AuditEvent]:
    """Drop events older than retention_ms, then keep the newest max_events."""
    cutoff = now - retention_ms
    kept = [e for e in events if e.timestamp > cutoff]
    kept.sort(key=lambda e: e.timestamp, reverse=True)
    return kept[: max(0, max_events)]


class AuditStore:
    def __init__(
        self,
        store: StateStore | None = None,
        *,
        key: str = AUDIT_KEY,
        clock_ms: Callable[[], int] = now_ms,
    ) -> None:
        self._store = store if store is not None else MemoryStateStore()
        self._key = key
        self._clock_ms = clock_ms
        self._events: list[AuditEvent] = []
        self._lock = asyncio.Lock()

    async def load(self) -> int:
        async with self._lock:
            await asyncio.to_thread(self._store.purge_legacy, self._key)
            raw = await asyncio.to_thread(self._store.load, self._key)
            events: list[AuditEvent] = []
            for record in raw if isinstance(raw, list) else []:
                try:
                    events.append(AuditEvent.from_record(record))
                except (KeyError, TypeError, ValueError) as e:
                    logger.warning("audit_record_skipped", key=self._key, error=str(e))
            self._events = events
        logger.info("audit_loaded", key=self._key, count=len(self._events))
        return len(self._events)

    def list_events(self, category: AuditCategory | str | None = None) -> list[AuditEvent]:
        events = list(self._events)
        if category is not None:
            try:
                category = AuditCategory(category)
            except ValueError as e:
                raise InvalidRequest(f"Unknown audit category: {category}") from e
            events = [ev for ev in events if ev.category == category]
        return events

    def __len__(self) -> int:
        return len(self._events)

    async def add_event(
        self,
        action: str,
        detail: str,
        status: AuditStatus | str = AuditStatus.INFO,
        category: AuditCategory | str = AuditCategory.SYSTEM,
    ) -> AuditEvent:
        async with self._lock:
            ts = self._clock_ms()
            event = AuditEvent(
                id=f"evt-{ts}-{uuid.uuid4().hex[:9]}",
                action=action,
                detail=detail,
                timestamp=ts,
                status=AuditStatus(status),
                category=AuditCategory(category),
            )
            events = [event, *self._events]
            await self._persist(events)
            self._events = events
        logger.info(
            "audit_event_added",
            audit_action=action,
            status=event.status.value,
            category=event.category.value,
        )
        return event

    async def clear_events(self) -> int:
        async with self._lock:
            count = len(self._events)
            await self._persist([])
            self._events = []
        logger.info("audit_cleared", count=count)
        return count

    async def prune_events(
        self,
        max_events: int = DEFAULT_MAX_EVENTS,
        retention_ms: int = DEFAULT_RETENTION_MS,
    ) -> int:
        """Apply the age filter, then the count cap. Returns number removed."""
        if max_events < 0 or retention_ms < 0:
            raise ValueError("max_events and retention_ms must be >= 0")
        async with self._lock:
            before = len(self._events)
            kept = prune(self._events, max_events, retention_ms, self._clock_ms())
            removed = before - len(kept)
            if removed:
                await self._persist(kept)
            self._events = kept
        logger.info("audit_pruned", removed=removed, remaining=len(self._events))
        return removed

    async def log_transaction_approved(self, service: str, amount: str, tx_id: str) -> AuditEvent:
        return await self.add_event(
            "Transaction Approved",
            f"{service} payment of {amount} settled ({tx_id})",
            AuditStatus.SUCCESS,
            AuditCategory.TRANSACTION,
        )

    async def log_transaction_denied(
        self,
        service: str,
        amount: str,
        reason: str,
        category: AuditCategory = AuditCategory.POLICY,
    ) -> AuditEvent:
        return await self.add_event(
            "Transaction Denied",
            f"{service} payment of {amount} denied: {reason}",
            AuditStatus.ERROR,
            category,
        )

    async def log_transaction_rejected(self, service: str, amount: str, reason: str) -> AuditEvent:
        """Malformed spend request (bad wallet, amount or service)."""
        return await self.add_event(
            "Transaction Rejected",
            f"{service or 'unknown service'} payment of {amount} rejected: {reason}",
            AuditStatus.ERROR,
            AuditCategory.POLICY,
        )

    async def log_transaction_failed(self, service: str, amount: str, stage: str, reason: str) -> AuditEvent:
        return await self.add_event(
            "Transaction Failed",
            f"{service} payment of {amount} failed at {stage}: {reason}",
            AuditStatus.ERROR,
            AuditCategory.TRANSACTION,
        )

    async def _persist(self, events: list[AuditEvent]) -> None:
        await asyncio.to_thread(self._store.save, self._key, [e.to_record() for e in events])
