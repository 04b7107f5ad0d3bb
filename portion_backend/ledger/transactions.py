"""
Transaction ledger: the single owner of payment-attempt records.

- add_transaction() assigns id and timestamp, prepends, and truncates to the
  50 most recent entries in one step under the store lock.
- update_transaction_status() applies only transitions allowed by the state
  machine; unknown ids, repeated statuses and moves out of Settled/Failed
  are no-ops.
- New entries get deferred auto-progression (Validated, then Settled)
  unless the caller opts out per entry. An explicit status update cancels
  it; a timer that fires late re-checks the current state and does nothing
  if the move is no longer valid.
- Every mutation is persisted under a versioned key before it becomes
  visible; a storage failure leaves the in-memory ledger unchanged.
"""

from __future__ import annotations

import asyncio
import uuid
from typing import Callable

from portion_backend.core.exceptions import StateStoreError
from portion_backend.core.timefmt import now_ms
from portion_backend.ledger.models import (
    Transaction,
    TransactionDraft,
    TransactionStatus,
    can_transition,
)
from portion_backend.ledger.storage import MemoryStateStore, StateStore
from portion_backend.portion_logging import get_logger

logger = get_logger(__name__)

TRANSACTIONS_KEY = "portion_transactions_v3"
MAX_TRANSACTIONS = 50
VALIDATE_DELAY_SEC = 2.0
SETTLE_DELAY_SEC = 4.5


def new_transaction_id(ts_ms: int) -> str:
    return f"tx-{ts_ms}-{uuid.uuid4().hex[:9]}"


class TransactionLedger:
    def __init__(
        self,
        store: StateStore | None = None,
        *,
        key: str = TRANSACTIONS_KEY,
        max_entries: int = MAX_TRANSACTIONS,
        auto_progress: bool = True,
        validate_delay_sec: float = VALIDATE_DELAY_SEC,
        settle_delay_sec: float = SETTLE_DELAY_SEC,
        clock_ms: Callable[[], int] = now_ms,
    ) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be >= 1")
        self._store = store if store is not None else MemoryStateStore()
        self._key = key
        self._max = max_entries
        self._auto_progress = auto_progress
        self._validate_delay = validate_delay_sec
        self._settle_delay = max(settle_delay_sec, validate_delay_sec)
        self._clock_ms = clock_ms
        self._items: list[Transaction] = []
        self._last_ts = 0
        self._lock = asyncio.Lock()
        self._timers: dict[str, asyncio.Task] = {}

    @property
    def storage_key(self) -> str:
        return self._key

    async def load(self) -> int:
        """Load persisted transactions from the current key; older versions are purged."""
        async with self._lock:
            await asyncio.to_thread(self._store.purge_legacy, self._key)
            raw = await asyncio.to_thread(self._store.load, self._key)
            items: list[Transaction] = []
            if isinstance(raw, list):
                for record in raw:
                    try:
                        items.append(Transaction.from_record(record))
                    except (KeyError, TypeError, ValueError) as e:
                        logger.warning("ledger_record_skipped", key=self._key, error=str(e))
            elif raw is not None:
                logger.warning("ledger_payload_ignored", key=self._key, payload_type=type(raw).__name__)
            self._items = items[: self._max]
            self._last_ts = max((t.timestamp for t in self._items), default=0)
        logger.info("ledger_loaded", key=self._key, count=len(self._items))
        return len(self._items)

    def list_transactions(self, wallet: str | None = None) -> list[Transaction]:
        """Newest-first snapshot; records are immutable so callers cannot tear it."""
        items = list(self._items)
        if wallet is not None:
            items = [t for t in items if t.wallet == wallet]
        return items

    def get(self, tx_id: str) -> Transaction | None:
        for tx in self._items:
            if tx.id == tx_id:
                return tx
        return None

    def __len__(self) -> int:
        return len(self._items)

    async def add_transaction(
        self, draft: TransactionDraft, *, auto_progress: bool | None = None
    ) -> Transaction:
        """
        Record a new Processing entry.

        auto_progress overrides the ledger default for this entry; callers that
        drive the status themselves (the payment orchestrator) pass False.
        """
        async with self._lock:
            ts = max(self._clock_ms(), self._last_ts)
            tx = Transaction(
                id=new_transaction_id(ts),
                service=draft.service,
                type=draft.type,
                amount=draft.amount,
                status=TransactionStatus.PROCESSING,
                source=draft.source,
                timestamp=ts,
                wallet=draft.wallet,
            )
            items = [tx, *self._items]
            kept, evicted = items[: self._max], items[self._max:]
            await self._persist(kept)
            self._items = kept
            self._last_ts = ts
            for old in evicted:
                self._cancel_timer(old.id)
        logger.info(
            "ledger_transaction_added",
            tx_id=tx.id,
            service=tx.service,
            amount=tx.amount,
            evicted=len(evicted),
        )
        if self._auto_progress if auto_progress is None else auto_progress:
            self._timers[tx.id] = asyncio.create_task(self._auto_progress_task(tx.id))
        return tx

    async def update_transaction_status(
        self, tx_id: str, status: TransactionStatus | str
    ) -> Transaction | None:
        """
        Explicitly move a transaction to ``status``.

        Returns the stored record (unchanged on a no-op), or None when the id is
        not in the ledger. Cancels pending auto-progression for the id.
        """
        status = TransactionStatus(status)
        self._cancel_timer(tx_id)
        return await self._apply(tx_id, status, origin="explicit")

    async def clear(self) -> int:
        async with self._lock:
            count = len(self._items)
            await self._persist([])
            for tx in self._items:
                self._cancel_timer(tx.id)
            self._items = []
        logger.info("ledger_cleared", count=count)
        return count

    async def aclose(self) -> None:
        """Cancel outstanding auto-progression timers."""
        timers = list(self._timers.values())
        self._timers.clear()
        for task in timers:
            task.cancel()
        if timers:
            await asyncio.gather(*timers, return_exceptions=True)

    async def _apply(self, tx_id: str, status: TransactionStatus, *, origin: str) -> Transaction | None:
        async with self._lock:
            for idx, tx in enumerate(self._items):
                if tx.id == tx_id:
                    break
            else:
                logger.debug("ledger_update_unknown_id", tx_id=tx_id, status=status.value, origin=origin)
                return None
            if tx.status == status:
                return tx
            if not can_transition(tx.status, status):
                logger.info(
                    "ledger_transition_ignored",
                    tx_id=tx_id,
                    current=tx.status.value,
                    requested=status.value,
                    origin=origin,
                )
                return tx
            updated = tx.with_status(status)
            items = list(self._items)
            items[idx] = updated
            await self._persist(items)
            self._items = items
        logger.info(
            "ledger_status_changed",
            tx_id=tx_id,
            previous=tx.status.value,
            status=status.value,
            origin=origin,
        )
        return updated

    async def _auto_progress_task(self, tx_id: str) -> None:
        try:
            await asyncio.sleep(self._validate_delay)
            await self._apply(tx_id, TransactionStatus.VALIDATED, origin="auto")
            await asyncio.sleep(self._settle_delay - self._validate_delay)
            await self._apply(tx_id, TransactionStatus.SETTLED, origin="auto")
        except StateStoreError as e:
            logger.error("ledger_auto_progress_failed", tx_id=tx_id, error=e.message)
        finally:
            if self._timers.get(tx_id) is asyncio.current_task():
                del self._timers[tx_id]

    def _cancel_timer(self, tx_id: str) -> None:
        task = self._timers.pop(tx_id, None)
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    async def _persist(self, items: list[Transaction]) -> None:
        """Write items under the current key; memory is swapped only after this succeeds."""
        await asyncio.to_thread(self._store.save, self._key, [t.to_record() for t in items])
