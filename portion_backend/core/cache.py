"""
TTL cache entries, decoupled from fetch logic.

A CacheEntry is just {value, fetched_at}; freshness is a policy decided by
is_fresh(entry, now, max_age). Callers decide what to do with stale entries.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Generic, TypeVar

T = TypeVar("T")


@dataclass(frozen=True)
class CacheEntry(Generic[T]):
    value: T
    fetched_at: float
    """Unix seconds when the value was fetched."""

    def age(self, now: float | None = None) -> float:
        return (time.time() if now is None else now) - self.fetched_at


def is_fresh(entry: CacheEntry | None, now: float, max_age_sec: float) -> bool:
    """True if entry exists and is strictly younger than max_age_sec."""
    if entry is None:
        return False
    return now - entry.fetched_at < max_age_sec
