"""
Pytest tests for the shared fallback combinators, TTL cache policy and time labels.
"""

from __future__ import annotations

import pytest

from portion_backend.core.cache import CacheEntry, is_fresh
from portion_backend.core.fallback import FallbackExhausted, first_success, gather_settled
from portion_backend.core.timefmt import format_time_ago


# --- first_success ---


@pytest.mark.asyncio
async def test_first_success_stops_at_first_value():
    """Later candidates are never tried once one succeeds."""
    tried = []

    async def attempt(c):
        tried.append(c)
        if c == "a":
            raise ConnectionError("down")
        return c.upper()

    value, errors = await first_success(["a", "b", "c"], attempt)
    assert value == "B"
    assert tried == ["a", "b"]
    assert len(errors) == 1
    assert errors[0].endpoint == "a"
    assert "ConnectionError" in errors[0].error


@pytest.mark.asyncio
async def test_first_success_exhausted_collects_every_error():
    seen = []

    async def attempt(c):
        raise TimeoutError()

    with pytest.raises(FallbackExhausted) as exc:
        await first_success([1, 2, 3], attempt, label=lambda c: f"ep{c}", on_error=lambda c, e: seen.append(c))
    assert [e.endpoint for e in exc.value.errors] == ["ep1", "ep2", "ep3"]
    assert exc.value.errors[0].error == "TimeoutError"
    assert seen == [1, 2, 3]


# --- gather_settled ---


@pytest.mark.asyncio
async def test_gather_settled_keeps_successes():
    async def fetch(p):
        if p == "bad":
            raise ValueError("broken")
        return [p]

    ok, errors = await gather_settled(["x", "bad", "y"], fetch)
    assert ok == [("x", ["x"]), ("y", ["y"])]
    assert len(errors) == 1
    assert errors[0].endpoint == "bad"


# --- cache policy ---


def test_is_fresh_window():
    entry = CacheEntry(value=1.0, fetched_at=100.0)
    assert is_fresh(entry, 114.9, 15)
    assert not is_fresh(entry, 115.0, 15)
    assert not is_fresh(None, 100.0, 15)
    assert entry.age(130.0) == 30.0


# --- time labels ---


def test_format_time_ago():
    now = 10_000_000_000
    assert format_time_ago(now, now) == "Just now"
    assert format_time_ago(now - 59_000, now) == "Just now"
    assert format_time_ago(now - 5 * 60_000, now) == "5m ago"
    assert format_time_ago(now - 3 * 3_600_000, now) == "3h ago"
    assert format_time_ago(now - 2 * 86_400_000, now) == "2d ago"
    # Future timestamps clamp to now
    assert format_time_ago(now + 5_000, now) == "Just now"
