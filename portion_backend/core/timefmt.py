"""Relative time labels ("Just now", "5m ago") for ledger and audit views."""

from __future__ import annotations

import time


def now_ms() -> int:
    return int(time.time() * 1000)


def format_time_ago(timestamp_ms: int, now: int | None = None) -> str:
    seconds = max(0, ((now_ms() if now is None else now) - timestamp_ms) // 1000)
    if seconds < 60:
        return "Just now"
    if seconds < 3600:
        return f"{seconds // 60}m ago"
    if seconds < 86400:
        return f"{seconds // 3600}h ago"
    return f"{seconds // 86400}d ago"
