"""
Structured logging: JSON events with timestamp, event_type and keyword context.

Every module calls get_logger(__name__) and logs snake_case event names with
context such as wallet_id, endpoint, tx_id and stage. Wallet addresses are
logged shortened (short_wallet) and RPC URLs never carry API keys in clear;
the redaction processor masks any ``api-key=`` value that slips through.

Uses only stdlib logging and structlog; no portion_backend imports so the
package can log during its own import.
"""

from __future__ import annotations

import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any, TextIO

import structlog

_API_KEY_MARKER = "api-key="


def mask_rpc_url(url: str) -> str:
    """Hide API keys embedded in RPC URLs (e.g. Helius ?api-key=...)."""
    if _API_KEY_MARKER in url:
        return url.split(_API_KEY_MARKER)[0] + _API_KEY_MARKER + "***"
    return url


def short_wallet(address: str) -> str:
    """First 8 characters of a wallet address, for log context."""
    return address[:8] + "..." if len(address) > 8 else address


def _add_timestamp(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    event_dict.setdefault("timestamp", datetime.now(timezone.utc).isoformat())
    return event_dict


def _redact_secrets(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    for key, value in event_dict.items():
        if isinstance(value, str) and _API_KEY_MARKER in value:
            event_dict[key] = mask_rpc_url(value)
    return event_dict


def _normalize_event(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """structlog 'event' -> event_type."""
    if "event" in event_dict and "event_type" not in event_dict:
        event_dict["event_type"] = event_dict.pop("event")
    return event_dict


def configure_logging(level: str | None = None, fmt: str | None = None, stream: TextIO | None = None) -> None:
    """
    (Re)configure structlog.

    level defaults to LOG_LEVEL (INFO); fmt to LOG_FORMAT: "json" for
    production, anything else for the console renderer. stream defaults to stdout.
    """
    level_name = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    level_value = getattr(logging, level_name, logging.INFO)
    fmt = (fmt or os.getenv("LOG_FORMAT", "json")).strip().lower()

    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        _add_timestamp,
        _redact_secrets,
        _normalize_event,
    ]
    if fmt == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()))
    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level_value),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=stream or sys.stdout),
        cache_logger_on_first_use=False,
    )


if not structlog.is_configured():
    configure_logging()


def get_logger(name: str) -> structlog.BoundLogger:
    """
    Structured logger for a module.

        logger = get_logger(__name__)
        logger.warning("rpc_endpoint_failed", wallet_id=short_wallet(addr), endpoint=url)
    """
    return structlog.get_logger(name).bind(logger=name)
