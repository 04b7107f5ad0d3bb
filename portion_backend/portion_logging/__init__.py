"""
Structured logging for the Portion backend.

JSON logs with timestamp, event_type and keyword context (wallet_id, endpoint, tx_id).
Use get_logger() in every module.
"""

from portion_backend.portion_logging.logger import (
    configure_logging,
    get_logger,
    mask_rpc_url,
    short_wallet,
)

__all__ = ["configure_logging", "get_logger", "mask_rpc_url", "short_wallet"]
