"""
Configuration management for the Portion backend.

Loads settings from environment variables and an optional .env file.
Exposes a single source of truth for service configuration and the
read-only RPC endpoint pools.
"""

from portion_backend.config.rpc import EndpointPool, build_endpoint_pools  # noqa: F401
from portion_backend.config.settings import Settings, get_settings  # noqa: F401

__all__ = ["EndpointPool", "Settings", "build_endpoint_pools", "get_settings"]
