"""
Balance resolver: native SOL and SPL token balances with endpoint failover.

Responsibilities:
- Walk the network's endpoint pool in priority order. For each endpoint:
  open a client, confirm liveness with getLatestBlockhash, then fetch.
- On any error (transport, timeout, RPC error, malformed result) record it
  and move to the next endpoint; stop at the first success.
- Fail with AllEndpointsUnavailable, carrying every per-endpoint error,
  when the pool is exhausted.

Lookups are pure reads; the endpoint pool is never mutated.
"""

from __future__ import annotations

import itertools
from typing import Any, Callable, TypeVar

import httpx

from portion_backend.config.env import normalize_network
from portion_backend.config.rpc import EndpointPool
from portion_backend.core.exceptions import AllEndpointsUnavailable, InvalidRequest
from portion_backend.core.fallback import FallbackExhausted, first_success
from portion_backend.portion_logging import get_logger, mask_rpc_url, short_wallet
from portion_backend.solana_rpc.models import TokenBalance, lamports_to_sol
from portion_backend.solana_rpc.validation import validate_address

logger = get_logger(__name__)

T = TypeVar("T")

DEFAULT_COMMITMENT = "confirmed"
TOKEN_PROGRAM_ID = "TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA"


class RpcError(RuntimeError):
    """JSON-RPC level error or malformed response from one endpoint."""


def _parse_lamports(result: Any) -> int:
    value = result.get("value") if isinstance(result, dict) else None
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise RpcError(f"malformed getBalance result: {result!r}")
    return value


def _parse_token_accounts(result: Any) -> TokenBalance:
    value = result.get("value") if isinstance(result, dict) else None
    if not isinstance(value, list):
        raise RpcError(f"malformed getTokenAccountsByOwner result: {result!r}")
    try:
        return TokenBalance.from_rpc_accounts(value)
    except (KeyError, TypeError, ValueError) as e:
        raise RpcError(f"malformed token account: {e}") from e


class BalanceResolver:
    """
    Resolves balances for one account at a time across an RPC endpoint pool.

    One short-lived httpx.AsyncClient per endpoint attempt; every request is
    bounded by timeout_sec and a timeout counts as a connection failure.
    """

    def __init__(
        self,
        pools: dict[str, EndpointPool],
        *,
        timeout_sec: float = 10.0,
        commitment: str = DEFAULT_COMMITMENT,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """
        Args:
            pools: Endpoint pool per network ("mainnet", "devnet").
            timeout_sec: HTTP timeout for each RPC request.
            commitment: Commitment level for liveness and balance queries.
            transport: Optional httpx transport (tests inject httpx.MockTransport).
        """
        if not pools:
            raise ValueError("pools must be non-empty")
        self._pools = dict(pools)
        self._timeout = timeout_sec
        self._commitment = commitment
        self._transport = transport
        self._ids = itertools.count(1)

    def pool(self, network: str) -> EndpointPool:
        try:
            key = normalize_network(network)
        except ValueError as e:
            raise InvalidRequest(str(e)) from e
        pool = self._pools.get(key)
        if pool is None:
            raise InvalidRequest(f"No RPC endpoints configured for {key}")
        return pool

    async def resolve_balance(self, address: str, network: str) -> float:
        """Return the native balance in SOL (>= 0)."""
        address = validate_address(address)
        lamports = await self._call_with_failover(
            network,
            "getBalance",
            [address, {"commitment": self._commitment}],
            _parse_lamports,
            wallet=address,
        )
        return lamports_to_sol(lamports)

    async def resolve_token_balance(self, address: str, mint: str, network: str) -> TokenBalance:
        """Return the owner's SPL token balance for a mint (zero when no token account)."""
        address = validate_address(address)
        params = [
            address,
            {"mint": mint},
            {"encoding": "jsonParsed", "commitment": self._commitment},
        ]
        return await self._call_with_failover(
            network,
            "getTokenAccountsByOwner",
            params,
            _parse_token_accounts,
            wallet=address,
        )

    async def _call_with_failover(
        self,
        network: str,
        method: str,
        params: list[Any],
        parse: Callable[[Any], T],
        *,
        wallet: str,
    ) -> T:
        pool = self.pool(network)

        async def attempt(endpoint: str) -> T:
            return await self._attempt(endpoint, method, params, parse)

        def on_error(endpoint: str, exc: Exception) -> None:
            logger.warning(
                "rpc_endpoint_failed",
                wallet_id=short_wallet(wallet),
                network=pool.network,
                endpoint=mask_rpc_url(endpoint),
                method=method,
                error=str(exc) or type(exc).__name__,
            )

        try:
            value, errors = await first_success(
                pool.endpoints, attempt, label=mask_rpc_url, on_error=on_error
            )
        except FallbackExhausted as e:
            logger.error(
                "rpc_all_endpoints_failed",
                wallet_id=short_wallet(wallet),
                network=pool.network,
                method=method,
                endpoint_count=len(pool),
            )
            raise AllEndpointsUnavailable(pool.network, e.errors) from None
        logger.debug(
            "rpc_call_succeeded",
            wallet_id=short_wallet(wallet),
            network=pool.network,
            method=method,
            failed_endpoints=len(errors),
        )
        return value

    async def _attempt(
        self,
        endpoint: str,
        method: str,
        params: list[Any],
        parse: Callable[[Any], T],
    ) -> T:
        async with httpx.AsyncClient(
            timeout=httpx.Timeout(self._timeout), transport=self._transport
        ) as client:
            # Liveness check: a stale or lagging node fails here, before the real query
            await self._rpc(client, endpoint, "getLatestBlockhash", [{"commitment": self._commitment}])
            result = await self._rpc(client, endpoint, method, params)
        return parse(result)

    async def _rpc(
        self,
        client: httpx.AsyncClient,
        endpoint: str,
        method: str,
        params: list[Any],
    ) -> Any:
        """Perform one JSON-RPC call; raise on transport or RPC error."""
        body = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        resp = await client.post(endpoint, json=body)
        resp.raise_for_status()
        try:
            data = resp.json()
        except ValueError as e:
            raise RpcError(f"non-JSON response from {method}") from e
        if not isinstance(data, dict):
            raise RpcError(f"unexpected {method} payload type {type(data).__name__}")
        if "error" in data:
            err = data["error"]
            if isinstance(err, dict):
                raise RpcError(f"Solana RPC error: {err.get('message', err)} (code={err.get('code')})")
            raise RpcError(f"Solana RPC error: {err}")
        if data.get("result") is None:
            raise RpcError(f"Solana RPC returned no result for {method}")
        return data["result"]
