"""
Pytest fixtures for Portion tests.

FakeNetwork is one httpx.MockTransport handler standing in for every external
HTTP collaborator: Solana RPC endpoints, the x402 facilitator, Solomon Labs,
DeFiLlama, Meteora and GeckoTerminal. Each response can be a JSON body, an
HTTP status code, or an httpx exception class to raise. facilitator_delay_sec
slows the facilitator down so tests can interleave with a payment in flight.
"""

from __future__ import annotations

import asyncio
import json
from typing import Any

import httpx
import pytest

from portion_backend.config.rpc import build_pool
from portion_backend.config.settings import Settings
from portion_backend.core.exceptions import StateStoreError
from portion_backend.ledger.storage import MemoryStateStore

WALLET = "11111111111111111111111111111111"
FACILITATOR_URL = "https://facilitator.test"


def token_account(amount: int, decimals: int = 6) -> dict[str, Any]:
    """One jsonParsed token account as returned by getTokenAccountsByOwner."""
    ui = f"{amount / 10 ** decimals:.{decimals}f}".rstrip("0").rstrip(".") or "0"
    return {
        "pubkey": "TokenAcct111111111111111111111111111111111",
        "account": {
            "data": {
                "parsed": {
                    "info": {
                        "tokenAmount": {"amount": str(amount), "decimals": decimals, "uiAmountString": ui}
                    }
                }
            }
        },
    }


def _respond(spec: Any, request: httpx.Request) -> httpx.Response:
    if isinstance(spec, type) and issubclass(spec, httpx.RequestError):
        raise spec("simulated failure", request=request)
    if isinstance(spec, int):
        return httpx.Response(spec, json={"error": "simulated"})
    return httpx.Response(200, json=spec)


class FakeNetwork:
    def __init__(self) -> None:
        self.failing_rpc: set[str] = set()
        self.fail_all_rpc = False
        self.rpc_error_spec: Any = httpx.ConnectError
        self.lamports = 2_500_000_000
        self.token_accounts: dict[str, list[dict[str, Any]]] = {}
        self.verify: Any = {"isValid": True, "payer": WALLET}
        self.settle: Any = {"success": True, "transaction": "5xSettledSig", "network": "solana:devnet"}
        self.facilitator_delay_sec = 0.0
        self.solomon: Any = {"apy": 11.2}
        self.llama: Any = {"data": [{"project": "solomon", "symbol": "SUSDV", "apy": 10.3}]}
        self.meteora_vault: Any = {"closest_apy": [{"apy": 6.1}]}
        self.gecko: Any = {"data": []}
        self.requests: list[httpx.Request] = []
        self.rpc_calls: list[tuple[str, str]] = []

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def count(self, host: str, path: str | None = None) -> int:
        return sum(
            1 for r in self.requests if r.url.host == host and (path is None or r.url.path == path)
        )

    def facilitator_bodies(self, action: str) -> list[dict[str, Any]]:
        return [
            json.loads(r.content)
            for r in self.requests
            if r.url.host == "facilitator.test" and r.url.path == f"/{action}"
        ]

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        host = request.url.host
        if host == "facilitator.test":
            if self.facilitator_delay_sec:
                await asyncio.sleep(self.facilitator_delay_sec)
            spec = self.verify if request.url.path == "/verify" else self.settle
            return _respond(spec, request)
        if host == "api.solomonlabs.org":
            return _respond(self.solomon, request)
        if host == "yields.llama.fi":
            return _respond(self.llama, request)
        if host == "merv2-api.meteora.ag":
            return _respond(self.meteora_vault, request)
        if host == "api.geckoterminal.com":
            return _respond(self.gecko, request)
        return self._rpc(request)

    def _rpc(self, request: httpx.Request) -> httpx.Response:
        endpoint = str(request.url).rstrip("/")
        body = json.loads(request.content)
        method = body["method"]
        self.rpc_calls.append((endpoint, method))
        if self.fail_all_rpc or endpoint in self.failing_rpc:
            return _respond(self.rpc_error_spec, request)
        ctx = {"context": {"slot": 1}}
        if method == "getLatestBlockhash":
            result: Any = {**ctx, "value": {"blockhash": "Hash111", "lastValidBlockHeight": 10}}
        elif method == "getBalance":
            result = {**ctx, "value": self.lamports}
        elif method == "getTokenAccountsByOwner":
            mint = body["params"][1]["mint"]
            result = {**ctx, "value": self.token_accounts.get(mint, [])}
        else:
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "error": {"code": -32601, "message": "Method not found"}})
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": result})


@pytest.fixture
def net() -> FakeNetwork:
    return FakeNetwork()


@pytest.fixture
def rpc_pools():
    """Public endpoints only, independent of SOLANA_RPC_URL / HELIUS_API_KEY."""
    return {"mainnet": build_pool("mainnet"), "devnet": build_pool("devnet")}


@pytest.fixture
def settings(rpc_pools) -> Settings:
    return Settings(
        solana_network="devnet",
        rpc_pools=rpc_pools,
        facilitator_url=FACILITATOR_URL,
        ledger_auto_progress=False,
        balance_refresh_interval_sec=3600.0,
        balance_max_attempts=1,
        cors_origins=("http://localhost:3000",),
    )


@pytest.fixture
def memory_store() -> MemoryStateStore:
    return MemoryStateStore()


@pytest.fixture
def services(settings, memory_store, net):
    """Service container with 10.0 spendable yield per wallet."""
    from portion_backend.api_server.dependencies import build_services
    from portion_backend.yield_engine.spendable import FixedAccrual

    return build_services(settings, store=memory_store, transport=net.transport, accrual=FixedAccrual(10.0))


@pytest.fixture
def client(services):
    """FastAPI TestClient running the app lifespan."""
    from fastapi.testclient import TestClient

    from portion_backend.api_server.server import create_app

    with TestClient(create_app(services)) as c:
        yield c


class FakeClock:
    """Manually advanced clock for cache and expiry tests."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


class FailingStore(MemoryStateStore):
    """MemoryStateStore whose writes to fail_keys raise StateStoreError."""

    def __init__(self, fail_keys: set[str] | None = None) -> None:
        super().__init__()
        self.fail_keys = set(fail_keys or ())

    def save(self, key: str, value: Any) -> None:
        if key in self.fail_keys:
            raise StateStoreError("State store unavailable: OperationalError")
        super().save(key, value)
