"""
Pytest tests for BalanceResolver: input validation, endpoint failover, SPL token balances.

All RPC traffic goes through FakeNetwork (httpx.MockTransport).
"""

from __future__ import annotations

import httpx
import pytest

from conftest import WALLET, token_account
from portion_backend.config.rpc import PUBLIC_RPC_ENDPOINTS
from portion_backend.core.exceptions import AllEndpointsUnavailable, InvalidAddress, InvalidRequest
from portion_backend.solana_rpc import BalanceResolver, is_valid_wallet, validate_address

USDV_MINT = "Ex5DaKYMCN6QWFA4n67TmMwsH8MJV68RX6YXTmVM532C"


@pytest.fixture
def resolver(rpc_pools, net):
    return BalanceResolver(rpc_pools, timeout_sec=1.0, transport=net.transport)


# --- validation ---


def test_validate_address():
    assert validate_address(f"  {WALLET} ") == WALLET
    assert is_valid_wallet(WALLET)
    for bad in ("", "   ", "0x52908400098527886E0F7030069857D2E4169EE7", "not-a-key"):
        with pytest.raises(InvalidAddress):
            validate_address(bad)
        assert not is_valid_wallet(bad)


@pytest.mark.asyncio
async def test_foreign_address_rejected_before_io(resolver, net):
    """An EVM-style address fails with InvalidAddress and no endpoint is contacted."""
    with pytest.raises(InvalidAddress):
        await resolver.resolve_balance("0x52908400098527886E0F7030069857D2E4169EE7", "mainnet")
    assert net.rpc_calls == []


@pytest.mark.asyncio
async def test_unknown_network_rejected(resolver):
    with pytest.raises(InvalidRequest):
        await resolver.resolve_balance(WALLET, "testnet")


# --- failover ---


@pytest.mark.asyncio
async def test_first_endpoint_success(resolver, net):
    """Liveness check then fetch on the first endpoint; nothing else is tried."""
    net.lamports = 1_500_000_000
    balance = await resolver.resolve_balance(WALLET, "mainnet")
    assert balance == 1.5
    assert net.rpc_calls == [
        ("https://api.mainnet-beta.solana.com", "getLatestBlockhash"),
        ("https://api.mainnet-beta.solana.com", "getBalance"),
    ]


@pytest.mark.asyncio
async def test_failover_to_next_endpoint(resolver, net):
    net.failing_rpc = {"https://api.mainnet-beta.solana.com", "https://solana-mainnet.rpc.extrnode.com"}
    balance = await resolver.resolve_balance(WALLET, "mainnet-beta")
    assert balance == 2.5
    endpoints = [e for e, _ in net.rpc_calls]
    assert endpoints[-1] == "https://rpc.ankr.com/solana"
    assert "https://solana.public-rpc.com" not in endpoints


@pytest.mark.asyncio
async def test_all_mainnet_endpoints_fail(resolver, net):
    """All 4 mainnet endpoints error -> AllEndpointsUnavailable listing 4 errors."""
    net.fail_all_rpc = True
    with pytest.raises(AllEndpointsUnavailable) as exc:
        await resolver.resolve_balance(WALLET, "mainnet")
    err = exc.value
    assert err.network == "mainnet"
    assert len(err.errors) == 4
    assert [e.endpoint for e in err.errors] == list(PUBLIC_RPC_ENDPOINTS["mainnet"])
    assert all(e.error for e in err.errors)
    assert err.to_dict()["error"] == "all_endpoints_unavailable"


@pytest.mark.asyncio
async def test_timeout_counts_as_connection_failure(resolver, net):
    net.rpc_error_spec = httpx.ReadTimeout
    net.failing_rpc = {"https://api.devnet.solana.com"}
    assert await resolver.resolve_balance(WALLET, "devnet") == 2.5
    assert net.rpc_calls[0] == ("https://api.devnet.solana.com", "getLatestBlockhash")


@pytest.mark.asyncio
async def test_http_error_status_fails_over(resolver, net):
    net.rpc_error_spec = 503
    net.fail_all_rpc = True
    with pytest.raises(AllEndpointsUnavailable) as exc:
        await resolver.resolve_balance(WALLET, "devnet")
    assert len(exc.value.errors) == 2
    assert "503" in exc.value.errors[0].error


@pytest.mark.asyncio
async def test_malformed_balance_fails_over(rpc_pools):
    """A negative or non-integer lamports value is treated like an endpoint error."""
    calls = []

    def handler(request):
        import json

        body = json.loads(request.content)
        calls.append(str(request.url))
        if body["method"] == "getLatestBlockhash":
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "result": {"value": {}}})
        value = -5 if "api.devnet" in str(request.url) else 42
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "result": {"value": value}})

    resolver = BalanceResolver(rpc_pools, transport=httpx.MockTransport(handler))
    assert await resolver.resolve_balance(WALLET, "devnet") == 42 / 1_000_000_000


@pytest.mark.asyncio
async def test_pool_not_mutated(resolver, net, rpc_pools):
    before = rpc_pools["mainnet"].endpoints
    net.fail_all_rpc = True
    with pytest.raises(AllEndpointsUnavailable):
        await resolver.resolve_balance(WALLET, "mainnet")
    assert rpc_pools["mainnet"].endpoints == before


# --- SPL tokens ---


@pytest.mark.asyncio
async def test_token_balance(resolver, net):
    net.token_accounts[USDV_MINT] = [token_account(12_345_000)]
    tb = await resolver.resolve_token_balance(WALLET, USDV_MINT, "devnet")
    assert tb.amount == 12_345_000
    assert tb.decimals == 6
    assert tb.ui_amount == "12.345"
    assert tb.balance == 12.345


@pytest.mark.asyncio
async def test_token_balance_sums_accounts(resolver, net):
    net.token_accounts[USDV_MINT] = [token_account(1_000_000), token_account(500_000)]
    tb = await resolver.resolve_token_balance(WALLET, USDV_MINT, "devnet")
    assert tb.amount == 1_500_000
    assert tb.ui_amount == "1.5"


@pytest.mark.asyncio
async def test_no_token_account_is_zero(resolver):
    tb = await resolver.resolve_token_balance(WALLET, USDV_MINT, "devnet")
    assert tb.amount == 0
    assert tb.decimals == 6
    assert tb.ui_amount == "0"
