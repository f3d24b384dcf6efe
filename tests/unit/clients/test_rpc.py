"""
Tests for the JSON-RPC client.

Uses httpx.MockTransport so no network is touched.
"""

from __future__ import annotations

import json

import httpx
import pytest

from guardian.clients.rpc import RpcClient
from guardian.config import RpcConfig
from guardian.errors import RpcError
from guardian.security.types import Chain

URL = "https://rpc.test"


def _make_client(handler) -> RpcClient:
    transport = httpx.MockTransport(handler)
    return RpcClient(RpcConfig(), client=httpx.AsyncClient(transport=transport))


def _result(result) -> httpx.Response:
    return httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "result": result})


class TestBalances:
    @pytest.mark.asyncio
    async def test_solana_balance_in_sol(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen.update(json.loads(request.content))
            return _result({"context": {"slot": 1}, "value": 2_500_000_000})

        rpc = _make_client(handler)
        assert await rpc.get_balance(Chain.SOLANA, URL, "Addr") == (2.5, 2_500_000_000)
        assert seen["method"] == "getBalance"
        assert seen["params"] == ["Addr"]

    @pytest.mark.asyncio
    async def test_evm_balance_in_ether(self):
        def handler(request: httpx.Request) -> httpx.Response:
            body = json.loads(request.content)
            assert body["method"] == "eth_getBalance"
            assert body["params"] == ["0xabc", "latest"]
            return _result(hex(10**18))

        rpc = _make_client(handler)
        assert await rpc.get_balance(Chain.POLYGON, URL, "0xabc") == (1.0, 10**18)

    @pytest.mark.asyncio
    async def test_solana_missing_value(self):
        rpc = _make_client(lambda request: _result({"context": {}}))
        with pytest.raises(RpcError):
            await rpc.get_balance(Chain.SOLANA, URL, "Addr")


class TestChainHeight:
    @pytest.mark.asyncio
    async def test_solana_slot(self):
        rpc = _make_client(lambda request: _result(312_000_000))
        assert await rpc.get_chain_height(Chain.SOLANA, URL) == 312_000_000

    @pytest.mark.asyncio
    async def test_evm_block_number(self):
        rpc = _make_client(lambda request: _result("0x10"))
        assert await rpc.get_chain_height(Chain.ETHEREUM, URL) == 16

    @pytest.mark.asyncio
    async def test_evm_non_hex(self):
        rpc = _make_client(lambda request: _result("latest"))
        with pytest.raises(RpcError):
            await rpc.get_chain_height(Chain.BASE, URL)


class TestFailures:
    @pytest.mark.asyncio
    async def test_http_error_status(self):
        rpc = _make_client(lambda request: httpx.Response(503))
        with pytest.raises(RpcError) as exc_info:
            await rpc.get_chain_height(Chain.SOLANA, URL)
        assert exc_info.value.method == "getSlot"
        assert exc_info.value.url == URL

    @pytest.mark.asyncio
    async def test_transport_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        rpc = _make_client(handler)
        with pytest.raises(RpcError):
            await rpc.call(URL, "getSlot")

    @pytest.mark.asyncio
    async def test_invalid_json(self):
        rpc = _make_client(lambda request: httpx.Response(200, content=b"<html>"))
        with pytest.raises(RpcError, match="invalid JSON"):
            await rpc.call(URL, "getSlot")

    @pytest.mark.asyncio
    async def test_error_member(self):
        rpc = _make_client(
            lambda request: httpx.Response(
                200, json={"jsonrpc": "2.0", "id": 1, "error": {"code": -32005, "message": "rate limited"}}
            )
        )
        with pytest.raises(RpcError, match="rate limited"):
            await rpc.call(URL, "getSlot")

    @pytest.mark.asyncio
    async def test_stats_count_failures(self):
        rpc = _make_client(lambda request: httpx.Response(500))
        for _ in range(2):
            with pytest.raises(RpcError):
                await rpc.call(URL, "getSlot")
        assert rpc.stats == {"calls": 2, "failures": 2}
        await rpc.close()


class TestUrlResolution:
    def test_default_chain_url(self):
        rpc = RpcClient(RpcConfig())
        assert rpc.url_for(Chain.SOLANA) == "https://api.mainnet-beta.solana.com"

    def test_configured_override(self):
        rpc = RpcClient(RpcConfig(default_urls={"solana": "https://private.rpc"}))
        assert rpc.url_for(Chain.SOLANA) == "https://private.rpc"

    def test_unknown_chain_is_empty(self):
        assert RpcClient(RpcConfig()).url_for(Chain.ARBITRUM) == ""
