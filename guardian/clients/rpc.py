"""
Guardian -- Chain RPC Client

Minimal JSON-RPC reads for the two chain families the detectors watch:
Solana (``getBalance``, ``getSlot``) and EVM (``eth_getBalance``,
``eth_blockNumber``). One shared httpx client; every call is bounded by the
configured timeout and raises ``RpcError`` on any failure.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import httpx
import structlog

from guardian.errors import RpcError
from guardian.security.types import Chain

if TYPE_CHECKING:
    from guardian.config import RpcConfig

logger = structlog.get_logger()

LAMPORTS_PER_SOL = 1_000_000_000
WEI_PER_ETHER = 10**18


class RpcClient:
    def __init__(self, config: RpcConfig, client: httpx.AsyncClient | None = None) -> None:
        self._config = config
        self._client = client or httpx.AsyncClient(timeout=config.timeout_s)
        self._calls = 0
        self._failures = 0

    async def close(self) -> None:
        await self._client.aclose()

    def url_for(self, chain: Chain) -> str:
        return self._config.url_for(chain)

    async def call(self, url: str, method: str, params: list[Any] | None = None) -> Any:
        """POST a JSON-RPC 2.0 request and return its ``result`` member."""
        self._calls += 1
        payload = {"jsonrpc": "2.0", "id": 1, "method": method, "params": params or []}
        try:
            response = await self._client.post(url, json=payload)
            response.raise_for_status()
            body = response.json()
        except httpx.HTTPError as exc:
            self._failures += 1
            raise RpcError(f"{method} failed: {exc.__class__.__name__}", url, method) from exc
        except ValueError as exc:
            self._failures += 1
            raise RpcError(f"{method} returned invalid JSON", url, method) from exc

        if not isinstance(body, dict):
            self._failures += 1
            raise RpcError(f"{method} returned a non-object body", url, method)
        if body.get("error"):
            self._failures += 1
            error = body["error"]
            message = error.get("message", error) if isinstance(error, dict) else error
            raise RpcError(f"{method} error: {message}", url, method)
        if "result" not in body:
            self._failures += 1
            raise RpcError(f"{method} returned no result", url, method)
        return body["result"]

    async def get_balance(self, chain: Chain, url: str, address: str) -> tuple[float, int]:
        """
        Native balance of ``address``.

        Returns ``(balance, balance_raw)`` where ``balance_raw`` is in base
        units (lamports / wei) and ``balance`` is in whole coins.
        """
        if chain.is_evm:
            result = await self.call(url, "eth_getBalance", [address, "latest"])
            raw = _parse_hex(result, url, "eth_getBalance")
            return raw / WEI_PER_ETHER, raw

        result = await self.call(url, "getBalance", [address])
        value = result.get("value") if isinstance(result, dict) else None
        if not isinstance(value, int):
            raise RpcError("getBalance returned no value", url, "getBalance")
        return value / LAMPORTS_PER_SOL, value

    async def get_chain_height(self, chain: Chain, url: str) -> int:
        """Current slot (Solana) or block number (EVM)."""
        if chain.is_evm:
            result = await self.call(url, "eth_blockNumber")
            return _parse_hex(result, url, "eth_blockNumber")

        result = await self.call(url, "getSlot")
        if not isinstance(result, int):
            raise RpcError("getSlot returned a non-integer", url, "getSlot")
        return result

    @property
    def stats(self) -> dict[str, Any]:
        return {"calls": self._calls, "failures": self._failures}


def _parse_hex(value: Any, url: str, method: str) -> int:
    if not isinstance(value, str):
        raise RpcError(f"{method} returned a non-hex result", url, method)
    try:
        return int(value, 16)
    except ValueError as exc:
        raise RpcError(f"{method} returned a non-hex result", url, method) from exc
