from __future__ import annotations

import json
import logging
from typing import Any

import aiohttp

from arb_agent.common import log_event


class RpcError(RuntimeError):
    def __init__(self, message: str, *, method: str, code: int | None = None) -> None:
        super().__init__(message)
        self.method = method
        self.code = code


def _parse_quantity(value: Any, *, method: str) -> int:
    if not isinstance(value, str) or not value.startswith("0x"):
        raise RpcError(f"Unexpected {method} result: {value!r}", method=method)
    try:
        return int(value, 16)
    except ValueError as error:
        raise RpcError(f"Invalid hex quantity from {method}: {value!r}", method=method) from error


class JsonRpcClient:
    """Minimal EVM JSON-RPC client for the gas price feed."""

    def __init__(
        self,
        *,
        logger: logging.Logger,
        rpc_url: str,
        timeout_seconds: float = 8.0,
    ) -> None:
        self._logger = logger
        self._rpc_url = rpc_url
        self._timeout_seconds = timeout_seconds
        self._http_session: aiohttp.ClientSession | None = None
        self._request_id = 0

    async def connect(self) -> None:
        if not self._rpc_url:
            raise RuntimeError("RPC_URL is required to read gas prices.")
        if self._http_session is None:
            timeout = aiohttp.ClientTimeout(total=self._timeout_seconds)
            self._http_session = aiohttp.ClientSession(timeout=timeout)

    async def close(self) -> None:
        if self._http_session is not None:
            await self._http_session.close()
            self._http_session = None

    async def healthcheck(self) -> None:
        chain_id = await self.chain_id()
        log_event(
            self._logger,
            level="debug",
            event="rpc_healthcheck",
            message="RPC node reachable",
            chain_id=chain_id,
        )

    async def call(self, method: str, params: list[Any] | None = None) -> Any:
        if self._http_session is None:
            await self.connect()
        if self._http_session is None:
            raise RuntimeError("RPC HTTP session is not initialized.")

        self._request_id += 1
        payload: dict[str, Any] = {
            "jsonrpc": "2.0",
            "id": self._request_id,
            "method": method,
            "params": params or [],
        }

        async with self._http_session.post(self._rpc_url, json=payload) as response:
            status = response.status
            text = await response.text()

        if status >= 400:
            raise RpcError(f"RPC call failed: method={method} status={status}", method=method)
        try:
            body = json.loads(text)
        except json.JSONDecodeError as error:
            raise RpcError(f"RPC returned non-JSON response for {method}", method=method) from error

        if not isinstance(body, dict):
            raise RpcError(f"Invalid RPC response for {method}: {body}", method=method)

        error = body.get("error")
        if error:
            code = error.get("code") if isinstance(error, dict) else None
            message = error.get("message") if isinstance(error, dict) else str(error)
            raise RpcError(f"RPC error for {method}: {message}", method=method, code=code)

        return body.get("result")

    async def gas_price_wei(self) -> int:
        return _parse_quantity(await self.call("eth_gasPrice"), method="eth_gasPrice")

    async def chain_id(self) -> int:
        return _parse_quantity(await self.call("eth_chainId"), method="eth_chainId")
