"""EVM JSON-RPC client over HTTP with ordered endpoint fallback."""
import logging
import ssl
from collections.abc import Iterator
from typing import Any

import aiohttp
import certifi

from ...config import ChainConfig

logger = logging.getLogger(__name__)


class RpcError(RuntimeError):
    """A node answered, but with a JSON-RPC error object or a bad HTTP status."""


class EvmClient:
    """Read-only EVM client. The last endpoint that answered is tried first."""

    def __init__(self, config: ChainConfig) -> None:
        self.endpoints = list(config.rpc_endpoints)
        self.timeout = config.rpc_timeout
        self.current_rpc_index = 0
        self._request_id = 0
        self._ssl_context = ssl.create_default_context(cafile=certifi.where())

    def _endpoint_order(self) -> Iterator[int]:
        count = len(self.endpoints)
        for offset in range(count):
            yield (self.current_rpc_index + offset) % count

    async def _post(self, session: aiohttp.ClientSession, url: str, payload: dict) -> Any:
        async with session.post(
            url,
            json=payload,
            timeout=aiohttp.ClientTimeout(total=self.timeout),
        ) as response:
            if response.status >= 400:
                raise RpcError(f"HTTP {response.status} from {url}")
            body = await response.json()
            if "error" in body:
                raise RpcError(f"RPC Error: {body['error']}")
            return body.get("result")

    async def rpc_call(self, method: str, params: list[Any]) -> Any:
        """Send one JSON-RPC request, falling through the endpoint list on failure."""
        if not self.endpoints:
            raise RuntimeError("No RPC endpoints configured")

        self._request_id += 1
        payload = {
            "jsonrpc": "2.0",
            "id": self._request_id,
            "method": method,
            "params": params,
        }

        last_error: Exception | None = None
        connector = aiohttp.TCPConnector(ssl=self._ssl_context)
        async with aiohttp.ClientSession(connector=connector) as session:
            for rpc_index in self._endpoint_order():
                rpc_url = self.endpoints[rpc_index]
                try:
                    result = await self._post(session, rpc_url, payload)
                except Exception as e:
                    last_error = e
                    logger.warning("%s via %s failed: %s", method, rpc_url, e)
                    continue

                if rpc_index != self.current_rpc_index:
                    logger.info("Switched to RPC endpoint: %s", rpc_url)
                    self.current_rpc_index = rpc_index
                return result

        raise RuntimeError(f"All RPC endpoints failed. Last error: {last_error}")

    async def eth_call(self, to: str, data: str) -> str:
        """Execute a read-only contract call against the latest block."""
        result = await self.rpc_call("eth_call", [{"to": to, "data": data}, "latest"])
        if not isinstance(result, str):
            raise RuntimeError(f"Unexpected eth_call result: {result!r}")
        return result
