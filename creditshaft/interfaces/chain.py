"""Chain protocols — JSON-RPC transport and position lookup."""
from typing import Any, Protocol

from ..models import Position


class ChainClient(Protocol):
    """Abstract interface for blockchain RPC interactions."""

    async def rpc_call(self, method: str, params: list[Any]) -> Any: ...

    async def eth_call(self, to: str, data: str) -> str: ...


class PositionSource(Protocol):
    """Authoritative source of a wallet's leveraged position."""

    async def get_position_details(self, wallet_address: str) -> Position | None: ...
