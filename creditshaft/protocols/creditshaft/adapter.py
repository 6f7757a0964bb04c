"""CreditShaft position adapter — reads a wallet's leveraged position on-chain."""
from __future__ import annotations

import logging

from ...config import ChainConfig
from ...errors import FetchFailure
from ...interfaces.chain import ChainClient
from ...models import Position
from . import parser

logger = logging.getLogger(__name__)


class CreditShaftPositionAdapter:
    """Fetch and decode positions from the CreditShaft leverage contract."""

    def __init__(self, chain_client: ChainClient, config: ChainConfig) -> None:
        self._client = chain_client
        self._contract = config.contracts.get("creditshaft", "")
        self._selector = config.position_selector
        self._token_decimals = dict(config.token_decimals)

    async def get_position_details(self, wallet_address: str) -> Position | None:
        """Return the wallet's position, or None when the contract has none.

        Raises:
            FetchFailure: the chain could not be read or returned garbage.
        """
        if not self._contract or not self._selector:
            raise FetchFailure("CreditShaft contract or position selector not configured")

        try:
            calldata = parser.encode_address_call(self._selector, wallet_address)
            data = await self._client.eth_call(self._contract, calldata)
        except Exception as e:
            raise FetchFailure(f"getPosition({wallet_address}) failed: {e}") from e

        position = parser.parse_position(data, self._token_decimals)
        if position is None or not position.is_active:
            logger.debug("No active position for %s", wallet_address)
        else:
            logger.debug(
                "Position for %s: collateral %.4f LINK, borrowed %.2f USDC, leverage %.2fx",
                wallet_address,
                position.collateral_link,
                position.borrowed_usdc,
                position.leverage_ratio,
            )
        return position
