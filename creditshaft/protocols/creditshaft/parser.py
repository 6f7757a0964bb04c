"""Pure ABI helpers for the CreditShaft position tuple — no I/O."""
from __future__ import annotations

from ...errors import FetchFailure
from ...models import Position

WORD_HEX_LEN = 64

# Order of the words returned by getPosition(address).
POSITION_FIELDS = (
    "collateral_link",
    "leverage_ratio",
    "supplied_link",
    "borrowed_usdc",
    "entry_price",
    "pre_auth_amount",
    "pre_auth_expiry_time",
    "pre_auth_charged",
    "is_active",
)

DEFAULT_DECIMALS = {"LINK": 18, "USDC": 6, "PRICE": 8, "LEVERAGE": 2, "USD": 2}


def encode_address_call(selector: str, address: str) -> str:
    """Build calldata for a ``fn(address)`` call.

    Example:
        encode_address_call("0x12345678", "0xabc") →
        "0x12345678" + "0" * 61 + "abc"
    """
    sel = selector.lower().removeprefix("0x")
    if len(sel) != 8:
        raise ValueError(f"Selector must be 4 bytes, got {selector!r}")
    addr = address.lower().removeprefix("0x")
    if not addr or len(addr) > 40:
        raise ValueError(f"Invalid address {address!r}")
    return "0x" + sel + addr.rjust(WORD_HEX_LEN, "0")


def split_words(data: str) -> list[int]:
    """Split ABI-encoded return data into unsigned 256-bit integers."""
    body = data.lower().removeprefix("0x")
    if len(body) % WORD_HEX_LEN:
        raise FetchFailure(f"Return data is not word aligned ({len(body)} hex chars)")
    try:
        return [
            int(body[i : i + WORD_HEX_LEN], 16)
            for i in range(0, len(body), WORD_HEX_LEN)
        ]
    except ValueError as exc:
        raise FetchFailure(f"Return data is not hex: {exc}") from exc


def scale(raw: int, decimals: int) -> float:
    return raw / (10**decimals)


def get_decimals(unit: str, token_decimals: dict[str, int]) -> int:
    return token_decimals.get(unit, DEFAULT_DECIMALS[unit])


def parse_position(data: str, token_decimals: dict[str, int]) -> Position | None:
    """Decode ``getPosition`` return data.

    Empty return data means the contract has no record for the wallet.
    """
    words = split_words(data)
    if not words:
        return None
    if len(words) < len(POSITION_FIELDS):
        raise FetchFailure(
            f"Expected {len(POSITION_FIELDS)} words, got {len(words)}"
        )

    raw = dict(zip(POSITION_FIELDS, words))
    link = get_decimals("LINK", token_decimals)

    return Position(
        is_active=bool(raw["is_active"]),
        collateral_link=scale(raw["collateral_link"], link),
        leverage_ratio=scale(raw["leverage_ratio"], get_decimals("LEVERAGE", token_decimals)),
        supplied_link=scale(raw["supplied_link"], link),
        borrowed_usdc=scale(raw["borrowed_usdc"], get_decimals("USDC", token_decimals)),
        entry_price=scale(raw["entry_price"], get_decimals("PRICE", token_decimals)),
        pre_auth_amount=scale(raw["pre_auth_amount"], get_decimals("USD", token_decimals)),
        pre_auth_expiry_time=raw["pre_auth_expiry_time"],
        pre_auth_charged=bool(raw["pre_auth_charged"]),
    )
