"""Payment hold gateway protocol — capture/release of a card pre-authorization.

Implementations raise only ``UpstreamUnavailable`` (transient) or
``UpstreamRejected`` (terminal). Amounts are in the smallest currency unit.
"""
from typing import Protocol

from ..models import CaptureResult


class PaymentHoldGateway(Protocol):
    async def capture(
        self, pre_auth_id: str, amount: int | None = None
    ) -> CaptureResult: ...

    async def release(self, pre_auth_id: str) -> None: ...

    async def cancel(self, pre_auth_id: str) -> None: ...
