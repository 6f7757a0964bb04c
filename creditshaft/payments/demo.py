"""Demo gateway. Settles every hold without contacting a processor."""
import logging
import secrets

from ..config import DemoPaymentsConfig
from ..models import CaptureResult

logger = logging.getLogger(__name__)


class DemoHoldGateway:
    """Always-succeeding gateway used when ``payments.mode`` is ``demo``."""

    def __init__(self, config: DemoPaymentsConfig | None = None) -> None:
        self.hold_amount = (config or DemoPaymentsConfig()).hold_amount
        self.captured: list[str] = []
        self.released: list[str] = []
        self.cancelled: list[str] = []

    async def capture(self, pre_auth_id: str, amount: int | None = None) -> CaptureResult:
        self.captured.append(pre_auth_id)
        captured = amount if amount is not None else self.hold_amount
        logger.info("Demo capture of %s for %d", pre_auth_id, captured)
        return CaptureResult(
            captured_amount=captured,
            external_reference="demo_" + secrets.token_hex(6),
        )

    async def release(self, pre_auth_id: str) -> None:
        self.released.append(pre_auth_id)
        logger.info("Demo release of %s", pre_auth_id)

    async def cancel(self, pre_auth_id: str) -> None:
        self.cancelled.append(pre_auth_id)
        logger.info("Demo cancel of %s", pre_auth_id)
