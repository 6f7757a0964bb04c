"""Payment hold gateway strategies."""
from ..config import PaymentsConfig
from ..interfaces.payment_gateway import PaymentHoldGateway
from .demo import DemoHoldGateway
from .stripe_gateway import StripeHoldGateway

__all__ = ["DemoHoldGateway", "StripeHoldGateway", "build_gateway"]


def build_gateway(config: PaymentsConfig) -> PaymentHoldGateway:
    """Select the gateway strategy for ``payments.mode``."""
    if config.mode == "stripe":
        return StripeHoldGateway(config.stripe)
    return DemoHoldGateway(config.demo)
