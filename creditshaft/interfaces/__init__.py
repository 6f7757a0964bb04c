"""Protocol interfaces for the loan lifecycle engine."""
from .chain import ChainClient, PositionSource
from .payment_gateway import PaymentHoldGateway
from .store import LoanStore

__all__ = ["ChainClient", "LoanStore", "PaymentHoldGateway", "PositionSource"]
