from .adapter import CreditShaftPositionAdapter

__all__ = ["CreditShaftPositionAdapter"]
