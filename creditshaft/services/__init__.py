"""Service modules"""
from .lifecycle import LoanLifecycleController
from .loan_service import LoanService, Result
from .reconciler import PositionReconciler, PositionSubscription

__all__ = [
    "LoanLifecycleController",
    "LoanService",
    "PositionReconciler",
    "PositionSubscription",
    "Result",
]
