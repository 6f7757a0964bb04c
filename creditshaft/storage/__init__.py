"""Loan store implementations."""
from ..config import StorageConfig
from ..interfaces.store import LoanStore
from .memory import InMemoryLoanStore
from .sql import SqlLoanStore

__all__ = ["InMemoryLoanStore", "SqlLoanStore", "build_store"]


def build_store(config: StorageConfig) -> LoanStore:
    """Build the loan store selected by ``storage.backend``."""
    if config.backend == "sqlite":
        return SqlLoanStore(f"sqlite:///{config.path}")
    return InMemoryLoanStore()
