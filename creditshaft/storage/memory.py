"""In-memory loan store, scoped to the lifetime of the instance."""
from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any

from ..errors import DuplicateId, InvalidTransition, NotFound
from ..models import Loan, LoanStatus, can_transition

logger = logging.getLogger(__name__)

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def _created_key(loan: Loan) -> datetime:
    return loan.created_at or _EPOCH


class InMemoryLoanStore:
    """Dict-backed store; ``update_status`` is serialized per loan id."""

    def __init__(self) -> None:
        self._loans: dict[str, Loan] = {}
        self._wallet_loans: dict[str, list[str]] = defaultdict(list)
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, loan_id: str) -> asyncio.Lock:
        lock = self._locks.get(loan_id)
        if lock is None:
            lock = self._locks[loan_id] = asyncio.Lock()
        return lock

    async def create(self, loan: Loan) -> None:
        if loan.id in self._loans:
            raise DuplicateId(f"Loan {loan.id} already exists")
        self._loans[loan.id] = loan
        self._wallet_loans[loan.wallet_address].append(loan.id)
        logger.debug("Stored loan %s for wallet %s", loan.id, loan.wallet_address)

    async def get(self, loan_id: str) -> Loan:
        loan = self._loans.get(loan_id)
        if loan is None:
            raise NotFound(f"Loan {loan_id} not found")
        return loan

    async def update_status(
        self, loan_id: str, new_status: LoanStatus, **settlement: Any
    ) -> Loan:
        async with self._lock_for(loan_id):
            loan = await self.get(loan_id)
            if not can_transition(loan.status, new_status):
                raise InvalidTransition(
                    f"Loan {loan_id} cannot move from {loan.status.value} "
                    f"to {new_status.value}"
                )
            updated = loan.with_status(new_status, **settlement)
            self._loans[loan_id] = updated
            return updated

    async def list_by_wallet(self, wallet_address: str) -> list[Loan]:
        loans = [
            self._loans[loan_id]
            for loan_id in self._wallet_loans.get(wallet_address, [])
            if loan_id in self._loans
        ]
        return sorted(loans, key=_created_key)

    async def list_all(self) -> list[Loan]:
        return sorted(self._loans.values(), key=_created_key)

    async def stats(self) -> dict[str, int]:
        return {
            "total_loans": len(self._loans),
            "total_wallets": len(self._wallet_loans),
        }
