"""Loan store protocol. Keyed storage for loan records, no business logic."""
from typing import Any, Protocol

from ..models import Loan, LoanStatus


class LoanStore(Protocol):
    async def create(self, loan: Loan) -> None: ...

    async def get(self, loan_id: str) -> Loan: ...

    async def update_status(
        self, loan_id: str, new_status: LoanStatus, **settlement: Any
    ) -> Loan: ...

    async def list_by_wallet(self, wallet_address: str) -> list[Loan]: ...

    async def list_all(self) -> list[Loan]: ...

    async def stats(self) -> dict[str, int]: ...
