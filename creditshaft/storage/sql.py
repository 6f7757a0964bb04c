"""Durable loan store on SQLAlchemy.

Status transitions are a single conditional UPDATE, so the compare-and-set
holds across processes sharing the database.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import fields
from datetime import datetime
from typing import Any, TypeVar

from sqlalchemy import Engine, Float, Index, Integer, String, create_engine, func, make_url, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Mapped, Session, declarative_base, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool
from sqlalchemy.types import TypeDecorator

from ..errors import DuplicateId, InvalidTransition, NotFound
from ..models import Loan, LoanStatus, can_transition

logger = logging.getLogger(__name__)

T = TypeVar("T")

Base = declarative_base()

_LOAN_FIELDS = tuple(f.name for f in fields(Loan))
_SETTLEMENT_FIELDS = {
    "charged_at",
    "released_at",
    "charged_amount",
    "external_reference",
    "settlement_reason",
}


class IsoDateTime(TypeDecorator):
    """Timezone-aware datetime stored as ISO-8601 text."""

    impl = String
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Any) -> str | None:
        return value.isoformat() if value is not None else None

    def process_result_value(self, value: str | None, dialect: Any) -> datetime | None:
        return datetime.fromisoformat(value) if value is not None else None


class LoanRow(Base):
    __tablename__ = "loans"
    __table_args__ = (Index("idx_loans_wallet", "wallet_address", "created_at"),)

    # Insertion order, used to break created_at ties
    seq: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    id: Mapped[str] = mapped_column(String, unique=True, index=True)
    wallet_address: Mapped[str] = mapped_column(String)
    pre_auth_id: Mapped[str | None] = mapped_column(String, nullable=True)
    borrow_amount: Mapped[float] = mapped_column(Float)
    asset: Mapped[str] = mapped_column(String)
    status: Mapped[str] = mapped_column(String)
    created_at: Mapped[datetime | None] = mapped_column(IsoDateTime, nullable=True)

    customer_id: Mapped[str] = mapped_column(String, default="")
    payment_method_id: Mapped[str] = mapped_column(String, default="")
    interest_rate: Mapped[float] = mapped_column(Float, default=0.0)
    ltv_ratio: Mapped[float] = mapped_column(Float, default=0.0)
    original_credit_limit: Mapped[float] = mapped_column(Float, default=0.0)
    pre_auth_amount: Mapped[float] = mapped_column(Float, default=0.0)
    tx_hash: Mapped[str] = mapped_column(String, default="")

    charged_at: Mapped[datetime | None] = mapped_column(IsoDateTime, nullable=True)
    released_at: Mapped[datetime | None] = mapped_column(IsoDateTime, nullable=True)
    charged_amount: Mapped[int | None] = mapped_column(Integer, nullable=True)
    external_reference: Mapped[str] = mapped_column(String, default="")
    settlement_reason: Mapped[str] = mapped_column(String, default="")


def _to_row(loan: Loan) -> LoanRow:
    values = {name: getattr(loan, name) for name in _LOAN_FIELDS}
    values["status"] = loan.status.value
    return LoanRow(**values)


def _from_row(row: LoanRow) -> Loan:
    values = {name: getattr(row, name) for name in _LOAN_FIELDS}
    values["status"] = LoanStatus(row.status)
    return Loan(**values)


def _create_engine(url: str) -> Engine:
    parsed = make_url(url)
    if parsed.get_backend_name() != "sqlite":
        return create_engine(url, pool_pre_ping=True)
    # Worker threads share SQLite connections; an in-memory database must
    # also stay on one connection to survive between sessions.
    options: dict[str, Any] = {"connect_args": {"check_same_thread": False}}
    if parsed.database in (None, "", ":memory:"):
        options["poolclass"] = StaticPool
    return create_engine(url, **options)


class SqlLoanStore:
    """Blocking session work runs in a worker thread, one call at a time.

    A single permit keeps a shared in-memory SQLite connection to one thread
    at a time; the conditional UPDATE still guards other processes.
    """

    def __init__(self, url: str = "sqlite://") -> None:
        self._engine = _create_engine(url)
        Base.metadata.create_all(bind=self._engine)
        self._sessions = sessionmaker(autocommit=False, autoflush=False, bind=self._engine)
        self._permit = asyncio.Semaphore(1)
        logger.info("SQL loan store ready at %s", self._engine.url)

    def close(self) -> None:
        self._engine.dispose()

    async def _run(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        async with self._permit:
            return await asyncio.to_thread(fn, *args, **kwargs)

    # ------------------------------------------------------------------
    # Blocking session bodies
    # ------------------------------------------------------------------

    def _create(self, loan: Loan) -> None:
        with self._sessions() as session:
            session.add(_to_row(loan))
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise DuplicateId(f"Loan {loan.id} already exists") from exc

    @staticmethod
    def _load(session: Session, loan_id: str) -> Loan:
        row = session.scalars(select(LoanRow).where(LoanRow.id == loan_id)).first()
        if row is None:
            raise NotFound(f"Loan {loan_id} not found")
        return _from_row(row)

    def _get(self, loan_id: str) -> Loan:
        with self._sessions() as session:
            return self._load(session, loan_id)

    def _update_status(
        self, loan_id: str, new_status: LoanStatus, settlement: dict[str, Any]
    ) -> Loan:
        with self._sessions() as session:
            current = self._load(session, loan_id)
            if not can_transition(current.status, new_status):
                raise InvalidTransition(
                    f"Loan {loan_id} cannot move from {current.status.value} "
                    f"to {new_status.value}"
                )

            result = session.execute(
                update(LoanRow)
                .where(LoanRow.id == loan_id, LoanRow.status == current.status.value)
                .values(status=new_status.value, **settlement)
            )
            session.commit()

            if result.rowcount != 1:
                # Lost the race: another process moved the loan since we read it.
                latest = self._load(session, loan_id)
                raise InvalidTransition(
                    f"Loan {loan_id} cannot move from {latest.status.value} "
                    f"to {new_status.value}"
                )
            return self._load(session, loan_id)

    def _list(self, wallet_address: str | None) -> list[Loan]:
        query = select(LoanRow).order_by(LoanRow.created_at, LoanRow.seq)
        if wallet_address is not None:
            query = query.where(LoanRow.wallet_address == wallet_address)
        with self._sessions() as session:
            return [_from_row(row) for row in session.scalars(query).all()]

    def _stats(self) -> dict[str, int]:
        with self._sessions() as session:
            loans, wallets = session.execute(
                select(
                    func.count(LoanRow.seq),
                    func.count(func.distinct(LoanRow.wallet_address)),
                )
            ).one()
        return {"total_loans": loans, "total_wallets": wallets}

    # ------------------------------------------------------------------
    # LoanStore
    # ------------------------------------------------------------------

    async def create(self, loan: Loan) -> None:
        await self._run(self._create, loan)

    async def get(self, loan_id: str) -> Loan:
        return await self._run(self._get, loan_id)

    async def update_status(
        self, loan_id: str, new_status: LoanStatus, **settlement: Any
    ) -> Loan:
        unknown = set(settlement) - _SETTLEMENT_FIELDS
        if unknown:
            raise ValueError(f"Unsupported settlement fields: {sorted(unknown)}")
        return await self._run(self._update_status, loan_id, new_status, settlement)

    async def list_by_wallet(self, wallet_address: str) -> list[Loan]:
        return await self._run(self._list, wallet_address)

    async def list_all(self) -> list[Loan]:
        return await self._run(self._list, None)

    async def stats(self) -> dict[str, int]:
        return await self._run(self._stats)
