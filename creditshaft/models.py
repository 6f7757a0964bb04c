"""Data models — all frozen (immutable)."""
from __future__ import annotations

import secrets
import string
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum

_ID_ALPHABET = string.digits + string.ascii_lowercase


class LoanStatus(str, Enum):
    ACTIVE = "active"
    CHARGED = "charged"
    RELEASED = "released"

    @property
    def is_terminal(self) -> bool:
        return self is not LoanStatus.ACTIVE


# Legal successors per status. Terminal states have none.
TRANSITIONS: dict[LoanStatus, frozenset[LoanStatus]] = {
    LoanStatus.ACTIVE: frozenset({LoanStatus.CHARGED, LoanStatus.RELEASED}),
    LoanStatus.CHARGED: frozenset(),
    LoanStatus.RELEASED: frozenset(),
}


def can_transition(current: LoanStatus, new: LoanStatus) -> bool:
    return new in TRANSITIONS[current]


def generate_loan_id() -> str:
    """Return a new opaque loan id, e.g. ``loan_k3j9x0a2b``."""
    return "loan_" + "".join(secrets.choice(_ID_ALPHABET) for _ in range(9))


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Loan:
    """A credit-card hold pledged against an on-chain borrow."""

    id: str
    wallet_address: str
    pre_auth_id: str | None
    borrow_amount: float
    asset: str
    status: LoanStatus = LoanStatus.ACTIVE
    created_at: datetime | None = None

    customer_id: str = ""
    payment_method_id: str = ""
    interest_rate: float = 0.0
    ltv_ratio: float = 0.0
    original_credit_limit: float = 0.0
    pre_auth_amount: float = 0.0
    tx_hash: str = ""

    # Written together with the terminal transition
    charged_at: datetime | None = None
    released_at: datetime | None = None
    charged_amount: int | None = None
    external_reference: str = ""
    settlement_reason: str = ""

    def with_status(self, status: LoanStatus, **settlement: object) -> Loan:
        return replace(self, status=status, **settlement)

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "walletAddress": self.wallet_address,
            "preAuthId": self.pre_auth_id,
            "borrowAmount": self.borrow_amount,
            "asset": self.asset,
            "status": self.status.value,
            "createdAt": _iso(self.created_at),
            "customerId": self.customer_id,
            "paymentMethodId": self.payment_method_id,
            "interestRate": self.interest_rate,
            "ltvRatio": self.ltv_ratio,
            "originalCreditLimit": self.original_credit_limit,
            "preAuthAmount": self.pre_auth_amount,
            "txHash": self.tx_hash,
            "chargedAt": _iso(self.charged_at),
            "releasedAt": _iso(self.released_at),
            "chargedAmount": self.charged_amount,
            "externalReference": self.external_reference,
            "settlementReason": self.settlement_reason,
        }


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


@dataclass(frozen=True)
class CaptureResult:
    """Outcome of a successful hold capture."""

    captured_amount: int
    external_reference: str


class ChainEventType(str, Enum):
    """Settlement events emitted by the CreditShaft contract's automation."""

    AUTOMATION_SCHEDULED = "AutomationScheduled"
    AUTO_CHARGE_EXECUTED = "AutoChargeExecuted"
    LOAN_RELEASED = "LoanReleased"
    LOAN_LIQUIDATED = "LoanLiquidated"


@dataclass(frozen=True)
class ChainEvent:
    """A contract event reported for one loan.

    ``event_type`` stays a plain string so an unrecognised event can be
    rejected by the lifecycle rather than at parse time.
    """

    event_type: str
    loan_id: str
    data: dict[str, object] = field(default_factory=dict)


@dataclass(frozen=True)
class CreditSummary:
    total_credit_limit: float = 0.0
    total_borrowed: float = 0.0
    total_charged: float = 0.0
    total_released: float = 0.0
    available_credit: float = 0.0
    utilization_percentage: float = 0.0
    active_loans: int = 0

    @classmethod
    def from_loans(cls, loans: list[Loan]) -> CreditSummary:
        """Summarise a wallet's loans; the newest loan carries the credit limit."""
        if not loans:
            return cls()

        newest = max(loans, key=lambda loan: loan.created_at or datetime.min.replace(tzinfo=timezone.utc))
        limit = newest.original_credit_limit

        active = [loan for loan in loans if loan.status is LoanStatus.ACTIVE]
        charged = [loan for loan in loans if loan.status is LoanStatus.CHARGED]
        released = [loan for loan in loans if loan.status is LoanStatus.RELEASED]

        held = sum(loan.pre_auth_amount for loan in active)
        utilization = (held / limit * 100) if limit > 0 else 0.0

        return cls(
            total_credit_limit=limit,
            total_borrowed=sum(loan.borrow_amount for loan in active),
            total_charged=sum(
                loan.charged_amount if loan.charged_amount is not None else loan.pre_auth_amount
                for loan in charged
            ),
            total_released=sum(loan.borrow_amount for loan in released),
            available_credit=max(0.0, limit - held),
            utilization_percentage=round(utilization, 2),
            active_loans=len(active),
        )


@dataclass(frozen=True)
class Position:
    """Leveraged position as reported by the chain.

    Amounts are already scaled to human units.
    """

    is_active: bool
    collateral_link: float = 0.0
    leverage_ratio: float = 0.0
    supplied_link: float = 0.0
    borrowed_usdc: float = 0.0
    entry_price: float = 0.0
    pre_auth_amount: float = 0.0
    pre_auth_expiry_time: int = 0
    pre_auth_charged: bool = False


@dataclass(frozen=True)
class PositionSnapshot:
    """Latest observed position state for one wallet."""

    has_active_position: bool
    position: Position | None
    last_updated: float
    is_updating: bool = False

    @classmethod
    def inactive(cls, last_updated: float) -> PositionSnapshot:
        return cls(has_active_position=False, position=None, last_updated=last_updated)

    @classmethod
    def from_position(cls, position: Position | None, last_updated: float) -> PositionSnapshot:
        if position is not None and position.is_active:
            return cls(has_active_position=True, position=position, last_updated=last_updated)
        return cls.inactive(last_updated)

    def updating(self) -> PositionSnapshot:
        return replace(self, is_updating=True)

    def age(self, now: float) -> float:
        return max(0.0, now - self.last_updated)

    def is_stale(self, max_age: float, now: float) -> bool:
        return self.age(now) > max_age
