"""Caller-facing loan operations returning success/failure envelopes."""
from __future__ import annotations

import logging
import secrets
from dataclasses import asdict, dataclass, field
from typing import Any

from ..errors import EngineError, ValidationError
from ..models import ChainEvent, Loan
from .lifecycle import LoanLifecycleController
from .reconciler import PositionReconciler

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Result:
    """Outcome of a boundary call; ``status`` follows HTTP conventions."""

    success: bool
    status: int = 200
    data: dict[str, Any] = field(default_factory=dict)
    error: str = ""
    error_kind: str = ""
    request_id: str = ""

    @classmethod
    def ok(cls, request_id: str, **data: Any) -> Result:
        return cls(success=True, data=data, request_id=request_id)

    @classmethod
    def fail(cls, request_id: str, exc: Exception) -> Result:
        if isinstance(exc, EngineError):
            return cls(
                success=False,
                status=exc.http_status,
                error=exc.message,
                error_kind=exc.kind,
                request_id=request_id,
            )
        return cls(
            success=False,
            status=500,
            error=str(exc) or "Internal error",
            error_kind="internal_error",
            request_id=request_id,
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _request_id() -> str:
    return secrets.token_hex(5)


def _loan_from_payload(payload: dict[str, Any]) -> Loan:
    """Build a Loan from a camelCase or snake_case request body."""

    def pick(snake: str, camel: str, default: Any = None) -> Any:
        if snake in payload:
            return payload[snake]
        return payload.get(camel, default)

    try:
        return Loan(
            id=pick("id", "id"),
            wallet_address=pick("wallet_address", "walletAddress"),
            pre_auth_id=pick("pre_auth_id", "preAuthId"),
            borrow_amount=pick("borrow_amount", "borrowAmount"),
            asset=pick("asset", "asset"),
            customer_id=pick("customer_id", "customerId", ""),
            payment_method_id=pick("payment_method_id", "paymentMethodId", ""),
            interest_rate=float(pick("interest_rate", "interestRate", 0.0)),
            ltv_ratio=float(pick("ltv_ratio", "ltvRatio", 0.0)),
            original_credit_limit=float(
                pick("original_credit_limit", "originalCreditLimit", 0.0)
            ),
            pre_auth_amount=float(pick("pre_auth_amount", "preAuthAmount", 0.0)),
            tx_hash=pick("tx_hash", "txHash", ""),
        )
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"Malformed loan payload: {exc}") from exc


def _event_from_payload(payload: dict[str, Any]) -> ChainEvent:
    event_type = payload.get("eventType") or payload.get("event_type")
    loan_id = payload.get("loanId") or payload.get("loan_id")
    if not event_type:
        raise ValidationError("eventType is required")
    if not loan_id:
        raise ValidationError("loanId is required")
    data = payload.get("data") or {}
    if not isinstance(data, dict):
        raise ValidationError("Event data must be an object")
    return ChainEvent(event_type=str(event_type), loan_id=str(loan_id), data=data)


class LoanService:
    """Never raises past the boundary; every call returns a ``Result``."""

    def __init__(
        self,
        controller: LoanLifecycleController,
        reconciler: PositionReconciler | None = None,
    ) -> None:
        self._controller = controller
        self._reconciler = reconciler

    async def create_loan(self, payload: dict[str, Any]) -> Result:
        request_id = _request_id()
        try:
            loan = await self._controller.create(_loan_from_payload(payload))
        except Exception as exc:
            return self._failure("create", request_id, exc)

        if self._reconciler is not None and self._reconciler.is_observing(loan.wallet_address):
            await self._reconciler.refresh(loan.wallet_address)
        return Result.ok(request_id, loan=loan.to_dict())

    async def get_loans(self, wallet_address: str | None) -> Result:
        request_id = _request_id()
        try:
            if not wallet_address:
                raise ValidationError("Wallet address parameter is required")
            loans = await self._controller.list_by_wallet(wallet_address)
            summary = await self._controller.credit_summary(wallet_address)
        except Exception as exc:
            return self._failure("list", request_id, exc)
        return Result.ok(
            request_id,
            loans=[loan.to_dict() for loan in loans],
            credit_summary=asdict(summary),
        )

    async def charge_loan(
        self, loan_id: str | None, amount: int | None = None, reason: str | None = None
    ) -> Result:
        request_id = _request_id()
        try:
            if not loan_id:
                raise ValidationError("Missing loanId")
            loan = await self._controller.charge(loan_id, amount=amount, reason=reason)
        except Exception as exc:
            return self._failure("charge", request_id, exc)
        return Result.ok(
            request_id,
            loan=loan.to_dict(),
            charged_amount=loan.charged_amount,
            external_reference=loan.external_reference,
        )

    async def release_loan(self, loan_id: str | None, reason: str | None = None) -> Result:
        request_id = _request_id()
        try:
            if not loan_id:
                raise ValidationError("Loan ID is required")
            loan = await self._controller.release(loan_id, reason=reason)
        except Exception as exc:
            return self._failure("release", request_id, exc)
        return Result.ok(request_id, loan=loan.to_dict(), reason=loan.settlement_reason)

    async def apply_chain_event(self, payload: dict[str, Any]) -> Result:
        """Apply a contract event body: ``{"eventType", "loanId", "data"}``."""
        request_id = _request_id()
        try:
            event = _event_from_payload(payload)
            loan = await self._controller.apply_chain_event(event)
        except Exception as exc:
            return self._failure("chain event", request_id, exc)
        return Result.ok(
            request_id,
            loan_id=loan.id,
            updated_status=loan.status.value,
            loan=loan.to_dict(),
        )

    @staticmethod
    def _failure(action: str, request_id: str, exc: Exception) -> Result:
        if isinstance(exc, EngineError):
            logger.warning("[%s] %s failed (%s): %s", request_id, action, exc.kind, exc.message)
        else:
            logger.exception("[%s] %s failed unexpectedly", request_id, action)
        return Result.fail(request_id, exc)
