"""Loan lifecycle: validates and applies create, charge and release transitions."""
from __future__ import annotations

import logging
from dataclasses import replace
from numbers import Real

from ..errors import (
    InvalidTransition,
    NoHoldToCharge,
    SettlementInProgress,
    UpstreamRejected,
    UpstreamUnavailable,
    ValidationError,
)
from ..interfaces.payment_gateway import PaymentHoldGateway
from ..interfaces.store import LoanStore
from ..models import ChainEvent, ChainEventType, CreditSummary, Loan, LoanStatus, utcnow

logger = logging.getLogger(__name__)

REQUIRED_FIELDS = ("id", "pre_auth_id", "wallet_address", "borrow_amount", "asset")


class LoanLifecycleController:
    """Owns the ``active → charged | released`` state machine.

    The gateway is a strategy (real processor or demo), so every transition
    goes through the same validation and storage path. No lock is held across
    a gateway call: an in-process claim keeps a second settlement of the same
    loan away from the gateway, and the store's atomic transition is the final
    guard against a concurrent settlement elsewhere.
    """

    def __init__(self, store: LoanStore, gateway: PaymentHoldGateway) -> None:
        self._store = store
        self._gateway = gateway
        self._settling: set[str] = set()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get(self, loan_id: str) -> Loan:
        return await self._store.get(loan_id)

    async def list_by_wallet(self, wallet_address: str) -> list[Loan]:
        return await self._store.list_by_wallet(wallet_address)

    async def credit_summary(self, wallet_address: str) -> CreditSummary:
        return CreditSummary.from_loans(await self._store.list_by_wallet(wallet_address))

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def create(self, loan: Loan) -> Loan:
        """Validate and persist a new loan in ``active`` status."""
        for name in REQUIRED_FIELDS:
            value = getattr(loan, name)
            if value is None or value == "":
                raise ValidationError(f"Missing required field: {name}")

        amount = loan.borrow_amount
        if isinstance(amount, bool) or not isinstance(amount, Real) or amount <= 0:
            raise ValidationError("borrow_amount must be a positive number")

        created = replace(loan, status=LoanStatus.ACTIVE, created_at=utcnow())
        await self._store.create(created)
        logger.info(
            "Created loan %s for %s: %s %s (hold %s)",
            created.id,
            created.wallet_address,
            created.borrow_amount,
            created.asset,
            created.pre_auth_id,
        )
        return created

    async def charge(
        self, loan_id: str, amount: int | None = None, reason: str | None = None
    ) -> Loan:
        """Capture the loan's hold and mark it ``charged``."""
        self._claim(loan_id)
        try:
            loan = await self._load_active(loan_id, "charge")
            if not loan.pre_auth_id:
                raise NoHoldToCharge(f"Loan {loan_id} has no pre-authorization to charge")

            try:
                result = await self._gateway.capture(loan.pre_auth_id, amount)
            except UpstreamUnavailable:
                logger.warning("Capture of %s unavailable; loan %s stays active", loan.pre_auth_id, loan_id)
                raise
            except UpstreamRejected:
                logger.error("Capture of %s rejected; loan %s needs review", loan.pre_auth_id, loan_id)
                raise

            try:
                charged = await self._store.update_status(
                    loan_id,
                    LoanStatus.CHARGED,
                    charged_at=utcnow(),
                    charged_amount=result.captured_amount,
                    external_reference=result.external_reference,
                    settlement_reason=reason or "",
                )
            except InvalidTransition:
                logger.error(
                    "Captured %d on %s (%s) but loan %s was settled elsewhere; reconcile manually",
                    result.captured_amount,
                    loan.pre_auth_id,
                    result.external_reference,
                    loan_id,
                )
                raise
        finally:
            self._settling.discard(loan_id)

        logger.info(
            "Charged loan %s: captured %d (%s)",
            loan_id,
            result.captured_amount,
            result.external_reference,
        )
        return charged

    async def release(self, loan_id: str, reason: str | None = None) -> Loan:
        """Release the loan's hold and mark it ``released``.

        A loan without a hold has nothing to release and is marked released
        without contacting the gateway.
        """
        self._claim(loan_id)
        try:
            loan = await self._load_active(loan_id, "release")
            if loan.pre_auth_id:
                try:
                    await self._gateway.release(loan.pre_auth_id)
                except UpstreamUnavailable:
                    logger.warning("Release of %s unavailable; loan %s stays active", loan.pre_auth_id, loan_id)
                    raise
                except UpstreamRejected:
                    logger.error("Release of %s rejected; loan %s needs review", loan.pre_auth_id, loan_id)
                    raise
            else:
                logger.info("Loan %s has no hold; releasing locally", loan_id)

            released = await self._store.update_status(
                loan_id,
                LoanStatus.RELEASED,
                released_at=utcnow(),
                settlement_reason=reason or "Manual release",
            )
        finally:
            self._settling.discard(loan_id)

        logger.info("Released loan %s", loan_id)
        return released

    async def apply_chain_event(self, event: ChainEvent) -> Loan:
        """Record a settlement the contract already performed.

        The hold was settled on-chain, so the gateway is never contacted;
        only the store transition is applied. A repeated event for a settled
        loan raises ``InvalidTransition``.
        """
        loan = await self._store.get(event.loan_id)
        try:
            event_type = ChainEventType(event.event_type)
        except ValueError:
            logger.error("Unknown chain event %r for loan %s", event.event_type, event.loan_id)
            raise ValidationError(f"Unknown event type: {event.event_type}") from None

        data = event.data
        if event_type is ChainEventType.AUTOMATION_SCHEDULED:
            logger.info("Automation scheduled for loan %s at %s", loan.id, data.get("triggerTime"))
            return loan

        if event_type is ChainEventType.AUTO_CHARGE_EXECUTED:
            if not data.get("success"):
                logger.warning("Auto-charge failed on-chain for loan %s: %s", loan.id, data.get("error"))
                return loan
            try:
                amount = int(data["chargedAmount"]) if data.get("chargedAmount") is not None else None
            except (TypeError, ValueError):
                raise ValidationError(f"Malformed chargedAmount: {data.get('chargedAmount')!r}") from None
            updated = await self._store.update_status(
                loan.id,
                LoanStatus.CHARGED,
                charged_at=utcnow(),
                charged_amount=amount,
                external_reference=str(data.get("stripeChargeId") or ""),
                settlement_reason="Automated charge",
            )
        elif event_type is ChainEventType.LOAN_LIQUIDATED:
            updated = await self._store.update_status(
                loan.id,
                LoanStatus.CHARGED,
                charged_at=utcnow(),
                settlement_reason="Liquidation",
            )
        else:
            updated = await self._store.update_status(
                loan.id,
                LoanStatus.RELEASED,
                released_at=utcnow(),
                settlement_reason="Released on-chain",
            )

        logger.info("Applied %s to loan %s: now %s", event_type.value, loan.id, updated.status.value)
        return updated

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _load_active(self, loan_id: str, action: str) -> Loan:
        loan = await self._store.get(loan_id)
        if loan.status is not LoanStatus.ACTIVE:
            raise InvalidTransition(
                f"Cannot {action} loan {loan_id}: status is {loan.status.value}"
            )
        return loan

    def _claim(self, loan_id: str) -> None:
        # Synchronous check-and-add: nothing else runs on the loop in between.
        if loan_id in self._settling:
            raise SettlementInProgress(f"Loan {loan_id} is already being settled")
        self._settling.add(loan_id)
