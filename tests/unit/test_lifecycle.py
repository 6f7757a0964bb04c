"""Unit tests for the loan lifecycle controller."""
from __future__ import annotations

import asyncio
from dataclasses import replace
from unittest.mock import AsyncMock

import pytest

from creditshaft.config import DemoPaymentsConfig
from creditshaft.errors import (
    DuplicateId,
    InvalidTransition,
    NoHoldToCharge,
    NotFound,
    SettlementInProgress,
    UpstreamRejected,
    UpstreamUnavailable,
    ValidationError,
)
from creditshaft.models import CaptureResult, ChainEvent, Loan, LoanStatus
from creditshaft.payments import DemoHoldGateway
from creditshaft.services import LoanLifecycleController
from creditshaft.storage import InMemoryLoanStore


class TestCreate:
    @pytest.mark.asyncio
    async def test_create_is_active_and_stamped(
        self, controller: LoanLifecycleController, sample_loan: Loan
    ) -> None:
        created = await controller.create(replace(sample_loan, status=LoanStatus.CHARGED))
        assert created.status is LoanStatus.ACTIVE
        assert created.created_at is not None
        assert await controller.get("L1") == created

    @pytest.mark.asyncio
    @pytest.mark.parametrize("field", ["id", "pre_auth_id", "wallet_address", "asset"])
    async def test_missing_field(
        self, controller: LoanLifecycleController, sample_loan: Loan, field: str
    ) -> None:
        with pytest.raises(ValidationError, match=field):
            await controller.create(replace(sample_loan, **{field: ""}))

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", [0, -5, True])
    async def test_bad_amount(
        self, controller: LoanLifecycleController, sample_loan: Loan, amount: object
    ) -> None:
        with pytest.raises(ValidationError):
            await controller.create(replace(sample_loan, borrow_amount=amount))

    @pytest.mark.asyncio
    async def test_duplicate_id(
        self, controller: LoanLifecycleController, sample_loan: Loan
    ) -> None:
        await controller.create(sample_loan)
        with pytest.raises(DuplicateId):
            await controller.create(replace(sample_loan, wallet_address="0xdef"))


class TestCharge:
    @pytest.mark.asyncio
    async def test_charge_then_charge_again(
        self,
        controller: LoanLifecycleController,
        gateway: AsyncMock,
        sample_loan: Loan,
    ) -> None:
        await controller.create(sample_loan)

        charged = await controller.charge("L1", reason="Liquidation")
        assert charged.status is LoanStatus.CHARGED
        assert charged.charged_amount == 1000
        assert charged.external_reference == "ch_1"
        assert charged.settlement_reason == "Liquidation"
        assert charged.charged_at is not None
        gateway.capture.assert_awaited_once_with("PI1", None)

        with pytest.raises(InvalidTransition):
            await controller.charge("L1")
        assert gateway.capture.await_count == 1

    @pytest.mark.asyncio
    async def test_release_after_charge_rejected(
        self,
        controller: LoanLifecycleController,
        gateway: AsyncMock,
        sample_loan: Loan,
    ) -> None:
        await controller.create(sample_loan)
        await controller.charge("L1")
        with pytest.raises(InvalidTransition):
            await controller.release("L1")
        gateway.release.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_partial_amount_passed_through(
        self,
        controller: LoanLifecycleController,
        gateway: AsyncMock,
        sample_loan: Loan,
    ) -> None:
        await controller.create(sample_loan)
        await controller.charge("L1", amount=500)
        gateway.capture.assert_awaited_once_with("PI1", 500)

    @pytest.mark.asyncio
    async def test_unknown_loan(self, controller: LoanLifecycleController, gateway: AsyncMock) -> None:
        with pytest.raises(NotFound):
            await controller.charge("L2")
        gateway.capture.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_no_hold_to_charge(
        self,
        store: InMemoryLoanStore,
        controller: LoanLifecycleController,
        gateway: AsyncMock,
        sample_loan: Loan,
    ) -> None:
        # Legacy record written without a hold
        await store.create(replace(sample_loan, pre_auth_id=None))
        with pytest.raises(NoHoldToCharge):
            await controller.charge("L1")
        gateway.capture.assert_not_awaited()
        assert (await controller.get("L1")).status is LoanStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_unavailable_leaves_loan_active(
        self,
        controller: LoanLifecycleController,
        gateway: AsyncMock,
        sample_loan: Loan,
    ) -> None:
        await controller.create(sample_loan)
        gateway.capture.side_effect = [
            UpstreamUnavailable("timeout"),
            CaptureResult(captured_amount=1000, external_reference="ch_2"),
        ]

        with pytest.raises(UpstreamUnavailable):
            await controller.charge("L1")
        assert (await controller.get("L1")).status is LoanStatus.ACTIVE

        charged = await controller.charge("L1")
        assert charged.status is LoanStatus.CHARGED
        assert charged.external_reference == "ch_2"

    @pytest.mark.asyncio
    async def test_rejected_leaves_loan_active(
        self,
        controller: LoanLifecycleController,
        gateway: AsyncMock,
        sample_loan: Loan,
    ) -> None:
        await controller.create(sample_loan)
        gateway.capture.side_effect = UpstreamRejected("card declined")

        with pytest.raises(UpstreamRejected, match="card declined"):
            await controller.charge("L1")
        assert (await controller.get("L1")).status is LoanStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_concurrent_charges_capture_once(
        self,
        controller: LoanLifecycleController,
        gateway: AsyncMock,
        sample_loan: Loan,
    ) -> None:
        await controller.create(sample_loan)

        async def slow_capture(pre_auth_id: str, amount: int | None) -> CaptureResult:
            await asyncio.sleep(0.01)
            return CaptureResult(captured_amount=1000, external_reference="ch_1")

        gateway.capture.side_effect = slow_capture

        results = await asyncio.gather(
            controller.charge("L1"),
            controller.charge("L1"),
            return_exceptions=True,
        )

        successes = [r for r in results if isinstance(r, Loan)]
        failures = [r for r in results if isinstance(r, Exception)]
        assert len(successes) == 1
        assert len(failures) == 1
        assert isinstance(failures[0], SettlementInProgress)
        assert isinstance(failures[0], InvalidTransition)
        assert gateway.capture.await_count == 1

    @pytest.mark.asyncio
    async def test_claim_cleared_after_failure(
        self,
        controller: LoanLifecycleController,
        gateway: AsyncMock,
        sample_loan: Loan,
    ) -> None:
        await controller.create(sample_loan)
        gateway.capture.side_effect = UpstreamUnavailable("timeout")
        with pytest.raises(UpstreamUnavailable):
            await controller.charge("L1")

        gateway.capture.side_effect = None
        charged = await controller.charge("L1")
        assert charged.status is LoanStatus.CHARGED
        assert gateway.capture.await_count == 2


class SlowReadStore(InMemoryLoanStore):
    """Reads return only after a delay, like a remote database would."""

    async def get(self, loan_id: str) -> Loan:
        loan = await super().get(loan_id)
        await asyncio.sleep(0.01)
        return loan


class TestSettlementClaim:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("action", ["charge", "release"])
    async def test_second_settlement_during_slow_read_never_reaches_gateway(
        self, gateway: AsyncMock, sample_loan: Loan, action: str
    ) -> None:
        controller = LoanLifecycleController(SlowReadStore(), gateway)
        await controller.create(sample_loan)
        settle = getattr(controller, action)

        first = asyncio.create_task(settle("L1"))
        await asyncio.sleep(0.005)
        second = asyncio.create_task(settle("L1"))
        results = await asyncio.gather(first, second, return_exceptions=True)

        assert isinstance(results[0], Loan)
        assert isinstance(results[1], SettlementInProgress)
        gateway_call = gateway.capture if action == "charge" else gateway.release
        assert gateway_call.await_count == 1

    @pytest.mark.asyncio
    async def test_settled_elsewhere_after_capture_is_logged(
        self,
        store: InMemoryLoanStore,
        controller: LoanLifecycleController,
        gateway: AsyncMock,
        sample_loan: Loan,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        await controller.create(sample_loan)

        async def capture_while_released(pre_auth_id: str, amount: int | None) -> CaptureResult:
            await store.update_status("L1", LoanStatus.RELEASED)
            return CaptureResult(captured_amount=1000, external_reference="ch_lost")

        gateway.capture.side_effect = capture_while_released

        with caplog.at_level("ERROR", logger="creditshaft.services.lifecycle"):
            with pytest.raises(InvalidTransition):
                await controller.charge("L1")

        assert "ch_lost" in caplog.text
        assert "reconcile" in caplog.text
        assert (await store.get("L1")).status is LoanStatus.RELEASED


class TestChainEvents:
    @pytest.mark.asyncio
    async def test_auto_charge_records_settlement(
        self,
        controller: LoanLifecycleController,
        gateway: AsyncMock,
        sample_loan: Loan,
    ) -> None:
        await controller.create(sample_loan)

        loan = await controller.apply_chain_event(
            ChainEvent(
                "AutoChargeExecuted",
                "L1",
                {"success": True, "chargedAmount": 150_000, "stripeChargeId": "ch_auto"},
            )
        )

        assert loan.status is LoanStatus.CHARGED
        assert loan.charged_amount == 150_000
        assert loan.external_reference == "ch_auto"
        assert loan.charged_at is not None
        gateway.capture.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_failed_auto_charge_leaves_loan_active(
        self, controller: LoanLifecycleController, sample_loan: Loan
    ) -> None:
        await controller.create(sample_loan)
        loan = await controller.apply_chain_event(
            ChainEvent("AutoChargeExecuted", "L1", {"success": False, "error": "insufficient"})
        )
        assert loan.status is LoanStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_scheduled_is_acknowledged(
        self, controller: LoanLifecycleController, sample_loan: Loan
    ) -> None:
        await controller.create(sample_loan)
        loan = await controller.apply_chain_event(
            ChainEvent("AutomationScheduled", "L1", {"triggerTime": 1_700_000_000})
        )
        assert loan.status is LoanStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_released_on_chain(
        self,
        controller: LoanLifecycleController,
        gateway: AsyncMock,
        sample_loan: Loan,
    ) -> None:
        await controller.create(sample_loan)
        loan = await controller.apply_chain_event(ChainEvent("LoanReleased", "L1"))
        assert loan.status is LoanStatus.RELEASED
        assert loan.released_at is not None
        gateway.release.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_liquidation_marks_charged(
        self, controller: LoanLifecycleController, sample_loan: Loan
    ) -> None:
        await controller.create(sample_loan)
        loan = await controller.apply_chain_event(
            ChainEvent("LoanLiquidated", "L1", {"amount": 900})
        )
        assert loan.status is LoanStatus.CHARGED
        assert loan.settlement_reason == "Liquidation"

    @pytest.mark.asyncio
    async def test_repeated_event_is_a_conflict(
        self, controller: LoanLifecycleController, sample_loan: Loan
    ) -> None:
        await controller.create(sample_loan)
        await controller.apply_chain_event(ChainEvent("LoanReleased", "L1"))
        with pytest.raises(InvalidTransition):
            await controller.apply_chain_event(ChainEvent("LoanLiquidated", "L1"))

    @pytest.mark.asyncio
    async def test_unknown_loan(self, controller: LoanLifecycleController) -> None:
        with pytest.raises(NotFound):
            await controller.apply_chain_event(ChainEvent("LoanReleased", "nope"))

    @pytest.mark.asyncio
    async def test_unknown_event_type(
        self, controller: LoanLifecycleController, sample_loan: Loan
    ) -> None:
        await controller.create(sample_loan)
        with pytest.raises(ValidationError, match="Unknown event type"):
            await controller.apply_chain_event(ChainEvent("LoanRefinanced", "L1"))
        assert (await controller.get("L1")).status is LoanStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_malformed_charged_amount(
        self, controller: LoanLifecycleController, sample_loan: Loan
    ) -> None:
        await controller.create(sample_loan)
        with pytest.raises(ValidationError, match="chargedAmount"):
            await controller.apply_chain_event(
                ChainEvent("AutoChargeExecuted", "L1", {"success": True, "chargedAmount": "lots"})
            )


class TestRelease:
    @pytest.mark.asyncio
    async def test_release_default_reason(
        self,
        controller: LoanLifecycleController,
        gateway: AsyncMock,
        sample_loan: Loan,
    ) -> None:
        await controller.create(sample_loan)
        released = await controller.release("L1")
        assert released.status is LoanStatus.RELEASED
        assert released.settlement_reason == "Manual release"
        assert released.released_at is not None
        gateway.release.assert_awaited_once_with("PI1")

    @pytest.mark.asyncio
    async def test_release_without_hold_skips_gateway(
        self,
        store: InMemoryLoanStore,
        controller: LoanLifecycleController,
        gateway: AsyncMock,
        sample_loan: Loan,
    ) -> None:
        await store.create(replace(sample_loan, pre_auth_id=None))
        released = await controller.release("L1", reason="Position closed")
        assert released.status is LoanStatus.RELEASED
        assert released.settlement_reason == "Position closed"
        gateway.release.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_release_unavailable_leaves_loan_active(
        self,
        controller: LoanLifecycleController,
        gateway: AsyncMock,
        sample_loan: Loan,
    ) -> None:
        await controller.create(sample_loan)
        gateway.release.side_effect = UpstreamUnavailable("503")
        with pytest.raises(UpstreamUnavailable):
            await controller.release("L1")
        assert (await controller.get("L1")).status is LoanStatus.ACTIVE


class TestQueries:
    @pytest.mark.asyncio
    async def test_list_and_summary(
        self, controller: LoanLifecycleController, sample_loan: Loan
    ) -> None:
        await controller.create(sample_loan)
        await controller.create(replace(sample_loan, id="L2", pre_auth_id="PI2", borrow_amount=500))
        await controller.create(replace(sample_loan, id="L3", wallet_address="0xother"))
        await controller.release("L2")

        loans = await controller.list_by_wallet("0xabc")
        assert [loan.id for loan in loans] == ["L1", "L2"]

        summary = await controller.credit_summary("0xabc")
        assert summary.active_loans == 1
        assert summary.total_borrowed == 1000
        assert summary.total_released == 500
        assert summary.total_credit_limit == 12000

    @pytest.mark.asyncio
    async def test_unknown_wallet(self, controller: LoanLifecycleController) -> None:
        assert await controller.list_by_wallet("0xnobody") == []
        assert (await controller.credit_summary("0xnobody")).active_loans == 0


class TestWithDemoGateway:
    @pytest.mark.asyncio
    async def test_full_flow(self, sample_loan: Loan) -> None:
        gateway = DemoHoldGateway(DemoPaymentsConfig(hold_amount=1_200_000))
        controller = LoanLifecycleController(InMemoryLoanStore(), gateway)

        await controller.create(sample_loan)
        await controller.create(replace(sample_loan, id="L2", pre_auth_id="PI2"))

        charged = await controller.charge("L1")
        assert charged.charged_amount == 1_200_000
        assert charged.external_reference.startswith("demo_")

        await controller.release("L2")
        assert gateway.captured == ["PI1"]
        assert gateway.released == ["PI2"]
