"""Shared test fixtures and sample data."""
from __future__ import annotations

import asyncio
import textwrap
from pathlib import Path
from unittest.mock import AsyncMock

import pytest

from creditshaft.config import (
    AppConfig,
    ChainConfig,
    PaymentsConfig,
    ReconcilerConfig,
    StorageConfig,
)
from creditshaft.models import CaptureResult, Loan, Position
from creditshaft.services import LoanLifecycleController
from creditshaft.storage import InMemoryLoanStore


# ---------------------------------------------------------------------------
# Config fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def sample_chain_config() -> ChainConfig:
    return ChainConfig(
        rpc_endpoints=("https://rpc1.example.com", "https://rpc2.example.com"),
        rpc_timeout=10,
        contracts={"creditshaft": "0x00000000000000000000000000000000000000cc"},
        position_selector="0x16c19739",
        token_decimals={"LINK": 18, "USDC": 6, "PRICE": 8},
    )


@pytest.fixture()
def sample_app_config(sample_chain_config: ChainConfig) -> AppConfig:
    return AppConfig(
        payments=PaymentsConfig(mode="demo"),
        storage=StorageConfig(backend="memory"),
        chain=sample_chain_config,
        reconciler=ReconcilerConfig(),
    )


SAMPLE_YAML = textwrap.dedent("""\
    payments:
      mode: stripe
      stripe:
        secret_key: "sk_test_123"
    storage:
      backend: sqlite
      path: "loans.db"
    chain:
      rpc_endpoints: ["https://rpc.example.com"]
      rpc_timeout: 10
      contracts:
        creditshaft: "0xcc"
      position_selector: "0x16c19739"
      token_decimals: {LINK: 18, USDC: 6}
    reconciler:
      poll_interval_seconds: 12
      min_refresh_interval_seconds: 5
      switch_debounce_seconds: 0.1
""")


@pytest.fixture()
def sample_yaml_path(tmp_path: Path) -> Path:
    cfg_file = tmp_path / "config.yaml"
    cfg_file.write_text(SAMPLE_YAML)
    return cfg_file


# ---------------------------------------------------------------------------
# Model fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def sample_loan() -> Loan:
    return Loan(
        id="L1",
        wallet_address="0xabc",
        pre_auth_id="PI1",
        borrow_amount=1000,
        asset="USDC",
        original_credit_limit=12000,
        pre_auth_amount=1500,
    )


@pytest.fixture()
def active_position() -> Position:
    return Position(
        is_active=True,
        collateral_link=100.0,
        leverage_ratio=2.0,
        supplied_link=200.0,
        borrowed_usdc=1500.0,
        entry_price=15.0,
        pre_auth_amount=2250.0,
        pre_auth_expiry_time=1_900_000_000,
    )


# ---------------------------------------------------------------------------
# Lifecycle fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def store() -> InMemoryLoanStore:
    return InMemoryLoanStore()


@pytest.fixture()
def gateway() -> AsyncMock:
    gw = AsyncMock()
    gw.capture.return_value = CaptureResult(captured_amount=1000, external_reference="ch_1")
    gw.release.return_value = None
    gw.cancel.return_value = None
    return gw


@pytest.fixture()
def controller(store: InMemoryLoanStore, gateway: AsyncMock) -> LoanLifecycleController:
    return LoanLifecycleController(store, gateway)


# ---------------------------------------------------------------------------
# Reconciler doubles
# ---------------------------------------------------------------------------


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, now: float = 1_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class StubPositionSource:
    """Records every fetch; can be gated to hold fetches in flight."""

    def __init__(self, position: Position | None = None) -> None:
        self.position = position
        self.calls: list[str] = []
        self.gate: asyncio.Event | None = None
        self.error: Exception | None = None

    async def get_position_details(self, wallet_address: str) -> Position | None:
        self.calls.append(wallet_address)
        gate = self.gate
        if gate is not None:
            await gate.wait()
        if self.error is not None:
            raise self.error
        return self.position


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def source(active_position: Position) -> StubPositionSource:
    return StubPositionSource(active_position)
