"""Composition root: wires stores, gateways and services from configuration."""
from __future__ import annotations

import logging

from .chains.evm import EvmClient
from .config import AppConfig
from .payments import build_gateway
from .protocols.creditshaft import CreditShaftPositionAdapter
from .services import LoanLifecycleController, LoanService, PositionReconciler
from .storage import build_store

logger = logging.getLogger(__name__)


class Engine:
    """Owns every long-lived component for one process."""

    def __init__(self, config: AppConfig) -> None:
        self._config = config

        self.store = build_store(config.storage)
        self.gateway = build_gateway(config.payments)
        self.controller = LoanLifecycleController(self.store, self.gateway)

        self.chain_client = EvmClient(config.chain)
        self.position_source = CreditShaftPositionAdapter(self.chain_client, config.chain)
        self.reconciler = PositionReconciler.from_config(
            self.position_source, config.reconciler
        )

        self.loans = LoanService(self.controller, self.reconciler)

        if config.demo_mode:
            logger.warning("Demo mode: payment holds are settled without a processor")

    async def close(self) -> None:
        await self.reconciler.close()
        close_store = getattr(self.store, "close", None)
        if close_store is not None:
            close_store()
