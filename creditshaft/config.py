"""Configuration loader — reads config.yaml, interpolates env vars, validates."""
from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv

logger = logging.getLogger(__name__)

PAYMENT_MODES = ("demo", "stripe")
STORAGE_BACKENDS = ("memory", "sqlite")

# ---------------------------------------------------------------------------
# Frozen config dataclasses
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class StripeConfig:
    secret_key: str = ""


@dataclass(frozen=True)
class DemoPaymentsConfig:
    hold_amount: int = 1_200_000


@dataclass(frozen=True)
class PaymentsConfig:
    mode: str = "demo"
    stripe: StripeConfig = field(default_factory=StripeConfig)
    demo: DemoPaymentsConfig = field(default_factory=DemoPaymentsConfig)


@dataclass(frozen=True)
class StorageConfig:
    backend: str = "memory"
    path: str = "creditshaft.db"


@dataclass(frozen=True)
class ChainConfig:
    rpc_endpoints: tuple[str, ...] = ()
    rpc_timeout: int = 30
    contracts: dict[str, str] = field(default_factory=dict)
    position_selector: str = ""
    token_decimals: dict[str, int] = field(default_factory=dict)


@dataclass(frozen=True)
class ReconcilerConfig:
    poll_interval_seconds: float = 12.0
    min_refresh_interval_seconds: float = 5.0
    switch_debounce_seconds: float = 0.1


@dataclass(frozen=True)
class AppConfig:
    payments: PaymentsConfig = field(default_factory=PaymentsConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    chain: ChainConfig = field(default_factory=ChainConfig)
    reconciler: ReconcilerConfig = field(default_factory=ReconcilerConfig)

    @property
    def demo_mode(self) -> bool:
        return self.payments.mode == "demo"


# ---------------------------------------------------------------------------
# Env interpolation
# ---------------------------------------------------------------------------

_ENV_VAR_RE = re.compile(r"\$\{([^}]+)}")


def _interpolate_env(value: Any) -> Any:
    """Recursively replace ${VAR} references with environment variable values."""
    if isinstance(value, str):
        return _ENV_VAR_RE.sub(lambda m: os.environ.get(m.group(1), ""), value)
    if isinstance(value, dict):
        return {k: _interpolate_env(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_interpolate_env(item) for item in value]
    return value


# ---------------------------------------------------------------------------
# YAML → dataclass builders
# ---------------------------------------------------------------------------


def _build_payments(raw: dict[str, Any]) -> PaymentsConfig:
    stripe_raw = raw.get("stripe", {})
    demo_raw = raw.get("demo", {})
    return PaymentsConfig(
        mode=str(raw.get("mode", "demo")).lower(),
        stripe=StripeConfig(secret_key=stripe_raw.get("secret_key", "")),
        demo=DemoPaymentsConfig(
            hold_amount=int(demo_raw.get("hold_amount", 1_200_000)),
        ),
    )


def _build_storage(raw: dict[str, Any]) -> StorageConfig:
    return StorageConfig(
        backend=str(raw.get("backend", "memory")).lower(),
        path=raw.get("path", "creditshaft.db"),
    )


def _build_chain(raw: dict[str, Any]) -> ChainConfig:
    return ChainConfig(
        rpc_endpoints=tuple(url for url in raw.get("rpc_endpoints", []) if url),
        rpc_timeout=int(raw.get("rpc_timeout", 30)),
        contracts=dict(raw.get("contracts", {})),
        position_selector=raw.get("position_selector", ""),
        token_decimals={k: int(v) for k, v in raw.get("token_decimals", {}).items()},
    )


def _build_reconciler(raw: dict[str, Any]) -> ReconcilerConfig:
    return ReconcilerConfig(
        poll_interval_seconds=float(raw.get("poll_interval_seconds", 12.0)),
        min_refresh_interval_seconds=float(
            raw.get("min_refresh_interval_seconds", 5.0)
        ),
        switch_debounce_seconds=float(raw.get("switch_debounce_seconds", 0.1)),
    )


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def load_config(config_path: str | Path | None = None) -> AppConfig:
    """Load and validate application configuration from YAML + .env.

    Args:
        config_path: Path to config.yaml. Defaults to ``config.yaml`` in the
            project root (two levels up from this file).
    """
    load_dotenv()

    if config_path is None:
        config_path = Path(__file__).resolve().parent.parent / "config.yaml"
    config_path = Path(config_path)

    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(config_path) as f:
        raw = yaml.safe_load(f) or {}

    raw = _interpolate_env(raw)

    cfg = AppConfig(
        payments=_build_payments(raw.get("payments", {})),
        storage=_build_storage(raw.get("storage", {})),
        chain=_build_chain(raw.get("chain", {})),
        reconciler=_build_reconciler(raw.get("reconciler", {})),
    )

    _validate(cfg)
    logger.info(
        "Configuration loaded from %s (payments=%s, storage=%s)",
        config_path,
        cfg.payments.mode,
        cfg.storage.backend,
    )
    return cfg


def _validate(cfg: AppConfig) -> None:
    """Raise on invalid configuration."""
    if cfg.payments.mode not in PAYMENT_MODES:
        raise ValueError(f"Unknown payments mode '{cfg.payments.mode}'")

    if cfg.payments.mode == "stripe" and not cfg.payments.stripe.secret_key:
        raise ValueError("Stripe mode requires payments.stripe.secret_key")

    if cfg.storage.backend not in STORAGE_BACKENDS:
        raise ValueError(f"Unknown storage backend '{cfg.storage.backend}'")

    if cfg.storage.backend == "sqlite" and not cfg.storage.path:
        raise ValueError("SQLite storage requires storage.path")

    rc = cfg.reconciler
    for name, value in (
        ("poll_interval_seconds", rc.poll_interval_seconds),
        ("min_refresh_interval_seconds", rc.min_refresh_interval_seconds),
        ("switch_debounce_seconds", rc.switch_debounce_seconds),
    ):
        if value <= 0:
            raise ValueError(f"reconciler.{name} must be positive")
