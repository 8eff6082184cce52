"""
Runtime configuration.

Defaults mirror the production deployment (24h rolling window, 5% of vault
value per account, ~1 day of blocks of lookback). Every field can be
overridden from ``SPENDGUARD_*`` environment variables or CLI options.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from typing import Optional

from .errors import ConfigError


DEFAULT_WINDOW_SECONDS = 86_400
DEFAULT_MAX_SPENDING_BPS = 500


@dataclass
class PolicyConfig:
    """Thresholds enforced synchronously by the policy evaluator and ledger."""

    absolute_max_spending_bps: int = 2_000
    max_oracle_age_seconds: int = 3_600
    max_vault_value_age_seconds: int = 3_600
    max_price_feed_age_seconds: int = 86_400

    def __post_init__(self) -> None:
        if not 0 < self.absolute_max_spending_bps <= 10_000:
            raise ConfigError("absolute_max_spending_bps must be in (0, 10000]")
        for name in (
            "max_oracle_age_seconds",
            "max_vault_value_age_seconds",
            "max_price_feed_age_seconds",
        ):
            if getattr(self, name) <= 0:
                raise ConfigError(f"{name} must be positive")


@dataclass
class OracleConfig:
    """Settings for the off-chain reconciler and its triggers."""

    window_duration_seconds: int = DEFAULT_WINDOW_SECONDS
    max_spending_bps: int = DEFAULT_MAX_SPENDING_BPS
    blocks_to_look_back: int = 7_200
    poll_interval_seconds: float = 10.0
    refresh_interval_seconds: float = 300.0
    allowance_change_threshold_bps: int = 0
    max_workers: int = 8
    rpc_url: Optional[str] = None
    module_address: Optional[str] = None
    skip_addresses: list[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        if self.window_duration_seconds <= 0:
            raise ConfigError("window_duration_seconds must be positive")
        if self.blocks_to_look_back <= 0:
            raise ConfigError("blocks_to_look_back must be positive")
        if self.poll_interval_seconds <= 0 or self.refresh_interval_seconds <= 0:
            raise ConfigError("poll and refresh intervals must be positive")
        if self.max_workers <= 0:
            raise ConfigError("max_workers must be positive")
        if not 0 <= self.max_spending_bps <= 10_000:
            raise ConfigError("max_spending_bps must be in [0, 10000]")

    @property
    def extended_lookback_blocks(self) -> int:
        # Tokens acquired before the spending window must still be discoverable.
        return self.blocks_to_look_back * 2

    def is_skipped(self, address: str) -> bool:
        skipped = {a.lower() for a in self.skip_addresses}
        if self.module_address:
            skipped.add(self.module_address.lower())
        return address.lower() in skipped

    @classmethod
    def from_env(cls, **overrides) -> OracleConfig:
        """Build a config from ``SPENDGUARD_*`` variables, then apply overrides."""
        values: dict = {}
        _env_int(values, "window_duration_seconds", "SPENDGUARD_WINDOW_SECONDS")
        _env_int(values, "blocks_to_look_back", "SPENDGUARD_BLOCKS_TO_LOOK_BACK")
        _env_float(values, "poll_interval_seconds", "SPENDGUARD_POLL_INTERVAL")
        _env_float(values, "refresh_interval_seconds", "SPENDGUARD_REFRESH_INTERVAL")
        _env_int(values, "max_workers", "SPENDGUARD_MAX_WORKERS")
        if os.getenv("SPENDGUARD_RPC_URL"):
            values["rpc_url"] = os.environ["SPENDGUARD_RPC_URL"]
        if os.getenv("SPENDGUARD_MODULE_ADDRESS"):
            values["module_address"] = os.environ["SPENDGUARD_MODULE_ADDRESS"]
        config = cls(**values)
        clean = {k: v for k, v in overrides.items() if v is not None}
        return replace(config, **clean) if clean else config


def _env_int(values: dict, key: str, env_name: str) -> None:
    raw = os.getenv(env_name)
    if raw is None or raw == "":
        return
    try:
        values[key] = int(raw)
    except ValueError as e:
        raise ConfigError(f"{env_name} must be an integer, got {raw!r}") from e


def _env_float(values: dict, key: str, env_name: str) -> None:
    raw = os.getenv(env_name)
    if raw is None or raw == "":
        return
    try:
        values[key] = float(raw)
    except ValueError as e:
        raise ConfigError(f"{env_name} must be a number, got {raw!r}") from e
