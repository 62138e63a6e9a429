"""
TOML-based configuration for StakeFlow.

Loads settings from a TOML file and/or environment variables.
Environment variables take precedence over file values.

Usage:
    from stakeflow_core.config import load_config
    cfg = load_config("stakeflow.toml")
"""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib

from stakeflow_core.staking import REFERENCE_PERIOD


@dataclass
class StakingConfig:
    """Global staking parameters and engine behaviour."""
    owner: str = ""
    stake_rate_percent: int = 10
    referral_rate_percent: int = 10
    reference_period_seconds: int = REFERENCE_PERIOD
    # Copy the referral rate into each record at stake time.  When False
    # the global referral rate current at claim time applies instead.
    snapshot_referral_rate: bool = True
    check_invariants: bool = True


@dataclass
class LedgerConfig:
    """
    Genesis balances for the in-memory Balance Ledger.

    ``accounts`` maps address -> initial balance in base units.
    """
    accounts: dict[str, int] = field(default_factory=dict)


@dataclass
class APIConfig:
    """REST adapter settings."""
    host: str = "127.0.0.1"
    port: int = 8080
    api_key: str = ""                  # require this key on POST endpoints (empty = no auth)
    max_body_bytes: int = 65_536


@dataclass
class StorageConfig:
    """Persistence settings."""
    enabled: bool = False
    path: str = "data/stakeflow.db"


@dataclass
class LoggingConfig:
    """Logging settings."""
    level: str = "INFO"
    format: str = "human"   # "human" or "json"
    file: str | None = None


@dataclass
class StakeFlowConfig:
    """Top-level configuration container."""
    staking: StakingConfig = field(default_factory=StakingConfig)
    ledger: LedgerConfig = field(default_factory=LedgerConfig)
    api: APIConfig = field(default_factory=APIConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def _merge(dc: Any, raw: dict[str, Any]) -> None:
    """Merge a raw dict into a dataclass instance (in-place)."""
    for key, value in raw.items():
        key_under = key.replace("-", "_")
        if hasattr(dc, key_under):
            setattr(dc, key_under, value)


def load_config(path: str | None = None) -> StakeFlowConfig:
    """
    Load configuration from a TOML file, then overlay environment variables.

    Env-var mapping:
        STAKEFLOW_OWNER          -> staking.owner
        STAKEFLOW_STAKE_RATE     -> staking.stake_rate_percent
        STAKEFLOW_REFERRAL_RATE  -> staking.referral_rate_percent
        STAKEFLOW_API_PORT       -> api.port
        STAKEFLOW_API_KEY        -> api.api_key
        STAKEFLOW_DB_PATH        -> storage.path (also enables storage)
        STAKEFLOW_LOG_LEVEL      -> logging.level
        STAKEFLOW_LOG_FMT        -> logging.format
    """
    cfg = StakeFlowConfig()

    # ── TOML file ────────────────────────────────────────────────
    if path is not None:
        p = Path(path)
        if p.exists():
            with open(p, "rb") as f:
                data = tomllib.load(f)
            for section_name, section_dc in [
                ("staking", cfg.staking),
                ("ledger", cfg.ledger),
                ("api", cfg.api),
                ("storage", cfg.storage),
                ("logging", cfg.logging),
            ]:
                if section_name in data:
                    _merge(section_dc, data[section_name])

    # ── Environment variable overrides ───────────────────────────
    if v := os.environ.get("STAKEFLOW_OWNER"):
        cfg.staking.owner = v
    if v := os.environ.get("STAKEFLOW_STAKE_RATE"):
        cfg.staking.stake_rate_percent = int(v)
    if v := os.environ.get("STAKEFLOW_REFERRAL_RATE"):
        cfg.staking.referral_rate_percent = int(v)
    if v := os.environ.get("STAKEFLOW_API_PORT"):
        cfg.api.port = int(v)
    if v := os.environ.get("STAKEFLOW_API_KEY"):
        cfg.api.api_key = v
    if v := os.environ.get("STAKEFLOW_DB_PATH"):
        cfg.storage.path = v
        cfg.storage.enabled = True
    if v := os.environ.get("STAKEFLOW_LOG_LEVEL"):
        cfg.logging.level = v.upper()
    if v := os.environ.get("STAKEFLOW_LOG_FMT"):
        cfg.logging.format = v

    return cfg
