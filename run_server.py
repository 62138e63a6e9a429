#!/usr/bin/env python3
"""
StakeFlow service launcher — hosts a staking engine behind the REST API.

  - Loads stakeflow.toml (+ STAKEFLOW_* environment overrides)
  - Builds the in-memory Balance Ledger from [ledger] genesis accounts
  - Restores stakes and balances from SQLite when [storage] is enabled
  - Serves the aiohttp adapter until interrupted

Usage:
    python run_server.py --config stakeflow.toml
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import os
import sys

PROJECT_ROOT = os.path.dirname(os.path.abspath(__file__))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from stakeflow_core.api import APIServer  # noqa: E402
from stakeflow_core.balance_ledger import InMemoryBalanceLedger  # noqa: E402
from stakeflow_core.config import StakeFlowConfig, load_config  # noqa: E402
from stakeflow_core.engine import StakingEngine  # noqa: E402
from stakeflow_core.logging_config import setup_logging  # noqa: E402
from stakeflow_core.storage import StakeStore  # noqa: E402

logger = logging.getLogger("stakeflow")


def build_service(cfg: StakeFlowConfig) -> tuple[StakingEngine, StakeStore | None]:
    """
    Wire the Balance Ledger, storage and engine described by *cfg*.

    Genesis balances seed a fresh database only; once a store holds
    ledger state, that state wins.  Refuses to start when restored
    stakes are not backed by custody.
    """
    balances = InMemoryBalanceLedger(
        {addr: int(bal) for addr, bal in cfg.ledger.accounts.items()}
    )
    store = StakeStore(cfg.storage.path) if cfg.storage.enabled else None
    engine = StakingEngine.from_config(cfg.staking, balances, store=store)
    if store is not None:
        store.restore_engine(engine)
        principal = engine.stakes.total_principal()
        if engine.balances.custody < principal:
            store.close()
            raise RuntimeError(
                f"Restored {principal} staked principal but the Balance Ledger "
                f"holds only {engine.balances.custody} in custody"
            )
    return engine, store


def parse_args():
    p = argparse.ArgumentParser(description="StakeFlow staking service")
    p.add_argument("--config", default=os.environ.get("STAKEFLOW_CONFIG"),
                   help="Path to stakeflow.toml config file")
    p.add_argument("--host", default=None, help="Override [api] host")
    p.add_argument("--port", type=int, default=None, help="Override [api] port")
    return p.parse_args()


async def main():
    args = parse_args()
    cfg = load_config(args.config)
    if args.host:
        cfg.api.host = args.host
    if args.port:
        cfg.api.port = args.port

    setup_logging(cfg.logging.level, cfg.logging.format, cfg.logging.file)
    if not cfg.staking.owner:
        logger.error("No owner configured: set [staking] owner or STAKEFLOW_OWNER")
        raise SystemExit(2)

    try:
        engine, store = build_service(cfg)
    except RuntimeError as exc:
        logger.error(f"Cannot start: {exc}")
        raise SystemExit(2) from exc
    api = APIServer(engine, cfg.api.host, cfg.api.port, api_config=cfg.api)
    await api.start()
    try:
        while True:
            await asyncio.sleep(3600)
    except asyncio.CancelledError:
        pass
    finally:
        await api.stop()
        if store is not None:
            store.close()


def main_sync():
    """Synchronous entry point for console_scripts."""
    with contextlib.suppress(KeyboardInterrupt):
        asyncio.run(main())


if __name__ == "__main__":
    main_sync()
