"""
StakeFlow - a staking ledger and reward-accrual engine.

Key features:
- Append-only per-account stake records keyed by (account, index)
- Linear, integer-only reward accrual with an optional referral split
- Single-shot claim state machine (Open -> Closed)
- Owner-gated rate administration and issuance
- Atomic operations with rollback and post-operation invariant checks
- Observable event log, SQLite persistence and an aiohttp REST adapter
"""

__version__ = "1.0.0"
__all__ = [
    "api",
    "balance_ledger",
    "config",
    "engine",
    "errors",
    "events",
    "invariants",
    "logging_config",
    "precision",
    "rewards",
    "staking",
    "storage",
]
