"""
Shared pytest fixtures for the StakeFlow test suite.
"""

import pytest

from stakeflow_core.balance_ledger import InMemoryBalanceLedger
from stakeflow_core.engine import StakingEngine


@pytest.fixture
def balances():
    """Balance Ledger with two funded accounts and one empty one."""
    return InMemoryBalanceLedger({"rAlice": 1_000, "rBob": 500, "rCarol": 0})


@pytest.fixture
def engine(balances):
    """Engine at 50 % stake rate and 10 % referral rate, owned by rAdmin."""
    return StakingEngine(
        balances,
        "rAdmin",
        stake_rate_percent=50,
        referral_rate_percent=10,
    )
