"""
Tests for the in-memory Balance Ledger collaborator.
"""

import pytest

from stakeflow_core.balance_ledger import BalanceLedger, InMemoryBalanceLedger
from stakeflow_core.errors import InsufficientBalance, InvalidAmount


class TestInMemoryBalanceLedger:
    def test_genesis_sets_supply(self, balances):
        assert balances.initial_supply == 1_500
        assert balances.total_supply == 1_500
        assert balances.available_balance("rAlice") == 1_000

    def test_unknown_account_has_zero_balance(self, balances):
        assert balances.available_balance("rNobody") == 0

    def test_satisfies_protocol(self, balances):
        assert isinstance(balances, BalanceLedger)

    def test_move_to_custody(self, balances):
        balances.move_to_custody("rAlice", 300)
        assert balances.available_balance("rAlice") == 700
        assert balances.custody == 300
        assert balances.total_supply == 1_500

    def test_move_to_custody_insufficient(self, balances):
        with pytest.raises(InsufficientBalance):
            balances.move_to_custody("rBob", 501)
        assert balances.available_balance("rBob") == 500
        assert balances.custody == 0

    def test_move_to_custody_rejects_non_positive(self, balances):
        with pytest.raises(InvalidAmount):
            balances.move_to_custody("rAlice", 0)

    def test_mint_creates_account_and_supply(self, balances):
        balances.mint("rNew", 25)
        assert balances.available_balance("rNew") == 25
        assert balances.total_minted == 25
        assert balances.total_supply == 1_525

    def test_mint_rejects_non_positive(self, balances):
        with pytest.raises(InvalidAmount):
            balances.mint("rAlice", -1)

    def test_duplicate_account_rejected(self, balances):
        with pytest.raises(ValueError):
            balances.create_account("rAlice", 1)

    def test_negative_genesis_rejected(self):
        with pytest.raises(InvalidAmount):
            InMemoryBalanceLedger({"rAlice": -5})

    def test_snapshot_restore(self, balances):
        snap = balances.snapshot()
        balances.move_to_custody("rAlice", 100)
        balances.mint("rBob", 10)
        balances.restore(snap)
        assert balances.available_balance("rAlice") == 1_000
        assert balances.available_balance("rBob") == 500
        assert balances.custody == 0
        assert balances.total_minted == 0

    def test_restore_does_not_alias_snapshot(self, balances):
        snap = balances.snapshot()
        balances.restore(snap)
        balances.mint("rAlice", 1)
        assert snap.balances["rAlice"] == 1_000

    def test_summary(self, balances):
        balances.move_to_custody("rAlice", 100)
        s = balances.get_summary()
        assert s["accounts"] == 3
        assert s["custody"] == 100
        assert s["total_supply"] == 1_500
