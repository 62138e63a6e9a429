"""
Post-operation invariant checks for StakeFlow.

Checked after every engine mutation when ``check_invariants`` is on:
  - Supply is conserved (only minting creates balance)
  - No account balance goes negative
  - Custody holds exactly the staked principal
  - Stake collections are append-only
  - Closed records never change or reopen
  - ``claimed_total`` matches what was paid out

If any invariant fails the engine rolls the operation back and raises
``InvariantViolation``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from stakeflow_core.staking import StakeJournal


@dataclass
class EngineSnapshot:
    """Scalar totals the checks compare against."""
    total_supply: int = 0
    total_minted: int = 0
    custody: int = 0
    stake_count: int = 0


class InvariantChecker:
    """
    Captures a pre-operation snapshot of the engine and validates
    invariants after the operation is applied.

    Only scalar totals are captured.  Per-record checks read the Stake
    Ledger's journal, so they cover exactly the records the operation
    appended or handed out for update.
    """

    def __init__(self) -> None:
        self._snapshot: EngineSnapshot | None = None

    def capture(self, engine: Any) -> None:
        """Take a snapshot of engine state before an operation."""
        ledger = engine.balances
        self._snapshot = EngineSnapshot(
            total_supply=getattr(ledger, "total_supply", 0),
            total_minted=getattr(ledger, "total_minted", 0),
            custody=getattr(ledger, "custody", 0),
            stake_count=engine.stakes.total_count(),
        )

    def verify(self, engine: Any) -> tuple[bool, str]:
        """
        Verify all invariants against the current engine state.
        Returns (passed, error_message).
        """
        if self._snapshot is None:
            return True, ""

        journal = engine.stakes.journal or StakeJournal()
        errors: list[str] = []
        for check in (
            self._check_supply_formula,
            self._check_no_negative_balances,
            self._check_custody_matches_principal,
            self._check_append_only,
            self._check_closed_records_frozen,
            self._check_claim_accounting,
        ):
            ok, msg = check(engine, journal)
            if not ok:
                errors.append(msg)

        if errors:
            return False, "; ".join(errors)
        return True, ""

    # ── individual checks ───────────────────────────────────────────

    def _check_supply_formula(self, engine: Any, journal: StakeJournal) -> tuple[bool, str]:
        ledger = engine.balances
        if not hasattr(ledger, "accounts"):
            return True, ""
        held = sum(ledger.accounts.values()) + ledger.custody
        if held != ledger.total_supply:
            return False, (
                f"Supply mismatch: balances+custody={held}, "
                f"total_supply={ledger.total_supply}"
            )
        if ledger.total_supply != ledger.initial_supply + ledger.total_minted:
            return False, "total_supply != initial_supply + total_minted"
        return True, ""

    def _check_no_negative_balances(
        self, engine: Any, journal: StakeJournal,
    ) -> tuple[bool, str]:
        ledger = engine.balances
        if not hasattr(ledger, "accounts"):
            return True, ""
        for account, balance in ledger.accounts.items():
            if balance < 0:
                return False, f"Negative balance for {account}: {balance}"
        return True, ""

    def _check_custody_matches_principal(
        self, engine: Any, journal: StakeJournal,
    ) -> tuple[bool, str]:
        assert self._snapshot is not None
        ledger = engine.balances
        if not hasattr(ledger, "custody"):
            return True, ""
        custody_delta = ledger.custody - self._snapshot.custody
        new_principal = sum(
            engine.stakes.get_stake(account, index).amount
            for account, index in journal.appended
        )
        if custody_delta != new_principal:
            return False, (
                f"Custody moved by {custody_delta} but {new_principal} "
                f"was newly staked"
            )
        return True, ""

    def _check_append_only(self, engine: Any, journal: StakeJournal) -> tuple[bool, str]:
        assert self._snapshot is not None
        expected = self._snapshot.stake_count + len(journal.appended)
        after = engine.stakes.total_count()
        if after != expected:
            return False, (
                f"Stake count went from {self._snapshot.stake_count} to {after} "
                f"with {len(journal.appended)} appended"
            )
        return True, ""

    def _check_closed_records_frozen(
        self, engine: Any, journal: StakeJournal,
    ) -> tuple[bool, str]:
        for (account, index), before in journal.before.items():
            if before.is_open:
                continue
            if engine.stakes.get_stake(account, index) != before:
                return False, f"Closed stake {account}#{index} was modified"
        return True, ""

    def _check_claim_accounting(
        self, engine: Any, journal: StakeJournal,
    ) -> tuple[bool, str]:
        assert self._snapshot is not None
        minted = getattr(engine.balances, "total_minted", None)
        if minted is None:
            return True, ""
        minted_delta = minted - self._snapshot.total_minted
        claimed_delta = 0
        for account, index in journal.touched():
            record = engine.stakes.get_stake(account, index)
            before = journal.before.get((account, index))
            if record.claimed_total < 0:
                return False, f"Negative claimed_total on {account}#{index}"
            if record.is_open and record.claimed_total != 0:
                return False, f"Open stake {account}#{index} has claimed_total"
            if not record.is_open and (before is None or before.is_open):
                claimed_delta += record.claimed_total
        admin_minted = getattr(engine, "pending_admin_mint", 0)
        if minted_delta != claimed_delta + admin_minted:
            return False, (
                f"Minted {minted_delta} but claims account for "
                f"{claimed_delta} and admin mints for {admin_minted}"
            )
        return True, ""
