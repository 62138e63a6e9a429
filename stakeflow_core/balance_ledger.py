"""
Balance Ledger contract and an in-memory implementation.

The staking core does not own fungible-balance bookkeeping.  It talks to
a *Balance Ledger* through the small ``BalanceLedger`` protocol below:

  - ``available_balance(account)``      spendable balance
  - ``move_to_custody(account, amount)`` lock principal for a stake
  - ``mint(account, amount)``           issue new balance (rewards, admin)
  - ``snapshot()`` / ``restore(state)`` rollback support for atomic ops

``InMemoryBalanceLedger`` is the reference implementation used by the
service launcher and the test suite.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from stakeflow_core.errors import InsufficientBalance, InvalidAmount


@runtime_checkable
class BalanceLedger(Protocol):
    def available_balance(self, account: str) -> int: ...

    def move_to_custody(self, account: str, amount: int) -> None: ...

    def mint(self, account: str, amount: int) -> None: ...

    def snapshot(self) -> Any: ...

    def restore(self, state: Any) -> None: ...


@dataclass
class LedgerState:
    """Everything an InMemoryBalanceLedger holds; also its snapshot type."""
    balances: dict[str, int] = field(default_factory=dict)
    custody: int = 0
    initial_supply: int = 0
    total_minted: int = 0


class InMemoryBalanceLedger:
    """
    Dictionary-backed balances with a single custody pool.

    Supply accounting:
        total_supply == initial_supply + total_minted
        sum(balances) + custody == total_supply
    """

    def __init__(self, genesis: dict[str, int] | None = None) -> None:
        self._state = LedgerState()
        for address, balance in (genesis or {}).items():
            self.create_account(address, balance)

    # ── account management ──────────────────────────────────────────

    def create_account(self, address: str, balance: int = 0) -> None:
        """Open an account, optionally with a genesis balance."""
        if address in self._state.balances:
            raise ValueError(f"Account {address} already exists")
        if balance < 0:
            raise InvalidAmount(f"Genesis balance must be >= 0, got {balance}")
        self._state.balances[address] = balance
        self._state.initial_supply += balance

    @property
    def accounts(self) -> dict[str, int]:
        return dict(self._state.balances)

    @property
    def custody(self) -> int:
        return self._state.custody

    @property
    def initial_supply(self) -> int:
        return self._state.initial_supply

    @property
    def total_minted(self) -> int:
        return self._state.total_minted

    @property
    def total_supply(self) -> int:
        return self._state.initial_supply + self._state.total_minted

    # ── BalanceLedger protocol ──────────────────────────────────────

    def available_balance(self, account: str) -> int:
        return self._state.balances.get(account, 0)

    def move_to_custody(self, account: str, amount: int) -> None:
        if amount <= 0:
            raise InvalidAmount(f"Custody amount must be positive, got {amount}")
        have = self.available_balance(account)
        if have < amount:
            raise InsufficientBalance(
                f"Insufficient balance: {account} has {have}, needs {amount}"
            )
        self._state.balances[account] = have - amount
        self._state.custody += amount

    def mint(self, account: str, amount: int) -> None:
        if amount <= 0:
            raise InvalidAmount(f"Mint amount must be positive, got {amount}")
        self._state.balances[account] = self.available_balance(account) + amount
        self._state.total_minted += amount

    def snapshot(self) -> LedgerState:
        return LedgerState(
            balances=dict(self._state.balances),
            custody=self._state.custody,
            initial_supply=self._state.initial_supply,
            total_minted=self._state.total_minted,
        )

    def restore(self, state: LedgerState) -> None:
        self._state = LedgerState(
            balances=dict(state.balances),
            custody=state.custody,
            initial_supply=state.initial_supply,
            total_minted=state.total_minted,
        )

    def get_summary(self) -> dict:
        return {
            "accounts": len(self._state.balances),
            "initial_supply": self._state.initial_supply,
            "total_minted": self._state.total_minted,
            "total_supply": self.total_supply,
            "custody": self._state.custody,
        }
